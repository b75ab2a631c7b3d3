from __future__ import annotations

import uvicorn

from tenantgate.config import get_settings


def run() -> None:
    """Serve the gateway with the configured host and port."""
    settings = get_settings()
    uvicorn.run("tenantgate.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
