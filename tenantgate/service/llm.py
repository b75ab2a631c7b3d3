from __future__ import annotations

from typing import Any, Optional

import httpx

from tenantgate.logging import get_logger
from tenantgate.service.errors import UpstreamUnavailableError

logger = get_logger(__name__)


class InferenceProxy:
    """Forwards chat and model-list calls to an Ollama-compatible server.

    Streaming is not relayed: every chat request goes upstream with
    ``stream`` forced to false and comes back as one JSON document.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def _request(self, method: str, path: str, *, operation: str, **kwargs: Any) -> dict:
        client = await self._get_client()
        try:
            response = await client.request(
                method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            body = e.response.text
            logger.error(
                "inference_upstream_error",
                operation=operation,
                status_code=e.response.status_code,
                error_body=body[:500],
            )
            raise UpstreamUnavailableError(
                f"Inference service error: {e.response.status_code} {body}".strip(),
                detail={"upstream_status": e.response.status_code},
            ) from e
        except httpx.TimeoutException as e:
            logger.error("inference_timeout", operation=operation, timeout=self.timeout)
            raise UpstreamUnavailableError(
                f"Inference service timed out after {self.timeout:g}s"
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "inference_connect_error",
                operation=operation,
                base_url=self.base_url,
                error=str(e),
            )
            raise UpstreamUnavailableError(f"Inference service unavailable: {e}") from e
        except ValueError as e:
            logger.error("inference_invalid_response", operation=operation, error=str(e))
            raise UpstreamUnavailableError(
                f"Inference service returned an invalid response: {e}"
            ) from e

    async def chat(self, request: dict[str, Any], tenant_id: str) -> dict:
        payload = {**request, "stream": False}
        if request.get("stream"):
            logger.info("inference_stream_downgraded", tenant_id=tenant_id)
        logger.info(
            "inference_chat_started",
            tenant_id=tenant_id,
            model=payload.get("model"),
            messages=len(payload.get("messages") or []),
        )
        result = await self._request("POST", "/api/chat", operation="chat", json=payload)
        logger.info("inference_chat_completed", tenant_id=tenant_id, model=payload.get("model"))
        return result

    async def list_models(self) -> dict:
        return await self._request("GET", "/api/tags", operation="list_models")

    async def check_health(self) -> bool:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/")
        except httpx.HTTPError as e:
            logger.warning("inference_health_failed", error=str(e))
            return False
        healthy = response.status_code == 200
        if not healthy:
            logger.warning("inference_health_failed", status_code=response.status_code)
        return healthy

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
