from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tenantgate.config import Settings, get_settings, reset_settings_cache
from tenantgate.logging import get_logger
from tenantgate.service.auth import AuthGate
from tenantgate.service.directory import TenantDirectory
from tenantgate.service.llm import InferenceProxy
from tenantgate.service.tokens import TokenIssuer
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        logger.info(
            "runtime_init_started",
            use_memory_store=use_memory,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, RedisStore]
        if use_memory:
            self.store = MemoryStore()
        else:
            self.store = RedisStore(self.settings.redis_url)
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if use_memory else "redis",
            redis_url=None if use_memory else _mask_url_password(self.settings.redis_url),
        )

        self.directory = TenantDirectory(
            self.store, session_ttl_seconds=self.settings.session_ttl_seconds
        )
        self.tokens = TokenIssuer(
            self.settings.jwt_secret or "",
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_seconds=self.settings.token_ttl_seconds,
            clock_skew_seconds=self.settings.token_clock_skew_seconds,
        )
        self.auth = AuthGate(self.tokens, self.directory)
        self.inference = InferenceProxy(
            self.settings.ollama_url, timeout=self.settings.inference_timeout_seconds
        )
        logger.info("runtime_init_completed", ollama_url=self.settings.ollama_url)

    async def verify_store(self) -> None:
        try:
            await self.store.ping()
        except Exception as exc:
            logger.error(
                "runtime_store_unreachable",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    async def close(self) -> None:
        await self.inference.close()
        await self.store.close()
        logger.info("runtime_closed")


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                # No loop running, so the old clients can be closed here
                try:
                    asyncio.run(runtime.close())
                except Exception as exc:
                    logger.warning("runtime_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime
