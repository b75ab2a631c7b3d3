from __future__ import annotations

import uuid
from typing import Optional, Protocol, Set


class KeyValueStore(Protocol):
    """Storage contract shared by the Redis and in-memory credential stores.

    Values are JSON strings; sets hold plain ids. Every method is awaitable so
    either backend can sit behind the directory and the auth gate.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def set_if_absent(self, key: str, value: str) -> bool: ...

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def add_to_set(self, key: str, *members: str) -> int: ...

    async def remove_from_set(self, key: str, *members: str) -> int: ...

    async def set_members(self, key: str) -> Set[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# Key layout
ALL_TENANTS_KEY = "tenants:all"


def is_record_id(value: Optional[str]) -> bool:
    """True only for canonical UUID strings, the one id shape that is safe in a key."""
    if not value:
        return False
    try:
        return str(uuid.UUID(value)) == value
    except (ValueError, TypeError, AttributeError):
        return False


def tenant_key(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def tenant_domain_key(domain: str) -> str:
    return f"tenant:domain:{domain.lower()}"


def user_key(tenant_id: str, user_id: str) -> str:
    return f"tenant:{tenant_id}:user:{user_id}"


def user_email_key(tenant_id: str, email: str) -> str:
    return f"tenant:{tenant_id}:user:email:{email.lower()}"


def tenant_users_key(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:users"


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def blacklist_key(token: str) -> str:
    return f"token:blacklist:{token}"
