from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

TENANT_STATUSES = frozenset({"active", "inactive", "suspended"})
USER_STATUSES = frozenset({"active", "inactive"})
USER_ROLES = frozenset({"admin", "user"})


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class _Record:
    """JSON round-tripping shared by every persisted record."""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        # Unknown keys from older records are dropped
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_json(cls, raw: str):
        return cls.from_dict(json.loads(raw))


@dataclass
class Tenant(_Record):
    tenant_id: str
    name: str
    domain: str
    status: str = "active"
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def summary(self) -> Dict[str, str]:
        return {"tenant_id": self.tenant_id, "name": self.name, "domain": self.domain}


@dataclass
class User(_Record):
    user_id: str
    tenant_id: str
    username: str
    email: str
    password: Optional[str] = None
    role: str = "user"
    status: str = "active"
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def without_password(self) -> "User":
        """Copy safe to hand outside the directory; the hash never leaves it."""
        data = self.to_dict()
        data["password"] = None
        return User(**data)

    def public_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop("password", None)
        return data


@dataclass
class Session(_Record):
    session_id: str
    tenant_id: str
    user_id: str
    login_time: str
    user_agent: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def new(
        cls,
        tenant_id: str,
        user_id: str,
        *,
        login_time: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Session":
        now = utcnow_iso()
        return cls(
            session_id=new_id(),
            tenant_id=tenant_id,
            user_id=user_id,
            login_time=login_time or now,
            user_agent=user_agent,
            created_at=now,
        )
