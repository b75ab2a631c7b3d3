from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from tenantgate.logging import bind_principal, get_logger
from tenantgate.service.directory import TenantDirectory
from tenantgate.service.errors import AuthenticationError, ForbiddenError
from tenantgate.service.tokens import TokenIssuer
from tenantgate.storage.models import User

logger = get_logger(__name__)

TenantLookup = Callable[[str], Awaitable[bool]]
UserLookup = Callable[[str, str], Awaitable[Optional[User]]]


def scope_for_role(role: Optional[str]) -> List[str]:
    if role == "admin":
        return ["admin", "user"]
    return ["user"]


@dataclass
class Principal:
    """Identity admitted by the auth gate for one request."""

    user: User
    tenant_id: str
    scope: List[str] = field(default_factory=list)
    token: Optional[str] = field(default=None, repr=False)

    @property
    def user_id(self) -> str:
        return self.user.user_id

    @property
    def role(self) -> str:
        return self.user.role

    def has_scope(self, capability: str) -> bool:
        return capability in self.scope


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


class AuthGate:
    """Admits or rejects bearer tokens and derives the request principal.

    Checks run in order: signature and time claims, blacklist, tenant
    existence, user existence. Any failure, including an exception raised by
    the store, rejects the token. The tenant and user lookups default to the
    directory but can be swapped independently.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        directory: TenantDirectory,
        *,
        tenant_lookup: Optional[TenantLookup] = None,
        user_lookup: Optional[UserLookup] = None,
    ) -> None:
        self.issuer = issuer
        self.directory = directory
        self.tenant_lookup: TenantLookup = tenant_lookup or directory.tenant_exists
        self.user_lookup: UserLookup = user_lookup or directory.get_user

    async def validate(self, token: str) -> Optional[Principal]:
        try:
            return await self._validate(token)
        except Exception as exc:
            logger.error("token_validation_error", error=str(exc), error_type=type(exc).__name__)
            return None

    async def _validate(self, token: str) -> Optional[Principal]:
        claims = self.issuer.decode(token)
        if claims is None:
            return None
        if await self.directory.is_token_blacklisted(token):
            logger.warning("token_blacklisted_rejected")
            return None
        user_id = claims.get("userId")
        tenant_id = claims.get("tenantId")
        if not isinstance(user_id, str) or not isinstance(tenant_id, str):
            logger.warning("token_identity_claims_missing")
            return None
        if not await self.tenant_lookup(tenant_id):
            logger.warning("token_tenant_missing", tenant_id=tenant_id)
            return None
        user = await self.user_lookup(tenant_id, user_id)
        if user is None:
            logger.warning("token_user_missing", tenant_id=tenant_id, user_id=user_id)
            return None
        if user.password is not None:
            user = user.without_password()
        return Principal(
            user=user,
            tenant_id=tenant_id,
            scope=scope_for_role(user.role),
            token=token,
        )

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        """Resolve an ``Authorization`` header value or raise 401."""
        token = parse_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing authentication")
        principal = await self.validate(token)
        if principal is None:
            raise AuthenticationError("Invalid or expired token")
        bind_principal(principal.tenant_id, principal.user_id)
        return principal


def require_scope(principal: Principal, capability: str) -> Principal:
    if not principal.has_scope(capability):
        logger.warning(
            "scope_denied",
            tenant_id=principal.tenant_id,
            user_id=principal.user_id,
            required=capability,
        )
        raise ForbiddenError(
            "Insufficient scope", detail={"required_scope": capability}
        )
    return principal

