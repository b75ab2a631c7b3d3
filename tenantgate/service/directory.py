from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tenantgate.config import DEFAULT_TOKEN_TTL_SECONDS
from tenantgate.logging import get_logger
from tenantgate.storage import kv
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.kv import KeyValueStore
from tenantgate.storage.models import Session, Tenant, User, new_id, utcnow_iso

logger = get_logger(__name__)

_TENANT_MUTABLE_FIELDS = frozenset({"name", "domain", "status", "settings"})
_USER_MUTABLE_FIELDS = frozenset({"username", "email", "password", "role", "status"})


class TenantDirectory:
    """Tenant, user and session records over the credential store.

    Lookups return ``None`` when a record is absent or the id is not a
    canonical UUID; store errors propagate to the caller unchanged. Password
    hashes stay inside this class: every user returned by a public method has
    ``password`` cleared, except :meth:`get_user_by_email`, which login needs
    for verification.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        session_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.session_ttl_seconds = session_ttl_seconds
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)

    # Tenants

    async def create_tenant(
        self, name: str, domain: str, settings: Optional[Dict[str, Any]] = None
    ) -> Tenant:
        tenant = Tenant(
            tenant_id=new_id(),
            name=name,
            domain=domain.lower(),
            settings=dict(settings or {}),
        )
        logger.info("tenant_create_started", tenant_id=tenant.tenant_id, domain=tenant.domain)
        domain_key = kv.tenant_domain_key(tenant.domain)
        # The NX write on the domain index is the uniqueness guard
        if not await self.store.set_if_absent(domain_key, tenant.tenant_id):
            logger.warning("tenant_domain_taken", domain=tenant.domain)
            raise ConstraintViolation(
                "Tenant with this domain already exists", {"domain": tenant.domain}
            )
        try:
            await self.store.set(kv.tenant_key(tenant.tenant_id), tenant.to_json())
            await self.store.add_to_set(kv.ALL_TENANTS_KEY, tenant.tenant_id)
        except Exception:
            await self._discard_tenant(tenant)
            raise
        logger.info("tenant_created", tenant_id=tenant.tenant_id, name=tenant.name)
        return tenant

    async def _discard_tenant(self, tenant: Tenant) -> None:
        await self.store.delete(
            kv.tenant_key(tenant.tenant_id),
            kv.tenant_domain_key(tenant.domain),
            kv.tenant_users_key(tenant.tenant_id),
        )
        await self.store.remove_from_set(kv.ALL_TENANTS_KEY, tenant.tenant_id)
        logger.warning("tenant_create_rolled_back", tenant_id=tenant.tenant_id)

    async def create_tenant_with_admin(
        self, name: str, domain: str, username: str, email: str, password: str
    ) -> Tuple[Tenant, User]:
        """Register a tenant and its first admin; neither survives if the other fails."""
        tenant = await self.create_tenant(name, domain)
        try:
            user = await self.create_user(
                tenant.tenant_id, username, email, password, role="admin"
            )
        except Exception:
            await self._discard_tenant(tenant)
            raise
        return tenant, user

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        if not kv.is_record_id(tenant_id):
            logger.warning("tenant_id_malformed")
            return None
        raw = await self.store.get(kv.tenant_key(tenant_id))
        if not raw:
            logger.warning("tenant_not_found", tenant_id=tenant_id)
            return None
        return Tenant.from_json(raw)

    async def tenant_exists(self, tenant_id: str) -> bool:
        return kv.is_record_id(tenant_id) and await self.store.exists(kv.tenant_key(tenant_id))

    async def get_tenant_by_domain(self, domain: str) -> Optional[Tenant]:
        tenant_id = await self.store.get(kv.tenant_domain_key(domain))
        if not tenant_id:
            logger.warning("tenant_domain_not_found", domain=domain)
            return None
        return await self.get_tenant(tenant_id)

    async def update_tenant(
        self, tenant_id: str, updates: Mapping[str, Any]
    ) -> Optional[Tenant]:
        tenant = await self.get_tenant(tenant_id)
        if not tenant:
            return None
        changes = {k: v for k, v in updates.items() if k in _TENANT_MUTABLE_FIELDS and v is not None}
        old_domain = tenant.domain
        new_domain = changes.get("domain")
        if new_domain is not None:
            new_domain = changes["domain"] = new_domain.lower()
        domain_changed = new_domain is not None and new_domain != old_domain
        if domain_changed:
            if not await self.store.set_if_absent(kv.tenant_domain_key(new_domain), tenant_id):
                raise ConstraintViolation(
                    "Tenant with this domain already exists", {"domain": new_domain}
                )
        for name, value in changes.items():
            setattr(tenant, name, value)
        tenant.updated_at = utcnow_iso()
        try:
            await self.store.set(kv.tenant_key(tenant_id), tenant.to_json())
        except Exception:
            if domain_changed:
                await self.store.delete(kv.tenant_domain_key(new_domain))
            raise
        if domain_changed:
            await self.store.delete(kv.tenant_domain_key(old_domain))
        logger.info("tenant_updated", tenant_id=tenant_id, fields=sorted(changes))
        return tenant

    # Users

    async def hash_password(self, password: str) -> str:
        # argon2 is deliberately slow; keep it off the event loop
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    async def verify_password(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        return await asyncio.to_thread(self._check_password, password, password_hash)

    def _check_password(self, password: str, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    async def create_user(
        self,
        tenant_id: str,
        username: str,
        email: str,
        password: str,
        role: Optional[str] = None,
    ) -> User:
        user = User(
            user_id=new_id(),
            tenant_id=tenant_id,
            username=username,
            email=email.lower(),
            password=await self.hash_password(password),
            role=role or "user",
        )
        logger.info("user_create_started", tenant_id=tenant_id, user_id=user.user_id)
        email_key = kv.user_email_key(tenant_id, user.email)
        if not await self.store.set_if_absent(email_key, user.user_id):
            logger.warning("user_email_taken", tenant_id=tenant_id)
            raise ConstraintViolation(
                "User with this email already exists in tenant", {"tenant_id": tenant_id}
            )
        try:
            await self.store.set(kv.user_key(tenant_id, user.user_id), user.to_json())
            await self.store.add_to_set(kv.tenant_users_key(tenant_id), user.user_id)
        except Exception:
            await self.store.delete(email_key, kv.user_key(tenant_id, user.user_id))
            await self.store.remove_from_set(kv.tenant_users_key(tenant_id), user.user_id)
            raise
        logger.info(
            "user_created", tenant_id=tenant_id, user_id=user.user_id, role=user.role
        )
        return user.without_password()

    async def _load_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        if not (kv.is_record_id(tenant_id) and kv.is_record_id(user_id)):
            return None
        raw = await self.store.get(kv.user_key(tenant_id, user_id))
        if not raw:
            return None
        return User.from_json(raw)

    async def get_user_by_email(self, tenant_id: str, email: str) -> Optional[User]:
        """Full record including the password hash, for credential checks only."""
        if not kv.is_record_id(tenant_id):
            return None
        user_id = await self.store.get(kv.user_email_key(tenant_id, email))
        if not user_id:
            logger.warning("user_email_not_found", tenant_id=tenant_id)
            return None
        return await self._load_user(tenant_id, user_id)

    async def get_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        user = await self._load_user(tenant_id, user_id)
        if not user:
            logger.warning("user_not_found", tenant_id=tenant_id, user_id=user_id)
            return None
        return user.without_password()

    async def get_all_users(self, tenant_id: str) -> List[User]:
        if not kv.is_record_id(tenant_id):
            return []
        user_ids = await self.store.set_members(kv.tenant_users_key(tenant_id))
        users: List[User] = []
        for user_id in user_ids:
            user = await self._load_user(tenant_id, user_id)
            # Index entries without a record are skipped
            if user:
                users.append(user.without_password())
        users.sort(key=lambda u: (u.created_at, u.username))
        logger.info("users_listed", tenant_id=tenant_id, count=len(users))
        return users

    async def update_user(
        self, tenant_id: str, user_id: str, updates: Mapping[str, Any]
    ) -> Optional[User]:
        user = await self._load_user(tenant_id, user_id)
        if not user:
            logger.warning("user_update_missing", tenant_id=tenant_id, user_id=user_id)
            return None
        changes = {k: v for k, v in updates.items() if k in _USER_MUTABLE_FIELDS and v is not None}
        if "password" in changes:
            changes["password"] = await self.hash_password(changes["password"])
        old_email = user.email
        new_email = changes.get("email")
        if new_email is not None:
            new_email = changes["email"] = new_email.lower()
        email_changed = new_email is not None and new_email != old_email
        if email_changed:
            if not await self.store.set_if_absent(kv.user_email_key(tenant_id, new_email), user_id):
                raise ConstraintViolation(
                    "User with this email already exists in tenant", {"tenant_id": tenant_id}
                )
        for name, value in changes.items():
            setattr(user, name, value)
        user.updated_at = utcnow_iso()
        try:
            await self.store.set(kv.user_key(tenant_id, user_id), user.to_json())
        except Exception:
            if email_changed:
                await self.store.delete(kv.user_email_key(tenant_id, new_email))
            raise
        if email_changed:
            await self.store.delete(kv.user_email_key(tenant_id, old_email))
        logger.info(
            "user_updated", tenant_id=tenant_id, user_id=user_id, fields=sorted(changes)
        )
        return user.without_password()

    # Token blacklist

    async def blacklist_token(
        self, token: str, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS
    ) -> None:
        await self.store.set_with_expiry(kv.blacklist_key(token), "true", ttl_seconds)
        logger.info("token_blacklisted", ttl_seconds=ttl_seconds)

    async def is_token_blacklisted(self, token: str) -> bool:
        return await self.store.exists(kv.blacklist_key(token))

    # Sessions

    async def create_session(
        self,
        tenant_id: str,
        user_id: str,
        *,
        login_time: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            tenant_id, user_id, login_time=login_time, user_agent=user_agent
        )
        await self.store.set_with_expiry(
            kv.session_key(session.session_id), session.to_json(), self.session_ttl_seconds
        )
        logger.info(
            "session_created",
            session_id=session.session_id,
            tenant_id=tenant_id,
            user_id=user_id,
        )
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        if not kv.is_record_id(session_id):
            return None
        raw = await self.store.get(kv.session_key(session_id))
        return Session.from_json(raw) if raw else None

    async def delete_session(self, session_id: str) -> None:
        await self.store.delete(kv.session_key(session_id))
        logger.info("session_deleted", session_id=session_id)
