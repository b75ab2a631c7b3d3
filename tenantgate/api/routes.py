from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from tenantgate.api.error_handling import error_response
from tenantgate.api.schemas import (
    AuthTokenResponse,
    ChatRequest,
    CreateUserRequest,
    Envelope,
    LoginRequest,
    MeResponse,
    RegisterRequest,
    SessionResponse,
    TenantResponse,
    TenantSummary,
    UpdateTenantRequest,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
)
from tenantgate.logging import get_logger
from tenantgate.service.auth import Principal, require_scope
from tenantgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from tenantgate.service.isolation import TENANT_HEADER, enforce_tenant_isolation
from tenantgate.service.runtime import get_runtime
from tenantgate.storage.models import Session, Tenant, User, utcnow_iso

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _ok(data) -> Envelope:
    return Envelope(status="ok", data=data)


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(**user.public_dict())


def _tenant_summary(tenant: Tenant) -> TenantSummary:
    return TenantSummary(**tenant.summary())


def _tenant_to_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(**tenant.to_dict())


def _session_to_response(session: Session) -> SessionResponse:
    return SessionResponse(**session.to_dict())


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    return require_scope(principal, "admin")


async def get_tenant_principal(
    principal: Principal = Depends(get_principal),
    x_tenant_id: Optional[str] = Header(None, convert_underscores=False, alias=TENANT_HEADER),
) -> Principal:
    return enforce_tenant_isolation(principal, x_tenant_id)


async def get_tenant_admin_principal(
    principal: Principal = Depends(get_admin_principal),
    x_tenant_id: Optional[str] = Header(None, convert_underscores=False, alias=TENANT_HEADER),
) -> Principal:
    return enforce_tenant_isolation(principal, x_tenant_id)


# Auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a tenant together with its first admin user and return a token."""
    runtime = get_runtime()
    logger.info("registration_started", domain=body.domain)
    # Fast path only; the directory's NX index write is authoritative
    if await runtime.directory.get_tenant_by_domain(body.domain):
        raise ConflictError(
            "Tenant with this domain already exists", detail={"domain": body.domain}
        )
    tenant, user = await runtime.directory.create_tenant_with_admin(
        body.tenant_name, body.domain, body.username, body.email, body.password
    )
    token = runtime.tokens.issue(user.user_id, tenant.tenant_id, user.role)
    logger.info("registration_completed", tenant_id=tenant.tenant_id, user_id=user.user_id)
    return _ok(
        AuthTokenResponse(
            token=token,
            expires_in=runtime.tokens.ttl_seconds,
            user=_user_to_response(user),
            tenant=_tenant_summary(tenant),
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    directory = runtime.directory
    if body.tenant_id:
        tenant = await directory.get_tenant(body.tenant_id)
    else:
        tenant = await directory.get_tenant_by_domain(body.domain or "")
    if not tenant:
        raise NotFoundError("Tenant not found")
    if not tenant.is_active:
        logger.warning("login_tenant_inactive", tenant_id=tenant.tenant_id, status=tenant.status)
        raise ForbiddenError("Tenant is not active")

    user = await directory.get_user_by_email(tenant.tenant_id, body.email)
    # Unknown email and wrong password share one response
    if not user or not await directory.verify_password(body.password, user.password):
        logger.warning("login_invalid_credentials", tenant_id=tenant.tenant_id)
        raise AuthenticationError("Invalid credentials")
    if not user.is_active:
        logger.warning("login_user_inactive", tenant_id=tenant.tenant_id, user_id=user.user_id)
        raise ForbiddenError("User account is not active")

    token = runtime.tokens.issue(user.user_id, tenant.tenant_id, user.role)
    session = await directory.create_session(
        tenant.tenant_id,
        user.user_id,
        login_time=utcnow_iso(),
        user_agent=request.headers.get("user-agent"),
    )
    logger.info(
        "login_succeeded",
        tenant_id=tenant.tenant_id,
        user_id=user.user_id,
        session_id=session.session_id,
    )
    return _ok(
        AuthTokenResponse(
            token=token,
            expires_in=runtime.tokens.ttl_seconds,
            user=_user_to_response(user.without_password()),
            tenant=_tenant_summary(tenant),
            session_id=session.session_id,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.directory.blacklist_token(
        principal.token or "", ttl_seconds=runtime.tokens.ttl_seconds
    )
    logger.info("logout_completed", tenant_id=principal.tenant_id, user_id=principal.user_id)
    return _ok({"logged_out": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    tenant = await runtime.directory.get_tenant(principal.tenant_id)
    return _ok(
        MeResponse(
            user=_user_to_response(principal.user),
            tenant=_tenant_summary(tenant) if tenant else None,
            scope=principal.scope,
        )
    )


# Users


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: CreateUserRequest, principal: Principal = Depends(get_admin_principal)
):
    runtime = get_runtime()
    tenant_id = principal.tenant_id
    if await runtime.directory.get_user_by_email(tenant_id, body.email):
        raise ConflictError(
            "User with this email already exists in tenant", detail={"tenant_id": tenant_id}
        )
    user = await runtime.directory.create_user(
        tenant_id, body.username, body.email, body.password, role=body.role
    )
    logger.info(
        "user_created_by_admin",
        tenant_id=tenant_id,
        user_id=user.user_id,
        admin_id=principal.user_id,
    )
    return _ok(_user_to_response(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(principal: Principal = Depends(get_admin_principal)):
    runtime = get_runtime()
    users = await runtime.directory.get_all_users(principal.tenant_id)
    return _ok(
        UserListResponse(users=[_user_to_response(u) for u in users], count=len(users))
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str, principal: Principal = Depends(get_admin_principal)):
    runtime = get_runtime()
    user = await runtime.directory.get_user(principal.tenant_id, user_id)
    if not user:
        raise NotFoundError("User not found", detail={"user_id": user_id})
    return _ok(_user_to_response(user))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    user_id: str,
    body: UpdateUserRequest,
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    user = await runtime.directory.update_user(
        principal.tenant_id, user_id, body.model_dump(exclude_none=True)
    )
    if not user:
        raise NotFoundError("User not found", detail={"user_id": user_id})
    return _ok(_user_to_response(user))


# Tenant


@router.get("/tenant", response_model=Envelope, tags=["tenant"])
async def get_tenant(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    tenant = await runtime.directory.get_tenant(principal.tenant_id)
    if not tenant:
        raise NotFoundError("Tenant not found")
    return _ok(_tenant_to_response(tenant))


@router.patch("/tenant", response_model=Envelope, tags=["tenant"])
async def update_tenant(
    body: UpdateTenantRequest,
    principal: Principal = Depends(get_tenant_admin_principal),
):
    runtime = get_runtime()
    tenant = await runtime.directory.update_tenant(
        principal.tenant_id, body.model_dump(exclude_none=True)
    )
    if not tenant:
        raise NotFoundError("Tenant not found")
    return _ok(_tenant_to_response(tenant))


# Sessions


async def _owned_session(session_id: str, principal: Principal) -> Session:
    runtime = get_runtime()
    session = await runtime.directory.get_session(session_id)
    # Sessions of other tenants, or of other users for non-admins, read as missing
    if (
        not session
        or session.tenant_id != principal.tenant_id
        or (session.user_id != principal.user_id and not principal.has_scope("admin"))
    ):
        raise NotFoundError("Session not found", detail={"session_id": session_id})
    return session


@router.get("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def get_session(session_id: str, principal: Principal = Depends(get_principal)):
    session = await _owned_session(session_id, principal)
    return _ok(_session_to_response(session))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def delete_session(session_id: str, principal: Principal = Depends(get_principal)):
    session = await _owned_session(session_id, principal)
    await get_runtime().directory.delete_session(session.session_id)
    return _ok({"deleted": True, "session_id": session.session_id})


# Inference proxy


@router.post("/llm/chat", response_model=Envelope, tags=["llm"])
async def chat(body: ChatRequest, principal: Principal = Depends(get_tenant_principal)):
    runtime = get_runtime()
    result = await runtime.inference.chat(body.to_upstream(), principal.tenant_id)
    return _ok({**result, "tenant_id": principal.tenant_id, "user_id": principal.user_id})


@router.get("/llm/models", response_model=Envelope, tags=["llm"])
async def list_models(principal: Principal = Depends(get_tenant_principal)):
    runtime = get_runtime()
    result = await runtime.inference.list_models()
    return _ok({**result, "tenant_id": principal.tenant_id})


@router.get("/llm/health", response_model=Envelope, tags=["llm"])
async def inference_health():
    runtime = get_runtime()
    ollama_url = runtime.inference.base_url
    if not await runtime.inference.check_health():
        return error_response(
            503,
            "Inference service is unavailable",
            {"ollama_url": ollama_url},
            code="service_unavailable",
        )
    return _ok({"status": "healthy", "ollama_url": ollama_url})
