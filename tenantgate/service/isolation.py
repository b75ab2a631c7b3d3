from __future__ import annotations

from typing import Optional

from tenantgate.logging import get_logger
from tenantgate.service.auth import Principal
from tenantgate.service.errors import ForbiddenError

logger = get_logger(__name__)

TENANT_HEADER = "X-Tenant-ID"


def enforce_tenant_isolation(
    principal: Principal, declared_tenant_id: Optional[str]
) -> Principal:
    """Reject requests whose declared tenant is absent or not the caller's own.

    Must run after the auth gate; the declared value comes from the
    ``X-Tenant-ID`` header and is compared verbatim.
    """
    if not declared_tenant_id:
        logger.warning("tenant_header_missing", tenant_id=principal.tenant_id)
        raise ForbiddenError(
            f"Missing {TENANT_HEADER} header",
            detail={"reason": "tenant_header_missing"},
        )
    if declared_tenant_id != principal.tenant_id:
        logger.warning(
            "tenant_isolation_violation",
            tenant_id=principal.tenant_id,
            declared_tenant_id=declared_tenant_id,
            user_id=principal.user_id,
        )
        raise ForbiddenError(
            "Tenant ID does not match authenticated user",
            detail={"reason": "tenant_mismatch"},
        )
    return principal
