from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

from fastapi import Depends, HTTPException, status

from src.api import tenants
from src.api.auth_utils import get_current_user
from src.api.db import QueryResult
from src.api.schemas import CurrentUser
from src.api.tenant_db import query_in_tenant

TenantQuery = Callable[..., Awaitable[QueryResult]]


@dataclass(frozen=True)
class TenantContext:
    """Per-request tenant binding handed to route handlers."""

    tenant_id: str
    user: CurrentUser
    query: TenantQuery


def bind_tenant_query(tenant_id: str) -> TenantQuery:
    """Return query(sql, params) pinned to tenant_id's schema."""

    async def _query(sql: str, params: Optional[Sequence[Any]] = None) -> QueryResult:
        return await query_in_tenant(tenant_id, sql, params)

    return _query


# PUBLIC_INTERFACE
def ensure_tenant_isolation(user: CurrentUser = Depends(get_current_user)) -> TenantContext:
    """Dependency that binds the caller's tenant-scoped query function."""
    if user is None or not user.tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant context required")
    if not tenants.is_valid_tenant(user.tenant_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid tenant")
    return TenantContext(tenant_id=user.tenant_id, user=user, query=bind_tenant_query(user.tenant_id))
