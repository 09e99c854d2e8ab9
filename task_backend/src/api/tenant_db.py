"""
Tenant-scoped query execution (schema-per-tenant isolation).

Each call checks out its own connection and points the session's search_path
at the tenant's schema before running the caller's statement. The pool does not
reset session state on release, so the schema is set again on every call and
never assumed from a previous user of the connection.
"""

import re
from typing import Any, Optional, Sequence

from src.api import db
from src.api.errors import InvalidTenantError
from src.api.tenants import TENANT_ID_PATTERN, TenantRegistry, get_registry

SCHEMA_PREFIX = "tenant_"
_SAFE_TENANT_ID = re.compile(TENANT_ID_PATTERN)


# PUBLIC_INTERFACE
def tenant_schema(tenant_id: str) -> str:
    """Schema name for a tenant: tenant_<tenantId>."""
    # Schema names are interpolated into SQL text, so only plain identifiers may pass.
    if not isinstance(tenant_id, str) or not _SAFE_TENANT_ID.match(tenant_id):
        raise InvalidTenantError(tenant_id)
    return f"{SCHEMA_PREFIX}{tenant_id}"


def search_path_statement(tenant_id: str) -> str:
    return f"SET search_path TO {tenant_schema(tenant_id)}"


# PUBLIC_INTERFACE
async def query_in_tenant(
    tenant_id: str,
    query: str,
    params: Optional[Sequence[Any]] = None,
    registry: Optional[TenantRegistry] = None,
    manager: Optional[db.PoolManager] = None,
) -> db.QueryResult:
    """
    Run query with bound params inside the tenant's schema.

    Raises InvalidTenantError before touching the pool when tenant_id is not
    registered. The search_path statement and the query run back to back on
    the same connection; the connection is released on every exit path.
    """
    registry = registry or get_registry()
    if not registry.is_valid_tenant(tenant_id):
        raise InvalidTenantError(tenant_id)

    manager = manager or db.get_pool_manager()
    return await manager.execute(
        [
            (search_path_statement(tenant_id), None),
            (query, params or []),
        ]
    )
