"""
Static tenant registry.

Tenants are loaded once per process, either from the built-in table below or
from the JSON file named by TENANT_CONFIG_FILE, and are never mutated
afterwards. Tenant ids double as schema-name suffixes, so they are restricted
to lowercase letters, digits and underscores at load time.
"""

import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.api.errors import ConfigurationError, UnknownTenantError

logger = logging.getLogger(__name__)

TENANT_ID_PATTERN = r"^[a-z0-9_]{1,48}$"


class ResourceLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpu: str = Field(..., description="CPU cores available to the tenant namespace")
    memory: str = Field(..., description="Memory quota, e.g. 16Gi")
    storage: str = Field(..., description="Storage quota, e.g. 100Gi")
    pods: int = Field(..., ge=0, description="Maximum pod count")


class TenantConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId", pattern=TENANT_ID_PATTERN)
    name: str = Field(..., min_length=1)
    namespace: str = Field(..., min_length=1)
    resource_limits: ResourceLimits = Field(..., alias="resourceLimits")


_DEFAULT_TENANTS: List[Dict[str, Any]] = [
    {
        "tenantId": "acme",
        "name": "Acme Corporation",
        "namespace": "tenant-acme",
        "resourceLimits": {"cpu": "4", "memory": "16Gi", "storage": "100Gi", "pods": 20},
    },
    {
        "tenantId": "globex",
        "name": "Globex Industries",
        "namespace": "tenant-globex",
        "resourceLimits": {"cpu": "2", "memory": "8Gi", "storage": "50Gi", "pods": 10},
    },
]


class TenantRegistry:
    """Read-only lookup from tenant id to TenantConfig."""

    def __init__(self, configs: Iterable[TenantConfig]):
        tenants: Dict[str, TenantConfig] = {}
        for config in configs:
            if config.tenant_id in tenants:
                raise ConfigurationError(f"Duplicate tenant id '{config.tenant_id}'")
            tenants[config.tenant_id] = config
        self._tenants = tenants

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> "TenantRegistry":
        try:
            return cls(TenantConfig.model_validate(r) for r in records)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid tenant configuration: {exc}") from exc

    def is_valid_tenant(self, tenant_id: Optional[str]) -> bool:
        return isinstance(tenant_id, str) and tenant_id in self._tenants

    def get_tenant_config(self, tenant_id: Optional[str]) -> TenantConfig:
        if not self.is_valid_tenant(tenant_id):
            raise UnknownTenantError(tenant_id)
        return self._tenants[tenant_id]

    def tenant_ids(self) -> List[str]:
        return sorted(self._tenants)

    def __len__(self) -> int:
        return len(self._tenants)


def load_tenant_registry() -> TenantRegistry:
    """Build the registry from TENANT_CONFIG_FILE, or the built-in table if unset."""
    path = os.getenv("TENANT_CONFIG_FILE")
    if not path:
        return TenantRegistry.from_records(_DEFAULT_TENANTS)

    try:
        with open(path, encoding="utf-8") as fh:
            records = json.load(fh)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Cannot read tenant config file '{path}': {exc}") from exc
    if not isinstance(records, list):
        raise ConfigurationError(f"Tenant config file '{path}' must contain a JSON list")

    registry = TenantRegistry.from_records(records)
    logger.info("Loaded %d tenants from %s", len(registry), path)
    return registry


_REGISTRY: Optional[TenantRegistry] = None


# PUBLIC_INTERFACE
def get_registry() -> TenantRegistry:
    """Return the process-wide registry, loading it on first use."""
    global _REGISTRY
    if _REGISTRY is None:
        _REGISTRY = load_tenant_registry()
    return _REGISTRY


# PUBLIC_INTERFACE
def is_valid_tenant(tenant_id: Optional[str]) -> bool:
    """True when tenant_id names a registered tenant."""
    return get_registry().is_valid_tenant(tenant_id)


# PUBLIC_INTERFACE
def get_tenant_config(tenant_id: Optional[str]) -> TenantConfig:
    """Return the tenant's configuration or raise UnknownTenantError."""
    return get_registry().get_tenant_config(tenant_id)
