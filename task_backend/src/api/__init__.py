"""
API package for the multi-tenant task service.

Modules:
- db: PostgreSQL pool manager, connectivity state, timeout-bounded queries
- tenants: static tenant registry
- tenant_db: schema-per-tenant query execution
- tenant_context: request dependency binding the tenant-scoped query function
- auth_utils: JWT issuing and verification
- tasks: task persistence through the tenant-scoped query function
- schemas: Pydantic models for the REST API
"""
