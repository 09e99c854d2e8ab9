from typing import Optional


class TaskServiceError(Exception):
    """Base class for errors the API translates into JSON error responses."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(TaskServiceError):
    """Static configuration (env vars, tenant file) is missing or malformed."""


class InvalidTenantError(TaskServiceError):
    """Tenant identifier is not present in the tenant registry."""

    status_code = 403

    def __init__(self, tenant_id: Optional[str]):
        super().__init__(f"Invalid tenant: {tenant_id}")
        self.tenant_id = tenant_id


# The registry and the executor report the same condition.
UnknownTenantError = InvalidTenantError


class PoolExhaustedOrTimeoutError(TaskServiceError):
    """No pooled connection became available within the connection timeout."""

    status_code = 503

    def __init__(self, timeout_ms: int):
        super().__init__(f"No database connection available after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class QueryTimeoutError(TaskServiceError):
    """A deadline-bounded query did not settle before its bound."""

    status_code = 503

    def __init__(self, timeout_ms: int):
        super().__init__(f"Database query timeout after {timeout_ms}ms")
        self.timeout_ms = timeout_ms
