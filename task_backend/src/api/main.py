import asyncio
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import psycopg2
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api import db, tasks, tenants
from src.api.errors import TaskServiceError
from src.api.schemas import (
    CurrentUser,
    HealthResponse,
    ProbeResponse,
    TaskCreate,
    TaskDeletedResponse,
    TaskListResponse,
    TaskResponse,
    TaskStatistics,
    TaskStatisticsResponse,
    TaskStatus,
    TaskUpdate,
    TenantInfo,
    TenantInfoResponse,
    TenantResourceLimits,
)
from src.api.tenant_context import TenantContext, ensure_tenant_isolation

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

HEALTH_QUERY_TIMEOUT_MS = 3000
# Slightly less than the orchestrator's 20s readiness probe timeout.
READINESS_TIMEOUT_MS = 18000
READINESS_RECONNECT_ATTEMPTS = 3

_STARTED_AT = time.monotonic()

openapi_tags = [
    {"name": "Health", "description": "Liveness, readiness and database health."},
    {"name": "Auth", "description": "Current user from the bearer token."},
    {"name": "Tasks", "description": "Task CRUD scoped to the caller's tenant schema."},
    {"name": "Tenant", "description": "Tenant configuration."},
]

app = FastAPI(
    title="Multi-Tenant Task Management API",
    description=(
        "Task management API with schema-per-tenant isolation. "
        "Each request runs against the PostgreSQL schema of the tenant named in its token.\n\n"
        "Auth: Use the `Authorization: Bearer <token>` header for protected routes."
    ),
    version="1.0.0",
    openapi_tags=openapi_tags,
)

# CORS: allow all by default. Restrict via CORS_ALLOW_ORIGINS env (comma separated).
allow_origins = ["*"]
_origins_env = os.getenv("CORS_ALLOW_ORIGINS")
if _origins_env:
    allow_origins = [o.strip() for o in _origins_env.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TaskServiceError)
async def _service_error_handler(request: Request, exc: TaskServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def _not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity} not found")


@contextmanager
def _database_errors(detail: str) -> Iterator[None]:
    """Turn driver failures into a 500 with a per-operation message."""
    try:
        yield
    except psycopg2.Error:
        logger.exception(detail)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@app.on_event("startup")
def _startup() -> None:
    db.init_db_pool()
    tenants.get_registry()


@app.on_event("shutdown")
def _shutdown() -> None:
    db.close_db_pool()


@app.get("/", tags=["Health"], summary="Service index")
def index() -> Dict[str, Any]:
    """List the API's route groups."""
    return {
        "message": "Task Management API",
        "version": app.version,
        "endpoints": {
            "health": "/health",
            "auth": "/api/auth",
            "tasks": "/api/tasks",
            "tenant": "/api/tenant",
        },
    }


# =========================
# Health
# =========================

@app.get("/health", response_model=HealthResponse, tags=["Health"], summary="Health check")
async def health_check() -> HealthResponse:
    """
    Report process and database health.

    Always 200: a down database degrades the report but must not get the
    process restarted.
    """
    uptime = time.monotonic() - _STARTED_AT
    try:
        await db.query_with_timeout(db.PROBE_QUERY, timeout_ms=HEALTH_QUERY_TIMEOUT_MS)
    except (TaskServiceError, psycopg2.Error) as exc:
        logger.error("Health check failed: %s", exc)
        return HealthResponse(status="degraded", timestamp=_now(), uptime=uptime, database="disconnected", warning=str(exc))
    return HealthResponse(status="healthy", timestamp=_now(), uptime=uptime, database="connected")


async def _database_ready() -> bool:
    manager = db.get_pool_manager()
    if not manager.is_connected:
        logger.info("Pool not connected, attempting to reconnect...")
        if not await manager.connect_with_retry(READINESS_RECONNECT_ATTEMPTS):
            return False
    await manager.query_with_timeout(db.PROBE_QUERY, timeout_ms=HEALTH_QUERY_TIMEOUT_MS)
    return True


@app.get(
    "/health/ready",
    response_model=ProbeResponse,
    response_model_exclude_none=True,
    tags=["Health"],
    summary="Readiness check",
)
async def readiness_check() -> Any:
    """Ready only when the database answers within its bound, after one reconnect cycle if needed."""
    error: Optional[str] = "Database not ready"
    try:
        ready = await asyncio.wait_for(_database_ready(), READINESS_TIMEOUT_MS / 1000)
    except asyncio.TimeoutError:
        ready, error = False, f"Readiness check timeout after {READINESS_TIMEOUT_MS}ms"
    except (TaskServiceError, psycopg2.Error) as exc:
        ready, error = False, str(exc)

    if ready:
        return ProbeResponse(status="ready", timestamp=_now())
    logger.error("Readiness check failed: %s", error)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=ProbeResponse(status="not ready", timestamp=_now(), error=error).model_dump(mode="json"),
    )


@app.get(
    "/health/live",
    response_model=ProbeResponse,
    response_model_exclude_none=True,
    tags=["Health"],
    summary="Liveness check",
)
def liveness_check() -> ProbeResponse:
    """Alive whenever the process can answer, regardless of database state."""
    return ProbeResponse(status="alive", timestamp=_now())


# =========================
# Auth
# =========================

@app.get("/api/auth/me", response_model=CurrentUser, tags=["Auth"], summary="Get current user")
def me(ctx: TenantContext = Depends(ensure_tenant_isolation)) -> CurrentUser:
    """Return the user and tenant carried by the bearer token."""
    return ctx.user


# =========================
# Tasks
# =========================

@app.get("/api/tasks", response_model=TaskListResponse, tags=["Tasks"], summary="List tasks")
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status", description="Filter by status"),
    assignee: Optional[str] = Query(None, description="Filter by assignee"),
    ctx: TenantContext = Depends(ensure_tenant_isolation),
) -> Dict[str, Any]:
    """List the tenant's tasks, newest first."""
    with _database_errors("Failed to fetch tasks"):
        rows = await tasks.find_all(ctx.query, status=status_filter, assignee=assignee)
    return {"tasks": rows}


@app.get("/api/tasks/statistics", response_model=TaskStatisticsResponse, tags=["Tasks"], summary="Task statistics")
async def task_statistics(ctx: TenantContext = Depends(ensure_tenant_isolation)) -> TaskStatisticsResponse:
    """Counts of the tenant's tasks by status and priority."""
    with _database_errors("Failed to fetch statistics"):
        stats = await tasks.get_statistics(ctx.query)
    return TaskStatisticsResponse(statistics=TaskStatistics(**stats))


@app.get("/api/tasks/{task_id}", response_model=TaskResponse, tags=["Tasks"], summary="Get task")
async def get_task(task_id: int, ctx: TenantContext = Depends(ensure_tenant_isolation)) -> Dict[str, Any]:
    """Get a task by id."""
    with _database_errors("Failed to fetch task"):
        task = await tasks.find_by_id(ctx.query, task_id)
    if not task:
        raise _not_found("Task")
    return {"task": task}


@app.post(
    "/api/tasks",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Tasks"],
    summary="Create task",
)
async def create_task(payload: TaskCreate, ctx: TenantContext = Depends(ensure_tenant_isolation)) -> Dict[str, Any]:
    """Create a task owned by the current user."""
    with _database_errors("Failed to create task"):
        task = await tasks.create(ctx.query, payload.model_dump(), created_by=ctx.user.user_id)
    return {"task": task}


@app.put("/api/tasks/{task_id}", response_model=TaskResponse, tags=["Tasks"], summary="Update task")
async def update_task(
    task_id: int, payload: TaskUpdate, ctx: TenantContext = Depends(ensure_tenant_isolation)
) -> Dict[str, Any]:
    """Update the supplied fields of a task."""
    with _database_errors("Failed to update task"):
        task = await tasks.update(ctx.query, task_id, payload.model_dump(exclude_unset=True))
    if not task:
        raise _not_found("Task")
    return {"task": task}


@app.delete("/api/tasks/{task_id}", response_model=TaskDeletedResponse, tags=["Tasks"], summary="Delete task")
async def delete_task(task_id: int, ctx: TenantContext = Depends(ensure_tenant_isolation)) -> Dict[str, Any]:
    """Delete a task."""
    with _database_errors("Failed to delete task"):
        task = await tasks.delete(ctx.query, task_id)
    if not task:
        raise _not_found("Task")
    return {"message": "Task deleted successfully", "task": task}


# =========================
# Tenant
# =========================

@app.get("/api/tenant/info", response_model=TenantInfoResponse, tags=["Tenant"], summary="Tenant information")
def tenant_info(ctx: TenantContext = Depends(ensure_tenant_isolation)) -> TenantInfoResponse:
    """Configuration of the caller's tenant."""
    config = tenants.get_tenant_config(ctx.tenant_id)
    return TenantInfoResponse(
        tenant=TenantInfo(
            id=config.tenant_id,
            name=config.name,
            namespace=config.namespace,
            resource_limits=TenantResourceLimits(**config.resource_limits.model_dump()),
        )
    )
