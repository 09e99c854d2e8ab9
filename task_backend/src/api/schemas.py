from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    todo = "todo"
    in_progress = "in_progress"
    done = "done"


class TaskPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class APIMessage(BaseModel):
    message: str = Field(..., description="Human readable message")


class CurrentUser(BaseModel):
    user_id: str = Field(..., description="User id from the verified token")
    email: Optional[str] = Field(None, description="Email claim, passed through as signed")
    tenant_id: str = Field(..., description="Tenant id from the verified token")


# =========================
# Tasks
# =========================

class Task(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    assignee: Optional[str] = None
    due_date: Optional[date] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.todo
    priority: TaskPriority = TaskPriority.medium
    assignee: Optional[str] = None
    due_date: Optional[date] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assignee: Optional[str] = None
    due_date: Optional[date] = None

    # Omit a field to leave it unchanged; these columns cannot be cleared.
    @field_validator("title", "status", "priority")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value


class TaskListResponse(BaseModel):
    tasks: List[Task]


class TaskResponse(BaseModel):
    task: Task


class TaskDeletedResponse(APIMessage):
    task: Task


class TaskStatistics(BaseModel):
    total: int = 0
    by_status: Dict[TaskStatus, int] = Field(default_factory=dict)
    by_priority: Dict[TaskPriority, int] = Field(default_factory=dict)
    overdue: int = 0


class TaskStatisticsResponse(BaseModel):
    statistics: TaskStatistics


# =========================
# Tenant
# =========================

class TenantResourceLimits(BaseModel):
    cpu: str
    memory: str
    storage: str
    pods: int


class TenantInfo(BaseModel):
    id: str
    name: str
    namespace: str
    resource_limits: TenantResourceLimits


class TenantInfoResponse(BaseModel):
    tenant: TenantInfo


# =========================
# Health
# =========================

class HealthResponse(BaseModel):
    status: str = Field(..., description="healthy or degraded")
    timestamp: datetime
    uptime: float = Field(..., description="Seconds since process start")
    database: str = Field(..., description="connected or disconnected")
    warning: Optional[str] = None


class ProbeResponse(BaseModel):
    status: str
    timestamp: datetime
    error: Optional[str] = None
