from pydantic import BaseModel, EmailStr, field_validator
from datetime import datetime, date
from typing import Any, Dict, List, Optional

from enums import (
    IncidentEnvironment,
    IncidentStatus,
    IncidentTier,
    ParentType,
    Role,
    TaskPriority,
    TaskStatus,
)


def _upper(value):
    """Enum inputs are accepted in any case ("resolved" -> "RESOLVED")."""
    if isinstance(value, str):
        return value.strip().upper()
    return value


def _not_null(value, info):
    if value is None:
        raise ValueError(f"{info.field_name} may not be null")
    return value


# =========================
# 🔹 USER SCHEMAS
# =========================

class UserLogin(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    message: str
    session_token: str
    user_id: int
    username: str
    role: Role


class UserCreate(BaseModel):
    username: str
    password: str
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role = Role.DEVELOPER
    team_id: Optional[int] = None

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role(cls, value):
        return _upper(value)


class UserUpdate(BaseModel):
    """Profile update. Password changes need current_password for self-service."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class UserSummary(BaseModel):
    id: int
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role

    class Config:
        from_attributes = True


class UserResponse(UserSummary):
    email: Optional[str] = None
    is_active: bool
    team_id: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# =========================
# 🔹 TEAM SCHEMAS
# =========================

class TeamSummary(BaseModel):
    id: int
    name: str
    color: Optional[str] = None

    class Config:
        from_attributes = True


class TeamResponse(TeamSummary):
    description: Optional[str] = None
    member_count: int = 0


# =========================
# 🔹 SHARED LISTING SCHEMAS
# =========================

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


# =========================
# 🔹 COMMENT SCHEMAS
# =========================

class CommentCreate(BaseModel):
    content: str


class CommentResponse(BaseModel):
    id: int
    content: str
    task_id: Optional[int] = None
    incident_id: Optional[int] = None
    user: UserSummary
    created_at: datetime


# =========================
# 🔹 ATTACHMENT SCHEMAS
# =========================

class AttachmentResponse(BaseModel):
    id: int
    filename: str
    size: int
    mime_type: Optional[str] = None
    parent_type: ParentType
    task_id: Optional[int] = None
    incident_id: Optional[int] = None
    uploader: UserSummary
    created_at: datetime


# =========================
# 🔹 TASK SCHEMAS
# =========================

class TaskCreate(BaseModel):
    title: str
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[date] = None
    start_date: Optional[date] = None
    assignee_id: Optional[int] = None
    team_id: Optional[int] = None

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, value):
        return _upper(value)


class TaskUpdate(BaseModel):
    """
    Partial update: only the keys present in the request body are applied.
    Unknown keys are ignored; completed_at is derived, never sent.
    """
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[date] = None
    start_date: Optional[date] = None
    assignee_id: Optional[int] = None
    team_id: Optional[int] = None

    @field_validator("status", "priority", mode="before")
    @classmethod
    def normalize_enums(cls, value):
        return _upper(value)

    @field_validator("title", "status", "priority")
    @classmethod
    def reject_null(cls, value, info):
        return _not_null(value, info)


class TaskResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[date] = None
    start_date: Optional[date] = None
    creator_id: int
    creator: Optional[UserSummary] = None
    assignee_id: Optional[int] = None
    assignee: Optional[UserSummary] = None
    team_id: Optional[int] = None
    team: Optional[TeamSummary] = None
    completed_at: Optional[datetime] = None
    comment_count: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None


class TaskDetailResponse(TaskResponse):
    comments: List[CommentResponse] = []
    attachments: List[AttachmentResponse] = []


class TaskListResponse(BaseModel):
    tasks: List[TaskResponse]
    pagination: Pagination


# =========================
# 🔹 INCIDENT SCHEMAS
# =========================

class IncidentCreate(BaseModel):
    title: str
    description: Optional[str] = None
    system: str
    environment: IncidentEnvironment
    tier: IncidentTier
    assignee_id: Optional[int] = None

    @field_validator("environment", "tier", mode="before")
    @classmethod
    def normalize_enums(cls, value):
        return _upper(value)


class IncidentIngest(BaseModel):
    """Payload accepted from monitoring systems on the API-key endpoint."""
    title: str
    description: Optional[str] = None
    system: str
    environment: IncidentEnvironment
    tier: IncidentTier
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("environment", "tier", mode="before")
    @classmethod
    def normalize_enums(cls, value):
        return _upper(value)


class IncidentUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    assignee_id: Optional[int] = None
    status: Optional[IncidentStatus] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        return _upper(value)

    @field_validator("title", "status")
    @classmethod
    def reject_null(cls, value, info):
        return _not_null(value, info)


class IncidentResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    system: str
    environment: IncidentEnvironment
    tier: IncidentTier
    status: IncidentStatus
    assignee_id: Optional[int] = None
    assignee: Optional[UserSummary] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    comment_count: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None


class IncidentDetailResponse(IncidentResponse):
    comments: List[CommentResponse] = []
    attachments: List[AttachmentResponse] = []


class IncidentListResponse(BaseModel):
    incidents: List[IncidentResponse]
    pagination: Pagination


class IngestedIncidentResponse(BaseModel):
    id: int
    title: str
    system: str
    environment: IncidentEnvironment
    tier: IncidentTier
    status: IncidentStatus
    created_at: datetime


# =========================
# 🔹 DASHBOARD SCHEMAS
# =========================

class DashboardOverview(BaseModel):
    total_tasks: int
    overdue_tasks: int
    open_incidents: int
    team_members: int


class DashboardStats(BaseModel):
    tasks_by_status: Dict[str, int]
    incidents_by_tier: Dict[str, int]


class DashboardResponse(BaseModel):
    overview: DashboardOverview
    recent_tasks: List[TaskResponse]
    recent_incidents: List[IncidentResponse]
    my_assigned_tasks: List[TaskResponse]
    stats: DashboardStats


class DistributionItem(BaseModel):
    name: str
    value: int


class IncidentSummaryTotals(BaseModel):
    total: int
    resolved: int
    mttr: float  # hours
    recent_24h: int
    open_critical: int
    resolution_rate: int  # percent


class IncidentDistributions(BaseModel):
    status: List[DistributionItem]
    tier: List[DistributionItem]
    environment: List[DistributionItem]
    systems: List[DistributionItem]


class IncidentTrendPoint(BaseModel):
    date: str  # YYYY-MM-DD
    total: int
    critical: int
    major: int
    minor: int


class IncidentSummaryResponse(BaseModel):
    summary: IncidentSummaryTotals
    distributions: IncidentDistributions
    trends: List[IncidentTrendPoint]
