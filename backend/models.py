from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from database import Base
from enums import (
    IncidentEnvironment,
    IncidentStatus,
    IncidentTier,
    ParentType,
    Role,
    TaskPriority,
    TaskStatus,
)


def _now():
    return datetime.now(timezone.utc)


def _enum(enum_cls):
    # Stored as plain strings so SQLite and Postgres behave the same
    return SAEnum(enum_cls, native_enum=False, length=20, validate_strings=True)


# ------------------------------------------------------------------
# User Model
# ------------------------------------------------------------------

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, nullable=True)
    password = Column(String(255), nullable=False)
    first_name = Column(String(100))
    last_name = Column(String(100))
    role = Column(_enum(Role), nullable=False, default=Role.DEVELOPER)
    is_active = Column(Boolean, nullable=False, default=True)

    # Primary team, used to scope who a non-manager may assign tasks to
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)

    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    team = relationship("Team", foreign_keys=[team_id])
    memberships = relationship("TeamMember", back_populates="user")


# ------------------------------------------------------------------
# Team Model
# ------------------------------------------------------------------

class Team(Base):
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text)
    color = Column(String(20))
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=_now)

    members = relationship("TeamMember", back_populates="team")
    tasks = relationship("Task", back_populates="team")


# ------------------------------------------------------------------
# TeamMember Association Table
# (Many-to-Many: Users <-> Teams)
# ------------------------------------------------------------------

class TeamMember(Base):
    __tablename__ = "team_members"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=False)
    role = Column(String(20), default="member")  # lead / member

    joined_at = Column(DateTime, default=_now)

    user = relationship("User", back_populates="memberships")
    team = relationship("Team", back_populates="members")


# ------------------------------------------------------------------
# Task Model
# ------------------------------------------------------------------

class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text)

    status = Column(_enum(TaskStatus), nullable=False, default=TaskStatus.TODO)
    priority = Column(_enum(TaskPriority), nullable=False, default=TaskPriority.MEDIUM)

    due_date = Column(Date)
    start_date = Column(Date)

    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)

    # Set iff status == DONE, maintained by lifecycle.apply_task_changes
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    creator = relationship("User", foreign_keys=[creator_id])
    assignee = relationship("User", foreign_keys=[assignee_id])
    team = relationship("Team", back_populates="tasks")
    comments = relationship(
        "TaskComment",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="TaskComment.created_at.desc()",
    )
    attachments = relationship("Attachment", back_populates="task", cascade="all, delete-orphan")


# ------------------------------------------------------------------
# Incident Model
# ------------------------------------------------------------------

class Incident(Base):
    __tablename__ = "incidents"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    system = Column(String(100), nullable=False, index=True)
    environment = Column(_enum(IncidentEnvironment), nullable=False)
    tier = Column(_enum(IncidentTier), nullable=False)
    status = Column(_enum(IncidentStatus), nullable=False, default=IncidentStatus.OPEN)

    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # "metadata" is reserved on declarative classes
    incident_metadata = Column("metadata", JSON, default=dict)

    resolved_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_now, index=True)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    assignee = relationship("User", foreign_keys=[assignee_id])
    comments = relationship(
        "IncidentComment",
        back_populates="incident",
        cascade="all, delete-orphan",
        order_by="IncidentComment.created_at",
    )
    attachments = relationship("Attachment", back_populates="incident", cascade="all, delete-orphan")


# ------------------------------------------------------------------
# Comment Models (open to every authenticated user)
# ------------------------------------------------------------------

class TaskComment(Base):
    __tablename__ = "task_comments"

    id = Column(Integer, primary_key=True, index=True)
    content = Column(Text, nullable=False)

    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    created_at = Column(DateTime, default=_now)

    task = relationship("Task", back_populates="comments")
    user = relationship("User")


class IncidentComment(Base):
    __tablename__ = "incident_comments"

    id = Column(Integer, primary_key=True, index=True)
    content = Column(Text, nullable=False)

    incident_id = Column(Integer, ForeignKey("incidents.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    created_at = Column(DateTime, default=_now)

    incident = relationship("Incident", back_populates="comments")
    user = relationship("User")


# ------------------------------------------------------------------
# Attachment Model (file stored under config.UPLOAD_DIR)
# ------------------------------------------------------------------

class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, index=True)
    filename = Column(String(255), nullable=False)  # original filename for display
    path = Column(String(500), nullable=False)  # relative to the upload root
    mime_type = Column(String(100))
    size = Column(Integer, nullable=False)

    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=True)
    incident_id = Column(Integer, ForeignKey("incidents.id"), nullable=True)

    created_at = Column(DateTime, default=_now)

    uploader = relationship("User")
    task = relationship("Task", back_populates="attachments")
    incident = relationship("Incident", back_populates="attachments")

    @property
    def parent_type(self):
        return ParentType.TASK if self.task_id is not None else ParentType.INCIDENT

    @property
    def parent(self):
        return self.task if self.task_id is not None else self.incident
