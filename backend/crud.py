from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy import case, func, or_
from datetime import date, datetime, time, timedelta
from fastapi import HTTPException, status
import math
import logging

from enums import (
    IncidentEnvironment,
    IncidentStatus,
    IncidentTier,
    ParentType,
    TaskPriority,
    TaskStatus,
)
from models import (
    Attachment,
    Incident,
    IncidentComment,
    Task,
    TaskComment,
    Team,
    TeamMember,
    User,
)
from policy import (
    Actor,
    EntitySnapshot,
    NoValidUpdates,
    PermissionDenied,
    Relationship,
    ATTACHMENT_DELETE_POLICY,
    INCIDENT_CREATE_POLICY,
    INCIDENT_UPDATE_POLICY,
    PROFILE_UPDATE_POLICY,
    TASK_ASSIGN_ANYONE_POLICY,
    TASK_DELETE_POLICY,
    TASK_UPDATE_POLICY,
    USER_ADMIN_POLICY,
)
from schemas import (
    CommentCreate,
    IncidentCreate,
    IncidentIngest,
    IncidentUpdate,
    TaskCreate,
    TaskUpdate,
    UserCreate,
    UserUpdate,
)
import auth
import lifecycle
import sessions
import storage

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# POLICY ENFORCEMENT
# ------------------------------------------------------------------

def _authorize(check, *args):
    """
    Run a policy check and translate its verdict into an HTTP error.
    Forbidden -> 403, nothing to apply -> 400.
    """
    try:
        return check(*args)
    except PermissionDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except NoValidUpdates as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


# ------------------------------------------------------------------
# ENTITY SNAPSHOT LOADERS
# ------------------------------------------------------------------

def task_snapshot(task: Task) -> EntitySnapshot:
    return EntitySnapshot({
        Relationship.CREATOR: task.creator_id,
        Relationship.ASSIGNEE: task.assignee_id,
    })


def incident_snapshot(incident: Incident) -> EntitySnapshot:
    return EntitySnapshot({Relationship.ASSIGNEE: incident.assignee_id})


def attachment_snapshot(attachment: Attachment) -> EntitySnapshot:
    parent = attachment.parent
    return EntitySnapshot({
        Relationship.UPLOADER: attachment.uploaded_by,
        Relationship.PARENT_ASSIGNEE: parent.assignee_id if parent is not None else None,
    })


def user_snapshot(user_id: int) -> EntitySnapshot:
    return EntitySnapshot({Relationship.SELF: user_id})


def require_admin(actor: Actor):
    _authorize(USER_ADMIN_POLICY.authorize, actor)


# ------------------------------------------------------------------
# SERIALIZATION HELPERS
# ------------------------------------------------------------------

def _user_summary(user: Optional[User]):
    if user is None:
        return None
    return {
        "id": user.id,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role,
    }


def _user_to_dict(user: User):
    data = _user_summary(user)
    data.update({
        "email": user.email,
        "is_active": user.is_active,
        "team_id": user.team_id,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    })
    return data


def _team_summary(team: Optional[Team]):
    if team is None:
        return None
    return {"id": team.id, "name": team.name, "color": team.color}


def _comment_to_dict(comment):
    return {
        "id": comment.id,
        "content": comment.content,
        "task_id": getattr(comment, "task_id", None),
        "incident_id": getattr(comment, "incident_id", None),
        "user": _user_summary(comment.user),
        "created_at": comment.created_at,
    }


def _attachment_to_dict(attachment: Attachment):
    return {
        "id": attachment.id,
        "filename": attachment.filename,
        "size": attachment.size,
        "mime_type": attachment.mime_type,
        "parent_type": attachment.parent_type,
        "task_id": attachment.task_id,
        "incident_id": attachment.incident_id,
        "uploader": _user_summary(attachment.uploader),
        "created_at": attachment.created_at,
    }


def _task_to_dict(task: Task, comment_count: Optional[int] = None, detail: bool = False):
    data = {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "due_date": task.due_date,
        "start_date": task.start_date,
        "creator_id": task.creator_id,
        "creator": _user_summary(task.creator),
        "assignee_id": task.assignee_id,
        "assignee": _user_summary(task.assignee),
        "team_id": task.team_id,
        "team": _team_summary(task.team),
        "completed_at": task.completed_at,
        "comment_count": comment_count if comment_count is not None else len(task.comments),
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }
    if detail:
        data["comments"] = [_comment_to_dict(c) for c in task.comments]
        data["attachments"] = [_attachment_to_dict(a) for a in task.attachments]
    return data


def _incident_to_dict(incident: Incident, comment_count: Optional[int] = None, detail: bool = False):
    data = {
        "id": incident.id,
        "title": incident.title,
        "description": incident.description,
        "system": incident.system,
        "environment": incident.environment,
        "tier": incident.tier,
        "status": incident.status,
        "assignee_id": incident.assignee_id,
        "assignee": _user_summary(incident.assignee),
        "resolved_at": incident.resolved_at,
        "closed_at": incident.closed_at,
        "comment_count": comment_count if comment_count is not None else len(incident.comments),
        "created_at": incident.created_at,
        "updated_at": incident.updated_at,
    }
    if detail:
        data["comments"] = [_comment_to_dict(c) for c in incident.comments]
        data["attachments"] = [_attachment_to_dict(a) for a in incident.attachments]
    return data


def _comment_counts(db: Session, parent_column, parent_ids):
    """Comment totals for a page of parents, in one grouped query."""
    if not parent_ids:
        return {}
    rows = (
        db.query(parent_column, func.count())
        .filter(parent_column.in_(parent_ids))
        .group_by(parent_column)
        .all()
    )
    return dict(rows)


def _paginate(query, page: int, limit: int):
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }
    return items, pagination


def _naive_utc(value: datetime) -> datetime:
    # Stored timestamps come back without tzinfo; everything is UTC
    return value.replace(tzinfo=None) if value.tzinfo else value


# ------------------------------------------------------------------
# USER CRUD OPERATIONS
# ------------------------------------------------------------------

def get_user_by_username(db: Session, username: str):
    """
    Fetch user by username.
    Used for login & validation.
    """
    return db.query(User).filter(User.username == username).first()


def get_user_by_id(db: Session, user_id: int):
    return db.query(User).filter(User.id == user_id).first()


def _require_user(db: Session, user_id: Optional[int], label: str = "User"):
    if user_id is None:
        return None
    user = get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{label} with ID {user_id} not found"
        )
    return user


def _require_team(db: Session, team_id: Optional[int]):
    if team_id is None:
        return None
    team = db.query(Team).filter(Team.id == team_id).first()
    if not team:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Team with ID {team_id} not found"
        )
    return team


def create_user(db: Session, user: UserCreate, actor: Optional[Actor] = None):
    """
    Create a new user with hashed password.
    Called without an actor only by trusted code (seeding).
    """
    if actor is not None:
        _authorize(USER_ADMIN_POLICY.authorize, actor)

    username = user.username.strip()
    if not username:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is required")

    # Prevent username equal to password (avoids confusion and weak accounts)
    if username.lower() == (user.password or "").strip().lower():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username must not be the same as password"
        )

    if get_user_by_username(db, username):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username already taken")

    if user.email and db.query(User).filter(User.email == user.email).first():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already exists")

    _require_team(db, user.team_id)

    db_user = User(
        username=username,
        email=user.email,
        password=auth.hash_password(user.password),
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        team_id=user.team_id,
        is_active=True,
    )
    db.add(db_user)
    db.flush()

    if user.team_id is not None:
        db.add(TeamMember(user_id=db_user.id, team_id=user.team_id, role="member"))

    db.commit()
    db.refresh(db_user)

    logger.info(f"User created: {username} (ID: {db_user.id}, role {db_user.role.value})")
    return db_user


def list_users(db: Session, team_id: Optional[int] = None):
    """
    Active users for dropdowns, optionally restricted to one team's members.
    """
    query = db.query(User).filter(User.is_active.is_(True))
    if team_id is not None:
        query = query.join(TeamMember, TeamMember.user_id == User.id).filter(TeamMember.team_id == team_id)
    users = query.order_by(User.first_name, User.last_name, User.username).all()
    return [_user_to_dict(u) for u in users]


def get_user(db: Session, user_id: int):
    user = get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return _user_to_dict(user)


def update_user(db: Session, user_id: int, payload: UserUpdate, actor: Actor):
    """
    Update profile fields and optionally the password.
    Admins may edit anyone; other users only themselves.
    """
    _authorize(PROFILE_UPDATE_POLICY.authorize, actor, user_snapshot(user_id))
    is_self = actor.id == user_id

    user = get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    changes = payload.model_dump(exclude_unset=True)

    email = changes.get("email")
    if email and email != user.email:
        if db.query(User).filter(User.email == email).first():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already exists")

    for name in ("first_name", "last_name", "email"):
        if name in changes:
            setattr(user, name, changes[name])

    new_password = changes.get("new_password")
    if new_password:
        current_password = changes.get("current_password")
        if not current_password:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password required")
        if is_self and not auth.verify_password(current_password, user.password):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid current password")
        user.password = auth.hash_password(new_password)

    db.commit()
    db.refresh(user)

    logger.info(f"User {user_id} profile updated by user {actor.id}")
    return _user_to_dict(user)


def toggle_user_active(db: Session, user_id: int, actor: Actor):
    """
    Activate or deactivate an account. Deactivation ends its sessions.
    """
    _authorize(USER_ADMIN_POLICY.authorize, actor)

    user = get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if user.id == actor.id and user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot deactivate your own account"
        )

    user.is_active = not user.is_active
    db.commit()
    db.refresh(user)

    if not user.is_active:
        sessions.delete_user_sessions(user.id)

    logger.info(f"User {user_id} {'activated' if user.is_active else 'deactivated'} by user {actor.id}")
    return _user_to_dict(user)


# ------------------------------------------------------------------
# TEAM OPERATIONS
# ------------------------------------------------------------------

def list_teams(db: Session):
    """
    Active teams with their member counts.
    """
    rows = (
        db.query(Team, func.count(TeamMember.id))
        .outerjoin(TeamMember, TeamMember.team_id == Team.id)
        .filter(Team.is_active.is_(True))
        .group_by(Team.id)
        .order_by(Team.name)
        .all()
    )
    return [
        {
            "id": team.id,
            "name": team.name,
            "description": team.description,
            "color": team.color,
            "member_count": count,
        }
        for team, count in rows
    ]


# ------------------------------------------------------------------
# TASK CRUD OPERATIONS
# ------------------------------------------------------------------

def get_task_by_id(db: Session, task_id: int):
    return db.query(Task).filter(Task.id == task_id).first()


def _get_task_or_404(db: Session, task_id: int) -> Task:
    task = get_task_by_id(db, task_id)
    if not task:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task with ID {task_id} not found"
        )
    return task


def create_task(db: Session, task: TaskCreate, actor: Actor):
    """
    Create a task with the actor as creator.
    Non-managers may only assign to themselves or to someone on their team.
    """
    title = (task.title or "").strip()
    if not title:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")

    assignee = _require_user(db, task.assignee_id, "Assignee")
    _require_team(db, task.team_id)

    if assignee is not None and assignee.id != actor.id and not TASK_ASSIGN_ANYONE_POLICY.permits(actor):
        creator = get_user_by_id(db, actor.id)
        if creator is None or creator.team_id is None or creator.team_id != assignee.team_id:
            _authorize(TASK_ASSIGN_ANYONE_POLICY.authorize, actor)

    db_task = Task(
        title=title,
        description=task.description,
        priority=task.priority,
        status=TaskStatus.TODO,
        due_date=task.due_date,
        start_date=task.start_date,
        creator_id=actor.id,
        assignee_id=task.assignee_id,
        team_id=task.team_id,
    )
    db.add(db_task)
    db.commit()
    db.refresh(db_task)

    logger.info(f"Task created: {db_task.title} (ID: {db_task.id}) by user {actor.id}")
    return _task_to_dict(db_task, comment_count=0)


def list_tasks(
    db: Session,
    status_filter: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    assignee_id: Optional[int] = None,
    team_id: Optional[int] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
):
    """
    Fetch tasks with optional filters, ordered by workflow position,
    then highest priority, then newest.
    """
    query = db.query(Task)

    if status_filter is not None:
        query = query.filter(Task.status == status_filter)
    if priority is not None:
        query = query.filter(Task.priority == priority)
    if assignee_id is not None:
        query = query.filter(Task.assignee_id == assignee_id)
    if team_id is not None:
        # Team membership is the assignee's, not the task's own team_id
        query = query.join(Task.assignee).filter(User.team_id == team_id)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))

    status_rank = case(
        {s.value: i for i, s in enumerate(lifecycle.TASK_WORKFLOW)},
        value=Task.status,
    )
    priority_rank = case(
        {p.value: i for i, p in enumerate(TaskPriority)},
        value=Task.priority,
    )
    query = query.order_by(status_rank, priority_rank.desc(), Task.created_at.desc(), Task.id.desc())

    tasks, pagination = _paginate(query, page, limit)
    counts = _comment_counts(db, TaskComment.task_id, [t.id for t in tasks])

    logger.info(f"Retrieved {len(tasks)} of {pagination['total']} tasks (page {page})")
    return {
        "tasks": [_task_to_dict(t, comment_count=counts.get(t.id, 0)) for t in tasks],
        "pagination": pagination,
    }


def get_task(db: Session, task_id: int):
    task = _get_task_or_404(db, task_id)
    return _task_to_dict(task, detail=True)


def update_task(db: Session, task_id: int, payload: TaskUpdate, actor: Actor):
    """
    Partially update a task.

    The policy approves the whole request or rejects it; the lifecycle module
    then applies the fields and maintains completed_at. One commit.
    """
    task = _get_task_or_404(db, task_id)

    changes = payload.model_dump(exclude_unset=True)
    _authorize(TASK_UPDATE_POLICY.authorize, actor, task_snapshot(task), changes.keys())

    if "assignee_id" in changes:
        _require_user(db, changes["assignee_id"], "Assignee")
    if "team_id" in changes:
        _require_team(db, changes["team_id"])
    if "title" in changes:
        changes["title"] = changes["title"].strip()
        if not changes["title"]:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")

    old_status = task.status
    applied = lifecycle.apply_task_changes(task, changes, lifecycle.utcnow())

    db.commit()
    db.refresh(task)

    if "status" in changes and old_status != task.status:
        logger.info(f"Task {task_id} status updated from '{old_status.value}' to '{task.status.value}' by user {actor.id}")
    logger.info(f"Task {task_id} updated by user {actor.id}: {sorted(applied)}")
    return _task_to_dict(task)


def delete_task(db: Session, task_id: int, actor: Actor):
    """
    Delete a task with its comments and attachments.
    Managers only, regardless of creator/assignee relationship.
    """
    _authorize(TASK_DELETE_POLICY.authorize, actor)

    task = _get_task_or_404(db, task_id)
    file_paths = [a.path for a in task.attachments]

    db.delete(task)
    db.commit()

    for path in file_paths:
        storage.delete_file(path)

    logger.info(f"Task {task_id} deleted by user {actor.id}")
    return {"message": "Task deleted successfully"}


# ------------------------------------------------------------------
# COMMENT CRUD OPERATIONS
# ------------------------------------------------------------------
# Any authenticated user may comment; the mutation policy is not consulted.

def _clean_comment(comment: CommentCreate) -> str:
    content = (comment.content or "").strip()
    if not content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Comment content is required"
        )
    return content


def create_task_comment(db: Session, task_id: int, comment: CommentCreate, actor: Actor):
    content = _clean_comment(comment)
    _get_task_or_404(db, task_id)

    db_comment = TaskComment(content=content, task_id=task_id, user_id=actor.id)
    db.add(db_comment)
    db.commit()
    db.refresh(db_comment)

    logger.info(f"Comment added to task {task_id} by user {actor.id}")
    return _comment_to_dict(db_comment)


def list_task_comments(db: Session, task_id: int):
    """
    Comments for a task, newest first.
    """
    _get_task_or_404(db, task_id)
    comments = (
        db.query(TaskComment)
        .filter(TaskComment.task_id == task_id)
        .order_by(TaskComment.created_at.desc(), TaskComment.id.desc())
        .all()
    )
    return [_comment_to_dict(c) for c in comments]


def create_incident_comment(db: Session, incident_id: int, comment: CommentCreate, actor: Actor):
    content = _clean_comment(comment)
    _get_incident_or_404(db, incident_id)

    db_comment = IncidentComment(content=content, incident_id=incident_id, user_id=actor.id)
    db.add(db_comment)
    db.commit()
    db.refresh(db_comment)

    logger.info(f"Comment added to incident {incident_id} by user {actor.id}")
    return _comment_to_dict(db_comment)


def list_incident_comments(db: Session, incident_id: int):
    """
    Comments for an incident, oldest first (conversation order).
    """
    _get_incident_or_404(db, incident_id)
    comments = (
        db.query(IncidentComment)
        .filter(IncidentComment.incident_id == incident_id)
        .order_by(IncidentComment.created_at, IncidentComment.id)
        .all()
    )
    return [_comment_to_dict(c) for c in comments]


# ------------------------------------------------------------------
# INCIDENT CRUD OPERATIONS
# ------------------------------------------------------------------

def get_incident_by_id(db: Session, incident_id: int):
    return db.query(Incident).filter(Incident.id == incident_id).first()


def _get_incident_or_404(db: Session, incident_id: int) -> Incident:
    incident = get_incident_by_id(db, incident_id)
    if not incident:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Incident with ID {incident_id} not found"
        )
    return incident


def _clean_title(title: Optional[str]) -> str:
    title = (title or "").strip()
    if not title:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
    return title


def create_incident(db: Session, payload: IncidentCreate, actor: Actor):
    """
    Manual incident creation from the UI (managers only). Starts OPEN.
    """
    _authorize(INCIDENT_CREATE_POLICY.authorize, actor)
    _require_user(db, payload.assignee_id, "Assignee")

    incident = Incident(
        title=_clean_title(payload.title),
        description=payload.description,
        system=payload.system.strip(),
        environment=payload.environment,
        tier=payload.tier,
        assignee_id=payload.assignee_id,
        status=IncidentStatus.OPEN,
        incident_metadata={},
    )
    db.add(incident)
    db.commit()
    db.refresh(incident)

    logger.info(f"Incident created: {incident.title} (ID: {incident.id}, {incident.tier.value}) by user {actor.id}")
    return _incident_to_dict(incident, comment_count=0)


def ingest_incident(db: Session, payload: IncidentIngest):
    """
    Incident reported by an external system through the API-key endpoint.
    Always OPEN and unassigned; no session policy applies.
    """
    incident = Incident(
        title=_clean_title(payload.title),
        description=payload.description,
        system=payload.system.strip(),
        environment=payload.environment,
        tier=payload.tier,
        status=IncidentStatus.OPEN,
        assignee_id=None,
        incident_metadata=payload.metadata or {},
    )
    db.add(incident)
    db.commit()
    db.refresh(incident)

    logger.info(f"Incident ingested: {incident.title} (ID: {incident.id}) from system {incident.system}")
    return {
        "id": incident.id,
        "title": incident.title,
        "system": incident.system,
        "environment": incident.environment,
        "tier": incident.tier,
        "status": incident.status,
        "created_at": incident.created_at,
    }


def list_incidents(
    db: Session,
    system: Optional[str] = None,
    environment: Optional[IncidentEnvironment] = None,
    tier: Optional[IncidentTier] = None,
    status_filter: Optional[IncidentStatus] = None,
    assignee_id: Optional[int] = None,
    page: int = 1,
    limit: int = 10,
    exact_system: bool = False,
):
    """
    Fetch incidents, newest first. The UI searches system names by substring,
    the external API matches them exactly.
    """
    query = db.query(Incident)

    if system:
        if exact_system:
            query = query.filter(Incident.system == system)
        else:
            query = query.filter(Incident.system.ilike(f"%{system}%"))
    if environment is not None:
        query = query.filter(Incident.environment == environment)
    if tier is not None:
        query = query.filter(Incident.tier == tier)
    if status_filter is not None:
        query = query.filter(Incident.status == status_filter)
    if assignee_id is not None:
        query = query.filter(Incident.assignee_id == assignee_id)

    query = query.order_by(Incident.created_at.desc(), Incident.id.desc())

    incidents, pagination = _paginate(query, page, limit)
    counts = _comment_counts(db, IncidentComment.incident_id, [i.id for i in incidents])

    return {
        "incidents": [_incident_to_dict(i, comment_count=counts.get(i.id, 0)) for i in incidents],
        "pagination": pagination,
    }


def get_incident(db: Session, incident_id: int):
    incident = _get_incident_or_404(db, incident_id)
    return _incident_to_dict(incident, detail=True)


def update_incident(db: Session, incident_id: int, payload: IncidentUpdate, actor: Actor):
    """
    Partially update an incident. Managers edit everything; the assignee
    and QA may only move the status. resolved_at/closed_at are stamped by
    the lifecycle module.
    """
    incident = _get_incident_or_404(db, incident_id)

    changes = payload.model_dump(exclude_unset=True)
    _authorize(INCIDENT_UPDATE_POLICY.authorize, actor, incident_snapshot(incident), changes.keys())

    if "assignee_id" in changes:
        _require_user(db, changes["assignee_id"], "Assignee")
    if "title" in changes:
        changes["title"] = _clean_title(changes["title"])

    old_status = incident.status
    applied = lifecycle.apply_incident_changes(incident, changes, lifecycle.utcnow())

    db.commit()
    db.refresh(incident)

    if "status" in changes:
        logger.info(f"Incident {incident_id} status '{old_status.value}' -> '{incident.status.value}' by user {actor.id}")
    logger.info(f"Incident {incident_id} updated by user {actor.id}: {sorted(applied)}")
    return _incident_to_dict(incident)


# ------------------------------------------------------------------
# ATTACHMENT OPERATIONS
# ------------------------------------------------------------------

def create_attachment(
    db: Session,
    actor: Actor,
    content: bytes,
    filename: str,
    mime_type: str,
    task_id: Optional[int] = None,
    incident_id: Optional[int] = None,
):
    """
    Store an uploaded file against exactly one task or incident.
    """
    if task_id is None and incident_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either task_id or incident_id must be provided"
        )
    if task_id is not None and incident_id is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide either task_id or incident_id, not both"
        )

    storage.validate_upload(content, mime_type)

    if task_id is not None:
        _get_task_or_404(db, task_id)
        parent_type = ParentType.TASK
    else:
        _get_incident_or_404(db, incident_id)
        parent_type = ParentType.INCIDENT

    relative_path = storage.save_file(content, filename, parent_type)

    attachment = Attachment(
        filename=filename,
        path=relative_path,
        mime_type=mime_type,
        size=len(content),
        uploaded_by=actor.id,
        task_id=task_id,
        incident_id=incident_id,
    )
    db.add(attachment)
    try:
        db.commit()
    except Exception:
        db.rollback()
        storage.delete_file(relative_path)
        raise
    db.refresh(attachment)

    logger.info(f"Attachment {attachment.id} ({filename}) uploaded to {parent_type.value} by user {actor.id}")
    return _attachment_to_dict(attachment)


def _get_attachment_or_404(db: Session, attachment_id: int) -> Attachment:
    attachment = db.query(Attachment).filter(Attachment.id == attachment_id).first()
    if not attachment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found")
    return attachment


def get_attachment_file(db: Session, attachment_id: int):
    """
    Resolve an attachment to (absolute path, display filename, mime type).
    """
    attachment = _get_attachment_or_404(db, attachment_id)
    full_path = storage.resolve_path(attachment.path)
    if not full_path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found on filesystem")
    return full_path, attachment.filename, attachment.mime_type or "application/octet-stream"


def delete_attachment(db: Session, attachment_id: int, actor: Actor):
    """
    Delete an attachment. Allowed for the uploader, admins, and whoever is
    assigned to the parent task/incident.
    """
    attachment = _get_attachment_or_404(db, attachment_id)
    _authorize(ATTACHMENT_DELETE_POLICY.authorize, actor, attachment_snapshot(attachment))

    path = attachment.path
    db.delete(attachment)
    db.commit()
    storage.delete_file(path)

    logger.info(f"Attachment {attachment_id} deleted by user {actor.id}")
    return {"success": True}


# ------------------------------------------------------------------
# DASHBOARD OPERATIONS
# ------------------------------------------------------------------

def _count_by(db: Session, column, members):
    counts = dict(db.query(column, func.count()).group_by(column).all())
    return {member.value: counts.get(member, 0) for member in members}


def get_dashboard(db: Session, actor: Actor):
    """
    Overview numbers, recent activity and the caller's open assignments.
    """
    today = date.today()

    total_tasks = db.query(func.count(Task.id)).scalar()
    overdue_tasks = (
        db.query(func.count(Task.id))
        .filter(Task.due_date < today, Task.status != TaskStatus.DONE)
        .scalar()
    )
    open_incidents = (
        db.query(func.count(Incident.id))
        .filter(Incident.status.in_([IncidentStatus.OPEN, IncidentStatus.INVESTIGATING]))
        .scalar()
    )
    team_members = db.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar()

    recent_tasks = db.query(Task).order_by(Task.created_at.desc(), Task.id.desc()).limit(5).all()
    recent_incidents = db.query(Incident).order_by(Incident.created_at.desc(), Incident.id.desc()).limit(5).all()
    my_tasks = (
        db.query(Task)
        .filter(Task.assignee_id == actor.id, Task.status != TaskStatus.DONE)
        .order_by(Task.due_date.is_(None), Task.due_date, Task.id)
        .limit(10)
        .all()
    )

    return {
        "overview": {
            "total_tasks": total_tasks,
            "overdue_tasks": overdue_tasks,
            "open_incidents": open_incidents,
            "team_members": team_members,
        },
        "recent_tasks": [_task_to_dict(t) for t in recent_tasks],
        "recent_incidents": [_incident_to_dict(i) for i in recent_incidents],
        "my_assigned_tasks": [_task_to_dict(t) for t in my_tasks],
        "stats": {
            "tasks_by_status": _count_by(db, Task.status, lifecycle.TASK_WORKFLOW),
            "incidents_by_tier": _count_by(db, Incident.tier, IncidentTier),
        },
    }


def _distribution(db: Session, column, members):
    counts = dict(db.query(column, func.count()).group_by(column).all())
    return [
        {"name": member.value, "value": counts[member]}
        for member in members
        if counts.get(member)
    ]


def get_incident_summary(db: Session, days: int = 30):
    """
    Aggregate incident statistics for the incident dashboard.

    MTTR is the mean hours from creation to resolution over incidents that
    are currently RESOLVED. The trend covers the last `days` days with one
    point per day, zero-filled.
    """
    now = _naive_utc(lifecycle.utcnow())

    total = db.query(func.count(Incident.id)).scalar()
    resolved = (
        db.query(func.count(Incident.id))
        .filter(Incident.status == IncidentStatus.RESOLVED)
        .scalar()
    )

    resolution_rows = (
        db.query(Incident.created_at, Incident.resolved_at)
        .filter(Incident.status == IncidentStatus.RESOLVED, Incident.resolved_at.isnot(None))
        .all()
    )
    mttr = 0.0
    if resolution_rows:
        total_seconds = sum(
            (_naive_utc(resolved_at) - _naive_utc(created_at)).total_seconds()
            for created_at, resolved_at in resolution_rows
        )
        mttr = total_seconds / len(resolution_rows) / 3600

    recent_24h = (
        db.query(func.count(Incident.id))
        .filter(Incident.created_at >= now - timedelta(hours=24))
        .scalar()
    )
    open_critical = (
        db.query(func.count(Incident.id))
        .filter(Incident.status != IncidentStatus.CLOSED, Incident.tier == IncidentTier.CRITICAL)
        .scalar()
    )

    system_rows = (
        db.query(Incident.system, func.count(Incident.id).label("total"))
        .group_by(Incident.system)
        .order_by(func.count(Incident.id).desc(), Incident.system)
        .limit(10)
        .all()
    )

    start_day = (now - timedelta(days=days)).date()
    trend = {}
    day = start_day
    while day <= now.date():
        trend[day] = {"date": day.isoformat(), "total": 0, "critical": 0, "major": 0, "minor": 0}
        day += timedelta(days=1)

    trend_rows = (
        db.query(Incident.created_at, Incident.tier)
        .filter(Incident.created_at >= datetime.combine(start_day, time.min))
        .all()
    )
    for created_at, tier in trend_rows:
        point = trend.get(_naive_utc(created_at).date())
        if point is None:
            continue
        point["total"] += 1
        point[tier.value.lower()] += 1

    return {
        "summary": {
            "total": total,
            "resolved": resolved,
            "mttr": round(mttr, 2),
            "recent_24h": recent_24h,
            "open_critical": open_critical,
            "resolution_rate": round(resolved / total * 100) if total else 0,
        },
        "distributions": {
            "status": _distribution(db, Incident.status, lifecycle.INCIDENT_WORKFLOW),
            "tier": _distribution(db, Incident.tier, IncidentTier),
            "environment": _distribution(db, Incident.environment, IncidentEnvironment),
            "systems": [{"name": name, "value": count} for name, count in system_rows],
        },
        "trends": list(trend.values()),
    }
