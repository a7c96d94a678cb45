"""
Mutation Applier

Applies a policy-approved set of changes to a task or incident and keeps the
derived timestamps consistent with the status:

- Task: completed_at is set when entering DONE (if unset) and cleared when
  leaving DONE. No other transition touches it.
- Incident: resolved_at is stamped on every move into RESOLVED (re-resolving
  overwrites it), closed_at on every move into CLOSED. Moving back to OPEN or
  INVESTIGATING keeps both timestamps.

The caller commits; everything here only mutates the in-memory entity so a
request is persisted by one commit.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from enums import IncidentStatus, TaskStatus

# Forward order of each workflow. Any status may be set directly; the order
# is informational (dashboards, sorting).
TASK_WORKFLOW = (TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.DONE)
INCIDENT_WORKFLOW = (
    IncidentStatus.OPEN,
    IncidentStatus.INVESTIGATING,
    IncidentStatus.RESOLVED,
    IncidentStatus.CLOSED,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def task_transition(new_status: TaskStatus, completed_at: Optional[datetime], now: datetime) -> Dict[str, Any]:
    """Timestamp delta produced by moving a task into new_status."""
    if new_status == TaskStatus.DONE and completed_at is None:
        return {"completed_at": now}
    if new_status != TaskStatus.DONE and completed_at is not None:
        return {"completed_at": None}
    return {}


def incident_transition(new_status: IncidentStatus, now: datetime) -> Dict[str, Any]:
    """Timestamp delta produced by moving an incident into new_status."""
    if new_status == IncidentStatus.RESOLVED:
        return {"resolved_at": now}
    if new_status == IncidentStatus.CLOSED:
        return {"closed_at": now}
    # TODO: decide whether regressing to OPEN/INVESTIGATING should clear resolved_at/closed_at
    return {}


def _apply(entity, changes: Dict[str, Any], derived: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    applied = dict(changes)
    applied.update(derived)
    for name, value in applied.items():
        setattr(entity, name, value)
    entity.updated_at = now
    return applied


def apply_task_changes(task, changes: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Write approved task fields onto the entity, plus the completed_at delta
    when the status changes. Returns every attribute that was written.
    """
    now = now or utcnow()
    derived = {}
    if "status" in changes:
        derived = task_transition(changes["status"], task.completed_at, now)
    return _apply(task, changes, derived, now)


def apply_incident_changes(incident, changes: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Write approved incident fields onto the entity, stamping resolved_at/closed_at."""
    now = now or utcnow()
    derived = {}
    if "status" in changes:
        derived = incident_transition(changes["status"], now)
    return _apply(incident, changes, derived, now)
