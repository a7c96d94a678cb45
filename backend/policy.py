"""
Authorization Policy Engine

Pure decision functions that map (actor, entity snapshot, requested change)
to an allowed field set or a rejection. Nothing in here touches the
database or HTTP layer: crud.py loads the snapshot, asks the policy, and
translates PermissionDenied / NoValidUpdates into HTTP errors.

Every mutation rule is a row in a declarative table:

- PolicyRule: (roles or relationships) -> allowed fields. Rows are evaluated
  in order and the first match wins. Role rows come before relationship rows.
- FieldGuard: a field that only some roles/relationships may touch, checked
  after the match regardless of which row matched.

A request that names any field outside the resulting set is rejected as a
whole. It is never partially applied.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple
import logging

from enums import Role

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# ERRORS
# ------------------------------------------------------------------

class PolicyError(Exception):
    """Base class for policy rejections."""


class PermissionDenied(PolicyError):
    """The actor may not perform the request (or part of it)."""


class NoValidUpdates(PolicyError):
    """Nothing is left to apply after filtering the request."""


# ------------------------------------------------------------------
# ACTOR & SNAPSHOTS
# ------------------------------------------------------------------

class Relationship(str, Enum):
    CREATOR = "creator"
    ASSIGNEE = "assignee"
    UPLOADER = "uploader"
    PARENT_ASSIGNEE = "parent_assignee"
    SELF = "self"


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, derived per request from the session."""
    id: int
    role: Role

    def has_role(self, roles: Iterable[Role]) -> bool:
        return self.role in roles


@dataclass(frozen=True)
class EntitySnapshot:
    """
    The persisted state of a target entity, reduced to what authorization
    needs: which user holds each relationship to it.
    """
    holders: Mapping[Relationship, Optional[int]] = field(default_factory=dict)

    def relationships_of(self, actor: Actor) -> FrozenSet[Relationship]:
        return frozenset(
            relationship
            for relationship, user_id in self.holders.items()
            if user_id is not None and user_id == actor.id
        )


# ------------------------------------------------------------------
# POLICY BUILDING BLOCKS
# ------------------------------------------------------------------

@dataclass(frozen=True)
class PolicyRule:
    """One row of a mutation table: who matches and what they may change."""
    name: str
    allowed_fields: FrozenSet[str]
    roles: FrozenSet[Role] = frozenset()
    relationships: FrozenSet[Relationship] = frozenset()

    def matches(self, actor: Actor, relationships: FrozenSet[Relationship]) -> bool:
        return actor.role in self.roles or bool(self.relationships & relationships)


@dataclass(frozen=True)
class FieldGuard:
    """A field restricted to some roles/relationships on top of the matched rule."""
    field: str
    roles: FrozenSet[Role] = frozenset()
    relationships: FrozenSet[Relationship] = frozenset()
    message: str = ""

    def permits(self, actor: Actor, relationships: FrozenSet[Relationship]) -> bool:
        return actor.role in self.roles or bool(self.relationships & relationships)


@dataclass(frozen=True)
class ActionPolicy:
    """Whole-entity actions (delete, create, administer) with no field subset."""
    name: str
    roles: FrozenSet[Role] = frozenset()
    relationships: FrozenSet[Relationship] = frozenset()
    message: str = "Insufficient permissions"

    def permits(self, actor: Actor, snapshot: Optional[EntitySnapshot] = None) -> bool:
        if actor.role in self.roles:
            return True
        if snapshot is None:
            return False
        return bool(self.relationships & snapshot.relationships_of(actor))

    def authorize(self, actor: Actor, snapshot: Optional[EntitySnapshot] = None) -> None:
        if not self.permits(actor, snapshot):
            logger.warning(f"Denied {self.name} for user {actor.id} ({actor.role.value})")
            raise PermissionDenied(self.message)


@dataclass(frozen=True)
class MutationPolicy:
    """
    Table-driven evaluator for partial updates of one entity type.

    allowed_fields() answers "what could this actor change?" and authorize()
    checks a concrete request against that answer.
    """
    entity: str
    rules: Tuple[PolicyRule, ...]
    guards: Tuple[FieldGuard, ...] = ()
    denied_message: str = "Insufficient permissions"

    def match(self, actor: Actor, snapshot: EntitySnapshot) -> Optional[PolicyRule]:
        relationships = snapshot.relationships_of(actor)
        for rule in self.rules:
            if rule.matches(actor, relationships):
                return rule
        return None

    def allowed_fields(self, actor: Actor, snapshot: EntitySnapshot) -> FrozenSet[str]:
        rule = self.match(actor, snapshot)
        if rule is None:
            return frozenset()
        relationships = snapshot.relationships_of(actor)
        blocked = {
            guard.field
            for guard in self.guards
            if not guard.permits(actor, relationships)
        }
        return rule.allowed_fields - blocked

    def authorize(self, actor: Actor, snapshot: EntitySnapshot, requested: Iterable[str]) -> FrozenSet[str]:
        """
        Return the requested fields if the actor may change all of them.

        Raises PermissionDenied when no rule matches or any requested field
        falls outside the matched rule or a guard, and NoValidUpdates when
        the request names no fields at all.
        """
        requested = frozenset(requested)
        rule = self.match(actor, snapshot)
        if rule is None:
            logger.warning(f"Denied {self.entity} update for user {actor.id} ({actor.role.value}): no matching rule")
            raise PermissionDenied(self.denied_message)

        outside_rule = requested - rule.allowed_fields
        if outside_rule:
            logger.warning(
                f"Denied {self.entity} update for user {actor.id} via '{rule.name}': "
                f"fields {sorted(outside_rule)} not allowed"
            )
            allowed = ", ".join(sorted(rule.allowed_fields))
            raise PermissionDenied(f"Can only update {allowed} on this {self.entity}")

        relationships = snapshot.relationships_of(actor)
        for guard in self.guards:
            if guard.field in requested and not guard.permits(actor, relationships):
                logger.warning(f"Denied {self.entity} update for user {actor.id}: guarded field '{guard.field}'")
                raise PermissionDenied(guard.message or f"Insufficient permissions to change {guard.field}")

        if not requested:
            raise NoValidUpdates("No valid updates provided")
        return requested


# ------------------------------------------------------------------
# POLICY TABLES
# ------------------------------------------------------------------

MANAGERS = frozenset({Role.ADMIN, Role.PM})

TASK_FIELDS = frozenset({
    "title",
    "description",
    "status",
    "priority",
    "due_date",
    "start_date",
    "assignee_id",
    "team_id",
})

INCIDENT_FIELDS = frozenset({"title", "description", "assignee_id", "status"})

STATUS_ONLY = frozenset({"status"})

TASK_UPDATE_POLICY = MutationPolicy(
    entity="task",
    rules=(
        PolicyRule("manager", TASK_FIELDS, roles=MANAGERS),
        PolicyRule("business analyst", TASK_FIELDS, roles=frozenset({Role.BA})),
        PolicyRule("creator", TASK_FIELDS, relationships=frozenset({Relationship.CREATOR})),
        PolicyRule("assignee", STATUS_ONLY, relationships=frozenset({Relationship.ASSIGNEE})),
    ),
    guards=(
        FieldGuard(
            "assignee_id",
            roles=MANAGERS,
            relationships=frozenset({Relationship.CREATOR}),
            message="Only PM/Admin/Creator can change assignee",
        ),
        FieldGuard(
            "priority",
            roles=MANAGERS | {Role.BA},
            relationships=frozenset({Relationship.CREATOR}),
            message="Insufficient permissions to change priority",
        ),
    ),
)

INCIDENT_UPDATE_POLICY = MutationPolicy(
    entity="incident",
    rules=(
        PolicyRule("manager", INCIDENT_FIELDS, roles=MANAGERS),
        PolicyRule(
            "responder",
            STATUS_ONLY,
            roles=frozenset({Role.QA}),
            relationships=frozenset({Relationship.ASSIGNEE}),
        ),
    ),
    denied_message="Forbidden",
)

TASK_DELETE_POLICY = ActionPolicy(
    "task delete",
    roles=MANAGERS,
    message="Only PM/Admin can delete tasks",
)

# Non-managers may still create tasks; they are limited in whom they assign
TASK_ASSIGN_ANYONE_POLICY = ActionPolicy(
    "task assign on create",
    roles=MANAGERS,
    message="Can only assign tasks within your team or to yourself",
)

INCIDENT_CREATE_POLICY = ActionPolicy(
    "incident create",
    roles=MANAGERS,
    message="Only PM/Admin can create incidents",
)

ATTACHMENT_DELETE_POLICY = ActionPolicy(
    "attachment delete",
    roles=frozenset({Role.ADMIN}),
    relationships=frozenset({Relationship.UPLOADER, Relationship.PARENT_ASSIGNEE}),
)

USER_ADMIN_POLICY = ActionPolicy(
    "user administration",
    roles=frozenset({Role.ADMIN}),
    message="Admin access required",
)

PROFILE_UPDATE_POLICY = ActionPolicy(
    "profile update",
    roles=frozenset({Role.ADMIN}),
    relationships=frozenset({Relationship.SELF}),
    message="Forbidden",
)
