"""Closed value sets shared by models, schemas and the policy engine."""

from enum import Enum


class Role(str, Enum):
    ADMIN = "ADMIN"
    PM = "PM"
    BA = "BA"
    DEVELOPER = "DEVELOPER"
    QA = "QA"


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class IncidentStatus(str, Enum):
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class IncidentTier(str, Enum):
    CRITICAL = "CRITICAL"
    MAJOR = "MAJOR"
    MINOR = "MINOR"


class IncidentEnvironment(str, Enum):
    PRODUCTION = "PRODUCTION"
    STAGING = "STAGING"
    DEV = "DEV"


class ParentType(str, Enum):
    TASK = "task"
    INCIDENT = "incident"
