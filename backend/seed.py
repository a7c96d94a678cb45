"""
Demo data: one user per role, a development team, and a handful of tasks
and incidents. Safe to run repeatedly; it does nothing once users exist.

    python seed.py
"""

from datetime import date, timedelta
import logging

from sqlalchemy.orm import Session

import config
import crud
import lifecycle
from enums import (
    IncidentEnvironment,
    IncidentStatus,
    IncidentTier,
    Role,
    TaskPriority,
    TaskStatus,
)
from models import Incident, Task, Team, TeamMember, User
from schemas import UserCreate

logger = logging.getLogger(__name__)

DEMO_USERS = [
    ("admin", "admin@opsboard.io", "System", "Admin", Role.ADMIN),
    ("john.pm", "john@opsboard.io", "John", "Smith", Role.PM),
    ("sarah.ba", "sarah@opsboard.io", "Sarah", "Johnson", Role.BA),
    ("alice.dev", "alice@opsboard.io", "Alice", "Brown", Role.DEVELOPER),
    ("bob.dev", "bob@opsboard.io", "Bob", "Wilson", Role.DEVELOPER),
    ("emma.qa", "emma@opsboard.io", "Emma", "Davis", Role.QA),
]


def seed_demo_data(db: Session) -> bool:
    """Populate an empty database. Returns False if data already exists."""
    if db.query(User).first():
        logger.info("Seed skipped: users already present")
        return False

    team = Team(
        name="Development Team",
        description="Main development team",
        color="#3B82F6",
    )
    db.add(team)
    db.commit()
    db.refresh(team)

    users = {}
    for username, email, first_name, last_name, role in DEMO_USERS:
        users[username] = crud.create_user(
            db,
            UserCreate(
                username=username,
                password=config.SEED_PASSWORD,
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                team_id=team.id,
            ),
        )

    # The admin leads the team
    lead = db.query(TeamMember).filter(TeamMember.user_id == users["admin"].id).first()
    lead.role = "lead"

    today = date.today()
    db.add_all([
        Task(
            title="Implement user authentication",
            description="Session-based login for the web UI",
            status=TaskStatus.IN_PROGRESS,
            priority=TaskPriority.HIGH,
            creator_id=users["john.pm"].id,
            assignee_id=users["alice.dev"].id,
            team_id=team.id,
            start_date=today - timedelta(days=3),
            due_date=today + timedelta(days=7),
        ),
        Task(
            title="Design incident dashboard",
            description="Charts for MTTR, tiers and trends",
            status=TaskStatus.TODO,
            priority=TaskPriority.MEDIUM,
            creator_id=users["sarah.ba"].id,
            assignee_id=users["bob.dev"].id,
            team_id=team.id,
            due_date=today + timedelta(days=14),
        ),
        Task(
            title="Write regression test plan",
            status=TaskStatus.DONE,
            priority=TaskPriority.LOW,
            creator_id=users["emma.qa"].id,
            assignee_id=users["emma.qa"].id,
            team_id=team.id,
            completed_at=lifecycle.utcnow(),
        ),
    ])

    db.add_all([
        Incident(
            title="Payment API returning 500s",
            description="Checkout failing for a subset of users",
            system="payments",
            environment=IncidentEnvironment.PRODUCTION,
            tier=IncidentTier.CRITICAL,
            status=IncidentStatus.INVESTIGATING,
            assignee_id=users["alice.dev"].id,
            incident_metadata={"source": "seed"},
        ),
        Incident(
            title="Slow search on staging",
            system="search",
            environment=IncidentEnvironment.STAGING,
            tier=IncidentTier.MINOR,
            status=IncidentStatus.OPEN,
            incident_metadata={"source": "seed"},
        ),
    ])
    db.commit()

    logger.info(f"Seeded {len(users)} users, 1 team, 3 tasks and 2 incidents")
    return True


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    import models
    from database import SessionLocal, engine

    models.Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        seed_demo_data(db)
