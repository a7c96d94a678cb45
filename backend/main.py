from fastapi import FastAPI, Depends, HTTPException, UploadFile, File, Form, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session
from typing import List, Optional
import logging
from logging.handlers import RotatingFileHandler
import os

import models
import schemas
import crud
import auth
import sessions
import config

from database import engine, get_db, SessionLocal
from enums import IncidentEnvironment, IncidentStatus, IncidentTier, TaskPriority, TaskStatus
from models import User
from policy import Actor

# ---------------------------------------------------------
# LOGGING CONFIGURATION
# ---------------------------------------------------------

# Create logs directory if it doesn't exist
os.makedirs(config.LOG_DIR, exist_ok=True)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        # File handler with rotation (max 10MB per file, keep 5 backup files)
        RotatingFileHandler(
            config.LOG_DIR / config.LOG_FILE,
            maxBytes=config.LOG_MAX_BYTES,
            backupCount=config.LOG_BACKUP_COUNT
        ),
        # Console handler for development
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------
# CREATE DATABASE TABLES
# ---------------------------------------------------------
models.Base.metadata.create_all(bind=engine)
logger.info("Database tables created successfully")

if config.ENABLE_SEED_DATA:
    import seed

    with SessionLocal() as seed_db:
        seed.seed_demo_data(seed_db)

# ---------------------------------------------------------
# FASTAPI APP INIT
# ---------------------------------------------------------
app = FastAPI(
    title=config.APP_NAME,
    description="Task and incident tracker with role-based access control",
    version=config.APP_VERSION
)

# CORS middleware for frontend integration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger.info("FastAPI application initialized")

# ---------------------------------------------------------
# AUTH ROUTES
# ---------------------------------------------------------

@app.post("/login", response_model=schemas.LoginResponse)
def login(user_login: schemas.UserLogin, db: Session = Depends(get_db)):
    """
    User login with password verification.
    Returns session token and user info on success.
    """
    try:
        logger.info(f"Login attempt for user: {user_login.username}")
        result = auth.login_user(user_login, db)
        logger.info(f"Login successful for user: {user_login.username}")
        return result
    except HTTPException as e:
        logger.warning(f"Login failed for user: {user_login.username} - {e.detail}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error during login: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error during login")


@app.post("/logout")
def logout(request: Request):
    """
    User logout. Invalidates the session token sent in the header.
    """
    try:
        session_token = request.headers.get(config.SESSION_HEADER)
        if not session_token:
            raise HTTPException(status_code=401, detail="No session token provided")
        result = auth.logout_user(session_token)
        logger.info("Logout successful")
        return result
    except HTTPException as e:
        logger.warning(f"Logout failed - {e.detail}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error during logout: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error during logout")


# ---------------------------------------------------------
# USER ROUTES
# ---------------------------------------------------------

@app.get("/users/me", response_model=schemas.UserResponse)
def get_current_user_info(current_user: User = Depends(auth.get_current_user)):
    """
    Return the current user's profile, so the UI can refresh role and name.
    """
    return current_user


@app.get("/users", response_model=List[schemas.UserResponse])
def list_users(
    team_id: Optional[int] = None,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    List active users for dropdowns, optionally one team's members.
    """
    try:
        return crud.list_users(db, team_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error listing users: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to list users")


@app.post("/users", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    user: schemas.UserCreate,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Create a new user with hashed password. Admin only.
    """
    try:
        return crud.create_user(db, user, actor)
    except HTTPException as e:
        logger.warning(f"User creation failed for '{user.username}': {e.detail}")
        raise
    except Exception as e:
        logger.error(f"Error creating user: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to create user")


@app.get("/users/{user_id}", response_model=schemas.UserResponse)
def get_user(
    user_id: int,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return crud.get_user(db, user_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error retrieving user {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to retrieve user")


@app.put("/users/{user_id}", response_model=schemas.UserResponse)
def update_user(
    user_id: int,
    payload: schemas.UserUpdate,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Update a profile. Admins may edit anyone, everyone else only themselves.
    """
    try:
        return crud.update_user(db, user_id, payload, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating user {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update user")


@app.put("/users/{user_id}/toggle-active", response_model=schemas.UserResponse)
def toggle_user_active(
    user_id: int,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Activate or deactivate a user account (admin only).
    """
    try:
        return crud.toggle_user_active(db, user_id, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error toggling user {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update user status")


# ---------------------------------------------------------
# TEAM ROUTES
# ---------------------------------------------------------

@app.get("/teams", response_model=List[schemas.TeamResponse])
def list_teams(
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return crud.list_teams(db)
    except Exception as e:
        logger.error(f"Error listing teams: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to list teams")


# ---------------------------------------------------------
# TASK ROUTES
# ---------------------------------------------------------

@app.get("/tasks", response_model=schemas.TaskListResponse)
def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    priority: Optional[TaskPriority] = None,
    assignee_id: Optional[int] = None,
    team_id: Optional[int] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Get tasks with optional filters and pagination.
    """
    try:
        return crud.list_tasks(db, status_filter, priority, assignee_id, team_id, search, page, limit)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error retrieving tasks: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to retrieve tasks")


@app.post("/tasks", response_model=schemas.TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(
    task: schemas.TaskCreate,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Create a new task. The caller becomes its creator.
    """
    try:
        return crud.create_task(db, task, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating task: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to create task")


@app.get("/tasks/{task_id}", response_model=schemas.TaskDetailResponse)
def get_task(
    task_id: int,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return crud.get_task(db, task_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error retrieving task {task_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to retrieve task")


@app.put("/tasks/{task_id}", response_model=schemas.TaskResponse)
def update_task(
    task_id: int,
    payload: schemas.TaskUpdate,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Partially update a task. The whole request is rejected if any field
    is outside what the caller may change.
    """
    try:
        return crud.update_task(db, task_id, payload, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating task {task_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update task")


@app.delete("/tasks/{task_id}")
def delete_task(
    task_id: int,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Delete a task with its comments and attachments (PM/Admin only).
    """
    try:
        return crud.delete_task(db, task_id, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error deleting task {task_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to delete task")


@app.post("/tasks/{task_id}/comments", response_model=schemas.CommentResponse, status_code=status.HTTP_201_CREATED)
def create_task_comment(
    task_id: int,
    comment: schemas.CommentCreate,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Add a comment to a task. Any signed-in user may comment.
    """
    try:
        return crud.create_task_comment(db, task_id, comment, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating comment: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to create comment")


@app.get("/tasks/{task_id}/comments", response_model=List[schemas.CommentResponse])
def get_task_comments(
    task_id: int,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        comments = crud.list_task_comments(db, task_id)
        logger.info(f"Retrieved {len(comments)} comments for task {task_id}")
        return comments
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error retrieving comments for task {task_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to retrieve comments")


# ---------------------------------------------------------
# INCIDENT ROUTES
# ---------------------------------------------------------

@app.get("/incidents", response_model=schemas.IncidentListResponse)
def list_incidents(
    system: Optional[str] = None,
    environment: Optional[IncidentEnvironment] = None,
    tier: Optional[IncidentTier] = None,
    status_filter: Optional[IncidentStatus] = Query(None, alias="status"),
    assignee_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return crud.list_incidents(db, system, environment, tier, status_filter, assignee_id, page, limit)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error retrieving incidents: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to retrieve incidents")


@app.post("/incidents", response_model=schemas.IncidentResponse, status_code=status.HTTP_201_CREATED)
def create_incident(
    payload: schemas.IncidentCreate,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Manually open an incident (PM/Admin only).
    """
    try:
        return crud.create_incident(db, payload, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating incident: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to create incident")


# Declared before /incidents/{incident_id} so "summary" is not read as an id
@app.get("/incidents/summary", response_model=schemas.IncidentSummaryResponse)
def incident_summary(
    days: int = Query(30, ge=1, le=365),
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Incident statistics: totals, MTTR, distributions and a daily trend.
    """
    try:
        return crud.get_incident_summary(db, days)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error building incident summary: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch incident summary")


@app.get("/incidents/{incident_id}", response_model=schemas.IncidentDetailResponse)
def get_incident(
    incident_id: int,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return crud.get_incident(db, incident_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error retrieving incident {incident_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to retrieve incident")


@app.put("/incidents/{incident_id}", response_model=schemas.IncidentResponse)
def update_incident(
    incident_id: int,
    payload: schemas.IncidentUpdate,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Partially update an incident. Responders may only move its status.
    """
    try:
        return crud.update_incident(db, incident_id, payload, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating incident {incident_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update incident")


@app.post("/incidents/{incident_id}/comments", response_model=schemas.CommentResponse, status_code=status.HTTP_201_CREATED)
def create_incident_comment(
    incident_id: int,
    comment: schemas.CommentCreate,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return crud.create_incident_comment(db, incident_id, comment, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating incident comment: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to create comment")


@app.get("/incidents/{incident_id}/comments", response_model=List[schemas.CommentResponse])
def get_incident_comments(
    incident_id: int,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return crud.list_incident_comments(db, incident_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error retrieving comments for incident {incident_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to retrieve comments")


# ---------------------------------------------------------
# ATTACHMENT ROUTES
# ---------------------------------------------------------

@app.post("/upload", response_model=schemas.AttachmentResponse, status_code=status.HTTP_201_CREATED)
def upload_attachment(
    file: UploadFile = File(...),
    task_id: Optional[int] = Form(None),
    incident_id: Optional[int] = Form(None),
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db),
):
    """
    Attach a file (PDF, Office document, image, text or zip) to a task or incident.
    """
    try:
        content = file.file.read()
        filename = file.filename or "attachment"
        mime_type = file.content_type or "application/octet-stream"
        return crud.create_attachment(db, actor, content, filename, mime_type, task_id, incident_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error uploading attachment: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to upload file")


@app.get("/attachments/{attachment_id}")
def download_attachment(
    attachment_id: int,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db),
):
    """
    Download an attachment with its original filename and content type.
    """
    full_path, filename, media_type = crud.get_attachment_file(db, attachment_id)
    return FileResponse(full_path, media_type=media_type, filename=filename)


@app.delete("/attachments/{attachment_id}")
def delete_attachment(
    attachment_id: int,
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db),
):
    try:
        return crud.delete_attachment(db, attachment_id, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error deleting attachment {attachment_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to delete attachment")


# ---------------------------------------------------------
# DASHBOARD ROUTES
# ---------------------------------------------------------

@app.get("/dashboard", response_model=schemas.DashboardResponse)
def dashboard(
    actor: Actor = Depends(auth.get_current_actor),
    db: Session = Depends(get_db)
):
    try:
        return crud.get_dashboard(db, actor)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error building dashboard: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch dashboard data")


# ---------------------------------------------------------
# EXTERNAL INGESTION API (API key)
# ---------------------------------------------------------

@app.post("/v1/incidents", response_model=schemas.IngestedIncidentResponse, status_code=status.HTTP_201_CREATED)
def ingest_incident(
    payload: schemas.IncidentIngest,
    api_key: str = Depends(auth.require_api_key),
    db: Session = Depends(get_db)
):
    """
    Report an incident from a monitoring system. Always starts OPEN and unassigned.
    """
    try:
        return crud.ingest_incident(db, payload)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error ingesting incident: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to create incident")


@app.get("/v1/incidents", response_model=schemas.IncidentListResponse)
def list_ingested_incidents(
    system: Optional[str] = None,
    environment: Optional[IncidentEnvironment] = None,
    tier: Optional[IncidentTier] = None,
    status_filter: Optional[IncidentStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    api_key: str = Depends(auth.require_api_key),
    db: Session = Depends(get_db)
):
    """
    Incident listing for external systems. System names match exactly.
    """
    try:
        return crud.list_incidents(
            db, system, environment, tier, status_filter,
            page=page, limit=limit, exact_system=True,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error listing incidents for API client: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to retrieve incidents")


# ---------------------------------------------------------
# ROOT CHECK
# ---------------------------------------------------------

@app.get("/")
def root():
    """
    Health check endpoint to verify the app is running.
    """
    logger.info("Health check endpoint accessed")
    return {
        "message": f"{config.APP_NAME} is running",
        "status": "operational",
        "version": config.APP_VERSION,
        "active_sessions": sessions.get_active_sessions_count()
    }


# ---------------------------------------------------------
# SESSION MONITORING (ADMIN)
# ---------------------------------------------------------

@app.get("/sessions/cleanup")
def cleanup_sessions(actor: Actor = Depends(auth.get_current_actor)):
    """
    Manually trigger cleanup of expired sessions (admin only).
    """
    try:
        crud.require_admin(actor)
        count = sessions.cleanup_expired_sessions()
        logger.info(f"Session cleanup completed: {count} sessions removed")
        return {
            "message": "Session cleanup completed",
            "expired_sessions_removed": count,
            "active_sessions": sessions.get_active_sessions_count()
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error during session cleanup: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to cleanup sessions")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=config.DEFAULT_HOST, port=config.DEFAULT_PORT, reload=config.DEBUG)
