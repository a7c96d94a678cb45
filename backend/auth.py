from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from passlib.context import CryptContext
import logging

from database import get_db
from models import User
from policy import Actor
from schemas import UserLogin
import config
import sessions

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# PASSWORD HASHING CONFIGURATION
# ------------------------------------------------------------------

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=config.BCRYPT_ROUNDS,
)


def hash_password(password: str) -> str:
    """
    Hash a plain text password using bcrypt.
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a plain text password against a hashed password.
    """
    return pwd_context.verify(plain_password, hashed_password)


# ------------------------------------------------------------------
# AUTHENTICATION UTILITIES
# ------------------------------------------------------------------

def authenticate_user(db: Session, username: str, password: str):
    """
    Verify username and password. Deactivated accounts never authenticate.
    """
    user = db.query(User).filter(User.username == username).first()

    if not user or not user.is_active:
        return None

    if not verify_password(password, user.password):
        return None

    return user


def login_user(user_login: UserLogin, db: Session):
    """
    Login endpoint logic.
    Returns session token and user info on success.
    """
    user = authenticate_user(db, user_login.username, user_login.password)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password"
        )

    session_token = sessions.create_session(user.id, user.username, user.role)

    return {
        "message": "Login successful",
        "session_token": session_token,
        "user_id": user.id,
        "username": user.username,
        "role": user.role
    }


def logout_user(session_token: str):
    """
    Logout user by deleting session.
    """
    if sessions.delete_session(session_token):
        return {"message": "Logout successful"}
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Session not found"
    )


# ------------------------------------------------------------------
# IDENTITY CONTEXT
# ------------------------------------------------------------------

def get_current_actor(request: Request) -> Actor:
    """
    Dependency resolving the caller's id and role from the session.
    Raises 401 before any policy is consulted.
    """
    session_data = sessions.verify_session(request)
    return Actor(id=session_data["user_id"], role=session_data["role"])


def get_current_user(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)) -> User:
    """
    Dependency returning the full user row for the session.
    Use this when the route needs more than id and role.
    """
    user = db.query(User).filter(User.id == actor.id).first()

    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    return user


# ------------------------------------------------------------------
# API KEY GUARD (external incident ingestion)
# ------------------------------------------------------------------

def require_api_key(request: Request) -> str:
    """
    Accept the request only if X-API-Key is one of the configured keys.
    """
    api_key = request.headers.get(config.API_KEY_HEADER)

    if not api_key or api_key not in config.API_KEYS:
        logger.warning("Rejected ingestion request with invalid or missing API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )

    return api_key
