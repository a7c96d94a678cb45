"""
Session Management for Authentication

This module provides simple token-based sessions for the web UI. Tokens are
handed out by /login and sent back in the X-Session-Token header.
Sessions live in process memory, so a restart logs everyone out.
"""

from fastapi import HTTPException, status, Request
from typing import Dict, Optional
from datetime import datetime, timedelta, timezone
import secrets
import logging

import config
from enums import Role

logger = logging.getLogger(__name__)

# In-memory session store (single process)
sessions: Dict[str, dict] = {}


def _expired(session_data: dict, now: datetime) -> bool:
    return now - session_data["last_active"] > timedelta(minutes=config.SESSION_TIMEOUT_MINUTES)


def create_session(user_id: int, username: str, role: Role) -> str:
    """
    Create a new session for a user.
    Returns a session token.
    """
    session_token = secrets.token_urlsafe(config.SESSION_TOKEN_LENGTH)

    sessions[session_token] = {
        "user_id": user_id,
        "username": username,
        "role": Role(role),
        "created_at": datetime.now(timezone.utc),
        "last_active": datetime.now(timezone.utc)
    }

    logger.info(f"Session created for user {username} (ID: {user_id})")
    return session_token


def get_session(session_token: str) -> Optional[dict]:
    """
    Retrieve session data by token.
    Returns None if session doesn't exist or has expired.
    """
    if session_token not in sessions:
        return None

    session_data = sessions[session_token]
    now = datetime.now(timezone.utc)

    if _expired(session_data, now):
        del sessions[session_token]
        logger.info(f"Session expired for user {session_data['username']}")
        return None

    session_data["last_active"] = now
    return session_data


def delete_session(session_token: str) -> bool:
    """
    Delete a session (logout).
    Returns True if session was found and deleted.
    """
    if session_token in sessions:
        username = sessions[session_token].get("username", "unknown")
        del sessions[session_token]
        logger.info(f"Session deleted for user {username}")
        return True
    return False


def delete_user_sessions(user_id: int) -> int:
    """
    Revoke every session of one user (e.g. after deactivation).
    """
    tokens = [token for token, data in list(sessions.items()) if data["user_id"] == user_id]
    for token in tokens:
        sessions.pop(token, None)
    if tokens:
        logger.info(f"Revoked {len(tokens)} sessions for user {user_id}")
    return len(tokens)


def verify_session(request: Request) -> dict:
    """
    Resolve the session from the request header.
    Raises HTTPException if session is invalid.
    """
    session_token = request.headers.get(config.SESSION_HEADER)

    if not session_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No session token provided"
        )

    session_data = get_session(session_token)

    if not session_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session"
        )

    return session_data


def cleanup_expired_sessions() -> int:
    """
    Remove all expired sessions from memory.
    """
    now = datetime.now(timezone.utc)
    expired_tokens = [token for token, data in list(sessions.items()) if _expired(data, now)]

    for token in expired_tokens:
        session_data = sessions.pop(token, None)
        if session_data is not None:
            logger.info(f"Cleaned up expired session for user {session_data.get('username', 'unknown')}")

    if expired_tokens:
        logger.info(f"Cleaned up {len(expired_tokens)} expired sessions")

    return len(expired_tokens)


def get_active_sessions_count() -> int:
    return len(sessions)
