"""FastAPI dependencies shared across routes."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from pastprep.core.security import user_id_from_token
from pastprep.db.models import User
from pastprep.db.session import get_db
from pastprep.services.session_manager import ExamSessionManager, get_session_manager
from pastprep.services.store import ExamStore

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/users/login")


def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Decode the bearer token and return the active user, or 401."""
    user_id = user_id_from_token(token)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    # lets the rate limiter bucket per user
    request.state.user_id = str(user.id)
    return user


def get_store(
    manager: ExamSessionManager = Depends(get_session_manager),
) -> ExamStore:
    return manager.store
