from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from jose import JWTError, jwt
from passlib.context import CryptContext
import logging

from config import settings
from database import get_db
from errors import ForbiddenError, UnauthorizedError
from models import Account, Event, Role
from services.events import get_owned_event

logger = logging.getLogger(__name__)

# Security setup
SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(account: Account, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": str(account.id), "role": account.role, "exp": expire}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def resolve_token(token: Optional[str], db: Session) -> Account:
    """Account for a bearer token, or UnauthorizedError."""
    if not token:
        raise UnauthorizedError("Not authenticated")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        account_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError) as e:
        logger.debug(f"Rejected token: {e}")
        raise UnauthorizedError("Invalid authentication credentials")

    account = db.get(Account, account_id)
    if account is None:
        raise UnauthorizedError("Invalid authentication credentials")
    if account.role == Role.ORGANIZER and not account.is_active:
        raise ForbiddenError("Organizer account is disabled")
    return account


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Account:
    return resolve_token(credentials.credentials if credentials else None, db)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Optional[Account]:
    """Account when a valid token is sent; anonymous callers and bad tokens get None."""
    if credentials is None:
        return None
    try:
        return resolve_token(credentials.credentials, db)
    except (UnauthorizedError, ForbiddenError):
        return None


def require_roles(*roles: str):
    async def checker(current_user: Account = Depends(get_current_user)) -> Account:
        if current_user.role not in roles:
            raise ForbiddenError("Not enough permissions")
        return current_user
    return checker


participant_only = require_roles(Role.PARTICIPANT)
organizer_only = require_roles(Role.ORGANIZER)
admin_only = require_roles(Role.ADMIN)
organizer_or_admin = require_roles(Role.ORGANIZER, Role.ADMIN)


async def get_organizer_event(
    event_id: int,
    current_user: Account = Depends(organizer_only),
    db: Session = Depends(get_db)
) -> Event:
    """Event owned by the calling organizer; other organizers' events look absent."""
    return get_owned_event(db, event_id, current_user)


def get_notifier(request: Request):
    return request.app.state.notifier


def get_captcha_store(request: Request):
    return request.app.state.captcha_store
