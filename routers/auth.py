from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
import logging

from config import settings
from database import get_db
from errors import ConflictError, ForbiddenError, UnauthorizedError, ValidationError
from models import Account, Role
from schemas import AccountOut, CaptchaOut, Token, UserLogin, UserSignup
from dependencies import (
    verify_password, get_password_hash, create_access_token, get_current_user,
    get_captcha_store, get_notifier,
)
from services import notifications

logger = logging.getLogger(__name__)

router = APIRouter()

IIIT_COLLEGE_NAME = "IIIT Hyderabad"


def participant_type_for(email: str) -> str:
    domain = email.rsplit("@", 1)[-1].lower()
    for iiit_domain in settings.IIIT_EMAIL_DOMAINS:
        if domain == iiit_domain or domain.endswith("." + iiit_domain):
            return "IIIT"
    return "Non-IIIT"


def check_captcha(store, captcha_id, answer):
    if settings.CAPTCHA_ENABLED and not store.verify(captcha_id, answer):
        raise ValidationError("Invalid or expired CAPTCHA. Please try again.")


def token_response(account: Account) -> dict:
    return {
        "access_token": create_access_token(account),
        "token_type": "bearer",
        "user": AccountOut.model_validate(account),
    }


@router.get("/captcha", response_model=CaptchaOut)
async def get_captcha(store=Depends(get_captcha_store)):
    captcha_id, question = store.generate()
    return {"captcha_id": captcha_id, "question": question}


@router.post("/register", response_model=Token, status_code=status.HTTP_201_CREATED)
async def register(
    user: UserSignup,
    db: Session = Depends(get_db),
    store=Depends(get_captcha_store),
    notifier=Depends(get_notifier)
):
    """Participant sign-up. Organizers are created by an admin."""
    check_captcha(store, user.captcha_id, user.captcha_answer)

    email = user.email.lower()
    if db.query(Account).filter(Account.email == email).first():
        raise ConflictError("Email already registered")

    participant_type = participant_type_for(email)
    account = Account(
        role=Role.PARTICIPANT,
        email=email,
        password_hash=get_password_hash(user.password),
        first_name=user.first_name,
        last_name=user.last_name,
        phone=user.phone,
        participant_type=participant_type,
        college_name=IIIT_COLLEGE_NAME if participant_type == "IIIT" else user.college_name,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info(f"Participant {account.id} signed up ({participant_type})")

    notifications.notify_welcome(notifier, account)
    return token_response(account)


@router.post("/login", response_model=Token)
async def login(
    user_credentials: UserLogin,
    db: Session = Depends(get_db),
    store=Depends(get_captcha_store)
):
    check_captcha(store, user_credentials.captcha_id, user_credentials.captcha_answer)

    account = db.query(Account).filter(Account.email == user_credentials.email.lower()).first()
    if not account or not verify_password(user_credentials.password, account.password_hash):
        raise UnauthorizedError("Incorrect email or password")
    if account.role == Role.ORGANIZER and not account.is_active:
        raise ForbiddenError("Your account has been disabled. Contact an administrator.")

    return token_response(account)


@router.get("/me")
async def read_users_me(current_user: Account = Depends(get_current_user)):
    """
    Get current user information
    """
    return {"user": AccountOut.model_validate(current_user)}


@router.post("/logout")
async def logout(current_user: Account = Depends(get_current_user)):
    # Tokens are stateless; the client discards its copy
    return {"message": "Logged out successfully"}
