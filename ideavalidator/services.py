import asyncio
import json
import logging
import uuid
from typing import Literal, Optional, Union

import httpx
from sqlalchemy.orm import Session

from ideavalidator import credits, models, repository, schemas
from ideavalidator.ai_provider import AnalysisGateway
from ideavalidator.auth import create_access_token, get_password_hash, verify_password
from ideavalidator.config import Settings
from ideavalidator.errors import AuthError, InvalidCredentials, UserAlreadyExists, UserNotFound
from ideavalidator.utils import decode_attachment

logger = logging.getLogger(__name__)

GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
DEFAULT_PREFERENCES = {"emailNotifications": True, "marketingEmails": False, "theme": "light"}


# ---- Analysis orchestration ----
class AnalysisOutcome:
    def __init__(self, report: schemas.ValidationReport, stored: models.Report,
                 remaining_credits: Union[int, Literal["unlimited"]], request_id: str):
        self.report = report
        self.stored = stored
        self.remaining_credits = remaining_credits
        self.request_id = request_id

    def to_response(self) -> schemas.AnalyzeResponse:
        return schemas.AnalyzeResponse(
            **self.report.model_dump(),
            id=self.stored.id,
            created_at=self.stored.created_at,
            original_idea=self.stored.original_idea,
            provider=self.stored.provider,
            remaining_credits=self.remaining_credits,
        )


def _refund_after_failure(db: Session, user_id: int, request_id: str, error: Exception) -> None:
    try:
        db.rollback()
        credits.refund(db, user_id, 1, request_id=request_id)
        logger.info(f"Refunded 1 credit to user {user_id} (request {request_id}) after: {error}")
    except Exception as refund_error:
        # Needs manual reconciliation: the user was charged and got no report
        logger.critical(
            f"FAILED TO REFUND user {user_id} for request {request_id}: {refund_error} "
            f"(original failure: {error})"
        )


async def run_analysis(
    db: Session,
    user_id: int,
    idea: str,
    gateway: AnalysisGateway,
    attachment: Optional[schemas.Attachment] = None,
    preferred_provider: Optional[str] = None,
) -> AnalysisOutcome:
    """Deduct a credit, analyze, persist; refund once if analyze or persist fails."""
    # Validate everything before any side effect
    decoded = decode_attachment(attachment.mime_type, attachment.data) if attachment else None
    idea = (idea or "").strip()
    request_id = uuid.uuid4().hex

    user = credits.deduct(db, user_id, request_id=request_id)
    charged = not user.is_pro
    remaining = credits.remaining_credits(user)

    try:
        result = await gateway.analyze(idea, decoded, preferred_provider)
        stored = repository.save_report(
            db, user_id, idea, result.report, provider=result.provider, request_id=request_id
        )
    except (Exception, asyncio.CancelledError) as e:
        if charged:
            _refund_after_failure(db, user_id, request_id, e)
        raise

    logger.info(f"Analysis {request_id} saved as report {stored.id} for user {user_id} via {result.provider}")
    return AnalysisOutcome(result.report, stored, remaining, request_id)


async def chat_about_report(gateway: AnalysisGateway, request: schemas.ChatRequest) -> str:
    return await gateway.chat(request.message, request.context.original_idea, request.context.report)


# ---- Accounts ----
def user_preferences(user: models.User) -> dict:
    try:
        stored = json.loads(user.preferences_json or "{}")
    except ValueError:
        stored = {}
    return {**DEFAULT_PREFERENCES, **(stored if isinstance(stored, dict) else {})}


def to_profile(user: models.User) -> schemas.UserProfile:
    return schemas.UserProfile(
        id=user.id,
        email=user.email,
        name=user.name or "",
        is_pro=bool(user.is_pro),
        credits=int(user.credits or 0),
        preferences=schemas.Preferences.model_validate(user_preferences(user)),
        created_at=user.created_at,
    )


def _create_user(db: Session, settings: Settings, email: str, name: Optional[str],
                 hashed_password: Optional[str] = None, google_id: Optional[str] = None) -> models.User:
    user = models.User(
        email=email,
        name=name or email.split("@")[0],
        hashed_password=hashed_password,
        google_id=google_id,
        credits=0,
        preferences_json=json.dumps(DEFAULT_PREFERENCES),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    if settings.signup_credits:
        user = credits.grant(db, user.id, settings.signup_credits, reason="signup")
    logger.info(f"Created user {user.id} with {user.credits} starting credits")
    return user


def signup(db: Session, settings: Settings, request: schemas.SignupRequest) -> schemas.AuthResponse:
    email = request.email.lower()
    if db.query(models.User).filter(models.User.email == email).first():
        raise UserAlreadyExists()
    user = _create_user(db, settings, email, request.name, hashed_password=get_password_hash(request.password))
    return schemas.AuthResponse(user=to_profile(user), token=create_access_token(user, settings))


def authenticate(db: Session, email: str, password: str) -> models.User:
    user = db.query(models.User).filter(models.User.email == email.lower()).first()
    if not user or not verify_password(password, user.hashed_password):
        raise InvalidCredentials()
    return user


def login(db: Session, settings: Settings, request: schemas.LoginRequest) -> schemas.AuthResponse:
    user = authenticate(db, request.email, request.password)
    return schemas.AuthResponse(user=to_profile(user), token=create_access_token(user, settings))


async def fetch_google_userinfo(token: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        resp = await client.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {token}"})
    if resp.status_code != 200:
        logger.warning(f"Google userinfo failed: {resp.status_code} {resp.text[:200]}")
        raise AuthError("Invalid Google token")
    payload = resp.json()
    if not payload.get("email"):
        raise AuthError("Google account has no email address")
    return payload


async def google_login(db: Session, settings: Settings, token: str,
                       transport: Optional[httpx.AsyncBaseTransport] = None) -> schemas.AuthResponse:
    payload = await fetch_google_userinfo(token, transport)
    email = payload["email"].lower()
    google_id = payload.get("sub")

    user = db.query(models.User).filter(models.User.email == email).first()
    is_new_user = user is None
    if is_new_user:
        user = _create_user(db, settings, email, payload.get("name"), google_id=google_id)
    elif not user.google_id and google_id:
        user.google_id = google_id
        db.commit()
        db.refresh(user)

    return schemas.AuthResponse(
        user=to_profile(user), token=create_access_token(user, settings), is_new_user=is_new_user
    )


def update_profile(db: Session, user: models.User, update: schemas.ProfileUpdate) -> schemas.UserProfile:
    if update.name is not None:
        user.name = update.name.strip()
    if update.preferences is not None:
        changes = update.preferences.model_dump(by_alias=True, exclude_none=True)
        user.preferences_json = json.dumps({**user_preferences(user), **changes})
    db.commit()
    db.refresh(user)
    return to_profile(user)


def delete_account(db: Session, user_id: int) -> None:
    """Delete the user; reports and ledger rows go with it."""
    user = db.get(models.User, user_id)
    if user is None:
        raise UserNotFound()
    db.delete(user)
    db.commit()
    logger.info(f"Deleted account {user_id}")


# ---- Waitlist ----
def join_waitlist(db: Session, request: schemas.WaitlistRequest) -> models.WaitlistEntry:
    email = request.email.lower()
    entry = db.query(models.WaitlistEntry).filter(models.WaitlistEntry.email == email).first()
    if entry is None:
        entry = models.WaitlistEntry(email=email, source=request.source)
        db.add(entry)
    else:
        entry.source = request.source
    db.commit()
    db.refresh(entry)
    return entry
