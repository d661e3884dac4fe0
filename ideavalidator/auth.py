import datetime
import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from ideavalidator import models
from ideavalidator.config import Settings, get_settings
from ideavalidator.database import get_db
from ideavalidator.errors import ExpiredToken, InvalidToken, MissingToken

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], default="pbkdf2_sha256", deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token", auto_error=False)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user: models.User, settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    expire = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=settings.jwt_expire_days)
    claims = {"sub": str(user.id), "email": user.email, "is_pro": bool(user.is_pro), "exp": expire}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: Optional[str], settings: Optional[Settings] = None) -> dict:
    """Verify a bearer token and return its claims.

    Raises MissingToken, ExpiredToken or InvalidToken so clients can tell
    "log in again" apart from "something is wrong".
    """
    if not token:
        raise MissingToken()
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise ExpiredToken()
    except JWTError as e:
        logger.warning(f"JWT verification error: {e}")
        raise InvalidToken()
    if not payload.get("sub") or not payload.get("email"):
        logger.warning("Auth failed: invalid token payload")
        raise InvalidToken("Invalid token payload")
    try:
        payload["user_id"] = int(payload["sub"])
    except (TypeError, ValueError):
        raise InvalidToken("Invalid token payload")
    return payload


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> models.User:
    payload = decode_access_token(token)
    user = db.get(models.User, payload["user_id"])
    if user is None:
        raise InvalidToken("Account no longer exists")
    return user
