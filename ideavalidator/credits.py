"""Credit ledger: atomic deduct, unconditional refund, grants.

``users.credits`` is the authoritative balance; each mutation is also
appended to ``credit_transactions`` so a refund can be traced back to the
deduction it cancels (same ``request_id``).
"""
import logging
from typing import Literal, Optional, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from ideavalidator import models
from ideavalidator.errors import InsufficientCredits, UserNotFound

logger = logging.getLogger(__name__)

UNLIMITED = "unlimited"


def remaining_credits(user: models.User) -> Union[int, Literal["unlimited"]]:
    return UNLIMITED if user.is_pro else int(user.credits)


def _record(db: Session, user: models.User, delta: int, reason: str, request_id: Optional[str]) -> None:
    db.add(models.CreditTransaction(
        user_id=user.id,
        delta=delta,
        reason=reason,
        request_id=request_id,
        balance_after=user.credits,
    ))


def deduct(db: Session, user_id: int, request_id: Optional[str] = None) -> models.User:
    """Take one credit in a single conditional UPDATE.

    Unlimited users pass through unchanged. Raises UserNotFound or
    InsufficientCredits; the balance never drops below zero.
    """
    result = db.execute(
        update(models.User)
        .where(models.User.id == user_id, models.User.is_pro.is_(False), models.User.credits > 0)
        .values(credits=models.User.credits - 1)
    )
    if result.rowcount != 1:
        db.rollback()
        user = db.get(models.User, user_id)
        if user is None:
            raise UserNotFound()
        if user.is_pro:
            logger.info(f"Unlimited user {user.id} performing analysis (no credit deducted)")
            return user
        logger.info(f"User {user.id} has no credits left")
        raise InsufficientCredits()

    user = db.get(models.User, user_id)
    db.refresh(user)
    _record(db, user, -1, "analysis", request_id)
    db.commit()
    logger.info(f"Credit used by user {user.id}. Remaining: {user.credits}")
    return user


def refund(
    db: Session, user_id: int, amount: int = 1, request_id: Optional[str] = None, reason: str = "refund"
) -> models.User:
    """Unconditional increment, regardless of tier or current balance."""
    result = db.execute(
        update(models.User)
        .where(models.User.id == user_id)
        .values(credits=models.User.credits + amount)
    )
    if result.rowcount != 1:
        db.rollback()
        raise UserNotFound()
    user = db.get(models.User, user_id)
    db.refresh(user)
    _record(db, user, amount, reason, request_id)
    db.commit()
    logger.info(f"{reason.capitalize()}: {amount} credit(s) to user {user.id}. Balance: {user.credits}")
    return user


def grant(db: Session, user_id: int, amount: int, reason: str, reference: Optional[str] = None) -> models.User:
    """Purchases, signup bonus and operator top-ups."""
    return refund(db, user_id, amount, request_id=reference, reason=reason)
