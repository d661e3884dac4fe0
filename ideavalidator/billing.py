import json
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ideavalidator import credits, models, schemas
from ideavalidator.auth import get_current_user
from ideavalidator.config import Settings, get_settings
from ideavalidator.database import get_db
from ideavalidator.errors import PaymentError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

# plan -> credits granted; None means the unlimited tier
PLAN_CREDITS = {"single": 1, "maker": 10, "pro": None, "lifetime": None}


def _price_for(settings: Settings, plan: str) -> str:
    return {
        "single": settings.stripe_price_single,
        "maker": settings.stripe_price_maker,
        "pro": settings.stripe_price_pro,
    }.get(plan, "")


def create_checkout_session(settings: Settings, user: models.User, plan: str) -> str:
    price = _price_for(settings, plan)
    if not settings.stripe_secret_key or not price:
        raise PaymentError()
    stripe.api_key = settings.stripe_secret_key
    session = stripe.checkout.Session.create(
        mode="payment",
        line_items=[{"price": price, "quantity": 1}],
        success_url=settings.app_url + "/?success=true&session_id={CHECKOUT_SESSION_ID}",
        cancel_url=settings.app_url + "/?canceled=true",
        customer_email=user.email,
        client_reference_id=str(user.id),
        metadata={"plan": plan},
    )
    return session.url


def verify_webhook(settings: Settings, payload: bytes, signature: Optional[str]) -> dict:
    if not settings.stripe_webhook_secret:
        raise PaymentError()
    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature or "", settings.stripe_webhook_secret)
    except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
        raise PaymentError(f"Webhook Error: {e}")
    try:
        return json.loads(payload)
    except ValueError:
        raise PaymentError("Webhook Error: invalid payload")


def _find_customer(db: Session, session: dict) -> Optional[models.User]:
    email = ((session.get("customer_details") or {}).get("email") or session.get("customer_email") or "").lower()
    if email:
        user = db.query(models.User).filter(models.User.email == email).first()
        if user:
            return user
    reference = session.get("client_reference_id")
    if reference and str(reference).isdigit():
        return db.get(models.User, int(reference))
    return None


def apply_checkout_session(db: Session, session: dict) -> Optional[models.User]:
    """Grant what a completed checkout paid for. Redelivered events are ignored."""
    session_id = session.get("id")
    plan = (session.get("metadata") or {}).get("plan") or "single"
    user = _find_customer(db, session)
    if user is None:
        logger.warning(f"Payment {session_id} has no matching customer")
        return None

    already_applied = session_id and db.query(models.CreditTransaction).filter(
        models.CreditTransaction.request_id == session_id,
        models.CreditTransaction.reason == "purchase",
    ).first()
    if already_applied:
        logger.info(f"Payment {session_id} already applied to user {user.id}")
        return user

    user_id = user.id
    logger.info(f"Processing payment {session_id} for user {user_id}, plan: {plan}")
    amount = PLAN_CREDITS.get(plan, 1)
    try:
        if amount is None:
            user.is_pro = True
            if session.get("customer"):
                user.stripe_customer_id = session["customer"]
            db.add(models.CreditTransaction(
                user_id=user_id, delta=0, reason="purchase", request_id=session_id, balance_after=user.credits
            ))
            db.commit()
            db.refresh(user)
        else:
            user = credits.grant(db, user_id, amount, reason="purchase", reference=session_id)
    except IntegrityError:
        # A concurrent delivery of the same event committed its purchase row first
        db.rollback()
        logger.info(f"Payment {session_id} already applied to user {user_id}")
        return db.get(models.User, user_id)
    logger.info(f"Successfully updated user {user.id} after payment")
    return user


def handle_webhook(db: Session, settings: Settings, payload: bytes, signature: Optional[str]) -> dict:
    event = verify_webhook(settings, payload, signature)
    if event.get("type") == "checkout.session.completed":
        apply_checkout_session(db, (event.get("data") or {}).get("object") or {})
    return {"received": True}


@router.post("/checkout", response_model=schemas.CheckoutResponse)
def checkout(
    request: schemas.CheckoutRequest,
    user: models.User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    return schemas.CheckoutResponse(checkout_url=create_checkout_session(settings, user, request.plan))


@router.post("/webhook")
async def webhook(request: Request, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    payload = await request.body()
    try:
        return handle_webhook(db, settings, payload, request.headers.get("stripe-signature"))
    except PaymentError as e:
        logger.error(f"Webhook error: {e.message}")
        raise
