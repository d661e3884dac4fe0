# In ideavalidator/models.py
import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow():
    return datetime.datetime.utcnow()


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=True)  # NULL for Google-only accounts
    google_id = Column(String, unique=True, index=True, nullable=True)
    name = Column(String, nullable=False, default="")
    is_pro = Column(Boolean, nullable=False, default=False)
    credits = Column(Integer, nullable=False, default=0)
    preferences_json = Column(Text, nullable=False, default="{}")  # Storing JSON as a string
    stripe_customer_id = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    reports = relationship("Report", back_populates="owner", cascade="all, delete-orphan")
    credit_transactions = relationship(
        "CreditTransaction", back_populates="user", cascade="all, delete-orphan"
    )


class Report(Base):
    """One immutable analysis result."""
    __tablename__ = "reports"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    original_idea = Column(Text, nullable=False, default="")
    summary_verdict = Column(String, nullable=False)
    viability_score = Column(Float, nullable=False)
    one_line_takeaway = Column(Text, nullable=False, default="")
    market_reality = Column(Text, nullable=False, default="")
    full_report_json = Column(Text, nullable=False)  # Storing JSON as a string
    provider = Column(String, nullable=True)
    request_id = Column(String, index=True, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow, index=True)
    owner = relationship("User", back_populates="reports")


class CreditTransaction(Base):
    """Append-only record of every balance mutation (signed delta)."""
    __tablename__ = "credit_transactions"
    # One row per (request, reason): a checkout session is credited once, an analysis refunded once
    __table_args__ = (UniqueConstraint("request_id", "reason", name="uq_credit_transactions_request_reason"),)
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    delta = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)  # signup | analysis | refund | purchase | admin
    request_id = Column(String, index=True, nullable=True)
    balance_after = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    user = relationship("User", back_populates="credit_transactions")


class WaitlistEntry(Base):
    __tablename__ = "waitlist"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    source = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
