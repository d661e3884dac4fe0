# In scripts/add_credits.py
"""Grant credits to a user by email.

Usage: python scripts/add_credits.py <email> [amount]
"""
import sys

from ideavalidator import credits, models
from ideavalidator.database import SessionLocal, create_db_and_tables

DEFAULT_AMOUNT = 20


def main(argv: list[str]) -> int:
    if not argv:
        print("Usage: python scripts/add_credits.py <email> [amount]")
        return 1
    email = argv[0].strip().lower()
    amount = int(argv[1]) if len(argv) > 1 else DEFAULT_AMOUNT

    create_db_and_tables()
    db = SessionLocal()
    try:
        user = db.query(models.User).filter(models.User.email == email).first()
        if not user:
            print(f"User not found: {email}")
            return 1
        user = credits.grant(db, user.id, amount, reason="admin")
        print(f"Added {amount} credits to {email}. New balance: {user.credits}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
