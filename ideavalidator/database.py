# In ideavalidator/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ideavalidator.config import get_settings
from ideavalidator.models import Base


def make_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    elif database_url.startswith("postgres://"):
        # Some providers still hand out the legacy scheme
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


engine = make_engine(get_settings().database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_db_and_tables(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
