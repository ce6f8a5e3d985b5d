# FILE: codechat/db.py
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# Database path: ./data/codechat.db relative to project root
# Override with CODECHAT_DATABASE_URL env var if needed
DATABASE_URL = os.getenv("CODECHAT_DATABASE_URL", "sqlite:///./data/codechat.db")

engine = create_engine(
    DATABASE_URL,
    # Required for SQLite: pipeline tasks and request handlers use separate sessions
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
    echo=False,  # Set True to log SQL statements for debugging
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency that yields a DB session and closes it after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables. Call once at startup."""
    # Import models so Base.metadata knows about them
    from codechat import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
