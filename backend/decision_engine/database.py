"""
Decision Engine - Database Configuration
SQLAlchemy engine, session factory and declarative base
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import DATABASE_URL, DATABASE_ECHO

connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    # Sessions may be handed between request threads
    connect_args["check_same_thread"] = False

# Create engine
engine = create_engine(DATABASE_URL, echo=DATABASE_ECHO, connect_args=connect_args)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """Yields a database session and closes it afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database - create all tables."""
    from .models import db_models  # noqa: F401  registers tables on Base.metadata
    Base.metadata.create_all(bind=engine)
