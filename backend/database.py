"""
Database configuration and session management.
"""
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from models import Base, User, Pass, SosAlert, LocationReport, Setting

# SQLite by default; point DATABASE_URL at Postgres in deployment
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./campus_pass.db")


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}  # Needed for SQLite
    return create_engine(url, connect_args=connect_args)


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(DATABASE_URL)

SessionLocal = make_session_factory(engine)


def init_db(bind=None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)
