# src/engine/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from engine.config import DATABASE_URL
from engine.models import Base


def make_engine(url: str = DATABASE_URL):
    connect_args = {}
    if url.startswith("sqlite"):
        # sessions are used from scheduler worker threads
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, connect_args=connect_args)


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


def init_db(bind):
    # Create tables if they don't exist
    Base.metadata.create_all(bind=bind)


engine = make_engine()
SessionLocal = make_session_factory(engine)
