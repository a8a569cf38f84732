import os
from datetime import datetime, timezone

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from .config import settings


def make_engine(url: str):
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


if settings.database_url.startswith("sqlite:///"):
    db_dir = os.path.dirname(settings.database_url[len("sqlite:///"):])
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

engine = make_engine(settings.database_url)


def init_db(bind=None):
    from . import models  # noqa: F401  registers the tables

    SQLModel.metadata.create_all(bind or engine)


def get_db():
    with Session(engine) as session:
        yield session


def utcnow() -> datetime:
    """Aware UTC timestamp, the form every stored datetime uses."""
    return datetime.now(timezone.utc)


def get_clock():
    return utcnow
