"""Database setup and session management."""
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from setting_forge.config import settings


logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; plain postgresql:// URLs use the psycopg 3 driver."""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return create_engine(database_url, echo=echo)


# SQLModel engine for setting history storage
engine = build_engine(settings.database_url)


def init_db(target: Engine | None = None):
    """Initialize the database tables."""
    # Register table metadata before create_all
    from setting_forge.models import SettingHistory  # noqa: F401

    SQLModel.metadata.create_all(target or engine)
    logger.info("Database tables created")


@contextmanager
def db_session(target: Engine | None = None) -> Iterator[Session]:
    """Context manager for database sessions on the given engine."""
    with Session(target or engine) as session:
        yield session
