"""Database package."""
from .database import (
    build_engine,
    db_session,
    engine,
    init_db,
)

__all__ = [
    "build_engine",
    "db_session",
    "engine",
    "init_db",
]
