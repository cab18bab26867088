"""Saved setting history for database persistence."""
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4
from pydantic import BaseModel
from sqlalchemy import Column, JSON
from sqlmodel import Field, SQLModel


class SettingHistory(SQLModel, table=True):
    """Database model for a persisted setting tree snapshot."""

    __tablename__ = "setting_history"

    history_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    session_id: str = Field(index=True)
    user_id: str = Field(index=True)
    novel_id: Optional[str] = Field(default=None, index=True)
    title: str = ""
    initial_prompt: str = ""
    strategy_id: str = "default"
    root_node_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    nodes: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SaveResult(BaseModel):
    """Result of handing a session tree to the history store."""
    root_node_ids: list[str]
    history_id: str
