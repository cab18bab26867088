"""History service: persists session trees as setting history rows."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import Engine

from setting_forge.db import db_session
from setting_forge.models import GenerationSession, SaveResult, SettingHistory


logger = logging.getLogger(__name__)


def _title_for(session: GenerationSession) -> str:
    for root_id in session.root_node_ids:
        node = session.nodes.get(root_id)
        if node is not None:
            return node.name
    return session.initial_prompt[:50]


def _snapshot(session: GenerationSession) -> list[dict]:
    return [node.model_dump(mode="json") for node in session.nodes.values()]


class HistoryService:
    """CRUD for saved setting trees."""

    def __init__(self, engine: Engine | None = None):
        self.engine = engine

    def create_from_session(self, session: GenerationSession, novel_id: Optional[str] = None) -> SaveResult:
        """Store the session tree as a new history record."""
        record = SettingHistory(
            session_id=session.session_id,
            user_id=session.user_id,
            novel_id=novel_id or session.novel_id,
            title=_title_for(session),
            initial_prompt=session.initial_prompt,
            strategy_id=session.strategy_id,
            root_node_ids=list(session.root_node_ids),
            nodes=_snapshot(session),
        )
        with db_session(self.engine) as db:
            db.add(record)
            db.commit()
            db.refresh(record)
        logger.info("Saved session %s as history %s (%d nodes)",
                    session.session_id, record.history_id, len(session.nodes))
        return SaveResult(root_node_ids=list(session.root_node_ids), history_id=record.history_id)

    def update_from_session(
        self,
        history_id: str,
        session: GenerationSession,
        novel_id: Optional[str] = None,
    ) -> Optional[SaveResult]:
        """Overwrite an existing record with the current tree. None when the record is gone."""
        with db_session(self.engine) as db:
            record = db.get(SettingHistory, history_id)
            if record is None:
                return None
            record.title = _title_for(session)
            record.novel_id = novel_id or session.novel_id or record.novel_id
            record.root_node_ids = list(session.root_node_ids)
            record.nodes = _snapshot(session)
            record.updated_at = datetime.utcnow()
            db.add(record)
            db.commit()
        logger.info("Updated history %s from session %s", history_id, session.session_id)
        return SaveResult(root_node_ids=list(session.root_node_ids), history_id=history_id)

    def get(self, history_id: str) -> Optional[SettingHistory]:
        with db_session(self.engine) as db:
            return db.get(SettingHistory, history_id)

    def link_novel(self, history_id: str, novel_id: str) -> bool:
        """Attach a record to a novel. False when the record is gone."""
        with db_session(self.engine) as db:
            record = db.get(SettingHistory, history_id)
            if record is None:
                return False
            record.novel_id = novel_id
            record.updated_at = datetime.utcnow()
            db.add(record)
            db.commit()
        logger.info("Linked history %s to novel %s", history_id, novel_id)
        return True
