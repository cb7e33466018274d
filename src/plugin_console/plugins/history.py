import logging
from typing import List, Optional

from sqlalchemy import Engine, select, delete
from sqlalchemy.orm import Session

from plugin_console.db.models import PluginHistory

logger = logging.getLogger(__name__)


class HistoryLog:
    """
    One HistoryEntry per completed mutating operation, for the audit collaborator.

    Who triggered the job is not known here; the API layer attributes it.
    """

    def __init__(self, engine: Engine, retention: int = 100):
        self.engine = engine
        self.retention = retention

    def record(self, action: str, plugin_name: str, version: Optional[str] = None, details: Optional[str] = None):
        with Session(self.engine) as session:
            session.add(
                PluginHistory(
                    action=action,
                    plugin_name=plugin_name,
                    version=version,
                    details=details,
                )
            )
            session.flush()
            self._prune(session)
            session.commit()
        logger.debug(f"History: {action} {plugin_name} {version or ''}")

    def _prune(self, session: Session):
        keep_ids = select(PluginHistory.id).order_by(PluginHistory.id.desc()).limit(self.retention)
        session.execute(delete(PluginHistory).where(PluginHistory.id.not_in(keep_ids)))

    def entries(self, limit: Optional[int] = None) -> List[dict]:
        """Newest first."""
        with Session(self.engine) as session:
            stmt = select(PluginHistory).order_by(PluginHistory.id.desc())
            if limit:
                stmt = stmt.limit(limit)
            return [h.to_dict() for h in session.scalars(stmt)]
