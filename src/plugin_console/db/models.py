# src/plugin_console/db/models.py
"""
Database Models for Plugin Console.

- PluginJob: durable record of a requested plugin mutation
- PluginHistory: one entry per completed mutating operation
"""
import json
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    Index,
    Text,
)
from sqlalchemy.orm import validates

from plugin_console.db.base_session import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo anyway)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds") + "Z"


class JobStatus(PyEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobAction(PyEnum):
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPDATE = "update"
    ENABLE = "enable"
    DISABLE = "disable"
    ROLLBACK = "rollback"


class PluginJob(Base):
    """
    A tracked request to perform one plugin mutation.

    Lifecycle: queued -> running -> completed | failed, or queued -> cancelled.
    Only the worker moves a job out of `queued` (except cancellation), and
    terminal rows are never updated again.
    """

    __tablename__ = "plugin_jobs"
    seq = Column(Integer, primary_key=True)  # FIFO order
    id = Column(String(64), unique=True, nullable=False)
    action = Column(Enum(JobAction), nullable=False)
    plugin_name = Column(String(255), nullable=True)
    url = Column(Text, nullable=True)
    options_json = Column("options", Text, nullable=False, default="{}")
    status = Column(Enum(JobStatus), default=JobStatus.QUEUED, nullable=False, index=True)
    logs_json = Column("logs", Text, nullable=False, default="[]")
    error = Column(Text, nullable=True)
    result_json = Column("result", Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    worker_host = Column(String(100), nullable=True)
    worker_pid = Column(Integer, nullable=True)

    __table_args__ = (Index("ix_job_pop", "status", "seq"),)

    @validates("options_json", "logs_json", "result_json")
    def _validate_json(self, key, value):
        if value is not None and not isinstance(value, str):
            return json.dumps(value)
        return value

    @property
    def options(self) -> Dict[str, Any]:
        return json.loads(self.options_json or "{}")

    @property
    def logs(self) -> List[Dict[str, str]]:
        return json.loads(self.logs_json or "[]")

    @property
    def result(self) -> Any:
        if self.result_json is None:
            return None
        return json.loads(self.result_json)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "pluginName": self.plugin_name,
            "url": self.url,
            "options": self.options,
            "status": self.status.value,
            "logs": self.logs,
            "error": self.error,
            "result": self.result,
            "createdAt": isoformat(self.created_at),
            "startedAt": isoformat(self.started_at),
            "completedAt": isoformat(self.completed_at),
        }

    def __repr__(self) -> str:
        return f"<PluginJob {self.id} {self.action.value} {self.status.value}>"


class PluginHistory(Base):
    """Audit trail of completed plugin mutations (newest entries kept)."""

    __tablename__ = "plugin_history"
    id = Column(Integer, primary_key=True)
    action = Column(String(50), nullable=False)
    plugin_name = Column(String(255), nullable=False, index=True)
    version = Column(String(100), nullable=True)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "pluginName": self.plugin_name,
            "version": self.version,
            "details": self.details,
            "timestamp": isoformat(self.timestamp),
        }
