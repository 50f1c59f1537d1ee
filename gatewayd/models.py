"""
Database models for gatewayd.

Uses Peewee ORM with SQLite. Stores the registry of gateway launches (so a
restarted supervisor can reattach to the process it spawned) and a log of
lifecycle events.
"""

import os
from datetime import datetime, timedelta

from peewee import (
    AutoField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

from .config import config

database = DatabaseProxy()


def initialize_db(db_path=None):
    """Initialize database connection and create tables."""
    db_path = db_path or config.db_path
    os.makedirs(os.path.dirname(str(db_path)), exist_ok=True)
    db = SqliteDatabase(
        str(db_path),
        pragmas={
            "journal_mode": "wal",
            "cache_size": -64 * 1000,
            "busy_timeout": 5000,
        },
    )
    database.initialize(db)
    database.create_tables([GatewayRun, LifecycleEvent], safe=True)


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class GatewayRun(BaseModel):
    """One launch of the gateway process."""

    id = AutoField()
    pid = IntegerField(index=True)
    port = IntegerField()
    command = TextField()
    state = CharField(default="starting")
    started_at = DateTimeField(default=datetime.now)
    stopped_at = DateTimeField(null=True)

    class Meta:
        table_name = "gateway_runs"

    @classmethod
    def latest_live(cls):
        """The most recent run not marked stopped, or None."""
        return (
            cls.select()
            .where(cls.stopped_at.is_null())
            .order_by(cls.started_at.desc(), cls.id.desc())
            .first()
        )

    def mark_stopped(self, state: str = "killed"):
        self.state = state
        self.stopped_at = datetime.now()
        self.save()


class LifecycleEvent(BaseModel):
    """A supervisor lifecycle event (launch, kill, restore, ...)."""

    id = AutoField()
    kind = CharField(index=True)
    message = TextField()
    pid = IntegerField(null=True)
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "lifecycle_events"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "message": self.message,
            "pid": self.pid,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


def record_event(kind: str, message: str, pid: int = None):
    """Persist a lifecycle event. No-op before initialize_db()."""
    if not db_ready():
        return None
    return LifecycleEvent.create(kind=kind, message=message[:2000], pid=pid)


def db_ready() -> bool:
    return database.obj is not None


def prune_events(retention_days: int) -> int:
    """Delete lifecycle events older than the retention window."""
    cutoff = datetime.now() - timedelta(days=retention_days)
    return LifecycleEvent.delete().where(LifecycleEvent.timestamp < cutoff).execute()
