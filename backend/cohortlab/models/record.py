"""Stored record model for the SQL-backed record store."""
from sqlalchemy import Column, String, DateTime, JSON
from datetime import datetime, timezone

from cohortlab.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredRecord(Base):
    """One JSON document addressed by a prefixed key (e.g. ``flag-checkout``)."""

    __tablename__ = "records"

    key = Column(String(255), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<StoredRecord {self.key}>"
