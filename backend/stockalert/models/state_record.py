"""StateRecord — one persisted engine document, keyed by name.

The engine keeps exactly two logical records per scope:
    <prefix>:alert_settings   AlertSettings JSON document
    <prefix>:auto_alerts      JSON array of AutoAlert records
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stockalert.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateRecord(Base):
    __tablename__ = "state_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
