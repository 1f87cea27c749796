"""System configuration model — runtime settings store read by the engine."""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text

from .base import Base, UTCDateTime


class SystemConfig(Base):
    """Key-value runtime configuration. Survives restarts, auditable."""

    __tablename__ = "system_config"
    id = Column(Integer, primary_key=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(Text, nullable=False)
    description = Column(String(500))
    updated_by = Column(String(255))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
