from sqlalchemy import Column, String, Text, DateTime
from .base import Base, utcnow


class KeyValueEntry(Base):
    """Device-local key-value storage; keys are ``{typePrefix}{id}``."""
    __tablename__ = "kv_entries"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)  # JSON-serialized record
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
