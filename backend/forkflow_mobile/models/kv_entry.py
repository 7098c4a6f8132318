from sqlalchemy import Column, String, Text
from .base import Base, TimestampMixin


class KeyValueEntry(Base, TimestampMixin):
    """One durable local-storage slot (pending queue, offline mirror, GPS cache, metrics)."""
    __tablename__ = "kv_entries"

    key = Column(String(200), primary_key=True)
    value = Column(Text, nullable=False)  # JSON text
