import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint

from acs_dashboard.db import Base


class StorageEntry(Base):
    """One key of a client's persisted storage area (the server-side localStorage)."""

    __tablename__ = "storage_entries"

    id: int = Column(Integer, primary_key=True, index=True)
    scope: str = Column(String(255), index=True, nullable=False)
    key: str = Column(String(255), nullable=False)
    value: Optional[str] = Column(Text, nullable=True)
    updated_at: datetime.datetime = Column(
        DateTime,
        default=datetime.datetime.utcnow,
        onupdate=datetime.datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("scope", "key", name="uq_storage_entries_scope_key"),
    )
