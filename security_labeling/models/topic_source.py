"""SQLAlchemy model for compiled topic-source ValueSets.

The stored resource is the expanded ValueSet, so the rule table can be rebuilt
at startup without calling the terminology server again.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from security_labeling.db.base import Base


class StoredTopicSource(Base):
    __tablename__ = "topic_sources"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    resource: Mapped[str] = mapped_column(Text, nullable=False)
    source_date: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
