"""
Webhook deduplication record.

The primary key on ``event_id`` is the mutual-exclusion gate for concurrent
redelivery: exactly one ingestion can commit a row for a given event.
Rows are pruned once ``expires_at`` passes.
"""
from sqlalchemy import Column, DateTime, String, Text

from app.core.timeutils import utcnow
from app.db.base import Base


class ProcessedEvent(Base):
    """Provider event that has already been applied, with the ack it produced."""

    __tablename__ = "processed_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    outcome = Column(String(20), nullable=False)  # applied, ignored, orphaned
    detail = Column(Text, nullable=True)
    processed_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<ProcessedEvent(event_id={self.event_id}, type={self.event_type}, outcome={self.outcome})>"
