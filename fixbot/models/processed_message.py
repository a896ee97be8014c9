"""
ProcessedMessage Model
Durable deduplication record, one row per inbound channel message id
"""

from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.sql import func
from fixbot.database import Base


class ProcessedMessage(Base):
    """
    Deduplication record for inbound channel messages.

    Created by an atomic insert-if-absent. Every later sighting of the same
    message id increments retry_count in the same statement, so concurrent
    first sightings resolve to one insert winner (retry_count 0) and
    observers that read back a duplicate (retry_count >= 1).
    """
    __tablename__ = "processed_messages"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # External message id from the chat channel
    message_id = Column(String(255), unique=True, nullable=False)

    # Owning subject (end-user phone number)
    subject = Column(String(64), nullable=False)

    retry_count = Column(Integer, nullable=False, default=0, server_default="0")

    # Timestamps
    first_seen_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_processed_messages_last_seen_at', 'last_seen_at'),
    )

    def __repr__(self):
        return f"<ProcessedMessage(id={self.id}, message_id='{self.message_id}', retry_count={self.retry_count})>"
