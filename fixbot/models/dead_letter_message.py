"""
DeadLetterMessage Model
Failed inbound messages queued for bounded, scheduled retry
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, Index, CheckConstraint
from sqlalchemy.sql import func
from fixbot.database import Base


class DeadLetterStatus(str, enum.Enum):
    """Lifecycle of a dead-letter entry. PENDING/RETRYING are the only non-terminal states."""
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


ACTIVE_STATUSES = (DeadLetterStatus.PENDING.value, DeadLetterStatus.RETRYING.value)
TERMINAL_STATUSES = (
    DeadLetterStatus.PROCESSED.value,
    DeadLetterStatus.FAILED.value,
    DeadLetterStatus.SKIPPED.value,
)


class DeadLetterMessage(Base):
    """
    Dead-letter entry for an inbound message whose handler failed.

    Invariants:
    - retry_count <= max_retries
    - next_retry_at is set only while status is PENDING or RETRYING
    - status moves forward once into PROCESSED, FAILED or SKIPPED
    """
    __tablename__ = "dead_letter_messages"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Original unit of work
    message_id = Column(String(255), unique=True, nullable=False)
    subject = Column(String(64), nullable=False)
    message_type = Column(String(50), nullable=False)
    payload = Column(Text, nullable=False)
    # Serialized InboundMessage (JSON)

    correlation_id = Column(String(100), nullable=True)

    # Last error
    error_message = Column(String(1000), nullable=True)
    error_code = Column(String(100), nullable=True)
    error_stack = Column(Text, nullable=True)

    # Retry tracking
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")
    max_retries = Column(Integer, nullable=False, default=3, server_default="3")
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    # Lifecycle
    status = Column(String(20), nullable=False, default=DeadLetterStatus.PENDING.value,
                    server_default=DeadLetterStatus.PENDING.value)
    status_reason = Column(String(500), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_dead_letter_status_next_retry', 'status', 'next_retry_at'),
        Index('ix_dead_letter_created_at', 'created_at'),
        CheckConstraint('retry_count <= max_retries', name='ck_dead_letter_retry_bound'),
    )

    def __repr__(self):
        return (
            f"<DeadLetterMessage(id={self.id}, message_id='{self.message_id}', "
            f"status='{self.status}', retry_count={self.retry_count}/{self.max_retries})>"
        )
