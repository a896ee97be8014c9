"""
ChatSession Model
Per-subject conversation state guarded by an optimistic version counter
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from fixbot.database import Base


class ChatSession(Base):
    """
    Conversation state for one end user.

    Mutated only through SessionStore: every write is a conditional update on
    `version`, which increments by exactly one per successful write.
    Sessions are never deleted, only moved to a terminal state code.
    """
    __tablename__ = "chat_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # End-user identifier (phone number)
    subject = Column(String(64), unique=True, nullable=False)

    # Flow state
    state_code = Column(String(50), nullable=False)
    data = Column(JSON, nullable=True)
    # Opaque temp data owned by the business flow

    equipment_id = Column(Integer, nullable=True)

    # Optimistic concurrency token
    version = Column(Integer, nullable=False, default=0, server_default="0")

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_activity_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<ChatSession(subject='{self.subject}', state='{self.state_code}', version={self.version})>"
