"""
Database Models
"""

from fixbot.models.processed_message import ProcessedMessage
from fixbot.models.chat_session import ChatSession
from fixbot.models.dead_letter_message import (
    DeadLetterMessage,
    DeadLetterStatus,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
)

__all__ = [
    "ProcessedMessage",
    "ChatSession",
    "DeadLetterMessage",
    "DeadLetterStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
]
