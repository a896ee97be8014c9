"""
Default Message Handler

Validates inbound messages and records them on the sender's session. The
conversation flow engine plugs in by replacing this handler in the runtime.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog

from fixbot.errors import ValidationError
from fixbot.models.webhook_schemas import InboundMessage
from fixbot.services.pipeline import MessageHandler
from fixbot.services.session_state import SessionSnapshot, SessionStore

logger = structlog.get_logger(__name__)

SUPPORTED_TYPES = ("text", "interactive", "button", "image", "audio", "video", "document", "sticker", "location")
MAX_TEXT_LENGTH = 4096


def validate_message(message: InboundMessage) -> None:
    """
    Reject units that no flow could ever process.

    Raises:
        ValidationError: Unsupported type, empty text, reply without id, ...
    """
    if message.message_type not in SUPPORTED_TYPES:
        raise ValidationError(f"Unsupported message type '{message.message_type}'", field="message_type")

    if message.message_type == "text":
        if not message.text or not message.text.strip():
            raise ValidationError("Text message has an empty body", field="text")
        if len(message.text) > MAX_TEXT_LENGTH:
            raise ValidationError("Text message is too long", field="text")

    if message.message_type in ("interactive", "button") and not message.reply_id:
        raise ValidationError("Reply has no id", field="reply_id")

    if message.message_type in ("image", "audio", "video", "document", "sticker") and not message.media_id:
        raise ValidationError("Media message has no media id", field="media_id")


class SessionRecordingHandler(MessageHandler):
    """
    Records the latest message and a message counter in the session's temp data.

    Args:
        sessions: SessionStore used for every state mutation
    """

    def __init__(self, sessions: SessionStore):
        self.sessions = sessions

    async def handle(self, message: InboundMessage, subject: str, correlation_id: str) -> None:
        validate_message(message)

        received_at = _received_at(message.timestamp)

        def record(snapshot: SessionSnapshot) -> SessionSnapshot:
            data = dict(snapshot.data)
            data["message_count"] = int(data.get("message_count", 0)) + 1
            data["last_message"] = {
                "id": message.message_id,
                "type": message.message_type,
                "reply_id": message.reply_id,
                "received_at": received_at,
                "correlation_id": correlation_id,
            }
            return snapshot.evolve(data=data)

        snapshot = await self.sessions.update(subject, record, operation="record_message")
        logger.info(
            "session_message_recorded",
            message_id=message.message_id,
            state_code=snapshot.state_code,
            version=snapshot.version,
        )


def _received_at(timestamp: Optional[int]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
