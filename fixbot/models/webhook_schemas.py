"""
Pydantic schemas for WhatsApp Cloud API webhook payloads
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional


class WebhookContact(BaseModel):
    model_config = ConfigDict(extra="allow")

    wa_id: Optional[str] = None
    profile: Optional[Dict[str, Any]] = None


class WebhookValue(BaseModel):
    """
    `value` object of a webhook change.
    Status updates arrive here too, without `messages`.
    """
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    contacts: List[WebhookContact] = Field(default_factory=list)
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    statuses: List[Dict[str, Any]] = Field(default_factory=list)


class WebhookChange(BaseModel):
    model_config = ConfigDict(extra="allow")

    field: Optional[str] = None
    value: WebhookValue = Field(default_factory=WebhookValue)


class WebhookEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    changes: List[WebhookChange] = Field(default_factory=list)


class WhatsAppWebhook(BaseModel):
    """
    WhatsApp Cloud API webhook notification.
    Flexible schema that accepts any additional fields
    """
    model_config = ConfigDict(extra="allow")

    object: Optional[str] = None
    entry: List[WebhookEntry] = Field(default_factory=list)


class InboundMessage(BaseModel):
    """
    One unit of work: a single inbound channel message.

    Serialized as JSON into dead-letter entries and rebuilt from there on
    replay, so every field the handlers need must live here.
    """
    message_id: Optional[str] = None
    subject: Optional[str] = None
    message_type: str = "unknown"
    text: Optional[str] = None
    reply_id: Optional[str] = None
    reply_title: Optional[str] = None
    media_id: Optional[str] = None
    contact_name: Optional[str] = None
    timestamp: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_channel(cls, message: Dict[str, Any], contact_name: Optional[str] = None) -> "InboundMessage":
        """
        Build an InboundMessage from a raw webhook `messages[]` item.

        Args:
            message: Raw message dict from the webhook payload
            contact_name: Profile name from the matching contact, if any

        Returns:
            InboundMessage with the type-specific fields lifted out
        """
        message_type = message.get("type") or "unknown"
        text = None
        reply_id = None
        reply_title = None
        media_id = None

        if message_type == "text":
            text = (message.get("text") or {}).get("body")
        elif message_type == "interactive":
            interactive = message.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            reply_id = reply.get("id")
            reply_title = reply.get("title")
        elif message_type == "button":
            # Quick-reply template buttons
            button = message.get("button") or {}
            reply_id = button.get("payload")
            reply_title = button.get("text")
        elif message_type in ("image", "audio", "video", "document", "sticker"):
            media = message.get(message_type) or {}
            media_id = media.get("id")
            text = media.get("caption")

        timestamp = message.get("timestamp")
        try:
            timestamp = int(timestamp) if timestamp is not None else None
        except (TypeError, ValueError):
            timestamp = None

        return cls(
            message_id=message.get("id"),
            subject=message.get("from"),
            message_type=message_type,
            text=text,
            reply_id=reply_id,
            reply_title=reply_title,
            media_id=media_id,
            contact_name=contact_name,
            timestamp=timestamp,
            raw=message,
        )


class WebhookResponse(BaseModel):
    """
    Response returned from webhook endpoint
    """
    status: str
    received: int = 0
    correlation_id: Optional[str] = None
