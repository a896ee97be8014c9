"""
Webhook Router
Handles incoming WhatsApp Cloud API webhooks
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError as PayloadError
from typing import List, Optional
import hashlib
import hmac
import structlog

from fixbot.config import settings
from fixbot.middleware.correlation_id import get_correlation_id
from fixbot.models.webhook_schemas import InboundMessage, WebhookResponse, WhatsAppWebhook
from fixbot.routers.dependencies import get_runtime
from fixbot.services.runtime import Runtime

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/whatsapp", tags=["webhook"])


def verify_webhook_signature(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str]
) -> bool:
    """
    Verify the X-Hub-Signature-256 header (HMAC-SHA256 of the raw body with the app secret)
    """
    if not signature or not secret:
        return False

    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    expected = hmac.new(
        secret.encode('utf-8'),
        payload,
        hashlib.sha256
    ).hexdigest()

    return hmac.compare_digest(signature, expected)


def extract_messages(webhook: WhatsAppWebhook) -> List[InboundMessage]:
    """
    Flatten entry[].changes[].value.messages[] into units of work.

    Status callbacks (delivered/read receipts) carry no messages and are ignored.
    """
    messages = []
    for entry in webhook.entry:
        for change in entry.changes:
            names = {
                contact.wa_id: (contact.profile or {}).get("name")
                for contact in change.value.contacts
                if contact.wa_id
            }
            for raw in change.value.messages:
                messages.append(InboundMessage.from_channel(raw, contact_name=names.get(raw.get("from"))))
    return messages


def enqueue_message(message: InboundMessage, correlation_id: str) -> None:
    """Hand a message to the Dramatiq worker (queue mode)."""
    from fixbot.actors.message_processor import process_inbound_message

    process_inbound_message.send(message.model_dump(mode="json"), correlation_id)


@router.get("/webhook")
async def verify_subscription(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """
    Webhook subscription handshake: echo the challenge when the verify token matches.
    """
    if (
        hub_mode == "subscribe"
        and settings.whatsapp_verify_token
        and hub_verify_token == settings.whatsapp_verify_token
    ):
        logger.info("webhook_verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("webhook_verification_failed", mode=hub_mode)
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Receive incoming messages from WhatsApp

    This endpoint:
    1. Validates webhook signature
    2. Extracts messages from the notification
    3. Processes each message in background (or enqueues it in queue mode)
    4. Returns quick acknowledgment

    Processing failures never change the response: failed messages go to
    the dead-letter queue and are retried internally, so the channel must
    not redeliver them.
    """
    body = await request.body()

    # Step 1: Verify webhook signature (if configured)
    if settings.whatsapp_app_secret:
        if not verify_webhook_signature(body, x_hub_signature_256, settings.whatsapp_app_secret):
            logger.warning("webhook_signature_invalid")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    correlation_id = get_correlation_id()

    # Step 2: Parse payload. Unparseable payloads are acknowledged, never redelivered.
    try:
        webhook = WhatsAppWebhook.model_validate_json(body)
    except PayloadError as e:
        logger.warning("webhook_payload_invalid", errors=e.error_count())
        return WebhookResponse(status="ignored", correlation_id=correlation_id)

    messages = extract_messages(webhook)
    if not messages:
        return WebhookResponse(status="ignored", correlation_id=correlation_id)

    logger.info("webhook_received", messages=len(messages), mode=settings.processing_mode)

    # Step 3: Process asynchronously
    for message in messages:
        if settings.processing_mode == "queue":
            try:
                enqueue_message(message, correlation_id)
                continue
            except Exception as e:
                # Broker unavailable: process in this process instead of losing the message
                logger.error("enqueue_failed", message_id=message.message_id, error=str(e))
        background_tasks.add_task(runtime.pipeline.process, message, correlation_id)

    return WebhookResponse(status="received", received=len(messages), correlation_id=correlation_id)
