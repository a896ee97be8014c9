"""
WhatsApp Cloud API Client

Async client for outbound messages. Calls go through the `whatsapp` circuit
breaker and respect the current message's timeout budget.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from fixbot.errors import TransientDependencyError, ValidationError
from fixbot.services.timeouts import with_timeout

logger = structlog.get_logger(__name__)

GRAPH_API_URL = "https://graph.facebook.com"

# Graph API error codes that mean the request itself (payload or recipient) is unacceptable.
# Token, permission and throttling codes are not listed.
REQUEST_REJECTION_CODES = frozenset({
    100,     # invalid parameter
    131008,  # required parameter missing
    131009,  # parameter value invalid
    131021,  # recipient cannot be sender
    131026,  # message undeliverable
    131047,  # outside the 24h customer service window
    131051,  # unsupported message type
})


def graph_error_code(response: httpx.Response) -> Optional[int]:
    """Graph API `error.code` from a failed response, if the body carries one."""
    try:
        code = response.json().get("error", {}).get("code")
    except (ValueError, AttributeError):
        return None
    return code if isinstance(code, int) else None


class WhatsAppClient:
    """
    Outbound half of the chat channel.

    Args:
        access_token: Graph API bearer token
        phone_number_id: Sending phone number id
        breakers: CircuitBreakerRegistry
        http_client: Shared httpx.AsyncClient
        api_version: Graph API version
        timeout_seconds: Per-request timeout (capped by the current budget)
    """

    def __init__(
        self,
        access_token: Optional[str],
        phone_number_id: Optional[str],
        breakers,
        http_client: httpx.AsyncClient,
        api_version: str = "v21.0",
        timeout_seconds: float = 10.0,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.breakers = breakers
        self.http_client = http_client
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings, breakers, http_client: httpx.AsyncClient) -> "WhatsAppClient":
        return cls(
            access_token=settings.whatsapp_access_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            breakers=breakers,
            http_client=http_client,
            api_version=settings.whatsapp_api_version,
            timeout_seconds=settings.whatsapp_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    async def send_text(self, to: str, body: str) -> bool:
        """
        Send a plain text message.

        Args:
            to: Recipient phone number (channel subject)
            body: Message text

        Returns:
            True if the API accepted the message, False if the client is not configured

        Raises:
            CircuitOpenError: The whatsapp circuit is open
            TransientDependencyError: Network error, auth failure or any other
                non-2xx response that is not a request rejection
            ValidationError: The API rejected the payload or recipient (400 with
                a code in REQUEST_REJECTION_CODES)
        """
        if not self.configured:
            logger.warning("whatsapp_not_configured", action="send_text")
            return False

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": body},
        }
        await self.breakers.get("whatsapp").execute(lambda: self._post_message(payload))
        logger.info("whatsapp_message_sent", message_kind="text", length=len(body))
        return True

    async def _post_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{GRAPH_API_URL}/{self.api_version}/{self.phone_number_id}/messages"
        try:
            response = await with_timeout(
                self.http_client.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.access_token}"},
                    timeout=self.timeout_seconds,
                ),
                requested=self.timeout_seconds,
                operation="whatsapp_send",
            )
        except httpx.HTTPError as e:
            raise TransientDependencyError("whatsapp", f"WhatsApp request failed: {e}") from e

        if response.status_code == 400 and graph_error_code(response) in REQUEST_REJECTION_CODES:
            logger.warning("whatsapp_request_rejected", status=response.status_code, response=response.text[:500])
            raise ValidationError(f"WhatsApp API rejected request ({response.status_code})", field="payload")
        if response.status_code >= 400:
            # Auth, permission, throttling and vendor-side errors are the dependency's problem
            logger.warning("whatsapp_api_error", status=response.status_code, response=response.text[:500])
            raise TransientDependencyError("whatsapp", f"WhatsApp API returned {response.status_code}")

        return response.json()
