"""
Alert Notification Service
Delivers operational alerts (dead-letter exhaustion, open circuits, sweep crashes)
to a chat webhook and, for serious alerts, by email
"""

import asyncio
import smtplib
import time
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

SEVERITIES = ("INFO", "WARNING", "ERROR", "CRITICAL")
EMAIL_SEVERITIES = ("ERROR", "CRITICAL")

SEVERITY_EMOJI = {
    "INFO": ":information_source:",
    "WARNING": ":warning:",
    "ERROR": ":x:",
    "CRITICAL": ":rotating_light:",
}


class AlertNotifier:
    """
    Notification collaborator: `notify(severity, alert_type, message, details)`.

    Every alert is logged. Alerts sharing a dedup key (the alert type unless
    given) inside the cooldown window are suppressed. The window only starts
    once a channel has delivered the alert. Delivery failures are logged and never
    raised: an alert must not turn into a second failure.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        breakers=None,
        environment: str = "development",
        cooldown_seconds: float = 300,
        admin_email: Optional[str] = None,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_username: Optional[str] = None,
        smtp_password: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.webhook_url = webhook_url
        self.http_client = http_client
        self.breakers = breakers
        self.environment = environment
        self.cooldown_seconds = cooldown_seconds
        self.admin_email = admin_email
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self._clock = clock
        self._last_sent: Dict[str, float] = {}
        self.sent = 0
        self.suppressed = 0
        self.undelivered = 0

    @classmethod
    def from_settings(cls, settings, http_client: Optional[httpx.AsyncClient] = None, breakers=None) -> "AlertNotifier":
        return cls(
            webhook_url=settings.alert_webhook_url,
            http_client=http_client,
            breakers=breakers,
            environment=settings.environment,
            cooldown_seconds=settings.alert_cooldown_seconds,
            admin_email=settings.admin_email,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_username=settings.smtp_username,
            smtp_password=settings.smtp_password,
        )

    async def notify(
        self,
        severity: str,
        alert_type: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        dedup_key: Optional[str] = None,
    ) -> bool:
        """
        Raise an alert.

        Args:
            severity: INFO, WARNING, ERROR or CRITICAL
            alert_type: Stable alert identifier (e.g. 'dlq_permanent_failure')
            message: Human-readable summary
            details: Extra structured context
            dedup_key: Cooldown key; defaults to alert_type so alerts whose
                message embeds a count still collapse into one

        Returns:
            True if delivery was attempted, False if suppressed by cooldown
        """
        severity = severity.upper()
        if severity not in SEVERITIES:
            severity = "ERROR"
        details = details or {}

        log = logger.critical if severity == "CRITICAL" else logger.error if severity == "ERROR" else logger.warning
        log("alert_raised", severity=severity, alert_type=alert_type, alert_message=message, details=details)

        key = dedup_key or alert_type
        last = self._last_sent.get(key)
        if last is not None and self._clock() - last < self.cooldown_seconds:
            self.suppressed += 1
            logger.info("alert_suppressed", alert_type=alert_type, dedup_key=key, cooldown_seconds=self.cooldown_seconds)
            return False

        attempted = delivered = 0
        if self.webhook_url and self.http_client is not None:
            attempted += 1
            delivered += await self._send_webhook(severity, alert_type, message, details)

        if severity in EMAIL_SEVERITIES and self.smtp_host and self.admin_email:
            attempted += 1
            try:
                await asyncio.to_thread(self._send_email, severity, alert_type, message, details)
                delivered += 1
            except Exception as e:
                logger.error("alert_email_failed", alert_type=alert_type, error=str(e), smtp_host=self.smtp_host)

        # The log line above is the only channel when none is configured
        if delivered or not attempted:
            self._last_sent[key] = self._clock()
            self.sent += 1
        else:
            self.undelivered += 1

        return True

    def build_webhook_payload(self, severity: str, alert_type: str, message: str, details: Dict[str, Any]) -> Dict[str, Any]:
        """Slack-compatible message payload."""
        fields = [
            {"title": "Type", "value": alert_type, "short": True},
            {"title": "Environment", "value": self.environment, "short": True},
        ]
        for name, value in details.items():
            fields.append({"title": name, "value": str(value)[:500], "short": False})

        return {
            "text": f"{SEVERITY_EMOJI[severity]} [{severity}] {message}",
            "attachments": [
                {
                    "color": "danger" if severity in EMAIL_SEVERITIES else "warning",
                    "fields": fields,
                    "ts": int(datetime.now(timezone.utc).timestamp()),
                }
            ],
        }

    async def _send_webhook(self, severity: str, alert_type: str, message: str, details: Dict[str, Any]) -> bool:
        payload = self.build_webhook_payload(severity, alert_type, message, details)

        async def post():
            response = await self.http_client.post(self.webhook_url, json=payload, timeout=10.0)
            response.raise_for_status()
            return response

        try:
            if self.breakers is not None:
                await self.breakers.get("alert_webhook").execute(post)
            else:
                await post()
            logger.info("alert_webhook_sent", alert_type=alert_type)
            return True
        except Exception as e:
            # Do NOT raise - notification failure should not cascade
            logger.error("alert_webhook_failed", alert_type=alert_type, error=str(e))
            return False

    def _send_email(self, severity: str, alert_type: str, message: str, details: Dict[str, Any]) -> None:
        msg = MIMEMultipart()
        msg['From'] = self.smtp_username or "noreply@fixbot.local"
        msg['To'] = self.admin_email
        msg['Subject'] = f"[{severity}] {alert_type}: {message}"

        lines = [
            f"ALERT: {message}",
            "",
            f"Type: {alert_type}",
            f"Severity: {severity}",
            f"Environment: {self.environment}",
            f"Timestamp: {datetime.now(timezone.utc).isoformat()}",
            "",
        ]
        lines.extend(f"{name}: {value}" for name, value in details.items())
        msg.attach(MIMEText("\n".join(lines), 'plain'))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
            server.starttls()
            if self.smtp_username and self.smtp_password:
                server.login(self.smtp_username, self.smtp_password)
            server.send_message(msg)

        logger.info("alert_email_sent", alert_type=alert_type, recipient=self.admin_email)

    def stats(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "suppressed": self.suppressed,
            "undelivered": self.undelivered,
            "webhook_configured": bool(self.webhook_url),
            "email_configured": bool(self.smtp_host and self.admin_email),
        }
