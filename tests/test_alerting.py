"""
Tests for AlertNotifier
"""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from fixbot.services.alerting import AlertNotifier
from fixbot.services.monitoring.circuit_breakers import CircuitBreakerRegistry, CircuitState


def recording_transport(status_code=200):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(status_code)

    return httpx.MockTransport(handler), requests


class TestAlertNotifier:

    @pytest.mark.asyncio
    async def test_posts_webhook_payload(self, mono_clock):
        transport, requests = recording_transport()
        async with httpx.AsyncClient(transport=transport) as http_client:
            notifier = AlertNotifier("https://hooks.example/alerts", http_client, environment="staging", clock=mono_clock)

            sent = await notifier.notify("WARNING", "dlq_permanent_failure", "2 messages failed", {"count": 2})

        assert sent is True
        payload = json.loads(requests[0].content)
        assert payload["text"] == ":warning: [WARNING] 2 messages failed"
        fields = {f["title"]: f["value"] for f in payload["attachments"][0]["fields"]}
        assert fields["Type"] == "dlq_permanent_failure"
        assert fields["Environment"] == "staging"
        assert fields["count"] == "2"

    @pytest.mark.asyncio
    async def test_alerts_of_one_type_are_suppressed_during_cooldown(self, mono_clock):
        transport, requests = recording_transport()
        async with httpx.AsyncClient(transport=transport) as http_client:
            notifier = AlertNotifier("https://hooks.example/alerts", http_client, cooldown_seconds=300, clock=mono_clock)

            assert await notifier.notify("WARNING", "dlq_permanent_failure", "1 dead-letter message(s) failed") is True
            assert await notifier.notify("WARNING", "dlq_permanent_failure", "2 dead-letter message(s) failed") is False
            mono_clock.advance(301)
            assert await notifier.notify("WARNING", "dlq_permanent_failure", "3 dead-letter message(s) failed") is True

        assert len(requests) == 2
        assert notifier.stats()["suppressed"] == 1

    @pytest.mark.asyncio
    async def test_dedup_key_separates_alerts_of_one_type(self, mono_clock):
        transport, requests = recording_transport()
        async with httpx.AsyncClient(transport=transport) as http_client:
            notifier = AlertNotifier("https://hooks.example/alerts", http_client, cooldown_seconds=300, clock=mono_clock)

            assert await notifier.notify("WARNING", "circuit_breaker_open", "crm open", dedup_key="cb:crm") is True
            assert await notifier.notify("WARNING", "circuit_breaker_open", "crm open", dedup_key="cb:crm") is False
            assert await notifier.notify("WARNING", "circuit_breaker_open", "whatsapp open", dedup_key="cb:whatsapp") is True

        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_failed_delivery_does_not_start_cooldown(self, mono_clock):
        responses = iter([httpx.Response(500), httpx.Response(200)])
        requests = []

        def handler(request):
            requests.append(request)
            return next(responses)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            notifier = AlertNotifier("https://hooks.example/alerts", http_client, cooldown_seconds=300, clock=mono_clock)

            assert await notifier.notify("ERROR", "dlq_processor_failure", "Sweep crashed") is True
            assert await notifier.notify("ERROR", "dlq_processor_failure", "Sweep crashed") is True
            assert await notifier.notify("ERROR", "dlq_processor_failure", "Sweep crashed") is False

        assert len(requests) == 2
        assert notifier.stats()["undelivered"] == 1
        assert notifier.stats()["sent"] == 1

    @pytest.mark.asyncio
    async def test_webhook_failure_never_raises(self, mono_clock):
        transport, _ = recording_transport(status_code=500)
        breakers = CircuitBreakerRegistry(clock=mono_clock)
        async with httpx.AsyncClient(transport=transport) as http_client:
            notifier = AlertNotifier("https://hooks.example/alerts", http_client, breakers=breakers,
                                     cooldown_seconds=0, clock=mono_clock)
            for n in range(3):
                assert await notifier.notify("ERROR", "sweep", f"failure {n}") is True

        assert breakers.get("alert_webhook").state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_without_channels_only_logs(self, mono_clock):
        notifier = AlertNotifier(clock=mono_clock)
        assert await notifier.notify("INFO", "noop", "nothing configured") is True

    @pytest.mark.asyncio
    async def test_critical_alerts_are_emailed(self, mono_clock):
        notifier = AlertNotifier(
            admin_email="ops@example.com",
            smtp_host="smtp.example.com",
            smtp_username="bot@example.com",
            smtp_password="secret",
            clock=mono_clock,
        )

        with patch("fixbot.services.alerting.smtplib.SMTP") as smtp:
            server = MagicMock()
            smtp.return_value.__enter__.return_value = server
            await notifier.notify("CRITICAL", "dlq_processor_failure", "Sweep crashed", {"error": "boom"})
            await notifier.notify("WARNING", "other", "not emailed")

        smtp.assert_called_once_with("smtp.example.com", 587, timeout=10)
        server.login.assert_called_once_with("bot@example.com", "secret")
        sent = server.send_message.call_args.args[0]
        assert sent["Subject"] == "[CRITICAL] dlq_processor_failure: Sweep crashed"
        assert sent["To"] == "ops@example.com"

    @pytest.mark.asyncio
    async def test_email_failure_never_raises(self, mono_clock):
        notifier = AlertNotifier(admin_email="ops@example.com", smtp_host="smtp.example.com", clock=mono_clock)

        with patch("fixbot.services.alerting.smtplib.SMTP", side_effect=OSError("unreachable")):
            assert await notifier.notify("ERROR", "sweep", "failed") is True
