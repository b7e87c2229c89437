"""
Notification dispatcher tests — channel selection and per-channel isolation.
"""

import json
import uuid

import httpx
import pytest

from alerts.dispatcher import (
    FAILED,
    SENT,
    SKIPPED,
    ChannelDispatcher,
    NotificationPayload,
    channels_for_severity,
)
from alerts.email import render_alert_email
from core.config import Settings
from db.enums import AlertSeverity, NotificationChannel

TENANT_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def _payload(severity: AlertSeverity) -> NotificationPayload:
    return NotificationPayload(
        tenant_id=TENANT_ID,
        title="2 batches at critical expiry level",
        message="Batch LOT-1 expires in 9 days",
        severity=severity,
        channels=channels_for_severity(severity),
        metadata={"level": severity.value},
    )


def _statuses(result) -> dict[str, str]:
    return {r.channel.value: r.status for r in result.results}


class TestChannelSelection:
    def test_escalating_channels(self):
        assert channels_for_severity("warning") == [NotificationChannel.IN_APP]
        assert channels_for_severity(AlertSeverity.CRITICAL) == [NotificationChannel.IN_APP, NotificationChannel.EMAIL]
        assert channels_for_severity("emergency") == [
            NotificationChannel.IN_APP,
            NotificationChannel.EMAIL,
            NotificationChannel.SMS,
        ]

    def test_unknown_severity(self):
        with pytest.raises(ValueError):
            channels_for_severity("info")


class TestEmailRendering:
    def test_subject_and_escaping(self):
        subject, html = render_alert_email("Low <stock>", "line one\nline two", "critical")
        assert subject == "[CRITICAL] Low <stock>"
        assert "Low &lt;stock&gt;" in html
        assert "line one<br>line two" in html


@pytest.mark.asyncio
class TestChannelDispatcher:
    async def test_in_app_publishes_to_tenant_channel(self, fake_redis, settings):
        result = await ChannelDispatcher(fake_redis, settings).dispatch(_payload(AlertSeverity.WARNING))

        assert _statuses(result) == {"in_app": SENT}
        channel, message = fake_redis.published[0]
        assert channel == f"alerts:{TENANT_ID}"
        body = json.loads(message)
        assert body["severity"] == "warning"
        assert body["metadata"] == {"level": "warning"}

    async def test_unconfigured_channels_are_skipped(self, settings):
        result = await ChannelDispatcher(None, settings).dispatch(_payload(AlertSeverity.EMERGENCY))
        assert _statuses(result) == {"in_app": SKIPPED, "email": SKIPPED, "sms": SKIPPED}
        assert result.success

    async def test_failing_channel_does_not_block_others(self, fake_redis, monkeypatch):
        settings = Settings(_env_file=None, sendgrid_api_key="SG.test", alert_recipients=["ops@freshfoods.test"])
        sent = []

        async def fake_send(**kwargs):
            sent.append(kwargs)
            return 202

        monkeypatch.setattr("alerts.dispatcher.send_alert_email", fake_send)
        fake_redis.fail = True

        result = await ChannelDispatcher(fake_redis, settings).dispatch(_payload(AlertSeverity.CRITICAL))

        assert _statuses(result) == {"in_app": FAILED, "email": SENT}
        assert not result.success
        assert sent[0]["to_emails"] == ["ops@freshfoods.test"]
        assert sent[0]["severity"] == "critical"

    async def test_rejected_email_is_failed(self, monkeypatch):
        settings = Settings(_env_file=None, sendgrid_api_key="SG.test", alert_recipients=["ops@freshfoods.test"])

        async def fake_send(**kwargs):
            return 401

        monkeypatch.setattr("alerts.dispatcher.send_alert_email", fake_send)
        result = await ChannelDispatcher(None, settings).dispatch(_payload(AlertSeverity.CRITICAL))
        assert _statuses(result)["email"] == FAILED

    async def test_sms_gateway(self, fake_redis):
        settings = Settings(_env_file=None, sms_gateway_url="https://sms.test/send", sms_recipients=["+15550100"])
        dispatcher = ChannelDispatcher(fake_redis, settings)
        bodies = []

        async def fake_post(body):
            bodies.append(body)

        dispatcher._post_sms = fake_post
        result = await dispatcher.dispatch(_payload(AlertSeverity.EMERGENCY))

        assert _statuses(result)["sms"] == SENT
        assert bodies[0]["recipients"] == ["+15550100"]
        assert bodies[0]["body"].startswith("[EMERGENCY] 2 batches at critical expiry level")

    async def test_sms_transport_error_is_failed(self):
        settings = Settings(_env_file=None, sms_gateway_url="https://sms.test/send", sms_recipients=["+15550100"])
        dispatcher = ChannelDispatcher(None, settings)

        async def broken_post(body):
            raise httpx.ConnectError("gateway unreachable")

        dispatcher._post_sms = broken_post
        result = await dispatcher.dispatch(_payload(AlertSeverity.EMERGENCY))
        assert _statuses(result)["sms"] == FAILED
