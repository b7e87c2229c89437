"""
Notification Dispatcher — fans a notification out to its channels.

Channel selection by severity:
  warning    in_app
  critical   in_app, email
  emergency  in_app, email, sms

Channels:
  - in_app: Redis publish on ``alerts:<tenant_id>`` (dashboard subscribers)
  - email:  SendGrid, to settings.alert_recipients
  - sms:    JSON POST to settings.sms_gateway_url (httpx + tenacity)

Each channel fails independently; the caller gets per-channel results and
never an exception.
"""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from alerts.email import send_alert_email
from core.config import Settings, get_settings
from db.enums import AlertSeverity, NotificationChannel

logger = structlog.get_logger()

SENT = "sent"
SKIPPED = "skipped"
FAILED = "failed"


class NotificationPayload(BaseModel):
    tenant_id: uuid.UUID
    title: str
    message: str
    severity: AlertSeverity
    channels: list[NotificationChannel]
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass
class ChannelResult:
    channel: NotificationChannel
    status: str
    detail: str | None = None


@dataclass
class DispatchResult:
    results: list[ChannelResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.status != FAILED for r in self.results)


def channels_for_severity(severity: AlertSeverity | str) -> list[NotificationChannel]:
    severity = AlertSeverity(severity)
    channels = [NotificationChannel.IN_APP]
    if severity in (AlertSeverity.CRITICAL, AlertSeverity.EMERGENCY):
        channels.append(NotificationChannel.EMAIL)
    if severity == AlertSeverity.EMERGENCY:
        channels.append(NotificationChannel.SMS)
    return channels


class NotificationDispatcher:
    """Delivery contract used by the expiry monitor and threshold detector."""

    async def dispatch(self, payload: NotificationPayload) -> DispatchResult:
        raise NotImplementedError


class ChannelDispatcher(NotificationDispatcher):
    def __init__(self, redis: aioredis.Redis | None = None, settings: Settings | None = None):
        self.redis = redis
        self.settings = settings or get_settings()
        self._handlers = {
            NotificationChannel.IN_APP: self._send_in_app,
            NotificationChannel.EMAIL: self._send_email,
            NotificationChannel.SMS: self._send_sms,
        }

    async def dispatch(self, payload: NotificationPayload) -> DispatchResult:
        outcome = DispatchResult()
        for channel in payload.channels:
            try:
                result = await self._handlers[channel](payload)
            except Exception as exc:
                logger.error(
                    "notifications.channel_failed",
                    channel=channel.value,
                    tenant_id=str(payload.tenant_id),
                    title=payload.title,
                    error=str(exc),
                    exc_info=True,
                )
                result = ChannelResult(channel, FAILED, str(exc))
            outcome.results.append(result)

        logger.info(
            "notifications.dispatched",
            tenant_id=str(payload.tenant_id),
            severity=payload.severity.value,
            results={r.channel.value: r.status for r in outcome.results},
        )
        return outcome

    async def _send_in_app(self, payload: NotificationPayload) -> ChannelResult:
        if self.redis is None:
            return ChannelResult(NotificationChannel.IN_APP, SKIPPED, "redis not configured")
        message = {
            "type": "notification",
            "title": payload.title,
            "message": payload.message,
            "severity": payload.severity.value,
            "metadata": payload.metadata,
        }
        await self.redis.publish(f"alerts:{payload.tenant_id}", json.dumps(message, default=str))
        return ChannelResult(NotificationChannel.IN_APP, SENT)

    async def _send_email(self, payload: NotificationPayload) -> ChannelResult:
        if not self.settings.sendgrid_api_key or not self.settings.alert_recipients:
            return ChannelResult(NotificationChannel.EMAIL, SKIPPED, "email not configured")
        status_code = await send_alert_email(
            api_key=self.settings.sendgrid_api_key,
            from_email=self.settings.alert_from_email,
            to_emails=self.settings.alert_recipients,
            title=payload.title,
            message=payload.message,
            severity=payload.severity.value,
        )
        if status_code not in (200, 201, 202):
            return ChannelResult(NotificationChannel.EMAIL, FAILED, f"sendgrid status {status_code}")
        return ChannelResult(NotificationChannel.EMAIL, SENT)

    async def _send_sms(self, payload: NotificationPayload) -> ChannelResult:
        if not self.settings.sms_gateway_url or not self.settings.sms_recipients:
            return ChannelResult(NotificationChannel.SMS, SKIPPED, "sms gateway not configured")
        body = f"[{payload.severity.value.upper()}] {payload.title}\n\n{payload.message}"
        await self._post_sms(
            {
                "recipients": self.settings.sms_recipients,
                "body": body,
                "tenant_id": str(payload.tenant_id),
            }
        )
        return ChannelResult(NotificationChannel.SMS, SENT)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post_sms(self, body: dict) -> None:
        async with httpx.AsyncClient(timeout=self.settings.webhook_timeout_seconds) as client:
            response = await client.post(self.settings.sms_gateway_url, json=body)
            response.raise_for_status()
