import json
from datetime import datetime, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import httpx
import pytest

from app.domain.notifications.service import (
    NoopNotifier,
    NotificationType,
    WebhookNotifier,
    build_payload,
    create_notifier,
)
from app.settings import Settings

LOCAL_TZ = ZoneInfo("Asia/Bishkek")


def _booking(**overrides):
    values = {
        "booking_id": "booking-1",
        "master_id": "master-1",
        "service_id": "service-1",
        "client_id": "client-1",
        "starts_at": datetime(2026, 3, 3, 4, 0, tzinfo=timezone.utc),
        "status": "CONFIRMED",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_payload_renders_local_start_time():
    payload = build_payload("client-1", _booking(), NotificationType.CONFIRMED, LOCAL_TZ)

    assert payload["type"] == "CONFIRMED"
    assert payload["title"] == "Booking confirmed"
    assert payload["body"] == "Your booking for 2026-03-03 10:00 is confirmed"
    assert payload["data"]["booking_id"] == "booking-1"


@pytest.mark.anyio
async def test_webhook_notifier_posts_payload():
    received: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = WebhookNotifier(
        "https://hooks.example.com/notify",
        LOCAL_TZ,
        transport=httpx.MockTransport(handler),
    )

    assert await notifier.notify("master-1", _booking(), NotificationType.NEW_BOOKING)
    assert received[0]["user_id"] == "master-1"
    assert received[0]["title"] == "New instant booking"


@pytest.mark.anyio
async def test_webhook_notifier_retries_then_gives_up():
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(503)

    notifier = WebhookNotifier(
        "https://hooks.example.com/notify",
        LOCAL_TZ,
        max_retries=3,
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )

    assert not await notifier.notify("client-1", _booking(), NotificationType.CANCELLED)
    assert len(attempts) == 3


@pytest.mark.anyio
async def test_webhook_notifier_recovers_after_transport_error():
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200)

    notifier = WebhookNotifier(
        "https://hooks.example.com/notify",
        LOCAL_TZ,
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )

    assert await notifier.notify("client-1", _booking(), NotificationType.STARTED)
    assert len(attempts) == 2


@pytest.mark.anyio
async def test_webhook_notifier_without_url_fails_quietly():
    notifier = WebhookNotifier(None, LOCAL_TZ)

    assert not await notifier.notify("client-1", _booking(), NotificationType.COMPLETED)


def test_factory_defaults_to_noop():
    assert isinstance(create_notifier(Settings(_env_file=None)), NoopNotifier)

    webhook = create_notifier(
        Settings(
            _env_file=None,
            notification_mode="webhook",
            notification_webhook_url="https://hooks.example.com/notify",
        )
    )
    assert isinstance(webhook, WebhookNotifier)
    assert webhook.url == "https://hooks.example.com/notify"
