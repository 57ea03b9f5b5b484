import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Protocol
from zoneinfo import ZoneInfo

import httpx

from app.domain.bookings.db_models import Booking
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    NEW_BOOKING = "NEW_BOOKING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"


def _format_start_time(booking: Booking, local_tz: ZoneInfo) -> str:
    return booking.starts_at.astimezone(local_tz).strftime("%Y-%m-%d %H:%M")


def render_notification(booking: Booking, notification_type: NotificationType, local_tz: ZoneInfo) -> tuple[str, str]:
    when = _format_start_time(booking, local_tz)
    if notification_type == NotificationType.NEW_BOOKING:
        return "New instant booking", f"New booking for {when}"
    if notification_type == NotificationType.CONFIRMED:
        return "Booking confirmed", f"Your booking for {when} is confirmed"
    if notification_type == NotificationType.CANCELLED:
        return "Booking cancelled", f"The booking for {when} was cancelled"
    if notification_type == NotificationType.RESCHEDULED:
        return "Booking rescheduled", f"The booking was moved to {when}"
    if notification_type == NotificationType.STARTED:
        return "Work started", "The master has started working on your booking"
    return "Work completed", "Your booking is complete. Leave a review!"


def build_payload(
    user_id: str,
    booking: Booking,
    notification_type: NotificationType,
    local_tz: ZoneInfo,
) -> Dict[str, Any]:
    title, body = render_notification(booking, notification_type, local_tz)
    return {
        "user_id": user_id,
        "type": notification_type.value,
        "title": title,
        "body": body,
        "data": {
            "booking_id": booking.booking_id,
            "master_id": booking.master_id,
            "service_id": booking.service_id,
            "starts_at": booking.starts_at.isoformat(),
            "status": booking.status,
        },
    }


class Notifier(Protocol):
    async def notify(self, user_id: str, booking: Booking, notification_type: NotificationType) -> bool: ...


class NoopNotifier:
    async def notify(self, user_id: str, booking: Booking, notification_type: NotificationType) -> bool:
        logger.info(
            "notification_skipped",
            extra={"extra": {"booking_id": booking.booking_id, "type": notification_type.value}},
        )
        return True


class WebhookNotifier:
    """Posts notification payloads to a webhook; delivery problems are logged, never raised."""

    def __init__(
        self,
        url: str | None,
        local_tz: ZoneInfo,
        *,
        timeout_seconds: float = 5,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.local_tz = local_tz
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(max_retries, 1)
        self.backoff_seconds = backoff_seconds
        self.transport = transport

    async def notify(self, user_id: str, booking: Booking, notification_type: NotificationType) -> bool:
        if not self.url:
            logger.error("notification_webhook_missing_url")
            metrics.record_notification(notification_type.value, "failed")
            return False
        payload = build_payload(user_id, booking, notification_type, self.local_tz)
        delivered = await self._post_with_retry(payload)
        metrics.record_notification(notification_type.value, "sent" if delivered else "failed")
        return delivered

    async def _post_with_retry(self, payload: Dict[str, Any]) -> bool:
        booking_id = payload["data"]["booking_id"]
        for attempt in range(1, self.max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                    response = await client.post(self.url, json=payload)
                if 200 <= response.status_code < 300:
                    logger.info(
                        "notification_webhook_success",
                        extra={"extra": {"booking_id": booking_id, "type": payload["type"]}},
                    )
                    return True
                logger.warning(
                    "notification_webhook_non_200",
                    extra={
                        "extra": {
                            "booking_id": booking_id,
                            "status_code": response.status_code,
                            "attempt": attempt,
                        }
                    },
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "notification_webhook_error",
                    extra={"extra": {"booking_id": booking_id, "attempt": attempt, "error": str(exc)}},
                )
            if attempt < self.max_retries:
                await asyncio.sleep(self.backoff_seconds * attempt)
        logger.error(
            "notification_webhook_failed",
            extra={"extra": {"booking_id": booking_id, "attempts": self.max_retries}},
        )
        return False


def create_notifier(app_settings, transport: httpx.AsyncBaseTransport | None = None) -> Notifier:
    if getattr(app_settings, "notification_mode", "off") == "webhook":
        return WebhookNotifier(
            app_settings.notification_webhook_url,
            app_settings.local_tz,
            timeout_seconds=app_settings.notification_webhook_timeout_seconds,
            max_retries=app_settings.notification_webhook_max_retries,
            backoff_seconds=app_settings.notification_webhook_backoff_seconds,
            transport=transport,
        )
    return NoopNotifier()
