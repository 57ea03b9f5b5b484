import logging

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.bookings = None
            self.booking_conflicts = None
            self.payments = None
            self.notifications = None
            self.http_5xx = None
            return

        self.bookings = Counter(
            "bookings_total",
            "Booking lifecycle events.",
            ["action"],
            registry=self.registry,
        )
        self.booking_conflicts = Counter(
            "booking_conflicts_total",
            "Booking requests rejected because the interval was taken.",
            ["operation"],
            registry=self.registry,
        )
        self.payments = Counter(
            "booking_payments_total",
            "Payment side effects by operation and outcome.",
            ["operation", "status"],
            registry=self.registry,
        )
        self.notifications = Counter(
            "booking_notifications_total",
            "Notification deliveries by type and outcome.",
            ["type", "status"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )

    def record_booking(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.bookings is None:
            return
        if count <= 0:
            return
        self.bookings.labels(action=action).inc(count)

    def record_conflict(self, operation: str) -> None:
        if not self.enabled or self.booking_conflicts is None:
            return
        self.booking_conflicts.labels(operation=operation).inc()

    def record_payment(self, operation: str, status: str) -> None:
        if not self.enabled or self.payments is None:
            return
        self.payments.labels(operation=operation, status=status).inc()

    def record_notification(self, notification_type: str, status: str) -> None:
        if not self.enabled or self.notifications is None:
            return
        self.notifications.labels(type=notification_type, status=status).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
