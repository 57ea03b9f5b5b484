import functools
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

import anyio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.bookings import fees
from app.domain.bookings.db_models import Booking
from app.domain.payments.db_models import Transaction
from app.infra import stripe_client as stripe_infra
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)


class TransactionType(str, Enum):
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    ADDITIONAL_PAYMENT = "ADDITIONAL_PAYMENT"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    PAYOUT = "PAYOUT"


class TransactionStatus(str, Enum):
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    transaction_id: str | None = None
    error: str | None = None


class PaymentGateway(Protocol):
    async def charge(self, *, booking_id: str, amount: Decimal, currency: str, description: str) -> str: ...

    async def refund(self, *, booking_id: str, reference: str | None, amount: Decimal, currency: str) -> str: ...


def to_minor_units(amount: Decimal) -> int:
    return int(fees.to_money(amount) * 100)


class LedgerGateway:
    """Records money movement without a provider; settlement happens elsewhere."""

    async def charge(self, *, booking_id: str, amount: Decimal, currency: str, description: str) -> str:
        return f"ledger_{uuid.uuid4().hex}"

    async def refund(self, *, booking_id: str, reference: str | None, amount: Decimal, currency: str) -> str:
        return f"ledger_{uuid.uuid4().hex}"


class StripeGateway:
    def __init__(self, client: stripe_infra.StripeClient) -> None:
        self.client = client

    async def charge(self, *, booking_id: str, amount: Decimal, currency: str, description: str) -> str:
        call = functools.partial(
            self.client.create_payment_intent,
            amount_minor=to_minor_units(amount),
            currency=currency,
            description=description,
            metadata={"booking_id": booking_id},
        )
        intent = await anyio.to_thread.run_sync(call)
        return str(_attr(intent, "id"))

    async def refund(self, *, booking_id: str, reference: str | None, amount: Decimal, currency: str) -> str:
        if not reference:
            raise ValueError("No captured payment to refund")
        call = functools.partial(
            self.client.create_refund,
            payment_intent=reference,
            amount_minor=to_minor_units(amount),
            metadata={"booking_id": booking_id},
        )
        refund = await anyio.to_thread.run_sync(call)
        return str(_attr(refund, "id"))


def _attr(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def create_payment_gateway(app_settings, app_state: Any = None) -> PaymentGateway:
    if getattr(app_settings, "payment_mode", "ledger") == "stripe":
        if app_state is not None:
            return StripeGateway(stripe_infra.resolve_client(app_state))
        return StripeGateway(stripe_infra.StripeClient(secret_key=app_settings.stripe_secret_key))
    return LedgerGateway()


class PaymentService:
    def __init__(self, session: AsyncSession, gateway: PaymentGateway, currency: str) -> None:
        self.session = session
        self.gateway = gateway
        self.currency = currency

    async def captured_payment(self, booking_id: str) -> Transaction | None:
        stmt = (
            select(Transaction)
            .where(
                Transaction.booking_id == booking_id,
                Transaction.type == TransactionType.PAYMENT.value,
                Transaction.status == TransactionStatus.COMPLETED.value,
            )
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def capture(self, booking: Booking) -> PaymentResult:
        return await self._charge(
            booking,
            TransactionType.PAYMENT,
            booking.total_amount,
            "Payment for instant booking",
        )

    async def additional_charge(self, booking: Booking, amount: Decimal) -> PaymentResult:
        return await self._charge(
            booking,
            TransactionType.ADDITIONAL_PAYMENT,
            amount,
            "Additional payment for urgent reschedule",
        )

    async def refund(self, booking: Booking, amount: Decimal) -> PaymentResult:
        return await self._refund(booking, TransactionType.REFUND, amount, "Refund for cancelled booking")

    async def partial_refund(self, booking: Booking, amount: Decimal) -> PaymentResult:
        return await self._refund(
            booking,
            TransactionType.PARTIAL_REFUND,
            amount,
            "Partial refund for rescheduled booking",
        )

    async def payout(self, booking: Booking) -> PaymentResult:
        amount = fees.to_money(fees.to_money(booking.total_amount) - fees.to_money(booking.platform_fee))
        transaction = await self._record(
            booking,
            user_id=booking.master_id,
            transaction_type=TransactionType.PAYOUT,
            amount=amount,
            status=TransactionStatus.PENDING,
            description="Payout for completed booking",
        )
        metrics.record_payment(TransactionType.PAYOUT.value, "pending")
        logger.info(
            "payout_recorded",
            extra={"extra": {"booking_id": booking.booking_id, "amount": str(amount)}},
        )
        return PaymentResult(success=True, transaction_id=transaction.transaction_id)

    async def _charge(
        self,
        booking: Booking,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str,
    ) -> PaymentResult:
        amount = fees.to_money(amount)
        try:
            reference = await self.gateway.charge(
                booking_id=booking.booking_id,
                amount=amount,
                currency=self.currency,
                description=description,
            )
        except Exception as exc:  # noqa: BLE001
            return await self._failed(booking, booking.client_id, transaction_type, amount, description, exc)
        transaction = await self._record(
            booking,
            user_id=booking.client_id,
            transaction_type=transaction_type,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            description=description,
            provider_reference=reference,
        )
        metrics.record_payment(transaction_type.value, "completed")
        return PaymentResult(success=True, transaction_id=transaction.transaction_id)

    async def _refund(
        self,
        booking: Booking,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str,
    ) -> PaymentResult:
        amount = fees.to_money(amount)
        captured = await self.captured_payment(booking.booking_id)
        try:
            reference = await self.gateway.refund(
                booking_id=booking.booking_id,
                reference=captured.provider_reference if captured else None,
                amount=amount,
                currency=self.currency,
            )
        except Exception as exc:  # noqa: BLE001
            return await self._failed(booking, booking.client_id, transaction_type, amount, description, exc)
        transaction = await self._record(
            booking,
            user_id=booking.client_id,
            transaction_type=transaction_type,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            description=description,
            provider_reference=reference,
        )
        metrics.record_payment(transaction_type.value, "completed")
        return PaymentResult(success=True, transaction_id=transaction.transaction_id)

    async def _failed(
        self,
        booking: Booking,
        user_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str,
        exc: Exception,
    ) -> PaymentResult:
        logger.warning(
            "payment_operation_failed",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "type": transaction_type.value,
                    "error": type(exc).__name__,
                }
            },
        )
        metrics.record_payment(transaction_type.value, "failed")
        transaction = await self._record(
            booking,
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            status=TransactionStatus.FAILED,
            description=description,
            error=str(exc)[:500],
        )
        return PaymentResult(success=False, transaction_id=transaction.transaction_id, error=str(exc))

    async def _record(
        self,
        booking: Booking,
        *,
        user_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        status: TransactionStatus,
        description: str,
        provider_reference: str | None = None,
        error: str | None = None,
    ) -> Transaction:
        transaction = Transaction(
            user_id=user_id,
            type=transaction_type.value,
            amount=amount,
            currency=self.currency,
            status=status.value,
            booking_id=booking.booking_id,
            description=description,
            provider_reference=provider_reference,
            error=error,
        )
        self.session.add(transaction)
        await self.session.commit()
        return transaction
