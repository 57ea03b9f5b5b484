from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator

from app.domain.bookings.state_machine import (
    MAX_DURATION_MINUTES,
    MIN_DURATION_MINUTES,
    BookingAction,
    BookingPermissions,
    BookingStatus,
)

PaymentMethod = Literal["on_meeting", "direct_transfer", "cash", "card_to_master", "online"]


class MoneyModel(BaseModel):
    @field_serializer(
        "base_amount",
        "urgent_fee",
        "platform_fee",
        "total_amount",
        "cancellation_fee",
        "refund_amount",
        "price_difference",
        "price",
        "base_price",
        check_fields=False,
    )
    def serialize_money(self, value: Decimal | None) -> str | None:
        if value is None:
            return None
        return f"{value:.2f}"


class BookingCreateRequest(BaseModel):
    master_id: str = Field(min_length=1)
    service_id: str = Field(min_length=1)
    starts_at: datetime
    duration_minutes: int = Field(ge=MIN_DURATION_MINUTES, le=MAX_DURATION_MINUTES)
    address: str | None = Field(None, max_length=200)
    notes: str | None = Field(None, max_length=500)
    payment_method: PaymentMethod = "on_meeting"


class BookingActionRequest(BaseModel):
    action: BookingAction
    reason: str | None = Field(None, max_length=500)
    new_starts_at: datetime | None = None
    new_duration_minutes: int | None = Field(None, ge=MIN_DURATION_MINUTES, le=MAX_DURATION_MINUTES)

    @model_validator(mode="after")
    def validate_reschedule(self) -> "BookingActionRequest":
        if self.action == BookingAction.RESCHEDULE and self.new_starts_at is None:
            raise ValueError("new_starts_at is required for reschedule")
        return self


class PermissionsResponse(BaseModel):
    can_cancel: bool
    can_reschedule: bool
    can_start: bool
    can_complete: bool

    @classmethod
    def from_permissions(cls, permissions: BookingPermissions) -> "PermissionsResponse":
        return cls(
            can_cancel=permissions.can_cancel,
            can_reschedule=permissions.can_reschedule,
            can_start=permissions.can_start,
            can_complete=permissions.can_complete,
        )


class BookingResponse(MoneyModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    client_id: str
    master_id: str
    service_id: str
    status: BookingStatus
    starts_at: datetime
    ends_at: datetime
    duration_minutes: int
    address: str | None = None
    notes: str | None = None
    payment_method: str
    base_amount: Decimal
    urgent_fee: Decimal
    platform_fee: Decimal
    total_amount: Decimal
    cancellation_fee: Decimal | None = None
    refund_amount: Decimal | None = None
    urgent_booking: bool
    auto_confirmed: bool
    created_at: datetime
    confirmed_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    expired_at: datetime | None = None
    rescheduled_at: datetime | None = None
    expires_at: datetime | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    rescheduled_by: str | None = None
    permissions: PermissionsResponse | None = None


class BookingEnvelope(MoneyModel):
    booking: BookingResponse
    warnings: list[str] = Field(default_factory=list)
    cancellation_fee: Decimal | None = None
    refund_amount: Decimal | None = None
    price_difference: Decimal | None = None


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total_count: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    pagination: PaginationResponse


class SlotResponse(MoneyModel):
    starts_at: datetime
    ends_at: datetime
    available: bool
    price: Decimal
    urgent_fee: Decimal | None = None
    is_urgent: bool


class MasterSummary(BaseModel):
    master_id: str
    display_name: str
    rating: float | None = None
    response_time_minutes: int | None = None


class ServiceSummary(MoneyModel):
    service_id: str
    name: str
    description: str | None = None
    category: str | None = None
    base_price: Decimal
    auto_confirm: bool


class SlotAvailabilityResponse(BaseModel):
    date: date
    duration_minutes: int
    slots: list[SlotResponse]
    master: MasterSummary
    service: ServiceSummary
    message: str | None = None
