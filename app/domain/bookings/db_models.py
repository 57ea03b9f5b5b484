import uuid
from datetime import datetime, time
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Numeric, String, Time, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.infra.db import Base, UTCDateTime

MONEY = Numeric(12, 2)


class Master(Base):
    __tablename__ = "masters"

    master_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    rating: Mapped[Decimal | None] = mapped_column(Numeric(3, 2))
    response_time_minutes: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    services: Mapped[list["MasterService"]] = relationship("MasterService", back_populates="master")
    working_hours: Mapped[list["MasterWorkingHours"]] = relationship(
        "MasterWorkingHours", back_populates="master", cascade="all, delete-orphan"
    )


class MasterService(Base):
    __tablename__ = "master_services"

    service_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    master_id: Mapped[str] = mapped_column(ForeignKey("masters.master_id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(2000))
    category: Mapped[str | None] = mapped_column(String(100))
    base_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    instant_booking_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_confirm: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    master: Mapped[Master] = relationship("Master", back_populates="services")


class MasterWorkingHours(Base):
    __tablename__ = "master_working_hours"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    master_id: Mapped[str] = mapped_column(ForeignKey("masters.master_id"), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    master: Mapped[Master] = relationship("Master", back_populates="working_hours")

    __table_args__ = (
        UniqueConstraint("master_id", "day_of_week", "start_time", name="uq_master_hours_window"),
    )


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    client_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    master_id: Mapped[str] = mapped_column(ForeignKey("masters.master_id"), nullable=False)
    service_id: Mapped[str] = mapped_column(ForeignKey("master_services.service_id"), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    address: Mapped[str | None] = mapped_column(String(200))
    notes: Mapped[str | None] = mapped_column(String(500))
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="on_meeting")

    base_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    urgent_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    platform_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    cancellation_fee: Mapped[Decimal | None] = mapped_column(MONEY)
    refund_amount: Mapped[Decimal | None] = mapped_column(MONEY)

    status: Mapped[str] = mapped_column(String(32), nullable=False)
    urgent_booking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    rescheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    cancelled_by: Mapped[str | None] = mapped_column(String(36))
    cancellation_reason: Mapped[str | None] = mapped_column(String(500))
    rescheduled_by: Mapped[str | None] = mapped_column(String(36))

    __table_args__ = (
        Index("ix_bookings_master_window", "master_id", "starts_at", "ends_at"),
        Index("ix_bookings_status", "status"),
    )
