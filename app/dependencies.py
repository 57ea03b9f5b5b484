from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.auth import get_auth_context
from app.domain.bookings.repository import BookingRepository
from app.domain.bookings.service import BookingLifecycleOrchestrator, utc_now
from app.domain.identity import AuthContext
from app.domain.notifications.service import create_notifier
from app.domain.payments.service import PaymentService, create_payment_gateway
from app.infra.db import get_db_session
from app.infra.locks import create_calendar_lock
from app.infra.security import booking_create_key
from app.settings import settings


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


def _state_component(request: Request, name: str, factory):
    component = getattr(request.app.state, name, None)
    if component is None:
        component = factory()
        setattr(request.app.state, name, component)
    return component


async def get_orchestrator(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> BookingLifecycleOrchestrator:
    app_settings = _app_settings(request)
    calendar_lock = _state_component(request, "calendar_lock", lambda: create_calendar_lock(app_settings))
    gateway = _state_component(
        request,
        "payment_gateway",
        lambda: create_payment_gateway(app_settings, request.app.state),
    )
    notifier = _state_component(request, "notifier", lambda: create_notifier(app_settings))
    clock = getattr(request.app.state, "clock", None) or utc_now
    return BookingLifecycleOrchestrator(
        BookingRepository(session, calendar_lock),
        PaymentService(session, gateway, app_settings.payment_currency),
        notifier,
        app_settings=app_settings,
        now=clock,
    )


async def enforce_booking_rate_limit(
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
) -> None:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return
    if not await limiter.allow(booking_create_key(auth.user_id)):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many booking requests, please try again later",
        )
