"""FastAPI dependencies."""

from collections.abc import Awaitable, Callable
from typing import Annotated, Any
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.payment_gateway import StripePaymentGateway
from app.core.security import decode_access_token
from app.database import TransactionalStore, get_store
from app.models.doctors import doctors
from app.models.users import users
from app.schemas.reminders import ReminderType
from app.schemas.users import CurrentUser, UserRole
from app.services.appointment_service import AppointmentService
from app.services.booking_service import BookingService
from app.services.payment_service import PaymentService
from app.services.payment_webhook_service import PaymentWebhookService
from app.services.reminder_service import ReminderService
from app.services.reschedule_service import RescheduleService
from app.services.schedule_service import ScheduleService

# Security
security = HTTPBearer()


def _credentials_error(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> UUID:
    """
    Extract and validate user ID from JWT token.

    Args:
        credentials: Bearer token credentials

    Returns:
        User ID from token

    Raises:
        HTTPException: If token is invalid or expired
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _credentials_error()

    user_id_str = payload.get("sub")
    if user_id_str is None or not isinstance(user_id_str, str):
        raise _credentials_error()

    try:
        return UUID(user_id_str)
    except ValueError:
        raise _credentials_error("Invalid user ID format")


async def get_current_user(
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    store: Annotated[TransactionalStore, Depends(get_store)],
) -> CurrentUser:
    """
    Resolve the acting user, including the doctor profile for doctors.

    Raises:
        HTTPException: If user not found or inactive
    """

    async def _load(session: AsyncSession) -> tuple[Any, Any]:
        result = await session.execute(
            select(users.c.id, users.c.role, users.c.is_active).where(users.c.id == user_id)
        )
        user = result.first()
        doctor_id = None
        if user is not None and user.role == UserRole.DOCTOR.value:
            doctor_result = await session.execute(
                select(doctors.c.id).where(doctors.c.user_id == user_id)
            )
            doctor_id = doctor_result.scalar()
        return user, doctor_id

    user, doctor_id = await store.run_in_transaction(_load)

    if not user:
        raise _credentials_error("User not found")

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return CurrentUser(id=user.id, role=UserRole(user.role), doctor_id=doctor_id)


def require_roles(*roles: UserRole) -> Callable[..., Awaitable[CurrentUser]]:
    """Dependency factory restricting an endpoint to the given roles."""

    async def _check(
        user: Annotated[CurrentUser, Depends(get_current_user)],
    ) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return _check


def get_gateway(request: Request) -> StripePaymentGateway:
    """Dependency returning the payment gateway created at application startup."""
    return request.app.state.gateway


# Type aliases for dependency injection
Store = Annotated[TransactionalStore, Depends(get_store)]
Gateway = Annotated[StripePaymentGateway, Depends(get_gateway)]
AppSettings = Annotated[Settings, Depends(get_settings)]
ActingUser = Annotated[CurrentUser, Depends(get_current_user)]
StaffUser = Annotated[CurrentUser, Depends(require_roles(UserRole.DOCTOR, UserRole.ADMIN))]


def get_reminder_service(store: Store, settings: AppSettings) -> ReminderService:
    """Reminder service dependency."""
    return ReminderService(store, ReminderType(settings.reminder_type))


Reminders = Annotated[ReminderService, Depends(get_reminder_service)]


def get_schedule_service(store: Store, settings: AppSettings) -> ScheduleService:
    """Schedule service dependency."""
    return ScheduleService(store, settings.clinic_timezone)


def get_booking_service(
    store: Store, gateway: Gateway, settings: AppSettings, reminders: Reminders
) -> BookingService:
    """Booking service dependency."""
    return BookingService(
        store,
        gateway,
        currency=settings.payment_currency,
        timezone=settings.clinic_timezone,
        reminders=reminders,
    )


def get_appointment_service(
    store: Store, gateway: Gateway, settings: AppSettings, reminders: Reminders
) -> AppointmentService:
    """Appointment service dependency."""
    return AppointmentService(
        store,
        payments=PaymentService(store, gateway),
        reminders=reminders,
        full_refund_hours=settings.refund_full_hours_threshold,
    )


def get_reschedule_service(store: Store, reminders: Reminders) -> RescheduleService:
    """Reschedule service dependency."""
    return RescheduleService(store, reminders)


def get_webhook_service(
    store: Store, gateway: Gateway, settings: AppSettings, reminders: Reminders
) -> PaymentWebhookService:
    """Payment webhook service dependency."""
    return PaymentWebhookService(store, gateway, settings.stripe_webhook_secret, reminders)
