"""Capacity booking endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.dependencies import StaffUser, get_booking_service, require_roles
from app.schemas.bookings import (
    BookingStartRequest,
    BookingStartResponse,
    ManualBookingRequest,
    ManualBookingResponse,
)
from app.schemas.users import CurrentUser, UserRole
from app.services.booking_service import BookingService

router = APIRouter()

Bookings = Annotated[BookingService, Depends(get_booking_service)]
PatientUser = Annotated[CurrentUser, Depends(require_roles(UserRole.PATIENT))]


@router.post(
    "/start",
    response_model=BookingStartResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a payment-gated booking",
)
async def start_booking(
    data: BookingStartRequest,
    current_user: PatientUser,
    service: Bookings,
) -> BookingStartResponse:
    """
    Reserve a place on a capacity schedule and create a payment intent.

    The appointment stays PENDING_PAYMENT until the payment webhook confirms
    it or marks it as overflow.
    """
    return await service.start_booking(data.schedule_id, current_user.id)


@router.post(
    "/manual",
    response_model=ManualBookingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a staff-assisted booking",
)
async def create_manual_booking(
    data: ManualBookingRequest,
    current_user: StaffUser,
    service: Bookings,
) -> ManualBookingResponse:
    """Book and confirm a paid (e.g. cash) appointment on behalf of a patient."""
    return await service.create_manual_booking(data, current_user)
