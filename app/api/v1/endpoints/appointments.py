"""Appointment endpoints."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import ActingUser, get_appointment_service, get_reschedule_service
from app.schemas.appointments import (
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentStatusUpdate,
    CancelAppointmentRequest,
    CancelAppointmentResponse,
    RescheduleAppointmentRequest,
)
from app.services.appointment_service import AppointmentService
from app.services.reschedule_service import RescheduleService

router = APIRouter()

Appointments = Annotated[AppointmentService, Depends(get_appointment_service)]
Reschedules = Annotated[RescheduleService, Depends(get_reschedule_service)]


@router.get(
    "",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List appointments",
)
async def list_appointments(
    current_user: ActingUser,
    service: Appointments,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    doctor_id: UUID | None = Query(None),
    schedule_id: UUID | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    include_archived: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List appointments visible to the authenticated user.

    Patients see their own appointments, doctors those of their practice and
    admins all of them.
    """
    filters = AppointmentFilters(
        status=status_filter,
        doctor_id=doctor_id,
        schedule_id=schedule_id,
        from_date=from_date,
        to_date=to_date,
        include_archived=include_archived,
        page=page,
        page_size=page_size,
    )
    return await service.list_appointments(current_user, filters)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    current_user: ActingUser,
    service: Appointments,
) -> AppointmentResponse:
    """Get a specific appointment by ID."""
    return await service.get_appointment(appointment_id, current_user)


@router.post(
    "/{appointment_id}/cancel",
    response_model=CancelAppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    current_user: ActingUser,
    service: Appointments,
    data: CancelAppointmentRequest | None = None,
) -> CancelAppointmentResponse:
    """
    Cancel an appointment.

    Repeating the call on a cancelled appointment returns the same result
    without side effects. A refund failure is reported in ``refund_status``
    and does not undo the cancellation.
    """
    reason = data.reason if data else None
    return await service.cancel_appointment(appointment_id, current_user, reason)


@router.post(
    "/{appointment_id}/reschedule",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Reschedule appointment",
)
async def reschedule_appointment(
    appointment_id: UUID,
    data: RescheduleAppointmentRequest,
    current_user: ActingUser,
    service: Reschedules,
) -> AppointmentResponse:
    """Move an appointment to another free slot of the same doctor."""
    return await service.reschedule_appointment(
        appointment_id, data.new_slot_id, current_user, data.reason
    )


@router.patch(
    "/{appointment_id}/status",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Update appointment status",
)
async def update_appointment_status(
    appointment_id: UUID,
    data: AppointmentStatusUpdate,
    current_user: ActingUser,
    service: Appointments,
) -> AppointmentResponse:
    """Update appointment status following the appointment state machine."""
    return await service.update_appointment_status(appointment_id, data, current_user)
