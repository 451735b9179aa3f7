"""Capacity schedule endpoints."""

from datetime import date
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import ActingUser, StaffUser, get_schedule_service
from app.schemas.schedules import (
    ScheduleCreate,
    ScheduleFilters,
    ScheduleResponse,
    ScheduleUpdate,
    ScheduleWithCapacity,
)
from app.services.schedule_service import ScheduleService

router = APIRouter()

Schedules = Annotated[ScheduleService, Depends(get_schedule_service)]


@router.post(
    "",
    response_model=ScheduleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create capacity schedule",
)
async def create_schedule(
    data: ScheduleCreate,
    current_user: StaffUser,
    service: Schedules,
) -> ScheduleResponse:
    """
    Create a fixed-capacity schedule window for a doctor.

    Doctors may only create schedules for themselves.
    """
    return await service.create_schedule(data, current_user)


@router.get(
    "",
    response_model=list[ScheduleWithCapacity],
    status_code=status.HTTP_200_OK,
    summary="List capacity schedules",
)
async def list_schedules(
    current_user: ActingUser,
    service: Schedules,
    doctor_id: UUID | None = Query(None),
    on_date: date | None = Query(None, alias="date"),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
) -> list[ScheduleWithCapacity]:
    """List schedules with their confirmed count and remaining capacity."""
    filters = ScheduleFilters(
        doctor_id=doctor_id,
        date=on_date,
        start_date=start_date,
        end_date=end_date,
    )
    return await service.list_schedules(filters)


@router.get(
    "/{schedule_id}",
    response_model=ScheduleWithCapacity,
    status_code=status.HTTP_200_OK,
    summary="Get capacity schedule",
)
async def get_schedule(
    schedule_id: UUID,
    current_user: ActingUser,
    service: Schedules,
) -> ScheduleWithCapacity:
    """Get a schedule with its current capacity."""
    return await service.get_schedule(schedule_id)


@router.put(
    "/{schedule_id}",
    response_model=ScheduleResponse,
    status_code=status.HTTP_200_OK,
    summary="Update capacity schedule",
)
async def update_schedule(
    schedule_id: UUID,
    data: ScheduleUpdate,
    current_user: StaffUser,
    service: Schedules,
) -> ScheduleResponse:
    """Update a schedule window; capacity cannot drop below confirmed bookings."""
    return await service.update_schedule(schedule_id, data, current_user)


@router.delete(
    "/{schedule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete capacity schedule",
)
async def delete_schedule(
    schedule_id: UUID,
    current_user: StaffUser,
    service: Schedules,
) -> None:
    """Delete a schedule that has no confirmed appointments."""
    await service.delete_schedule(schedule_id, current_user)
