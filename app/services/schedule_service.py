"""Capacity schedule service.

Consumed capacity is derived by counting CONFIRMED appointments; there is no
counter column. Anything that acts on that count must read it inside the
same transaction as the write it guards.
"""

from datetime import UTC, date, datetime, time
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from app.database import TransactionalStore
from app.models.appointments import appointments
from app.models.doctors import doctors
from app.models.schedules import schedules
from app.schemas.appointments import AppointmentStatus
from app.schemas.schedules import (
    ScheduleCreate,
    ScheduleFilters,
    ScheduleResponse,
    ScheduleUpdate,
    ScheduleWithCapacity,
)
from app.schemas.users import CurrentUser, UserRole

logger = structlog.get_logger()

# Statuses that keep a schedule from being deleted
OPEN_SCHEDULE_STATUSES = (
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.PENDING_PAYMENT,
    AppointmentStatus.OVERFLOW,
)


def parse_hhmm(value: str) -> time:
    """Parse an HH:MM string."""
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def schedule_window_utc(
    schedule_date: date,
    start_time: str,
    end_time: str,
    tz: ZoneInfo,
) -> tuple[datetime, datetime]:
    """Convert a schedule's local date and HH:MM window into UTC instants."""
    start = datetime.combine(schedule_date, parse_hhmm(start_time), tzinfo=tz)
    end = datetime.combine(schedule_date, parse_hhmm(end_time), tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)


def _assert_owner(doctor_id: UUID, actor: CurrentUser | None) -> None:
    if actor is not None and actor.role == UserRole.DOCTOR and actor.doctor_id != doctor_id:
        raise ForbiddenException("You can only manage your own schedules")


def _times_overlap(a_start: str, a_end: str, b_start: str, b_end: str) -> bool:
    return parse_hhmm(a_start) < parse_hhmm(b_end) and parse_hhmm(a_end) > parse_hhmm(b_start)


async def lock_schedule(session: AsyncSession, schedule_id: UUID) -> dict[str, Any] | None:
    """Read a schedule row with a row lock held until the transaction ends."""
    result = await session.execute(
        select(schedules).where(schedules.c.id == schedule_id).with_for_update()
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def count_confirmed_for_schedule(session: AsyncSession, schedule_id: UUID) -> int:
    """Count CONFIRMED appointments against a schedule."""
    result = await session.execute(
        select(func.count())
        .select_from(appointments)
        .where(
            and_(
                appointments.c.schedule_id == schedule_id,
                appointments.c.status == AppointmentStatus.CONFIRMED.value,
            )
        )
    )
    return result.scalar() or 0


async def count_open_for_schedule(session: AsyncSession, schedule_id: UUID) -> int:
    """Count appointments still holding or awaiting a place on a schedule."""
    result = await session.execute(
        select(func.count())
        .select_from(appointments)
        .where(
            and_(
                appointments.c.schedule_id == schedule_id,
                appointments.c.status.in_([s.value for s in OPEN_SCHEDULE_STATUSES]),
            )
        )
    )
    return result.scalar() or 0


async def next_queue_number(session: AsyncSession, schedule_id: UUID, confirmed_count: int) -> int:
    """Next queue number for a schedule.

    Equals ``confirmed_count + 1`` until a confirmed appointment is cancelled;
    cancelled rows keep their number, so numbering continues past the highest
    one ever handed out.
    """
    result = await session.execute(
        select(func.max(appointments.c.queue_number)).where(
            appointments.c.schedule_id == schedule_id
        )
    )
    highest = result.scalar() or 0
    return max(confirmed_count, highest) + 1


class ScheduleService:
    """Service for capacity schedules."""

    def __init__(self, store: TransactionalStore, timezone: str = "UTC"):
        """Initialize service with the transactional store and clinic timezone."""
        self.store = store
        self.tz = ZoneInfo(timezone)

    def _validate_window(self, data: ScheduleCreate | ScheduleUpdate, now: datetime) -> None:
        if parse_hhmm(data.start_time) >= parse_hhmm(data.end_time):
            raise ValidationException("startTime must be before endTime")

        _, end = schedule_window_utc(data.date, data.start_time, data.end_time, self.tz)
        if end <= now:
            raise ValidationException(
                "Cannot create a capacity schedule for a past date or time. "
                "The schedule end must be in the future."
            )

    async def _assert_no_overlap(
        self,
        session: AsyncSession,
        doctor_id: UUID,
        data: ScheduleCreate | ScheduleUpdate,
        exclude_id: UUID | None = None,
    ) -> None:
        conditions = [schedules.c.doctor_id == doctor_id, schedules.c.date == data.date]
        if exclude_id is not None:
            conditions.append(schedules.c.id != exclude_id)

        result = await session.execute(
            select(schedules.c.id, schedules.c.start_time, schedules.c.end_time).where(
                and_(*conditions)
            )
        )
        for existing in result.mappings():
            if _times_overlap(
                data.start_time, data.end_time, existing["start_time"], existing["end_time"]
            ):
                logger.warning(
                    "schedule_overlap_rejected",
                    doctor_id=str(doctor_id),
                    date=str(data.date),
                    existing_schedule_id=str(existing["id"]),
                )
                raise ConflictException(
                    "This time window overlaps with an existing schedule "
                    "for the same doctor on this date"
                )

    async def create_schedule(
        self,
        data: ScheduleCreate,
        actor: CurrentUser | None = None,
        now: datetime | None = None,
    ) -> ScheduleResponse:
        """
        Create a capacity schedule window.

        Args:
            data: Schedule creation data
            actor: Staff user creating the schedule
            now: Override for the current time

        Returns:
            Created schedule

        Raises:
            ValidationException: Invalid or past window
            NotFoundException: Unknown doctor
            ForbiddenException: Doctor creating a schedule for someone else
            ConflictException: Window overlaps another schedule of the doctor
        """
        self._validate_window(data, now or datetime.now(UTC))
        _assert_owner(data.doctor_id, actor)

        async def _create(session: AsyncSession) -> dict[str, Any]:
            doctor = await session.execute(select(doctors.c.id).where(doctors.c.id == data.doctor_id))
            if doctor.first() is None:
                raise NotFoundException("Doctor not found")

            await self._assert_no_overlap(session, data.doctor_id, data)

            result = await session.execute(
                insert(schedules)
                .values(
                    doctor_id=data.doctor_id,
                    date=data.date,
                    start_time=data.start_time,
                    end_time=data.end_time,
                    max_patients=data.max_patients,
                    created_by_id=actor.id if actor else None,
                )
                .returning(schedules)
            )
            return dict(result.mappings().one())

        row = await self.store.run_in_transaction(_create)
        logger.info(
            "schedule_created",
            schedule_id=str(row["id"]),
            doctor_id=str(row["doctor_id"]),
            date=str(row["date"]),
            max_patients=row["max_patients"],
        )
        return ScheduleResponse.model_validate(row)

    async def update_schedule(
        self,
        schedule_id: UUID,
        data: ScheduleUpdate,
        actor: CurrentUser | None = None,
        now: datetime | None = None,
    ) -> ScheduleResponse:
        """
        Update a capacity schedule window.

        Capacity may not be lowered below the number of already confirmed
        appointments.
        """
        self._validate_window(data, now or datetime.now(UTC))

        async def _update(session: AsyncSession) -> dict[str, Any]:
            existing = await lock_schedule(session, schedule_id)
            if existing is None:
                raise NotFoundException("Schedule not found")
            _assert_owner(existing["doctor_id"], actor)

            await self._assert_no_overlap(
                session, existing["doctor_id"], data, exclude_id=schedule_id
            )

            confirmed = await count_confirmed_for_schedule(session, schedule_id)
            if data.max_patients < confirmed:
                raise ConflictException(
                    f"Cannot reduce capacity below {confirmed} confirmed appointments"
                )

            result = await session.execute(
                update(schedules)
                .where(schedules.c.id == schedule_id)
                .values(
                    date=data.date,
                    start_time=data.start_time,
                    end_time=data.end_time,
                    max_patients=data.max_patients,
                )
                .returning(schedules)
            )
            return dict(result.mappings().one())

        row = await self.store.run_in_transaction(_update)
        logger.info(
            "schedule_updated",
            schedule_id=str(schedule_id),
            date=str(row["date"]),
            max_patients=row["max_patients"],
        )
        return ScheduleResponse.model_validate(row)

    async def delete_schedule(self, schedule_id: UUID, actor: CurrentUser | None = None) -> None:
        """Delete a schedule no confirmed, unpaid or overflowed booking references."""

        async def _delete(session: AsyncSession) -> None:
            existing = await lock_schedule(session, schedule_id)
            if existing is None:
                raise NotFoundException("Schedule not found")
            _assert_owner(existing["doctor_id"], actor)

            if await count_open_for_schedule(session, schedule_id) > 0:
                raise ConflictException(
                    "Cannot delete a schedule with confirmed or in-progress bookings"
                )

            await session.execute(delete(schedules).where(schedules.c.id == schedule_id))

        await self.store.run_in_transaction(_delete)
        logger.info("schedule_deleted", schedule_id=str(schedule_id))

    async def get_schedule(self, schedule_id: UUID) -> ScheduleWithCapacity:
        """Get a schedule with its current capacity."""

        async def _get(session: AsyncSession) -> ScheduleWithCapacity:
            result = await session.execute(select(schedules).where(schedules.c.id == schedule_id))
            row = result.mappings().first()
            if row is None:
                raise NotFoundException("Schedule not found")
            confirmed = await count_confirmed_for_schedule(session, schedule_id)
            return self._with_capacity(dict(row), confirmed)

        return await self.store.run_in_transaction(_get)

    async def list_schedules(self, filters: ScheduleFilters) -> list[ScheduleWithCapacity]:
        """List schedules ordered by date and start time, with capacity."""
        conditions = []
        if filters.doctor_id:
            conditions.append(schedules.c.doctor_id == filters.doctor_id)
        if filters.date:
            conditions.append(schedules.c.date == filters.date)
        if filters.start_date:
            conditions.append(schedules.c.date >= filters.start_date)
        if filters.end_date:
            conditions.append(schedules.c.date <= filters.end_date)

        confirmed_counts = (
            select(
                appointments.c.schedule_id,
                func.count().label("confirmed_count"),
            )
            .where(appointments.c.status == AppointmentStatus.CONFIRMED.value)
            .group_by(appointments.c.schedule_id)
            .subquery()
        )
        stmt = (
            select(
                schedules,
                func.coalesce(confirmed_counts.c.confirmed_count, 0).label("confirmed_count"),
            )
            .outerjoin(confirmed_counts, confirmed_counts.c.schedule_id == schedules.c.id)
            .where(*conditions)
            .order_by(schedules.c.date, schedules.c.start_time)
        )

        async def _list(session: AsyncSession) -> list[ScheduleWithCapacity]:
            result = await session.execute(stmt)
            items = []
            for row in result.mappings():
                data = dict(row)
                confirmed = data.pop("confirmed_count")
                items.append(self._with_capacity(data, confirmed))
            return items

        return await self.store.run_in_transaction(_list)

    @staticmethod
    def _with_capacity(row: dict[str, Any], confirmed: int) -> ScheduleWithCapacity:
        return ScheduleWithCapacity(
            **ScheduleResponse.model_validate(row).model_dump(),
            confirmed_count=confirmed,
            remaining=max(row["max_patients"] - confirmed, 0),
        )
