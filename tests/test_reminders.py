"""Tests for appointment reminders."""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from app.core.exceptions import NotFoundException
from app.schemas.reminders import ReminderType
from app.services.reminder_service import ReminderService

NOW = datetime(2026, 6, 1, 8, 0, tzinfo=UTC)


async def _appointment(factory, start):
    doctor = await factory.doctor()
    patient = await factory.patient()
    return await factory.appointment(patient.id, doctor.doctor_id, start=start)


@pytest.mark.asyncio
async def test_create_reminder(store, factory):
    """Test scheduling a reminder ahead of the appointment."""
    start = NOW + timedelta(days=2)
    appointment_id = await _appointment(factory, start)
    service = ReminderService(store)

    reminder = await service.create_reminder(appointment_id, start, now=NOW)

    assert reminder.scheduled_for == start - timedelta(hours=24)
    assert reminder.reminder_type == ReminderType.TWENTY_FOUR_HOUR

    # Creating again returns the same reminder
    again = await service.create_reminder(appointment_id, start, now=NOW)
    assert again.id == reminder.id


@pytest.mark.asyncio
async def test_create_reminder_skipped_when_lead_time_passed(store, factory):
    """Test that reminders are never scheduled in the past."""
    start = NOW + timedelta(hours=3)
    appointment_id = await _appointment(factory, start)

    assert await ReminderService(store).create_reminder(appointment_id, start, now=NOW) is None

    one_hour = ReminderService(store, ReminderType.ONE_HOUR)
    reminder = await one_hour.create_reminder(appointment_id, start, now=NOW)
    assert reminder.scheduled_for == start - timedelta(hours=1)


@pytest.mark.asyncio
async def test_update_reminder_for_reschedule(store, factory):
    """Test moving a reminder and cancelling it when the new time is too close."""
    start = NOW + timedelta(days=2)
    appointment_id = await _appointment(factory, start)
    service = ReminderService(store)
    created = await service.create_reminder(appointment_id, start, now=NOW)

    later = NOW + timedelta(days=5)
    moved = await service.update_reminder_for_reschedule(appointment_id, later, now=NOW)
    assert moved.id == created.id
    assert moved.scheduled_for == later - timedelta(hours=24)

    soon = NOW + timedelta(hours=2)
    assert await service.update_reminder_for_reschedule(appointment_id, soon, now=NOW) is None
    assert await service.get_due_reminders(now=later) == []


@pytest.mark.asyncio
async def test_due_reminders_and_mark_sent(store, factory):
    """Test fetching due reminders and recording delivery."""
    start = NOW + timedelta(days=2)
    appointment_id = await _appointment(factory, start)
    service = ReminderService(store)
    reminder = await service.create_reminder(appointment_id, start, now=NOW)

    assert await service.get_due_reminders(now=NOW) == []

    due = await service.get_due_reminders(now=reminder.scheduled_for)
    assert [r.id for r in due] == [reminder.id]

    sent = await service.mark_reminder_sent(reminder.id, now=reminder.scheduled_for)
    assert sent.sent_at == reminder.scheduled_for
    assert await service.get_due_reminders(now=start) == []
    # A sent reminder can no longer be cancelled
    assert await service.cancel_reminder(appointment_id, now=start) is None


@pytest.mark.asyncio
async def test_mark_unknown_reminder_sent(store):
    """Test marking a reminder that does not exist."""
    with pytest.raises(NotFoundException):
        await ReminderService(store).mark_reminder_sent(uuid4(), now=NOW)
