"""Tests for moving appointments between slots."""

from datetime import UTC, datetime, timedelta

import pytest

from app.core.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from app.models import appointments, reminders, slots
from app.schemas.appointments import AppointmentPaymentStatus, AppointmentStatus
from app.schemas.schedules import SlotStatus
from app.services.reminder_service import ReminderService
from app.services.reschedule_service import RescheduleService


async def _booked(factory, patient, doctor, status=AppointmentStatus.CONFIRMED, **values):
    slot_id = await factory.slot(doctor.doctor_id, status=SlotStatus.BOOKED)
    slot = await factory.fetch(slots, slot_id)
    appointment_id = await factory.appointment(
        patient.id,
        doctor.doctor_id,
        status=status,
        start=slot["start_time"],
        slot_id=slot_id,
        **values,
    )
    return appointment_id, slot_id


@pytest.mark.asyncio
async def test_reschedule_moves_appointment(store, factory):
    """Test a successful reschedule onto a free slot."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment_id, old_slot_id = await _booked(
        factory,
        patient,
        doctor,
        payment_status=AppointmentPaymentStatus.PAID.value,
        payment_intent_id="pi_move",
        notes="First visit",
    )
    new_start = datetime.now(UTC).replace(microsecond=0) + timedelta(days=8)
    new_slot_id = await factory.slot(doctor.doctor_id, start=new_start)

    moved = await RescheduleService(store).reschedule_appointment(
        appointment_id, new_slot_id, patient, reason="Work trip"
    )

    assert moved.id != appointment_id
    assert moved.rescheduled_from_id == appointment_id
    assert moved.slot_id == new_slot_id
    assert moved.start_time == new_start
    assert moved.status == AppointmentStatus.CONFIRMED
    assert moved.payment_status == AppointmentPaymentStatus.PAID
    assert moved.payment_intent_id == "pi_move"
    assert moved.notes.startswith("First visit\n\nRescheduled from ")

    original = await factory.fetch(appointments, appointment_id)
    assert original["status"] == AppointmentStatus.CANCELLED.value
    assert original["cancel_reason"] == "Work trip"
    assert original["notes"] == (
        f"First visit\n\nRescheduled to {new_start.isoformat()}. Reason: Work trip"
    )

    assert (await factory.fetch(slots, old_slot_id))["status"] == SlotStatus.AVAILABLE.value
    assert (await factory.fetch(slots, new_slot_id))["status"] == SlotStatus.BOOKED.value


@pytest.mark.asyncio
async def test_reschedule_to_taken_slot_changes_nothing(store, factory):
    """Test that a conflicting target leaves the original untouched."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment_id, old_slot_id = await _booked(factory, patient, doctor)
    before = await factory.fetch(appointments, appointment_id)
    taken_slot_id = await factory.slot(
        doctor.doctor_id,
        start=datetime.now(UTC).replace(microsecond=0) + timedelta(days=9),
        status=SlotStatus.BOOKED,
    )

    with pytest.raises(ConflictException, match="no longer available"):
        await RescheduleService(store).reschedule_appointment(
            appointment_id, taken_slot_id, patient
        )

    assert await factory.fetch(appointments, appointment_id) == before
    assert (await factory.fetch(slots, old_slot_id))["status"] == SlotStatus.BOOKED.value
    assert len(await factory.fetch_all(appointments)) == 1


@pytest.mark.asyncio
async def test_reschedule_validates_target_slot(store, factory):
    """Test past, foreign and unknown target slots."""
    doctor = await factory.doctor()
    other = await factory.doctor()
    patient = await factory.patient()
    appointment_id, old_slot_id = await _booked(factory, patient, doctor)
    service = RescheduleService(store)

    past_slot = await factory.slot(
        doctor.doctor_id, start=datetime.now(UTC).replace(microsecond=0) - timedelta(hours=2)
    )
    with pytest.raises(ValidationException, match="in the past"):
        await service.reschedule_appointment(appointment_id, past_slot, patient)

    foreign_slot = await factory.slot(other.doctor_id)
    with pytest.raises(ValidationException, match="different doctor"):
        await service.reschedule_appointment(appointment_id, foreign_slot, patient)

    with pytest.raises(ValidationException, match="already booked in this slot"):
        await service.reschedule_appointment(appointment_id, old_slot_id, patient)

    with pytest.raises(NotFoundException, match="Slot not found"):
        await service.reschedule_appointment(appointment_id, patient.id, patient)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status",
    [AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.PENDING_PAYMENT],
)
async def test_reschedule_rejects_non_movable_status(store, factory, status):
    """Test rescheduling finished or unpaid appointments."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment_id, _ = await _booked(factory, patient, doctor, status=status)
    new_slot_id = await factory.slot(
        doctor.doctor_id, start=datetime.now(UTC).replace(microsecond=0) + timedelta(days=10)
    )

    with pytest.raises(ValidationException):
        await RescheduleService(store).reschedule_appointment(appointment_id, new_slot_id, patient)


@pytest.mark.asyncio
async def test_reschedule_pending_stays_pending(store, factory):
    """Test that an unconfirmed appointment keeps its status when moved."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment_id, _ = await _booked(factory, patient, doctor, status=AppointmentStatus.PENDING)
    new_slot_id = await factory.slot(
        doctor.doctor_id, start=datetime.now(UTC).replace(microsecond=0) + timedelta(days=6)
    )

    moved = await RescheduleService(store).reschedule_appointment(
        appointment_id, new_slot_id, doctor
    )

    assert moved.status == AppointmentStatus.PENDING
    original = await factory.fetch(appointments, appointment_id)
    assert original["cancel_reason"] == "Rescheduled"


@pytest.mark.asyncio
async def test_reschedule_requires_ownership(store, factory):
    """Test that a patient cannot move another patient's appointment."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    stranger = await factory.patient()
    appointment_id, _ = await _booked(factory, patient, doctor)
    new_slot_id = await factory.slot(
        doctor.doctor_id, start=datetime.now(UTC).replace(microsecond=0) + timedelta(days=6)
    )

    with pytest.raises(ForbiddenException, match="reschedule"):
        await RescheduleService(store).reschedule_appointment(
            appointment_id, new_slot_id, stranger
        )


@pytest.mark.asyncio
async def test_reschedule_moves_reminder(store, factory):
    """Test that the reminder follows the appointment to its new time."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    reminder_service = ReminderService(store)
    appointment_id, old_slot_id = await _booked(factory, patient, doctor)
    old_slot = await factory.fetch(slots, old_slot_id)
    await reminder_service.create_reminder(appointment_id, old_slot["start_time"])
    new_start = datetime.now(UTC).replace(microsecond=0) + timedelta(days=12)
    new_slot_id = await factory.slot(doctor.doctor_id, start=new_start)

    moved = await RescheduleService(store, reminders=reminder_service).reschedule_appointment(
        appointment_id, new_slot_id, patient
    )

    old_reminder = (
        await factory.fetch_all(reminders, reminders.c.appointment_id == appointment_id)
    )[0]
    new_reminder = (await factory.fetch_all(reminders, reminders.c.appointment_id == moved.id))[0]
    assert old_reminder["cancelled_at"] is not None
    assert new_reminder["scheduled_for"] == new_start - timedelta(hours=24)
    assert new_reminder["cancelled_at"] is None
