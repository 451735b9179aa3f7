"""Tests for the capacity booking engine."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from conftest import FakePaymentGateway
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidAmountException,
    NotFoundException,
    PaymentGatewayException,
    PaymentNotConfiguredException,
    ValidationException,
)
from app.database import integrity_error_mentions
from app.models import appointments, reminders
from app.schemas.appointments import AppointmentPaymentStatus, AppointmentStatus
from app.schemas.bookings import ManualBookingRequest
from app.services.booking_service import (
    PAYMENT_INTENT_TAKEN,
    QUEUE_NUMBER_TAKEN,
    BookingService,
)
from app.services.reminder_service import ReminderService


@pytest.mark.asyncio
async def test_start_booking_reserves_pending_payment(store, gateway, factory):
    """Test that starting a booking reserves without consuming capacity."""
    doctor = await factory.doctor(fee=Decimal("45.50"))
    patient = await factory.patient()
    schedule_id = await factory.schedule(doctor.doctor_id, max_patients=1)

    response = await BookingService(store, gateway).start_booking(schedule_id, patient.id)

    assert response.client_secret.endswith("_secret")
    appointment = await factory.fetch(appointments, response.appointment_id)
    assert appointment["status"] == AppointmentStatus.PENDING_PAYMENT.value
    assert appointment["payment_status"] == AppointmentPaymentStatus.PENDING.value
    assert appointment["queue_number"] is None
    assert appointment["schedule_id"] == schedule_id

    intent = gateway.intents[appointment["payment_intent_id"]]
    assert intent.amount == 4550
    assert intent.currency == "usd"
    assert intent.metadata == {
        "scheduleId": str(schedule_id),
        "doctorId": str(doctor.doctor_id),
        "patientId": str(patient.id),
        "appointmentId": str(response.appointment_id),
    }


@pytest.mark.asyncio
async def test_start_booking_window_in_clinic_timezone(store, gateway, factory):
    """Test that the appointment window is the schedule window in UTC."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    on = (datetime.now(UTC) + timedelta(days=3)).date()
    schedule_id = await factory.schedule(doctor.doctor_id, on=on, start_time="10:00", end_time="11:30")

    response = await BookingService(store, gateway, timezone="America/New_York").start_booking(
        schedule_id, patient.id
    )

    appointment = await factory.fetch(appointments, response.appointment_id)
    assert appointment["end_time"] - appointment["start_time"] == timedelta(minutes=90)
    assert appointment["start_time"].hour in (14, 15)


@pytest.mark.asyncio
async def test_start_booking_allows_pending_beyond_capacity(store, gateway, factory):
    """Test that pending reservations do not count against capacity."""
    doctor = await factory.doctor()
    service = BookingService(store, gateway)
    schedule_id = await factory.schedule(doctor.doctor_id, max_patients=1)

    for _ in range(3):
        patient = await factory.patient()
        await service.start_booking(schedule_id, patient.id)

    pending = await factory.fetch_all(appointments, appointments.c.schedule_id == schedule_id)
    assert len(pending) == 3


@pytest.mark.asyncio
async def test_start_booking_rejects_past_schedule(store, gateway, factory):
    """Test booking a schedule that already ended."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    yesterday = (datetime.now(UTC) - timedelta(days=1)).date()
    schedule_id = await factory.schedule(doctor.doctor_id, on=yesterday)

    with pytest.raises(ValidationException, match="past"):
        await BookingService(store, gateway).start_booking(schedule_id, patient.id)

    assert gateway.intents == {}


@pytest.mark.asyncio
async def test_start_booking_rejects_full_schedule(store, gateway, factory):
    """Test that a visibly full schedule is rejected before payment."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    schedule_id = await factory.schedule(doctor.doctor_id, max_patients=1)
    await factory.appointment(patient.id, doctor.doctor_id, schedule_id=schedule_id, queue_number=1)

    with pytest.raises(ConflictException, match="full"):
        await BookingService(store, gateway).start_booking(schedule_id, patient.id)


@pytest.mark.asyncio
async def test_start_booking_unknown_schedule(store, gateway, factory):
    """Test booking a schedule that does not exist."""
    patient = await factory.patient()

    with pytest.raises(NotFoundException, match="Schedule not found"):
        await BookingService(store, gateway).start_booking(uuid4(), patient.id)


@pytest.mark.asyncio
@pytest.mark.parametrize("fee", [None, Decimal("0.00")])
async def test_start_booking_requires_price(store, gateway, factory, fee):
    """Test that a doctor without a price cannot take online bookings."""
    doctor = await factory.doctor(fee=fee)
    patient = await factory.patient()
    schedule_id = await factory.schedule(doctor.doctor_id)

    with pytest.raises(InvalidAmountException):
        await BookingService(store, gateway).start_booking(schedule_id, patient.id)

    assert await factory.fetch_all(appointments, appointments.c.schedule_id == schedule_id) == []


@pytest.mark.asyncio
async def test_start_booking_without_gateway(store, factory):
    """Test booking when the payment gateway has no credentials."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    schedule_id = await factory.schedule(doctor.doctor_id)
    service = BookingService(store, FakePaymentGateway(configured=False))

    with pytest.raises(PaymentNotConfiguredException) as exc_info:
        await service.start_booking(schedule_id, patient.id)

    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_start_booking_gateway_failure_releases_reservation(store, gateway, factory):
    """Test that a failed intent creation cancels the reservation."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    schedule_id = await factory.schedule(doctor.doctor_id)
    gateway.fail_intents = True

    with pytest.raises(PaymentGatewayException):
        await BookingService(store, gateway).start_booking(schedule_id, patient.id)

    rows = await factory.fetch_all(appointments, appointments.c.schedule_id == schedule_id)
    assert [row["status"] for row in rows] == [AppointmentStatus.CANCELLED.value]


@pytest.mark.asyncio
async def test_manual_booking_assigns_queue_numbers_until_full(store, gateway, factory):
    """Test sequential queue numbers and rejection once capacity is reached."""
    doctor = await factory.doctor()
    schedule_id = await factory.schedule(doctor.doctor_id, max_patients=2)
    service = BookingService(store, gateway)

    first = await service.create_manual_booking(
        ManualBookingRequest(schedule_id=schedule_id, patient_id=(await factory.patient()).id),
        actor=doctor,
    )
    second = await service.create_manual_booking(
        ManualBookingRequest(schedule_id=schedule_id, patient_id=(await factory.patient()).id),
        actor=doctor,
    )

    assert (first.queue_number, second.queue_number) == (1, 2)

    with pytest.raises(ConflictException) as exc_info:
        await service.create_manual_booking(
            ManualBookingRequest(schedule_id=schedule_id, patient_id=(await factory.patient()).id),
            actor=doctor,
        )
    assert exc_info.value.message == "This schedule is full."

    stored = await factory.fetch(appointments, first.id)
    assert stored["status"] == AppointmentStatus.CONFIRMED.value
    assert stored["payment_status"] == AppointmentPaymentStatus.PAID.value
    assert stored["payment_provider"] == "CASH"
    assert stored["paid_at"] is not None


@pytest.mark.asyncio
async def test_manual_booking_after_cancellation_gets_fresh_queue_number(store, gateway, factory):
    """Test that freed capacity is reused without reusing a queue number."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    schedule_id = await factory.schedule(doctor.doctor_id, max_patients=2)
    await factory.appointment(
        patient.id,
        doctor.doctor_id,
        status=AppointmentStatus.CANCELLED,
        schedule_id=schedule_id,
        queue_number=1,
    )
    await factory.appointment(patient.id, doctor.doctor_id, schedule_id=schedule_id, queue_number=2)

    booking = await BookingService(store, gateway).create_manual_booking(
        ManualBookingRequest(schedule_id=schedule_id, patient_id=patient.id)
    )

    assert booking.queue_number == 3


@pytest.mark.asyncio
async def test_manual_booking_queue_number_collision_is_conflict(
    store, gateway, factory, monkeypatch
):
    """Test that losing a queue number to another writer reports the schedule as full."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    schedule_id = await factory.schedule(doctor.doctor_id, max_patients=3)
    await factory.appointment(patient.id, doctor.doctor_id, schedule_id=schedule_id, queue_number=1)

    async def _stale_queue_number(session, schedule_id, confirmed_count):
        return 1

    monkeypatch.setattr("app.services.booking_service.next_queue_number", _stale_queue_number)

    with pytest.raises(ConflictException) as exc_info:
        await BookingService(store, gateway).create_manual_booking(
            ManualBookingRequest(schedule_id=schedule_id, patient_id=patient.id)
        )
    assert exc_info.value.message == "This schedule is full."
    assert len(await factory.fetch_all(appointments)) == 1


def test_integrity_errors_matched_by_constraint():
    """Test telling a queue-number collision from other unique violations."""
    sqlite_error = IntegrityError(
        "UPDATE appointments",
        {},
        Exception("UNIQUE constraint failed: appointments.payment_intent_id"),
    )
    postgres_error = IntegrityError(
        "INSERT INTO appointments",
        {},
        Exception(
            'duplicate key value violates unique constraint '
            '"appointments_schedule_queue_number_key"'
        ),
    )

    assert integrity_error_mentions(sqlite_error, *PAYMENT_INTENT_TAKEN)
    assert not integrity_error_mentions(sqlite_error, *QUEUE_NUMBER_TAKEN)
    assert integrity_error_mentions(postgres_error, *QUEUE_NUMBER_TAKEN)


@pytest.mark.asyncio
async def test_manual_booking_rejects_other_doctor(store, gateway, factory):
    """Test that doctors only book onto their own schedules."""
    doctor = await factory.doctor()
    other = await factory.doctor()
    patient = await factory.patient()
    schedule_id = await factory.schedule(other.doctor_id)

    with pytest.raises(ForbiddenException):
        await BookingService(store, gateway).create_manual_booking(
            ManualBookingRequest(schedule_id=schedule_id, patient_id=patient.id),
            actor=doctor,
        )


@pytest.mark.asyncio
async def test_manual_booking_requires_patient(store, gateway, factory):
    """Test booking for a user who is not a patient."""
    doctor = await factory.doctor()
    schedule_id = await factory.schedule(doctor.doctor_id)

    with pytest.raises(NotFoundException, match="Patient not found"):
        await BookingService(store, gateway).create_manual_booking(
            ManualBookingRequest(schedule_id=schedule_id, patient_id=doctor.id)
        )


@pytest.mark.asyncio
async def test_manual_booking_rejects_past_schedule(store, gateway, factory):
    """Test manual booking onto a schedule that already ended."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    yesterday = (datetime.now(UTC) - timedelta(days=1)).date()
    schedule_id = await factory.schedule(doctor.doctor_id, on=yesterday)

    with pytest.raises(ValidationException, match="past"):
        await BookingService(store, gateway).create_manual_booking(
            ManualBookingRequest(schedule_id=schedule_id, patient_id=patient.id)
        )


@pytest.mark.asyncio
async def test_manual_booking_schedules_reminder(store, gateway, factory):
    """Test that a confirmed manual booking gets a reminder."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    schedule_id = await factory.schedule(doctor.doctor_id)
    service = BookingService(store, gateway, reminders=ReminderService(store))

    booking = await service.create_manual_booking(
        ManualBookingRequest(schedule_id=schedule_id, patient_id=patient.id)
    )

    rows = await factory.fetch_all(reminders, reminders.c.appointment_id == booking.id)
    assert len(rows) == 1
    appointment = await factory.fetch(appointments, booking.id)
    assert rows[0]["scheduled_for"] == appointment["start_time"] - timedelta(hours=24)


@pytest.mark.asyncio
async def test_concurrent_manual_bookings_never_exceed_capacity(store, gateway, factory):
    """Test that simultaneous bookings respect capacity and unique queue numbers."""
    doctor = await factory.doctor()
    schedule_id = await factory.schedule(doctor.doctor_id, max_patients=3)
    service = BookingService(store, gateway)
    patients = [await factory.patient() for _ in range(8)]

    results = await asyncio.gather(
        *(
            service.create_manual_booking(
                ManualBookingRequest(schedule_id=schedule_id, patient_id=patient.id)
            )
            for patient in patients
        ),
        return_exceptions=True,
    )

    booked = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(booked) == 3
    assert all(isinstance(r, ConflictException) for r in rejected)
    assert sorted(b.queue_number for b in booked) == [1, 2, 3]
