"""Tests for appointment cancellation and refunds."""

from datetime import UTC, datetime, timedelta

import pytest

from app.core.exceptions import ForbiddenException, ValidationException
from app.models import appointments, payments, reminders, slots
from app.schemas.appointments import (
    AppointmentPaymentStatus,
    AppointmentStatus,
    AppointmentStatusUpdate,
    RefundStatus,
)
from app.schemas.payments import PaymentStatus, RefundType
from app.schemas.schedules import SlotStatus
from app.schemas.users import UserRole
from app.services.appointment_service import AppointmentService
from app.services.payment_service import PaymentService
from app.services.reminder_service import ReminderService


@pytest.fixture
def service(store, gateway):
    """Appointment service wired with payments and reminders."""
    return AppointmentService(
        store,
        payments=PaymentService(store, gateway),
        reminders=ReminderService(store),
    )


async def _paid_appointment(factory, patient, doctor, start=None, **values):
    appointment_id = await factory.appointment(
        patient.id,
        doctor.doctor_id,
        start=start,
        payment_status=AppointmentPaymentStatus.PAID.value,
        payment_provider="STRIPE",
        payment_intent_id=f"pi_{patient.id.hex[:12]}",
        **values,
    )
    appointment = await factory.fetch(appointments, appointment_id)
    payment_id = await factory.payment(appointment)
    return appointment, payment_id


@pytest.mark.asyncio
async def test_patient_cancel_with_notice_refunds_in_full(service, gateway, factory):
    """Test a patient cancelling more than a day ahead."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment, payment_id = await _paid_appointment(factory, patient, doctor)

    result = await service.cancel_appointment(appointment["id"], patient, reason="Feeling better")

    assert result.appointment.status == AppointmentStatus.CANCELLED
    assert result.appointment.cancelled_by == UserRole.PATIENT
    assert result.appointment.cancel_reason == "Feeling better"
    assert result.refund_decision.eligible is True
    assert result.refund_decision.type == RefundType.FULL
    assert result.refund_status == RefundStatus.REFUNDED

    payment = await factory.fetch(payments, payment_id)
    assert payment["status"] == PaymentStatus.REFUNDED.value
    assert payment["refunded_amount"] == 5000
    assert payment["refund_id"] == gateway.refunds[0].id


@pytest.mark.asyncio
async def test_patient_late_cancel_is_not_refunded(service, gateway, factory):
    """Test a patient cancelling inside the notice period."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    start = datetime.now(UTC).replace(microsecond=0) + timedelta(hours=5)
    appointment, payment_id = await _paid_appointment(factory, patient, doctor, start=start)

    result = await service.cancel_appointment(appointment["id"], patient)

    assert result.appointment.status == AppointmentStatus.CANCELLED
    assert result.refund_decision.eligible is False
    assert result.refund_status == RefundStatus.NOT_ELIGIBLE
    assert gateway.refunds == []
    payment = await factory.fetch(payments, payment_id)
    assert payment["status"] == PaymentStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_doctor_late_cancel_is_refunded(service, gateway, factory):
    """Test that a doctor cancelling always refunds the patient."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    start = datetime.now(UTC).replace(microsecond=0) + timedelta(minutes=30)
    appointment, _ = await _paid_appointment(factory, patient, doctor, start=start)

    result = await service.cancel_appointment(appointment["id"], doctor, reason="Emergency")

    assert result.refund_decision.type == RefundType.FULL
    assert result.refund_status == RefundStatus.REFUNDED
    assert len(gateway.refunds) == 1


@pytest.mark.asyncio
async def test_refund_failure_keeps_cancellation(service, gateway, factory):
    """Test that a gateway refund error is reported without undoing the cancel."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment, payment_id = await _paid_appointment(factory, patient, doctor)
    gateway.fail_refunds = True

    result = await service.cancel_appointment(appointment["id"], patient)

    assert result.refund_status == RefundStatus.FAILED
    assert "Failed to create refund" in result.refund_error
    stored = await factory.fetch(appointments, appointment["id"])
    assert stored["status"] == AppointmentStatus.CANCELLED.value
    payment = await factory.fetch(payments, payment_id)
    assert payment["status"] == PaymentStatus.REFUND_FAILED.value


@pytest.mark.asyncio
async def test_cancel_is_idempotent(service, gateway, factory):
    """Test that repeating a cancellation has no further effect."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment, _ = await _paid_appointment(factory, patient, doctor)

    first = await service.cancel_appointment(appointment["id"], patient, reason="Travel")
    second = await service.cancel_appointment(appointment["id"], patient, reason="Again")

    assert second.appointment.status == AppointmentStatus.CANCELLED
    assert second.refund_decision == first.refund_decision
    assert second.appointment.notes == first.appointment.notes
    assert second.appointment.cancel_reason == "Travel"
    assert len(gateway.refunds) == 1


@pytest.mark.asyncio
async def test_cancel_appends_reason_to_notes(service, factory):
    """Test that existing notes are kept when the reason is appended."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment_id = await factory.appointment(
        patient.id, doctor.doctor_id, notes="Bring previous reports"
    )

    result = await service.cancel_appointment(appointment_id, patient, reason="Schedule clash")

    assert result.appointment.notes == (
        "Bring previous reports\n\nCancellation reason: Schedule clash"
    )
    assert result.refund_status == RefundStatus.NOT_APPLICABLE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status", [AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW]
)
async def test_cannot_cancel_finished_appointment(service, factory, status):
    """Test cancelling an appointment in a terminal state."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment_id = await factory.appointment(patient.id, doctor.doctor_id, status=status)

    with pytest.raises(ValidationException, match=f"already {status.value}"):
        await service.cancel_appointment(appointment_id, patient)


@pytest.mark.asyncio
async def test_cannot_cancel_someone_elses_appointment(service, factory):
    """Test that patients and doctors only cancel what they own."""
    doctor = await factory.doctor()
    other_doctor = await factory.doctor()
    patient = await factory.patient()
    stranger = await factory.patient()
    appointment_id = await factory.appointment(patient.id, doctor.doctor_id)

    with pytest.raises(ForbiddenException):
        await service.cancel_appointment(appointment_id, stranger)
    with pytest.raises(ForbiddenException):
        await service.cancel_appointment(appointment_id, other_doctor)

    stored = await factory.fetch(appointments, appointment_id)
    assert stored["status"] == AppointmentStatus.CONFIRMED.value


@pytest.mark.asyncio
async def test_cash_payment_is_not_refunded_online(service, gateway, factory):
    """Test that appointments paid outside the gateway skip the refund."""
    doctor = await factory.doctor()
    admin = await factory.admin()
    patient = await factory.patient()
    appointment_id = await factory.appointment(
        patient.id,
        doctor.doctor_id,
        payment_status=AppointmentPaymentStatus.PAID.value,
        payment_provider="CASH",
    )

    result = await service.cancel_appointment(appointment_id, admin)

    assert result.refund_decision.eligible is True
    assert result.refund_status == RefundStatus.NOT_APPLICABLE
    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_cancel_frees_slot_and_reminder(service, factory):
    """Test that cancelling releases the slot and the pending reminder."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    slot_id = await factory.slot(doctor.doctor_id, status=SlotStatus.BOOKED)
    slot = await factory.fetch(slots, slot_id)
    appointment_id = await factory.appointment(
        patient.id, doctor.doctor_id, start=slot["start_time"], slot_id=slot_id
    )
    await service.reminders.create_reminder(appointment_id, slot["start_time"])

    await service.cancel_appointment(appointment_id, patient)

    assert (await factory.fetch(slots, slot_id))["status"] == SlotStatus.AVAILABLE.value
    reminder = (await factory.fetch_all(reminders, reminders.c.appointment_id == appointment_id))[0]
    assert reminder["cancelled_at"] is not None


@pytest.mark.asyncio
async def test_status_update_to_cancelled_applies_policy(service, gateway, factory):
    """Test that a CANCELLED status update goes through cancellation."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    appointment, _ = await _paid_appointment(factory, patient, doctor)

    updated = await service.update_appointment_status(
        appointment["id"],
        AppointmentStatusUpdate(status=AppointmentStatus.CANCELLED, reason="Clinic closed"),
        doctor,
    )

    assert updated.status == AppointmentStatus.CANCELLED
    assert updated.cancelled_by == UserRole.DOCTOR
    assert len(gateway.refunds) == 1


@pytest.mark.asyncio
async def test_doctor_completes_started_appointment(service, factory):
    """Test moving a started appointment to COMPLETED."""
    doctor = await factory.doctor()
    patient = await factory.patient()
    start = datetime.now(UTC).replace(microsecond=0) - timedelta(minutes=10)
    appointment_id = await factory.appointment(patient.id, doctor.doctor_id, start=start)

    updated = await service.update_appointment_status(
        appointment_id, AppointmentStatusUpdate(status=AppointmentStatus.COMPLETED), doctor
    )
    assert updated.status == AppointmentStatus.COMPLETED

    with pytest.raises(ForbiddenException, match="Patients can only cancel"):
        await service.update_appointment_status(
            appointment_id, AppointmentStatusUpdate(status=AppointmentStatus.NO_SHOW), patient
        )
