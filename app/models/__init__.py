"""Database models."""

from app.models.appointments import appointments
from app.models.base import metadata
from app.models.doctors import doctors
from app.models.payments import payments, reminders, webhook_events
from app.models.schedules import schedules, slots
from app.models.users import users

__all__ = [
    "appointments",
    "doctors",
    "metadata",
    "payments",
    "reminders",
    "schedules",
    "slots",
    "users",
    "webhook_events",
]
