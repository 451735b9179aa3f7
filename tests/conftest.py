import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from itertools import count
from typing import Any
from uuid import UUID, uuid4

# Required settings must exist before the app package is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./medbook_test.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_FORMAT", "console")

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

# Load environment variables from .env file
load_dotenv()

from app.config import Settings, get_settings
from app.core.exceptions import PaymentGatewayException
from app.core.payment_gateway import GatewayRefund, PaymentIntent, StripePaymentGateway
from app.core.security import create_access_token
from app.database import TransactionalStore, create_engine_from_settings
from app.main import create_app
from app.models import (
    appointments,
    doctors,
    metadata,
    payments,
    schedules,
    slots,
    users,
)
from app.schemas.appointments import AppointmentPaymentStatus, AppointmentStatus
from app.schemas.schedules import SlotStatus
from app.schemas.users import CurrentUser, UserRole

WEBHOOK_SECRET = "whsec_test_secret"


class FakePaymentGateway(StripePaymentGateway):
    """Stripe gateway with the network calls replaced by in-memory records.

    Webhook verification is inherited unchanged, so tests sign payloads the
    way Stripe does.
    """

    def __init__(self, configured: bool = True):
        super().__init__("sk_test_fake" if configured else None)
        self.intents: dict[str, PaymentIntent] = {}
        self.refunds: list[GatewayRefund] = []
        self.fail_refunds = False
        self.fail_intents = False
        self._ids = count(1)

    async def create_payment_intent(
        self,
        amount_minor_units: int,
        currency: str,
        metadata: dict[str, str],
    ) -> PaymentIntent:
        self._require_configured()
        if self.fail_intents:
            raise PaymentGatewayException("Failed to create payment intent")
        intent_id = f"pi_test_{next(self._ids)}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount_minor_units,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            metadata=metadata,
        )
        self.intents[intent_id] = intent
        return intent

    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        return self.intents[payment_intent_id]

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_minor_units: int,
        reason: str | None = None,
    ) -> GatewayRefund:
        self._require_configured()
        if self.fail_refunds:
            raise PaymentGatewayException("Failed to create refund")
        refund = GatewayRefund(
            id=f"re_test_{next(self._ids)}",
            amount=amount_minor_units,
            status="succeeded",
        )
        self.refunds.append(refund)
        return refund


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def payment_event(
    event_type: str,
    intent: PaymentIntent,
    event_id: str | None = None,
) -> bytes:
    """Serialized gateway event wrapping a payment intent."""
    body = {
        "id": event_id or f"evt_{uuid4().hex}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {
            "object": {
                "id": intent.id,
                "object": "payment_intent",
                "status": "succeeded",
                "amount": intent.amount,
                "currency": intent.currency,
                "metadata": intent.metadata,
                "latest_charge": f"ch_{intent.id}",
            }
        },
    }
    return json.dumps(body).encode()


class DataFactory:
    """Inserts fixture rows through the transactional store."""

    def __init__(self, store: TransactionalStore):
        self.store = store

    async def _insert(self, table: Any, **values: Any) -> UUID:
        async def _run(session: AsyncSession) -> UUID:
            result = await session.execute(insert(table).values(**values).returning(table.c.id))
            return result.scalar_one()

        return await self.store.run_in_transaction(_run)

    async def fetch(self, table: Any, row_id: UUID) -> dict[str, Any]:
        async def _run(session: AsyncSession) -> dict[str, Any]:
            result = await session.execute(select(table).where(table.c.id == row_id))
            return dict(result.mappings().one())

        return await self.store.run_in_transaction(_run)

    async def fetch_all(self, table: Any, *conditions: Any) -> list[dict[str, Any]]:
        async def _run(session: AsyncSession) -> list[dict[str, Any]]:
            result = await session.execute(select(table).where(*conditions))
            return [dict(row) for row in result.mappings()]

        return await self.store.run_in_transaction(_run)

    async def user(self, role: UserRole = UserRole.PATIENT) -> UUID:
        return await self._insert(
            users,
            email=f"{role.value.lower()}-{uuid4().hex[:8]}@example.com",
            full_name=f"Test {role.value.title()}",
            role=role.value,
        )

    async def doctor(self, fee: Decimal | None = Decimal("50.00")) -> CurrentUser:
        user_id = await self.user(UserRole.DOCTOR)
        doctor_id = await self._insert(
            doctors,
            user_id=user_id,
            specialization="General Practice",
            consultation_fee=fee,
        )
        return CurrentUser(id=user_id, role=UserRole.DOCTOR, doctor_id=doctor_id)

    async def patient(self) -> CurrentUser:
        return CurrentUser(id=await self.user(UserRole.PATIENT), role=UserRole.PATIENT)

    async def admin(self) -> CurrentUser:
        return CurrentUser(id=await self.user(UserRole.ADMIN), role=UserRole.ADMIN)

    async def schedule(
        self,
        doctor_id: UUID,
        on: date | None = None,
        start_time: str = "09:00",
        end_time: str = "12:00",
        max_patients: int = 2,
    ) -> UUID:
        return await self._insert(
            schedules,
            doctor_id=doctor_id,
            date=on or (datetime.now(UTC) + timedelta(days=3)).date(),
            start_time=start_time,
            end_time=end_time,
            max_patients=max_patients,
        )

    async def slot(
        self,
        doctor_id: UUID,
        start: datetime | None = None,
        status: SlotStatus = SlotStatus.AVAILABLE,
    ) -> UUID:
        start = start or datetime.now(UTC).replace(microsecond=0) + timedelta(days=5)
        return await self._insert(
            slots,
            doctor_id=doctor_id,
            start_time=start,
            end_time=start + timedelta(minutes=30),
            status=status.value,
        )

    async def appointment(
        self,
        patient_id: UUID,
        doctor_id: UUID,
        status: AppointmentStatus = AppointmentStatus.CONFIRMED,
        start: datetime | None = None,
        **values: Any,
    ) -> UUID:
        start = start or datetime.now(UTC).replace(microsecond=0) + timedelta(days=3)
        values.setdefault("payment_status", AppointmentPaymentStatus.UNPAID.value)
        return await self._insert(
            appointments,
            patient_id=patient_id,
            doctor_id=doctor_id,
            start_time=start,
            end_time=start + timedelta(minutes=30),
            status=status.value,
            **values,
        )

    async def payment(self, appointment: dict[str, Any], amount: int = 5000) -> UUID:
        return await self._insert(
            payments,
            appointment_id=appointment["id"],
            patient_id=appointment["patient_id"],
            doctor_id=appointment["doctor_id"],
            amount=amount,
            currency="usd",
            status="COMPLETED",
            external_intent_id=appointment["payment_intent_id"] or f"pi_{uuid4().hex}",
        )


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file."""
    return get_settings().model_copy(
        update={
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
            "stripe_secret_key": "sk_test_fake",
            "stripe_webhook_secret": WEBHOOK_SECRET,
            "payment_currency": "usd",
            "clinic_timezone": "UTC",
            "debug": False,
            "enable_metrics": False,
        }
    )


@pytest_asyncio.fixture
async def store(test_settings: Settings) -> AsyncGenerator[TransactionalStore, None]:
    """Transactional store over a fresh database.

    File-backed so concurrent transactions use separate connections.
    """
    engine = create_engine_from_settings(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield TransactionalStore(engine)

    await engine.dispose()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    """In-memory payment gateway."""
    return FakePaymentGateway()


@pytest.fixture
def factory(store: TransactionalStore) -> DataFactory:
    """Row factory bound to the test store."""
    return DataFactory(store)


@pytest_asyncio.fixture
async def client(
    test_settings: Settings,
    store: TransactionalStore,
    gateway: FakePaymentGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""
    app = create_app(settings=test_settings, store=store, gateway=gateway)
    app.dependency_overrides[get_settings] = lambda: test_settings

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def auth_headers(user: CurrentUser) -> dict[str, str]:
    """Create authentication headers for testing protected endpoints."""
    token = create_access_token(
        data={"sub": str(user.id), "role": user.role.value},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}

