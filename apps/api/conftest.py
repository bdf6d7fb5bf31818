"""Shared pytest fixtures: in-memory database, users, API client"""
import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session

from auth import create_access_token, get_password_hash
from database import engine, get_session
from models import DeliveryChannel, Invoice, InvoiceStatus, Patient, User, UserRole
from services.connection_registry import InMemoryConnectionRegistry, PushConnection
from utils.notification_channels import DeliveryResult, NotificationChannel


class RecordingConnection(PushConnection):
    """Collects everything pushed to it"""

    def __init__(self):
        self.events: List[tuple] = []
        self.closed = False

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        self.events.append((event, data))

    async def close(self) -> None:
        self.closed = True


class BrokenConnection(RecordingConnection):
    async def send(self, event, data):
        raise ConnectionResetError("client went away")


class RecordingChannel(NotificationChannel):
    def __init__(self, kind=DeliveryChannel.SMS, fail: bool = False):
        self.kind = kind
        self.fail = fail
        self.sent: List[tuple] = []

    def send(self, target: str, message: str, subject: Optional[str] = None) -> DeliveryResult:
        if self.fail:
            raise RuntimeError("gateway down")
        self.sent.append((target, message, subject))
        return DeliveryResult(ok=True, provider_response="test-id")


@pytest.fixture
def session():
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def registry():
    return InMemoryConnectionRegistry()


@pytest.fixture
def make_user(session):
    counter = {"n": 0}

    def _make(role: UserRole, phone: Optional[str] = None, active: bool = True) -> User:
        counter["n"] += 1
        user = User(
            email=f"{role.value}{counter['n']}@carelink-hms.org",
            password_hash=get_password_hash("Passw0rd!"),
            role=role.value,
            full_name=f"{role.value.title()} {counter['n']}",
            phone_number=phone,
            is_active=active,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user
    return _make


@pytest.fixture
def make_invoice(session):
    def _make(amount="100.00", user: Optional[User] = None, phone: Optional[str] = "0712345678",
              service_date: Optional[date] = None) -> Invoice:
        patient = Patient(user_id=user.id if user else None, name="Asha Mrema", phone=phone, email="asha@example.com")
        session.add(patient)
        session.commit()
        session.refresh(patient)
        invoice = Invoice(
            patient_id=patient.id,
            amount=Decimal(amount),
            service_date=service_date or date.today(),
            status=InvoiceStatus.PENDING.value,
        )
        session.add(invoice)
        session.commit()
        session.refresh(invoice)
        return invoice
    return _make


def auth_headers(user: User) -> Dict[str, str]:
    token = create_access_token(data={"sub": str(user.id), "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(session, registry):
    from main import app
    from routers import auth as auth_router, payments as payments_router

    app.dependency_overrides[get_session] = lambda: session
    app.state.registry = registry
    app.state.limiter.enabled = False
    auth_router.limiter.enabled = False
    payments_router.limiter.enabled = False

    yield TestClient(app)

    app.dependency_overrides.clear()
