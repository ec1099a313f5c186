import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("AUDIT_BACKEND", "database")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import List, Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import insert, select  # noqa: E402

from clinic.db import Database  # noqa: E402
from clinic.main import create_app  # noqa: E402
from clinic.models import (  # noqa: E402
    AccessLogEntry, Appointment, AppointmentService, AppointmentStatus, Role, Service, TherapistService, User,
)
from clinic.services.audit import AuditEntry  # noqa: E402
from clinic.services.auth_service import create_user_token, hash_password  # noqa: E402
from clinic.services.email_service import EmailService, LogTransport  # noqa: E402


class RecordingStore:
    """In-memory audit store for assertions."""

    def __init__(self):
        self.entries: List[AuditEntry] = []

    async def append(self, entry: AuditEntry) -> None:
        self.entries.append(entry)


class FailingStore:
    async def append(self, entry: AuditEntry) -> None:
        raise RuntimeError("audit store is down")


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_user_token(user)}"}


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'clinic_test.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def mail_transport():
    return LogTransport()


@pytest.fixture
def app(database, mail_transport):
    return create_app(database=database, email_service=EmailService(mail_transport, retry_delay=0))


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class Seeder:
    def __init__(self, database: Database):
        self.database = database

    async def user(self, role: Role, name: str, email: Optional[str] = None, password: str = "secret123") -> User:
        async with self.database.session() as s:
            user = User(
                name=name,
                email=email or f"{name.lower().replace(' ', '.')}@example.com",
                role=role.value,
                password_hash=hash_password(password),
            )
            s.add(user)
            await s.commit()
            return user

    async def service(self, name: str = "Massage", duration: int = 60, price: float = 40.0) -> Service:
        async with self.database.session() as s:
            service = Service(name=name, duration=duration, price=price)
            s.add(service)
            await s.commit()
            return service

    async def offer(self, therapist: User, *services: Service) -> None:
        async with self.database.session() as s:
            for service in services:
                s.add(TherapistService(therapist_id=therapist.id, service_id=service.id))
            await s.commit()

    async def appointment(
        self,
        patient: User,
        therapist: Optional[User],
        services: List[Service] = (),
        date: Optional[datetime] = None,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
        cancel_reason: Optional[str] = None,
    ) -> Appointment:
        async with self.database.session() as s:
            appt = Appointment(
                patient_id=patient.id,
                therapist_id=therapist.id if therapist else None,
                date=date or datetime.now(timezone.utc) + timedelta(days=2),
                status=status.value,
                cancel_reason=cancel_reason,
            )
            s.add(appt)
            await s.flush()
            if services:
                await s.execute(
                    insert(AppointmentService),
                    [{"appointment_id": appt.id, "service_id": svc.id} for svc in services],
                )
            await s.commit()
            return appt

    async def access_log(self) -> List[AccessLogEntry]:
        async with self.database.session() as s:
            res = await s.execute(select(AccessLogEntry).order_by(AccessLogEntry.created_at))
            return list(res.scalars().all())


@pytest.fixture
def seed(database):
    return Seeder(database)


@pytest.fixture
async def clinic(seed):
    """A small clinic: one admin, two therapists, two patients, one service."""
    admin = await seed.user(Role.ADMIN, "Admin")
    t1 = await seed.user(Role.THERAPIST, "Therapist One")
    t2 = await seed.user(Role.THERAPIST, "Therapist Two")
    p1 = await seed.user(Role.PATIENT, "Patient One")
    p2 = await seed.user(Role.PATIENT, "Patient Two")
    massage = await seed.service("Massage", 60)
    await seed.offer(t1, massage)
    return {"admin": admin, "t1": t1, "t2": t2, "p1": p1, "p2": p2, "massage": massage}
