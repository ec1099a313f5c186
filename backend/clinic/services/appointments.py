"""
Appointment lifecycle: the allowed status moves and the activity journal
written alongside each one.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from fastapi import Request
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.errors import NotFound, ValidationError
from clinic.models import (
    Appointment, AppointmentActivityLog, AppointmentStatus, Role, Service,
    TherapistService, User,
)
from clinic.services.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

S = AppointmentStatus

ALLOWED_TRANSITIONS: Dict[AppointmentStatus, frozenset] = {
    S.SCHEDULED: frozenset({S.CONFIRMED, S.RESCHEDULED, S.COMPLETED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.CONFIRMED, S.RESCHEDULED, S.COMPLETED, S.CANCELLED}),
    S.RESCHEDULED: frozenset({S.CONFIRMED, S.RESCHEDULED, S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

ACTIVE_STATUSES = (S.SCHEDULED.value, S.CONFIRMED.value, S.RESCHEDULED.value)
CONFLICT_WINDOW = timedelta(minutes=30)


def can_transition(current: str, target: str) -> bool:
    return S(target) in ALLOWED_TRANSITIONS[S(current)]


def ensure_transition(appointment: Appointment, target: AppointmentStatus) -> None:
    current = S(appointment.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ValidationError(
            f"Cannot change appointment status from {current.value} to {target.value}"
        )


def request_meta(request: Optional[Request]) -> Dict[str, Optional[str]]:
    if request is None:
        return {"ip_address": None, "user_agent": None}
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return {"ip_address": ip, "user_agent": request.headers.get("user-agent")}


def apply_transition(
    db: AsyncSession,
    appointment: Appointment,
    target: AppointmentStatus,
    action: str,
    request: Optional[Request] = None,
    new_date: Optional[datetime] = None,
    details: Optional[Dict[str, Any]] = None,
    cancel_reason: Optional[str] = None,
) -> AppointmentActivityLog:
    """Mutate the appointment and stage its journal row in the same session.

    The caller commits, so both land in one transaction.
    """
    ensure_transition(appointment, target)

    previous_status = appointment.status
    previous_date = appointment.date
    appointment.status = target.value
    if new_date is not None:
        appointment.date = new_date
    if target is S.CANCELLED:
        appointment.canceled_at = utcnow()
        appointment.cancel_reason = cancel_reason
    appointment.updated_at = utcnow()

    entry = AppointmentActivityLog(
        appointment_id=appointment.id,
        action=action,
        previous_status=previous_status,
        new_status=target.value,
        previous_date=previous_date if new_date is not None else None,
        new_date=new_date,
        details=details or {},
        **request_meta(request),
    )
    db.add(entry)
    return entry


async def load_appointment(db: AsyncSession, appointment_id: str) -> Appointment:
    appointment = await db.get(Appointment, appointment_id, populate_existing=True)
    if appointment is None:
        raise NotFound("Appointment not found")
    return appointment


async def has_conflict(
    db: AsyncSession,
    therapist_id: str,
    when: datetime,
    exclude_id: Optional[str] = None,
) -> bool:
    """Any non-cancelled appointment of the therapist within 30 minutes of ``when``."""
    conditions = [
        Appointment.therapist_id == therapist_id,
        Appointment.status != S.CANCELLED.value,
        Appointment.date >= when - CONFLICT_WINDOW,
        Appointment.date <= when + CONFLICT_WINDOW,
    ]
    if exclude_id:
        conditions.append(Appointment.id != exclude_id)
    res = await db.execute(select(func.count(Appointment.id)).where(and_(*conditions)))
    return (res.scalar() or 0) > 0


async def therapists_offering(db: AsyncSession, service_ids: Iterable[str]) -> List[User]:
    """Active therapists that offer every one of ``service_ids``."""
    service_ids = list(dict.fromkeys(service_ids))
    q = (
        select(User)
        .join(TherapistService, TherapistService.therapist_id == User.id)
        .where(
            User.role == Role.THERAPIST.value,
            User.active.is_(True),
            TherapistService.service_id.in_(service_ids),
        )
        .group_by(User.id)
        .having(func.count(func.distinct(TherapistService.service_id)) == len(service_ids))
        .order_by(User.name)
    )
    return list((await db.execute(q)).scalars().all())


async def pick_available_therapist(
    db: AsyncSession,
    service_ids: Iterable[str],
    when: datetime,
) -> Optional[User]:
    for therapist in await therapists_offering(db, service_ids):
        if not await has_conflict(db, therapist.id, when):
            return therapist
    return None


async def load_services(db: AsyncSession, service_ids: Iterable[str]) -> List[Service]:
    service_ids = list(dict.fromkeys(service_ids))
    res = await db.execute(select(Service).where(Service.id.in_(service_ids), Service.is_active.is_(True)))
    services = list(res.scalars().all())
    if len(services) != len(service_ids):
        raise ValidationError("One or more services do not exist or are inactive")
    return services


def is_future(value: datetime) -> bool:
    return as_utc(value) > utcnow()
