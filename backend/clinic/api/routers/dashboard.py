from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.config import CLINIC_TIMEZONE
from clinic.db import Database, get_database, get_db
from clinic.errors import ValidationError
from clinic.models import Appointment, AppointmentService, AppointmentStatus, Role, Service, SurveyResponse, User
from clinic.services.auth_service import get_current_user, require_roles
from clinic.services.dates import day_range, parse_date_param, today_range, utcnow
from clinic.services.reports import pct

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

UPCOMING_STATUSES = (AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value)

_FRONTEND_STATUS = {
    AppointmentStatus.CONFIRMED.value: "confirmed",
    AppointmentStatus.COMPLETED.value: "confirmed",
    AppointmentStatus.CANCELLED.value: "cancelled",
}


def _count_appointments(*conditions):
    return select(func.count(Appointment.id)).where(*conditions)


@router.get("/stats")
async def dashboard_stats(
    database: Database = Depends(get_database),
    current_user: User = Depends(get_current_user),
):
    """Headline counters; each role only sees its own slice."""
    start, end = today_range(CLINIC_TIMEZONE)
    today = (Appointment.date >= start, Appointment.date < end)
    upcoming = (Appointment.date >= end, Appointment.status.in_(UPCOMING_STATUSES))

    if current_user.role == Role.ADMIN.value:
        today_count, upcoming_count, patients, therapists = await asyncio.gather(
            database.scalar(_count_appointments(*today)),
            database.scalar(_count_appointments(*upcoming)),
            database.scalar(select(func.count(User.id)).where(User.role == Role.PATIENT.value, User.active.is_(True))),
            database.scalar(select(func.count(User.id)).where(User.role == Role.THERAPIST.value, User.active.is_(True))),
        )
        return {
            "appointments_today": today_count or 0,
            "upcoming_appointments": upcoming_count or 0,
            "active_patients": patients or 0,
            "active_therapists": therapists or 0,
        }

    if current_user.role == Role.THERAPIST.value:
        mine = Appointment.therapist_id == current_user.id
        today_count, upcoming_count, patients = await asyncio.gather(
            database.scalar(_count_appointments(mine, *today)),
            database.scalar(_count_appointments(mine, *upcoming)),
            database.scalar(select(func.count(distinct(Appointment.patient_id))).where(mine)),
        )
        return {
            "appointments_today": today_count or 0,
            "upcoming_appointments": upcoming_count or 0,
            "total_patients": patients or 0,
        }

    mine = Appointment.patient_id == current_user.id
    today_count, upcoming_count = await asyncio.gather(
        database.scalar(_count_appointments(mine, *today)),
        database.scalar(_count_appointments(mine, *upcoming)),
    )
    return {
        "appointments_today": today_count or 0,
        "upcoming_appointments": upcoming_count or 0,
    }


@router.get("/recent-appointments")
async def recent_appointments(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    q = select(Appointment).where(
        Appointment.date >= utcnow(),
        Appointment.status != AppointmentStatus.CANCELLED.value,
    )
    if current_user.role == Role.THERAPIST.value:
        q = q.where(Appointment.therapist_id == current_user.id)
    elif current_user.role == Role.PATIENT.value:
        q = q.where(Appointment.patient_id == current_user.id)

    res = await db.execute(q.order_by(Appointment.date.asc()).limit(5))
    return [
        {
            "id": a.id,
            "date": a.date,
            "patient_name": a.patient.name,
            "services": [s.name for s in a.services],
            "status": _FRONTEND_STATUS.get(a.status, "pending"),
        }
        for a in res.scalars().all()
    ]


@router.get("/popular-services")
async def popular_services(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    now = utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    q = (
        select(Service.id, Service.name, Service.image_url, func.count(AppointmentService.id).label("uses"))
        .join(AppointmentService, AppointmentService.service_id == Service.id)
        .join(Appointment, Appointment.id == AppointmentService.appointment_id)
        .where(Appointment.date >= month_start)
        .group_by(Service.id, Service.name, Service.image_url)
    )
    if current_user.role == Role.THERAPIST.value:
        q = q.where(Appointment.therapist_id == current_user.id)
    elif current_user.role == Role.PATIENT.value:
        q = q.where(Appointment.patient_id == current_user.id)

    rows = (await db.execute(q)).all()
    total = sum(row.uses for row in rows)
    ranked = sorted(rows, key=lambda row: row.uses, reverse=True)[:3]
    return [
        {
            "id": row.id,
            "name": row.name,
            "image_url": row.image_url,
            "count": row.uses,
            "percentage": round(pct(row.uses, total)),
        }
        for row in ranked
    ]


@router.get("/satisfaction-summary")
async def satisfaction_summary(
    database: Database = Depends(get_database),
    current_user: User = Depends(require_roles(Role.ADMIN, Role.THERAPIST)),
):
    today_start, tomorrow = today_range(CLINIC_TIMEZONE)
    since = today_start - timedelta(days=30)

    def summary(start):
        q = (
            select(func.count(SurveyResponse.id), func.avg(SurveyResponse.satisfaction))
            .where(SurveyResponse.created_at >= start, SurveyResponse.created_at < tomorrow)
        )
        if current_user.role == Role.THERAPIST.value:
            q = q.join(Appointment, Appointment.id == SurveyResponse.appointment_id).where(
                Appointment.therapist_id == current_user.id
            )
        return q

    async def fetch(start):
        async with database.session() as session:
            count, avg = (await session.execute(summary(start))).one()
            return count or 0, round(float(avg), 2) if avg is not None else 0

    (recent_total, recent_avg), (today_total, today_avg) = await asyncio.gather(fetch(since), fetch(today_start))
    return {
        "recent_surveys": {"total": recent_total, "average_satisfaction": recent_avg},
        "today_surveys": {"count": today_total, "average_satisfaction": today_avg},
    }


@router.get("/therapist-appointments")
async def therapist_appointments(
    date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to today"),
    therapist_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN, Role.THERAPIST)),
):
    try:
        day = parse_date_param(date, "date")
    except ValueError as e:
        raise ValidationError(str(e))
    start, end = day_range(day.date(), CLINIC_TIMEZONE) if day else today_range(CLINIC_TIMEZONE)

    q = select(Appointment).where(Appointment.date >= start, Appointment.date < end)
    if current_user.role == Role.THERAPIST.value:
        q = q.where(Appointment.therapist_id == current_user.id)
    elif therapist_id:
        q = q.where(Appointment.therapist_id == therapist_id)

    res = await db.execute(q.order_by(Appointment.date.asc()))
    return [
        {
            "id": a.id,
            "date": a.date,
            "status": a.status,
            "patient": {"id": a.patient.id, "name": a.patient.name, "phone": a.patient.phone},
            "therapist_id": a.therapist_id,
            "services": [{"id": s.id, "name": s.name, "duration": s.duration} for s in a.services],
        }
        for a in res.scalars().all()
    ]
