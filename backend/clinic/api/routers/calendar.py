from __future__ import annotations

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.db import get_db
from clinic.errors import ValidationError
from clinic.models import Appointment, Role, User
from clinic.services.audit import AuditLogger, get_audit_logger
from clinic.services.auth_service import require_roles
from clinic.services.calendar import group_week
from clinic.services.dates import parse_date_param, utcnow, week_start

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


@router.get("/weekly-appointments")
async def weekly_appointments(
    response: Response,
    week: Optional[str] = Query(None, description="Any date inside the wanted week"),
    therapist_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN, Role.THERAPIST)),
    audit: AuditLogger = Depends(get_audit_logger),
):
    try:
        base = parse_date_param(week, "week") or utcnow()
    except ValueError as e:
        raise ValidationError(str(e))
    start = week_start(base)
    end = start + timedelta(days=7)

    q = select(Appointment).where(Appointment.date >= start, Appointment.date < end)
    is_therapist = current_user.role == Role.THERAPIST.value
    if is_therapist:
        q = q.where(Appointment.therapist_id == current_user.id)
    elif therapist_id:
        q = q.where(Appointment.therapist_id == therapist_id)

    appointments = (await db.execute(q.order_by(Appointment.date.asc()))).scalars().all()
    days = group_week(appointments, start)

    if is_therapist:
        await audit.record(
            current_user.id,
            "view",
            "appointment",
            "weekly-calendar",
            {"week_start": start.isoformat(), "appointments": len(appointments)},
        )

    response.headers["Cache-Control"] = "private, max-age=300"
    return {
        "week_start": start,
        "week_end": end - timedelta(microseconds=1),
        "days": days,
    }
