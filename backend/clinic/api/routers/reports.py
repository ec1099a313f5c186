from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from dateutil.relativedelta import relativedelta
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from clinic.db import get_db
from clinic.errors import NotFound, ValidationError
from clinic.models import Appointment, AppointmentStatus, Role, SurveyResponse, User
from clinic.schemas import GroupBy
from clinic.services import reports
from clinic.services.auth_service import require_roles
from clinic.services.dates import as_utc, end_of_day, parse_date_param, start_of_day, utcnow

router = APIRouter(prefix="/api/reports", tags=["reports"])

admin_only = require_roles(Role.ADMIN)


def six_months_before(end: datetime) -> datetime:
    return start_of_day(end - relativedelta(months=6))


def quarter_before(end: datetime) -> datetime:
    """First day of the month three months before ``end``."""
    return start_of_day(end - relativedelta(months=3)).replace(day=1)


def resolve_range(
    start_date: Optional[str],
    end_date: Optional[str],
    default_start: Callable[[datetime], datetime],
) -> Tuple[datetime, datetime]:
    """Parse the report window; a bare end date covers that whole day."""
    try:
        start = parse_date_param(start_date, "start_date")
        end = parse_date_param(end_date, "end_date")
    except ValueError as e:
        raise ValidationError(str(e))
    if end is None:
        end = utcnow()
    elif end_date and len(end_date) == 10:
        end = end_of_day(end)
    if start is None:
        start = default_start(end)
    if start > end:
        raise ValidationError("start_date must be before end_date")
    return start, end


@router.get("/cancellation-rates")
async def cancellation_rates(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    group_by: GroupBy = Query("month"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(admin_only),
):
    start, end = resolve_range(start_date, end_date, six_months_before)
    res = await db.execute(
        select(Appointment.date, Appointment.status, Appointment.cancel_reason)
        .where(Appointment.date >= start, Appointment.date <= end)
    )
    rows = [reports.AppointmentRow(date=d, status=s, cancel_reason=r) for d, s, r in res.all()]
    result = reports.cancellation_rates(rows, group_by)
    return {"start_date": start, "end_date": end, "group_by": group_by, **result}


async def _active_therapists(db: AsyncSession):
    res = await db.execute(
        select(User.id, User.name)
        .where(User.role == Role.THERAPIST.value, User.active.is_(True))
        .order_by(User.name)
    )
    return [reports.TherapistRow(id=i, name=n) for i, n in res.all()]


@router.get("/therapist-occupancy")
async def therapist_occupancy(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(admin_only),
):
    start, end = resolve_range(start_date, end_date, lambda e: start_of_day(e - timedelta(days=30)))
    therapists = await _active_therapists(db)

    res = await db.execute(
        select(Appointment).where(
            Appointment.status == AppointmentStatus.COMPLETED.value,
            Appointment.therapist_id.is_not(None),
            Appointment.date >= start,
            Appointment.date <= end,
        )
    )
    visits = [
        reports.CompletedVisit(therapist_id=a.therapist_id, duration_minutes=sum(s.duration for s in a.services))
        for a in res.scalars().all()
    ]
    result = reports.therapist_occupancy(therapists, visits, start.date(), end.date())
    return {"start_date": start, "end_date": end, **result}


@router.get("/satisfaction")
async def satisfaction_report(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    therapist_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(admin_only),
):
    start, end = resolve_range(start_date, end_date, quarter_before)
    in_range = [
        Appointment.status == AppointmentStatus.COMPLETED.value,
        Appointment.date >= start,
        Appointment.date <= end,
    ]
    if therapist_id:
        in_range.append(Appointment.therapist_id == therapist_id)

    res = await db.execute(
        select(SurveyResponse.satisfaction, Appointment.date, Appointment.therapist_id)
        .join(Appointment, Appointment.id == SurveyResponse.appointment_id)
        .where(*in_range)
    )
    reviews = [reports.ReviewRow(satisfaction=s, appointment_date=d, therapist_id=t) for s, d, t in res.all()]

    completed = await db.execute(
        select(Appointment.therapist_id, User.name, func.count(Appointment.id))
        .join(User, User.id == Appointment.therapist_id)
        .where(*in_range)
        .group_by(Appointment.therapist_id, User.name)
    )
    completed_rows = completed.all()
    therapists = [reports.TherapistRow(id=t, name=n) for t, n, _ in completed_rows]
    counts = {t: c for t, _, c in completed_rows}

    return {
        "start_date": start,
        "end_date": end,
        "reviews_count": len(reviews),
        "overall": reports.satisfaction_overall(reviews),
        "therapists": reports.satisfaction_by_therapist(reviews, therapists, counts),
        "trend": reports.satisfaction_trend(reviews),
        "ratings": dict(sorted(Counter(r.satisfaction for r in reviews).items())),
    }


@router.get("/satisfaction/analytics")
async def satisfaction_analytics(
    days: int = Query(30, ge=1, le=365),
    therapist_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN, Role.THERAPIST)),
):
    """Survey analytics over the last ``days`` days; therapists only see their own."""
    end = end_of_day(utcnow())
    start = start_of_day(end - timedelta(days=days))

    q = (
        select(SurveyResponse.satisfaction, SurveyResponse.created_at)
        .join(Appointment, Appointment.id == SurveyResponse.appointment_id)
        .where(SurveyResponse.created_at >= start, SurveyResponse.created_at <= end)
        .order_by(SurveyResponse.created_at.asc())
    )
    if current_user.role == Role.THERAPIST.value:
        q = q.where(Appointment.therapist_id == current_user.id)
    elif therapist_id and therapist_id != "all":
        q = q.where(Appointment.therapist_id == therapist_id)

    rows = [reports.SurveyRow(satisfaction=s, created_at=c) for s, c in (await db.execute(q)).all()]
    return {"start_date": start, "end_date": end, "days": days, **reports.satisfaction_analytics(rows)}


@router.get("/satisfaction/export")
async def export_satisfaction(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(admin_only),
):
    start, end = resolve_range(start_date, end_date, quarter_before)
    patient = aliased(User)
    therapist = aliased(User)
    res = await db.execute(
        select(SurveyResponse, Appointment, patient, therapist)
        .join(Appointment, Appointment.id == SurveyResponse.appointment_id)
        .join(patient, patient.id == Appointment.patient_id)
        .outerjoin(therapist, therapist.id == Appointment.therapist_id)
        .where(SurveyResponse.created_at >= start, SurveyResponse.created_at <= end)
        .order_by(SurveyResponse.created_at.desc())
    )
    rows = [
        {
            "survey_id": survey.id,
            "survey_date": as_utc(survey.created_at).isoformat(),
            "satisfaction": survey.satisfaction,
            "comments": survey.comments,
            "appointment_id": appt.id,
            "appointment_date": as_utc(appt.date).isoformat(),
            "patient_id": p.id,
            "patient_name": p.name,
            "patient_email": p.email,
            "therapist_id": t.id if t else None,
            "therapist_name": t.name if t else None,
            "therapist_email": t.email if t else None,
        }
        for survey, appt, p, t in res.all()
    ]
    if not rows:
        raise NotFound("No surveys found in the selected period")

    return Response(
        content=reports.surveys_csv(rows),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{reports.export_filename(start, end)}"'},
    )
