from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from clinic.db import get_db
from clinic.errors import Conflict, NotFound, ValidationError
from clinic.models import Appointment, AppointmentActivityLog, AppointmentStatus, Role, SurveyResponse, User
from clinic.schemas import AdminSurveyItem, AdminSurveyPage, SurveyCreate, SurveyExists, SurveyPublic, UserBrief
from clinic.services.appointments import request_meta
from clinic.services.auth_service import require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/survey", tags=["surveys"])
admin_router = APIRouter(prefix="/api/admin/surveys", tags=["surveys"])


async def _get_survey(db: AsyncSession, appointment_id: str) -> Optional[SurveyResponse]:
    res = await db.execute(select(SurveyResponse).where(SurveyResponse.appointment_id == appointment_id))
    return res.scalar_one_or_none()


@router.post("/{appointment_id}", response_model=SurveyPublic, status_code=status.HTTP_201_CREATED)
async def submit_survey(
    appointment_id: str,
    body: SurveyCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Public: reached from the link in the post-visit email."""
    appointment = await db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")
    if appointment.status != AppointmentStatus.COMPLETED.value:
        raise ValidationError("Only completed appointments can be rated")
    if await _get_survey(db, appointment_id) is not None:
        raise Conflict("A survey was already submitted for this appointment")

    survey = SurveyResponse(
        appointment_id=appointment_id,
        patient_id=appointment.patient_id,
        satisfaction=body.satisfaction,
        comments=body.comments,
    )
    db.add(survey)
    db.add(AppointmentActivityLog(
        appointment_id=appointment_id,
        action="SURVEY_SUBMITTED",
        previous_status=appointment.status,
        new_status=appointment.status,
        details={"satisfaction": body.satisfaction, "has_comments": bool(body.comments)},
        **request_meta(request),
    ))
    try:
        await db.commit()
    except IntegrityError:
        # concurrent submission won the unique constraint
        await db.rollback()
        raise Conflict("A survey was already submitted for this appointment")
    return survey


@router.get("/{appointment_id}", response_model=SurveyPublic)
async def get_survey(appointment_id: str, db: AsyncSession = Depends(get_db)):
    survey = await _get_survey(db, appointment_id)
    if survey is None:
        raise NotFound("Survey not found")
    return survey


@router.get("/{appointment_id}/check", response_model=SurveyExists)
async def check_survey(appointment_id: str, db: AsyncSession = Depends(get_db)):
    return SurveyExists(exists=await _get_survey(db, appointment_id) is not None)


@admin_router.get("", response_model=AdminSurveyPage)
async def list_surveys(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=5, le=50),
    search: str = Query("", max_length=100),
    min_rating: Optional[int] = Query(None, ge=1, le=5),
    sort_field: Literal["created_at", "satisfaction"] = Query("created_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    patient = aliased(User)
    therapist = aliased(User)
    base = (
        select(SurveyResponse, Appointment, patient, therapist)
        .join(Appointment, Appointment.id == SurveyResponse.appointment_id)
        .join(patient, patient.id == Appointment.patient_id)
        .outerjoin(therapist, therapist.id == Appointment.therapist_id)
    )
    conditions = []
    if min_rating is not None:
        conditions.append(SurveyResponse.satisfaction >= min_rating)
    if search:
        like = f"%{search.lower()}%"
        conditions.append(or_(
            func.lower(patient.name).like(like),
            func.lower(therapist.name).like(like),
            func.lower(SurveyResponse.comments).like(like),
        ))

    total = (await db.execute(
        select(func.count()).select_from(base.where(*conditions).subquery())
    )).scalar() or 0

    column = SurveyResponse.created_at if sort_field == "created_at" else SurveyResponse.satisfaction
    order = column.asc() if sort_order == "asc" else column.desc()
    res = await db.execute(
        base.where(*conditions).order_by(order).offset((page - 1) * page_size).limit(page_size)
    )
    items = [
        AdminSurveyItem(
            id=survey.id,
            satisfaction=survey.satisfaction,
            comments=survey.comments,
            created_at=survey.created_at,
            appointment_id=appt.id,
            appointment_date=appt.date,
            patient=UserBrief.model_validate(p),
            therapist=UserBrief.model_validate(t) if t is not None else None,
        )
        for survey, appt, p, t in res.all()
    ]
    return AdminSurveyPage(items=items, total=total, page=page, page_size=page_size)
