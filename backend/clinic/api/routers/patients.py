from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.db import get_db
from clinic.errors import Forbidden, NotFound
from clinic.models import Appointment, AppointmentService, AppointmentStatus, Role, TherapistNote, User
from clinic.schemas import (
    AppointmentPublic, HistoryEntry, HistoryStats, NotePublic, PatientHistory, PatientPage, UserBrief, UserPublic,
)
from clinic.services.access_control import PATIENT_HISTORY, MedicalAccessResolver, get_access_resolver
from clinic.services.actors import actor_from_user
from clinic.services.auth_service import get_current_user, require_roles
from clinic.services.dates import utcnow

router = APIRouter(prefix="/api/patients", tags=["patients"])


@router.get("", response_model=PatientPage)
async def list_patients(
    search: str = Query("", max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN, Role.THERAPIST)),
):
    conditions = [User.role == Role.PATIENT.value]
    if search:
        like = f"%{search.lower()}%"
        conditions.append(or_(
            func.lower(User.name).like(like),
            func.lower(User.email).like(like),
            User.phone.like(f"%{search}%"),
        ))
    if current_user.role == Role.THERAPIST.value:
        # therapists only see patients they have treated or will treat
        shared = select(Appointment.patient_id).where(Appointment.therapist_id == current_user.id)
        conditions.append(User.id.in_(shared))

    total = (await db.execute(select(func.count(User.id)).where(*conditions))).scalar() or 0
    res = await db.execute(
        select(User)
        .where(*conditions)
        .order_by(User.name)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [UserPublic.model_validate(u) for u in res.scalars().all()]
    return PatientPage(items=items, total=total, page=page, page_size=page_size)


@router.get("/{patient_id}/history", response_model=PatientHistory)
async def patient_history(
    patient_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    resolver: MedicalAccessResolver = Depends(get_access_resolver),
):
    decision = await resolver.check(actor_from_user(current_user), PATIENT_HISTORY, patient_id, "view")
    if not decision.authorized:
        raise Forbidden("You do not have access to this patient's history")

    patient = await db.get(User, patient_id)
    if patient is None or patient.role != Role.PATIENT.value:
        raise NotFound("Patient not found")

    res = await db.execute(
        select(Appointment)
        .where(
            Appointment.patient_id == patient_id,
            Appointment.status == AppointmentStatus.COMPLETED.value,
            Appointment.date <= utcnow(),
        )
        .order_by(Appointment.date.desc())
    )
    appointments = list(res.scalars().all())

    notes_by_appointment = {a.id: [] for a in appointments}
    if appointments:
        notes = await db.execute(
            select(TherapistNote)
            .where(TherapistNote.appointment_id.in_(list(notes_by_appointment)))
            .order_by(TherapistNote.created_at.asc())
        )
        for note in notes.scalars().all():
            notes_by_appointment[note.appointment_id].append(NotePublic.model_validate(note))

    services_received = 0
    if appointments:
        services_received = (await db.execute(
            select(func.count(AppointmentService.id)).where(
                AppointmentService.appointment_id.in_([a.id for a in appointments])
            )
        )).scalar() or 0

    stats = HistoryStats(
        total_appointments=len(appointments),
        services_received=services_received,
        first_visit=appointments[-1].date if appointments else None,
        last_visit=appointments[0].date if appointments else None,
    )
    return PatientHistory(
        patient=UserBrief.model_validate(patient),
        appointments=[
            HistoryEntry(appointment=AppointmentPublic.model_validate(a), notes=notes_by_appointment[a.id])
            for a in appointments
        ],
        stats=stats,
    )
