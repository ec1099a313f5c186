from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.db import get_db
from clinic.errors import Forbidden, Unauthenticated, ValidationError
from clinic.models import (
    Appointment, AppointmentService, AppointmentStatus, Role, TherapistNote, TherapistService, User,
)
from clinic.schemas import (
    AppointmentCreate, AppointmentPublic, AppointmentSummary, AppointmentUpdate, CancelRequest,
    NoteCreate, NotePublic, RescheduleRequest, StatusChangeResponse,
)
from clinic.services import email_templates
from clinic.services.access_control import APPOINTMENT, MedicalAccessResolver, get_access_resolver
from clinic.services.actors import actor_from_user
from clinic.services.appointments import (
    apply_transition, has_conflict, is_future, load_appointment, load_services, pick_available_therapist,
)
from clinic.services.auth_service import get_current_user, get_optional_user, require_roles
from clinic.services.dates import as_utc, parse_date_param
from clinic.services.email_service import EmailService, get_email_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


async def ensure_appointment_access(
    resolver: MedicalAccessResolver,
    user: User,
    appointment_id: str,
    access_type: str = "view",
) -> None:
    decision = await resolver.check(actor_from_user(user), APPOINTMENT, appointment_id, access_type)
    if not decision.authorized:
        raise Forbidden("You do not have access to this appointment")


async def _find_or_create_patient(db: AsyncSession, name: str, email: str, phone: Optional[str]) -> User:
    res = await db.execute(select(User).where(User.email == email.lower()))
    user = res.scalar_one_or_none()
    if user is None:
        user = User(name=name, email=email.lower(), phone=phone, role=Role.PATIENT.value)
        db.add(user)
        await db.flush()
        return user
    if user.role != Role.PATIENT.value:
        raise ValidationError("This email belongs to a staff account")
    user.name = name or user.name
    user.phone = phone or user.phone
    return user


async def _resolve_patient(
    db: AsyncSession,
    body: AppointmentCreate,
    public: bool,
    current_user: Optional[User],
) -> User:
    if public:
        if body.patient is None:
            raise ValidationError("Patient information is required")
        return await _find_or_create_patient(db, body.patient.name, body.patient.email, body.patient.phone)

    if current_user is None:
        raise Unauthenticated()
    if current_user.role == Role.PATIENT.value:
        return current_user
    if body.patient_id:
        patient = await db.get(User, body.patient_id)
        if patient is None or patient.role != Role.PATIENT.value:
            raise ValidationError("Invalid patient")
        return patient
    if body.patient is not None:
        return await _find_or_create_patient(db, body.patient.name, body.patient.email, body.patient.phone)
    raise ValidationError("Patient is required")


async def _resolve_therapist(db: AsyncSession, body: AppointmentCreate, when, current_user: Optional[User]) -> User:
    therapist_id = body.therapist_id
    if therapist_id is None and current_user is not None and current_user.role == Role.THERAPIST.value:
        therapist_id = current_user.id

    if therapist_id is None:
        therapist = await pick_available_therapist(db, body.service_ids, when)
        if therapist is None:
            raise ValidationError("No therapist is available for the selected services at that time")
        return therapist

    therapist = await db.get(User, therapist_id)
    if therapist is None or therapist.role != Role.THERAPIST.value or not therapist.active:
        raise ValidationError("Invalid therapist")
    offered = await db.execute(
        select(TherapistService.service_id).where(
            TherapistService.therapist_id == therapist.id,
            TherapistService.service_id.in_(body.service_ids),
        )
    )
    if len(set(offered.scalars().all())) != len(set(body.service_ids)):
        raise ValidationError("The selected therapist does not offer all requested services")
    if await has_conflict(db, therapist.id, when):
        raise ValidationError("The selected therapist is not available at that time")
    return therapist


@router.get("", response_model=List[AppointmentPublic])
async def list_appointments(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    user_id: Optional[str] = Query(None),
    user_type: Optional[str] = Query(None, pattern="^(therapist|patient)$"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    q = select(Appointment)
    if current_user.role == Role.THERAPIST.value:
        q = q.where(Appointment.therapist_id == current_user.id)
    elif current_user.role == Role.PATIENT.value:
        q = q.where(Appointment.patient_id == current_user.id)
    elif user_id:
        column = Appointment.therapist_id if user_type == "therapist" else Appointment.patient_id
        q = q.where(column == user_id)

    try:
        start = parse_date_param(start_date, "start_date")
        end = parse_date_param(end_date, "end_date")
    except ValueError as e:
        raise ValidationError(str(e))
    if start:
        q = q.where(Appointment.date >= start)
    if end:
        q = q.where(Appointment.date <= end)
    if status_filter:
        q = q.where(Appointment.status == status_filter.value)

    res = await db.execute(q.order_by(Appointment.date.asc()))
    return res.scalars().all()


@router.post("", response_model=AppointmentPublic, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    body: AppointmentCreate,
    public: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    current_user: Optional[User] = Depends(get_optional_user),
    email_service: EmailService = Depends(get_email_service),
):
    """
    Books an appointment. ``?public=true`` lets anonymous visitors book with
    their contact details; a patient record is created for unknown emails.
    """
    if not public and current_user is None:
        raise Unauthenticated()

    when = as_utc(body.date)
    if not is_future(when):
        raise ValidationError("Appointment date must be in the future")

    try:
        services = await load_services(db, body.service_ids)
        patient = await _resolve_patient(db, body, public, current_user)
        therapist = await _resolve_therapist(db, body, when, current_user)

        appointment = Appointment(
            patient_id=patient.id,
            therapist_id=therapist.id,
            date=when,
            status=AppointmentStatus.SCHEDULED.value,
        )
        db.add(appointment)
        await db.flush()
        await db.execute(
            insert(AppointmentService),
            [{"appointment_id": appointment.id, "service_id": s.id} for s in services],
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    appointment = await load_appointment(db, appointment.id)
    subject, html = email_templates.appointment_confirmation(
        appointment.id, patient.name or patient.email, appointment.date,
        [s.name for s in services], therapist.name,
    )
    await email_service.send(patient.email, subject, html)
    logger.info("Appointment %s booked for patient %s with therapist %s", appointment.id, patient.id, therapist.id)
    return appointment


@router.get("/{appointment_id}", response_model=AppointmentPublic)
async def get_appointment(
    appointment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    resolver: MedicalAccessResolver = Depends(get_access_resolver),
):
    await ensure_appointment_access(resolver, current_user, appointment_id)
    appointment = await load_appointment(db, appointment_id)
    return appointment


@router.patch("/{appointment_id}", response_model=AppointmentPublic)
async def update_appointment(
    appointment_id: str,
    body: AppointmentUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN, Role.THERAPIST)),
    resolver: MedicalAccessResolver = Depends(get_access_resolver),
):
    await ensure_appointment_access(resolver, current_user, appointment_id, "update")
    appointment = await load_appointment(db, appointment_id)

    try:
        if body.therapist_id is not None and body.therapist_id != appointment.therapist_id:
            if current_user.role != Role.ADMIN.value:
                raise Forbidden("Only administrators can assign therapists")
            if appointment.therapist_id is not None:
                raise ValidationError("A therapist is already assigned to this appointment")
            therapist = await db.get(User, body.therapist_id)
            if therapist is None or therapist.role != Role.THERAPIST.value:
                raise ValidationError("Invalid therapist")
            appointment.therapist_id = therapist.id

        if body.status is not None:
            apply_transition(
                db, appointment, body.status, "STATUS_UPDATED",
                request=request,
                details={"updated_by": current_user.id, "role": current_user.role},
                cancel_reason=body.cancel_reason,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return await load_appointment(db, appointment_id)


@router.post("/{appointment_id}/complete", response_model=StatusChangeResponse)
async def complete_appointment(
    appointment_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN, Role.THERAPIST)),
    resolver: MedicalAccessResolver = Depends(get_access_resolver),
    email_service: EmailService = Depends(get_email_service),
):
    await ensure_appointment_access(resolver, current_user, appointment_id, "update")
    appointment = await load_appointment(db, appointment_id)

    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise ValidationError("A cancelled appointment cannot be completed")
    if appointment.status == AppointmentStatus.COMPLETED.value:
        return StatusChangeResponse(
            message="Appointment was already completed",
            appointment=AppointmentPublic.model_validate(appointment),
        )

    try:
        apply_transition(
            db, appointment, AppointmentStatus.COMPLETED, "COMPLETED",
            request=request,
            details={"completed_by": current_user.id, "role": current_user.role},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    appointment = await load_appointment(db, appointment_id)
    subject, html = email_templates.satisfaction_survey(
        appointment.id,
        appointment.patient.name or appointment.patient.email,
        appointment.date,
        [s.name for s in appointment.services],
        appointment.therapist.name if appointment.therapist else None,
    )
    email_sent = await email_service.send(appointment.patient.email, subject, html)
    return StatusChangeResponse(
        message="Appointment completed",
        appointment=AppointmentPublic.model_validate(appointment),
        email_sent=email_sent,
    )


@router.post("/{appointment_id}/confirm", response_model=StatusChangeResponse)
async def confirm_appointment(appointment_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    """Email-link confirmation; no session required."""
    appointment = await load_appointment(db, appointment_id)
    if appointment.status in (AppointmentStatus.CANCELLED.value, AppointmentStatus.COMPLETED.value):
        raise ValidationError("This appointment can no longer be confirmed")

    try:
        apply_transition(
            db, appointment, AppointmentStatus.CONFIRMED, "CONFIRMED",
            request=request,
            details={"method": "email_link", "source": "appointment_reminder_email"},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    appointment = await load_appointment(db, appointment_id)
    return StatusChangeResponse(message="Appointment confirmed", appointment=AppointmentPublic.model_validate(appointment))


@router.post("/{appointment_id}/reschedule", response_model=StatusChangeResponse)
async def reschedule_appointment(
    appointment_id: str,
    body: RescheduleRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    resolver: MedicalAccessResolver = Depends(get_access_resolver),
):
    await ensure_appointment_access(resolver, current_user, appointment_id, "update")
    appointment = await load_appointment(db, appointment_id)

    new_date = as_utc(body.new_date)
    if not is_future(new_date):
        raise ValidationError("The new date must be in the future")
    if appointment.therapist_id and await has_conflict(db, appointment.therapist_id, new_date, exclude_id=appointment.id):
        raise ValidationError("The therapist is not available at the new time")

    try:
        apply_transition(
            db, appointment, AppointmentStatus.RESCHEDULED, "RESCHEDULED",
            request=request,
            new_date=new_date,
            details={"method": "session", "reason": body.reason, "requested_by": current_user.id},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    appointment = await load_appointment(db, appointment_id)
    return StatusChangeResponse(message="Appointment rescheduled", appointment=AppointmentPublic.model_validate(appointment))


@router.post("/{appointment_id}/cancel", response_model=StatusChangeResponse)
async def cancel_appointment(
    appointment_id: str,
    body: CancelRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    resolver: MedicalAccessResolver = Depends(get_access_resolver),
):
    await ensure_appointment_access(resolver, current_user, appointment_id, "update")
    appointment = await load_appointment(db, appointment_id)

    try:
        apply_transition(
            db, appointment, AppointmentStatus.CANCELLED, "CANCELLED",
            request=request,
            details={"cancelled_by": current_user.id, "role": current_user.role},
            cancel_reason=body.reason,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    appointment = await load_appointment(db, appointment_id)
    return StatusChangeResponse(message="Appointment cancelled", appointment=AppointmentPublic.model_validate(appointment))


@router.get("/{appointment_id}/public", response_model=AppointmentSummary)
async def get_public_appointment(appointment_id: str, db: AsyncSession = Depends(get_db)):
    appointment = await load_appointment(db, appointment_id)
    return AppointmentSummary(
        id=appointment.id,
        date=appointment.date,
        status=appointment.status,
        therapist_name=appointment.therapist.name if appointment.therapist else None,
        services=[s.name for s in appointment.services],
    )


@router.get("/{appointment_id}/notes", response_model=List[NotePublic])
async def list_notes(
    appointment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN, Role.THERAPIST)),
    resolver: MedicalAccessResolver = Depends(get_access_resolver),
):
    await ensure_appointment_access(resolver, current_user, appointment_id)
    await load_appointment(db, appointment_id)

    res = await db.execute(
        select(TherapistNote)
        .where(TherapistNote.appointment_id == appointment_id)
        .order_by(TherapistNote.created_at.desc())
    )
    return res.scalars().all()


@router.post("/{appointment_id}/notes", response_model=NotePublic, status_code=status.HTTP_201_CREATED)
async def create_note(
    appointment_id: str,
    body: NoteCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.THERAPIST)),
    resolver: MedicalAccessResolver = Depends(get_access_resolver),
):
    await ensure_appointment_access(resolver, current_user, appointment_id, "create")
    appointment = await load_appointment(db, appointment_id)
    if appointment.therapist_id != current_user.id:
        raise Forbidden("Only the assigned therapist can add notes")

    note = TherapistNote(appointment_id=appointment_id, therapist_id=current_user.id, content=body.content)
    db.add(note)
    await db.commit()
    res = await db.execute(select(TherapistNote).where(TherapistNote.id == note.id))
    return res.scalar_one()
