from __future__ import annotations

import logging
import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from clinic.config import ACTIVATION_TOKEN_EXPIRE_HOURS
from clinic.db import get_db
from clinic.errors import Conflict, NotFound, ValidationError
from clinic.models import Role, Service, TherapistService, User
from clinic.schemas import ServiceBrief, TherapistCreate, TherapistPublic, TherapistServiceLink
from clinic.services import email_templates
from clinic.services.auth_service import create_activation_token, hash_password, require_roles
from clinic.services.email_service import EmailService, get_email_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/therapists", tags=["therapists"])
links_router = APIRouter(prefix="/api/therapist-services", tags=["therapists"])


def to_public(therapist: User) -> TherapistPublic:
    return TherapistPublic(
        id=therapist.id,
        name=therapist.name,
        email=therapist.email,
        phone=therapist.phone,
        active=therapist.active,
        services=[ServiceBrief.model_validate(link.service) for link in therapist.therapist_services],
    )


def _therapist_query():
    return (
        select(User)
        .where(User.role == Role.THERAPIST.value)
        .options(selectinload(User.therapist_services))
    )


async def _get_therapist(db: AsyncSession, therapist_id: str) -> User:
    res = await db.execute(_therapist_query().where(User.id == therapist_id).execution_options(populate_existing=True))
    therapist = res.scalar_one_or_none()
    if therapist is None:
        raise NotFound("Therapist not found")
    return therapist


@router.get("", response_model=List[TherapistPublic])
async def list_therapists(
    service_id: Optional[str] = Query(None),
    name: Optional[str] = Query(None),
    phone: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    q = _therapist_query()
    if not include_inactive:
        q = q.where(User.active.is_(True))
    if service_id:
        q = q.where(User.id.in_(select(TherapistService.therapist_id).where(TherapistService.service_id == service_id)))
    if name:
        q = q.where(User.name.ilike(f"%{name}%"))
    if phone:
        q = q.where(User.phone.like(f"%{phone}%"))
    res = await db.execute(q.order_by(User.name))
    return [to_public(t) for t in res.scalars().all()]


@router.post("", response_model=TherapistPublic, status_code=status.HTTP_201_CREATED)
async def create_therapist(
    body: TherapistCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
    email_service: EmailService = Depends(get_email_service),
):
    """
    Creates a therapist with a random password and mails an activation link
    so they can choose their own.
    """
    email = body.email.lower()
    existing = (await db.execute(select(User.id).where(User.email == email))).scalar_one_or_none()
    if existing:
        raise Conflict("A user with this email already exists")

    service_ids = list(dict.fromkeys(body.service_ids))
    if service_ids:
        found = (await db.execute(select(Service.id).where(Service.id.in_(service_ids)))).scalars().all()
        if len(found) != len(service_ids):
            raise ValidationError("One or more services do not exist")

    try:
        therapist = User(
            name=body.name,
            email=email,
            phone=body.phone,
            role=Role.THERAPIST.value,
            password_hash=hash_password(secrets.token_urlsafe(16)),
        )
        db.add(therapist)
        await db.flush()
        for service_id in service_ids:
            db.add(TherapistService(therapist_id=therapist.id, service_id=service_id))
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    therapist = await _get_therapist(db, therapist.id)
    subject, html = email_templates.therapist_activation(
        therapist.name or therapist.email, create_activation_token(therapist), ACTIVATION_TOKEN_EXPIRE_HOURS
    )
    await email_service.send(therapist.email, subject, html)
    logger.info("Therapist %s created by %s", therapist.id, current_user.id)
    return to_public(therapist)


@router.get("/{therapist_id}", response_model=TherapistPublic)
async def get_therapist(therapist_id: str, db: AsyncSession = Depends(get_db)):
    return to_public(await _get_therapist(db, therapist_id))


@router.patch("/{therapist_id}/deactivate", response_model=TherapistPublic)
async def toggle_therapist_active(
    therapist_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    therapist = await _get_therapist(db, therapist_id)
    therapist.active = not therapist.active
    await db.commit()
    return to_public(therapist)


@links_router.get("", response_model=List[TherapistServiceLink])
async def list_therapist_services(
    therapist_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    q = (
        select(TherapistService, User.name)
        .join(User, User.id == TherapistService.therapist_id)
        .where(User.active.is_(True))
    )
    if therapist_id:
        q = q.where(TherapistService.therapist_id == therapist_id)
    res = await db.execute(q)
    return [
        TherapistServiceLink(
            therapist_id=link.therapist_id,
            therapist_name=therapist_name,
            service_id=link.service_id,
            service_name=link.service.name,
        )
        for link, therapist_name in res.all()
    ]
