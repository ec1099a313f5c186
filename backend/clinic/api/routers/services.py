from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.db import get_db
from clinic.errors import NotFound
from clinic.models import AppointmentService, Role, Service, User
from clinic.schemas import ServiceCreate, ServicePublic, ServiceUpdate
from clinic.services.auth_service import get_optional_user, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/services", tags=["services"])


async def _get_service(db: AsyncSession, service_id: str) -> Service:
    service = await db.get(Service, service_id)
    if service is None:
        raise NotFound("Service not found")
    return service


@router.get("", response_model=List[ServicePublic])
async def list_services(
    db: AsyncSession = Depends(get_db),
    current_user: Optional[User] = Depends(get_optional_user),
):
    """Public catalogue; inactive services are only listed for admins."""
    q = select(Service).order_by(Service.name)
    if current_user is None or current_user.role != Role.ADMIN.value:
        q = q.where(Service.is_active.is_(True))
    res = await db.execute(q)
    return res.scalars().all()


@router.post("", response_model=ServicePublic, status_code=status.HTTP_201_CREATED)
async def create_service(
    body: ServiceCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    service = Service(**body.model_dump())
    db.add(service)
    await db.commit()
    logger.info("Service %s created by %s", service.id, current_user.id)
    return service


@router.get("/{service_id}", response_model=ServicePublic)
async def get_service(service_id: str, db: AsyncSession = Depends(get_db)):
    return await _get_service(db, service_id)


@router.patch("/{service_id}", response_model=ServicePublic)
async def update_service(
    service_id: str,
    body: ServiceUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    service = await _get_service(db, service_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(service, field, value)
    await db.commit()
    return service


@router.put("/{service_id}/status", response_model=ServicePublic)
async def toggle_service_status(
    service_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    service = await _get_service(db, service_id)
    service.is_active = not service.is_active
    await db.commit()
    return service


@router.delete("/{service_id}")
async def delete_service(
    service_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    """Deletes the service, or only deactivates it if appointments reference it."""
    service = await _get_service(db, service_id)
    in_use = (await db.execute(
        select(exists().where(AppointmentService.service_id == service_id))
    )).scalar()

    if in_use:
        service.is_active = False
        await db.commit()
        return {"message": "Service is in use and was deactivated", "deleted": False}

    await db.delete(service)
    await db.commit()
    return {"message": "Service deleted", "deleted": True}
