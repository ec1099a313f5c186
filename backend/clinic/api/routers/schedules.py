from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.db import get_db
from clinic.errors import Forbidden, NotFound, ValidationError
from clinic.models import DayOfWeek, Role, Schedule, Service, User
from clinic.schemas import ScheduleCreate, SchedulePublic, ScheduleUpdate
from clinic.services.auth_service import get_current_user, require_roles

router = APIRouter(prefix="/api/schedules", tags=["schedules"])

_DAY_ORDER = {day.value: i for i, day in enumerate(DayOfWeek)}


def to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def overlaps(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    return to_minutes(start_a) < to_minutes(end_b) and to_minutes(end_a) > to_minutes(start_b)


async def _get_therapist(db: AsyncSession, therapist_id: str) -> User:
    therapist = await db.get(User, therapist_id)
    if therapist is None or therapist.role != Role.THERAPIST.value:
        raise NotFound("Therapist not found")
    return therapist


async def _ensure_no_overlap(
    db: AsyncSession,
    therapist_id: str,
    day_of_week: str,
    start_time: str,
    end_time: str,
    exclude_id: Optional[str] = None,
) -> None:
    q = select(Schedule).where(
        Schedule.therapist_id == therapist_id,
        Schedule.day_of_week == day_of_week,
        Schedule.is_active.is_(True),
    )
    if exclude_id:
        q = q.where(Schedule.id != exclude_id)
    for other in (await db.execute(q)).scalars().all():
        if overlaps(start_time, end_time, other.start_time, other.end_time):
            raise ValidationError(
                f"Overlaps with an existing schedule ({other.start_time}-{other.end_time})"
            )


@router.get("", response_model=List[SchedulePublic])
async def list_schedules(
    therapist_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    q = select(Schedule)
    if current_user.role == Role.THERAPIST.value:
        q = q.where(Schedule.therapist_id == current_user.id)
    elif therapist_id:
        q = q.where(Schedule.therapist_id == therapist_id)
    schedules = list((await db.execute(q)).scalars().all())
    schedules.sort(key=lambda s: (_DAY_ORDER[s.day_of_week], s.start_time))
    return schedules


@router.post("", response_model=SchedulePublic, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    body: ScheduleCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    if to_minutes(body.end_time) <= to_minutes(body.start_time):
        raise ValidationError("end_time must be later than start_time")

    await _get_therapist(db, body.therapist_id)
    if await db.get(Service, body.service_id) is None:
        raise ValidationError("The selected service does not exist")

    await _ensure_no_overlap(db, body.therapist_id, body.day_of_week.value, body.start_time, body.end_time)

    schedule = Schedule(
        therapist_id=body.therapist_id,
        service_id=body.service_id,
        day_of_week=body.day_of_week.value,
        start_time=body.start_time,
        end_time=body.end_time,
    )
    db.add(schedule)
    await db.commit()
    res = await db.execute(select(Schedule).where(Schedule.id == schedule.id))
    return res.scalar_one()


@router.get("/{schedule_id}", response_model=SchedulePublic)
async def get_schedule(
    schedule_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    schedule = await db.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFound("Schedule not found")
    if current_user.role == Role.THERAPIST.value and schedule.therapist_id != current_user.id:
        raise Forbidden()
    return schedule


@router.patch("/{schedule_id}", response_model=SchedulePublic)
async def update_schedule(
    schedule_id: str,
    body: ScheduleUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    schedule = await db.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFound("Schedule not found")

    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if "day_of_week" in changes:
        changes["day_of_week"] = changes["day_of_week"].value
    start_time = changes.get("start_time", schedule.start_time)
    end_time = changes.get("end_time", schedule.end_time)
    day_of_week = changes.get("day_of_week", schedule.day_of_week)

    if to_minutes(end_time) <= to_minutes(start_time):
        raise ValidationError("end_time must be later than start_time")
    if "service_id" in changes and await db.get(Service, changes["service_id"]) is None:
        raise ValidationError("The selected service does not exist")
    if changes.keys() & {"day_of_week", "start_time", "end_time"}:
        await _ensure_no_overlap(db, schedule.therapist_id, day_of_week, start_time, end_time, exclude_id=schedule.id)

    for field, value in changes.items():
        setattr(schedule, field, value)
    await db.commit()
    res = await db.execute(
        select(Schedule).where(Schedule.id == schedule.id).execution_options(populate_existing=True)
    )
    return res.scalar_one()


@router.delete("/{schedule_id}")
async def delete_schedule(
    schedule_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    schedule = await db.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFound("Schedule not found")
    await db.delete(schedule)
    await db.commit()
    return {"message": "Schedule deleted"}


@router.delete("")
async def delete_therapist_schedules(
    therapist_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    await _get_therapist(db, therapist_id)
    res = await db.execute(delete(Schedule).where(Schedule.therapist_id == therapist_id))
    await db.commit()
    return {"message": "Schedules deleted", "count": res.rowcount}
