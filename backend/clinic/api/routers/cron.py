from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic import config
from clinic.db import get_db
from clinic.errors import Unauthenticated
from clinic.models import Appointment, AppointmentStatus
from clinic.services import email_templates
from clinic.services.dates import today_range
from clinic.services.email_service import EmailService, get_email_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])

REMINDER_STATUSES = (AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value)


def verify_cron_key(request: Request) -> None:
    """Bearer CRON_API_KEY; with no key configured every call is rejected."""
    expected = config.CRON_API_KEY
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if not expected or scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), expected.encode()):
        raise Unauthenticated("Invalid cron credentials")


@router.get("/send-reminders", dependencies=[Depends(verify_cron_key)])
async def send_reminders(
    db: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    start, end = today_range(config.CLINIC_TIMEZONE)
    res = await db.execute(
        select(Appointment)
        .where(
            Appointment.date >= start,
            Appointment.date < end,
            Appointment.status.in_(REMINDER_STATUSES),
        )
        .order_by(Appointment.date.asc())
    )
    appointments = res.scalars().all()

    sent = 0
    for a in appointments:
        if not a.patient.email:
            logger.warning("Appointment %s has no patient email; skipping reminder", a.id)
            continue
        subject, html = email_templates.appointment_reminder(
            a.id,
            a.patient.name or a.patient.email,
            a.date,
            ", ".join(s.name for s in a.services) or "Physiotherapy",
            a.therapist.name if a.therapist else "Assigned therapist",
            config.CLINIC_ADDRESS,
        )
        if await email_service.send(a.patient.email, subject, html):
            sent += 1

    logger.info("Reminder run: %d appointments, %d emails sent", len(appointments), sent)
    return {
        "message": "Reminders processed",
        "total_appointments": len(appointments),
        "emails_sent": sent,
    }
