from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List

from clinic.models import Appointment
from clinic.services.dates import as_utc

UNASSIGNED = "unassigned"


def _appointment_entry(a: Appointment) -> dict:
    return {
        "id": a.id,
        "date": as_utc(a.date),
        "status": a.status,
        "patient": {
            "id": a.patient.id,
            "name": a.patient.name,
            "email": a.patient.email,
            "phone": a.patient.phone,
        },
        "services": [{"id": s.id, "name": s.name, "duration": s.duration} for s in a.services],
    }


def group_week(appointments: Iterable[Appointment], week_start: datetime) -> List[dict]:
    """Seven day buckets from ``week_start`` (a Monday), each grouping appointments by therapist."""
    days = []
    for offset in range(7):
        day = week_start + timedelta(days=offset)
        days.append({
            "date": day.strftime("%Y-%m-%d"),
            "day_name": day.strftime("%A"),
            "day_number": day.day,
            "month": day.strftime("%B"),
            "therapists": {},
        })

    for a in appointments:
        index = (as_utc(a.date) - week_start).days
        if index < 0 or index > 6:
            continue
        key = a.therapist_id or UNASSIGNED
        bucket = days[index]["therapists"].setdefault(key, {
            "id": key,
            "name": a.therapist.name if a.therapist else "Unassigned",
            "appointments": [],
        })
        bucket["appointments"].append(_appointment_entry(a))

    for day in days:
        day["therapists"] = list(day["therapists"].values())
    return days
