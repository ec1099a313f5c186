"""
Report aggregation. Everything here works on plain rows already fetched by
the routers, so the arithmetic is testable without a database.
"""
from __future__ import annotations

import csv
import io
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence

from clinic.models import AppointmentStatus
from clinic.services.dates import as_utc, business_days, week_start

UNSPECIFIED_REASON = "Unspecified"
WORKDAY_MINUTES = 8 * 60


def pct(part: float, total: float, digits: int = 2) -> float:
    if not total:
        return 0.0
    return round(part / total * 100, digits)


def period_key(value: datetime, group_by: str) -> str:
    value = as_utc(value)
    if group_by == "day":
        return value.strftime("%Y-%m-%d")
    if group_by == "week":
        return week_start(value).strftime("%Y-%m-%d")
    if group_by == "month":
        return value.strftime("%Y-%m")
    raise ValueError(f"Unsupported grouping: {group_by}")


@dataclass
class AppointmentRow:
    date: datetime
    status: str
    cancel_reason: Optional[str] = None


def cancellation_rates(rows: Iterable[AppointmentRow], group_by: str = "month") -> dict:
    totals: Dict[str, int] = defaultdict(int)
    canceled: Dict[str, int] = defaultdict(int)
    reasons: Counter = Counter()
    total_all = 0
    canceled_all = 0

    for row in rows:
        key = period_key(row.date, group_by)
        totals[key] += 1
        total_all += 1
        if row.status == AppointmentStatus.CANCELLED.value:
            canceled[key] += 1
            canceled_all += 1
            reason = (row.cancel_reason or "").strip() or UNSPECIFIED_REASON
            reasons[reason] += 1

    periods = [
        {
            "period": key,
            "total": totals[key],
            "canceled": canceled[key],
            "rate": pct(canceled[key], totals[key]),
        }
        for key in sorted(totals)
    ]
    cancel_reasons = [
        {"reason": reason, "count": count, "percentage": pct(count, canceled_all)}
        for reason, count in sorted(reasons.items(), key=lambda item: (-item[1], item[0]))
    ]
    return {
        "periods": periods,
        "cancel_reasons": cancel_reasons,
        "overall": {
            "total": total_all,
            "canceled": canceled_all,
            "rate": pct(canceled_all, total_all),
        },
    }


@dataclass
class TherapistRow:
    id: str
    name: Optional[str]


@dataclass
class CompletedVisit:
    therapist_id: str
    duration_minutes: int


def therapist_occupancy(
    therapists: Sequence[TherapistRow],
    visits: Iterable[CompletedVisit],
    start: date,
    end: date,
) -> dict:
    """Booked minutes of completed visits over an 8h Monday-Friday capacity."""
    minutes: Dict[str, int] = defaultdict(int)
    counts: Dict[str, int] = defaultdict(int)
    for visit in visits:
        minutes[visit.therapist_id] += visit.duration_minutes
        counts[visit.therapist_id] += 1

    days = business_days(start, end)
    capacity = days * WORKDAY_MINUTES

    result = [
        {
            "id": t.id,
            "name": t.name,
            "completed_appointments": counts[t.id],
            "booked_minutes": minutes[t.id],
            "total_hours": round(minutes[t.id] / 60, 1),
            "available_minutes": capacity,
            "occupancy_rate": pct(minutes[t.id], capacity),
        }
        for t in therapists
    ]
    result.sort(key=lambda item: item["occupancy_rate"], reverse=True)
    return {"business_days": days, "therapists": result}


@dataclass
class ReviewRow:
    satisfaction: int
    appointment_date: datetime
    therapist_id: Optional[str]


def satisfaction_overall(reviews: Sequence[ReviewRow]) -> dict:
    if not reviews:
        return {"average": 0, "distribution": [0, 0, 0, 0, 0]}
    distribution = [0, 0, 0, 0, 0]
    for review in reviews:
        rating = max(1, min(5, review.satisfaction))
        distribution[rating - 1] += 1
    average = sum(r.satisfaction for r in reviews) / len(reviews)
    return {
        "average": round(average, 2),
        "distribution": [pct(count, len(reviews)) for count in distribution],
    }


def satisfaction_by_therapist(
    reviews: Sequence[ReviewRow],
    therapists: Sequence[TherapistRow],
    completed_counts: Dict[str, int],
) -> List[dict]:
    ratings: Dict[str, List[int]] = defaultdict(list)
    for review in reviews:
        if review.therapist_id:
            ratings[review.therapist_id].append(review.satisfaction)

    result = []
    for t in therapists:
        reviewed = len(ratings[t.id])
        completed = completed_counts.get(t.id, 0)
        avg = sum(ratings[t.id]) / reviewed if reviewed else 0
        result.append({
            "id": t.id,
            "name": t.name,
            "completed_appointments": completed,
            "reviewed_appointments": reviewed,
            "review_rate": pct(reviewed, completed),
            "satisfaction_rate": round(avg, 2),
        })
    result.sort(key=lambda item: item["satisfaction_rate"], reverse=True)
    return result


def satisfaction_trend(reviews: Sequence[ReviewRow]) -> List[dict]:
    by_month: Dict[str, List[int]] = defaultdict(list)
    for review in reviews:
        by_month[period_key(review.appointment_date, "month")].append(review.satisfaction)
    return [
        {
            "month": month,
            "average": round(sum(values) / len(values), 2),
            "count": len(values),
        }
        for month, values in sorted(by_month.items())
    ]


@dataclass
class SurveyRow:
    satisfaction: int
    created_at: datetime


def satisfaction_analytics(surveys: Sequence[SurveyRow]) -> dict:
    """Rating counts, mean and per-day means of surveys submitted in a window.

    Days without surveys are left out of ``daily_averages``.
    """
    distribution = [0, 0, 0, 0, 0]
    by_day: Dict[str, List[int]] = defaultdict(list)
    for survey in surveys:
        if 1 <= survey.satisfaction <= 5:
            distribution[survey.satisfaction - 1] += 1
        by_day[period_key(survey.created_at, "day")].append(survey.satisfaction)

    total = sum(s.satisfaction for s in surveys)
    return {
        "total_count": len(surveys),
        "average_rating": round(total / len(surveys), 2) if surveys else 0,
        "rating_distribution": distribution,
        "daily_averages": [
            {"date": day, "average": round(sum(values) / len(values), 2), "count": len(values)}
            for day, values in sorted(by_day.items())
        ],
    }


SURVEY_CSV_COLUMNS = [
    "survey_id", "survey_date", "satisfaction", "comments",
    "appointment_id", "appointment_date",
    "patient_id", "patient_name", "patient_email",
    "therapist_id", "therapist_name", "therapist_email",
]


def surveys_csv(rows: Iterable[dict]) -> str:
    """Every field quoted, embedded quotes doubled."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\r\n")
    writer.writerow(SURVEY_CSV_COLUMNS)
    for row in rows:
        writer.writerow(["" if row.get(col) is None else row.get(col) for col in SURVEY_CSV_COLUMNS])
    return buffer.getvalue()


def export_filename(start: datetime, end: datetime) -> str:
    return f"satisfaction_surveys_{start.strftime('%Y%m%d')}_{end.strftime('%Y%m%d')}.csv"
