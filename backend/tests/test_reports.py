from datetime import date, datetime, timedelta, timezone

from clinic.api.routers.reports import quarter_before, six_months_before
from clinic.models import AppointmentStatus
from clinic.services import reports
from clinic.services.dates import business_days

from conftest import auth_headers


def at(y, m, d, h=10):
    return datetime(y, m, d, h, tzinfo=timezone.utc)


def test_cancellation_rate_over_a_month():
    rows = [reports.AppointmentRow(at(2026, 3, day), "COMPLETED") for day in range(2, 9)]
    rows += [
        reports.AppointmentRow(at(2026, 3, 10), "CANCELLED", "Sick"),
        reports.AppointmentRow(at(2026, 3, 11), "CANCELLED", "Sick"),
        reports.AppointmentRow(at(2026, 3, 12), "CANCELLED", None),
    ]
    result = reports.cancellation_rates(rows, "month")

    assert result["periods"] == [{"period": "2026-03", "total": 10, "canceled": 3, "rate": 30.0}]
    assert result["overall"] == {"total": 10, "canceled": 3, "rate": 30.0}
    assert result["cancel_reasons"] == [
        {"reason": "Sick", "count": 2, "percentage": 66.67},
        {"reason": "Unspecified", "count": 1, "percentage": 33.33},
    ]


def test_week_periods_start_on_monday():
    # 2026-03-04 is a Wednesday, 2026-03-09 the next Monday
    rows = [reports.AppointmentRow(at(2026, 3, 4), "SCHEDULED"), reports.AppointmentRow(at(2026, 3, 9), "SCHEDULED")]
    periods = reports.cancellation_rates(rows, "week")["periods"]
    assert [p["period"] for p in periods] == ["2026-03-02", "2026-03-09"]


def test_empty_range_has_zero_rates():
    result = reports.cancellation_rates([], "day")
    assert result["overall"] == {"total": 0, "canceled": 0, "rate": 0.0}
    assert result["periods"] == []


def test_business_days_skip_weekends():
    assert business_days(date(2026, 3, 2), date(2026, 3, 8)) == 5
    assert business_days(date(2026, 3, 7), date(2026, 3, 8)) == 0
    assert business_days(date(2026, 3, 9), date(2026, 3, 2)) == 0


def test_occupancy_uses_eight_hour_days():
    therapists = [reports.TherapistRow("T1", "One"), reports.TherapistRow("T2", "Two")]
    visits = [reports.CompletedVisit("T1", 60), reports.CompletedVisit("T1", 60)]
    result = reports.therapist_occupancy(therapists, visits, date(2026, 3, 2), date(2026, 3, 6))

    assert result["business_days"] == 5
    top, idle = result["therapists"]
    assert top["id"] == "T1"
    assert top["available_minutes"] == 2400
    assert top["occupancy_rate"] == 5.0
    assert top["total_hours"] == 2.0
    assert idle["occupancy_rate"] == 0.0


def test_satisfaction_aggregates():
    reviews = [
        reports.ReviewRow(5, at(2026, 1, 5), "T1"),
        reports.ReviewRow(3, at(2026, 1, 20), "T1"),
        reports.ReviewRow(4, at(2026, 2, 2), None),
    ]
    overall = reports.satisfaction_overall(reviews)
    assert overall["average"] == 4.0
    assert overall["distribution"] == [0.0, 0.0, 33.33, 33.33, 33.33]

    (t1,) = reports.satisfaction_by_therapist(reviews, [reports.TherapistRow("T1", "One")], {"T1": 4})
    assert t1["reviewed_appointments"] == 2
    assert t1["review_rate"] == 50.0
    assert t1["satisfaction_rate"] == 4.0

    trend = reports.satisfaction_trend(reviews)
    assert trend == [
        {"month": "2026-01", "average": 4.0, "count": 2},
        {"month": "2026-02", "average": 4.0, "count": 1},
    ]


def test_csv_quotes_every_field():
    row = {"survey_id": "S1", "satisfaction": 5, "comments": 'Great "hands"', "therapist_name": None}
    text = reports.surveys_csv([row])
    header, line, _ = text.split("\r\n")
    assert header.startswith('"survey_id","survey_date","satisfaction"')
    assert line.startswith('"S1","","5","Great ""hands""",')
    assert reports.export_filename(at(2026, 1, 1), at(2026, 3, 31)) == "satisfaction_surveys_20260101_20260331.csv"


async def test_cancellation_endpoint_groups_by_week(client, seed, clinic):
    await seed.appointment(clinic["p1"], clinic["t1"], date=at(2026, 3, 3))
    await seed.appointment(clinic["p1"], clinic["t1"], date=at(2026, 3, 4), status=AppointmentStatus.CANCELLED,
                           cancel_reason="Weather")
    await seed.appointment(clinic["p2"], clinic["t1"], date=at(2026, 3, 10))
    await seed.appointment(clinic["p2"], clinic["t1"], date=at(2026, 4, 10))

    response = await client.get(
        "/api/reports/cancellation-rates",
        params={"start_date": "2026-03-01", "end_date": "2026-03-31", "group_by": "week"},
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["overall"] == {"total": 3, "canceled": 1, "rate": 33.33}
    assert body["periods"][0] == {"period": "2026-03-02", "total": 2, "canceled": 1, "rate": 50.0}
    assert body["cancel_reasons"][0]["reason"] == "Weather"


async def test_reports_are_admin_only(client, clinic):
    response = await client.get("/api/reports/cancellation-rates", headers=auth_headers(clinic["t1"]))
    assert response.status_code == 403


async def test_bad_range_is_rejected(client, clinic):
    response = await client.get(
        "/api/reports/therapist-occupancy",
        params={"start_date": "2026-03-10", "end_date": "2026-03-01"},
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 400


async def test_occupancy_endpoint(client, seed, clinic):
    await seed.appointment(clinic["p1"], clinic["t1"], [clinic["massage"]], date=at(2026, 3, 3),
                           status=AppointmentStatus.COMPLETED)
    response = await client.get(
        "/api/reports/therapist-occupancy",
        params={"start_date": "2026-03-02", "end_date": "2026-03-06"},
        headers=auth_headers(clinic["admin"]),
    )
    body = response.json()
    assert body["business_days"] == 5
    assert body["therapists"][0]["id"] == clinic["t1"].id
    assert body["therapists"][0]["booked_minutes"] == 60


async def test_satisfaction_report_and_export(client, seed, clinic):
    appt = await seed.appointment(
        clinic["p1"], clinic["t1"], [clinic["massage"]],
        date=datetime.now(timezone.utc) - timedelta(days=1),
        status=AppointmentStatus.COMPLETED,
    )
    await client.post(f"/api/survey/{appt.id}", json={"satisfaction": 4, "comments": 'Said "thanks"'})
    headers = auth_headers(clinic["admin"])

    report = (await client.get("/api/reports/satisfaction", headers=headers)).json()
    assert report["reviews_count"] == 1
    assert report["overall"]["average"] == 4.0
    assert report["therapists"][0]["review_rate"] == 100.0

    export = await client.get("/api/reports/satisfaction/export", headers=headers)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "satisfaction_surveys_" in export.headers["content-disposition"]
    assert '"Said ""thanks"""' in export.text


async def test_export_with_no_surveys_is_404(client, clinic):
    response = await client.get("/api/reports/satisfaction/export", headers=auth_headers(clinic["admin"]))
    assert response.status_code == 404


def test_default_windows_follow_calendar_months():
    assert six_months_before(at(2026, 8, 31, 15)) == at(2026, 2, 28, 0)
    assert quarter_before(at(2026, 5, 31, 15)) == at(2026, 2, 1, 0)


def test_analytics_counts_ratings_and_daily_means():
    surveys = [
        reports.SurveyRow(5, at(2026, 3, 2, 9)),
        reports.SurveyRow(4, at(2026, 3, 2, 17)),
        reports.SurveyRow(2, at(2026, 3, 5)),
    ]
    result = reports.satisfaction_analytics(surveys)
    assert result["total_count"] == 3
    assert result["average_rating"] == 3.67
    assert result["rating_distribution"] == [0, 1, 0, 1, 1]
    assert result["daily_averages"] == [
        {"date": "2026-03-02", "average": 4.5, "count": 2},
        {"date": "2026-03-05", "average": 2.0, "count": 1},
    ]
    assert reports.satisfaction_analytics([])["average_rating"] == 0


async def test_analytics_endpoint_scopes_therapists_to_their_surveys(client, seed, clinic):
    yesterday = datetime.now(timezone.utc) - timedelta(days=1)
    mine = await seed.appointment(clinic["p1"], clinic["t1"], date=yesterday, status=AppointmentStatus.COMPLETED)
    other = await seed.appointment(clinic["p2"], clinic["t2"], date=yesterday, status=AppointmentStatus.COMPLETED)
    await client.post(f"/api/survey/{mine.id}", json={"satisfaction": 5})
    await client.post(f"/api/survey/{other.id}", json={"satisfaction": 1})

    therapist = await client.get("/api/reports/satisfaction/analytics", params={"days": 7},
                                 headers=auth_headers(clinic["t1"]))
    assert therapist.status_code == 200
    assert therapist.json()["total_count"] == 1
    assert therapist.json()["average_rating"] == 5.0

    admin = await client.get("/api/reports/satisfaction/analytics", params={"therapist_id": "all"},
                             headers=auth_headers(clinic["admin"]))
    assert admin.json()["total_count"] == 2
    assert admin.json()["rating_distribution"] == [1, 0, 0, 0, 1]

    filtered = await client.get("/api/reports/satisfaction/analytics", params={"therapist_id": clinic["t2"].id},
                                headers=auth_headers(clinic["admin"]))
    assert filtered.json()["average_rating"] == 1.0


async def test_analytics_is_staff_only(client, clinic):
    response = await client.get("/api/reports/satisfaction/analytics", headers=auth_headers(clinic["p1"]))
    assert response.status_code == 403
