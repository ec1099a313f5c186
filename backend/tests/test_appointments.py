from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from clinic.models import AppointmentActivityLog, AppointmentStatus, Role
from clinic.services.appointments import ALLOWED_TRANSITIONS, can_transition

from conftest import auth_headers


def future(days=3, hour=10):
    base = datetime.now(timezone.utc) + timedelta(days=days)
    return base.replace(hour=hour, minute=0, second=0, microsecond=0)


async def activity(database, appointment_id):
    async with database.session() as s:
        res = await s.execute(
            select(AppointmentActivityLog)
            .where(AppointmentActivityLog.appointment_id == appointment_id)
            .order_by(AppointmentActivityLog.created_at)
        )
        return list(res.scalars().all())


def test_terminal_states_have_no_exits():
    assert ALLOWED_TRANSITIONS[AppointmentStatus.COMPLETED] == frozenset()
    assert ALLOWED_TRANSITIONS[AppointmentStatus.CANCELLED] == frozenset()
    assert can_transition("SCHEDULED", "CONFIRMED")
    assert can_transition("RESCHEDULED", "RESCHEDULED")
    assert not can_transition("COMPLETED", "SCHEDULED")


async def test_public_booking_creates_patient_and_assigns_therapist(client, clinic, mail_transport):
    response = await client.post(
        "/api/appointments?public=true",
        json={
            "date": future().isoformat(),
            "service_ids": [clinic["massage"].id],
            "patient": {"name": "New Patient", "email": "new.patient@example.com", "phone": "555-0100"},
        },
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["status"] == "SCHEDULED"
    assert body["therapist_id"] == clinic["t1"].id
    assert body["patient"]["email"] == "new.patient@example.com"
    assert mail_transport.outbox[-1]["to"] == "new.patient@example.com"


async def test_booking_in_the_past_is_rejected(client, clinic):
    response = await client.post(
        "/api/appointments",
        json={"date": (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat(),
              "service_ids": [clinic["massage"].id]},
        headers=auth_headers(clinic["p1"]),
    )
    assert response.status_code == 400


async def test_booking_respects_conflict_window(client, seed, clinic):
    when = future()
    await seed.appointment(clinic["p2"], clinic["t1"], [clinic["massage"]], date=when + timedelta(minutes=20))
    response = await client.post(
        "/api/appointments",
        json={"date": when.isoformat(), "service_ids": [clinic["massage"].id]},
        headers=auth_headers(clinic["p1"]),
    )
    # t1 is the only therapist offering the service
    assert response.status_code == 400


async def test_other_therapist_cannot_read_appointment(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"], [clinic["massage"]])

    response = await client.get(f"/api/appointments/{appt.id}", headers=auth_headers(clinic["t2"]))
    assert response.status_code == 403

    log = await seed.access_log()
    assert log[-1].actor_id == clinic["t2"].id
    assert log[-1].reason == "unauthorized_appointment"
    assert log[-1].access_type == "view"


async def test_parties_can_read_appointment(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"], [clinic["massage"]])
    for user in (clinic["p1"], clinic["t1"], clinic["admin"]):
        response = await client.get(f"/api/appointments/{appt.id}", headers=auth_headers(user))
        assert response.status_code == 200
        assert response.json()["services"][0]["name"] == "Massage"


async def test_list_is_scoped_by_role(client, seed, clinic):
    await seed.appointment(clinic["p1"], clinic["t1"], [clinic["massage"]])
    await seed.appointment(clinic["p2"], clinic["t1"], [clinic["massage"]], date=future(days=5))

    mine = await client.get("/api/appointments", headers=auth_headers(clinic["p1"]))
    everyone = await client.get("/api/appointments", headers=auth_headers(clinic["admin"]))
    none = await client.get("/api/appointments", headers=auth_headers(clinic["t2"]))
    assert len(mine.json()) == 1
    assert len(everyone.json()) == 2
    assert none.json() == []


async def test_complete_sends_survey_and_is_idempotent(client, database, seed, clinic, mail_transport):
    appt = await seed.appointment(clinic["p1"], clinic["t1"], [clinic["massage"]])

    first = await client.post(f"/api/appointments/{appt.id}/complete", headers=auth_headers(clinic["t1"]))
    assert first.status_code == 200
    assert first.json()["appointment"]["status"] == "COMPLETED"
    assert first.json()["email_sent"] is True
    assert f"/survey/{appt.id}" in mail_transport.outbox[-1]["html"]

    again = await client.post(f"/api/appointments/{appt.id}/complete", headers=auth_headers(clinic["t1"]))
    assert again.status_code == 200
    assert again.json()["message"] == "Appointment was already completed"

    logs = await activity(database, appt.id)
    assert [(l.previous_status, l.new_status) for l in logs] == [("SCHEDULED", "COMPLETED")]


async def test_complete_rejects_cancelled(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"], status=AppointmentStatus.CANCELLED)
    response = await client.post(f"/api/appointments/{appt.id}/complete", headers=auth_headers(clinic["admin"]))
    assert response.status_code == 400


async def test_patient_cannot_complete(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"])
    response = await client.post(f"/api/appointments/{appt.id}/complete", headers=auth_headers(clinic["p1"]))
    assert response.status_code == 403


async def test_confirm_via_email_link(client, database, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"])
    response = await client.post(f"/api/appointments/{appt.id}/confirm", headers={"user-agent": "mail-client"})
    assert response.status_code == 200
    assert response.json()["appointment"]["status"] == "CONFIRMED"

    (log,) = await activity(database, appt.id)
    assert log.action == "CONFIRMED"
    assert log.details["method"] == "email_link"
    assert log.user_agent == "mail-client"


async def test_confirm_missing_and_terminal(client, seed, clinic):
    missing = await client.post("/api/appointments/does-not-exist/confirm")
    assert missing.status_code == 404

    done = await seed.appointment(clinic["p1"], clinic["t1"], status=AppointmentStatus.COMPLETED)
    response = await client.post(f"/api/appointments/{done.id}/confirm")
    assert response.status_code == 400


async def test_reschedule_records_previous_and_new_date(client, database, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"], date=future(days=2))
    new_date = future(days=9, hour=15)

    response = await client.post(
        f"/api/appointments/{appt.id}/reschedule",
        json={"new_date": new_date.isoformat(), "reason": "work trip"},
        headers=auth_headers(clinic["p1"]),
    )
    assert response.status_code == 200
    assert response.json()["appointment"]["status"] == "RESCHEDULED"

    (log,) = await activity(database, appt.id)
    assert log.previous_date is not None
    assert log.new_date.replace(tzinfo=timezone.utc) == new_date
    assert log.details["reason"] == "work trip"
    assert log.details["method"] == "session"


async def test_reschedule_requires_new_date(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"])
    response = await client.post(
        f"/api/appointments/{appt.id}/reschedule", json={}, headers=auth_headers(clinic["p1"])
    )
    assert response.status_code == 400


async def test_cancel_then_confirm_fails(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"])
    cancelled = await client.post(
        f"/api/appointments/{appt.id}/cancel", json={"reason": "sick"}, headers=auth_headers(clinic["p1"])
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["appointment"]["cancel_reason"] == "sick"
    assert cancelled.json()["appointment"]["canceled_at"] is not None

    response = await client.post(f"/api/appointments/{appt.id}/confirm")
    assert response.status_code == 400


@pytest.mark.parametrize("target", ["SCHEDULED", "CONFIRMED"])
async def test_patch_rejects_leaving_terminal_state(client, seed, clinic, target):
    appt = await seed.appointment(clinic["p1"], clinic["t1"], status=AppointmentStatus.COMPLETED)
    response = await client.patch(
        f"/api/appointments/{appt.id}", json={"status": target}, headers=auth_headers(clinic["admin"])
    )
    assert response.status_code == 400


async def test_assigned_therapist_cannot_be_replaced(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"])
    response = await client.patch(
        f"/api/appointments/{appt.id}",
        json={"therapist_id": clinic["t2"].id},
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 400


async def test_admin_assigns_therapist_once(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], None)
    response = await client.patch(
        f"/api/appointments/{appt.id}",
        json={"therapist_id": clinic["t2"].id},
        headers=auth_headers(clinic["admin"]),
    )
    assert response.status_code == 200
    assert response.json()["therapist_id"] == clinic["t2"].id


async def test_notes_flow_and_medical_headers(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"])
    url = f"/api/appointments/{appt.id}/notes"

    created = await client.post(url, json={"content": "  Lower back pain improving  "},
                                headers=auth_headers(clinic["t1"]))
    assert created.status_code == 201
    assert created.json()["content"] == "Lower back pain improving"

    listed = await client.get(url, headers=auth_headers(clinic["t1"]))
    assert listed.status_code == 200
    assert len(listed.json()) == 1
    assert listed.headers["X-Medical-Data-Access"] == "restricted"
    assert listed.headers["X-Access-By"] == clinic["t1"].email

    other = await client.post(url, json={"content": "hi"}, headers=auth_headers(clinic["t2"]))
    assert other.status_code == 403

    blank = await client.post(url, json={"content": "   "}, headers=auth_headers(clinic["t1"]))
    assert blank.status_code == 400


async def test_public_summary_hides_patient(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"], [clinic["massage"]])
    response = await client.get(f"/api/appointments/{appt.id}/public")
    assert response.status_code == 200
    body = response.json()
    assert body["therapist_name"] == "Therapist One"
    assert body["services"] == ["Massage"]
    assert "patient" not in body


async def test_user_role_is_unchanged_by_public_booking(client, clinic):
    response = await client.post(
        "/api/appointments?public=true",
        json={
            "date": future().isoformat(),
            "service_ids": [clinic["massage"].id],
            "patient": {"name": "Sneaky", "email": clinic["t2"].email},
        },
    )
    assert response.status_code == 400
    assert clinic["t2"].role == Role.THERAPIST.value


async def test_missing_appointment_is_denied_and_audited(client, seed, clinic):
    response = await client.get("/api/appointments/does-not-exist", headers=auth_headers(clinic["t2"]))
    assert response.status_code == 403

    (entry,) = await seed.access_log()
    assert entry.decision == "denied"
    assert entry.reason == "unauthorized_appointment"
    assert entry.resource_id == "does-not-exist"


async def test_missing_appointment_answers_404_for_admin(client, clinic):
    response = await client.get("/api/appointments/does-not-exist", headers=auth_headers(clinic["admin"]))
    assert response.status_code == 404
