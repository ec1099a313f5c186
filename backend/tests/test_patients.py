from datetime import timedelta

from clinic.models import AppointmentStatus
from clinic.services.dates import utcnow

from conftest import auth_headers


async def test_therapist_sees_only_own_patients(client, seed, clinic):
    await seed.appointment(clinic["p1"], clinic["t1"])

    mine = await client.get("/api/patients", headers=auth_headers(clinic["t1"]))
    assert [p["id"] for p in mine.json()["items"]] == [clinic["p1"].id]

    everyone = await client.get("/api/patients", headers=auth_headers(clinic["admin"]))
    assert everyone.json()["total"] == 2


async def test_patient_search(client, clinic):
    response = await client.get("/api/patients", params={"search": "two"}, headers=auth_headers(clinic["admin"]))
    assert [p["name"] for p in response.json()["items"]] == ["Patient Two"]


async def test_patients_cannot_list_patients(client, clinic):
    response = await client.get("/api/patients", headers=auth_headers(clinic["p1"]))
    assert response.status_code == 403


async def test_history_contains_completed_visits_with_notes(client, seed, clinic):
    past = await seed.appointment(clinic["p1"], clinic["t1"], [clinic["massage"]],
                                  date=utcnow() - timedelta(days=7), status=AppointmentStatus.COMPLETED)
    await seed.appointment(clinic["p1"], clinic["t1"], [clinic["massage"]])
    await client.post(f"/api/appointments/{past.id}/notes", json={"content": "Stretch daily"},
                      headers=auth_headers(clinic["t1"]))

    response = await client.get(f"/api/patients/{clinic['p1'].id}/history", headers=auth_headers(clinic["t1"]))
    assert response.status_code == 200
    body = response.json()
    assert body["stats"]["total_appointments"] == 1
    assert body["stats"]["services_received"] == 1
    (entry,) = body["appointments"]
    assert entry["appointment"]["id"] == past.id
    assert entry["notes"][0]["content"] == "Stretch daily"


async def test_history_for_unrelated_therapist_is_denied_and_audited(client, seed, clinic):
    await seed.appointment(clinic["p1"], clinic["t1"])
    response = await client.get(f"/api/patients/{clinic['p1'].id}/history", headers=auth_headers(clinic["t2"]))
    assert response.status_code == 403

    entry = (await seed.access_log())[-1]
    assert entry.resource_type == "patient_history"
    assert entry.reason == "unauthorized_therapist"


async def test_history_of_unknown_patient(client, clinic):
    response = await client.get("/api/patients/nobody/history", headers=auth_headers(clinic["admin"]))
    assert response.status_code == 404


async def test_patients_are_stopped_at_the_edge(client, seed, clinic):
    response = await client.get(f"/api/patients/{clinic['p1'].id}/history", headers=auth_headers(clinic["p1"]))
    assert response.status_code == 403

    entry = (await seed.access_log())[-1]
    assert entry.actor_id == clinic["p1"].id
    assert entry.reason == "gatekeeper_role_denied"


async def test_history_of_unknown_patient_is_denied_for_therapist(client, seed, clinic):
    response = await client.get("/api/patients/nobody/history", headers=auth_headers(clinic["t2"]))
    assert response.status_code == 403

    (entry,) = await seed.access_log()
    assert entry.decision == "denied"
    assert entry.resource_id == "nobody"
