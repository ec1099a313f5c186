from clinic.models import Role
from clinic.services.auth_service import create_activation_token

from conftest import auth_headers


async def login(client, email, password):
    return await client.post("/api/auth/login", data={"username": email, "password": password})


async def test_register_login_and_me(client):
    created = await client.post(
        "/api/auth/register",
        json={"name": "Ana", "email": "Ana@Example.com", "password": "secret123"},
    )
    assert created.status_code == 201

    response = await login(client, "ana@example.com", "secret123")
    assert response.status_code == 200
    assert "session_token=" in response.headers["set-cookie"]
    token = response.json()["access_token"]

    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["email"] == "ana@example.com"
    assert me.json()["role"] == Role.PATIENT.value


async def test_duplicate_registration(client, clinic):
    response = await client.post(
        "/api/auth/register",
        json={"name": "Again", "email": clinic["p1"].email, "password": "secret123"},
    )
    assert response.status_code == 400


async def test_invalid_registration_payload(client):
    response = await client.post("/api/auth/register", json={"name": "X", "email": "not-an-email", "password": "1"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid request data"


async def test_wrong_password(client, clinic):
    response = await login(client, clinic["p1"].email, "wrong-password")
    assert response.status_code == 401


async def test_me_requires_token(client):
    response = await client.get("/api/auth/me")
    assert response.status_code == 401


async def test_activation_sets_password(client, clinic):
    token = create_activation_token(clinic["t2"])
    response = await client.post("/api/auth/activate", json={"token": token, "password": "brand-new-pass"})
    assert response.status_code == 200

    assert (await login(client, clinic["t2"].email, "brand-new-pass")).status_code == 200
    assert (await login(client, clinic["t2"].email, "secret123")).status_code == 401


async def test_session_token_cannot_activate(client, clinic):
    session = auth_headers(clinic["t2"])["Authorization"].split(" ", 1)[1]
    response = await client.post("/api/auth/activate", json={"token": session, "password": "brand-new-pass"})
    assert response.status_code == 401


async def test_verify_medical_access(client, seed, clinic):
    appt = await seed.appointment(clinic["p1"], clinic["t1"])
    params = {"resource_type": "appointment", "resource_id": appt.id}

    allowed = await client.get("/api/auth/verify-medical-access", params=params, headers=auth_headers(clinic["t1"]))
    denied = await client.get("/api/auth/verify-medical-access", params=params, headers=auth_headers(clinic["t2"]))
    assert allowed.json() == {"authorized": True}
    assert denied.json() == {"authorized": False}

    decisions = [(e.actor_id, e.decision) for e in await seed.access_log()]
    assert decisions == [(clinic["t1"].id, "authorized"), (clinic["t2"].id, "denied")]
