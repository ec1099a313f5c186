from fastapi.testclient import TestClient

from clinic.db import Database
from clinic.main import create_app
from clinic.middleware.gatekeeper import is_protected, medical_resource
from clinic.models import Role, User
from clinic.services.audit import AuditLogger
from clinic.services.auth_service import create_access_token

from conftest import RecordingStore


def make_client(tmp_path):
    app = create_app(database=Database(f"sqlite+aiosqlite:///{tmp_path / 'gate.db'}"))
    store = RecordingStore()
    app.state.audit_logger = AuditLogger(store)
    return TestClient(app), store


def token_for(role: Role, user_id: str = "u-1", email: str = "someone@example.com") -> dict:
    token = create_access_token({"sub": user_id, "role": role.value, "email": email})
    return {"Authorization": f"Bearer {token}"}


def test_protected_prefixes():
    assert is_protected("/api/appointments")
    assert is_protected("/api/patients/123/history")
    assert not is_protected("/api/appointmentsx")
    assert not is_protected("/api/services")


def test_medical_resource_detection():
    assert medical_resource("/api/appointments/1/notes") == "therapist_note"
    assert medical_resource("/api/patients/1/history") == "patient_history"
    assert medical_resource("/api/appointments/1") is None
    assert medical_resource("/api/patients/1/history-export") == "patient_history"
    assert medical_resource("/api/appointments/1/notes.csv") == "therapist_note"


def test_missing_token_is_rejected(tmp_path):
    client, _ = make_client(tmp_path)
    response = client.get("/api/appointments")
    assert response.status_code == 401


def test_forged_token_is_rejected(tmp_path):
    client, _ = make_client(tmp_path)
    response = client.get("/api/patients", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_patient_is_kept_away_from_history_and_audited(tmp_path):
    client, store = make_client(tmp_path)
    response = client.get("/api/patients/p-1/history", headers=token_for(Role.PATIENT, "p-1"))
    assert response.status_code == 403

    entry = store.entries[-1]
    assert entry.actor_id == "p-1"
    assert entry.resource_type == "patient_history"
    assert entry.reason == "gatekeeper_role_denied"


def test_patient_is_kept_away_from_notes(tmp_path):
    client, store = make_client(tmp_path)
    response = client.get("/api/appointments/a-1/notes", headers=token_for(Role.PATIENT))
    assert response.status_code == 403
    assert store.entries[-1].resource_type == "therapist_note"


def test_public_booking_skips_token_check(tmp_path):
    client, _ = make_client(tmp_path)
    # reaches the handler, which rejects the empty body
    response = client.post("/api/appointments?public=true", json={})
    assert response.status_code == 400


def test_non_public_booking_needs_token(tmp_path):
    client, _ = make_client(tmp_path)
    response = client.post("/api/appointments", json={})
    assert response.status_code == 401


def test_unprotected_routes_pass_through(tmp_path):
    client, _ = make_client(tmp_path)
    assert client.get("/health").json() == {"ok": True}


def test_activation_tokens_do_not_open_sessions(tmp_path):
    from clinic.services.auth_service import create_activation_token

    client, _ = make_client(tmp_path)
    user = User(id="t-1", email="t@example.com", role=Role.THERAPIST.value)
    headers = {"Authorization": f"Bearer {create_activation_token(user)}"}
    assert client.get("/api/appointments", headers=headers).status_code == 401
