from datetime import timedelta

import pytest

from clinic import config
from clinic.models import AppointmentStatus
from clinic.services.dates import today_range

CRON_KEY = "cron-test-key"


@pytest.fixture
def cron_key(monkeypatch):
    monkeypatch.setattr(config, "CRON_API_KEY", CRON_KEY)
    monkeypatch.setattr(config, "CLINIC_TIMEZONE", "UTC")
    return {"Authorization": f"Bearer {CRON_KEY}"}


async def test_unset_key_rejects_everyone(client, monkeypatch):
    monkeypatch.setattr(config, "CRON_API_KEY", "")
    response = await client.get("/api/cron/send-reminders", headers={"Authorization": "Bearer "})
    assert response.status_code == 401


async def test_wrong_key_is_rejected(client, cron_key):
    response = await client.get("/api/cron/send-reminders", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


async def test_reminders_go_to_todays_open_appointments(client, seed, clinic, mail_transport, cron_key):
    start, _ = today_range("UTC")
    midday = start + timedelta(hours=12)
    await seed.appointment(clinic["p1"], clinic["t1"], [clinic["massage"]], date=midday)
    await seed.appointment(clinic["p2"], clinic["t1"], [clinic["massage"]], date=midday + timedelta(hours=1),
                           status=AppointmentStatus.CONFIRMED)
    await seed.appointment(clinic["p2"], clinic["t1"], date=midday + timedelta(hours=2),
                           status=AppointmentStatus.CANCELLED)
    await seed.appointment(clinic["p1"], clinic["t1"], date=midday + timedelta(days=1))

    response = await client.get("/api/cron/send-reminders", headers=cron_key)
    assert response.status_code == 200
    assert response.json() == {
        "message": "Reminders processed",
        "total_appointments": 2,
        "emails_sent": 2,
    }
    recipients = sorted(m["to"] for m in mail_transport.outbox)
    assert recipients == [clinic["p1"].email, clinic["p2"].email]
    assert "Massage" in mail_transport.outbox[0]["html"]
