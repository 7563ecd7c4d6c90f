from __future__ import annotations

import pytest

from helpdesk.core.config import settings
from helpdesk.db.enums import JobType
from helpdesk.db.models import Job
from helpdesk.schemas.ticketing import TicketCreate
from helpdesk.services import ticket_service


@pytest.mark.asyncio
async def test_scheduled_endpoints_not_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SECRET", "")

    response = await client.post(
        "/internal/scheduled/sla-breaches",
        headers={"X-Internal-Secret": "anything"},
    )

    assert response.status_code == 501


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/internal/scheduled/sla-breaches", "/internal/scheduled/mail-poll"])
async def test_scheduled_endpoints_reject_wrong_secret(client, monkeypatch, path):
    monkeypatch.setattr(settings, "INTERNAL_SECRET", "secret")

    response = await client.post(path, headers={"X-Internal-Secret": "wrong"})

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_sla_breach_endpoint_flags_overdue_timers(client, db, clock, customer, normal_policy, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SECRET", "secret")
    ticket = ticket_service.create_ticket(db, TicketCreate(subject="Slow", body_text="Hello?"), customer)
    clock.advance(hours=5)

    response = await client.post(
        "/internal/scheduled/sla-breaches",
        headers={"X-Internal-Secret": "secret"},
    )

    assert response.status_code == 200
    assert response.json() == {"first_response_breached": 1, "resolution_breached": 0}
    db.refresh(ticket.sla_timer)
    assert ticket.sla_timer.first_response_breached is True


@pytest.mark.asyncio
async def test_mail_poll_endpoint_queues_fetch_jobs(client, db, clock, mailbox, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SECRET", "secret")

    response = await client.post(
        "/internal/scheduled/mail-poll",
        headers={"X-Internal-Secret": "secret"},
    )

    assert response.status_code == 200
    assert response.json() == {"mailboxes_checked": 1, "jobs_created": 1, "duplicates_skipped": 0}
    job = db.query(Job).one()
    assert job.job_type == JobType.MAILBOX_FETCH.value
    assert job.payload == {"mailbox_id": str(mailbox.id)}


@pytest.mark.asyncio
async def test_health(client, db):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
