"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    ticket_id: str | None = None,
    ticket_number: str | None = None,
    mailbox_id: str | None = None,
    job_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if ticket_id:
        context["ticket_id"] = ticket_id
    if ticket_number:
        context["ticket_number"] = ticket_number
    if mailbox_id:
        context["mailbox_id"] = mailbox_id
    if job_id:
        context["job_id"] = job_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
