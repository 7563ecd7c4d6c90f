import io
import uuid
from datetime import timedelta

import pytest
from pydantic import ValidationError

from helpdesk.db.enums import SenderType, TicketStatus
from helpdesk.db.models import Attachment, Customer, Message, Ticket
from helpdesk.schemas.ticketing import EmailAttachment, EmailRecord, MessageCreate, TicketCreate
from helpdesk.services import (
    attachment_service,
    email_processor_service,
    settings_service,
    ticket_service,
)
from helpdesk.types import AgentSender
from tests.conftest import T0


def _email(**overrides) -> EmailRecord:
    data = {
        "from_email": "casey@example.com",
        "from_name": "Casey Customer",
        "subject": "Printer on fire",
        "body_text": "It is on fire.",
        "message_id": f"<{uuid.uuid4().hex}@mail.example>",
    }
    data.update(overrides)
    return EmailRecord(**data)


def _ingest(db, mailbox, **overrides) -> Ticket:
    return email_processor_service.process_inbound_email(db, _email(**overrides), mailbox)


def _seed_ticket(db, customer, ticket_number: str) -> Ticket:
    ticket = Ticket(
        ticket_number=ticket_number,
        subject="Imported",
        customer_id=customer.id,
        last_activity_at=T0,
    )
    db.add(ticket)
    db.commit()
    return ticket


# =============================================================================
# Customers
# =============================================================================


def test_customer_is_matched_case_insensitively(db, clock, mailbox):
    first = _ingest(db, mailbox, from_email="Casey@Example.COM")
    second = _ingest(db, mailbox, from_email="casey@example.com", subject="Another")

    assert first.customer_id == second.customer_id
    assert db.query(Customer).count() == 1
    assert db.query(Customer).one().email == "casey@example.com"


def test_customer_name_falls_back_to_local_part(db, clock, mailbox):
    ticket = _ingest(db, mailbox, from_email="Jo.Smith@Example.com", from_name="   ")

    assert ticket.customer.name == "jo.smith"


def test_sender_address_is_required():
    with pytest.raises(ValidationError):
        EmailRecord(subject="No sender")
    with pytest.raises(ValidationError):
        EmailRecord(from_email="   ")


# =============================================================================
# New tickets
# =============================================================================


def test_new_email_opens_ticket_with_threading_ids(db, clock, mailbox, normal_policy):
    ticket = _ingest(
        db,
        mailbox,
        message_id="<root@mail.example>",
        in_reply_to="<older@elsewhere>",
        references=["<a@elsewhere>", "<older@elsewhere>"],
    )

    assert ticket.ticket_number == "QF-1"
    assert ticket.status == TicketStatus.OPEN
    assert ticket.mailbox_id == mailbox.id
    assert ticket.sla_timer is not None

    assert len(ticket.messages) == 1
    message = ticket.messages[0]
    assert message.sender_type == SenderType.CUSTOMER
    assert message.body_text == "It is on fire."
    assert message.message_id == "<root@mail.example>"
    assert message.in_reply_to == "<older@elsewhere>"
    assert message.references == "<a@elsewhere> <older@elsewhere>"


def test_missing_subject_gets_placeholder(db, clock, mailbox):
    ticket = _ingest(db, mailbox, subject=None)

    assert ticket.subject == "(No Subject)"


def test_html_only_email_gets_text_body(db, clock, mailbox):
    ticket = _ingest(db, mailbox, body_text=None, body_html="<div>Hello<br>world</div>")

    assert ticket.messages[0].body_text == "Hello world"


def test_bodyless_email_keeps_message_id(db, clock, mailbox):
    ticket = _ingest(db, mailbox, body_text=None, message_id="<empty@mail.example>")

    assert len(ticket.messages) == 1
    assert ticket.messages[0].body_text == ""
    assert ticket.messages[0].message_id == "<empty@mail.example>"


def test_html_only_email_drops_scripts_and_decodes_entities(db, clock, mailbox):
    ticket = _ingest(
        db,
        mailbox,
        body_text=None,
        body_html="<style>p {color: red}</style><p>Tom &amp; Jerry</p><script>alert(1)</script>",
    )

    assert ticket.messages[0].body_text == "Tom & Jerry"


def test_references_string_is_stored_verbatim(db, clock, mailbox):
    raw = "<a@elsewhere>\r\n <b@elsewhere>  <c@elsewhere>"

    ticket = _ingest(db, mailbox, references=raw)

    assert ticket.messages[0].references == raw


def test_ticket_number_uses_configured_prefix(db, clock, mailbox):
    settings_service.set_setting(db, settings_service.TICKET_PREFIX_KEY, "HD")

    ticket = _ingest(db, mailbox)

    assert ticket.ticket_number == "HD-1"


def test_attachments_are_stored_under_ticket(db, clock, mailbox):
    ticket = _ingest(
        db,
        mailbox,
        attachments=[
            EmailAttachment(filename="log.txt", content=b"line 1\nline 2\n", mime_type="text/plain"),
            EmailAttachment(content=b"\x00\x01\x02"),
        ],
    )

    attachments = db.query(Attachment).order_by(Attachment.size.desc()).all()
    assert len(attachments) == 2

    named, unnamed = attachments
    assert named.message_id == ticket.messages[0].id
    assert named.filename == "log.txt"
    assert named.mime_type == "text/plain"
    assert named.size == 14
    assert named.path.startswith(f"attachments/{ticket.id}/")
    assert named.path.endswith("_log.txt")
    assert attachment_service.read_file(named.path) == b"line 1\nline 2\n"

    assert unnamed.filename == "unnamed"
    assert unnamed.mime_type == "application/octet-stream"
    assert unnamed.size == 3


# =============================================================================
# Attachment paths
# =============================================================================


def test_attachment_filename_cannot_escape_storage_root(db, clock, mailbox, local_storage):
    ticket = _ingest(
        db,
        mailbox,
        attachments=[EmailAttachment(filename="../../../../../escaped.txt", content=b"payload")],
    )

    attachment = db.query(Attachment).one()
    assert attachment.filename == "../../../../../escaped.txt"
    assert ".." not in attachment.path
    assert attachment.path.startswith(f"attachments/{ticket.id}/")
    assert attachment.path.endswith("_escaped.txt")
    assert (local_storage / attachment.path).read_bytes() == b"payload"
    target = local_storage / "attachments" / str(ticket.id) / "../../../../../escaped.txt"
    assert not target.resolve().exists()


@pytest.mark.parametrize(
    "filename, expected",
    [
        ("../../etc/passwd", "passwd"),
        ("..\\..\\boot.ini", "boot.ini"),
        ("..", "unnamed"),
        (".bashrc", "bashrc"),
        ("rapport final (v2).pdf", "rapport_final_v2_.pdf"),
        (None, "unnamed"),
    ],
)
def test_safe_filename(filename, expected):
    assert attachment_service.safe_filename(filename) == expected


def test_store_file_rejects_keys_outside_root(local_storage):
    with pytest.raises(ValueError):
        attachment_service.store_file("attachments/../../outside.txt", io.BytesIO(b"x"))

    assert not (local_storage.parent / "outside.txt").exists()


# =============================================================================
# Correlation
# =============================================================================


def test_reply_matched_by_in_reply_to(db, clock, mailbox):
    original = _ingest(db, mailbox, message_id="<root@mail.example>")
    clock.advance(minutes=5)

    ticket = _ingest(db, mailbox, subject="Re: Printer on fire", in_reply_to="<root@mail.example>")

    assert ticket.id == original.id
    assert db.query(Ticket).count() == 1
    assert len(ticket.messages) == 2
    assert ticket.last_activity_at == T0 + timedelta(minutes=5)


def test_in_reply_to_wins_over_subject_tag(db, clock, mailbox):
    first = _ingest(db, mailbox, message_id="<first@mail.example>")
    clock.advance(minutes=1)
    second = _ingest(db, mailbox, subject="Unrelated")
    clock.advance(minutes=1)

    ticket = _ingest(
        db,
        mailbox,
        subject=f"Re: [{second.ticket_number}] Unrelated",
        in_reply_to="<first@mail.example>",
    )

    assert ticket.id == first.id


@pytest.mark.parametrize(
    "references",
    [
        "<unknown@else.where> <root@mail.example>",
        ["<unknown@else.where>", "<root@mail.example>"],
    ],
)
def test_reply_matched_by_references(db, clock, mailbox, references):
    original = _ingest(db, mailbox, message_id="<root@mail.example>")
    clock.advance(minutes=1)

    ticket = _ingest(
        db,
        mailbox,
        subject="Re: something",
        in_reply_to="<unknown@else.where>",
        references=references,
    )

    assert ticket.id == original.id


def test_reply_matched_by_subject_tag(db, clock, mailbox):
    original = _ingest(db, mailbox, message_id=None)
    clock.advance(minutes=1)

    ticket = _ingest(db, mailbox, subject=f"RE: [{original.ticket_number}] Printer on fire")

    assert ticket.id == original.id


def test_unknown_subject_tag_opens_new_ticket(db, clock, mailbox):
    _ingest(db, mailbox)
    clock.advance(minutes=1)

    ticket = _ingest(db, mailbox, subject="Re: [QF-99] Lost")

    assert ticket.ticket_number == "QF-2"
    assert ticket.subject == "Re: [QF-99] Lost"


def test_message_ids_match_exactly(db, clock, mailbox):
    _ingest(db, mailbox, message_id="<Root@Mail.Example>")
    clock.advance(minutes=1)

    ticket = _ingest(db, mailbox, subject="Different", in_reply_to="<root@mail.example>")

    assert ticket.ticket_number == "QF-2"


def test_customer_reply_reopens_closed_ticket(db, clock, mailbox):
    ticket = _ingest(db, mailbox, message_id="<root@mail.example>")
    clock.advance(hours=1)
    ticket_service.update_status(db, ticket, TicketStatus.CLOSED)
    clock.advance(hours=1)

    ticket = _ingest(db, mailbox, subject="Re: Printer on fire", in_reply_to="<root@mail.example>")

    assert ticket.status == TicketStatus.OPEN
    assert len(ticket.messages) == 2


def test_subject_tag_matches_exact_ticket_number(db, clock, mailbox, customer):
    legacy = _seed_ticket(db, customer, "QF-007")

    ticket = _ingest(db, mailbox, subject="Re: [QF-007] Legacy")

    assert ticket.id == legacy.id
    assert len(ticket.messages) == 1


def test_subject_tag_digits_are_not_normalized(db, clock, mailbox):
    first = _ingest(db, mailbox, message_id=None)
    clock.advance(minutes=1)

    ticket = _ingest(db, mailbox, subject="Re: [QF-001] Printer on fire")

    assert first.ticket_number == "QF-1"
    assert ticket.id != first.id
    assert email_processor_service.subject_ticket_number("Re: [QF-007] x", "QF") == "QF-007"


def test_failed_reply_leaves_closed_ticket_untouched(db, clock, mailbox, monkeypatch):
    ticket = _ingest(db, mailbox, message_id="<root@mail.example>")
    ticket_service.update_status(db, ticket, TicketStatus.CLOSED)
    clock.advance(hours=1)

    def _disk_full(*args, **kwargs):
        raise OSError("No space left on device")

    monkeypatch.setattr(attachment_service, "store_file", _disk_full)

    with pytest.raises(OSError):
        _ingest(
            db,
            mailbox,
            in_reply_to="<root@mail.example>",
            attachments=[EmailAttachment(filename="log.txt", content=b"log")],
        )

    db.expire_all()
    ticket = db.get(Ticket, ticket.id)
    assert ticket.status == TicketStatus.CLOSED
    assert len(ticket.messages) == 1
    assert ticket.last_activity_at == T0
    assert db.query(Attachment).count() == 0


def test_reply_attachments_attach_to_new_message(db, clock, mailbox):
    original = _ingest(db, mailbox, message_id="<root@mail.example>")
    clock.advance(minutes=1)

    _ingest(
        db,
        mailbox,
        in_reply_to="<root@mail.example>",
        message_id="<second@mail.example>",
        attachments=[EmailAttachment(filename="photo.jpg", content=b"jpeg", mime_type="image/jpeg")],
    )

    attachment = db.query(Attachment).one()
    message = db.get(Message, attachment.message_id)
    assert message.ticket_id == original.id
    assert message.message_id == "<second@mail.example>"


# =============================================================================
# Outbound headers
# =============================================================================


def test_outbound_headers_thread_onto_latest_customer_message(db, clock, mailbox, agent):
    ticket = _ingest(db, mailbox, message_id="<m1@mail.example>")
    clock.advance(minutes=1)
    ticket_service.add_message(
        db,
        ticket,
        MessageCreate(sender=AgentSender(user_id=agent.id), body_text="On it", message_id="<m2@helpdesk>"),
    )
    clock.advance(minutes=1)
    ticket = _ingest(db, mailbox, in_reply_to="<m2@helpdesk>", message_id="<m3@mail.example>")

    headers = email_processor_service.build_outbound_headers(db, ticket)

    assert headers == {
        "Subject": "[QF-1] Printer on fire",
        "In-Reply-To": "<m3@mail.example>",
        "References": "<m1@mail.example> <m2@helpdesk> <m3@mail.example>",
    }


def test_outbound_headers_without_message_ids(db, clock, customer):
    ticket = ticket_service.create_ticket(
        db,
        TicketCreate(subject="Phone call", body_text="Logged by phone"),
        customer,
    )

    headers = email_processor_service.build_outbound_headers(db, ticket)

    assert headers == {"Subject": f"[{ticket.ticket_number}] Phone call"}
