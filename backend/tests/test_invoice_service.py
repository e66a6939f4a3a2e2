"""Tests for invoice totals, status transitions, sending, credit notes and reminders."""
import random
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiosmtplib
import pytest

from src.core.config import settings
from src.core.exceptions import (
    AlreadySentError,
    AmountOutOfRangeError,
    DependencyError,
    InvalidStatusTransitionError,
    NotFoundError,
    StateError,
)
from src.models.orm.email_log import EmailLog
from src.services.identifiers import is_valid_kid
from src.services.invoice_service import (
    CREDIT_LINE_PREFIX,
    VALID_TRANSITIONS,
    LineInput,
    compute_totals,
    create_credit_note,
    refresh_overdue_invoices,
    send_due_reminders,
    send_invoice,
    send_reminder,
    transition,
)
from tests.factories import make_invoice


class TestTransitions:
    def test_all_statuses_have_transitions_defined(self):
        expected = {"DRAFT", "SENT", "PARTIALLY_PAID", "OVERDUE", "PAID", "CREDITED", "CANCELLED"}
        assert set(VALID_TRANSITIONS.keys()) == expected

    @pytest.mark.parametrize("status", ["PAID", "CREDITED", "CANCELLED"])
    def test_terminal_statuses(self, status):
        assert VALID_TRANSITIONS[status] == set()

    def test_sent_can_become_overdue(self):
        assert "OVERDUE" in VALID_TRANSITIONS["SENT"]

    def test_draft_cannot_become_overdue(self):
        assert "OVERDUE" not in VALID_TRANSITIONS["DRAFT"]

    def test_paid_cannot_be_credited(self):
        assert "CREDITED" not in VALID_TRANSITIONS["PAID"]

    def test_transition_applies_status(self):
        invoice = make_invoice(status="SENT")
        transition(invoice, "PARTIALLY_PAID")
        assert invoice.status == "PARTIALLY_PAID"

    def test_invalid_transition_raises(self):
        invoice = make_invoice(status="PAID")
        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            transition(invoice, "SENT")
        assert invoice.status == "PAID"
        assert exc_info.value.detail["reason"] == "invalid_status_transition"


class TestComputeTotals:
    def test_single_line(self):
        totals = compute_totals(
            [LineInput("Service", Decimal("1"), Decimal("1000"), Decimal("0.25"))], Decimal("0.25")
        )
        assert totals.subtotal == Decimal("1000.00")
        assert totals.vat_amount == Decimal("250.00")
        assert totals.total_amount == Decimal("1250.00")
        assert totals.lines[0]["position"] == 1

    def test_default_rate_used_when_line_has_none(self):
        totals = compute_totals([LineInput("Book", Decimal("2"), Decimal("100"))], Decimal("0.12"))
        assert totals.lines[0]["vat_rate"] == Decimal("0.12")
        assert totals.vat_amount == Decimal("24.00")

    def test_zero_rate_line(self):
        totals = compute_totals(
            [LineInput("Exempt", Decimal("1"), Decimal("500"), Decimal("0"))], Decimal("0.25")
        )
        assert totals.vat_amount == Decimal("0.00")
        assert totals.total_amount == Decimal("500.00")

    def test_each_line_rounds_half_up(self):
        totals = compute_totals(
            [LineInput("Screw", Decimal("3"), Decimal("0.335"), Decimal("0.25"))], Decimal("0.25")
        )
        line = totals.lines[0]
        assert line["amount"] == Decimal("1.01")
        assert line["vat_amount"] == Decimal("0.25")

    def test_positions_follow_input_order(self):
        totals = compute_totals(
            [LineInput(f"Item {i}", Decimal("1"), Decimal("10")) for i in range(3)],
            Decimal("0.25"),
        )
        assert [line["position"] for line in totals.lines] == [1, 2, 3]

    def test_total_beyond_column_range_is_rejected(self):
        with pytest.raises(AmountOutOfRangeError):
            compute_totals(
                [LineInput("Bulk", Decimal("123456789.012"), Decimal("99999999"))], Decimal("0.25")
            )

    def test_vat_pushing_total_over_range_is_rejected(self):
        # Subtotal fits the column, subtotal plus VAT does not
        with pytest.raises(AmountOutOfRangeError):
            compute_totals(
                [LineInput("Bulk", Decimal("1"), Decimal("9000000000.00"))], Decimal("0.25")
            )

    def test_largest_storable_total_is_accepted(self):
        totals = compute_totals(
            [LineInput("Bulk", Decimal("1"), Decimal("9999999999.99"), Decimal("0"))], Decimal("0")
        )
        assert totals.total_amount == Decimal("9999999999.99")

    def test_total_is_exact_sum_of_parts(self):
        rng = random.Random(7)
        rates = [Decimal("0"), Decimal("0.12"), Decimal("0.15"), Decimal("0.25")]
        for _ in range(200):
            lines = [
                LineInput(
                    "x",
                    Decimal(rng.randint(1, 5000)) / 1000,
                    Decimal(rng.randint(0, 10_000_000)) / 1000,
                    rng.choice(rates),
                )
                for _ in range(rng.randint(1, 6))
            ]
            totals = compute_totals(lines, Decimal("0.25"))
            assert totals.total_amount == totals.subtotal + totals.vat_amount
            assert totals.subtotal == sum(line["amount"] for line in totals.lines)
            assert totals.total_amount.as_tuple().exponent == -2


@pytest.fixture
def send_deps():
    invoice_repo = MagicMock()
    invoice_repo.get_by_id = AsyncMock()
    storage = MagicMock()
    storage.store = AsyncMock(return_value="https://invoicing.example.com/api/files/x.pdf")
    webhook_service = MagicMock()
    webhook_service.notify_invoice_sent = AsyncMock()
    webhook_service.flush_outbox = AsyncMock()
    send_email = AsyncMock(return_value="<abc@example.com>")
    write_audit_log = AsyncMock()
    with patch.multiple(
        "src.services.invoice_service",
        invoice_repo=invoice_repo,
        storage=storage,
        webhook_service=webhook_service,
        send_invoice_email=send_email,
        write_audit_log=write_audit_log,
        generate_invoice_pdf=MagicMock(return_value=b"%PDF-1.4 test"),
    ):
        yield SimpleNamespace(
            invoice_repo=invoice_repo,
            storage=storage,
            webhook_service=webhook_service,
            send_email=send_email,
            write_audit_log=write_audit_log,
        )


def _email_logs(mock_db) -> list[EmailLog]:
    return [c.args[0] for c in mock_db.add.call_args_list if isinstance(c.args[0], EmailLog)]


class TestSendInvoice:
    @pytest.mark.asyncio
    async def test_sends_draft(self, send_deps, mock_db):
        invoice = make_invoice()
        send_deps.invoice_repo.get_by_id.return_value = invoice

        result = await send_invoice(mock_db, invoice.id)

        assert result.status == "SENT"
        assert result.sent_at is not None
        assert result.pdf_url.endswith(".pdf")
        key = send_deps.storage.store.call_args.args[0]
        assert key == f"invoices/{invoice.id}/2026-000001.pdf"
        logs = _email_logs(mock_db)
        assert len(logs) == 1
        assert logs[0].status == "SENT"
        assert logs[0].message_id == "<abc@example.com>"
        send_deps.webhook_service.notify_invoice_sent.assert_awaited_once_with(
            mock_db, invoice, "email"
        )
        assert send_deps.write_audit_log.call_args.kwargs["action"] == "INVOICE_SENT"

    @pytest.mark.asyncio
    async def test_not_found(self, send_deps, mock_db):
        send_deps.invoice_repo.get_by_id.return_value = None
        with pytest.raises(NotFoundError):
            await send_invoice(mock_db, make_invoice().id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["SENT", "PAID", "CREDITED"])
    async def test_only_drafts_can_be_sent(self, send_deps, mock_db, status):
        send_deps.invoice_repo.get_by_id.return_value = make_invoice(status=status)

        with pytest.raises(AlreadySentError):
            await send_invoice(mock_db, make_invoice().id)
        send_deps.send_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_email_failure_keeps_draft_and_logs(self, send_deps, mock_db):
        invoice = make_invoice()
        send_deps.invoice_repo.get_by_id.return_value = invoice
        send_deps.send_email.side_effect = aiosmtplib.SMTPServerDisconnected("Connection lost")

        with pytest.raises(DependencyError) as exc_info:
            await send_invoice(mock_db, invoice.id)

        assert exc_info.value.status_code == 500
        assert invoice.status == "DRAFT"
        assert invoice.sent_at is None
        logs = _email_logs(mock_db)
        assert len(logs) == 1
        assert logs[0].status == "FAILED"
        assert "Connection lost" in logs[0].error
        send_deps.webhook_service.flush_outbox.assert_awaited_once_with(mock_db)
        send_deps.webhook_service.notify_invoice_sent.assert_not_called()
        assert send_deps.write_audit_log.call_args.kwargs["action"] == "INVOICE_SEND_FAILED"

    @pytest.mark.asyncio
    async def test_storage_failure(self, send_deps, mock_db):
        invoice = make_invoice()
        send_deps.invoice_repo.get_by_id.return_value = invoice
        send_deps.storage.store.side_effect = OSError("disk full")

        with pytest.raises(DependencyError):
            await send_invoice(mock_db, invoice.id)
        send_deps.send_email.assert_not_called()
        assert invoice.status == "DRAFT"


@pytest.fixture
def credit_deps():
    invoice_repo = MagicMock()
    invoice_repo.get_by_id = AsyncMock()
    webhook_service = MagicMock()
    webhook_service.notify_credit_note_created = AsyncMock()
    write_audit_log = AsyncMock()
    with patch.multiple(
        "src.services.invoice_service",
        invoice_repo=invoice_repo,
        webhook_service=webhook_service,
        write_audit_log=write_audit_log,
        next_invoice_number=AsyncMock(return_value="2026-000002"),
    ):
        yield SimpleNamespace(
            invoice_repo=invoice_repo,
            webhook_service=webhook_service,
            write_audit_log=write_audit_log,
        )


class TestCreateCreditNote:
    @pytest.mark.asyncio
    async def test_reverses_sent_invoice(self, credit_deps, mock_db):
        original = make_invoice(status="SENT")
        credit_deps.invoice_repo.get_by_id.return_value = original

        credit = await create_credit_note(mock_db, original.id, "Returned goods")

        assert credit.invoice_number == "2026-000002"
        assert credit.status == "DRAFT"
        assert credit.source_order_id is None
        assert credit.credited_invoice_id == original.id
        assert credit.is_credit_note
        assert credit.total_amount == Decimal("-1250.00")
        assert credit.vat_amount == Decimal("-250.00")
        assert credit.lines[0].quantity == Decimal("-1")
        assert credit.lines[0].description == f"{CREDIT_LINE_PREFIX}Service"
        assert credit.notes == "Kreditnota for faktura 2026-000001\nReturned goods"
        assert is_valid_kid(credit.kid)
        assert original.status == "CREDITED"
        assert original.credit_note_id == credit.id
        credit_deps.webhook_service.notify_credit_note_created.assert_awaited_once_with(
            mock_db, credit, original, "Returned goods"
        )
        assert credit_deps.write_audit_log.call_args.kwargs["action"] == "CREDIT_NOTE_CREATED"

    @pytest.mark.asyncio
    async def test_notes_without_reason(self, credit_deps, mock_db):
        credit_deps.invoice_repo.get_by_id.return_value = make_invoice(status="OVERDUE")

        credit = await create_credit_note(mock_db, make_invoice().id)

        assert credit.notes == "Kreditnota for faktura 2026-000001"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["DRAFT", "PAID", "CREDITED", "CANCELLED"])
    async def test_rejects_other_statuses(self, credit_deps, mock_db, status):
        original = make_invoice(status=status)
        credit_deps.invoice_repo.get_by_id.return_value = original

        with pytest.raises(StateError):
            await create_credit_note(mock_db, original.id)
        assert original.status == status

    @pytest.mark.asyncio
    async def test_credit_note_cannot_be_credited(self, credit_deps, mock_db):
        credit_note = make_invoice(status="SENT")
        credit_note.credited_invoice_id = make_invoice().id
        credit_deps.invoice_repo.get_by_id.return_value = credit_note

        with pytest.raises(StateError):
            await create_credit_note(mock_db, credit_note.id)


class TestRefreshOverdue:
    @pytest.mark.asyncio
    async def test_marks_past_due_invoices(self, mock_db):
        invoice = make_invoice(status="PARTIALLY_PAID", due_date=date(2026, 3, 15))
        invoice_repo = MagicMock()
        invoice_repo.get_overdue_candidates = AsyncMock(return_value=[invoice])
        payment_repo = MagicMock()
        payment_repo.get_completed_total = AsyncMock(return_value=Decimal("250.00"))
        webhook_service = MagicMock()
        webhook_service.notify_invoice_overdue = AsyncMock()
        webhook_service.flush_outbox = AsyncMock()
        today = date(2026, 3, 20)

        with patch.multiple(
            "src.services.invoice_service",
            invoice_repo=invoice_repo,
            payment_repo=payment_repo,
            webhook_service=webhook_service,
            write_audit_log=AsyncMock(),
        ):
            count = await refresh_overdue_invoices(mock_db, today=today)

        assert count == 1
        assert invoice.status == "OVERDUE"
        invoice_repo.get_overdue_candidates.assert_awaited_once_with(mock_db, today)
        webhook_service.notify_invoice_overdue.assert_awaited_once_with(
            mock_db, invoice, Decimal("1000.00"), today
        )
        webhook_service.flush_outbox.assert_awaited_once_with(mock_db)

    @pytest.mark.asyncio
    async def test_nothing_due(self, mock_db):
        invoice_repo = MagicMock()
        invoice_repo.get_overdue_candidates = AsyncMock(return_value=[])
        webhook_service = MagicMock()
        webhook_service.flush_outbox = AsyncMock()

        with patch.multiple(
            "src.services.invoice_service",
            invoice_repo=invoice_repo,
            webhook_service=webhook_service,
        ):
            count = await refresh_overdue_invoices(mock_db, today=date(2026, 3, 20))

        assert count == 0


@pytest.fixture
def remind_deps():
    invoice_repo = MagicMock()
    invoice_repo.get_by_id = AsyncMock()
    invoice_repo.get_reminder_candidates = AsyncMock(return_value=[])
    payment_repo = MagicMock()
    payment_repo.get_completed_total = AsyncMock(return_value=Decimal("250.00"))
    webhook_service = MagicMock()
    webhook_service.notify_reminder_sent = AsyncMock()
    webhook_service.flush_outbox = AsyncMock()
    send_email = AsyncMock(return_value="<reminder@example.com>")
    write_audit_log = AsyncMock()
    with patch.multiple(
        "src.services.invoice_service",
        invoice_repo=invoice_repo,
        payment_repo=payment_repo,
        webhook_service=webhook_service,
        send_reminder_email=send_email,
        write_audit_log=write_audit_log,
        generate_invoice_pdf=MagicMock(return_value=b"%PDF-1.4 test"),
    ):
        yield SimpleNamespace(
            invoice_repo=invoice_repo,
            payment_repo=payment_repo,
            webhook_service=webhook_service,
            send_email=send_email,
            write_audit_log=write_audit_log,
        )


class TestSendReminder:
    @pytest.mark.asyncio
    async def test_first_reminder_for_overdue_invoice(self, remind_deps, mock_db):
        invoice = make_invoice(status="OVERDUE")
        remind_deps.invoice_repo.get_by_id.return_value = invoice

        result = await send_reminder(mock_db, invoice.id)

        assert result.reminder_count == 1
        assert result.last_reminder_at is not None
        assert result.status == "OVERDUE"
        remind_deps.send_email.assert_awaited_once_with(
            invoice, b"%PDF-1.4 test", 1, Decimal("1000.00")
        )
        logs = _email_logs(mock_db)
        assert len(logs) == 1
        assert logs[0].status == "SENT"
        assert logs[0].subject == "Purring 1: Faktura 2026-000001 fra Fakturabyrå AS"
        assert logs[0].message_id == "<reminder@example.com>"
        remind_deps.webhook_service.notify_reminder_sent.assert_awaited_once_with(
            mock_db, invoice, 1, Decimal("1000.00")
        )
        audit = remind_deps.write_audit_log.call_args.kwargs
        assert audit["action"] == "REMINDER_SENT"
        assert audit["details"]["reminder_number"] == 1

    @pytest.mark.asyncio
    async def test_next_number_follows_previous_reminders(self, remind_deps, mock_db):
        invoice = make_invoice(status="OVERDUE")
        invoice.reminder_count = 1
        remind_deps.invoice_repo.get_by_id.return_value = invoice

        await send_reminder(mock_db, invoice.id)

        assert invoice.reminder_count == 2
        assert remind_deps.send_email.call_args.args[2] == 2

    @pytest.mark.asyncio
    async def test_explicit_reminder_number(self, remind_deps, mock_db):
        invoice = make_invoice(status="SENT")
        remind_deps.invoice_repo.get_by_id.return_value = invoice

        await send_reminder(mock_db, invoice.id, reminder_number=3)

        assert invoice.reminder_count == 3
        assert _email_logs(mock_db)[0].subject.startswith("Purring 3:")

    @pytest.mark.asyncio
    async def test_email_failure_is_logged_and_count_unchanged(self, remind_deps, mock_db):
        invoice = make_invoice(status="OVERDUE")
        remind_deps.invoice_repo.get_by_id.return_value = invoice
        remind_deps.send_email.side_effect = aiosmtplib.SMTPServerDisconnected("Connection lost")

        with pytest.raises(DependencyError):
            await send_reminder(mock_db, invoice.id)

        assert invoice.reminder_count == 0
        assert invoice.last_reminder_at is None
        logs = _email_logs(mock_db)
        assert len(logs) == 1
        assert logs[0].status == "FAILED"
        assert "Connection lost" in logs[0].error
        remind_deps.webhook_service.flush_outbox.assert_awaited_once_with(mock_db)
        remind_deps.webhook_service.notify_reminder_sent.assert_not_called()
        assert remind_deps.write_audit_log.call_args.kwargs["action"] == "REMINDER_SEND_FAILED"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["DRAFT", "PAID", "CREDITED"])
    async def test_only_unpaid_invoices(self, remind_deps, mock_db, status):
        remind_deps.invoice_repo.get_by_id.return_value = make_invoice(status=status)

        with pytest.raises(StateError):
            await send_reminder(mock_db, make_invoice().id)
        remind_deps.send_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_credit_notes_are_not_reminded(self, remind_deps, mock_db):
        credit_note = make_invoice(status="SENT")
        credit_note.credited_invoice_id = make_invoice().id
        remind_deps.invoice_repo.get_by_id.return_value = credit_note

        with pytest.raises(StateError):
            await send_reminder(mock_db, credit_note.id)


class TestSendDueReminders:
    @pytest.mark.asyncio
    async def test_reminds_each_candidate(self, remind_deps, mock_db, monkeypatch):
        monkeypatch.setattr(settings, "reminder_interval_days", 14)
        monkeypatch.setattr(settings, "reminder_max_count", 2)
        ok, failing, paid_meanwhile = make_invoice(), make_invoice(), make_invoice()
        remind_deps.invoice_repo.get_reminder_candidates.return_value = [
            ok.id, failing.id, paid_meanwhile.id,
        ]
        now = datetime(2026, 4, 1, 6, 0, tzinfo=timezone.utc)
        reminder = AsyncMock(side_effect=[
            ok, DependencyError("smtp down"), StateError("Invoice is paid"),
        ])

        with patch("src.services.invoice_service.send_reminder", reminder):
            result = await send_due_reminders(mock_db, now=now)

        assert result == {"sent": 1, "failed": 1}
        assert [c.args[1] for c in reminder.await_args_list] == [ok.id, failing.id, paid_meanwhile.id]
        remind_deps.invoice_repo.get_reminder_candidates.assert_awaited_once_with(
            mock_db, reminded_before=datetime(2026, 3, 18, 6, 0, tzinfo=timezone.utc), max_count=2
        )
        remind_deps.webhook_service.flush_outbox.assert_awaited_once_with(mock_db)
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nothing_due(self, remind_deps, mock_db):
        result = await send_due_reminders(mock_db)

        assert result == {"sent": 0, "failed": 0}
        remind_deps.send_email.assert_not_called()
