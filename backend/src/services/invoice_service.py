import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import aiosmtplib
from sqlalchemy.ext.asyncio import AsyncSession

from src.audit.service import write_audit_log
from src.core.config import settings
from src.core.exceptions import (
    AlreadySentError,
    AmountOutOfRangeError,
    DependencyError,
    InvalidStatusTransitionError,
    NotFoundError,
    StateError,
)
from src.core.money import MAX_AMOUNT, money_sum, to_money
from src.integrations.pdf.renderer import generate_invoice_pdf
from src.integrations.storage import local as storage
from src.models.orm.email_log import EmailLog
from src.models.orm.invoice import Invoice, InvoiceLine
from src.notifications.email import (
    EmailNotConfiguredError,
    invoice_subject,
    reminder_subject,
    send_invoice_email,
    send_reminder_email,
)
from src.repositories import invoice_repo, payment_repo
from src.services import webhook_service
from src.services.identifiers import credit_note_kid, next_invoice_number

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[str, set[str]] = {
    "DRAFT": {"SENT", "PARTIALLY_PAID", "PAID", "CREDITED", "CANCELLED"},
    "SENT": {"PARTIALLY_PAID", "PAID", "OVERDUE", "CREDITED"},
    "PARTIALLY_PAID": {"PAID", "OVERDUE", "CREDITED"},
    "OVERDUE": {"PARTIALLY_PAID", "PAID", "CREDITED"},
    "PAID": set(),
    "CREDITED": set(),
    "CANCELLED": set(),
}

CREDIT_LINE_PREFIX = "Kreditering: "

REMINDABLE_STATUSES = ("SENT", "PARTIALLY_PAID", "OVERDUE")

_EMAIL_ERRORS = (EmailNotConfiguredError, aiosmtplib.SMTPException, OSError, ValueError)


def transition(invoice: Invoice, new_status: str) -> None:
    allowed = VALID_TRANSITIONS.get(invoice.status, set())
    if new_status not in allowed:
        raise InvalidStatusTransitionError(invoice.status, new_status, allowed)
    invoice.status = new_status


@dataclass
class LineInput:
    description: str
    quantity: Decimal
    unit_price: Decimal
    vat_rate: Decimal | None = None
    product_code: str | None = None
    unit: str | None = None


@dataclass
class Totals:
    lines: list[dict]
    subtotal: Decimal
    vat_amount: Decimal
    total_amount: Decimal


def compute_totals(lines: list[LineInput], default_vat_rate: Decimal) -> Totals:
    """Line amounts and invoice totals, each line rounded to øre half up.

    ``total_amount == subtotal + vat_amount`` holds exactly.
    """
    computed = []
    for position, line in enumerate(lines, 1):
        rate = line.vat_rate if line.vat_rate is not None else default_vat_rate
        amount = to_money(line.quantity * line.unit_price)
        computed.append({
            "position": position,
            "description": line.description,
            "quantity": line.quantity,
            "unit_price": to_money(line.unit_price),
            "vat_rate": rate,
            "amount": amount,
            "vat_amount": to_money(amount * rate),
            "product_code": line.product_code,
            "unit": line.unit,
        })
    subtotal = money_sum(line["amount"] for line in computed)
    vat_amount = money_sum(line["vat_amount"] for line in computed)
    total_amount = subtotal + vat_amount
    largest = max(
        [abs(total_amount), abs(subtotal)]
        + [abs(line["amount"]) for line in computed]
        + [abs(line["vat_amount"]) for line in computed]
    )
    if largest > MAX_AMOUNT:
        raise AmountOutOfRangeError(
            f"Invoice amounts may not exceed {MAX_AMOUNT} (got {largest})"
        )
    return Totals(
        lines=computed,
        subtotal=subtotal,
        vat_amount=vat_amount,
        total_amount=total_amount,
    )


def apply_totals(invoice: Invoice, totals: Totals) -> None:
    """Replace the invoice's lines and amounts with ``totals``."""
    invoice.lines = [InvoiceLine(**line) for line in totals.lines]
    invoice.subtotal = totals.subtotal
    invoice.vat_amount = totals.vat_amount
    invoice.total_amount = totals.total_amount


async def _get_invoice(db: AsyncSession, invoice_id: UUID) -> Invoice:
    invoice = await invoice_repo.get_by_id(db, invoice_id, for_update=True)
    if not invoice:
        raise NotFoundError("Invoice not found")
    return invoice


async def send_invoice(db: AsyncSession, invoice_id: UUID) -> Invoice:
    """Render, store and email a draft invoice, then mark it SENT.

    A failed email is logged and committed, the invoice stays DRAFT and
    ``DependencyError`` is raised.
    """
    invoice = await _get_invoice(db, invoice_id)
    if invoice.status != "DRAFT":
        raise AlreadySentError(invoice.invoice_number, invoice.status)

    pdf = await asyncio.to_thread(generate_invoice_pdf, invoice)
    key = f"invoices/{invoice.id}/{invoice.invoice_number}.pdf"
    try:
        invoice.pdf_url = await storage.store(key, pdf)
    except (OSError, ValueError) as exc:
        logger.exception("Storing PDF for invoice %s failed", invoice.invoice_number)
        raise DependencyError("Could not store invoice PDF") from exc

    subject = invoice_subject(invoice)
    recipient = invoice.customer.email
    try:
        message_id = await send_invoice_email(invoice, pdf)
    except _EMAIL_ERRORS as exc:
        logger.error("Emailing invoice %s failed: %s", invoice.invoice_number, exc)
        db.add(EmailLog(
            invoice_id=invoice.id,
            recipient=recipient,
            subject=subject,
            status="FAILED",
            error=str(exc)[:2000],
        ))
        await write_audit_log(
            db,
            action="INVOICE_SEND_FAILED",
            resource_type="invoice",
            resource_id=invoice.id,
            invoice_id=invoice.id,
            api_credential_id=invoice.api_credential_id,
            details={"recipient": recipient, "error": str(exc)[:500]},
        )
        await webhook_service.flush_outbox(db)
        raise DependencyError(f"Sending invoice {invoice.invoice_number} by email failed") from exc

    db.add(EmailLog(
        invoice_id=invoice.id,
        recipient=recipient,
        subject=subject,
        status="SENT",
        message_id=message_id,
    ))
    transition(invoice, "SENT")
    invoice.sent_at = datetime.now(timezone.utc)
    await db.flush()

    await webhook_service.notify_invoice_sent(db, invoice, "email")
    await write_audit_log(
        db,
        action="INVOICE_SENT",
        resource_type="invoice",
        resource_id=invoice.id,
        invoice_id=invoice.id,
        api_credential_id=invoice.api_credential_id,
        details={"recipient": recipient, "message_id": message_id},
    )
    logger.info("Invoice %s sent", invoice.invoice_number)
    return invoice


async def create_credit_note(
    db: AsyncSession, invoice_id: UUID, reason: str | None = None
) -> Invoice:
    """Issue a credit note reversing ``invoice_id`` in full and mark it CREDITED."""
    original = await _get_invoice(db, invoice_id)
    if original.is_credit_note:
        raise StateError(f"{original.invoice_number} is a credit note and cannot be credited")
    if original.status not in ("SENT", "PARTIALLY_PAID", "OVERDUE"):
        raise StateError(
            f"Invoice {original.invoice_number} cannot be credited (status {original.status})"
        )

    today = date.today()
    number = await next_invoice_number(db, today.year)
    totals = compute_totals(
        [
            LineInput(
                description=f"{CREDIT_LINE_PREFIX}{line.description}",
                quantity=-line.quantity,
                unit_price=line.unit_price,
                vat_rate=line.vat_rate,
                product_code=line.product_code,
                unit=line.unit,
            )
            for line in original.lines
        ],
        Decimal("0"),
    )
    notes = f"Kreditnota for faktura {original.invoice_number}"
    if reason:
        notes = f"{notes}\n{reason}"

    credit_note = Invoice(
        id=uuid.uuid4(),
        invoice_number=number,
        kid=credit_note_kid.generate(
            customer_number=original.customer.customer_number, invoice_number=number
        ),
        status="DRAFT",
        currency=original.currency,
        source=original.source,
        source_order_id=None,
        customer=original.customer,
        organization=original.organization,
        api_credential_id=original.api_credential_id,
        issue_date=today,
        due_date=today,
        notes=notes,
        callback_url=original.callback_url,
        credited_invoice_id=original.id,
    )
    apply_totals(credit_note, totals)
    db.add(credit_note)
    await db.flush()

    transition(original, "CREDITED")
    original.credit_note_id = credit_note.id
    await db.flush()

    await webhook_service.notify_credit_note_created(db, credit_note, original, reason)
    await write_audit_log(
        db,
        action="CREDIT_NOTE_CREATED",
        resource_type="invoice",
        resource_id=credit_note.id,
        invoice_id=original.id,
        api_credential_id=original.api_credential_id,
        details={
            "credit_note_number": credit_note.invoice_number,
            "original_invoice_number": original.invoice_number,
            "amount": str(credit_note.total_amount),
            "reason": reason,
        },
    )
    logger.info(
        "Credit note %s issued for invoice %s",
        credit_note.invoice_number, original.invoice_number,
    )
    return credit_note


async def refresh_overdue_invoices(db: AsyncSession, *, today: date | None = None) -> int:
    """Flip unpaid invoices past their due date to OVERDUE and notify partners."""
    today = today or date.today()
    invoices = await invoice_repo.get_overdue_candidates(db, today)
    for invoice in invoices:
        paid = await payment_repo.get_completed_total(db, invoice.id)
        remaining = to_money(invoice.total_amount - paid)
        transition(invoice, "OVERDUE")
        await webhook_service.notify_invoice_overdue(db, invoice, remaining, today)
        await write_audit_log(
            db,
            action="INVOICE_OVERDUE",
            resource_type="invoice",
            resource_id=invoice.id,
            invoice_id=invoice.id,
            details={"due_date": invoice.due_date.isoformat(), "remaining_amount": str(remaining)},
        )
    await webhook_service.flush_outbox(db)
    if invoices:
        logger.info("Marked %d invoice(s) overdue", len(invoices))
    return len(invoices)


async def send_reminder(
    db: AsyncSession, invoice_id: UUID, reminder_number: int | None = None
) -> Invoice:
    """Email a numbered payment reminder ("Purring N") for an unpaid invoice.

    Without ``reminder_number`` the next number after those already sent is
    used. A failed email is logged and committed and ``DependencyError`` is
    raised; the reminder count only moves on success.
    """
    invoice = await _get_invoice(db, invoice_id)
    if invoice.is_credit_note or invoice.status not in REMINDABLE_STATUSES:
        raise StateError(
            f"Invoice {invoice.invoice_number} has no outstanding payment (status {invoice.status})"
        )

    number = reminder_number or (invoice.reminder_count or 0) + 1
    paid = await payment_repo.get_completed_total(db, invoice.id)
    remaining = to_money(invoice.total_amount - paid)
    pdf = await asyncio.to_thread(generate_invoice_pdf, invoice)
    subject = reminder_subject(invoice, number)
    recipient = invoice.customer.email

    try:
        message_id = await send_reminder_email(invoice, pdf, number, remaining)
    except _EMAIL_ERRORS as exc:
        logger.error(
            "Emailing reminder %d for invoice %s failed: %s", number, invoice.invoice_number, exc
        )
        db.add(EmailLog(
            invoice_id=invoice.id,
            recipient=recipient,
            subject=subject,
            status="FAILED",
            error=str(exc)[:2000],
        ))
        await write_audit_log(
            db,
            action="REMINDER_SEND_FAILED",
            resource_type="invoice",
            resource_id=invoice.id,
            invoice_id=invoice.id,
            api_credential_id=invoice.api_credential_id,
            details={"reminder_number": number, "error": str(exc)[:500]},
        )
        await webhook_service.flush_outbox(db)
        raise DependencyError(
            f"Sending reminder {number} for invoice {invoice.invoice_number} failed"
        ) from exc

    db.add(EmailLog(
        invoice_id=invoice.id,
        recipient=recipient,
        subject=subject,
        status="SENT",
        message_id=message_id,
    ))
    invoice.reminder_count = max(invoice.reminder_count or 0, number)
    invoice.last_reminder_at = datetime.now(timezone.utc)
    await db.flush()

    await webhook_service.notify_reminder_sent(db, invoice, number, remaining)
    await write_audit_log(
        db,
        action="REMINDER_SENT",
        resource_type="invoice",
        resource_id=invoice.id,
        invoice_id=invoice.id,
        api_credential_id=invoice.api_credential_id,
        details={
            "reminder_number": number,
            "recipient": recipient,
            "remaining_amount": str(remaining),
            "message_id": message_id,
        },
    )
    logger.info("Reminder %d for invoice %s sent", number, invoice.invoice_number)
    return invoice


async def send_due_reminders(db: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    """Remind every OVERDUE invoice whose last reminder is older than the interval.

    Stops at ``reminder_max_count`` reminders per invoice. Each reminder is
    committed on its own.
    """
    now = now or datetime.now(timezone.utc)
    invoice_ids = await invoice_repo.get_reminder_candidates(
        db,
        reminded_before=now - timedelta(days=settings.reminder_interval_days),
        max_count=settings.reminder_max_count,
    )
    sent = failed = 0
    for invoice_id in invoice_ids:
        try:
            await send_reminder(db, invoice_id)
        except DependencyError:
            failed += 1
            continue
        except StateError:
            # Paid or credited since it was picked
            await db.rollback()
            continue
        await webhook_service.flush_outbox(db)
        sent += 1
    if invoice_ids:
        logger.info("Payment reminders: %d sent, %d failed", sent, failed)
    return {"sent": sent, "failed": failed}
