import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from src.audit.service import write_audit_log
from src.core.exceptions import NotFoundError, StateError
from src.core.money import to_money
from src.mappers.invoice import payment_to_dict
from src.models.orm.payment import Payment
from src.repositories import invoice_repo, payment_repo
from src.services import webhook_service
from src.services.invoice_service import transition

logger = logging.getLogger(__name__)

_CLOSED_STATUSES = {"PAID", "CREDITED", "CANCELLED"}


def _provider_for(method: str) -> str:
    return "Bank" if method == "BANK_TRANSFER" else method


async def get_paid_amount(db: AsyncSession, invoice_id: UUID) -> Decimal:
    return to_money(await payment_repo.get_completed_total(db, invoice_id))


async def list_payments(db: AsyncSession, invoice_id: UUID) -> list[dict]:
    invoice = await invoice_repo.get_by_id(db, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice not found")
    payments = await payment_repo.list_for_invoice(db, invoice_id)
    return [payment_to_dict(p) for p in payments]


async def register_payment(
    db: AsyncSession,
    *,
    invoice_id: UUID,
    amount: Decimal,
    method: str,
    provider_ref: str | None = None,
    paid_at: datetime | None = None,
) -> dict:
    """Record a completed payment and move the invoice to PARTIALLY_PAID or PAID."""
    invoice = await invoice_repo.get_by_id(db, invoice_id, for_update=True)
    if not invoice:
        raise NotFoundError("Invoice not found")
    if invoice.status in _CLOSED_STATUSES:
        raise StateError(
            f"Invoice {invoice.invoice_number} does not accept payments (status {invoice.status})"
        )

    amount = to_money(amount)
    already_paid = await get_paid_amount(db, invoice.id)
    outstanding = invoice.total_amount - already_paid
    if amount > outstanding:
        raise StateError(
            f"Payment of {amount} exceeds the outstanding amount {outstanding} "
            f"on invoice {invoice.invoice_number}"
        )

    payment = Payment(
        id=uuid.uuid4(),
        invoice_id=invoice.id,
        amount=amount,
        method=method,
        provider=_provider_for(method),
        provider_ref=provider_ref,
        status="COMPLETED",
        paid_at=paid_at or datetime.now(timezone.utc),
    )
    db.add(payment)
    await db.flush()

    paid = already_paid + amount
    remaining = to_money(invoice.total_amount - paid)
    if paid >= invoice.total_amount:
        transition(invoice, "PAID")
        invoice.paid_at = payment.paid_at
        await webhook_service.notify_invoice_paid(db, invoice, payment)
    else:
        if invoice.status != "PARTIALLY_PAID":
            transition(invoice, "PARTIALLY_PAID")
        await webhook_service.notify_payment_partial(db, invoice, payment, remaining)

    await write_audit_log(
        db,
        action="PAYMENT_RECEIVED",
        resource_type="payment",
        resource_id=payment.id,
        invoice_id=invoice.id,
        api_credential_id=invoice.api_credential_id,
        details={
            "amount": str(amount),
            "method": method,
            "provider_ref": provider_ref,
            "status": invoice.status,
        },
    )
    logger.info(
        "Payment of %s registered on invoice %s (%s)",
        amount, invoice.invoice_number, invoice.status,
    )
    return {
        **payment_to_dict(payment),
        "invoice_status": invoice.status,
        "paid_amount": paid,
        "remaining_amount": remaining,
    }
