import logging
import uuid
from datetime import date, datetime, timedelta

from pydantic.alias_generators import to_camel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.audit.service import list_invoice_events, write_audit_log
from src.core.config import settings
from src.core.exceptions import (
    CannotCancelPaidError,
    DependencyError,
    DuplicateOrderError,
    NoOrganizationError,
    NotEditableError,
    NotFoundError,
    StateError,
)
from src.mappers.invoice import (
    invoice_detail_to_dict,
    invoice_list_item_to_dict,
    invoice_status_to_dict,
)
from src.models.dto.order import (
    OrderAttachment,
    OrderLine,
    ReceiveOrderRequest,
    UpdateOrderRequest,
)
from src.models.orm.api_credential import ApiCredential
from src.models.orm.customer import Customer
from src.models.orm.invoice import Invoice, InvoiceAttachment
from src.models.orm.organization import Organization
from src.repositories import customer_repo, invoice_repo, organization_repo, payment_repo
from src.services import invoice_service, webhook_service
from src.services.identifiers import next_invoice_number, order_kid
from src.services.invoice_service import LineInput, apply_totals, compute_totals

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100

_SOURCE_ORDER_CONSTRAINT = "uq_invoices_source_order"
_CUSTOMER_EMAIL_CONSTRAINT = "uq_customers_email"


def _line_inputs(lines: list[OrderLine]) -> list[LineInput]:
    return [
        LineInput(
            description=line.description,
            quantity=line.quantity,
            unit_price=line.unit_price,
            vat_rate=line.vat_rate,
            product_code=line.product_code,
            unit=line.unit,
        )
        for line in lines
    ]


def _attachments(attachments: list[OrderAttachment] | None) -> list[InvoiceAttachment]:
    return [
        InvoiceAttachment(file_name=a.file_name, file_url=a.file_url, mime_type=a.mime_type)
        for a in attachments or []
    ]


def _merge_customer(customer: Customer, fields: dict) -> list[str]:
    changed = []
    for key, value in fields.items():
        if value is not None and getattr(customer, key) != value:
            setattr(customer, key, value)
            changed.append(key)
    return changed


async def _upsert_customer(db: AsyncSession, data: ReceiveOrderRequest) -> Customer:
    incoming = data.customer.model_dump(exclude={"email"})
    customer = await customer_repo.get_by_email(db, data.customer.email)
    if customer:
        _merge_customer(customer, incoming)
        return customer

    customer = Customer(
        customer_number=await customer_repo.next_customer_number(db),
        email=data.customer.email.lower(),
        **{k: v for k, v in incoming.items() if v is not None},
    )
    db.add(customer)
    await db.flush()
    logger.info("Created customer %d for %s", customer.customer_number, data.source)
    return customer


async def _resolve_organization(db: AsyncSession, data: ReceiveOrderRequest) -> Organization:
    if data.organization_id:
        organization = await organization_repo.get_by_id(db, data.organization_id)
        if not organization:
            raise NoOrganizationError(f"Organization {data.organization_id} not found")
        return organization
    organization = await organization_repo.get_default(
        db, settings.default_organization_number or None
    )
    if not organization:
        raise NoOrganizationError("No default organization is configured")
    return organization


async def _find_invoice(
    db: AsyncSession, source_order_id: str, source: str | None, *, for_update: bool = False
) -> Invoice:
    invoice = await invoice_repo.get_by_source_order(
        db, source_order_id, source, for_update=for_update
    )
    if not invoice:
        raise NotFoundError(f"Order {source_order_id} not found")
    return invoice


async def receive_order(
    db: AsyncSession, data: ReceiveOrderRequest, *, credential: ApiCredential
) -> dict:
    """Turn a partner order into a DRAFT invoice.

    An order is accepted once per (source, source_order_id); a repeat raises
    ``DuplicateOrderError`` naming the existing invoice. When a concurrent
    order registers the same new customer first, the transaction is rolled
    back and the order is taken once more against that customer.
    """
    credential_id = credential.id
    try:
        return await _receive_order(db, data, credential_id)
    except IntegrityError as exc:
        if _CUSTOMER_EMAIL_CONSTRAINT not in str(exc.orig):
            raise
        await db.rollback()
        webhook_service.discard_outbox(db)
        winner = await invoice_repo.get_by_source_order(db, data.source_order_id, data.source)
        if winner:
            raise DuplicateOrderError(
                data.source, data.source_order_id, winner.invoice_number
            ) from exc
        logger.info(
            "Customer for order %s from %s was created concurrently, retrying",
            data.source_order_id, data.source,
        )
        return await _receive_order(db, data, credential_id)


async def _receive_order(
    db: AsyncSession, data: ReceiveOrderRequest, credential_id: uuid.UUID
) -> dict:
    existing = await invoice_repo.get_by_source_order(db, data.source_order_id, data.source)
    if existing:
        raise DuplicateOrderError(data.source, data.source_order_id, existing.invoice_number)

    totals = compute_totals(_line_inputs(data.lines), settings.default_vat_rate)
    customer = await _upsert_customer(db, data)
    organization = await _resolve_organization(db, data)

    issue_date = data.issue_date or date.today()
    due_days = data.due_days if data.due_days is not None else settings.default_due_days
    invoice_number = await next_invoice_number(db, issue_date.year)

    invoice = Invoice(
        id=uuid.uuid4(),
        invoice_number=invoice_number,
        kid=order_kid.generate(
            customer_number=customer.customer_number,
            invoice_number=invoice_number,
            source=data.source,
            source_order_id=data.source_order_id,
        ),
        status="DRAFT",
        currency=data.currency or settings.default_currency,
        source=data.source,
        source_order_id=data.source_order_id,
        customer=customer,
        organization=organization,
        api_credential_id=credential_id,
        issue_date=issue_date,
        due_date=issue_date + timedelta(days=due_days),
        notes=data.notes,
        callback_url=data.callback_url,
        internal_reference=data.internal_reference,
        preferred_payment_method=data.preferred_payment_method,
        order_metadata=data.metadata,
        attachments=_attachments(data.attachments),
    )
    apply_totals(invoice, totals)
    db.add(invoice)
    try:
        await db.flush()
    except IntegrityError as exc:
        if _SOURCE_ORDER_CONSTRAINT not in str(exc.orig):
            raise
        # Lost the race against a concurrent delivery of the same order
        await db.rollback()
        webhook_service.discard_outbox(db)
        winner = await invoice_repo.get_by_source_order(db, data.source_order_id, data.source)
        raise DuplicateOrderError(
            data.source, data.source_order_id, winner.invoice_number if winner else None
        ) from exc

    await write_audit_log(
        db,
        action="ORDER_RECEIVED",
        resource_type="invoice",
        resource_id=invoice.id,
        invoice_id=invoice.id,
        api_credential_id=credential_id,
        details={
            "source": data.source,
            "source_order_id": data.source_order_id,
            "total_amount": str(invoice.total_amount),
        },
    )
    await webhook_service.notify_invoice_created(db, invoice)
    logger.info(
        "Order %s from %s received as invoice %s",
        data.source_order_id, data.source, invoice.invoice_number,
    )

    message = f"Invoice {invoice.invoice_number} created"
    if data.auto_send:
        try:
            invoice = await invoice_service.send_invoice(db, invoice.id)
            message = f"Invoice {invoice.invoice_number} created and sent"
        except DependencyError:
            message = f"Invoice {invoice.invoice_number} created, but sending it failed"

    return {
        "success": True,
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "total_amount": invoice.total_amount,
        "vat_amount": invoice.vat_amount,
        "due_date": invoice.due_date,
        "kid": invoice.kid,
        "message": message,
    }


async def get_order_status(
    db: AsyncSession, source_order_id: str, source: str | None = None
) -> dict:
    invoice = await _find_invoice(db, source_order_id, source)
    paid = await payment_repo.get_completed_total(db, invoice.id)
    payments = await payment_repo.list_for_invoice(db, invoice.id)
    return invoice_status_to_dict(invoice, paid, payments)


async def list_orders(
    db: AsyncSession,
    *,
    source: str | None = None,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int | None = None,
) -> dict:
    limit = min(max(limit or DEFAULT_LIST_LIMIT, 1), MAX_LIST_LIMIT)
    invoices = await invoice_repo.list_invoices(
        db, source=source, status=status, date_from=date_from, date_to=date_to, limit=limit
    )
    orders = [invoice_list_item_to_dict(inv) for inv in invoices]
    return {"orders": orders, "count": len(orders)}


async def get_invoice_details(
    db: AsyncSession, source_order_id: str, source: str | None = None
) -> dict:
    invoice = await _find_invoice(db, source_order_id, source)
    paid = await payment_repo.get_completed_total(db, invoice.id)
    payments = await payment_repo.list_for_invoice(db, invoice.id)
    email_logs = await invoice_repo.get_email_logs(db, invoice.id)
    events = await list_invoice_events(db, invoice.id)
    return invoice_detail_to_dict(invoice, paid, payments, email_logs, events)


async def cancel_order(
    db: AsyncSession,
    source_order_id: str,
    reason: str | None = None,
    source: str | None = None,
) -> dict:
    """Delete a draft, or credit an issued invoice. Paid invoices stay untouched."""
    invoice = await _find_invoice(db, source_order_id, source, for_update=True)
    number = invoice.invoice_number

    if invoice.status == "DRAFT":
        await webhook_service.notify_invoice_cancelled(db, invoice, reason)
        await write_audit_log(
            db,
            action="ORDER_CANCELLED",
            resource_type="invoice",
            resource_id=invoice.id,
            invoice_id=invoice.id,
            api_credential_id=invoice.api_credential_id,
            details={"source_order_id": source_order_id, "reason": reason, "action": "deleted"},
        )
        await db.delete(invoice)
        await db.flush()
        logger.info("Draft invoice %s deleted (order %s cancelled)", number, source_order_id)
        return {
            "success": True,
            "action": "deleted",
            "invoice_number": number,
            "message": f"Draft invoice {number} deleted",
        }

    if invoice.status in ("SENT", "PARTIALLY_PAID", "OVERDUE"):
        credit_note = await invoice_service.create_credit_note(db, invoice.id, reason)
        return {
            "success": True,
            "action": "credited",
            "invoice_number": number,
            "credit_note_id": credit_note.id,
            "credit_note_number": credit_note.invoice_number,
            "message": f"Invoice {number} credited by {credit_note.invoice_number}",
        }

    if invoice.status == "PAID":
        raise CannotCancelPaidError(number)
    raise StateError(f"Invoice {number} cannot be cancelled (status {invoice.status})")


async def update_order(
    db: AsyncSession,
    source_order_id: str,
    data: UpdateOrderRequest,
    source: str | None = None,
) -> dict:
    """Apply partial changes to a DRAFT invoice."""
    invoice = await _find_invoice(db, source_order_id, source, for_update=True)
    if invoice.status != "DRAFT":
        raise NotEditableError(invoice.invoice_number, invoice.status)

    provided = data.model_fields_set
    changed: list[str] = []

    if data.customer is not None:
        customer_changes = _merge_customer(
            invoice.customer, data.customer.model_dump(exclude_unset=True)
        )
        changed.extend(f"customer.{to_camel(key)}" for key in customer_changes)

    if data.lines is not None:
        apply_totals(invoice, compute_totals(_line_inputs(data.lines), settings.default_vat_rate))
        changed.extend(["lines", "subtotal", "vatAmount", "totalAmount"])

    if "issue_date" in provided or "due_days" in provided:
        due_days = (
            data.due_days if data.due_days is not None
            else (invoice.due_date - invoice.issue_date).days
        )
        invoice.issue_date = data.issue_date or invoice.issue_date
        invoice.due_date = invoice.issue_date + timedelta(days=due_days)
        changed.extend(["issueDate", "dueDate"])

    if "currency" in provided and data.currency:
        invoice.currency = data.currency
        changed.append("currency")

    for field in ("notes", "callback_url", "internal_reference"):
        if field in provided:
            setattr(invoice, field, getattr(data, field))
            changed.append(to_camel(field))

    if "metadata" in provided:
        invoice.order_metadata = data.metadata
        changed.append("metadata")

    if "attachments" in provided:
        invoice.attachments = _attachments(data.attachments)
        changed.append("attachments")

    await db.flush()
    if changed:
        await webhook_service.notify_invoice_updated(db, invoice, changed)
        await write_audit_log(
            db,
            action="ORDER_UPDATED",
            resource_type="invoice",
            resource_id=invoice.id,
            invoice_id=invoice.id,
            api_credential_id=invoice.api_credential_id,
            details={"changed_fields": changed},
        )
        logger.info("Invoice %s updated: %s", invoice.invoice_number, ", ".join(changed))

    paid = await payment_repo.get_completed_total(db, invoice.id)
    return invoice_status_to_dict(invoice, paid, [])


async def send_order_invoice(
    db: AsyncSession, source_order_id: str, source: str | None = None
) -> dict:
    invoice = await _find_invoice(db, source_order_id, source)
    invoice = await invoice_service.send_invoice(db, invoice.id)
    return {
        "success": True,
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "sent_at": invoice.sent_at,
        "message": f"Invoice {invoice.invoice_number} sent to {invoice.customer.email}",
    }
