from decimal import Decimal

from src.models.orm.customer import Customer
from src.models.orm.email_log import EmailLog
from src.models.orm.invoice import Invoice, InvoiceAttachment, InvoiceLine
from src.models.orm.organization import Organization
from src.models.orm.payment import Payment


def payment_to_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "invoice_id": payment.invoice_id,
        "amount": payment.amount,
        "method": payment.method,
        "provider": payment.provider,
        "provider_ref": payment.provider_ref,
        "status": payment.status,
        "paid_at": payment.paid_at,
    }


def line_to_dict(line: InvoiceLine) -> dict:
    return {
        "position": line.position,
        "description": line.description,
        "quantity": line.quantity,
        "unit_price": line.unit_price,
        "vat_rate": line.vat_rate,
        "amount": line.amount,
        "vat_amount": line.vat_amount,
        "product_code": line.product_code,
        "unit": line.unit,
    }


def attachment_to_dict(attachment: InvoiceAttachment) -> dict:
    return {
        "file_name": attachment.file_name,
        "file_url": attachment.file_url,
        "mime_type": attachment.mime_type,
    }


def customer_to_dict(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "customer_number": customer.customer_number,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone,
        "org_number": customer.org_number,
        "address": customer.address,
        "postal_code": customer.postal_code,
        "city": customer.city,
        "country": customer.country,
    }


def organization_to_dict(organization: Organization) -> dict:
    return {
        "id": organization.id,
        "name": organization.name,
        "org_number": organization.org_number,
    }


def email_log_to_dict(log: EmailLog) -> dict:
    return {
        "recipient": log.recipient,
        "subject": log.subject,
        "status": log.status,
        "message_id": log.message_id,
        "error": log.error,
        "created_at": log.created_at,
    }


def invoice_status_to_dict(
    invoice: Invoice, paid_amount: Decimal, payments: list[Payment]
) -> dict:
    return {
        "source_order_id": invoice.source_order_id,
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "total_amount": invoice.total_amount,
        "vat_amount": invoice.vat_amount,
        "paid_amount": paid_amount,
        "remaining_amount": max(invoice.total_amount - paid_amount, Decimal("0.00")),
        "due_date": invoice.due_date,
        "kid": invoice.kid,
        "created_at": invoice.created_at,
        "sent_at": invoice.sent_at,
        "paid_at": invoice.paid_at,
        "payments": [payment_to_dict(p) for p in payments],
    }


def invoice_list_item_to_dict(invoice: Invoice) -> dict:
    return {
        "source": invoice.source,
        "source_order_id": invoice.source_order_id,
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "total_amount": invoice.total_amount,
        "currency": invoice.currency,
        "customer_name": invoice.customer.name if invoice.customer else None,
        "due_date": invoice.due_date,
        "created_at": invoice.created_at,
    }


def invoice_detail_to_dict(
    invoice: Invoice,
    paid_amount: Decimal,
    payments: list[Payment],
    email_logs: list[EmailLog] | None = None,
    events: list[dict] | None = None,
) -> dict:
    return {
        **invoice_status_to_dict(invoice, paid_amount, payments),
        "source": invoice.source,
        "currency": invoice.currency,
        "subtotal": invoice.subtotal,
        "issue_date": invoice.issue_date,
        "notes": invoice.notes,
        "callback_url": invoice.callback_url,
        "internal_reference": invoice.internal_reference,
        "preferred_payment_method": invoice.preferred_payment_method,
        "metadata": invoice.order_metadata,
        "pdf_url": invoice.pdf_url,
        "credit_note_id": invoice.credit_note_id,
        "customer": customer_to_dict(invoice.customer),
        "organization": organization_to_dict(invoice.organization),
        "lines": [line_to_dict(line) for line in invoice.lines],
        "attachments": [attachment_to_dict(a) for a in invoice.attachments],
        "email_logs": [email_log_to_dict(log) for log in email_logs or []],
        "events": events or [],
    }
