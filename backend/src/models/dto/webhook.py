from datetime import date, datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from src.models.dto.common import ApiModel, Money


class WebhookEventType(str, Enum):
    INVOICE_CREATED = "invoice.created"
    INVOICE_UPDATED = "invoice.updated"
    INVOICE_SENT = "invoice.sent"
    INVOICE_OVERDUE = "invoice.overdue"
    INVOICE_CANCELLED = "invoice.cancelled"
    INVOICE_PAID = "invoice.paid"
    PAYMENT_PARTIAL = "payment.partial"
    CREDIT_NOTE_CREATED = "creditnote.created"
    REMINDER_SENT = "reminder.sent"


class InvoiceCreatedData(ApiModel):
    status: str
    total_amount: Money
    vat_amount: Money
    due_date: date
    currency: str
    kid: str | None = None
    customer_name: str
    customer_email: str


class InvoiceUpdatedData(ApiModel):
    status: str
    total_amount: Money
    vat_amount: Money
    due_date: date
    currency: str
    changed_fields: list[str]


class InvoiceSentData(ApiModel):
    status: str
    sent_at: datetime
    sent_to: str
    method: Literal["email", "paper", "ehf"]


class InvoicePaidData(ApiModel):
    status: str
    paid_at: datetime
    paid_amount: Money
    payment_method: str
    transaction_id: str | None = None


class PaymentPartialData(ApiModel):
    status: str
    paid_amount: Money
    remaining_amount: Money
    total_amount: Money
    payment_method: str
    paid_at: datetime


class InvoiceOverdueData(ApiModel):
    status: str
    due_date: date
    days_overdue: int
    total_amount: Money
    remaining_amount: Money


class ReminderSentData(ApiModel):
    status: str
    reminder_number: int
    sent_at: datetime
    sent_to: str
    due_date: date
    remaining_amount: Money


class InvoiceCancelledData(ApiModel):
    status: str
    reason: str | None = None


class CreditNoteCreatedData(ApiModel):
    credit_note_number: str
    credit_note_id: UUID
    original_invoice_number: str
    credit_amount: Money
    reason: str | None = None


class WebhookEvent(ApiModel):
    event_id: UUID
    event: WebhookEventType
    timestamp: datetime
    source_order_id: str | None = None
    invoice_id: UUID
    invoice_number: str
    data: dict


class WebhookRetryResponse(ApiModel):
    retried: int
    failed: int
