"""Outbound partner webhooks.

Every notification is written to ``outgoing_webhooks`` as PENDING in the
caller's transaction. Delivery starts only after that transaction commits
(see ``flush_outbox``), so a crash mid-delivery leaves a row the retry sweep
can pick up again.
"""
import asyncio
import json
import logging
import time
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import httpx
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.database import async_session_factory
from src.core.security import compute_signature
from src.core.tasks import create_background_task
from src.models.dto.webhook import (
    CreditNoteCreatedData,
    InvoiceCancelledData,
    InvoiceCreatedData,
    InvoiceOverdueData,
    InvoicePaidData,
    InvoiceSentData,
    InvoiceUpdatedData,
    PaymentPartialData,
    ReminderSentData,
    WebhookEvent,
    WebhookEventType,
)
from src.models.orm.invoice import Invoice
from src.models.orm.payment import Payment
from src.models.orm.webhook import OutgoingWebhook
from src.repositories import api_credential_repo, webhook_repo

logger = logging.getLogger(__name__)

_OUTBOX_KEY = "webhook_outbox"


def _serialize(payload: dict) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _callback_url(invoice: Invoice) -> str | None:
    if invoice.callback_url:
        return invoice.callback_url
    metadata = invoice.order_metadata or {}
    url = metadata.get("callbackUrl")
    return url if isinstance(url, str) and url else None


async def send_webhook(
    db: AsyncSession,
    source_order_id: str | None,
    event: WebhookEventType,
    invoice: Invoice,
    data: BaseModel | dict,
) -> OutgoingWebhook | None:
    """Persist a PENDING notification for ``invoice`` and queue it for delivery.

    Returns None when the partner has neither a subscribed endpoint nor a
    callback URL.
    """
    endpoint = None
    if invoice.source:
        endpoint = await webhook_repo.find_endpoint(db, invoice.source, event.value)
    target_url = endpoint.url if endpoint else _callback_url(invoice)
    if not target_url:
        logger.debug("No webhook target for invoice %s (%s)", invoice.invoice_number, event.value)
        return None

    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)

    envelope = WebhookEvent(
        event_id=uuid.uuid4(),
        event=event,
        timestamp=datetime.now(timezone.utc),
        source_order_id=invoice.source_order_id or source_order_id,
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        data=data,
    )
    webhook = OutgoingWebhook(
        id=uuid.uuid4(),
        event_id=envelope.event_id,
        event_type=event.value,
        target_url=target_url,
        payload=envelope.model_dump(mode="json", by_alias=True),
        invoice_id=invoice.id,
        endpoint_id=endpoint.id if endpoint else None,
        api_credential_id=invoice.api_credential_id,
        status="PENDING",
        attempts=0,
    )
    db.add(webhook)
    await db.flush()
    db.info.setdefault(_OUTBOX_KEY, []).append(webhook.id)
    logger.info(
        "Queued %s webhook %s for invoice %s",
        event.value, envelope.event_id, invoice.invoice_number,
    )
    return webhook


async def flush_outbox(db: AsyncSession) -> list[UUID]:
    """Commit the session, then start delivery of every webhook it queued."""
    queued: list[UUID] = db.info.pop(_OUTBOX_KEY, [])
    await db.commit()
    for webhook_id in queued:
        create_background_task(deliver_webhook(webhook_id), name=f"webhook-{webhook_id}")
    return queued


def discard_outbox(db: AsyncSession) -> None:
    db.info.pop(_OUTBOX_KEY, None)


async def _signing_secret(db: AsyncSession, webhook: OutgoingWebhook) -> str | None:
    if webhook.endpoint_id:
        endpoint = await webhook_repo.get_endpoint(db, webhook.endpoint_id)
        if endpoint:
            return endpoint.secret
    if webhook.api_credential_id:
        credential = await api_credential_repo.get_by_id(db, webhook.api_credential_id)
        if credential:
            return credential.secret
    return None


async def _attempt_delivery(
    client: httpx.AsyncClient, webhook: OutgoingWebhook, secret: str | None
) -> str | None:
    """POST the stored payload once. Returns None on success, else the error text."""
    body = _serialize(webhook.payload)
    timestamp = str(int(time.time()))
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Event": webhook.event_type,
        "X-Webhook-Timestamp": timestamp,
        "X-Webhook-Id": str(webhook.event_id),
        "X-Webhook-Signature": compute_signature(secret, timestamp, body) if secret else "",
    }
    try:
        resp = await client.post(
            webhook.target_url,
            content=body.encode(),
            headers=headers,
            timeout=settings.webhook_timeout_seconds,
        )
    except httpx.TimeoutException:
        return f"Timed out after {settings.webhook_timeout_seconds:g}s"
    except httpx.HTTPError as exc:
        return f"{type(exc).__name__}: {exc}"
    if resp.is_success:
        return None
    return f"HTTP {resp.status_code}: {resp.reason_phrase}"


def _record_attempt(webhook: OutgoingWebhook, error: str | None, *, final: bool) -> None:
    webhook.attempts = (webhook.attempts or 0) + 1
    if error is None:
        webhook.status = "SENT"
        webhook.sent_at = datetime.now(timezone.utc)
        webhook.last_error = None
    else:
        webhook.status = "FAILED" if final else "RETRYING"
        webhook.last_error = error[:2000]


async def deliver_webhook(webhook_id: UUID, *, client: httpx.AsyncClient | None = None) -> str:
    """Run the full retry sequence for one webhook and return its final status.

    Attempt n failing waits base * 2**(n-1) seconds before attempt n+1;
    the last failure marks the row FAILED.
    """
    max_attempts = settings.webhook_max_attempts
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
    try:
        async with async_session_factory() as db:
            webhook = await webhook_repo.get_by_id(db, webhook_id)
            if not webhook:
                logger.warning("Webhook %s not found for delivery", webhook_id)
                return "MISSING"
            if webhook.status == "SENT":
                return webhook.status
            secret = await _signing_secret(db, webhook)

            for attempt in range(1, max_attempts + 1):
                error = await _attempt_delivery(client, webhook, secret)
                _record_attempt(webhook, error, final=attempt == max_attempts)
                await db.commit()
                if error is None:
                    logger.info(
                        "Webhook %s delivered to %s (%s)",
                        webhook.event_id, webhook.target_url, webhook.event_type,
                    )
                    break
                logger.warning(
                    "Webhook attempt %d/%d for %s failed: %s",
                    attempt, max_attempts, webhook.event_id, error,
                )
                if attempt < max_attempts:
                    await asyncio.sleep(settings.webhook_base_delay_seconds * 2 ** (attempt - 1))
            return webhook.status
    finally:
        if own_client:
            await client.aclose()


async def retry_failed_webhooks(
    db: AsyncSession, *, client: httpx.AsyncClient | None = None
) -> dict[str, int]:
    """One more delivery attempt for FAILED and abandoned rows.

    Picks up to ``webhook_retry_batch_size`` rows; rows locked by another
    sweep are skipped. Picked rows are claimed as RETRYING and committed
    before any request goes out, so no row lock or connection is held
    during network I/O. Each outcome is committed on its own.
    """
    stale_before = datetime.now(timezone.utc) - timedelta(minutes=settings.webhook_stale_after_minutes)
    candidates = await webhook_repo.get_retry_candidates(
        db, limit=settings.webhook_retry_batch_size, stale_before=stale_before
    )
    if not candidates:
        return {"retried": 0, "failed": 0}

    signing_secrets = {webhook.id: await _signing_secret(db, webhook) for webhook in candidates}
    for webhook in candidates:
        webhook.status = "RETRYING"
    await db.commit()

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
    retried = failed = 0
    try:
        for webhook in candidates:
            error = await _attempt_delivery(client, webhook, signing_secrets[webhook.id])
            _record_attempt(webhook, error, final=True)
            await db.commit()
            if error is None:
                retried += 1
            else:
                failed += 1
    finally:
        if own_client:
            await client.aclose()
    logger.info("Webhook retry sweep: %d delivered, %d still failing", retried, failed)
    return {"retried": retried, "failed": failed}


# ── Event builders ───────────────────────────────────────────────────────────


async def notify_invoice_created(db: AsyncSession, invoice: Invoice) -> OutgoingWebhook | None:
    return await send_webhook(
        db, invoice.source_order_id, WebhookEventType.INVOICE_CREATED, invoice,
        InvoiceCreatedData(
            status=invoice.status,
            total_amount=invoice.total_amount,
            vat_amount=invoice.vat_amount,
            due_date=invoice.due_date,
            currency=invoice.currency,
            kid=invoice.kid,
            customer_name=invoice.customer.name,
            customer_email=invoice.customer.email,
        ),
    )


async def notify_invoice_updated(
    db: AsyncSession, invoice: Invoice, changed_fields: list[str]
) -> OutgoingWebhook | None:
    return await send_webhook(
        db, invoice.source_order_id, WebhookEventType.INVOICE_UPDATED, invoice,
        InvoiceUpdatedData(
            status=invoice.status,
            total_amount=invoice.total_amount,
            vat_amount=invoice.vat_amount,
            due_date=invoice.due_date,
            currency=invoice.currency,
            changed_fields=changed_fields,
        ),
    )


async def notify_invoice_sent(
    db: AsyncSession, invoice: Invoice, method: str = "email"
) -> OutgoingWebhook | None:
    return await send_webhook(
        db, invoice.source_order_id, WebhookEventType.INVOICE_SENT, invoice,
        InvoiceSentData(
            status=invoice.status,
            sent_at=invoice.sent_at or datetime.now(timezone.utc),
            sent_to=invoice.customer.email,
            method=method,
        ),
    )


async def notify_invoice_paid(
    db: AsyncSession, invoice: Invoice, payment: Payment
) -> OutgoingWebhook | None:
    return await send_webhook(
        db, invoice.source_order_id, WebhookEventType.INVOICE_PAID, invoice,
        InvoicePaidData(
            status="PAID",
            paid_at=payment.paid_at or datetime.now(timezone.utc),
            paid_amount=payment.amount,
            payment_method=payment.method,
            transaction_id=payment.provider_ref,
        ),
    )


async def notify_payment_partial(
    db: AsyncSession, invoice: Invoice, payment: Payment, remaining_amount: Decimal
) -> OutgoingWebhook | None:
    return await send_webhook(
        db, invoice.source_order_id, WebhookEventType.PAYMENT_PARTIAL, invoice,
        PaymentPartialData(
            status="PARTIALLY_PAID",
            paid_amount=payment.amount,
            remaining_amount=remaining_amount,
            total_amount=invoice.total_amount,
            payment_method=payment.method,
            paid_at=payment.paid_at or datetime.now(timezone.utc),
        ),
    )


async def notify_invoice_overdue(
    db: AsyncSession, invoice: Invoice, remaining_amount: Decimal, today: date
) -> OutgoingWebhook | None:
    return await send_webhook(
        db, invoice.source_order_id, WebhookEventType.INVOICE_OVERDUE, invoice,
        InvoiceOverdueData(
            status="OVERDUE",
            due_date=invoice.due_date,
            days_overdue=(today - invoice.due_date).days,
            total_amount=invoice.total_amount,
            remaining_amount=remaining_amount,
        ),
    )


async def notify_invoice_cancelled(
    db: AsyncSession, invoice: Invoice, reason: str | None
) -> OutgoingWebhook | None:
    return await send_webhook(
        db, invoice.source_order_id, WebhookEventType.INVOICE_CANCELLED, invoice,
        InvoiceCancelledData(status="CANCELLED", reason=reason),
    )


async def notify_credit_note_created(
    db: AsyncSession, credit_note: Invoice, original: Invoice, reason: str | None
) -> OutgoingWebhook | None:
    return await send_webhook(
        db, original.source_order_id, WebhookEventType.CREDIT_NOTE_CREATED, original,
        CreditNoteCreatedData(
            credit_note_number=credit_note.invoice_number,
            credit_note_id=credit_note.id,
            original_invoice_number=original.invoice_number,
            credit_amount=-credit_note.total_amount,
            reason=reason,
        ),
    )


async def notify_reminder_sent(
    db: AsyncSession, invoice: Invoice, reminder_number: int, remaining_amount: Decimal
) -> OutgoingWebhook | None:
    return await send_webhook(
        db, invoice.source_order_id, WebhookEventType.REMINDER_SENT, invoice,
        ReminderSentData(
            status=invoice.status,
            reminder_number=reminder_number,
            sent_at=invoice.last_reminder_at or datetime.now(timezone.utc),
            sent_to=invoice.customer.email,
            due_date=invoice.due_date,
            remaining_amount=remaining_amount,
        ),
    )
