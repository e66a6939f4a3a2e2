"""Tests for webhook queuing, signing and retry delivery."""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from src.core.security import compute_signature, verify_signature
from src.models.dto.webhook import WebhookEventType
from src.models.orm.webhook import OutgoingWebhook
from src.services import webhook_service
from src.services.webhook_service import (
    deliver_webhook,
    discard_outbox,
    flush_outbox,
    notify_credit_note_created,
    notify_payment_partial,
    notify_reminder_sent,
    retry_failed_webhooks,
    send_webhook,
)
from tests.factories import (
    make_credential,
    make_endpoint,
    make_invoice,
    make_outgoing_webhook,
    make_payment,
)


def _session_factory(db):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=db)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


def _recording_client(responses):
    """AsyncClient whose transport answers from ``responses`` in order."""
    requests: list[httpx.Request] = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(answer, Exception):
            raise answer
        return httpx.Response(answer)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


def _queued(mock_db) -> list[OutgoingWebhook]:
    return [c.args[0] for c in mock_db.add.call_args_list if isinstance(c.args[0], OutgoingWebhook)]


class TestSendWebhook:
    @pytest.mark.asyncio
    async def test_subscribed_endpoint_wins(self, mock_db):
        endpoint = make_endpoint()
        invoice = make_invoice()
        with patch("src.services.webhook_service.webhook_repo") as repo:
            repo.find_endpoint = AsyncMock(return_value=endpoint)
            webhook = await send_webhook(
                mock_db, "A-1", WebhookEventType.INVOICE_CREATED, invoice, {"status": "DRAFT"}
            )

        repo.find_endpoint.assert_awaited_once_with(mock_db, "acme", "invoice.created")
        assert webhook.target_url == endpoint.url
        assert webhook.endpoint_id == endpoint.id
        assert webhook.status == "PENDING"
        assert webhook.attempts == 0
        assert mock_db.info["webhook_outbox"] == [webhook.id]

    @pytest.mark.asyncio
    async def test_envelope_shape(self, mock_db):
        invoice = make_invoice()
        with patch("src.services.webhook_service.webhook_repo") as repo:
            repo.find_endpoint = AsyncMock(return_value=None)
            webhook = await send_webhook(
                mock_db, "A-1", WebhookEventType.INVOICE_CREATED, invoice, {"status": "DRAFT"}
            )

        payload = webhook.payload
        assert set(payload) == {
            "eventId", "event", "timestamp", "sourceOrderId", "invoiceId", "invoiceNumber", "data",
        }
        assert payload["event"] == "invoice.created"
        assert payload["eventId"] == str(webhook.event_id)
        assert payload["invoiceId"] == str(invoice.id)
        assert payload["invoiceNumber"] == "2026-000001"
        assert payload["sourceOrderId"] == "A-1"

    @pytest.mark.asyncio
    async def test_falls_back_to_callback_url(self, mock_db):
        invoice = make_invoice(callback_url="https://shop.example.com/cb")
        with patch("src.services.webhook_service.webhook_repo") as repo:
            repo.find_endpoint = AsyncMock(return_value=None)
            webhook = await send_webhook(
                mock_db, "A-1", WebhookEventType.INVOICE_SENT, invoice, {}
            )
        assert webhook.target_url == "https://shop.example.com/cb"
        assert webhook.endpoint_id is None

    @pytest.mark.asyncio
    async def test_callback_url_from_metadata(self, mock_db):
        invoice = make_invoice(callback_url=None)
        invoice.order_metadata = {"callbackUrl": "https://shop.example.com/meta"}
        with patch("src.services.webhook_service.webhook_repo") as repo:
            repo.find_endpoint = AsyncMock(return_value=None)
            webhook = await send_webhook(
                mock_db, "A-1", WebhookEventType.INVOICE_SENT, invoice, {}
            )
        assert webhook.target_url == "https://shop.example.com/meta"

    @pytest.mark.asyncio
    async def test_no_target_skips(self, mock_db):
        invoice = make_invoice(callback_url=None)
        with patch("src.services.webhook_service.webhook_repo") as repo:
            repo.find_endpoint = AsyncMock(return_value=None)
            webhook = await send_webhook(
                mock_db, "A-1", WebhookEventType.INVOICE_SENT, invoice, {}
            )
        assert webhook is None
        mock_db.add.assert_not_called()
        assert "webhook_outbox" not in mock_db.info

    @pytest.mark.asyncio
    async def test_payment_partial_data(self, mock_db):
        invoice = make_invoice(status="PARTIALLY_PAID")
        payment = make_payment(invoice_id=invoice.id)
        with patch("src.services.webhook_service.webhook_repo") as repo:
            repo.find_endpoint = AsyncMock(return_value=None)
            webhook = await notify_payment_partial(mock_db, invoice, payment, Decimal("625.00"))

        data = webhook.payload["data"]
        assert webhook.event_type == "payment.partial"
        assert data["paidAmount"] == 625.0
        assert data["remainingAmount"] == 625.0
        assert data["totalAmount"] == 1250.0
        assert data["paymentMethod"] == "BANK_TRANSFER"

    @pytest.mark.asyncio
    async def test_credit_note_reports_positive_amount(self, mock_db):
        original = make_invoice(status="CREDITED")
        credit_note = make_invoice(invoice_number="2026-000002", source_order_id=None)
        credit_note.total_amount = Decimal("-1250.00")
        with patch("src.services.webhook_service.webhook_repo") as repo:
            repo.find_endpoint = AsyncMock(return_value=None)
            webhook = await notify_credit_note_created(mock_db, credit_note, original, "Returned")

        payload = webhook.payload
        assert payload["invoiceId"] == str(original.id)
        assert payload["sourceOrderId"] == "A-1"
        assert payload["data"]["creditAmount"] == 1250.0
        assert payload["data"]["creditNoteNumber"] == "2026-000002"
        assert payload["data"]["originalInvoiceNumber"] == "2026-000001"


    @pytest.mark.asyncio
    async def test_reminder_sent_data(self, mock_db):
        invoice = make_invoice(status="OVERDUE")
        invoice.reminder_count = 2
        with patch("src.services.webhook_service.webhook_repo") as repo:
            repo.find_endpoint = AsyncMock(return_value=None)
            webhook = await notify_reminder_sent(mock_db, invoice, 2, Decimal("1000.00"))

        data = webhook.payload["data"]
        assert webhook.event_type == "reminder.sent"
        assert data["reminderNumber"] == 2
        assert data["remainingAmount"] == 1000.0
        assert data["sentTo"] == "ola@example.com"
        assert data["dueDate"] == "2026-03-15"


class TestOutbox:
    @pytest.mark.asyncio
    async def test_flush_commits_then_schedules(self, mock_db):
        ids = [make_outgoing_webhook().id, make_outgoing_webhook().id]
        mock_db.info["webhook_outbox"] = list(ids)
        with patch("src.services.webhook_service.create_background_task") as create_task, \
             patch("src.services.webhook_service.deliver_webhook", MagicMock()) as deliver:
            queued = await flush_outbox(mock_db)

        assert queued == ids
        mock_db.commit.assert_awaited_once()
        assert create_task.call_count == 2
        assert [c.args[0] for c in deliver.call_args_list] == ids
        assert "webhook_outbox" not in mock_db.info

    @pytest.mark.asyncio
    async def test_flush_commits_without_queue(self, mock_db):
        with patch("src.services.webhook_service.create_background_task") as create_task:
            assert await flush_outbox(mock_db) == []
        mock_db.commit.assert_awaited_once()
        create_task.assert_not_called()

    def test_discard(self, mock_db):
        mock_db.info["webhook_outbox"] = [make_outgoing_webhook().id]
        discard_outbox(mock_db)
        assert "webhook_outbox" not in mock_db.info


@pytest.fixture
def delivery(mock_db):
    repo = MagicMock()
    repo.get_by_id = AsyncMock()
    repo.get_endpoint = AsyncMock(return_value=None)
    credential_repo = MagicMock()
    credential_repo.get_by_id = AsyncMock(return_value=None)
    with patch.object(webhook_service, "webhook_repo", repo), \
         patch.object(webhook_service, "api_credential_repo", credential_repo), \
         patch.object(webhook_service, "async_session_factory", _session_factory(mock_db)), \
         patch("src.services.webhook_service.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield repo, credential_repo, sleep


class TestDeliverWebhook:
    @pytest.mark.asyncio
    async def test_permanent_failure_stops_after_three_attempts(self, delivery, mock_db):
        repo, _, sleep = delivery
        webhook = make_outgoing_webhook()
        repo.get_by_id.return_value = webhook
        client, requests = _recording_client([500])

        status = await deliver_webhook(webhook.id, client=client)

        assert status == "FAILED"
        assert len(requests) == 3
        assert webhook.status == "FAILED"
        assert webhook.attempts == 3
        assert webhook.last_error.startswith("HTTP 500")
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
        assert mock_db.commit.await_count == 3

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, delivery, mock_db):
        repo, _, sleep = delivery
        webhook = make_outgoing_webhook()
        repo.get_by_id.return_value = webhook
        client, requests = _recording_client([200])

        status = await deliver_webhook(webhook.id, client=client)

        assert status == "SENT"
        assert webhook.attempts == 1
        assert webhook.sent_at is not None
        assert len(requests) == 1
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_recovers_after_transient_errors(self, delivery, mock_db):
        repo, _, sleep = delivery
        webhook = make_outgoing_webhook()
        repo.get_by_id.return_value = webhook
        client, requests = _recording_client([httpx.ConnectTimeout("slow"), 503, 204])

        status = await deliver_webhook(webhook.id, client=client)

        assert status == "SENT"
        assert webhook.attempts == 3
        assert webhook.last_error is None
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_connection_errors_count_as_failures(self, delivery, mock_db):
        repo, _, _ = delivery
        webhook = make_outgoing_webhook()
        repo.get_by_id.return_value = webhook
        client, requests = _recording_client([httpx.ConnectError("refused")])

        status = await deliver_webhook(webhook.id, client=client)

        assert status == "FAILED"
        assert len(requests) == 3
        assert "ConnectError" in webhook.last_error

    @pytest.mark.asyncio
    async def test_timeouts_count_toward_attempt_limit(self, delivery, mock_db):
        repo, _, sleep = delivery
        webhook = make_outgoing_webhook()
        repo.get_by_id.return_value = webhook
        client, requests = _recording_client([httpx.ReadTimeout("no response")])

        status = await deliver_webhook(webhook.id, client=client)

        assert status == "FAILED"
        assert len(requests) == 3
        assert webhook.status == "FAILED"
        assert webhook.attempts == 3
        assert webhook.last_error.startswith("Timed out")
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_request_is_signed_with_endpoint_secret(self, delivery, mock_db):
        repo, _, _ = delivery
        endpoint = make_endpoint()
        webhook = make_outgoing_webhook(endpoint_id=endpoint.id)
        repo.get_by_id.return_value = webhook
        repo.get_endpoint.return_value = endpoint
        client, requests = _recording_client([200])

        await deliver_webhook(webhook.id, client=client)

        request = requests[0]
        assert request.headers["X-Webhook-Event"] == "invoice.created"
        assert request.headers["X-Webhook-Id"] == str(webhook.event_id)
        assert verify_signature(
            "endpoint-secret",
            request.headers["X-Webhook-Timestamp"],
            request.content,
            request.headers["X-Webhook-Signature"],
        )

    @pytest.mark.asyncio
    async def test_falls_back_to_credential_secret(self, delivery, mock_db):
        repo, credential_repo, _ = delivery
        credential = make_credential()
        webhook = make_outgoing_webhook(api_credential_id=credential.id)
        repo.get_by_id.return_value = webhook
        credential_repo.get_by_id.return_value = credential
        client, requests = _recording_client([200])

        await deliver_webhook(webhook.id, client=client)

        request = requests[0]
        expected = compute_signature(
            credential.secret, request.headers["X-Webhook-Timestamp"], request.content
        )
        assert request.headers["X-Webhook-Signature"] == expected

    @pytest.mark.asyncio
    async def test_already_sent_is_skipped(self, delivery, mock_db):
        repo, _, _ = delivery
        webhook = make_outgoing_webhook(status="SENT", attempts=1)
        repo.get_by_id.return_value = webhook
        client, requests = _recording_client([200])

        assert await deliver_webhook(webhook.id, client=client) == "SENT"
        assert requests == []

    @pytest.mark.asyncio
    async def test_missing_row(self, delivery, mock_db):
        repo, _, _ = delivery
        repo.get_by_id.return_value = None
        client, requests = _recording_client([200])

        assert await deliver_webhook(make_outgoing_webhook().id, client=client) == "MISSING"
        assert requests == []


class TestRetryFailedWebhooks:
    @pytest.mark.asyncio
    async def test_one_attempt_per_candidate(self, delivery, mock_db):
        repo, _, sleep = delivery
        failed = make_outgoing_webhook(status="FAILED", attempts=3, target_url="https://ok.example.com/h")
        stale = make_outgoing_webhook(status="PENDING", target_url="https://down.example.com/h")
        repo.get_retry_candidates = AsyncMock(return_value=[failed, stale])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200 if request.url.host == "ok.example.com" else 502)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await retry_failed_webhooks(mock_db, client=client)

        assert result == {"retried": 1, "failed": 1}
        assert failed.status == "SENT"
        assert failed.attempts == 4
        assert stale.status == "FAILED"
        assert stale.attempts == 1
        # One commit releasing the claimed rows, then one per delivery outcome
        assert mock_db.commit.await_count == 3
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_rows_are_claimed_and_committed_before_requests(self, delivery, mock_db):
        repo, _, _ = delivery
        first = make_outgoing_webhook(status="FAILED", attempts=3)
        second = make_outgoing_webhook(status="FAILED", attempts=3)
        repo.get_retry_candidates = AsyncMock(return_value=[first, second])
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((mock_db.commit.await_count, first.status, second.status))
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await retry_failed_webhooks(mock_db, client=client)

        assert seen == [(1, "RETRYING", "RETRYING"), (2, "SENT", "RETRYING")]
        assert mock_db.commit.await_count == 3

    @pytest.mark.asyncio
    async def test_nothing_to_retry(self, delivery, mock_db):
        repo, _, _ = delivery
        repo.get_retry_candidates = AsyncMock(return_value=[])

        assert await retry_failed_webhooks(mock_db) == {"retried": 0, "failed": 0}
        mock_db.commit.assert_not_called()
