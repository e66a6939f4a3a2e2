"""Tests for payment registration and invoice settlement."""
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.core.exceptions import NotFoundError, StateError
from src.models.orm.payment import Payment
from src.services.payment_service import list_payments, register_payment
from tests.factories import make_invoice, make_payment


@pytest.fixture
def deps():
    invoice_repo = MagicMock()
    invoice_repo.get_by_id = AsyncMock()
    payment_repo = MagicMock()
    payment_repo.get_completed_total = AsyncMock(return_value=Decimal("0"))
    payment_repo.list_for_invoice = AsyncMock(return_value=[])
    webhook_service = MagicMock()
    webhook_service.notify_invoice_paid = AsyncMock()
    webhook_service.notify_payment_partial = AsyncMock()
    write_audit_log = AsyncMock()
    with patch.multiple(
        "src.services.payment_service",
        invoice_repo=invoice_repo,
        payment_repo=payment_repo,
        webhook_service=webhook_service,
        write_audit_log=write_audit_log,
    ):
        yield SimpleNamespace(
            invoice_repo=invoice_repo,
            payment_repo=payment_repo,
            webhook_service=webhook_service,
            write_audit_log=write_audit_log,
        )


def _added_payment(mock_db) -> Payment:
    return next(c.args[0] for c in mock_db.add.call_args_list if isinstance(c.args[0], Payment))


class TestRegisterPayment:
    @pytest.mark.asyncio
    async def test_partial_payment(self, deps, mock_db):
        invoice = make_invoice(status="SENT")
        deps.invoice_repo.get_by_id.return_value = invoice

        result = await register_payment(
            mock_db, invoice_id=invoice.id, amount=Decimal("625.00"), method="BANK_TRANSFER"
        )

        assert invoice.status == "PARTIALLY_PAID"
        assert invoice.paid_at is None
        assert result["invoice_status"] == "PARTIALLY_PAID"
        assert result["paid_amount"] == Decimal("625.00")
        assert result["remaining_amount"] == Decimal("625.00")
        deps.webhook_service.notify_payment_partial.assert_awaited_once()
        assert deps.webhook_service.notify_payment_partial.call_args.args[3] == Decimal("625.00")
        deps.webhook_service.notify_invoice_paid.assert_not_called()

    @pytest.mark.asyncio
    async def test_full_payment(self, deps, mock_db):
        invoice = make_invoice(status="SENT")
        deps.invoice_repo.get_by_id.return_value = invoice

        result = await register_payment(
            mock_db, invoice_id=invoice.id, amount=Decimal("1250"), method="VIPPS",
            provider_ref="vipps-123",
        )

        assert invoice.status == "PAID"
        assert invoice.paid_at is not None
        assert result["remaining_amount"] == Decimal("0.00")
        payment = _added_payment(mock_db)
        assert payment.status == "COMPLETED"
        assert payment.provider == "VIPPS"
        assert payment.provider_ref == "vipps-123"
        deps.webhook_service.notify_invoice_paid.assert_awaited_once_with(mock_db, invoice, payment)

    @pytest.mark.asyncio
    async def test_second_partial_settles(self, deps, mock_db):
        invoice = make_invoice(status="PARTIALLY_PAID")
        deps.invoice_repo.get_by_id.return_value = invoice
        deps.payment_repo.get_completed_total.return_value = Decimal("625.00")

        result = await register_payment(
            mock_db, invoice_id=invoice.id, amount=Decimal("625.00"), method="BANK_TRANSFER"
        )

        assert invoice.status == "PAID"
        assert result["paid_amount"] == Decimal("1250.00")

    @pytest.mark.asyncio
    async def test_repeat_partial_keeps_status(self, deps, mock_db):
        invoice = make_invoice(status="PARTIALLY_PAID")
        deps.invoice_repo.get_by_id.return_value = invoice
        deps.payment_repo.get_completed_total.return_value = Decimal("250.00")

        result = await register_payment(
            mock_db, invoice_id=invoice.id, amount=Decimal("250.00"), method="CARD"
        )

        assert invoice.status == "PARTIALLY_PAID"
        assert result["remaining_amount"] == Decimal("750.00")

    @pytest.mark.asyncio
    async def test_overdue_invoice_accepts_payment(self, deps, mock_db):
        invoice = make_invoice(status="OVERDUE")
        deps.invoice_repo.get_by_id.return_value = invoice

        await register_payment(
            mock_db, invoice_id=invoice.id, amount=Decimal("1250.00"), method="BANK_TRANSFER"
        )

        assert invoice.status == "PAID"

    @pytest.mark.asyncio
    async def test_overpayment_rejected(self, deps, mock_db):
        invoice = make_invoice(status="SENT")
        deps.invoice_repo.get_by_id.return_value = invoice
        deps.payment_repo.get_completed_total.return_value = Decimal("1000.00")

        with pytest.raises(StateError):
            await register_payment(
                mock_db, invoice_id=invoice.id, amount=Decimal("250.01"), method="BANK_TRANSFER"
            )
        mock_db.add.assert_not_called()
        assert invoice.status == "SENT"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["PAID", "CREDITED", "CANCELLED"])
    async def test_closed_invoice_rejected(self, deps, mock_db, status):
        invoice = make_invoice(status=status)
        deps.invoice_repo.get_by_id.return_value = invoice

        with pytest.raises(StateError):
            await register_payment(
                mock_db, invoice_id=invoice.id, amount=Decimal("1.00"), method="BANK_TRANSFER"
            )
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, deps, mock_db):
        deps.invoice_repo.get_by_id.return_value = None

        with pytest.raises(NotFoundError):
            await register_payment(
                mock_db, invoice_id=make_invoice().id, amount=Decimal("1.00"), method="CARD"
            )

    @pytest.mark.asyncio
    async def test_bank_transfer_provider_and_audit(self, deps, mock_db):
        invoice = make_invoice(status="SENT")
        deps.invoice_repo.get_by_id.return_value = invoice

        await register_payment(
            mock_db, invoice_id=invoice.id, amount=Decimal("100.005"), method="BANK_TRANSFER"
        )

        payment = _added_payment(mock_db)
        assert payment.provider == "Bank"
        assert payment.amount == Decimal("100.01")
        audit = deps.write_audit_log.call_args.kwargs
        assert audit["action"] == "PAYMENT_RECEIVED"
        assert audit["details"]["amount"] == "100.01"


class TestListPayments:
    @pytest.mark.asyncio
    async def test_lists_payments(self, deps, mock_db):
        invoice = make_invoice(status="PARTIALLY_PAID")
        deps.invoice_repo.get_by_id.return_value = invoice
        deps.payment_repo.list_for_invoice.return_value = [make_payment(invoice_id=invoice.id)]

        payments = await list_payments(mock_db, invoice.id)

        assert len(payments) == 1
        assert payments[0]["amount"] == Decimal("625.00")

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, deps, mock_db):
        deps.invoice_repo.get_by_id.return_value = None
        with pytest.raises(NotFoundError):
            await list_payments(mock_db, make_invoice().id)
