"""Invoice numbers and KID payment references.

A KID is the structured reference Norwegian banks use to match an incoming
payment to an invoice. Every KID issued here ends in a MOD10 (Luhn) check
digit, so ``is_valid_kid`` holds for all stored references.
"""
import hashlib
import re
from typing import Protocol

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.orm.invoice_number_sequence import InvoiceNumberSequence

INVOICE_NUMBER_RE = re.compile(r"^\d{4}-\d{6}$")
ORDER_FRAGMENT_DIGITS = 10
CUSTOMER_NUMBER_DIGITS = 5


def format_invoice_number(year: int, sequence: int) -> str:
    if sequence < 1 or sequence > 999999:
        raise ValueError(f"Invoice sequence out of range: {sequence}")
    return f"{year:04d}-{sequence:06d}"


async def next_invoice_number(db: AsyncSession, year: int) -> str:
    """Claim the next number for ``year`` inside the caller's transaction.

    The upsert takes a row lock on the year's counter, so concurrent
    ingestions serialize here instead of racing on a count.
    """
    stmt = (
        insert(InvoiceNumberSequence)
        .values(year=year, last_value=1)
        .on_conflict_do_update(
            index_elements=[InvoiceNumberSequence.year],
            set_={"last_value": InvoiceNumberSequence.last_value + 1},
        )
        .returning(InvoiceNumberSequence.last_value)
    )
    result = await db.execute(stmt)
    return format_invoice_number(year, int(result.scalar_one()))


def luhn_check_digit(digits: str) -> str:
    """MOD10 check digit: double every second digit from the right, minus 9 if > 9."""
    if not digits or not digits.isdigit():
        raise ValueError("KID base must be a non-empty digit string")
    total = 0
    for i, ch in enumerate(reversed(digits)):
        n = int(ch)
        if i % 2 == 0:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return str((10 - total % 10) % 10)


def is_valid_kid(kid: str) -> bool:
    if len(kid) < 2 or not kid.isdigit():
        return False
    return luhn_check_digit(kid[:-1]) == kid[-1]


def order_fragment(source: str, source_order_id: str) -> str:
    """Stable 10-digit number derived from the external order identity."""
    digest = hashlib.sha256(f"{source}:{source_order_id}".encode()).hexdigest()
    return f"{int(digest, 16) % 10 ** ORDER_FRAGMENT_DIGITS:0{ORDER_FRAGMENT_DIGITS}d}"


class KidStrategy(Protocol):
    def generate(
        self,
        *,
        customer_number: int,
        invoice_number: str,
        source: str | None = None,
        source_order_id: str | None = None,
    ) -> str: ...


class CustomerOrderKid:
    """Customer number (5 digits) + order fragment (10 digits) + check digit."""

    def generate(
        self,
        *,
        customer_number: int,
        invoice_number: str,
        source: str | None = None,
        source_order_id: str | None = None,
    ) -> str:
        if not source or not source_order_id:
            raise ValueError("Order KIDs need the source and source order id")
        base = (
            f"{customer_number % 10 ** CUSTOMER_NUMBER_DIGITS:0{CUSTOMER_NUMBER_DIGITS}d}"
            f"{order_fragment(source, source_order_id)}"
        )
        return base + luhn_check_digit(base)


class InvoiceNumberKid:
    """Invoice number digits + check digit, for documents without an external order."""

    def generate(
        self,
        *,
        customer_number: int,
        invoice_number: str,
        source: str | None = None,
        source_order_id: str | None = None,
    ) -> str:
        base = invoice_number.replace("-", "")
        return base + luhn_check_digit(base)


order_kid: KidStrategy = CustomerOrderKid()
credit_note_kid: KidStrategy = InvoiceNumberKid()
