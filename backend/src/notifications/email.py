import asyncio
import logging
import re
from decimal import Decimal
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from pathlib import Path

import aiosmtplib
from jinja2 import Environment, FileSystemLoader

from src.core.config import settings
from src.models.orm.invoice import Invoice

logger = logging.getLogger(__name__)

_template_dir = Path(__file__).parent / "templates"
_jinja_env = Environment(loader=FileSystemLoader(str(_template_dir)), autoescape=True)

INVOICE_TEMPLATE = "invoice.html"
REMINDER_TEMPLATE = "reminder.html"

_RETRY_DELAYS = (1, 2, 4)

_TRANSIENT_EXCEPTIONS = (
    aiosmtplib.SMTPConnectError,
    aiosmtplib.SMTPConnectTimeoutError,
    aiosmtplib.SMTPServerDisconnected,
)

_SMTP_TIMEOUT_SECONDS = 30


class EmailNotConfiguredError(RuntimeError):
    pass


def _sanitize_header(value: str) -> str:
    """Strip newline characters to prevent email header injection."""
    return value.replace("\r", "").replace("\n", "")


def _html_to_plaintext(html_body: str) -> str:
    """Convert HTML to plaintext for the email alternative part."""
    text = re.sub(r"<br\s*/?>", "\n", html_body)
    text = re.sub(r"</(?:p|div|tr|li|h[1-6])>", "\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def mask_email(address: str) -> str:
    """Mask an email address for safe logging."""
    if "@" in address:
        return address.split("@")[0][:2] + "***@" + address.split("@")[-1]
    return "***"


def _get_smtp_config() -> dict:
    port = settings.smtp_port
    return {
        "hostname": settings.smtp_host,
        "port": port,
        "username": settings.smtp_username or None,
        "password": settings.smtp_password or None,
        "start_tls": settings.smtp_use_tls and port != 465,
        "use_tls": port == 465,
        "timeout": _SMTP_TIMEOUT_SECONDS,
    }


async def _send_with_retry(message: MIMEMultipart, smtp: dict) -> None:
    """Send an email message with retry on transient SMTP errors."""
    last_exc: Exception | None = None
    for attempt, delay in enumerate(_RETRY_DELAYS, 1):
        try:
            await aiosmtplib.send(message, **smtp)
            return
        except aiosmtplib.SMTPResponseException as exc:
            if exc.code >= 500:
                raise
            logger.warning("Transient SMTP error (attempt %d/%d): %s", attempt, len(_RETRY_DELAYS), exc)
            last_exc = exc
        except _TRANSIENT_EXCEPTIONS as exc:
            logger.warning("Transient SMTP error (attempt %d/%d): %s", attempt, len(_RETRY_DELAYS), exc)
            last_exc = exc
        if attempt < len(_RETRY_DELAYS):
            await asyncio.sleep(delay)
    raise last_exc  # type: ignore[misc]


def invoice_subject(invoice: Invoice) -> str:
    kind = "Kreditnota" if invoice.is_credit_note else "Faktura"
    return f"{kind} {invoice.invoice_number} fra {invoice.organization.name}"


def reminder_subject(invoice: Invoice, reminder_number: int) -> str:
    return (
        f"Purring {reminder_number}: Faktura {invoice.invoice_number} "
        f"fra {invoice.organization.name}"
    )


def render_invoice_email(invoice: Invoice) -> str:
    template = _jinja_env.get_template(INVOICE_TEMPLATE)
    return template.render(
        invoice=invoice,
        customer=invoice.customer,
        organization=invoice.organization,
        is_credit_note=invoice.is_credit_note,
    )


def render_reminder_email(invoice: Invoice, reminder_number: int, remaining: Decimal) -> str:
    template = _jinja_env.get_template(REMINDER_TEMPLATE)
    return template.render(
        invoice=invoice,
        customer=invoice.customer,
        organization=invoice.organization,
        reminder_number=reminder_number,
        remaining=remaining,
    )


async def _send_with_pdf(invoice: Invoice, pdf: bytes, subject: str, html_body: str) -> str:
    smtp = _get_smtp_config()
    from_address = settings.email_from_address
    if not smtp["hostname"] or not from_address:
        raise EmailNotConfiguredError("SMTP host and from-address must be configured")

    to = invoice.customer.email
    if "\n" in to or "\r" in to:
        raise ValueError("Invalid email recipient: contains newline characters")

    from_name = _sanitize_header(settings.email_from_name or invoice.organization.name)

    message = MIMEMultipart("mixed")
    message["From"] = formataddr((from_name, from_address))
    message["To"] = to
    if settings.email_bcc:
        message["Bcc"] = _sanitize_header(settings.email_bcc)
    if settings.email_reply_to:
        message["Reply-To"] = _sanitize_header(settings.email_reply_to)
    message["Subject"] = _sanitize_header(subject)
    message["Date"] = formatdate(localtime=True)
    domain = from_address.split("@")[-1] if "@" in from_address else "localhost"
    message_id = make_msgid(domain=domain)
    message["Message-ID"] = message_id

    body = MIMEMultipart("alternative")
    body.attach(MIMEText(_html_to_plaintext(html_body), "plain"))
    body.attach(MIMEText(html_body, "html"))
    message.attach(body)

    attachment = MIMEApplication(pdf, _subtype="pdf")
    attachment.add_header(
        "Content-Disposition", "attachment", filename=f"{invoice.invoice_number}.pdf"
    )
    message.attach(attachment)

    await _send_with_retry(message, smtp)
    return message_id


async def send_invoice_email(invoice: Invoice, pdf: bytes) -> str:
    """Email the invoice PDF to the customer and return the Message-ID.

    Raises on failure; the caller records the outcome in the email log.
    """
    message_id = await _send_with_pdf(
        invoice, pdf, invoice_subject(invoice), render_invoice_email(invoice)
    )
    logger.info("Invoice %s emailed to %s", invoice.invoice_number, mask_email(invoice.customer.email))
    return message_id


async def send_reminder_email(
    invoice: Invoice, pdf: bytes, reminder_number: int, remaining: Decimal
) -> str:
    """Email payment reminder ``reminder_number`` with the invoice PDF attached."""
    message_id = await _send_with_pdf(
        invoice,
        pdf,
        reminder_subject(invoice, reminder_number),
        render_reminder_email(invoice, reminder_number, remaining),
    )
    logger.info(
        "Reminder %d for invoice %s emailed to %s",
        reminder_number, invoice.invoice_number, mask_email(invoice.customer.email),
    )
    return message_id
