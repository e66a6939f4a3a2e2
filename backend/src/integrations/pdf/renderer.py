"""Invoice PDF rendering (A4, Norwegian layout)."""
import io
from decimal import Decimal

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from src.models.orm.invoice import Invoice


def _amount(value: Decimal) -> str:
    # 12 345,67 as printed on Norwegian invoices
    text = f"{value:,.2f}"
    return text.replace(",", " ").replace(".", ",")


def _draw_header(pdf: canvas.Canvas, invoice: Invoice) -> None:
    width, height = A4
    org = invoice.organization
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawString(20 * mm, height - 25 * mm, org.name)
    pdf.setFont("Helvetica", 10)
    y = height - 32 * mm
    org_lines = [
        org.address,
        " ".join(p for p in (org.postal_code, org.city) if p),
        f"Org.nr: {org.org_number} MVA",
        org.email,
    ]
    for line in org_lines:
        if line:
            pdf.drawString(20 * mm, y, line)
            y -= 5 * mm

    title = "Kreditnota" if invoice.is_credit_note else "Faktura"
    pdf.setFont("Helvetica-Bold", 12)
    pdf.drawString(120 * mm, height - 25 * mm, title)
    pdf.setFont("Helvetica", 10)
    pdf.drawString(120 * mm, height - 32 * mm, f"Fakturanummer: {invoice.invoice_number}")
    pdf.drawString(120 * mm, height - 37 * mm, f"Fakturadato: {invoice.issue_date.isoformat()}")
    pdf.drawString(120 * mm, height - 42 * mm, f"Forfallsdato: {invoice.due_date.isoformat()}")
    pdf.drawString(120 * mm, height - 47 * mm, f"Kundenummer: {invoice.customer.customer_number}")

    customer = invoice.customer
    pdf.setFont("Helvetica-Bold", 10)
    pdf.drawString(20 * mm, height - 70 * mm, customer.name)
    pdf.setFont("Helvetica", 10)
    offset = 75 * mm
    for line in (
        customer.address,
        " ".join(p for p in (customer.postal_code, customer.city) if p),
        f"Org.nr: {customer.org_number}" if customer.org_number else None,
    ):
        if line:
            pdf.drawString(20 * mm, height - offset, line)
            offset += 5 * mm


def _draw_lines(pdf: canvas.Canvas, invoice: Invoice) -> float:
    _, height = A4
    y = height - 100 * mm
    pdf.setFont("Helvetica-Bold", 10)
    pdf.drawString(20 * mm, y, "Beskrivelse")
    pdf.drawRightString(125 * mm, y, "Antall")
    pdf.drawRightString(150 * mm, y, "Pris")
    pdf.drawRightString(165 * mm, y, "MVA")
    pdf.drawRightString(190 * mm, y, "Beløp")
    pdf.setFont("Helvetica", 10)
    y -= 6 * mm
    for line in invoice.lines:
        if y < 60 * mm:
            pdf.showPage()
            pdf.setFont("Helvetica", 10)
            y = height - 25 * mm
        pdf.drawString(20 * mm, y, line.description[:60])
        pdf.drawRightString(125 * mm, y, f"{line.quantity.normalize():f} {line.unit or ''}".strip())
        pdf.drawRightString(150 * mm, y, _amount(line.unit_price))
        pdf.drawRightString(165 * mm, y, f"{line.vat_rate * 100:.0f}%")
        pdf.drawRightString(190 * mm, y, _amount(line.amount))
        y -= 6 * mm

    y -= 4 * mm
    pdf.setFont("Helvetica-Bold", 10)
    for label, value in (
        ("Sum eks. MVA", invoice.subtotal),
        ("MVA", invoice.vat_amount),
        ("Å betale", invoice.total_amount),
    ):
        pdf.drawRightString(150 * mm, y, label)
        pdf.drawRightString(190 * mm, y, f"{_amount(value)} {invoice.currency}")
        y -= 5 * mm
    return y - 10 * mm


def _draw_payment_info(pdf: canvas.Canvas, invoice: Invoice, y: float) -> None:
    pdf.setFont("Helvetica", 10)
    text = pdf.beginText(20 * mm, y)
    if invoice.organization.bank_account:
        text.textLine(f"Kontonummer: {invoice.organization.bank_account}")
    text.textLine(f"KID: {invoice.kid}")
    text.textLine(f"Betales innen: {invoice.due_date.isoformat()}")
    if invoice.notes:
        for note_line in invoice.notes.splitlines()[:5]:
            text.textLine(note_line[:100])
    pdf.drawText(text)


def generate_invoice_pdf(invoice: Invoice) -> bytes:
    """Render ``invoice`` (with organization, customer and lines loaded) to PDF bytes."""
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(f"Faktura {invoice.invoice_number}")
    pdf.setAuthor(invoice.organization.name)
    _draw_header(pdf, invoice)
    y = _draw_lines(pdf, invoice)
    _draw_payment_info(pdf, invoice, y)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
