from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_RIGHT
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .models import InvoiceRenderPayload, ReceiptRenderPayload, RenderClientSection, RenderCompanySection

CENTS = Decimal("0.01")
INK = colors.HexColor("#111827")
RULE = colors.HexColor("#d1d5db")


@dataclass(frozen=True)
class _Styles:
    title: ParagraphStyle
    heading: ParagraphStyle
    body: ParagraphStyle
    table_header: ParagraphStyle
    table_cell: ParagraphStyle
    table_numeric: ParagraphStyle
    closing: ParagraphStyle


def _build_styles() -> _Styles:
    sample = getSampleStyleSheet()
    body = ParagraphStyle(
        "doc_body",
        parent=sample["BodyText"],
        fontName="Helvetica",
        fontSize=10,
        leading=14,
        textColor=INK,
    )
    table_cell = ParagraphStyle("doc_table_cell", parent=body, fontSize=8.5, leading=10)
    return _Styles(
        title=ParagraphStyle(
            "doc_title",
            parent=sample["Heading1"],
            fontName="Helvetica-Bold",
            fontSize=22,
            leading=26,
            textColor=INK,
        ),
        heading=ParagraphStyle(
            "doc_heading",
            parent=sample["Heading3"],
            fontName="Helvetica-Bold",
            fontSize=11,
            leading=14,
            textColor=INK,
            spaceAfter=3,
        ),
        body=body,
        table_header=ParagraphStyle(
            "doc_table_header",
            parent=body,
            fontName="Helvetica-Bold",
            fontSize=8.5,
            leading=10,
        ),
        table_cell=table_cell,
        table_numeric=ParagraphStyle("doc_table_numeric", parent=table_cell, alignment=TA_RIGHT),
        closing=ParagraphStyle("doc_closing", parent=body, fontName="Helvetica-Bold", spaceBefore=12),
    )


def _format_date(value: date) -> str:
    return value.strftime("%m-%d-%Y")


def _format_currency(value: float | Decimal, currency: str) -> str:
    amount = Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    normalized_currency = currency.strip().upper() or "USD"
    if normalized_currency == "USD":
        return f"${amount:,.2f}"
    return f"{normalized_currency} {amount:,.2f}"


def _text(value: object) -> str:
    return escape(str(value)) if value is not None else ""


def _document(buffer: BytesIO, *, title: str, author: str) -> SimpleDocTemplate:
    return SimpleDocTemplate(
        buffer,
        pagesize=LETTER,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title=title,
        author=author,
    )


def _key_value_table(rows: list[list[str]], widths: tuple[float, float]) -> Table:
    table = Table(rows, colWidths=[widths[0] * inch, widths[1] * inch], hAlign="LEFT")
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("FONTNAME", (1, 0), (1, -1), "Helvetica"),
                ("FONTSIZE", (0, 0), (-1, -1), 10),
                ("TEXTCOLOR", (0, 0), (-1, -1), INK),
                ("LEFTPADDING", (0, 0), (-1, -1), 2),
                ("RIGHTPADDING", (0, 0), (-1, -1), 2),
                ("TOPPADDING", (0, 0), (-1, -1), 2),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 2),
            ]
        )
    )
    return table


def _grid_table(rows: list[list[object]], widths: list[float], *, numeric_from: int) -> Table:
    table = Table(rows, colWidths=[value * inch for value in widths], repeatRows=1, hAlign="LEFT")
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f3f4f6")),
                ("TEXTCOLOR", (0, 0), (-1, -1), INK),
                ("GRID", (0, 0), (-1, -1), 0.6, RULE),
                ("ALIGN", (numeric_from, 1), (-1, -1), "RIGHT"),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#fafafa")]),
                ("LEFTPADDING", (0, 0), (-1, -1), 4),
                ("RIGHTPADDING", (0, 0), (-1, -1), 4),
                ("TOPPADDING", (0, 0), (-1, -1), 5),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 5),
            ]
        )
    )
    return table


def _totals_table(rows: list[list[str]]) -> Table:
    last = len(rows) - 1
    table = Table(rows, colWidths=[5.25 * inch, 1.75 * inch], hAlign="LEFT")
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("FONTNAME", (1, 0), (1, -1), "Helvetica"),
                ("FONTSIZE", (0, 0), (-1, -1), 11),
                ("TEXTCOLOR", (0, 0), (-1, -1), INK),
                ("ALIGN", (1, 0), (1, -1), "RIGHT"),
                ("LINEABOVE", (0, 0), (-1, 0), 1, colors.HexColor("#9ca3af")),
                ("LINEABOVE", (0, last), (-1, last), 1, colors.HexColor("#6b7280")),
                ("FONTNAME", (0, last), (-1, last), "Helvetica-Bold"),
                ("BACKGROUND", (0, last), (-1, last), colors.HexColor("#f9fafb")),
                ("LEFTPADDING", (0, 0), (-1, -1), 2),
                ("RIGHTPADDING", (0, 0), (-1, -1), 2),
                ("TOPPADDING", (0, 0), (-1, -1), 6),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 2),
            ]
        )
    )
    return table


def _party_lines(party: RenderCompanySection | RenderClientSection) -> list[str]:
    lines = [party.name]
    if isinstance(party, RenderClientSection) and party.business_name:
        lines.append(party.business_name)
    for value in (party.address, party.email, party.phone):
        if value:
            lines.append(value)
    if party.nit:
        lines.append(f"NIT: {party.nit}")
    return lines


def _party_block(label: str, party: RenderCompanySection | RenderClientSection, styles: _Styles) -> list:
    block: list = [Paragraph(label, styles.heading)]
    block.extend(Paragraph(_text(line), styles.body) for line in _party_lines(party))
    block.append(Spacer(1, 0.14 * inch))
    return block


def render_invoice_pdf(payload: InvoiceRenderPayload) -> bytes:
    invoice = payload.invoice
    buffer = BytesIO()
    doc = _document(buffer, title=f"Invoice {invoice.invoice_number}", author=payload.company.name)
    styles = _build_styles()

    story: list = [Paragraph("INVOICE", styles.title), Spacer(1, 0.12 * inch)]
    header_rows = [
        ["Invoice #:", invoice.invoice_number],
        ["Date of Issue:", _format_date(invoice.issue_date)],
        ["Payment Due By:", _format_date(invoice.due_date)],
    ]
    if invoice.purchase_order:
        header_rows.append(["Purchase Order:", invoice.purchase_order])
    story.append(_key_value_table(header_rows, (1.5, 5.5)))
    story.append(Spacer(1, 0.14 * inch))

    story.extend(_party_block("From:", payload.company, styles))
    story.extend(_party_block("Bill To:", payload.client, styles))

    line_rows: list[list[object]] = [
        [
            Paragraph("Item", styles.table_header),
            Paragraph("Quantity", styles.table_header),
            Paragraph("Unit Price", styles.table_header),
            Paragraph("Tax", styles.table_header),
            Paragraph("Total", styles.table_header),
        ]
    ]
    for item in payload.items:
        label = _text(item.name)
        if item.description:
            label = f"{label}<br/>{_text(item.description)}"
        line_rows.append(
            [
                Paragraph(label, styles.table_cell),
                Paragraph(f"{item.quantity:g} {_text(item.quantity_unit)}", styles.table_numeric),
                Paragraph(_format_currency(item.unit_price, invoice.currency), styles.table_numeric),
                Paragraph(_format_currency(item.tax, invoice.currency), styles.table_numeric),
                Paragraph(_format_currency(item.total, invoice.currency), styles.table_numeric),
            ]
        )
    story.append(_grid_table(line_rows, [2.8, 1.0, 1.1, 0.9, 1.2], numeric_from=1))
    story.append(Spacer(1, 0.16 * inch))

    total_rows = [["Subtotal", _format_currency(invoice.subtotal, invoice.currency)]]
    if invoice.discount:
        total_rows.append(["Discount", _format_currency(-invoice.discount, invoice.currency)])
    total_rows.append(["Tax", _format_currency(invoice.total_tax, invoice.currency)])
    total_rows.append(["Total Due", _format_currency(invoice.total, invoice.currency)])
    story.append(_totals_table(total_rows))
    story.append(Spacer(1, 0.16 * inch))

    if invoice.notes:
        story.append(Paragraph("Notes", styles.heading))
        story.append(Paragraph(_text(invoice.notes), styles.body))
    if invoice.terms:
        story.append(Paragraph("Terms", styles.heading))
        story.append(Paragraph(_text(invoice.terms), styles.body))
    story.append(Paragraph(f"Payment due by {_format_date(invoice.due_date)}.", styles.body))
    story.append(Paragraph("Thank you for your business!", styles.closing))

    doc.build(story)
    return buffer.getvalue()


def render_receipt_pdf(payload: ReceiptRenderPayload) -> bytes:
    invoice = payload.invoice
    buffer = BytesIO()
    doc = _document(buffer, title=f"Receipt {invoice.invoice_number}", author=payload.company.name)
    styles = _build_styles()

    story: list = [Paragraph("PAYMENT RECEIPT", styles.title), Spacer(1, 0.12 * inch)]
    story.append(
        _key_value_table(
            [
                ["Invoice #:", invoice.invoice_number],
                ["Payment Date:", payload.payment.date],
                ["Payment Method:", payload.payment.method],
                ["Amount Received:", _format_currency(payload.payment.amount, invoice.currency)],
            ],
            (1.6, 5.4),
        )
    )
    story.append(Spacer(1, 0.14 * inch))
    story.extend(_party_block("From:", payload.company, styles))
    story.extend(_party_block("Received From:", payload.client, styles))

    if payload.payments:
        history_rows: list[list[object]] = [
            [
                Paragraph("Date", styles.table_header),
                Paragraph("Method", styles.table_header),
                Paragraph("Amount", styles.table_header),
            ]
        ]
        for entry in payload.payments:
            history_rows.append(
                [
                    Paragraph(_text(entry.date), styles.table_cell),
                    Paragraph(_text(entry.method), styles.table_cell),
                    Paragraph(_format_currency(entry.amount, invoice.currency), styles.table_numeric),
                ]
            )
        story.append(Paragraph("Payment History", styles.heading))
        story.append(_grid_table(history_rows, [2.5, 2.5, 2.0], numeric_from=2))
        story.append(Spacer(1, 0.16 * inch))

    story.append(
        _totals_table(
            [
                ["Invoice Total", _format_currency(invoice.total, invoice.currency)],
                ["Total Paid", _format_currency(invoice.total_paid, invoice.currency)],
                ["Balance Due", _format_currency(invoice.balance, invoice.currency)],
            ]
        )
    )
    if payload.payment.notes:
        story.append(Spacer(1, 0.12 * inch))
        story.append(Paragraph(_text(payload.payment.notes), styles.body))
    story.append(Paragraph("Thank you for your payment!", styles.closing))

    doc.build(story)
    return buffer.getvalue()
