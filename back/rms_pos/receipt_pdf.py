"""
Receipt PDF Generator

Printable receipt for a paid bill using ReportLab.
"""

from datetime import datetime, timezone
from io import BytesIO

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import (
    HRFlowable,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

# Color scheme (matching app design)
PRIMARY_COLOR = colors.HexColor("#c45d35")  # Warm terracotta
DARK_COLOR = colors.HexColor("#1f2937")  # Dark gray
MUTED_COLOR = colors.HexColor("#6b7280")  # Muted gray
BORDER_COLOR = colors.HexColor("#e5e7eb")  # Light border
SUCCESS_COLOR = colors.HexColor("#059669")  # Green for totals

COLUMN_WIDTHS = [80 * mm, 20 * mm, 35 * mm, 35 * mm]


def _format_issued_at(value: str | None) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).strftime("%B %d, %Y %I:%M %p")
    except ValueError:
        return value


def _money(amount: float, currency: str) -> str:
    return f"{currency}{amount:,.2f}"


def render_receipt_pdf(
    receipt: dict,
    company_name: str = "Your Restaurant",
    company_address: str = "",
    currency: str = "",
) -> BytesIO:
    """
    Render a receipt (as built by billing.generate_receipt) to PDF.

    Returns:
        BytesIO buffer containing the PDF
    """
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=20 * mm,
        leftMargin=20 * mm,
        topMargin=20 * mm,
        bottomMargin=20 * mm,
        title=f"Receipt {receipt.get('receipt_number', '')}",
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "ReceiptTitle",
        parent=styles["Heading1"],
        fontSize=22,
        textColor=PRIMARY_COLOR,
        spaceAfter=2 * mm,
        alignment=TA_RIGHT,
    )
    subtitle_style = ParagraphStyle(
        "ReceiptSubtitle",
        parent=styles["Normal"],
        fontSize=10,
        textColor=MUTED_COLOR,
        alignment=TA_RIGHT,
    )
    company_style = ParagraphStyle(
        "Company",
        parent=styles["Normal"],
        fontSize=14,
        textColor=DARK_COLOR,
        fontName="Helvetica-Bold",
    )
    address_style = ParagraphStyle(
        "Address",
        parent=styles["Normal"],
        fontSize=10,
        textColor=MUTED_COLOR,
        leading=14,
    )
    section_header_style = ParagraphStyle(
        "SectionHeader",
        parent=styles["Normal"],
        fontSize=10,
        textColor=MUTED_COLOR,
        fontName="Helvetica-Bold",
        spaceBefore=8 * mm,
        spaceAfter=3 * mm,
    )
    normal_style = ParagraphStyle(
        "NormalText",
        parent=styles["Normal"],
        fontSize=10,
        textColor=DARK_COLOR,
        leading=14,
    )
    totals_style = ParagraphStyle(
        "Totals",
        parent=styles["Normal"],
        fontSize=10,
        textColor=DARK_COLOR,
        alignment=TA_RIGHT,
    )
    total_bold_style = ParagraphStyle(
        "TotalBold",
        parent=styles["Normal"],
        fontSize=12,
        textColor=SUCCESS_COLOR,
        fontName="Helvetica-Bold",
        alignment=TA_RIGHT,
    )
    footer_style = ParagraphStyle(
        "Footer",
        parent=styles["Normal"],
        fontSize=8,
        textColor=MUTED_COLOR,
        alignment=TA_CENTER,
    )

    story = []

    # ===== HEADER =====
    header_data = [
        [Paragraph(company_name, company_style), Paragraph("RECEIPT", title_style)],
        [
            Paragraph(company_address.replace("\n", "<br/>") if company_address else "", address_style),
            Paragraph(f"<b>Receipt#</b> {receipt.get('receipt_number', '')}", subtitle_style),
        ],
        ["", Paragraph(f"<b>Bill:</b> {receipt.get('bill_number', '')}", subtitle_style)],
        ["", Paragraph(f"<b>Order:</b> {receipt.get('order_number', '')}", subtitle_style)],
        ["", Paragraph(f"<b>Date:</b> {_format_issued_at(receipt.get('issued_at'))}", subtitle_style)],
    ]
    header_table = Table(header_data, colWidths=[90 * mm, 80 * mm])
    header_table.setStyle(TableStyle([
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
    ]))
    story.append(header_table)
    story.append(Spacer(1, 6 * mm))
    story.append(HRFlowable(width="100%", thickness=1, color=BORDER_COLOR))

    customer = receipt.get("customer_info") or {}
    if customer:
        story.append(Paragraph("CUSTOMER", section_header_style))
        details = [f"{key.replace('_', ' ').title()}: {value}" for key, value in customer.items() if value]
        story.append(Paragraph("<br/>".join(details), address_style))

    # ===== ITEMS =====
    story.append(Paragraph("ITEMS", section_header_style))
    table_data = [[
        Paragraph("<b>Item</b>", normal_style),
        Paragraph("<b>Qty</b>", normal_style),
        Paragraph("<b>Unit Price</b>", normal_style),
        Paragraph("<b>Total</b>", normal_style),
    ]]
    for item in receipt.get("items", []):
        table_data.append([
            Paragraph(f"{item['name']} (shared)" if item.get("shared") else item["name"], normal_style),
            Paragraph(str(item["quantity"]), normal_style),
            Paragraph(_money(item["unit_price"], currency), normal_style),
            Paragraph(_money(item["total_price"], currency), normal_style),
        ])

    items_table = Table(table_data, colWidths=COLUMN_WIDTHS, repeatRows=1)
    items_table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f9fafb")),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("TOPPADDING", (0, 0), (-1, -1), 6),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
        ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("LINEBELOW", (0, 0), (-1, 0), 1, BORDER_COLOR),
        ("LINEBELOW", (0, 1), (-1, -1), 0.5, BORDER_COLOR),
    ]))
    story.append(items_table)

    # ===== TOTALS =====
    story.append(Spacer(1, 5 * mm))
    totals_data = [["", "", Paragraph("Subtotal:", totals_style),
                    Paragraph(_money(receipt.get("subtotal", 0), currency), totals_style)]]
    if receipt.get("service_charge"):
        totals_data.append(["", "", Paragraph("Service charge:", totals_style),
                            Paragraph(_money(receipt["service_charge"], currency), totals_style)])
    for discount in receipt.get("discounts", []):
        totals_data.append(["", "", Paragraph(f"{discount['name']}:", totals_style),
                            Paragraph(f"-{_money(discount['amount'], currency)}", totals_style)])
    for tax in receipt.get("taxes", []):
        totals_data.append(["", "", Paragraph(f"{tax['name']} ({tax['rate']:g}%):", totals_style),
                            Paragraph(_money(tax["amount"], currency), totals_style)])
    totals_data.append(["", "", Paragraph("<b>TOTAL:</b>", totals_style),
                        Paragraph(_money(receipt.get("total", 0), currency), total_bold_style)])

    totals_table = Table(totals_data, colWidths=COLUMN_WIDTHS)
    totals_table.setStyle(TableStyle([
        ("ALIGN", (2, 0), (-1, -1), "RIGHT"),
        ("TOPPADDING", (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
    ]))
    story.append(totals_table)

    # ===== PAYMENTS =====
    payments = receipt.get("payments", [])
    if payments:
        story.append(HRFlowable(width="100%", thickness=1, color=BORDER_COLOR))
        story.append(Paragraph("PAYMENTS", section_header_style))
        for payment in payments:
            label = payment["method"].replace("_", " ").title()
            if payment.get("card_last4"):
                label += f" ****{payment['card_last4']}"
            story.append(Paragraph(f"{label}: {_money(payment['amount'], currency)}", normal_style))

    # ===== FOOTER =====
    story.append(Spacer(1, 15 * mm))
    story.append(HRFlowable(width="100%", thickness=0.5, color=BORDER_COLOR))
    story.append(Spacer(1, 3 * mm))
    printed_at = datetime.now(timezone.utc).strftime("%B %d, %Y at %I:%M %p UTC")
    story.append(Paragraph(f"Thank you! Printed on {printed_at}", footer_style))

    doc.build(story)
    buffer.seek(0)
    return buffer
