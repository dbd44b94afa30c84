# report_pdf.py
import io
from xml.sax.saxutils import escape
from typing import Any, List, Optional

from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle
from reportlab.lib.units import inch

from .report_export import fmt_money
from .schemas import TaxYearSummary, dec_to_str


def _make_wrapped_table(data: List[List[Any]], styles, page_width_pts: float) -> Table:
    """
    Create a wrapped table that fits the page width.
    - data[0] is the header row.
    - Automatically computes column widths with upper/lower bounds.
    """
    # Paragraph style for wrapping small text
    wrap_style = ParagraphStyle(
        "WrapSmall",
        parent=styles["Normal"],
        fontSize=8,
        leading=10,
        wordWrap="CJK",
    )

    # Cells are markup for Paragraph, so escape them
    wrapped: List[List[Paragraph]] = []
    for row in data:
        wrapped.append([Paragraph("" if c is None else escape(str(c)), wrap_style) for c in row])

    # Heuristic: column widths based on character length of header + a sample of body rows
    header = [str(c) for c in data[0]] if data else []
    ncols = len(header)

    # Early return trivial case
    if ncols == 0:
        t = Table(wrapped, hAlign="LEFT")
        t.setStyle(TableStyle([("GRID", (0, 0), (-1, -1), 0.25, colors.black)]))
        return t

    # Estimate relative weights per column by sampling (header + up to 50 rows)
    def _text_len(cell) -> int:
        s = "" if cell is None else str(cell)
        return max(1, min(len(s), 80))  # cap to avoid over-influence

    samples = wrapped[: min(len(wrapped), 51)]  # header + 50
    weights = [0] * ncols
    for row in samples:
        for i, cell in enumerate(row):
            # Paragraph has a .text property; if not, fall back to length of repr
            txt = getattr(cell, "text", None)
            weights[i] += _text_len(txt if txt is not None else cell)

    # Normalize to widths
    total_w = sum(weights) or ncols
    # Page inner width: leave ~1 inch margins total
    # (SimpleDocTemplate will apply its own margins; we fit to usable width)
    usable_width = page_width_pts - (0.8 * inch)  # be conservative

    # Bounds to keep columns readable
    min_w = 0.7 * inch
    max_w = 1.8 * inch

    # First pass widths
    col_widths = []
    for w in weights:
        frac = (w / total_w) if total_w else (1.0 / ncols)
        col_widths.append(frac * usable_width)

    # Clamp to bounds, then re-scale if needed to fit exactly
    col_widths = [max(min_w, min(max_w, cw)) for cw in col_widths]
    total = sum(col_widths)
    if total > 0:
        scale = usable_width / total
        col_widths = [cw * scale for cw in col_widths]

    t = Table(wrapped, hAlign="LEFT", colWidths=col_widths, repeatRows=1)
    t.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.black),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("FONTSIZE", (0, 0), (-1, -1), 8),
                ("LEADING", (0, 0), (-1, -1), 10),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
                ("TOPPADDING", (0, 0), (-1, -1), 3),
            ]
        )
    )
    return t


def _totals_rows(summary: TaxYearSummary) -> List[List[str]]:
    cur = summary.currency
    return [
        ["Field", f"Value ({cur})"],
        ["Total gains", fmt_money(summary.total_gains, cur)],
        ["Total losses", fmt_money(summary.total_losses, cur)],
        ["Net gains", fmt_money(summary.net_gains, cur)],
        ["Basic deduction", fmt_money(summary.deduction, cur)],
        ["Taxable gains", fmt_money(summary.taxable_gains, cur)],
        [f"Estimated tax ({dec_to_str(summary.flat_rate_percent)}%)", fmt_money(summary.estimated_tax, cur)],
    ]


def _disposal_rows(summary: TaxYearSummary) -> List[List[Any]]:
    header = ["date", "id", "asset", "quantity", "proceeds_usd", "cost_basis", "fee_usd", "gain_usd", "gain_krw", "lots"]
    rows: List[List[Any]] = [header]
    for d in summary.disposals:
        rows.append(
            [
                d.timestamp.strftime("%Y-%m-%d %H:%M"),
                d.transaction_id,
                d.asset,
                dec_to_str(d.quantity),
                fmt_money(d.proceeds_usd, "USD"),
                fmt_money(d.cost_basis_consumed, "USD"),
                fmt_money(d.fee_usd, "USD"),
                fmt_money(d.gain_loss, "USD"),
                fmt_money(d.gain_loss_krw, "KRW"),
                ", ".join(f"{t.lot_id} ({dec_to_str(t.quantity_taken)})" for t in d.lots_consumed),
            ]
        )
    return rows


def build_summary_pdf(summary: TaxYearSummary, title: Optional[str] = None) -> bytes:
    """
    Render one tax year's summary as PDF bytes:
      - header with year, method, jurisdiction and rule version
      - totals table (rounded for display)
      - disposal line items with their lot trail
      - diagnostics, if any
    """
    title = title or f"Crypto Capital Gains - {summary.year}"

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=landscape(A4),
        leftMargin=0.5 * inch,
        rightMargin=0.5 * inch,
        topMargin=0.5 * inch,
        bottomMargin=0.5 * inch,
    )
    page_width = doc.width + doc.leftMargin + doc.rightMargin
    styles = getSampleStyleSheet()
    story = []

    story.append(Paragraph(title, styles["Title"]))
    story.append(
        Paragraph(
            f"Tax Year: {summary.year} &nbsp; Method: {summary.method.value} &nbsp; "
            f"Jurisdiction: {summary.jurisdiction} &nbsp; Rules: {summary.rule_version}",
            styles["Normal"],
        )
    )
    story.append(Spacer(1, 12))

    story.append(Paragraph("Totals", styles["Heading2"]))
    story.append(_make_wrapped_table(_totals_rows(summary), styles, page_width_pts=page_width))
    story.append(Spacer(1, 10))

    story.append(Paragraph("Disposals", styles["Heading2"]))
    if summary.disposals:
        story.append(_make_wrapped_table(_disposal_rows(summary), styles, page_width_pts=page_width))
    else:
        story.append(Paragraph("No disposals in this tax year.", styles["Normal"]))

    if summary.diagnostics:
        story.append(Spacer(1, 10))
        story.append(Paragraph("Diagnostics", styles["Heading2"]))
        data = [["code", "transaction", "message"]] + [
            [d.code.value, d.transaction_id or "", d.message] for d in summary.diagnostics
        ]
        story.append(_make_wrapped_table(data, styles, page_width_pts=page_width))

    doc.build(story)
    return buffer.getvalue()
