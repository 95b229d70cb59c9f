# pdf_service.py
"""
Work order / invoice PDF rendering.

Everything is placed at absolute positions on an A4 canvas. Positions are
kept as "top" offsets measured down from the top edge of the page; every
_draw_* function takes the offset where its section starts and returns the
offset where the next section may start. _Sheet converts offsets to
reportlab's bottom-up coordinates and owns page breaks.
"""
import base64
import io
import logging
import os
import re
from dataclasses import dataclass
from datetime import date, datetime

from reportlab.pdfgen import canvas
from reportlab.lib.pagesizes import A4
from reportlab.lib import colors
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.lib.utils import ImageReader

from config import Config
from models import Invoice, Client, Setting, DEFAULT_FOOTER_NOTE, JOB_TYPES, get_settings
from totals import KIND_LINE_ITEMS, Totals, invoice_totals, line_item_amount

logger = logging.getLogger(__name__)

PAGE_W, PAGE_H = A4
MARGIN = 40
CONTENT_W = 520
BOTTOM_LIMIT = PAGE_H - MARGIN

# Left/right columns of the top half of the page
LEFT_X = MARGIN
RIGHT_X = 300
RIGHT_COL_W = 260

TITLE = "Work Order / Invoice"
LOGO_MAX_W = 250
LOGO_MAX_H = 80

BAND_H = 18
ROW_H = 14

DETAIL_ROW_H = 16
DETAIL_LABEL_W = 90
DETAIL_LABELS = (
    "Invoice Date:",
    "Customer Email:",
    "Customer Number:",
    "Job Location:",
    "Job Date:",
    "Job Start:",
    "Job Finish:",
)

JOB_GRID_COLS = 3
JOB_GRID_ROW_SPACING = 20
JOB_GRID_BOX = 8
JOB_GRID_OFFSET_Y = 7
JOB_GRID_H = 40

DESCRIPTION_BOX_H = 50

LABOUR_HEADERS = ("NOTES", "LABOUR", "HRS.", "RATE", "AMOUNT")
LABOUR_COL_WIDTHS = (125, 90, 70, 70, 165)
LABOUR_MIN_ROWS = 8

MATERIAL_HEADERS = ("QTY.", "MATERIAL", "AMOUNT")
MATERIAL_COL_WIDTHS = (60, 295, 165)
MATERIAL_MIN_ROWS = 15

# Always leave room for handwritten additions below the filled rows
PADDING_ROWS = 2

FOOTER_H = 100
FOOTER_LEFT_W = 360
FOOTER_RIGHT_W = 160
TOTALS_ROW_H = 14.3
TOTALS_LABEL_W = 100

ACKNOWLEDGEMENT = (
    "I hereby acknowledge the satisfactory completion of the above described work. "
    "Payment needs to be made within two weeks from the invoice issue date."
)
SIGNATURE_PLACEHOLDER = "[Invalid Signature Image]"

# Text that must never be cut (identifiers, contact details) shrinks down to this
MIN_FONT_SIZE = 6

# Legacy line-item layout
LEGACY_HEADERS = ("DESCRIPTION", "QTY", "UNIT PRICE", "TAX", "AMOUNT")
LEGACY_COL_WIDTHS = (250, 60, 70, 60, 80)
LEGACY_PAGE_BREAK = 700


class InvoiceRenderError(RuntimeError):
    """The document cannot be produced (missing invoice or client)."""


# -----------------------------
# Formatting helpers
# -----------------------------
def format_money(value) -> str:
    # Blank, not $0.00: printed forms keep empty cells for handwritten entries
    if value is None:
        return ""
    return f"${float(value):.2f}"


def _fmt_number(value) -> str:
    if value is None:
        return ""
    try:
        return f"{float(value):g}"
    except (TypeError, ValueError):
        return str(value)


def _fmt_date(value) -> str:
    if isinstance(value, datetime):
        return value.strftime("%m/%d/%Y")
    if isinstance(value, date):
        return value.strftime("%m/%d/%Y")
    return str(value) if value else ""


def _fmt_datetime(value) -> str:
    if isinstance(value, datetime):
        return value.strftime("%m/%d/%Y %I:%M %p")
    return _fmt_date(value)


def _safe_filename(name: str) -> str:
    # strip characters not allowed on Windows/mac paths
    return re.sub(r'[\\/*?:"<>|]', "", (name or "")).strip() or "Invoice"


def _wrap_text(text, font, size, max_width):
    words = str(text or "").split()
    lines = []
    current = ""

    def split_long_token(token: str):
        """Break a single long token (like an email) into width-safe chunks."""
        if stringWidth(token, font, size) <= max_width:
            return [token]
        chunks = []
        remaining = token
        while remaining:
            lo, hi = 1, len(remaining)
            fit = 1
            while lo <= hi:
                mid = (lo + hi) // 2
                if stringWidth(remaining[:mid], font, size) <= max_width:
                    fit = mid
                    lo = mid + 1
                else:
                    hi = mid - 1
            chunks.append(remaining[:fit])
            remaining = remaining[fit:]
        return chunks

    expanded_words = []
    for w in words:
        expanded_words.extend(split_long_token(w))

    for w in expanded_words:
        test = current + (" " if current else "") + w
        if stringWidth(test, font, size) <= max_width:
            current = test
        else:
            if current:
                lines.append(current)
            current = w
    if current:
        lines.append(current)
    return lines or [""]


def _wrap_paragraphs(text, font, size, max_width):
    """Wrap each source line separately so the author's line breaks survive."""
    out = []
    for raw in str(text or "").splitlines():
        if not raw.strip():
            out.append("")
            continue
        out.extend(_wrap_text(raw, font, size, max_width))
    return out


def _fit(text, font, size, max_width) -> str:
    return _wrap_text(text, font, size, max_width)[0]


# -----------------------------
# Pure layout rules
# -----------------------------
def labour_row_count(n: int) -> int:
    return max(n + PADDING_ROWS, LABOUR_MIN_ROWS)


def materials_row_count(n: int) -> int:
    return max(n + PADDING_ROWS, MATERIAL_MIN_ROWS)


@dataclass(frozen=True)
class JobTypeCell:
    label: str
    x: float
    top: float
    checked: bool


def job_type_cells(selected, left: float = RIGHT_X + 10, top: float = 0.0,
                   width: float = RIGHT_COL_W - 20) -> list[JobTypeCell]:
    chosen = set(selected or [])
    col_spacing = int(width // JOB_GRID_COLS)
    cells = []
    for i, label in enumerate(JOB_TYPES):
        col = i % JOB_GRID_COLS
        row = i // JOB_GRID_COLS
        cells.append(JobTypeCell(
            label=label,
            x=left + col * col_spacing,
            top=top + JOB_GRID_OFFSET_Y + row * JOB_GRID_ROW_SPACING,
            checked=label in chosen,
        ))
    return cells


def effective_terms(invoice, settings) -> str:
    own = (getattr(invoice, "terms", None) or "").strip()
    if own:
        return own
    return ((getattr(settings, "terms_and_conditions", None) or "").strip() if settings else "")


def _fmt_rate(rate) -> str:
    return f"{float(rate or 0):g}"


def totals_rows(totals: Totals, pst=None, gst=None) -> list[tuple[str, str, bool]]:
    """(label, value, emphasised) for the footer totals table."""
    return [
        ("TOTAL MATERIALS", format_money(totals.materials_subtotal), False),
        ("TOTAL LABOUR", format_money(totals.labour_subtotal), False),
        ("SUBTOTAL", format_money(totals.subtotal), False),
        (f"PST ({_fmt_rate(pst)}%)", format_money(totals.pst_amount), False),
        (f"GST ({_fmt_rate(gst)}%)", format_money(totals.gst_amount), False),
        ("OTHER CHARGES", format_money(totals.other_charges), False),
        ("TOTAL", format_money(totals.total), True),
    ]


# -----------------------------
# Best-effort images
# -----------------------------
@dataclass(frozen=True)
class ImageResult:
    image: ImageReader | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.image is not None


def decode_data_uri(value: str) -> bytes:
    """Accepts `data:image/png;base64,...` or a bare base64 payload."""
    payload = value.split(",", 1)[1] if "," in value else value
    return base64.b64decode(payload.strip(), validate=True)


def load_image(source) -> ImageResult:
    """
    Load a logo/signature for drawing. Never raises: a missing or corrupt
    image comes back as ImageResult(error=...).
    """
    if not source:
        return ImageResult()
    try:
        if isinstance(source, (bytes, bytearray)):
            img = ImageReader(io.BytesIO(bytes(source)))
        elif isinstance(source, str) and source.startswith("data:"):
            img = ImageReader(io.BytesIO(decode_data_uri(source)))
        else:
            if not os.path.exists(str(source)):
                return ImageResult(error=f"image not found: {source}")
            img = ImageReader(str(source))
        iw, ih = img.getSize()
        if not iw or not ih:
            return ImageResult(error="image has no size")
        return ImageResult(image=img)
    except Exception as exc:
        logger.warning("Could not load image: %r", exc)
        return ImageResult(error=str(exc) or exc.__class__.__name__)


def load_signature(value) -> ImageResult:
    if not value:
        return ImageResult()
    if isinstance(value, str) and not value.startswith("data:"):
        # bare base64 payload
        try:
            return load_image(decode_data_uri(value))
        except Exception as exc:
            logger.warning("Could not decode signature: %r", exc)
            return ImageResult(error=str(exc) or exc.__class__.__name__)
    return load_image(value)


# -----------------------------
# Canvas wrapper (top-down offsets)
# -----------------------------
class _Sheet:
    def __init__(self, pdf):
        self.pdf = pdf
        self.pages = 1

    def text(self, x, top, text, font="Helvetica", size=9, width=None, align="left", color=colors.black):
        text = str(text or "")
        if not text:
            return
        if width is not None:
            text = _fit(text, font, size, width)
        pdf = self.pdf
        pdf.setFont(font, size)
        pdf.setFillColor(color)
        baseline = PAGE_H - top - size * 0.8
        if align == "center" and width is not None:
            pdf.drawCentredString(x + width / 2, baseline, text)
        elif align == "right" and width is not None:
            pdf.drawRightString(x + width, baseline, text)
        else:
            pdf.drawString(x, baseline, text)

    def fit_text(self, x, top, text, font="Helvetica", size=9, width=100, align="left",
                 min_size=MIN_FONT_SIZE, max_lines=2):
        """
        Like text(), but the whole string is always drawn: the font shrinks
        down to min_size, then the text wraps onto at most max_lines lines.
        When even that is not enough it is drawn on one line past the box.
        Returns the font size used.
        """
        text = str(text or "")
        if not text:
            return size
        while size > min_size and stringWidth(text, font, size) > width:
            size = max(min_size, size - 0.5)
        if stringWidth(text, font, size) <= width:
            self._draw_line(x, top, text, font, size, width, align)
            return size

        lines = _wrap_text(text, font, size, width)
        if len(lines) > max_lines:
            lines = [text]
        # keep the block centred on where the single line would have been
        top -= (len(lines) - 1) * (size + 1) / 2
        for i, ln in enumerate(lines):
            self._draw_line(x, top + i * (size + 1), ln, font, size, width, align)
        return size

    def _draw_line(self, x, top, text, font, size, width, align):
        pdf = self.pdf
        pdf.setFont(font, size)
        pdf.setFillColor(colors.black)
        baseline = PAGE_H - top - size * 0.8
        if align == "center":
            pdf.drawCentredString(x + width / 2, baseline, text)
        elif align == "right":
            pdf.drawRightString(x + width, baseline, text)
        else:
            pdf.drawString(x, baseline, text)

    def rect(self, x, top, w, h, stroke=1, fill=0, fill_color=None):
        pdf = self.pdf
        if fill_color is not None:
            pdf.setFillColor(fill_color)
        pdf.rect(x, PAGE_H - top - h, w, h, stroke=stroke, fill=fill)
        pdf.setFillColor(colors.black)

    def line(self, x1, top1, x2, top2, width=1):
        pdf = self.pdf
        pdf.setLineWidth(width)
        pdf.line(x1, PAGE_H - top1, x2, PAGE_H - top2)
        pdf.setLineWidth(1)

    def image(self, img, x, top, w, h) -> bool:
        try:
            self.pdf.drawImage(img, x, PAGE_H - top - h, width=w, height=h, mask="auto")
            return True
        except Exception as exc:
            logger.warning("Could not draw image: %r", exc)
            return False

    def new_page(self) -> float:
        self.pdf.showPage()
        self.pages += 1
        return MARGIN

    def ensure_room(self, top, needed, limit=BOTTOM_LIMIT) -> float:
        # Greedy break: no look-ahead, the block simply moves to the next page
        if top + needed > limit:
            return self.new_page()
        return top


# -----------------------------
# Sections (canonical labour/materials layout)
# -----------------------------
def _draw_header(sheet: _Sheet, top: float, invoice, settings, logo_path, title=TITLE) -> float:
    """Logo + letterhead on the left, title + number on the right.
    Returns the bottom of the left column."""
    left_bottom = top
    logo = load_image(logo_path)
    if logo.ok:
        iw, ih = logo.image.getSize()
        scale = min(LOGO_MAX_W / float(iw), LOGO_MAX_H / float(ih))
        w, h = float(iw) * scale, float(ih) * scale
        if sheet.image(logo.image, LEFT_X, top - 20, w, h):
            left_bottom = top - 20 + h

    if settings is not None:
        company = (settings.company_name or "").strip()
        address_lines = [p.strip() for p in (settings.address or "").split(",") if p.strip()]
        y = left_bottom + 4
        if company:
            sheet.text(LEFT_X, y, company, "Helvetica-Bold", 11, width=RIGHT_X - LEFT_X - 10)
            y += 13
        for ln in address_lines:
            sheet.text(LEFT_X, y, ln, "Helvetica", 9, width=RIGHT_X - LEFT_X - 10)
            y += 11
        left_bottom = y

    sheet.text(RIGHT_X, top, title, "Helvetica-Bold", 13, width=RIGHT_COL_W)
    # The number takes whatever the title leaves and is never cut
    title_w = stringWidth(title, "Helvetica-Bold", 13) + 8
    sheet.fit_text(RIGHT_X + title_w, top, invoice.invoice_number or "", "Helvetica-Bold", 13,
                   width=RIGHT_COL_W - title_w, align="right", max_lines=1)
    return left_bottom


def _client_lines(client) -> list[str]:
    lines = [client.name or ""]
    if client.company:
        lines.append(client.company)
    if client.street:
        lines.append(client.street)
    if client.city or client.state or client.zip_code:
        lines.append(f"{client.city or ''}, {client.state or ''} {client.zip_code or ''}".strip())
    if client.country:
        lines.append(client.country)
    return [ln for ln in lines if ln]


def _draw_client_block(sheet: _Sheet, top: float, client, heading="To") -> float:
    sheet.text(LEFT_X, top, heading, "Helvetica-Bold", 10)
    y = top + 12
    for ln in _client_lines(client):
        sheet.fit_text(LEFT_X + 20, y, ln, "Helvetica", 11, width=RIGHT_X - LEFT_X - 30, max_lines=1)
        y += 12
    return y


def _detail_values(invoice, client) -> list[str]:
    return [
        _fmt_date(invoice.issue_date),
        (invoice.customer_email or "").strip() or (client.email or ""),
        (invoice.customer_number or "").strip() or (client.phone or ""),
        invoice.job_location or "",
        _fmt_date(invoice.job_date),
        _fmt_datetime(invoice.job_start),
        _fmt_datetime(invoice.job_finish),
    ]


def _draw_details_table(sheet: _Sheet, top: float, invoice, client) -> float:
    rows = len(DETAIL_LABELS)
    height = DETAIL_ROW_H * rows

    # One border, N-1 horizontal dividers, one vertical divider
    sheet.rect(RIGHT_X, top, RIGHT_COL_W, height)
    for i in range(1, rows):
        sheet.line(RIGHT_X, top + DETAIL_ROW_H * i, RIGHT_X + RIGHT_COL_W, top + DETAIL_ROW_H * i)
    sheet.line(RIGHT_X + DETAIL_LABEL_W, top, RIGHT_X + DETAIL_LABEL_W, top + height)

    y = top
    for label, value in zip(DETAIL_LABELS, _detail_values(invoice, client)):
        sheet.text(RIGHT_X + 4, y + 4, label, "Helvetica", 9, width=DETAIL_LABEL_W - 8)
        sheet.fit_text(RIGHT_X + DETAIL_LABEL_W + 4, y + 4, value, "Helvetica", 9,
                       width=RIGHT_COL_W - DETAIL_LABEL_W - 8)
        y += DETAIL_ROW_H
    return top + height


def _draw_job_types(sheet: _Sheet, top: float, selected) -> float:
    for cell in job_type_cells(selected, top=top):
        sheet.rect(cell.x, cell.top, JOB_GRID_BOX, JOB_GRID_BOX)
        if cell.checked:
            sheet.line(cell.x, cell.top, cell.x + JOB_GRID_BOX, cell.top + JOB_GRID_BOX)
            sheet.line(cell.x + JOB_GRID_BOX, cell.top, cell.x, cell.top + JOB_GRID_BOX)
        sheet.text(cell.x + 12, cell.top, cell.label, "Helvetica", 8)
    return top + JOB_GRID_H


def _draw_band(sheet: _Sheet, top: float, headers, widths) -> float:
    sheet.rect(LEFT_X, top, sum(widths), BAND_H, stroke=1, fill=1, fill_color=colors.black)
    x = LEFT_X
    for header, w in zip(headers, widths):
        sheet.text(x, top + 4, header, "Helvetica-Bold", 10, width=w, align="center", color=colors.white)
        x += w
    return top + BAND_H


def _draw_description(sheet: _Sheet, top: float, text) -> float:
    top = sheet.ensure_room(top, BAND_H + DESCRIPTION_BOX_H)
    top = _draw_band(sheet, top, ("DESCRIPTION OF WORK",), (CONTENT_W,))
    sheet.rect(LEFT_X, top, CONTENT_W, DESCRIPTION_BOX_H)
    max_lines = int((DESCRIPTION_BOX_H - 10) // 11)
    y = top + 5
    for ln in _wrap_paragraphs(text, "Helvetica", 9, CONTENT_W - 10)[:max_lines]:
        sheet.text(LEFT_X + 5, y, ln, "Helvetica", 9)
        y += 11
    return top + DESCRIPTION_BOX_H


def _draw_grid_table(sheet: _Sheet, top: float, headers, widths, rows, row_count) -> float:
    """
    Header band, then `row_count` bordered rows; rows past len(rows) are
    blank. A row that would cross the bottom margin moves to a new page
    where the header band is repeated.
    """
    top = sheet.ensure_room(top, BAND_H + ROW_H)
    top = _draw_band(sheet, top, headers, widths)
    table_w = sum(widths)

    for i in range(row_count):
        next_top = sheet.ensure_room(top, ROW_H)
        if next_top != top:
            top = _draw_band(sheet, next_top, headers, widths)

        sheet.rect(LEFT_X, top, table_w, ROW_H)
        x = LEFT_X
        for w in widths[:-1]:
            x += w
            sheet.line(x, top, x, top + ROW_H)

        if i < len(rows):
            x = LEFT_X
            for cell, w in zip(rows[i], widths):
                sheet.text(x + 2, top + 3, cell, "Helvetica", 9, width=w - 4)
                x += w
        top += ROW_H
    return top


def _labour_cells(entry) -> tuple:
    return (
        entry.notes or "",
        entry.type or "",
        _fmt_number(entry.hrs),
        format_money(entry.rate),
        format_money(entry.amount),
    )


def _material_cells(entry) -> tuple:
    return (
        _fmt_number(entry.qty),
        entry.material or "",
        format_money(entry.amount),
    )


def _draw_labour_table(sheet: _Sheet, top: float, labour) -> float:
    labour = list(labour or [])
    return _draw_grid_table(
        sheet, top, LABOUR_HEADERS, LABOUR_COL_WIDTHS,
        [_labour_cells(e) for e in labour], labour_row_count(len(labour)),
    )


def _draw_total_labour(sheet: _Sheet, top: float, totals: Totals) -> float:
    top = sheet.ensure_room(top, BAND_H)
    sheet.text(LEFT_X, top + 3, "TOTAL LABOUR", "Helvetica-Bold", 13, width=CONTENT_W, align="center")
    amount_w = LABOUR_COL_WIDTHS[-1]
    sheet.text(LEFT_X + CONTENT_W - amount_w + 2, top + 4, format_money(totals.labour_subtotal),
               "Helvetica-Bold", 10, width=amount_w - 4)
    return top + BAND_H


def _draw_materials_table(sheet: _Sheet, top: float, materials) -> float:
    materials = list(materials or [])
    return _draw_grid_table(
        sheet, top, MATERIAL_HEADERS, MATERIAL_COL_WIDTHS,
        [_material_cells(e) for e in materials], materials_row_count(len(materials)),
    )


def _draw_signature(sheet: _Sheet, x: float, top: float, settings) -> None:
    signature = getattr(settings, "signature", None) if settings is not None else None
    if not signature:
        return
    result = load_signature(signature)
    img_w, img_h, col_w = 70, 25, 90
    if result.ok and sheet.image(result.image, x + (col_w - img_w) / 2, top, img_w, img_h):
        return
    sheet.fit_text(x, top + 10, SIGNATURE_PLACEHOLDER, "Helvetica", 9, width=col_w, align="center")


def _draw_totals_table(sheet: _Sheet, x: float, top: float, rows) -> None:
    n = len(rows)
    height = TOTALS_ROW_H * n
    sheet.rect(x, top, FOOTER_RIGHT_W, height)
    for i in range(1, n):
        sheet.line(x, top + i * TOTALS_ROW_H, x + FOOTER_RIGHT_W, top + i * TOTALS_ROW_H)
    sheet.line(x + TOTALS_LABEL_W, top, x + TOTALS_LABEL_W, top + height)
    # Heavier rule above the grand total
    sheet.line(x, top + (n - 1) * TOTALS_ROW_H, x + FOOTER_RIGHT_W, top + (n - 1) * TOTALS_ROW_H, width=2)

    for i, (label, value, emphasised) in enumerate(rows):
        font = "Helvetica-Bold" if emphasised else "Helvetica"
        row_top = top + i * TOTALS_ROW_H + 3
        sheet.text(x + 5, row_top, label, font, 9, width=TOTALS_LABEL_W - 10)
        sheet.text(x + TOTALS_LABEL_W + 5, row_top, value, font, 9,
                   width=FOOTER_RIGHT_W - TOTALS_LABEL_W - 10, align="right")


def _draw_footer(sheet: _Sheet, top: float, invoice, settings, totals: Totals) -> float:
    top = sheet.ensure_room(top, FOOTER_H)
    sheet.rect(LEFT_X, top, CONTENT_W, FOOTER_H)

    # Left zone
    sheet.text(LEFT_X + 5, top + 5, "WORK ORDERED BY", "Helvetica-Bold", 8)
    if invoice.work_ordered_by:
        sheet.text(LEFT_X + 120, top + 5, invoice.work_ordered_by, "Helvetica", 8, width=FOOTER_LEFT_W - 125)
    sheet.line(LEFT_X, top + 16, LEFT_X + FOOTER_LEFT_W, top + 16)

    y = top + 19
    for ln in _wrap_text(ACKNOWLEDGEMENT, "Helvetica", 7, FOOTER_LEFT_W - 10):
        sheet.text(LEFT_X + 5, y, ln, "Helvetica", 7)
        y += 8.5

    sig_x = LEFT_X + 75
    date_x = LEFT_X + 215
    label_top = top + 72
    _draw_signature(sheet, sig_x, top + 40, settings)
    sheet.text(sig_x, label_top, "SIGNATURE", "Helvetica", 8, width=90, align="center")
    sheet.text(date_x, top + 50, _fmt_date(invoice.issue_date), "Helvetica", 9, width=60, align="center")
    sheet.text(date_x, label_top, "DATE", "Helvetica", 8, width=60, align="center")

    note = (invoice.footer_note or "").strip() or DEFAULT_FOOTER_NOTE
    sheet.text(LEFT_X + 5, top + FOOTER_H - 14, note, "Helvetica-BoldOblique", 11,
               width=FOOTER_LEFT_W - 10, align="center")

    # Right zone
    _draw_totals_table(sheet, LEFT_X + FOOTER_LEFT_W, top, totals_rows(totals, invoice.pst, invoice.gst))
    return top + FOOTER_H


def _draw_terms_page(sheet: _Sheet, terms: str) -> None:
    top = sheet.new_page()
    sheet.text(LEFT_X, top, "TERMS AND CONDITIONS", "Helvetica-Bold", 14)
    top += 26
    for ln in _wrap_paragraphs(terms, "Helvetica", 9, CONTENT_W):
        top = sheet.ensure_room(top, 12)
        sheet.text(LEFT_X, top, ln, "Helvetica", 9)
        top += 12


def _render_labour_materials(sheet: _Sheet, invoice, client, settings, logo_path) -> None:
    totals = invoice_totals(invoice)

    left_bottom = _draw_header(sheet, MARGIN, invoice, settings, logo_path)
    details_bottom = _draw_details_table(sheet, MARGIN + 25, invoice, client)
    client_bottom = _draw_client_block(sheet, max(MARGIN + 90, left_bottom + 8), client)
    grid_bottom = _draw_job_types(sheet, details_bottom + 6, invoice.job_type)

    top = max(client_bottom, grid_bottom)
    top = _draw_description(sheet, top, invoice.description_of_work)
    top = _draw_labour_table(sheet, top, invoice.labour)
    top = _draw_total_labour(sheet, top, totals)
    top = _draw_materials_table(sheet, top, invoice.materials)
    _draw_footer(sheet, top + 2, invoice, settings, totals)


# -----------------------------
# Legacy line-item layout
# -----------------------------
def _draw_legacy_dates(sheet: _Sheet, top: float, invoice) -> float:
    rows = (("Issue Date:", _fmt_date(invoice.issue_date)), ("Due Date:", _fmt_date(invoice.due_date)))
    y = top
    for label, value in rows:
        sheet.text(RIGHT_X, y, label, "Helvetica-Bold", 10)
        sheet.text(RIGHT_X + DETAIL_LABEL_W, y, value, "Helvetica", 10, width=RIGHT_COL_W - DETAIL_LABEL_W)
        y += 14
    return y


def _draw_line_items(sheet: _Sheet, top: float, items) -> float:
    top = _draw_band(sheet, top, LEGACY_HEADERS, LEGACY_COL_WIDTHS)
    for item in items:
        # Greedy page break; the row starts at the top margin of the next page
        top = sheet.ensure_room(top, ROW_H, limit=LEGACY_PAGE_BREAK)
        cells = (
            item.description or "",
            _fmt_number(item.quantity),
            format_money(item.unit_price),
            f"{_fmt_rate(item.tax_rate)}%",
            format_money(line_item_amount(item)),
        )
        x = LEFT_X
        for i, (cell, w) in enumerate(zip(cells, LEGACY_COL_WIDTHS)):
            align = "left" if i == 0 else "right"
            sheet.text(x + 2, top + 3, cell, "Helvetica", 9, width=w - 4, align=align)
            x += w
        sheet.line(LEFT_X, top + ROW_H, LEFT_X + CONTENT_W, top + ROW_H)
        top += ROW_H
    return top


def _draw_legacy_totals(sheet: _Sheet, top: float, totals: Totals) -> float:
    rows = (
        ("Subtotal", format_money(totals.subtotal), "Helvetica"),
        ("Tax", format_money(totals.tax_total), "Helvetica"),
        ("Total", format_money(totals.total), "Helvetica-Bold"),
    )
    top = sheet.ensure_room(top + 10, ROW_H * len(rows), limit=LEGACY_PAGE_BREAK)
    x = LEFT_X + CONTENT_W - FOOTER_RIGHT_W
    for label, value, font in rows:
        sheet.text(x, top, label, font, 10, width=TOTALS_LABEL_W)
        sheet.text(x + TOTALS_LABEL_W, top, value, font, 10, width=FOOTER_RIGHT_W - TOTALS_LABEL_W, align="right")
        top += ROW_H
    return top


def _draw_legacy_notes(sheet: _Sheet, top: float, notes) -> float:
    notes = (notes or "").strip()
    if not notes:
        return top
    top = sheet.ensure_room(top + 10, 24, limit=LEGACY_PAGE_BREAK)
    sheet.text(LEFT_X, top, "Notes", "Helvetica-Bold", 10)
    top += 14
    for ln in _wrap_paragraphs(notes, "Helvetica", 9, CONTENT_W):
        top = sheet.ensure_room(top, 12, limit=LEGACY_PAGE_BREAK)
        sheet.text(LEFT_X, top, ln, "Helvetica", 9)
        top += 12
    return top


def _render_line_items(sheet: _Sheet, invoice, client, settings, logo_path) -> None:
    totals = invoice_totals(invoice)

    left_bottom = _draw_header(sheet, MARGIN, invoice, settings, logo_path, title="Invoice")
    dates_bottom = _draw_legacy_dates(sheet, MARGIN + 25, invoice)
    client_bottom = _draw_client_block(sheet, max(MARGIN + 90, left_bottom + 8), client, heading="Bill To")

    top = max(client_bottom, dates_bottom) + 16
    top = _draw_line_items(sheet, top, list(invoice.line_items or []))
    top = _draw_legacy_totals(sheet, top, totals)
    _draw_legacy_notes(sheet, top, invoice.notes)


# -----------------------------
# Public API
# -----------------------------
def render_invoice_document(invoice: Invoice, client: Client | None, settings: Setting | None,
                            logo_path: str | None = None) -> bytes:
    """
    Render the invoice as PDF bytes. `settings` may be None (no letterhead,
    no signature, no default terms); a missing client is fatal.
    """
    if client is None:
        raise InvoiceRenderError(f"Client not found for invoice {getattr(invoice, 'invoice_number', '?')}")
    if logo_path is None:
        logo_path = Config.LOGO_PATH

    buf = io.BytesIO()
    pdf = canvas.Canvas(buf, pagesize=A4)
    pdf.setTitle(f"Invoice - {invoice.invoice_number}")
    pdf.setStrokeColor(colors.black)
    pdf.setLineWidth(1)
    sheet = _Sheet(pdf)

    if (invoice.kind or "") == KIND_LINE_ITEMS:
        _render_line_items(sheet, invoice, client, settings, logo_path)
    else:
        _render_labour_materials(sheet, invoice, client, settings, logo_path)

    terms = effective_terms(invoice, settings)
    if terms:
        _draw_terms_page(sheet, terms)

    pdf.save()
    logger.info("Rendered %s (%d page(s))", invoice.invoice_number, sheet.pages)
    return buf.getvalue()


# -----------------------------
# File sink (uploads/invoice-<number>.pdf)
# -----------------------------
def pdf_filename(invoice_number: str) -> str:
    return f"invoice-{_safe_filename(invoice_number)}.pdf"


def pdf_url(invoice_number: str) -> str:
    return f"/uploads/{pdf_filename(invoice_number)}"


def pdf_path(invoice_number: str, uploads_dir: str | None = None) -> str:
    return os.path.abspath(os.path.join(uploads_dir or Config.UPLOADS_DIR, pdf_filename(invoice_number)))


def store_pdf(invoice_number: str, data: bytes, uploads_dir: str | None = None) -> str:
    path = pdf_path(invoice_number, uploads_dir)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(data)
    return path


def pdf_exists(invoice_number: str, uploads_dir: str | None = None) -> bool:
    return os.path.exists(pdf_path(invoice_number, uploads_dir))


def delete_pdf(invoice_number: str, uploads_dir: str | None = None) -> bool:
    path = pdf_path(invoice_number, uploads_dir)
    if not os.path.exists(path):
        return False
    os.remove(path)
    return True


def generate_and_store_pdf(session, invoice_id: int, uploads_dir: str | None = None,
                           logo_path: str | None = None) -> tuple[str, bytes]:
    """
    Renders the invoice and writes it to the uploads dir.
    Does not change invoice.status / invoice.pdf_url; callers do that once
    this returns.

    Returns: (absolute pdf path on disk, pdf bytes).
    """
    inv = session.get(Invoice, invoice_id)
    if not inv:
        raise InvoiceRenderError(f"Invoice not found: id={invoice_id}")

    client = session.get(Client, inv.client_id) if inv.client_id else None
    settings = get_settings(session)

    data = render_invoice_document(inv, client, settings, logo_path=logo_path)
    path = store_pdf(inv.invoice_number, data, uploads_dir)
    logger.info("Stored %s -> %s", inv.invoice_number, path)
    return path, data
