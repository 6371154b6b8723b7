"""
FieldCheck - Inspection Report Generator

Turns an ``InspectionDetail`` tree into a paginated PDF (reportlab canvas)
and the matching email subject/html/text. Both renderings read their
overview values from the same ``ReportFacts`` so they never disagree.

Layout is a single pass over the tree: greedy word wrap against the content
width, a page break whenever the next line does not fit above the bottom
margin, and a deferred final pass (``NumberedCanvas.save``) that stamps
"Page N of TOTAL" once the page count is known. Media that cannot be
embedded degrades to a filename + URL line instead of aborting the report.
"""

from __future__ import annotations

import html
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from PIL import Image
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .config import Settings
from .database import Database
from .errors import ExternalServiceFailure, NotFound
from .media import MediaStore
from .models import CheckpointDetail, CheckpointStatus, InspectionDetail, Media, MediaType

logger = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = letter
PAGE_MARGIN = 60
CONTENT_WIDTH = PAGE_WIDTH - 2 * PAGE_MARGIN
VALUE_COLUMN = 140
FOOTER_Y = 30

TITLE_FONT = "Helvetica-Bold"
BODY_FONT = "Helvetica"
ITALIC_FONT = "Helvetica-Oblique"

PRIMARY_COLOR = colors.Color(0.11, 0.42, 0.47)
SECONDARY_COLOR = colors.Color(0.37, 0.37, 0.37)
LIGHT_GRAY = colors.Color(0.85, 0.85, 0.85)
SUCCESS_COLOR = colors.Color(0.05, 0.46, 0.22)
WARNING_COLOR = colors.Color(0.92, 0.40, 0.11)
DANGER_COLOR = colors.Color(0.73, 0.06, 0.20)

STATUS_COLORS = {
    CheckpointStatus.PASS: SUCCESS_COLOR,
    CheckpointStatus.CORRECTED: WARNING_COLOR,
    CheckpointStatus.ACTION_REQUIRED: DANGER_COLOR,
}

JPEG_MAGIC = b"\xff\xd8"
PNG_MAGIC = b"\x89PNG"
MIN_IMAGE_BYTES = 100
IMAGE_MAX_SIZE = 180
DEFAULT_TEMPLATE_LABEL = "Standard Inspection"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M UTC"


class MediaRenderError(ValueError):
    """Media bytes failed validation and cannot be embedded."""


@dataclass
class ReportFacts:
    """Overview values shared by the PDF and the email body."""

    model: str
    serial: str
    location: str
    date: str
    status: str
    technician: str
    template_name: str
    freight_id: Optional[str] = None
    task_id: Optional[str] = None
    remarks: Optional[str] = None


@dataclass
class ReportSummary:
    total: int = 0
    passed: int = 0
    corrected: int = 0
    action_required: int = 0
    not_applicable: int = 0
    unset: int = 0
    critical_issues: int = 0
    estimated_hours: float = 0.0


@dataclass
class EmailContent:
    subject: str
    html: str
    text: str
    filename: str


@dataclass
class RenderedReport:
    pdf: bytes
    page_count: int
    pages: List[List[str]]
    media_fallbacks: List[str] = field(default_factory=list)

    def page_text(self, page_number: int) -> str:
        return "\n".join(self.pages[page_number - 1])


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def report_facts(detail: InspectionDetail) -> ReportFacts:
    inspection = detail.inspection
    equipment = detail.equipment
    return ReportFacts(
        model=equipment.model,
        serial=equipment.serial,
        location=equipment.location,
        date=format_timestamp(inspection.started_at),
        status=inspection.status.value.replace("_", " ").upper(),
        technician=detail.technician.name if detail.technician else "Not Assigned",
        template_name=detail.template_name or DEFAULT_TEMPLATE_LABEL,
        freight_id=inspection.freight_id,
        task_id=inspection.task_id,
        remarks=inspection.technician_remarks,
    )


def summarize(detail: InspectionDetail) -> ReportSummary:
    summary = ReportSummary()
    for entry in detail.iter_checkpoints():
        checkpoint = entry.checkpoint
        summary.total += 1
        if checkpoint.critical and checkpoint.status is CheckpointStatus.ACTION_REQUIRED:
            summary.critical_issues += 1
        summary.estimated_hours += checkpoint.estimated_hours or 0.0
        if checkpoint.status is CheckpointStatus.PASS:
            summary.passed += 1
        elif checkpoint.status is CheckpointStatus.CORRECTED:
            summary.corrected += 1
        elif checkpoint.status is CheckpointStatus.ACTION_REQUIRED:
            summary.action_required += 1
        elif checkpoint.status is CheckpointStatus.NOT_APPLICABLE:
            summary.not_applicable += 1
        else:
            summary.unset += 1
    return summary


def wrap_text(text: str, font: str, size: float, max_width: float) -> List[str]:
    """Greedy word wrap; a word wider than ``max_width`` gets a line of its own."""
    lines: List[str] = []
    line = ""
    for word in text.split(" "):
        candidate = f"{line} {word}" if line else word
        if stringWidth(candidate, font, size) <= max_width:
            line = candidate
        else:
            if line:
                lines.append(line)
            line = word
    if line:
        lines.append(line)
    return lines


class NumberedCanvas(canvas.Canvas):
    """Canvas that holds pages back until ``save`` so each footer knows the total."""

    def __init__(self, *args, generated_on: str = "", footer_label: str = "", **kwargs):
        canvas.Canvas.__init__(self, *args, **kwargs)
        self._saved_page_states = []
        self.generated_on = generated_on
        self.footer_label = footer_label
        self.stamped_footers: List[List[str]] = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total = len(self._saved_page_states)
        stamped = self.stamped_footers
        for number, state in enumerate(self._saved_page_states, start=1):
            self.__dict__.update(state)
            stamped.append(self._draw_footer(number, total))
            canvas.Canvas.showPage(self)
        self.stamped_footers = stamped
        canvas.Canvas.save(self)

    def _draw_footer(self, number: int, total: int) -> List[str]:
        page_label = f"Page {number} of {total}"
        footer_text = f"Generated on {self.generated_on} | {self.footer_label}"
        self.saveState()
        self.setFillColor(LIGHT_GRAY)
        self.rect(PAGE_MARGIN, 45, CONTENT_WIDTH, 0.5, stroke=0, fill=1)
        self.setFont(BODY_FONT, 9)
        self.setFillColor(SECONDARY_COLOR)
        self.drawRightString(PAGE_WIDTH - PAGE_MARGIN, FOOTER_Y, page_label)
        self.setFont(ITALIC_FONT, 8)
        self.drawString(PAGE_MARGIN, FOOTER_Y, footer_text)
        self.restoreState()
        return [footer_text, page_label]


class _PageWriter:
    """Cursor over the canvas; every block goes through ``ensure_space``."""

    def __init__(self, pdf: NumberedCanvas) -> None:
        self.pdf = pdf
        self.y = PAGE_HEIGHT - PAGE_MARGIN
        self.pages: List[List[str]] = [[]]

    def new_page(self) -> None:
        self.pdf.showPage()
        self.pages.append([])
        self.y = PAGE_HEIGHT - PAGE_MARGIN

    def ensure_space(self, height: float) -> None:
        if self.y - height < PAGE_MARGIN:
            self.new_page()

    def record(self, text: str) -> None:
        self.pages[-1].append(text)

    def text(
        self,
        text: str,
        *,
        size: float = 12,
        font: str = BODY_FONT,
        color=colors.black,
        align: str = "left",
        line_height: float = 1.3,
        indent: float = 0,
    ) -> None:
        step = size * line_height
        for line in wrap_text(text, font, size, CONTENT_WIDTH - indent):
            self.ensure_space(step)
            if align == "center":
                x = (PAGE_WIDTH - stringWidth(line, font, size)) / 2
            elif align == "right":
                x = PAGE_WIDTH - PAGE_MARGIN - stringWidth(line, font, size)
            else:
                x = PAGE_MARGIN + indent
            self.pdf.setFont(font, size)
            self.pdf.setFillColor(color)
            self.pdf.drawString(x, self.y, line)
            self.record(line)
            self.y -= step

    def rule(self, color=LIGHT_GRAY, thickness: float = 1) -> None:
        self.ensure_space(10)
        self.pdf.setFillColor(color)
        self.pdf.rect(PAGE_MARGIN, self.y - 5, CONTENT_WIDTH, thickness, stroke=0, fill=1)
        self.y -= 15

    def section_header(self, title: str) -> None:
        lines = wrap_text(title, TITLE_FONT, 14, CONTENT_WIDTH - 20)
        height = 30 + 18 * (len(lines) - 1)
        self.ensure_space(height)
        self.pdf.setFillColor(PRIMARY_COLOR)
        self.pdf.rect(PAGE_MARGIN - 5, self.y - height + 5, CONTENT_WIDTH + 10, height, stroke=0, fill=1)
        self.pdf.setFont(TITLE_FONT, 14)
        self.pdf.setFillColor(colors.white)
        text_y = self.y - 18
        for line in lines:
            self.pdf.drawString(PAGE_MARGIN + 10, text_y, line)
            self.record(line)
            text_y -= 18
        self.y -= height + 5

    def key_value(self, label: str, value: str, *, value_color=colors.black, value_font: str = BODY_FONT) -> None:
        value_lines = wrap_text(value, value_font, 11, CONTENT_WIDTH - VALUE_COLUMN) or [""]
        for index, line in enumerate(value_lines):
            self.ensure_space(18)
            if index == 0:
                self.pdf.setFont(TITLE_FONT, 11)
                self.pdf.setFillColor(SECONDARY_COLOR)
                self.pdf.drawString(PAGE_MARGIN, self.y, label)
                self.record(f"{label} {line}")
            else:
                self.record(line)
            self.pdf.setFont(value_font, 11)
            self.pdf.setFillColor(value_color)
            self.pdf.drawString(PAGE_MARGIN + VALUE_COLUMN, self.y, line)
            self.y -= 18


@dataclass
class ReportGenerator:
    database: Database
    media: MediaStore
    settings: Settings

    def load_detail(self, inspection_id: int) -> InspectionDetail:
        detail = self.database.get_inspection_detail(inspection_id)
        if detail is None:
            raise NotFound("Inspection not found")
        return detail

    def generate_pdf(self, detail: InspectionDetail) -> bytes:
        return self.render(detail).pdf

    def render(self, detail: InspectionDetail, *, generated_at: Optional[datetime] = None) -> RenderedReport:
        generated_at = generated_at or datetime.now(timezone.utc).replace(tzinfo=None)
        buffer = io.BytesIO()
        pdf = NumberedCanvas(
            buffer,
            pagesize=letter,
            pageCompression=1 if self.settings.PDF_COMPRESSION else 0,
            generated_on=format_timestamp(generated_at),
            footer_label=self.settings.APP_NAME,
        )
        facts = report_facts(detail)
        pdf.setTitle(f"Inspection {detail.inspection.id} - {facts.model} ({facts.serial})")
        pdf.setAuthor(self.settings.APP_NAME)
        writer = _PageWriter(pdf)
        fallbacks: List[str] = []

        self._draw_title(writer)
        self._draw_overview(writer, facts)
        self._draw_summary(writer, summarize(detail))
        for section in detail.sections:
            # Start a fresh page rather than orphan a header at the bottom.
            if writer.y < PAGE_MARGIN + 200:
                writer.new_page()
            writer.section_header(section.section.name)
            for entry in section.checkpoints:
                self._draw_checkpoint(writer, entry, fallbacks)
            writer.y -= 20

        pdf.showPage()
        pdf.save()
        pages = writer.pages
        for lines, footer in zip(pages, pdf.stamped_footers):
            lines.extend(footer)
        logger.info(
            "Rendered report for inspection %s: %d pages, %d media fallbacks",
            detail.inspection.id,
            len(pages),
            len(fallbacks),
        )
        return RenderedReport(pdf=buffer.getvalue(), page_count=len(pages), pages=pages, media_fallbacks=fallbacks)

    def generate_email_content(self, detail: InspectionDetail) -> EmailContent:
        facts = report_facts(detail)
        subject_parts = ["Inspection Report", facts.template_name]
        if facts.freight_id:
            subject_parts.append(f"[Freight {facts.freight_id}]")
        if facts.task_id:
            subject_parts.append(f"[Task {facts.task_id}]")
        subject_parts.append(f"{facts.model} ({facts.serial})")
        subject = " - ".join(subject_parts)

        videos = [
            (media.filename, self.settings.media_url(media.id))
            for media in detail.iter_media()
            if media.type is MediaType.VIDEO
        ]
        overview = [
            ("Equipment", facts.model),
            ("Serial Number", facts.serial),
            ("Date", facts.date),
            ("Status", facts.status),
            ("Technician", facts.technician),
        ]
        if facts.freight_id:
            overview.append(("Freight ID", facts.freight_id))
        if facts.task_id:
            overview.append(("Task ID", facts.task_id))

        items_html = "".join(
            f"<li><strong>{html.escape(label)}:</strong> {html.escape(value)}</li>" for label, value in overview
        )
        videos_html = ""
        if videos:
            links = "".join(
                f'<li><a href="{html.escape(url)}">{html.escape(name)}</a></li>' for name, url in videos
            )
            videos_html = f"<h3>Attached Videos</h3><ul>{links}</ul>"
        body_html = (
            "<h2>Inspection Report</h2>"
            "<p>Please find the attached inspection report for:</p>"
            f"<ul>{items_html}</ul>"
            f"{videos_html}"
            f"<p>This report was generated automatically by the {html.escape(self.settings.APP_NAME)}.</p>"
        )

        text_lines = [subject, "", "Please find the attached inspection report PDF.", ""]
        text_lines.extend(f"{label}: {value}" for label, value in overview)
        if videos:
            text_lines.append("")
            text_lines.append("Videos:")
            text_lines.extend(f"- {name}: {url}" for name, url in videos)
        return EmailContent(
            subject=subject,
            html=body_html,
            text="\n".join(text_lines),
            filename=f"inspection-{detail.inspection.id}.pdf",
        )

    def _draw_title(self, writer: _PageWriter) -> None:
        writer.text("TECHNICAL INSPECTION REPORT", size=24, font=TITLE_FONT, color=PRIMARY_COLOR, align="center")
        writer.y -= 10
        writer.rule(PRIMARY_COLOR, 2)
        writer.y -= 20

    def _draw_overview(self, writer: _PageWriter, facts: ReportFacts) -> None:
        writer.section_header("Inspection Overview")
        rows = [
            ("Equipment Model:", facts.model),
            ("Serial Number:", facts.serial),
            ("Location:", facts.location),
            ("Inspection Date:", facts.date),
            ("Current Status:", facts.status),
            ("Technician:", facts.technician),
            ("Template:", facts.template_name),
        ]
        if facts.freight_id:
            rows.append(("Freight ID:", facts.freight_id))
        if facts.task_id:
            rows.append(("Task ID:", facts.task_id))
        for label, value in rows:
            writer.key_value(label, value)
        if facts.remarks:
            writer.y -= 5
            writer.text("Technician Remarks:", size=11, font=TITLE_FONT, color=SECONDARY_COLOR)
            writer.text(facts.remarks, size=10, color=SECONDARY_COLOR, indent=20, line_height=1.4)
        writer.y -= 15
        writer.rule()

    def _draw_summary(self, writer: _PageWriter, summary: ReportSummary) -> None:
        writer.y -= 15
        writer.section_header("Inspection Summary")
        hours = f"{summary.estimated_hours:g}h" if summary.estimated_hours > 0 else "N/A"
        writer.key_value("Total Checkpoints:", str(summary.total), value_font=TITLE_FONT)
        writer.key_value("Passed:", str(summary.passed), value_color=SUCCESS_COLOR, value_font=TITLE_FONT)
        writer.key_value("Corrected:", str(summary.corrected), value_font=TITLE_FONT)
        writer.key_value(
            "Action Required:",
            str(summary.action_required),
            value_color=WARNING_COLOR if summary.action_required else colors.black,
            value_font=TITLE_FONT,
        )
        writer.key_value("Not Applicable:", str(summary.not_applicable), value_font=TITLE_FONT)
        writer.key_value(
            "Critical Issues:",
            str(summary.critical_issues),
            value_color=DANGER_COLOR if summary.critical_issues else colors.black,
            value_font=TITLE_FONT,
        )
        writer.key_value("Est. Hours to Fix:", hours, value_font=TITLE_FONT)
        writer.y -= 20

    def _draw_checkpoint(self, writer: _PageWriter, entry: CheckpointDetail, fallbacks: List[str]) -> None:
        checkpoint = entry.checkpoint
        status = checkpoint.status.value if checkpoint.status else "NOT_CHECKED"
        badge_color = STATUS_COLORS.get(checkpoint.status, SECONDARY_COLOR)
        name = f"{checkpoint.name} [CRITICAL]" if checkpoint.critical else checkpoint.name
        name_font = TITLE_FONT if checkpoint.critical else BODY_FONT
        name_lines = wrap_text(name, name_font, 12, CONTENT_WIDTH - 110)
        row_height = max(25, 10 + 15 * len(name_lines) + 5)

        writer.ensure_space(row_height)
        pdf = writer.pdf
        pdf.setFillColor(badge_color)
        pdf.rect(PAGE_MARGIN, writer.y - 14, 100, 16, stroke=0, fill=1)
        pdf.setFont(TITLE_FONT, 9)
        pdf.setFillColor(colors.white)
        pdf.drawString(PAGE_MARGIN + 5, writer.y - 10, status)
        writer.record(status)
        pdf.setFont(name_font, 12)
        pdf.setFillColor(DANGER_COLOR if checkpoint.critical else colors.black)
        line_y = writer.y - 10
        for line in name_lines:
            pdf.drawString(PAGE_MARGIN + 110, line_y, line)
            writer.record(line)
            line_y -= 15
        writer.y -= row_height

        if checkpoint.notes:
            writer.text(f"Notes: {checkpoint.notes}", size=10, color=SECONDARY_COLOR, indent=20, line_height=1.4)
            writer.y -= 5
        if checkpoint.estimated_hours:
            writer.text(
                f"Estimated repair time: {checkpoint.estimated_hours:g} hours",
                size=10,
                font=TITLE_FONT,
                color=WARNING_COLOR,
                indent=20,
            )
            writer.y -= 5
        if entry.media:
            writer.text(f"Attachments ({len(entry.media)}):", size=10, font=TITLE_FONT, color=SECONDARY_COLOR, indent=20)
            for media in entry.media:
                self._draw_media(writer, media, fallbacks)
            writer.y -= 5

        writer.y -= 15
        writer.ensure_space(10)
        pdf.setFillColor(LIGHT_GRAY)
        pdf.rect(PAGE_MARGIN + 20, writer.y + 5, CONTENT_WIDTH - 40, 0.5, stroke=0, fill=1)
        writer.y -= 10

    def _draw_media(self, writer: _PageWriter, media: Media, fallbacks: List[str]) -> None:
        url = self.settings.media_url(media.id)
        if media.type is MediaType.VIDEO:
            self._draw_media_link(writer, f"Video: {media.filename}", url)
            return
        if "jpeg" not in media.mime_type and "jpg" not in media.mime_type and "png" not in media.mime_type:
            self._draw_media_link(writer, f"File (unsupported in PDF): {media.filename}", url)
            fallbacks.append(media.filename)
            return
        try:
            data = self.media.read_bytes(media)
            reader, width, height = self._decode_image(data, media.mime_type)
        except (MediaRenderError, NotFound, ExternalServiceFailure, OSError, SyntaxError, ValueError, Image.DecompressionBombError):
            logger.warning("Skipping image %s (media %s) in report", media.filename, media.id, exc_info=True)
            self._draw_media_link(writer, f"Image (corrupted in PDF): {media.filename}", url)
            fallbacks.append(media.filename)
            return

        draw_width = float(IMAGE_MAX_SIZE)
        draw_height = IMAGE_MAX_SIZE * height / width
        if draw_height > IMAGE_MAX_SIZE:
            draw_height = float(IMAGE_MAX_SIZE)
            draw_width = IMAGE_MAX_SIZE * width / height
        writer.ensure_space(draw_height + 20)
        pdf = writer.pdf
        pdf.setStrokeColor(LIGHT_GRAY)
        pdf.setLineWidth(1)
        pdf.rect(PAGE_MARGIN + 18, writer.y - draw_height - 2, draw_width + 4, draw_height + 4, stroke=1, fill=0)
        pdf.drawImage(reader, PAGE_MARGIN + 20, writer.y - draw_height, width=draw_width, height=draw_height, mask="auto")
        writer.record(f"[image] {media.filename}")
        writer.y -= draw_height + 15

    @staticmethod
    def _decode_image(data: bytes, mime_type: str):
        if len(data) < MIN_IMAGE_BYTES:
            raise MediaRenderError("Image data too small - likely corrupted")
        if "png" in mime_type:
            if not data.startswith(PNG_MAGIC):
                raise MediaRenderError("Invalid PNG header - data may be corrupted")
        elif not data.startswith(JPEG_MAGIC):
            raise MediaRenderError("Invalid JPEG header - data may be corrupted")
        with Image.open(io.BytesIO(data)) as probe:
            probe.verify()
        image = Image.open(io.BytesIO(data))
        image.load()
        width, height = image.size
        if not width or not height:
            raise MediaRenderError("Image has no dimensions")
        return ImageReader(image), width, height

    @staticmethod
    def _draw_media_link(writer: _PageWriter, label: str, url: str) -> None:
        writer.text(label, size=10, color=SECONDARY_COLOR, indent=20)
        writer.text(f"View at: {url}", size=9, font=ITALIC_FONT, color=PRIMARY_COLOR, indent=20)
        writer.y -= 5
