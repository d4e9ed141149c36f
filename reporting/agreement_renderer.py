"""
Agreement Document Renderer

Renders signable agreement documents to PDF and stamps signature images
onto them.

Library Choice:
- ReportLab renders the template (deterministic, no browser required).
  Each signature line is an AcroForm text field named after its anchor
  (buyer_signature_1, agent_signature, seller_signature_1).
- PyMuPDF locates those named fields in any PDF, including one a user has
  edited by hand, and places the signature image over the field. Each
  stamp leaves a hidden annotation naming its anchor, so signing the same
  slot again clears the earlier image instead of stacking a second one.

If an edited PDF has lost its form fields, signatures fall back to fixed
positions on the last page.
"""

from __future__ import annotations

import base64
import binascii
import logging
from io import BytesIO
from typing import Any, Final

import fitz  # PyMuPDF
from reportlab.lib import colors
from reportlab.lib.enums import TA_LEFT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import (
    Flowable,
    HRFlowable,
    KeepTogether,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from core.workflow.agreements import ALLOWED_SLOTS
from core.workflow.artifacts import DocumentRenderer
from core.workflow.errors import DocumentRenderError
from core.workflow.schema import AgreementKind, SignatureSlot

logger = logging.getLogger(__name__)


# =============================================================================
# Color Palette - print-friendly, matches the brokerage report style
# =============================================================================

class Palette:
    """Colors used in agreement documents."""
    BLACK = colors.Color(0.1, 0.1, 0.1)
    CHARCOAL = colors.Color(0.2, 0.2, 0.22)
    SLATE = colors.Color(0.35, 0.38, 0.42)
    GRAY = colors.Color(0.5, 0.5, 0.5)
    LIGHT_GRAY = colors.Color(0.85, 0.85, 0.85)
    WHITE = colors.white


# =============================================================================
# Constants
# =============================================================================

DATA_URL_PREFIX: Final[str] = "data:image/png;base64,"

# Subject of the hidden annotation recording where a signature was stamped
ANCHOR_MARKER: Final[str] = "signature-anchor"

DOCUMENT_TITLES: Final[dict[AgreementKind, str]] = {
    AgreementKind.STANDARD: "Buyer Representation Agreement",
    AgreementKind.AGENCY_DISCLOSURE: "Agency Disclosure",
    AgreementKind.AGENT_REFERRAL: "Agent Referral Agreement",
    AgreementKind.GLOBAL_REPRESENTATION: "Buyer Representation Agreement (All Properties)",
}

SLOT_LABELS: Final[dict[SignatureSlot, str]] = {
    SignatureSlot.BUYER: "Buyer",
    SignatureSlot.AGENT: "Agent",
    SignatureSlot.SELLER: "Seller",
}

SIGNATURE_FIELD_WIDTH: Final[float] = 70 * mm
SIGNATURE_FIELD_HEIGHT: Final[float] = 18 * mm

# Fallback rectangles (x0, y0, x1, y1 in PDF points, top-left origin) on the
# last page, used when an anchor field is missing from the document
DEFAULT_POSITIONS: Final[dict[str, tuple[float, float, float, float]]] = {
    "buyer_signature_1": (60, 620, 260, 670),
    "agent_signature": (60, 690, 260, 740),
    "seller_signature_1": (320, 620, 520, 670),
}


def decode_signature_image(signature_image: str) -> bytes:
    """
    Decode a base64 PNG signature, with or without its data URL prefix.

    Raises:
        DocumentRenderError: If the payload is not base64
    """
    payload = signature_image
    if payload.startswith(DATA_URL_PREFIX):
        payload = payload[len(DATA_URL_PREFIX):]
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DocumentRenderError(f"Signature image is not valid base64: {e}") from e
    if not data:
        raise DocumentRenderError("Signature image is empty")
    return data


# =============================================================================
# Styles
# =============================================================================


def get_agreement_styles():
    """Paragraph styles for agreement documents."""
    styles = getSampleStyleSheet()

    styles.add(ParagraphStyle(
        name='AgreementBrand',
        parent=styles['Normal'],
        fontSize=9,
        leading=12,
        textColor=Palette.SLATE,
        fontName='Helvetica',
        letterSpacing=1.2,
    ))

    styles.add(ParagraphStyle(
        name='AgreementTitle',
        parent=styles['Normal'],
        fontSize=18,
        leading=24,
        textColor=Palette.BLACK,
        fontName='Helvetica-Bold',
        alignment=TA_LEFT,
        spaceBefore=6,
        spaceAfter=10,
    ))

    styles.add(ParagraphStyle(
        name='AgreementBody',
        parent=styles['Normal'],
        fontSize=10,
        leading=15,
        textColor=Palette.CHARCOAL,
        fontName='Helvetica',
        spaceAfter=8,
    ))

    styles.add(ParagraphStyle(
        name='SignatureLabel',
        parent=styles['Normal'],
        fontSize=9,
        leading=12,
        textColor=Palette.SLATE,
        fontName='Helvetica-Bold',
    ))

    return styles


# =============================================================================
# Flowables
# =============================================================================


class SignatureField(Flowable):
    """A signature line carrying a named, empty AcroForm field."""

    def __init__(self, anchor: str, width: float = SIGNATURE_FIELD_WIDTH,
                 height: float = SIGNATURE_FIELD_HEIGHT):
        super().__init__()
        self.anchor = anchor
        self.width = width
        self.height = height

    def wrap(self, availWidth, availHeight):
        return self.width, self.height

    def draw(self):
        self.canv.setStrokeColor(Palette.GRAY)
        self.canv.setLineWidth(0.5)
        self.canv.line(0, 0, self.width, 0)
        self.canv.acroForm.textfield(
            name=self.anchor,
            x=0,
            y=1,
            width=self.width,
            height=self.height - 2,
            borderWidth=0,
            fillColor=Palette.WHITE,
            relative=True,
        )


# =============================================================================
# ReportLab + PyMuPDF Renderer
# =============================================================================


class ReportLabAgreementRenderer(DocumentRenderer):
    """Renders agreements with ReportLab and stamps signatures with PyMuPDF."""

    def __init__(self, brokerage_name: str = "Independent Brokerage"):
        self.brokerage_name = brokerage_name
        self.styles = get_agreement_styles()

    def render_document(self, kind: AgreementKind, fields: dict[str, Any]) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            leftMargin=20 * mm,
            rightMargin=20 * mm,
            topMargin=20 * mm,
            bottomMargin=20 * mm,
            title=DOCUMENT_TITLES[kind],
            author=self.brokerage_name,
        )

        try:
            doc.build(self._build_story(kind, fields))
        except Exception as e:
            raise DocumentRenderError(f"Could not render {kind.value} document: {e}") from e
        return buffer.getvalue()

    def _build_story(self, kind: AgreementKind, fields: dict[str, Any]) -> list:
        s = self.styles
        story = [
            Paragraph(self.brokerage_name.upper(), s['AgreementBrand']),
            Paragraph(DOCUMENT_TITLES[kind], s['AgreementTitle']),
            HRFlowable(width="100%", thickness=0.5, color=Palette.LIGHT_GRAY),
            Spacer(1, 6 * mm),
        ]

        rows = [
            ["Reference", fields.get("agreement_id", "-")],
            ["Property", fields.get("property_address") or "All properties"],
            ["Buyer", fields.get("buyer_id") or "-"],
            ["Agent", fields.get("agent_id") or "-"],
            ["Prepared", fields.get("prepared_on", "-")],
        ]
        table = Table(rows, colWidths=[35 * mm, 125 * mm])
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 9),
            ('TEXTCOLOR', (0, 0), (0, -1), Palette.SLATE),
            ('TEXTCOLOR', (1, 0), (1, -1), Palette.CHARCOAL),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
            ('LINEBELOW', (0, -1), (-1, -1), 0.5, Palette.LIGHT_GRAY),
        ]))
        story.extend([table, Spacer(1, 8 * mm)])

        text = fields.get("agreement_text") or ""
        for paragraph in [p.strip() for p in text.split("\n\n") if p.strip()]:
            story.append(Paragraph(paragraph.replace("\n", "<br/>"), s['AgreementBody']))

        story.append(Spacer(1, 10 * mm))
        for slot in SignatureSlot:
            if slot not in ALLOWED_SLOTS[kind]:
                continue
            story.append(KeepTogether([
                Paragraph(f"{SLOT_LABELS[slot]} signature", s['SignatureLabel']),
                Spacer(1, 2 * mm),
                SignatureField(slot.anchor),
                Spacer(1, 8 * mm),
            ]))
        return story

    def overlay_signature(self, document: bytes, signature_image: str, anchor: str) -> bytes:
        image = decode_signature_image(signature_image)

        try:
            doc = fitz.open(stream=document, filetype="pdf")
        except Exception as e:
            raise DocumentRenderError(f"Could not open document: {e}", anchor=anchor) from e

        try:
            page, rect = self._find_anchor(doc, anchor)
            page.insert_image(rect, stream=image, keep_proportion=True)
            self._mark_anchor(page, rect, anchor)
            return doc.tobytes(garbage=3, deflate=True)
        except DocumentRenderError:
            raise
        except Exception as e:
            raise DocumentRenderError(
                f"Could not place signature at {anchor}: {e}", anchor=anchor
            ) from e
        finally:
            doc.close()

    def _find_anchor(self, doc, anchor: str):
        """
        Locate where the signature for an anchor goes.

        Lookup order:
        1. A marker left by an earlier stamp: the old image is cleared
        2. The named form field, which is removed so the image is not covered
        3. The fixed fallback position on the last page
        """
        for page in doc:
            marker = self._find_marker(page, anchor)
            if marker is not None:
                rect = _parse_rect(marker.info["content"])
                page.delete_annot(marker)
                self._clear_signature(page, rect)
                return page, rect

        for page in doc:
            match = None
            for widget in page.widgets():
                if widget.field_name == anchor:
                    match = widget
                    break
            if match is not None:
                rect = fitz.Rect(match.rect)
                page.delete_widget(match)
                return page, rect

        if anchor not in DEFAULT_POSITIONS or doc.page_count == 0:
            raise DocumentRenderError(f"Unknown signature anchor: {anchor}", anchor=anchor)

        logger.info("Anchor %s not found in document, using default position", anchor)
        return doc[doc.page_count - 1], fitz.Rect(*DEFAULT_POSITIONS[anchor])

    @staticmethod
    def _find_marker(page, anchor: str):
        for annot in page.annots():
            info = annot.info
            if info.get("subject") == ANCHOR_MARKER and info.get("title") == anchor:
                return annot
        return None

    @staticmethod
    def _clear_signature(page, rect) -> None:
        """Remove images drawn inside rect, leaving text and line art alone."""
        page.add_redact_annot(rect, fill=False)
        page.apply_redactions(
            images=fitz.PDF_REDACT_IMAGE_REMOVE,
            graphics=fitz.PDF_REDACT_LINE_ART_NONE,
            text=fitz.PDF_REDACT_TEXT_NONE,
        )

    @staticmethod
    def _mark_anchor(page, rect, anchor: str) -> None:
        """Leave a hidden annotation so a later re-sign finds this rectangle."""
        marker = page.add_rect_annot(rect)
        marker.set_border(width=0)
        marker.set_info(title=anchor, subject=ANCHOR_MARKER, content=_format_rect(rect))
        marker.set_flags(fitz.PDF_ANNOT_IS_HIDDEN)
        marker.update()


def _format_rect(rect) -> str:
    return ",".join(f"{v:.2f}" for v in (rect.x0, rect.y0, rect.x1, rect.y1))


def _parse_rect(value: str):
    try:
        return fitz.Rect(*(float(v) for v in value.split(",")))
    except (TypeError, ValueError) as e:
        raise DocumentRenderError(f"Corrupt signature marker: {value!r}") from e
