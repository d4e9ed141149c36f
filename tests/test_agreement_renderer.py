"""
Tests for the ReportLab / PyMuPDF Agreement Renderer

Tests covering:
1. Rendered documents carry one named field per signature slot
2. Overlaying a signature replaces its field with the image
3. Hand-edited PDFs without fields fall back to fixed positions
4. Re-signing a slot replaces its earlier image
5. Bad signature payloads and non-PDF input raise DocumentRenderError
"""

from __future__ import annotations

import base64

import fitz  # PyMuPDF
import pytest

from core.workflow.errors import DocumentRenderError
from core.workflow.schema import AgreementKind
from reporting.agreement_renderer import (
    DATA_URL_PREFIX,
    ReportLabAgreementRenderer,
    decode_signature_image,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def renderer():
    return ReportLabAgreementRenderer(brokerage_name="Harbour Estates")


@pytest.fixture
def fields():
    return {
        "agreement_id": "AGR-0000000000AB",
        "property_address": "12 Harbour Road",
        "buyer_id": "buyer-1",
        "agent_id": "listing-agent",
        "agreement_text": "The agent acts for the seller.\n\nThe buyer acknowledges this.",
        "prepared_on": "3 November 2026",
    }


@pytest.fixture
def signature_image():
    """A small solid PNG as a data URL."""
    pix = fitz.Pixmap(fitz.csRGB, fitz.IRect(0, 0, 20, 10), False)
    pix.clear_with(40)
    return DATA_URL_PREFIX + base64.b64encode(pix.tobytes("png")).decode("ascii")


@pytest.fixture
def second_signature():
    """A lighter PNG, told apart from signature_image by its shade."""
    pix = fitz.Pixmap(fitz.csRGB, fitz.IRect(0, 0, 20, 10), False)
    pix.clear_with(200)
    return DATA_URL_PREFIX + base64.b64encode(pix.tobytes("png")).decode("ascii")


def _field_names(pdf: bytes) -> set[str]:
    with fitz.open(stream=pdf, filetype="pdf") as doc:
        return {w.field_name for page in doc for w in page.widgets()}


def _image_count(pdf: bytes) -> int:
    with fitz.open(stream=pdf, filetype="pdf") as doc:
        return sum(len(page.get_images()) for page in doc)


def _text(pdf: bytes) -> str:
    with fitz.open(stream=pdf, filetype="pdf") as doc:
        return "".join(page.get_text() for page in doc)


def _shown_images(pdf: bytes) -> list[fitz.Rect]:
    """Bounding boxes of the images actually drawn on each page."""
    with fitz.open(stream=pdf, filetype="pdf") as doc:
        return [fitz.Rect(info["bbox"]) for page in doc for info in page.get_image_info()]


def _shade_at(pdf: bytes, rect: fitz.Rect) -> int:
    with fitz.open(stream=pdf, filetype="pdf") as doc:
        pix = doc[0].get_pixmap(clip=rect)
        return pix.pixel(pix.width // 2, pix.height // 2)[0]


# =============================================================================
# Rendering
# =============================================================================


class TestRender:

    def test_renders_pdf(self, renderer, fields):
        pdf = renderer.render_document(AgreementKind.AGENCY_DISCLOSURE, fields)
        assert pdf.startswith(b"%PDF")
        text = _text(pdf)
        assert "Agency Disclosure" in text
        assert "12 Harbour Road" in text

    def test_disclosure_has_three_anchors(self, renderer, fields):
        pdf = renderer.render_document(AgreementKind.AGENCY_DISCLOSURE, fields)
        assert _field_names(pdf) == {"buyer_signature_1", "agent_signature", "seller_signature_1"}

    def test_referral_has_agent_anchor_only(self, renderer, fields):
        pdf = renderer.render_document(AgreementKind.AGENT_REFERRAL, fields)
        assert _field_names(pdf) == {"agent_signature"}

    def test_global_agreement_without_address(self, renderer, fields):
        fields["property_address"] = None
        pdf = renderer.render_document(AgreementKind.GLOBAL_REPRESENTATION, fields)
        assert "All properties" in _text(pdf)


# =============================================================================
# Signature Overlay
# =============================================================================


class TestOverlay:

    def test_overlay_replaces_field(self, renderer, fields, signature_image):
        pdf = renderer.render_document(AgreementKind.AGENCY_DISCLOSURE, fields)
        signed = renderer.overlay_signature(pdf, signature_image, "buyer_signature_1")

        assert "buyer_signature_1" not in _field_names(signed)
        assert "agent_signature" in _field_names(signed)
        assert _image_count(signed) == 1
        assert "Agency Disclosure" in _text(signed)

    def test_overlays_accumulate(self, renderer, fields, signature_image):
        pdf = renderer.render_document(AgreementKind.AGENCY_DISCLOSURE, fields)
        for anchor in ("buyer_signature_1", "agent_signature", "seller_signature_1"):
            pdf = renderer.overlay_signature(pdf, signature_image, anchor)
        assert _field_names(pdf) == set()

    def test_edited_pdf_without_fields(self, renderer, signature_image):
        with fitz.open() as doc:
            page = doc.new_page()
            page.insert_text((72, 72), "EDITED-MARKER clause 4 struck out")
            edited = doc.tobytes()

        signed = renderer.overlay_signature(edited, signature_image, "agent_signature")
        assert _image_count(signed) == 1
        assert "EDITED-MARKER" in _text(signed)

    def test_resign_replaces_earlier_image(self, renderer, fields, signature_image, second_signature):
        pdf = renderer.render_document(AgreementKind.AGENCY_DISCLOSURE, fields)
        first = renderer.overlay_signature(pdf, signature_image, "buyer_signature_1")
        again = renderer.overlay_signature(first, second_signature, "buyer_signature_1")

        shown = _shown_images(again)
        assert len(shown) == 1
        assert _shade_at(again, shown[0]) > 150
        assert _field_names(again) == {"agent_signature", "seller_signature_1"}

    def test_resign_leaves_other_signatures(self, renderer, fields, signature_image, second_signature):
        pdf = renderer.render_document(AgreementKind.AGENCY_DISCLOSURE, fields)
        pdf = renderer.overlay_signature(pdf, signature_image, "buyer_signature_1")
        pdf = renderer.overlay_signature(pdf, signature_image, "agent_signature")
        pdf = renderer.overlay_signature(pdf, second_signature, "buyer_signature_1")

        shades = sorted(_shade_at(pdf, rect) for rect in _shown_images(pdf))
        assert len(shades) == 2
        assert shades[0] < 100 < shades[1]

    def test_resign_on_edited_pdf_without_fields(self, renderer, signature_image, second_signature):
        with fitz.open() as doc:
            page = doc.new_page()
            page.insert_text((72, 72), "EDITED-MARKER clause 4 struck out")
            edited = doc.tobytes()

        signed = renderer.overlay_signature(edited, signature_image, "agent_signature")
        resigned = renderer.overlay_signature(signed, second_signature, "agent_signature")

        shown = _shown_images(resigned)
        assert len(shown) == 1
        assert _shade_at(resigned, shown[0]) > 150
        assert "EDITED-MARKER" in _text(resigned)

    def test_unknown_anchor_on_edited_pdf(self, renderer, signature_image):
        with fitz.open() as doc:
            doc.new_page()
            edited = doc.tobytes()

        with pytest.raises(DocumentRenderError) as exc:
            renderer.overlay_signature(edited, signature_image, "witness_signature")
        assert exc.value.anchor == "witness_signature"

    def test_not_a_pdf(self, renderer, signature_image):
        with pytest.raises(DocumentRenderError):
            renderer.overlay_signature(b"plain text", signature_image, "agent_signature")


# =============================================================================
# Signature Decoding
# =============================================================================


class TestDecodeSignature:

    def test_accepts_bare_base64(self):
        assert decode_signature_image(base64.b64encode(b"png-bytes").decode()) == b"png-bytes"

    def test_accepts_data_url(self):
        encoded = DATA_URL_PREFIX + base64.b64encode(b"png-bytes").decode()
        assert decode_signature_image(encoded) == b"png-bytes"

    def test_rejects_garbage(self):
        with pytest.raises(DocumentRenderError):
            decode_signature_image("data:image/png;base64,@@not base64@@")

    def test_rejects_empty(self):
        with pytest.raises(DocumentRenderError):
            decode_signature_image(DATA_URL_PREFIX)
