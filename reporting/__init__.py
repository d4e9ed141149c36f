"""
Reporting module for the viewing workflow.

Renders agreement documents as PDFs and stamps signatures onto them.

Usage:
    from reporting import ReportLabAgreementRenderer

    renderer = ReportLabAgreementRenderer(brokerage_name="Example Estates")
    pdf = renderer.render_document(AgreementKind.AGENCY_DISCLOSURE, fields)
    signed = renderer.overlay_signature(pdf, signature_data_url, "buyer_signature_1")
"""

from .agreement_renderer import (
    DEFAULT_POSITIONS,
    ReportLabAgreementRenderer,
    SignatureField,
    decode_signature_image,
)

__all__ = [
    "DEFAULT_POSITIONS",
    "ReportLabAgreementRenderer",
    "SignatureField",
    "decode_signature_image",
]
