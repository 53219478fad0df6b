from __future__ import annotations

import re
from datetime import datetime
from urllib.parse import quote

from app.docportal.constants import OFFICE_EXTENSIONS, RISK_HIGH, RISK_LOW

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def format_datetime(value: datetime | None) -> str:
    if value is None:
        return ""
    if not hasattr(value, "strftime"):
        return str(value)
    return value.strftime("%d/%m/%Y %H:%M")


def build_preview_url(file_url: str | None, file_name: str | None = None, *, office_viewer_url: str) -> str | None:
    """
    PDFs are embedded directly; Office files go through the Office web viewer, which
    needs an absolute URL it can fetch. Anything else is served as-is.
    """
    if not file_url:
        return None
    lower = (file_name or file_url).lower()
    if lower.endswith(".pdf"):
        return file_url
    if lower.endswith(OFFICE_EXTENSIONS):
        return f"{office_viewer_url}?src={quote(file_url, safe='')}"
    return file_url


def risk_label(risk: str | None) -> str:
    if risk == RISK_HIGH:
        return "High risk"
    if risk == RISK_LOW:
        return "Low risk"
    return "Risk not set"


def risk_color(risk: str | None) -> str:
    if risk == RISK_HIGH:
        return "danger"
    if risk == RISK_LOW:
        return "success"
    return "secondary"


def doc_type_label(doc_type) -> str:
    if doc_type is None:
        return "No type"
    if doc_type.code:
        return f"{doc_type.code} - {doc_type.name}"
    return doc_type.name


def pretty_title_from_filename(file_name: str) -> str:
    """'quality_manual-v2.docx' -> 'quality manual v2'"""
    if not file_name:
        return ""
    without_ext = re.sub(r"\.[^/.]+$", "", file_name)
    return re.sub(r"\s+", " ", re.sub(r"[_-]+", " ", without_ext)).strip()


def normalize_for_compare(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", value.lower().strip())


def slugify(value: str) -> str:
    return _SLUG_STRIP.sub("-", (value or "").strip().lower()).strip("-")


def is_valid_email(email: str) -> bool:
    pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    return bool(re.match(pattern, email))
