from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for
from sqlalchemy.orm import Session

from app.docportal.constants import CAP_DOC_TYPES
from app.docportal.db import db_session
from app.docportal.modules.document_types.models import DocumentType
from app.docportal.modules.document_types.service import (
    create_document_type,
    deactivate_document_type,
    list_document_types,
    update_document_type,
    validate_document_type_payload,
)
from app.docportal.rbac import require_company

bp = Blueprint("doc_types", __name__)


def _get_type_or_404(s: Session, type_id: int) -> DocumentType:
    dt = s.get(DocumentType, type_id)
    if not dt or dt.company_id != g.company.id:
        abort(404)
    return dt


def _payload_from_form() -> dict:
    return {
        "name": request.form.get("name"),
        "code": request.form.get("code"),
        "description": request.form.get("description"),
        "is_active": request.form.get("is_active") == "1",
    }


@bp.get("/")
@require_company(CAP_DOC_TYPES)
def types_list(slug: str):
    s = db_session()
    search = (request.args.get("q") or "").strip()
    types = list_document_types(s, g.company, search=search)
    total = s.query(DocumentType).filter(DocumentType.company_id == g.company.id).count()

    selected = None
    selected_id = request.args.get("id", type=int)
    if selected_id:
        selected = _get_type_or_404(s, selected_id)

    return render_template(
        "company/doc_types/list.html",
        types=types,
        total=total,
        selected=selected,
        search=search,
    )


@bp.post("/new")
@require_company(CAP_DOC_TYPES)
def types_create(slug: str):
    s = db_session()
    payload = _payload_from_form()
    errors = validate_document_type_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("doc_types.types_list", slug=slug))

    dt = create_document_type(s, g.company, payload, g.current_user)
    s.commit()
    flash(f"Document type '{dt.label}' created.", "success")
    return redirect(url_for("doc_types.types_list", slug=slug, id=dt.id))


@bp.post("/<int:type_id>")
@require_company(CAP_DOC_TYPES)
def types_update(slug: str, type_id: int):
    s = db_session()
    dt = _get_type_or_404(s, type_id)
    payload = _payload_from_form()
    errors = validate_document_type_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("doc_types.types_list", slug=slug, id=dt.id))

    update_document_type(s, dt, payload, g.current_user)
    s.commit()
    flash("Document type updated.", "success")
    return redirect(url_for("doc_types.types_list", slug=slug, id=dt.id))


@bp.post("/<int:type_id>/deactivate")
@require_company(CAP_DOC_TYPES)
def types_deactivate(slug: str, type_id: int):
    s = db_session()
    dt = _get_type_or_404(s, type_id)
    try:
        deactivate_document_type(s, dt, g.current_user)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("doc_types.types_list", slug=slug, id=dt.id))
    s.commit()
    flash("Document type deactivated. It stays visible on existing documents.", "success")
    return redirect(url_for("doc_types.types_list", slug=slug, id=dt.id))
