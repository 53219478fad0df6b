from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import or_

from app.docportal.audit import record_event
from app.docportal.modules.document_types.models import DocumentType

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.docportal.models import Company, User


def list_document_types(s: "Session", company: "Company", *, search: str = "", active_only: bool = False) -> list[DocumentType]:
    q = s.query(DocumentType).filter(DocumentType.company_id == company.id)
    if active_only:
        q = q.filter(DocumentType.is_active.is_(True))
    term = (search or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(or_(DocumentType.name.ilike(like), DocumentType.code.ilike(like)))
    return q.order_by(DocumentType.name.asc()).all()


def _normalize_payload(payload: dict) -> dict:
    code = (payload.get("code") or "").strip()
    return {
        "name": (payload.get("name") or "").strip(),
        "code": code.upper() or None,
        "description": (payload.get("description") or "").strip() or None,
        "is_active": bool(payload.get("is_active", True)),
    }


def validate_document_type_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    if len((payload.get("code") or "").strip()) > 32:
        errors.append("Code must be at most 32 characters.")
    return errors


def create_document_type(s: "Session", company: "Company", payload: dict, user: "User") -> DocumentType:
    data = _normalize_payload(payload)
    now = datetime.utcnow()
    dt = DocumentType(
        company_id=company.id,
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
        **data,
    )
    s.add(dt)
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc_type.create",
        entity_type="DocumentType",
        entity_id=str(dt.id),
        company_id=company.id,
        metadata={"name": dt.name, "code": dt.code},
    )
    return dt


def update_document_type(s: "Session", dt: DocumentType, payload: dict, user: "User") -> DocumentType:
    data = _normalize_payload(payload)
    changes = {}
    for field, value in data.items():
        old = getattr(dt, field)
        if old != value:
            changes[field] = {"old": old, "new": value}
            setattr(dt, field, value)

    if changes:
        dt.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="doc_type.update",
            entity_type="DocumentType",
            entity_id=str(dt.id),
            company_id=dt.company_id,
            metadata={"changes": changes},
        )
    return dt


def deactivate_document_type(s: "Session", dt: DocumentType, user: "User") -> DocumentType:
    if not dt.is_active:
        raise ValueError("This document type is already inactive.")
    dt.is_active = False
    dt.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="doc_type.deactivate",
        entity_type="DocumentType",
        entity_id=str(dt.id),
        company_id=dt.company_id,
        metadata={"name": dt.name, "code": dt.code},
    )
    return dt
