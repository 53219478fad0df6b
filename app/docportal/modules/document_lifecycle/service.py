"""
Document lifecycle operations.

Services mutate the session and never commit; the calling route commits once, so each
multi-step sequence (version row + document row + action log) lands atomically.
Files are written to storage before the flush; removals are returned as storage keys
for the caller to delete after the commit (see remove_stored_files).
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import or_
from werkzeug.utils import secure_filename

from app.docportal.audit import record_event
from app.docportal.constants import (
    ACTION_ARCHIVED,
    ACTION_CHANGES_REQUESTED,
    ACTION_DELETED,
    ACTION_MARKED_READY,
    ACTION_PUBLISHED,
    ACTION_RESUBMITTED,
    ACTION_REVIEW_STARTED,
    ACTION_SENT_BACK_TO_REVIEW,
    ACTION_SUBMITTED,
    ACTION_UNARCHIVED,
    ACTION_VERSION_UPLOADED,
    RISK_HIGH,
    RISK_LEVELS,
    RISK_LOW,
    STAGE_EDITED_BY_QUALITY,
    STAGE_NEEDS_CHANGES,
    STAGE_PUBLISHED,
    STAGE_READY_TO_PUBLISH,
    STAGE_SUBMITTED,
    STAGE_UNDER_REVIEW,
    STATUS_ARCHIVED,
    STATUS_IN_REVIEW,
    STATUS_PUBLISHED,
)
from app.docportal.modules.document_lifecycle.models import Document, DocumentAction, DocumentVersion
from app.docportal.modules.document_types.models import DocumentType
from app.docportal.utils import normalize_for_compare, pretty_title_from_filename

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.docportal.models import Company, User
    from app.docportal.storage import Storage

logger = logging.getLogger(__name__)


class LifecycleError(ValueError):
    """A lifecycle operation was refused (wrong state, missing input, not the owner)."""


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"

    @property
    def is_pdf(self) -> bool:
        return self.filename.lower().endswith(".pdf") or self.content_type == "application/pdf"


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def version_storage_key(company_id: int, document_id: int, version_number: int, filename: str, *, pdf: bool = False) -> str:
    base = f"companies/{company_id}/documents/{document_id}/v{version_number}"
    if pdf:
        base += "/pdf"
    return f"{base}/{sanitize_upload_filename(filename)}"


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------

def _touch(doc: Document) -> None:
    doc.updated_at = datetime.utcnow()


def _log_action(s: "Session", doc: Document, action: str, user: "User", comment: str | None = None) -> DocumentAction:
    entry = DocumentAction(
        document_id=doc.id,
        company_id=doc.company_id,
        document_title=doc.title,
        action=action,
        comment=comment,
        performed_by_user_id=user.id,
        performed_by_name=user.full_name or None,
        performed_by_email=user.email,
    )
    s.add(entry)
    record_event(
        s,
        actor=user,
        action=f"doc.{action.lower()}",
        entity_type="Document",
        entity_id=str(doc.id),
        company_id=doc.company_id,
        reason=comment,
        metadata={"title": doc.title, "status": doc.status},
    )
    return entry


def _require_status(doc: Document, *statuses: str, message: str) -> None:
    if doc.status not in statuses:
        raise LifecycleError(message)


def _require_comment(comment: str | None) -> str:
    text = (comment or "").strip()
    if not text:
        raise LifecycleError("A comment is required to record this action.")
    return text


def _require_owner(doc: Document, user: "User") -> None:
    if doc.created_by_user_id != user.id:
        raise LifecycleError("Only the author of this submission can do that.")


def _add_version(s: "Session", storage: "Storage", doc: Document, upload: UploadedFile, user: "User", stage: str) -> DocumentVersion:
    if not upload.data:
        raise LifecycleError("The uploaded file is empty.")

    latest = doc.latest_version
    number = (latest.version_number if latest else 0) + 1
    key = version_storage_key(doc.company_id, doc.id, number, upload.filename)
    sha256, size_bytes = file_digest_and_bytes(upload.data)

    storage.put_bytes(key, upload.data, content_type=upload.content_type)
    try:
        v = DocumentVersion(
            version_number=number,
            stage=stage,
            source_file_name=upload.filename,
            source_storage_key=key,
            source_mime_type=upload.content_type or "application/octet-stream",
            sha256=sha256,
            size_bytes=size_bytes,
            uploaded_by_user_id=user.id,
        )
        doc.versions.append(v)
        s.flush()
        doc.current_version = v
        _touch(doc)
        s.flush()
    except Exception:
        remove_stored_files(storage, [key])
        raise
    return v


def remove_stored_files(storage: "Storage", keys: list[str]) -> int:
    """Best-effort removal; one failing object never blocks the rest. Returns how many were removed."""
    removed = 0
    for key in keys:
        try:
            storage.delete(key)
            removed += 1
        except Exception as e:
            logger.warning("Failed to remove stored file %s: %s", key, e)
    return removed


# ---------------------------------------------------------------------------
# Publisher side
# ---------------------------------------------------------------------------

def submit_document(s: "Session", storage: "Storage", company: "Company", user: "User", upload: UploadedFile) -> Document:
    """New submission: document enters the Quality queue with version 1 SUBMITTED."""
    if not upload.filename:
        raise LifecycleError("Choose a file to upload.")
    if not upload.data:
        raise LifecycleError("The uploaded file is empty.")

    now = datetime.utcnow()
    doc = Document(
        company_id=company.id,
        title=pretty_title_from_filename(upload.filename) or upload.filename,
        code=None,
        status=STATUS_IN_REVIEW,
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(doc)
    s.flush()

    v = _add_version(s, storage, doc, upload, user, STAGE_SUBMITTED)
    _log_action(s, doc, ACTION_SUBMITTED, user)
    logger.info("Document %s submitted (company=%s version=%s)", doc.id, company.slug, v.version_number)
    return doc


def resubmit_document(s: "Session", storage: "Storage", doc: Document, user: "User", upload: UploadedFile) -> DocumentVersion:
    """Author answers a change request with a new file."""
    _require_owner(doc, user)
    _require_status(doc, STATUS_IN_REVIEW, message="Only documents in review can receive a new submission.")
    if doc.latest_stage != STAGE_NEEDS_CHANGES:
        raise LifecycleError("Quality has not requested changes on this document.")

    v = _add_version(s, storage, doc, upload, user, STAGE_SUBMITTED)
    _log_action(s, doc, ACTION_RESUBMITTED, user)
    return v


def delete_submission(s: "Session", doc: Document, user: "User") -> list[str]:
    """
    Author withdraws a submission that was never published.
    Returns the storage keys to remove once the deletion is committed.
    """
    _require_owner(doc, user)
    if doc.status in (STATUS_PUBLISHED, STATUS_ARCHIVED) or doc.latest_stage == STAGE_PUBLISHED:
        raise LifecycleError("Published documents cannot be deleted.")

    keys = [k for v in doc.versions for k in v.storage_keys]
    record_event(
        s,
        actor=user,
        action="doc.submission_deleted",
        entity_type="Document",
        entity_id=str(doc.id),
        company_id=doc.company_id,
        metadata={"title": doc.title, "versions": len(doc.versions)},
    )
    doc.current_version = None
    s.flush()
    s.delete(doc)
    s.flush()
    return keys


# ---------------------------------------------------------------------------
# Quality side (review queue)
# ---------------------------------------------------------------------------

def _latest_or_error(doc: Document) -> DocumentVersion:
    v = doc.latest_version
    if v is None:
        raise LifecycleError("Could not identify the current version of this document.")
    return v


def start_review(s: "Session", doc: Document, user: "User") -> DocumentVersion:
    _require_status(doc, STATUS_IN_REVIEW, message="Only documents in review can be picked up.")
    v = _latest_or_error(doc)
    if v.stage != STAGE_SUBMITTED:
        raise LifecycleError("Review can only start on a freshly submitted version.")
    v.stage = STAGE_UNDER_REVIEW
    _touch(doc)
    _log_action(s, doc, ACTION_REVIEW_STARTED, user)
    return v


def request_changes(s: "Session", doc: Document, user: "User", comment: str | None) -> DocumentVersion:
    _require_status(doc, STATUS_IN_REVIEW, message="Only documents in review can be returned to their author.")
    text = _require_comment(comment)
    v = _latest_or_error(doc)
    if v.stage == STAGE_NEEDS_CHANGES:
        raise LifecycleError("Changes were already requested on this version.")
    v.stage = STAGE_NEEDS_CHANGES
    _touch(doc)
    _log_action(s, doc, ACTION_CHANGES_REQUESTED, user, text)
    return v


def upload_quality_version(s: "Session", storage: "Storage", doc: Document, user: "User", upload: UploadedFile) -> DocumentVersion:
    """Quality uploads its edited file as the next version."""
    _require_status(doc, STATUS_IN_REVIEW, message="New versions can only be added while the document is in review.")
    v = _add_version(s, storage, doc, upload, user, STAGE_EDITED_BY_QUALITY)
    _log_action(s, doc, ACTION_VERSION_UPLOADED, user, f"Version {v.version_number}: {upload.filename}")
    return v


def attach_pdf_rendition(
    s: "Session", storage: "Storage", doc: Document, user: "User", upload: UploadedFile
) -> tuple[DocumentVersion, list[str]]:
    """
    Attach a PDF rendition to the displayed version; the library prefers it over the source file.
    Returns the version and the replaced rendition keys to remove once the change is committed.
    """
    if doc.status == STATUS_ARCHIVED:
        raise LifecycleError("Archived documents cannot be changed.")
    if not upload.data:
        raise LifecycleError("The uploaded file is empty.")
    if not upload.is_pdf:
        raise LifecycleError("The rendition must be a PDF file.")
    v = doc.display_version
    if v is None:
        raise LifecycleError("Could not identify the current version of this document.")

    old_key = v.pdf_storage_key
    key = version_storage_key(doc.company_id, doc.id, v.version_number, upload.filename, pdf=True)
    storage.put_bytes(key, upload.data, content_type="application/pdf")
    try:
        v.pdf_file_name = upload.filename
        v.pdf_storage_key = key
        _touch(doc)
        record_event(
            s,
            actor=user,
            action="doc.pdf_attached",
            entity_type="DocumentVersion",
            entity_id=str(v.id),
            company_id=doc.company_id,
            metadata={"document_id": doc.id, "filename": upload.filename, "replaced": old_key},
        )
        s.flush()
    except Exception:
        # Same key means the old object was overwritten in place; keep it.
        if key != old_key:
            remove_stored_files(storage, [key])
        raise
    return v, [old_key] if old_key and old_key != key else []


def _parse_type_id(raw) -> int | None:
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise LifecycleError("Invalid document type.")


def _resolve_type(s: "Session", doc: Document, type_id: int | None, *, require_active: bool) -> DocumentType | None:
    if type_id is None:
        return None
    dt = s.get(DocumentType, type_id)
    if not dt or dt.company_id != doc.company_id:
        raise LifecycleError("Invalid document type.")
    if require_active and not dt.is_active:
        raise LifecycleError("This document type is inactive and cannot be used for publishing.")
    return dt


def save_review_metadata(s: "Session", doc: Document, user: "User", payload: dict) -> Document:
    """Store the publication metadata without publishing (title, code, type, elaborator, approver, risk)."""
    _require_status(doc, STATUS_IN_REVIEW, message="Metadata can only be edited while the document is in review.")

    title = (payload.get("title") or "").strip()
    if "title" in payload and not title:
        raise LifecycleError("Title cannot be empty.")
    risk = (payload.get("risk_level") or "").strip().upper() or None
    if risk is not None and risk not in RISK_LEVELS:
        raise LifecycleError("Invalid risk classification.")
    dt = _resolve_type(s, doc, _parse_type_id(payload.get("document_type_id")), require_active=False)

    if title:
        doc.title = title
    if "code" in payload:
        doc.code = (payload.get("code") or "").strip().upper() or None
    doc.document_type_id = dt.id if dt else None
    doc.elaborator = (payload.get("elaborator") or "").strip() or None
    doc.approver = (payload.get("approver") or "").strip() or None
    doc.risk_level = risk
    _touch(doc)
    return doc


def mark_ready_to_publish(s: "Session", doc: Document, user: "User") -> DocumentVersion:
    _require_status(doc, STATUS_IN_REVIEW, message="Only documents in review can be marked ready.")
    v = _latest_or_error(doc)
    if v.stage == STAGE_NEEDS_CHANGES:
        raise LifecycleError("This version is waiting for changes from its author.")
    if v.stage == STAGE_READY_TO_PUBLISH:
        raise LifecycleError("This version is already marked ready to publish.")
    v.stage = STAGE_READY_TO_PUBLISH
    _touch(doc)
    _log_action(s, doc, ACTION_MARKED_READY, user)
    return v


def publish_document(s: "Session", doc: Document, user: "User", payload: dict) -> Document:
    """
    Publish the latest version: version stage, document status/metadata and the
    action log are written in the caller's single transaction.
    """
    _require_status(doc, STATUS_IN_REVIEW, message="Only documents in review can be published.")
    v = _latest_or_error(doc)
    if v.stage == STAGE_NEEDS_CHANGES:
        raise LifecycleError("This version is waiting for changes from its author.")

    active_types = (
        s.query(DocumentType)
        .filter(DocumentType.company_id == doc.company_id, DocumentType.is_active.is_(True))
        .count()
    )
    if active_types == 0:
        raise LifecycleError("No active document type exists. Create one under Document types before publishing.")

    type_id = _parse_type_id(payload.get("document_type_id"))
    if type_id is None:
        raise LifecycleError("Select the document type before publishing.")
    dt = _resolve_type(s, doc, type_id, require_active=True)

    elaborator = (payload.get("elaborator") or "").strip()
    approver = (payload.get("approver") or "").strip()
    risk = (payload.get("risk_level") or "").strip().upper()
    if not elaborator or not approver or risk not in (RISK_LOW, RISK_HIGH):
        raise LifecycleError("Provide the elaborator, the approver and the risk classification before publishing.")

    title = (payload.get("title") or "").strip()
    if title:
        doc.title = title
    if "code" in payload:
        doc.code = (payload.get("code") or "").strip().upper() or None

    now = datetime.utcnow()
    v.stage = STAGE_PUBLISHED
    doc.status = STATUS_PUBLISHED
    doc.document_type_id = dt.id
    doc.current_version = v
    doc.elaborator = elaborator
    doc.approver = approver
    doc.risk_level = risk
    doc.published_at = now
    doc.updated_at = now
    s.flush()

    _log_action(s, doc, ACTION_PUBLISHED, user)
    logger.info("Document %s published (version=%s)", doc.id, v.version_number)
    return doc


# ---------------------------------------------------------------------------
# Published / archived management
# ---------------------------------------------------------------------------

def archive_document(s: "Session", doc: Document, user: "User", comment: str | None) -> Document:
    _require_status(doc, STATUS_PUBLISHED, message="Only published documents can be archived.")
    text = _require_comment(comment)
    doc.status = STATUS_ARCHIVED
    _touch(doc)
    _log_action(s, doc, ACTION_ARCHIVED, user, text)
    return doc


def send_back_to_review(s: "Session", doc: Document, user: "User", comment: str | None) -> Document:
    _require_status(doc, STATUS_PUBLISHED, message="Only published documents can be sent back to review.")
    text = _require_comment(comment)
    doc.status = STATUS_IN_REVIEW
    v = doc.display_version
    if v is not None:
        v.stage = STAGE_UNDER_REVIEW
    _touch(doc)
    _log_action(s, doc, ACTION_SENT_BACK_TO_REVIEW, user, text)
    return doc


def unarchive_document(s: "Session", doc: Document, user: "User") -> Document:
    _require_status(doc, STATUS_ARCHIVED, message="Only archived documents can be unarchived.")
    doc.status = STATUS_PUBLISHED
    _touch(doc)
    _log_action(s, doc, ACTION_UNARCHIVED, user)
    return doc


def permanent_delete(s: "Session", doc: Document, user: "User", confirm_title: str | None) -> list[str]:
    """
    Delete an archived document for good. The DELETED action survives (title snapshot,
    document_id nulled). Returns storage keys to remove after the commit.
    """
    _require_status(doc, STATUS_ARCHIVED, message="Only archived documents can be permanently deleted.")
    if normalize_for_compare(confirm_title) != normalize_for_compare(doc.title):
        raise LifecycleError("To delete permanently, type the exact document title in the confirmation field.")

    _log_action(s, doc, ACTION_DELETED, user)
    keys = [k for v in doc.versions for k in v.storage_keys]
    doc.current_version = None
    s.flush()
    s.delete(doc)
    s.flush()
    logger.info("Document %s permanently deleted by user %s", doc.id, user.id)
    return keys


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _search_filter(q, term: str, *columns):
    term = (term or "").strip()
    if not term:
        return q
    like = f"%{term}%"
    return q.filter(or_(*(c.ilike(like) for c in columns)))


def list_my_submissions(s: "Session", company: "Company", user: "User") -> list[Document]:
    return (
        s.query(Document)
        .filter(Document.company_id == company.id, Document.created_by_user_id == user.id)
        .order_by(Document.updated_at.desc(), Document.id.desc())
        .all()
    )


def list_review_queue(s: "Session", company: "Company", search: str = "") -> list[Document]:
    q = s.query(Document).filter(Document.company_id == company.id, Document.status == STATUS_IN_REVIEW)
    q = _search_filter(q, search, Document.title, Document.code)
    return q.order_by(Document.updated_at.desc(), Document.id.desc()).all()


def list_published(s: "Session", company: "Company", search: str = "", risk: str = "") -> list[Document]:
    q = s.query(Document).filter(Document.company_id == company.id, Document.status == STATUS_PUBLISHED)
    q = _search_filter(q, search, Document.title, Document.code, Document.elaborator, Document.approver)
    risk = (risk or "").strip().upper()
    if risk in RISK_LEVELS:
        q = q.filter(Document.risk_level == risk)
    return q.order_by(Document.published_at.desc(), Document.id.desc()).all()


def list_archived(s: "Session", company: "Company", search: str = "") -> list[Document]:
    q = s.query(Document).filter(Document.company_id == company.id, Document.status == STATUS_ARCHIVED)
    q = _search_filter(q, search, Document.title, Document.code)
    return q.order_by(Document.updated_at.desc(), Document.id.desc()).all()


def list_library(s: "Session", company: "Company", search: str = "") -> list[Document]:
    q = s.query(Document).filter(Document.company_id == company.id, Document.status == STATUS_PUBLISHED)
    q = _search_filter(q, search, Document.title, Document.code)
    return q.order_by(Document.title.asc(), Document.id.asc()).all()


def list_actions(s: "Session", doc: Document) -> list[DocumentAction]:
    return (
        s.query(DocumentAction)
        .filter(DocumentAction.document_id == doc.id)
        .order_by(DocumentAction.created_at.desc(), DocumentAction.id.desc())
        .all()
    )
