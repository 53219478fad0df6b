from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for
from itsdangerous import BadSignature, SignatureExpired
from sqlalchemy.orm import Session

from app.docportal.audit import record_event
from app.docportal.constants import (
    CAP_ARCHIVE,
    CAP_LIBRARY,
    CAP_PUBLISH,
    CAP_QUALITY,
    OFFICE_EXTENSIONS,
    RISK_LEVELS,
    STATUS_ARCHIVED,
    STATUS_PUBLISHED,
)
from app.docportal.db import db_session
from app.docportal.models import Company, User
from app.docportal.modules.document_lifecycle.models import Document, DocumentVersion
from app.docportal.modules.document_lifecycle.service import (
    LifecycleError,
    UploadedFile,
    archive_document,
    attach_pdf_rendition,
    delete_submission,
    list_actions,
    list_archived,
    list_library,
    list_my_submissions,
    list_published,
    list_review_queue,
    mark_ready_to_publish,
    permanent_delete,
    publish_document,
    remove_stored_files,
    request_changes,
    resubmit_document,
    save_review_metadata,
    start_review,
    send_back_to_review,
    submit_document,
    unarchive_document,
    upload_quality_version,
)
from app.docportal.modules.document_types.service import list_document_types
from app.docportal.rbac import require_company, user_can
from app.docportal.security import make_file_link_token, read_file_link_token
from app.docportal.storage import StorageError, storage_from_config
from app.docportal.utils import build_preview_url

bp = Blueprint("documents", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_doc_or_404(s: Session, doc_id: int) -> Document:
    d = s.get(Document, doc_id)
    if not d or d.company_id != g.company.id:
        abort(404)
    return d


def _upload_from_request(field: str = "file") -> UploadedFile | None:
    f = request.files.get(field)
    if not f or not f.filename:
        return None
    return UploadedFile(
        filename=f.filename,
        data=f.read(),
        content_type=(f.mimetype or "application/octet-stream").strip(),
    )


def _metadata_from_form() -> dict:
    payload = {
        "document_type_id": request.form.get("document_type_id"),
        "elaborator": request.form.get("elaborator"),
        "approver": request.form.get("approver"),
        "risk_level": request.form.get("risk_level"),
    }
    for optional in ("title", "code"):
        if optional in request.form:
            payload[optional] = request.form.get(optional)
    return payload


def _can(capability: str) -> bool:
    return user_can(getattr(g, "current_user", None), g.membership, capability)


def _preview_for(version: DocumentVersion | None) -> str | None:
    if version is None or not version.storage_keys:
        return None
    if (version.display_file_name or "").lower().endswith(OFFICE_EXTENSIONS):
        # The Office web viewer fetches the file itself, without the user's session.
        token = make_file_link_token(company_id=g.company.id, version_id=version.id)
        file_url = url_for(
            "documents.shared_file", slug=g.company.slug, version_id=version.id, token=token, _external=True
        )
    else:
        file_url = url_for("documents.preview_file", slug=g.company.slug, version_id=version.id, _external=True)
    return build_preview_url(file_url, version.display_file_name, office_viewer_url=current_app.config["OFFICE_VIEWER_URL"])


def _back_to_queue(doc: Document):
    return redirect(url_for("documents.quality_queue", slug=g.company.slug, id=doc.id))


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------

@bp.get("/library")
@require_company(CAP_LIBRARY)
def library(slug: str):
    s = db_session()
    search = (request.args.get("q") or "").strip()
    docs = list_library(s, g.company, search)
    return render_template("company/library.html", documents=docs, search=search)


@bp.get("/library/<int:doc_id>")
@require_company(CAP_LIBRARY)
def library_detail(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    if doc.status != STATUS_PUBLISHED:
        abort(404)
    version = doc.display_version
    return render_template(
        "company/library_detail.html",
        document=doc,
        version=version,
        preview_url=_preview_for(version),
    )


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------

@bp.get("/publisher")
@require_company(CAP_PUBLISH)
def publisher(slug: str):
    s = db_session()
    docs = list_my_submissions(s, g.company, _current_user())
    return render_template("company/publisher.html", documents=docs)


@bp.post("/publisher/upload")
@require_company(CAP_PUBLISH)
def publisher_upload(slug: str):
    s = db_session()
    u = _current_user()
    upload = _upload_from_request()
    if upload is None:
        flash("Choose a file to upload.", "danger")
        return redirect(url_for("documents.publisher", slug=slug))

    storage = storage_from_config(current_app.config)
    try:
        doc = submit_document(s, storage, g.company, u, upload)
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("documents.publisher", slug=slug))
    s.commit()
    flash(f"'{doc.title}' sent to Quality for review.", "success")
    return redirect(url_for("documents.publisher", slug=slug))


@bp.post("/publisher/<int:doc_id>/resubmit")
@require_company(CAP_PUBLISH)
def publisher_resubmit(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    upload = _upload_from_request()
    if upload is None:
        flash("Choose a file to upload.", "danger")
        return redirect(url_for("documents.publisher", slug=slug))

    storage = storage_from_config(current_app.config)
    try:
        v = resubmit_document(s, storage, doc, _current_user(), upload)
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("documents.publisher", slug=slug))
    s.commit()
    flash(f"Version {v.version_number} sent to Quality.", "success")
    return redirect(url_for("documents.publisher", slug=slug))


@bp.post("/publisher/<int:doc_id>/delete")
@require_company(CAP_PUBLISH)
def publisher_delete(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    title = doc.title
    try:
        keys = delete_submission(s, doc, _current_user())
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("documents.publisher", slug=slug))
    s.commit()
    remove_stored_files(storage_from_config(current_app.config), keys)
    flash(f"Submission '{title}' deleted.", "success")
    return redirect(url_for("documents.publisher", slug=slug))


# ---------------------------------------------------------------------------
# Quality: review queue
# ---------------------------------------------------------------------------

@bp.get("/quality")
@require_company(CAP_QUALITY)
def quality_queue(slug: str):
    s = db_session()
    search = (request.args.get("q") or "").strip()
    docs = list_review_queue(s, g.company, search)

    selected = None
    actions = []
    version = None
    selected_id = request.args.get("id", type=int)
    if selected_id:
        selected = _get_doc_or_404(s, selected_id)
        actions = list_actions(s, selected)
        version = selected.display_version

    active_types = list_document_types(s, g.company, active_only=True)
    return render_template(
        "company/quality.html",
        documents=docs,
        search=search,
        selected=selected,
        version=version,
        actions=actions,
        preview_url=_preview_for(version),
        active_types=active_types,
        risk_levels=RISK_LEVELS,
    )


@bp.post("/quality/<int:doc_id>/start-review")
@require_company(CAP_QUALITY)
def quality_start_review(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    try:
        start_review(s, doc, _current_user())
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return _back_to_queue(doc)
    s.commit()
    flash("Review started.", "success")
    return _back_to_queue(doc)


@bp.post("/quality/<int:doc_id>/request-changes")
@require_company(CAP_QUALITY)
def quality_request_changes(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    try:
        request_changes(s, doc, _current_user(), request.form.get("comment"))
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return _back_to_queue(doc)
    s.commit()
    flash("Changes requested from the author.", "success")
    return _back_to_queue(doc)


@bp.post("/quality/<int:doc_id>/upload-version")
@require_company(CAP_QUALITY)
def quality_upload_version(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    upload = _upload_from_request()
    if upload is None:
        flash("Choose a file to upload.", "danger")
        return _back_to_queue(doc)

    storage = storage_from_config(current_app.config)
    try:
        v = upload_quality_version(s, storage, doc, _current_user(), upload)
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return _back_to_queue(doc)
    s.commit()
    flash(f"Version {v.version_number} uploaded.", "success")
    return _back_to_queue(doc)


@bp.post("/quality/<int:doc_id>/attach-pdf")
@require_company(CAP_QUALITY)
def quality_attach_pdf(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    back = (
        url_for("documents.quality_published", slug=slug, id=doc.id)
        if doc.status == STATUS_PUBLISHED
        else url_for("documents.quality_queue", slug=slug, id=doc.id)
    )
    upload = _upload_from_request("pdf")
    if upload is None:
        flash("Choose a PDF file to attach.", "danger")
        return redirect(back)

    storage = storage_from_config(current_app.config)
    try:
        _, replaced = attach_pdf_rendition(s, storage, doc, _current_user(), upload)
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(back)
    s.commit()
    remove_stored_files(storage, replaced)
    flash("PDF rendition attached.", "success")
    return redirect(back)


@bp.post("/quality/<int:doc_id>/metadata")
@require_company(CAP_QUALITY)
def quality_save_metadata(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    try:
        save_review_metadata(s, doc, _current_user(), _metadata_from_form())
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return _back_to_queue(doc)
    s.commit()
    flash("Metadata saved.", "success")
    return _back_to_queue(doc)


@bp.post("/quality/<int:doc_id>/mark-ready")
@require_company(CAP_QUALITY)
def quality_mark_ready(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    try:
        mark_ready_to_publish(s, doc, _current_user())
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return _back_to_queue(doc)
    s.commit()
    flash("Marked ready to publish.", "success")
    return _back_to_queue(doc)


@bp.post("/quality/<int:doc_id>/publish")
@require_company(CAP_QUALITY)
def quality_publish(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    try:
        publish_document(s, doc, _current_user(), _metadata_from_form())
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return _back_to_queue(doc)
    s.commit()
    flash(f"'{doc.title}' published to the library.", "success")
    return redirect(url_for("documents.quality_queue", slug=slug))


# ---------------------------------------------------------------------------
# Quality: published documents
# ---------------------------------------------------------------------------

@bp.get("/quality/published")
@require_company(CAP_QUALITY)
def quality_published(slug: str):
    s = db_session()
    search = (request.args.get("q") or "").strip()
    risk = (request.args.get("risk") or "").strip().upper()
    docs = list_published(s, g.company, search, risk)

    selected = None
    actions = []
    selected_id = request.args.get("id", type=int)
    if selected_id:
        selected = _get_doc_or_404(s, selected_id)
        actions = list_actions(s, selected)

    return render_template(
        "company/quality_published.html",
        documents=docs,
        search=search,
        risk=risk if risk in RISK_LEVELS else "",
        risk_levels=RISK_LEVELS,
        selected=selected,
        actions=actions,
        preview_url=_preview_for(selected.display_version) if selected else None,
    )


@bp.post("/quality/published/<int:doc_id>/archive")
@require_company(CAP_QUALITY)
def quality_archive(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    try:
        archive_document(s, doc, _current_user(), request.form.get("comment"))
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("documents.quality_published", slug=slug, id=doc.id))
    s.commit()
    flash(f"'{doc.title}' archived.", "success")
    return redirect(url_for("documents.quality_published", slug=slug))


@bp.post("/quality/published/<int:doc_id>/send-back")
@require_company(CAP_QUALITY)
def quality_send_back(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    try:
        send_back_to_review(s, doc, _current_user(), request.form.get("comment"))
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("documents.quality_published", slug=slug, id=doc.id))
    s.commit()
    flash(f"'{doc.title}' sent back to review.", "success")
    return _back_to_queue(doc)


# ---------------------------------------------------------------------------
# Archived documents
# ---------------------------------------------------------------------------

@bp.get("/archived")
@require_company(CAP_ARCHIVE)
def archived(slug: str):
    s = db_session()
    search = (request.args.get("q") or "").strip()
    docs = list_archived(s, g.company, search)

    selected = None
    actions = []
    selected_id = request.args.get("id", type=int)
    if selected_id:
        selected = _get_doc_or_404(s, selected_id)
        actions = list_actions(s, selected)

    return render_template(
        "company/quality_archived.html",
        documents=docs,
        search=search,
        selected=selected,
        actions=actions,
    )


@bp.post("/archived/<int:doc_id>/unarchive")
@require_company(CAP_ARCHIVE)
def archived_unarchive(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    try:
        unarchive_document(s, doc, _current_user())
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("documents.archived", slug=slug, id=doc.id))
    s.commit()
    flash(f"'{doc.title}' is published again.", "success")
    return redirect(url_for("documents.archived", slug=slug))


@bp.post("/archived/<int:doc_id>/delete")
@require_company(CAP_ARCHIVE)
def archived_delete(slug: str, doc_id: int):
    s = db_session()
    doc = _get_doc_or_404(s, doc_id)
    title = doc.title
    try:
        keys = permanent_delete(s, doc, _current_user(), request.form.get("confirm_title"))
    except LifecycleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("documents.archived", slug=slug, id=doc_id))
    s.commit()
    removed = remove_stored_files(storage_from_config(current_app.config), keys)
    if removed < len(keys):
        current_app.logger.warning("Document %s deleted; %s of %s stored files left behind", doc_id, len(keys) - removed, len(keys))
    flash(f"'{title}' permanently deleted.", "success")
    return redirect(url_for("documents.archived", slug=slug))


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def _check_version_access(doc: Document, v: DocumentVersion, user: User) -> None:
    """
    Quality and the author may read every version. Library readers and archive
    managers only get the version the library shows; older drafts are not found.
    """
    if _can(CAP_QUALITY) or doc.created_by_user_id == user.id:
        return
    if (doc.status == STATUS_PUBLISHED and _can(CAP_LIBRARY)) or (doc.status == STATUS_ARCHIVED and _can(CAP_ARCHIVE)):
        shown = doc.display_version
        if shown is None or shown.id != v.id:
            abort(404)
        return
    g.missing_permission = "document.read"
    abort(403)


def _stream_version(v: DocumentVersion, *, as_attachment: bool, rendition: str = ""):
    from flask import send_file

    if rendition == "source" or not v.pdf_storage_key:
        key, filename, mimetype = v.source_storage_key, v.source_file_name, v.source_mime_type
    else:
        key, filename, mimetype = v.pdf_storage_key, v.pdf_file_name, "application/pdf"
    if not key:
        abort(404)

    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(key)
    except StorageError:
        current_app.logger.warning("Stored file missing for version %s: %s", v.id, key)
        abort(404)

    return send_file(
        fobj,
        mimetype=mimetype or "application/octet-stream",
        as_attachment=as_attachment,
        download_name=filename or "document",
        max_age=0,
    )


def _send_version_file(version_id: int, *, as_attachment: bool):
    s = db_session()
    u = _current_user()
    v = s.get(DocumentVersion, version_id)
    if not v:
        abort(404)
    doc = _get_doc_or_404(s, v.document_id)
    _check_version_access(doc, v, u)

    rendition = (request.args.get("rendition") or "").strip().lower()
    if as_attachment:
        record_event(
            s,
            actor=u,
            action="doc.download",
            entity_type="DocumentVersion",
            entity_id=str(v.id),
            company_id=doc.company_id,
            metadata={
                "document_id": doc.id,
                "version": v.version_number,
                "filename": v.source_file_name if rendition == "source" else v.display_file_name,
            },
        )
        s.commit()
    return _stream_version(v, as_attachment=as_attachment, rendition=rendition)


@bp.get("/files/<int:version_id>/download")
@require_company()
def download_file(slug: str, version_id: int):
    return _send_version_file(version_id, as_attachment=True)


@bp.get("/files/<int:version_id>/preview")
@require_company()
def preview_file(slug: str, version_id: int):
    return _send_version_file(version_id, as_attachment=False)


@bp.get("/files/<int:version_id>/shared/<token>")
def shared_file(slug: str, version_id: int, token: str):
    """
    Session-less, time-limited read of one version, handed to the Office web
    viewer. The token is bound to the company and the version.
    """
    try:
        claims = read_file_link_token(token, max_age=current_app.config["FILE_LINK_MAX_AGE"])
    except SignatureExpired:
        abort(403)
    except BadSignature:
        abort(404)

    s = db_session()
    company = s.query(Company).filter(Company.slug == slug.strip().lower()).one_or_none()
    v = s.get(DocumentVersion, version_id)
    if (
        company is None
        or not company.is_active
        or v is None
        or claims.get("v") != v.id
        or claims.get("c") != company.id
        or v.document.company_id != company.id
    ):
        abort(404)
    current_app.logger.info("Shared link used for version %s (company=%s)", v.id, company.slug)
    return _stream_version(v, as_attachment=False)
