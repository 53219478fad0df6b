"""HTTP tests for the company document pages (publisher, quality, library, archive, files)."""
import io
import time

import pytest
from itsdangerous import TimestampSigner
from werkzeug.security import generate_password_hash

from app.docportal import create_app
from app.docportal.constants import (
    ROLE_COLABORADOR,
    ROLE_GESTOR_QUALIDADE,
    ROLE_PUBLICADOR,
    STAGE_UNDER_REVIEW,
    STATUS_ARCHIVED,
    STATUS_IN_REVIEW,
    STATUS_PUBLISHED,
)
from app.docportal.db import session_scope
from app.docportal.models import Base, Company, User, UserCompany
from app.docportal.modules.document_lifecycle.models import Document, DocumentAction
from app.docportal.modules.document_types.models import DocumentType
from app.docportal.security import make_file_link_token
from app.docportal.storage import storage_from_config


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        acme = Company(name="Acme", slug="acme")
        globex = Company(name="Globex", slug="globex")
        users = {
            "quality": User(email="quality@example.com", full_name="Quinn", password_hash=generate_password_hash("pw")),
            "author": User(email="author@example.com", full_name="Alex", password_hash=generate_password_hash("pw")),
            "reader": User(email="reader@example.com", full_name="Riley", password_hash=generate_password_hash("pw")),
            "outsider": User(email="outsider@example.com", full_name="Oz", password_hash=generate_password_hash("pw")),
        }
        s.add_all([acme, globex, *users.values()])
        s.flush()
        s.add_all(
            [
                UserCompany(user_id=users["quality"].id, company_id=acme.id, role=ROLE_GESTOR_QUALIDADE),
                UserCompany(user_id=users["author"].id, company_id=acme.id, role=ROLE_PUBLICADOR),
                UserCompany(user_id=users["reader"].id, company_id=acme.id, role=ROLE_COLABORADOR),
                UserCompany(user_id=users["outsider"].id, company_id=globex.id, role=ROLE_GESTOR_QUALIDADE),
                DocumentType(company_id=acme.id, name="Procedure", code="PRO", is_active=True),
            ]
        )
    return app


def _login(client, who):
    client.post("/auth/login", data={"email": f"{who}@example.com", "password": "pw"}, follow_redirects=True)


def _csrf(client) -> str:
    with client.session_transaction() as sess:
        token = sess.get("csrf_token")
        if not token:
            token = "test-csrf-token"
            sess["csrf_token"] = token
    return token


def _client_for(app, who):
    c = app.test_client()
    _login(c, who)
    return c


def _post(client, url, data=None, **kwargs):
    payload = dict(data or {})
    payload["csrf_token"] = _csrf(client)
    return client.post(url, data=payload, **kwargs)


def _upload(client, url, filename, content=b"hello world", field="file"):
    return _post(client, url, {field: (io.BytesIO(content), filename)}, content_type="multipart/form-data", follow_redirects=True)


def _only_doc(app):
    with session_scope(app) as s:
        return s.query(Document).one().id


def _company_id(app, slug):
    with session_scope(app) as s:
        return s.query(Company).filter(Company.slug == slug).one().id


def _type_id(app):
    with session_scope(app) as s:
        return s.query(DocumentType).filter(DocumentType.code == "PRO").one().id


def _publish(app, quality, doc_id, **overrides):
    data = {
        "document_type_id": str(_type_id(app)),
        "elaborator": "Ana",
        "approver": "Bruno",
        "risk_level": "LOW",
    }
    data.update(overrides)
    return _post(quality, f"/company/acme/quality/{doc_id}/publish", data, follow_redirects=True)


def test_full_lifecycle_through_the_ui(app):
    author = _client_for(app, "author")
    r = _upload(author, "/company/acme/publisher/upload", "sop_cleaning-room.docx")
    assert r.status_code == 200
    assert b"sent to Quality for review" in r.data
    assert b"sop cleaning room" in r.data
    doc_id = _only_doc(app)

    quality = _client_for(app, "quality")
    r = quality.get(f"/company/acme/quality?id={doc_id}")
    assert r.status_code == 200
    assert b"sop cleaning room" in r.data
    assert b"view.officeapps.live.com" in r.data

    r = _post(quality, f"/company/acme/quality/{doc_id}/start-review", follow_redirects=True)
    assert b"Review started." in r.data

    r = _publish(app, quality, doc_id, elaborator="")
    assert b"Provide the elaborator" in r.data
    with session_scope(app) as s:
        assert s.get(Document, doc_id).status == STATUS_IN_REVIEW

    r = _publish(app, quality, doc_id)
    assert b"published to the library" in r.data

    reader = _client_for(app, "reader")
    r = reader.get("/company/acme/library")
    assert r.status_code == 200
    assert b"sop cleaning room" in r.data
    assert b"PRO - Procedure" in r.data

    r = reader.get(f"/company/acme/library/{doc_id}")
    assert r.status_code == 200
    assert b"Low risk" in r.data

    r = _post(quality, f"/company/acme/quality/published/{doc_id}/archive", {"comment": ""}, follow_redirects=True)
    assert b"A comment is required" in r.data
    r = _post(quality, f"/company/acme/quality/published/{doc_id}/archive", {"comment": "Superseded"}, follow_redirects=True)
    assert b"archived." in r.data
    assert b"sop cleaning room" not in reader.get("/company/acme/library").data

    r = _post(quality, f"/company/acme/archived/{doc_id}/unarchive", follow_redirects=True)
    assert b"is published again" in r.data

    with session_scope(app) as s:
        assert s.get(Document, doc_id).status == STATUS_PUBLISHED


def test_send_back_to_review_returns_to_queue(app):
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "policy.pdf")
    doc_id = _only_doc(app)
    quality = _client_for(app, "quality")
    _publish(app, quality, doc_id)

    r = _post(quality, f"/company/acme/quality/published/{doc_id}/send-back", {"comment": "Update references"}, follow_redirects=True)
    assert r.status_code == 200
    assert b"sent back to review" in r.data
    with session_scope(app) as s:
        doc = s.get(Document, doc_id)
        assert doc.status == STATUS_IN_REVIEW
        assert doc.current_version.stage == STAGE_UNDER_REVIEW


def test_changes_requested_then_resubmitted(app):
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "form.docx")
    doc_id = _only_doc(app)

    quality = _client_for(app, "quality")
    r = _post(quality, f"/company/acme/quality/{doc_id}/request-changes", {"comment": "Missing signature block"}, follow_redirects=True)
    assert b"Changes requested" in r.data

    r = author.get("/company/acme/publisher")
    assert b"Needs changes" in r.data
    r = _upload(author, f"/company/acme/publisher/{doc_id}/resubmit", "form-v2.docx", b"second")
    assert b"Version 2 sent to Quality." in r.data


def test_quality_upload_version_and_pdf(app):
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "manual.docx")
    doc_id = _only_doc(app)

    quality = _client_for(app, "quality")
    r = _upload(quality, f"/company/acme/quality/{doc_id}/upload-version", "manual-edited.docx", b"edited")
    assert b"Version 2 uploaded." in r.data

    r = _upload(quality, f"/company/acme/quality/{doc_id}/attach-pdf", "manual.pdf", b"%PDF-1.4", field="pdf")
    assert b"PDF rendition attached." in r.data

    with session_scope(app) as s:
        doc = s.get(Document, doc_id)
        version_id = doc.current_version.id
        assert doc.current_version.version_number == 2

    r = quality.get(f"/company/acme/files/{version_id}/preview")
    assert r.status_code == 200
    assert r.mimetype == "application/pdf"
    assert r.data == b"%PDF-1.4"

    r = quality.get(f"/company/acme/files/{version_id}/download?rendition=source")
    assert r.status_code == 200
    assert r.data == b"edited"
    assert "attachment" in r.headers["Content-Disposition"]


def test_file_access_rules(app):
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "draft.pdf", b"draft bytes")
    doc_id = _only_doc(app)
    with session_scope(app) as s:
        version_id = s.get(Document, doc_id).current_version.id

    r = author.get(f"/company/acme/files/{version_id}/download")
    assert r.status_code == 200
    assert r.data == b"draft bytes"

    reader = _client_for(app, "reader")
    assert reader.get(f"/company/acme/files/{version_id}/download").status_code == 403

    outsider = _client_for(app, "outsider")
    assert outsider.get(f"/company/acme/files/{version_id}/download").status_code == 403
    assert outsider.get(f"/company/globex/files/{version_id}/download").status_code == 404


def _publish_over_draft(app):
    """Author submits a draft, Quality replaces it with v2 and publishes. Returns (doc_id, v1_id, v2_id)."""
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "draft.docx", b"draft v1 text")
    doc_id = _only_doc(app)
    quality = _client_for(app, "quality")
    _upload(quality, f"/company/acme/quality/{doc_id}/upload-version", "final.docx", b"final v2 text")
    _publish(app, quality, doc_id)
    with session_scope(app) as s:
        doc = s.get(Document, doc_id)
        assert doc.status == STATUS_PUBLISHED
        v1, v2 = sorted(doc.versions, key=lambda v: v.version_number)
        return doc_id, v1.id, v2.id


def test_library_readers_only_get_the_published_version(app):
    _, v1_id, v2_id = _publish_over_draft(app)

    reader = _client_for(app, "reader")
    r = reader.get(f"/company/acme/files/{v2_id}/download")
    assert r.status_code == 200
    assert r.data == b"final v2 text"
    assert reader.get(f"/company/acme/files/{v1_id}/download").status_code == 404
    assert reader.get(f"/company/acme/files/{v1_id}/preview").status_code == 404

    # The author and Quality keep access to the full history.
    assert _client_for(app, "author").get(f"/company/acme/files/{v1_id}/download").data == b"draft v1 text"
    assert _client_for(app, "quality").get(f"/company/acme/files/{v1_id}/download").status_code == 200


def test_office_preview_uses_a_signed_link(app):
    doc_id, _, v2_id = _publish_over_draft(app)

    reader = _client_for(app, "reader")
    body = reader.get(f"/company/acme/library/{doc_id}").data
    assert b"view.officeapps.live.com" in body
    assert b"%2Fshared%2F" in body

    with app.app_context():
        token = make_file_link_token(company_id=_company_id(app, "acme"), version_id=v2_id)

    anonymous = app.test_client()
    r = anonymous.get(f"/company/acme/files/{v2_id}/shared/{token}")
    assert r.status_code == 200
    assert r.data == b"final v2 text"

    tampered = ("A" if token[0] != "A" else "B") + token[1:]
    assert anonymous.get(f"/company/acme/files/{v2_id}/shared/{tampered}").status_code == 404
    assert anonymous.get(f"/company/acme/files/{v2_id - 1}/shared/{token}").status_code == 404
    assert anonymous.get(f"/company/globex/files/{v2_id}/shared/{token}").status_code == 404


def test_expired_signed_link_is_refused(app, monkeypatch):
    _, _, v2_id = _publish_over_draft(app)
    with app.app_context(), monkeypatch.context() as m:
        m.setattr(TimestampSigner, "get_timestamp", lambda self: int(time.time()) - 3600)
        token = make_file_link_token(company_id=_company_id(app, "acme"), version_id=v2_id)

    r = app.test_client().get(f"/company/acme/files/{v2_id}/shared/{token}")
    assert r.status_code == 403


def test_replaced_pdf_is_removed_after_commit(app):
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "manual.docx")
    doc_id = _only_doc(app)

    quality = _client_for(app, "quality")
    _upload(quality, f"/company/acme/quality/{doc_id}/attach-pdf", "first.pdf", b"%PDF-first", field="pdf")
    with session_scope(app) as s:
        old_key = s.get(Document, doc_id).display_version.pdf_storage_key
    storage = storage_from_config(app.config)
    assert storage.exists(old_key)

    r = _upload(quality, f"/company/acme/quality/{doc_id}/attach-pdf", "second.pdf", b"%PDF-second", field="pdf")
    assert b"PDF rendition attached." in r.data
    with session_scope(app) as s:
        new_key = s.get(Document, doc_id).display_version.pdf_storage_key
    assert new_key != old_key
    assert storage.exists(new_key)
    assert not storage.exists(old_key)


def test_foreign_documents_are_not_found(app):
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "acme-only.pdf")
    doc_id = _only_doc(app)

    outsider = _client_for(app, "outsider")
    assert outsider.get(f"/company/globex/quality?id={doc_id}").status_code == 404
    r = _publish(app, outsider, doc_id)
    # outsider is not a member of acme at all
    assert r.status_code == 403
    r = _post(outsider, f"/company/globex/quality/{doc_id}/publish", {"elaborator": "x"})
    assert r.status_code == 404


def test_publisher_delete_submission(app):
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "temp.pdf")
    doc_id = _only_doc(app)

    r = _post(author, f"/company/acme/publisher/{doc_id}/delete", follow_redirects=True)
    assert b"deleted." in r.data
    with session_scope(app) as s:
        assert s.query(Document).count() == 0


def test_permanent_delete_requires_typed_title(app, tmp_path):
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "Retired Form.pdf")
    doc_id = _only_doc(app)
    quality = _client_for(app, "quality")
    _publish(app, quality, doc_id)
    _post(quality, f"/company/acme/quality/published/{doc_id}/archive", {"comment": "Retired"})

    r = _post(quality, f"/company/acme/archived/{doc_id}/delete", {"confirm_title": "Retired"}, follow_redirects=True)
    assert b"type the exact document title" in r.data

    r = _post(quality, f"/company/acme/archived/{doc_id}/delete", {"confirm_title": "retired  form"}, follow_redirects=True)
    assert b"permanently deleted." in r.data

    with session_scope(app) as s:
        assert s.get(Document, doc_id) is None
        assert s.query(DocumentAction).filter(DocumentAction.document_title == "Retired Form").count() >= 1
    assert not any(p.is_file() for p in (tmp_path / "storage").rglob("*"))


def test_upload_too_large_is_flashed(app):
    app.config["MAX_CONTENT_LENGTH"] = 1024
    author = _client_for(app, "author")
    r = _post(
        author,
        "/company/acme/publisher/upload",
        {"file": (io.BytesIO(b"x" * 4096), "big.pdf")},
        content_type="multipart/form-data",
        headers={"Referer": "http://localhost/company/acme/publisher"},
        follow_redirects=False,
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(Document).count() == 0


def test_archived_status_listed_for_quality(app):
    author = _client_for(app, "author")
    _upload(author, "/company/acme/publisher/upload", "to-archive.pdf")
    doc_id = _only_doc(app)
    quality = _client_for(app, "quality")
    _publish(app, quality, doc_id)
    _post(quality, f"/company/acme/quality/published/{doc_id}/archive", {"comment": "Old"})

    with session_scope(app) as s:
        assert s.get(Document, doc_id).status == STATUS_ARCHIVED

    r = quality.get(f"/company/acme/archived?id={doc_id}")
    assert r.status_code == 200
    assert b"to archive" in r.data
    assert b"Delete permanently" in r.data
