import pytest
from werkzeug.security import generate_password_hash

from app.docportal import create_app
from app.docportal.constants import ROLE_COLABORADOR, ROLE_PUBLICADOR, SYSTEM_ROLE_SITE_ADMIN
from app.docportal.db import session_scope
from app.docportal.models import AuditEvent, Base, Company, User, UserCompany


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add_all(
            [
                Company(name="Acme", slug="acme"),
                Company(name="Globex", slug="globex"),
                User(
                    email="admin@example.com",
                    full_name="Admin",
                    password_hash=generate_password_hash("pw"),
                    system_role=SYSTEM_ROLE_SITE_ADMIN,
                ),
                User(email="jane@example.com", full_name="Jane Doe", password_hash=generate_password_hash("pw")),
            ]
        )
    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    c.post("/auth/login", data={"email": "admin@example.com", "password": "pw"}, follow_redirects=True)
    return c


def _csrf(client) -> str:
    with client.session_transaction() as sess:
        token = sess.get("csrf_token")
        if not token:
            token = "test-csrf-token"
            sess["csrf_token"] = token
    return token


def _post(client, url, data=None):
    payload = dict(data or {})
    payload["csrf_token"] = _csrf(client)
    return client.post(url, data=payload, follow_redirects=True)


def _ids(app):
    with session_scope(app) as s:
        jane = s.query(User).filter(User.email == "jane@example.com").one()
        companies = {c.slug: c.id for c in s.query(Company).all()}
        return jane.id, companies


def test_admin_pages_render(client):
    for url in ("/admin/", "/admin/users", "/admin/companies", "/admin/audit"):
        assert client.get(url).status_code == 200, url


def test_non_admin_is_forbidden(app):
    c = app.test_client()
    c.post("/auth/login", data={"email": "jane@example.com", "password": "pw"})
    assert c.get("/admin/users").status_code == 403


def test_user_search(client):
    r = client.get("/admin/users?q=jane")
    assert b"jane@example.com" in r.data
    r = client.get("/admin/users?q=nobody")
    assert b"jane@example.com" not in r.data


def test_create_user_validation(client, app):
    r = _post(client, "/admin/users/new", {"email": "new@example.com", "full_name": "", "password": "longenough"})
    assert b"Email and full name are required." in r.data
    r = _post(client, "/admin/users/new", {"email": "not-an-email", "full_name": "X", "password": "longenough"})
    assert b"Invalid email format." in r.data
    r = _post(client, "/admin/users/new", {"email": "JANE@example.com", "full_name": "X", "password": "longenough"})
    assert b"already exists" in r.data
    r = _post(client, "/admin/users/new", {"email": "new@example.com", "full_name": "New", "password": "short"})
    assert b"at least 8 characters" in r.data

    r = _post(client, "/admin/users/new", {"email": "New@Example.com", "full_name": "New Person", "password": "longenough"})
    assert b"Account created for new@example.com." in r.data

    c = app.test_client()
    r = c.post("/auth/login", data={"email": "new@example.com", "password": "longenough"}, follow_redirects=False)
    assert r.status_code == 302
    assert "/auth/login" not in r.headers["Location"]


def test_update_user(client, app):
    jane_id, _ = _ids(app)
    r = _post(
        client,
        f"/admin/users/{jane_id}/update",
        {"email": "jane.doe@example.com", "full_name": "Jane D.", "system_role": "NORMAL", "is_active": ""},
    )
    assert b"Account updated" in r.data
    with session_scope(app) as s:
        jane = s.get(User, jane_id)
        assert jane.email == "jane.doe@example.com"
        assert jane.is_active is False


def test_admin_cannot_demote_self(client, app):
    with session_scope(app) as s:
        admin_id = s.query(User).filter(User.email == "admin@example.com").one().id
    r = _post(
        client,
        f"/admin/users/{admin_id}/update",
        {"email": "admin@example.com", "full_name": "Admin", "system_role": "NORMAL", "is_active": "1"},
    )
    assert b"cannot deactivate or demote your own account" in r.data


def test_memberships_default_is_unique(client, app):
    jane_id, companies = _ids(app)

    _post(client, f"/admin/users/{jane_id}/memberships", {"company_id": companies["acme"], "role": ROLE_COLABORADOR, "is_default": "1"})
    r = _post(client, f"/admin/users/{jane_id}/memberships", {"company_id": companies["acme"], "role": ROLE_PUBLICADOR})
    assert b"already a member" in r.data
    r = _post(client, f"/admin/users/{jane_id}/memberships", {"company_id": "", "role": ROLE_PUBLICADOR})
    assert b"Select a company and a role." in r.data
    _post(client, f"/admin/users/{jane_id}/memberships", {"company_id": companies["globex"], "role": ROLE_PUBLICADOR, "is_default": "1"})

    with session_scope(app) as s:
        rows = {m.company.slug: m for m in s.query(UserCompany).filter(UserCompany.user_id == jane_id).all()}
        assert rows["globex"].is_default is True
        assert rows["acme"].is_default is False
        acme_membership_id = rows["acme"].id

    _post(client, f"/admin/memberships/{acme_membership_id}/default")
    _post(client, f"/admin/memberships/{acme_membership_id}/role", {"role": ROLE_PUBLICADOR})

    with session_scope(app) as s:
        rows = {m.company.slug: m for m in s.query(UserCompany).filter(UserCompany.user_id == jane_id).all()}
        assert rows["acme"].is_default is True
        assert rows["acme"].role == ROLE_PUBLICADOR
        assert rows["globex"].is_default is False

    r = _post(client, f"/admin/memberships/{acme_membership_id}/delete")
    assert b"Membership removed." in r.data
    with session_scope(app) as s:
        assert s.query(UserCompany).filter(UserCompany.user_id == jane_id).count() == 1
        assert s.query(AuditEvent).filter(AuditEvent.action.like("membership.%")).count() == 5


def test_create_company(client, app):
    r = _post(client, "/admin/companies/new", {"name": "Initech Labs"})
    assert b"created." in r.data
    r = _post(client, "/admin/companies/new", {"name": "Initech   Labs!"})
    assert b"already in use" in r.data
    r = _post(client, "/admin/companies/new", {"name": ""})
    assert b"Company name is required." in r.data

    with session_scope(app) as s:
        company = s.query(Company).filter(Company.slug == "initech-labs").one()
        assert company.is_active is True


def test_audit_filters(client):
    r = client.get("/admin/audit?action=auth.login")
    assert r.status_code == 200
    assert b"auth.login" in r.data
    r = client.get("/admin/audit?date_from=bad")
    assert b"date_from must be YYYY-MM-DD" in r.data
