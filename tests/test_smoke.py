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
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        acme = Company(name="Acme", slug="acme")
        globex = Company(name="Globex", slug="globex")
        solo = User(email="solo@example.com", full_name="Solo", password_hash=generate_password_hash("pw"))
        multi = User(email="multi@example.com", full_name="Multi", password_hash=generate_password_hash("pw"))
        lonely = User(email="lonely@example.com", full_name="Lonely", password_hash=generate_password_hash("pw"))
        admin = User(
            email="admin@example.com",
            full_name="Admin",
            password_hash=generate_password_hash("pw"),
            system_role=SYSTEM_ROLE_SITE_ADMIN,
        )
        inactive = User(email="gone@example.com", full_name="Gone", password_hash=generate_password_hash("pw"), is_active=False)
        s.add_all([acme, globex, solo, multi, lonely, admin, inactive])
        s.flush()
        s.add_all(
            [
                UserCompany(user_id=solo.id, company_id=acme.id, role=ROLE_COLABORADOR),
                UserCompany(user_id=multi.id, company_id=acme.id, role=ROLE_COLABORADOR),
                UserCompany(user_id=multi.id, company_id=globex.id, role=ROLE_PUBLICADOR, is_default=True),
            ]
        )
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="solo@example.com", password="pw", **kwargs):
    return client.post("/auth/login", data={"email": email, "password": password}, **kwargs)


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_index_requires_login(client):
    r = client.get("/", follow_redirects=False)
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_login_page_renders(client):
    r = client.get("/auth/login")
    assert r.status_code == 200
    assert b"Sign in" in r.data


def test_login_single_membership_goes_to_library(client):
    r = _login(client, follow_redirects=False)
    assert r.status_code == 302

    r = client.get("/", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/company/acme/library")


def test_picker_lists_companies_default_first(client):
    _login(client, "multi@example.com")
    r = client.get("/")
    assert r.status_code == 200
    body = r.data.decode()
    assert "Choose a company" in body
    assert body.index("Globex") < body.index("Acme")
    assert "Publisher" in body and "Contributor" in body


def test_picker_without_memberships(client):
    _login(client, "lonely@example.com")
    r = client.get("/")
    assert r.status_code == 200
    assert b"not linked to any company" in r.data


def test_invalid_credentials(client, app):
    r = _login(client, password="wrong", follow_redirects=True)
    assert r.status_code == 200
    assert b"Invalid credentials." in r.data

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").one()
        assert ev.entity_id == "solo@example.com"


def test_inactive_user_cannot_login(client):
    r = _login(client, "gone@example.com", follow_redirects=True)
    assert b"Invalid credentials." in r.data


def test_login_rate_limited(client):
    for _ in range(5):
        _login(client, password="wrong")
    r = _login(client, follow_redirects=True)
    assert b"Too many login attempts" in r.data


def test_next_redirect_only_local(client):
    r = client.post(
        "/auth/login",
        data={"email": "solo@example.com", "password": "pw", "next": "/profile/"},
        follow_redirects=False,
    )
    assert r.headers["Location"].endswith("/profile/")

    client.get("/auth/logout")
    r = client.post(
        "/auth/login",
        data={"email": "solo@example.com", "password": "pw", "next": "//evil.example.com/"},
        follow_redirects=False,
    )
    assert "evil" not in r.headers["Location"]


def test_logout_clears_session(client):
    _login(client)
    r = client.get("/auth/logout", follow_redirects=False)
    assert r.status_code == 302
    r = client.get("/company/acme/library", follow_redirects=False)
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_post_without_csrf_token_is_rejected(client):
    _login(client)
    r = client.post("/profile/", data={"full_name": "New name"})
    assert r.status_code == 400
    assert b"CSRF" in r.data


def test_unknown_page_renders_404(client):
    _login(client)
    r = client.get("/company/acme/does-not-exist")
    assert r.status_code == 404
    assert b"Not found" in r.data
