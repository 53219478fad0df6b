import pytest
from werkzeug.security import generate_password_hash

from app.docportal import create_app
from app.docportal.db import session_scope
from app.docportal.models import Base, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add(User(email="me@example.com", full_name="Me", password_hash=generate_password_hash("old-password")))

    c = app.test_client()
    c.post("/auth/login", data={"email": "me@example.com", "password": "old-password"}, follow_redirects=True)
    return c


def _csrf(client) -> str:
    with client.session_transaction() as sess:
        token = sess.get("csrf_token")
        if not token:
            token = "test-csrf-token"
            sess["csrf_token"] = token
    return token


def _post(client, url, data):
    return client.post(url, data={**data, "csrf_token": _csrf(client)}, follow_redirects=True)


def test_profile_page(client):
    r = client.get("/profile/")
    assert r.status_code == 200
    assert b"me@example.com" in r.data


def test_update_name(client):
    r = _post(client, "/profile/", {"full_name": "   "})
    assert b"Name cannot be empty." in r.data
    r = _post(client, "/profile/", {"full_name": "Morgan"})
    assert b"Profile updated." in r.data
    with session_scope(client.application) as s:
        assert s.query(User).one().full_name == "Morgan"


@pytest.mark.parametrize(
    "form,message",
    [
        ({"current_password": "old-password", "new_password": "", "confirm_password": ""}, b"Fill in all password fields."),
        ({"current_password": "old-password", "new_password": "short", "confirm_password": "short"}, b"at least 8 characters"),
        ({"current_password": "old-password", "new_password": "new-password", "confirm_password": "other-pass"}, b"do not match"),
        ({"current_password": "wrong-password", "new_password": "new-password", "confirm_password": "new-password"}, b"current password is incorrect"),
    ],
)
def test_change_password_validation(client, form, message):
    r = _post(client, "/profile/password", form)
    assert message in r.data


def test_change_password(client):
    r = _post(
        client,
        "/profile/password",
        {"current_password": "old-password", "new_password": "new-password", "confirm_password": "new-password"},
    )
    assert b"Password changed." in r.data

    client.get("/auth/logout")
    r = client.post("/auth/login", data={"email": "me@example.com", "password": "new-password"}, follow_redirects=False)
    assert "/auth/login" not in r.headers["Location"]
