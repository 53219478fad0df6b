import pytest

from app.docportal.auth import login_throttle


@pytest.fixture(autouse=True)
def _reset_login_throttle():
    # The throttle is process-wide; keep tests independent.
    login_throttle.clear()
    yield
    login_throttle.clear()
