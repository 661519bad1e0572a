import os
import tempfile

# Configuration is read at import time, so point it at throwaway locations
# before any project module is imported.
_DATA_DIR = tempfile.mkdtemp(prefix="treeshare-test-")
os.environ["TREESHARE_DATA_DIR"] = _DATA_DIR
os.environ["TREESHARE_ROOT"] = _DATA_DIR
os.environ["TREESHARE_AUTH"] = "on"
os.environ["TREESHARE_BASE_PATH"] = "/"
os.environ["TREESHARE_READ_ONLY"] = "false"
os.environ.pop("TREESHARE_GUEST_MODE", None)
os.environ.pop("DATABASE_URL", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app_settings import ensure_default_settings, set_setting  # noqa: E402
from config import CONFIG  # noqa: E402
from database import Base, SessionLocal, engine, init_db  # noqa: E402
from users import ROLE_ADMIN, ROLE_USER, create_user  # noqa: E402

PASSWORD = "correct horse battery"


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    init_db()
    db = SessionLocal()
    try:
        ensure_default_settings(db)
    finally:
        db.close()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def share_root(tmp_path, monkeypatch):
    root = tmp_path / "share"
    root.mkdir()
    monkeypatch.setattr(CONFIG, "root_dir", str(root))
    return root


@pytest.fixture
def client(share_root):
    from main import app

    return TestClient(app)


@pytest.fixture
def settings_update(db):
    """Write raw settings values straight to the store."""

    def _update(**values):
        for key, value in values.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            set_setting(db, key, str(value))

    return _update


@pytest.fixture
def make_user(db):
    def _make(username="alice", password=PASSWORD, role=ROLE_USER):
        return create_user(db, username, password, role)

    return _make


@pytest.fixture
def admin_user(make_user):
    return make_user("root", PASSWORD, ROLE_ADMIN)


def csrf_token(client) -> str:
    return client.get("/login").json()["csrfToken"]


def do_login(client, username, password=PASSWORD, remember=False):
    data = {"username": username, "password": password, "_csrf": csrf_token(client)}
    if remember:
        data["remember"] = "on"
    return client.post("/login", data=data)


@pytest.fixture
def login(client):
    """Log client in and return the post-login CSRF token."""

    def _login(username, password=PASSWORD, remember=False):
        resp = do_login(client, username, password, remember)
        assert resp.status_code == 200, resp.text
        return resp.json()["csrfToken"]

    return _login


@pytest.fixture
def admin_client(client, admin_user, login):
    token = login(admin_user.username)
    client.headers["X-CSRF-Token"] = token
    return client


@pytest.fixture
def user_client(client, make_user, login):
    user = make_user("alice")
    token = login(user.username)
    client.headers["X-CSRF-Token"] = token
    return client
