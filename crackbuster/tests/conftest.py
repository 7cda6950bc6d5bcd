import io
import re
import uuid

import pytest
from PIL import Image

from crackbuster import create_app
from crackbuster.models import AuthRateLimitBucket, db

CSRF_TOKEN_RE = re.compile(r'name="_csrf_token" value="([^"]+)"')


def extract_csrf_token(html):
    match = CSRF_TOKEN_RE.search(html or "")
    return match.group(1) if match else None


def build_test_app(tmp_path, monkeypatch, overrides=None):
    db_path = tmp_path / f"site_test_{uuid.uuid4().hex[:8]}.db"
    images_path = tmp_path / f"images_{uuid.uuid4().hex[:8]}"

    monkeypatch.setenv("ADMIN_PASSWORD", "admin123")
    for key in ("SMTP_HOST", "MAILGUN_API_KEY", "MAILGUN_DOMAIN", "SENTRY_DSN"):
        monkeypatch.delenv(key, raising=False)

    config = {
        "TESTING": True,
        "SECRET_KEY": "test-secret-key",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "SQLALCHEMY_ENGINE_OPTIONS": {},
        "IMAGES_FOLDER": str(images_path),
        "SMTP_HOST": "",
        "MAILGUN_API_KEY": "",
        "CONTACT_NOTIFICATION_EMAILS": "",
        "LOG_JSON": False,
    }
    if overrides:
        config.update(overrides)

    app = create_app(config)
    with app.app_context():
        AuthRateLimitBucket.query.delete()
        db.session.commit()
    return app


def write_image(path, size=(4, 3), color=(200, 40, 40), fmt=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, format=fmt)
    return path


def image_upload(name="photo.png", fmt="PNG", size=(4, 3)):
    buffer = io.BytesIO()
    Image.new("RGB", size, (10, 120, 200)).save(buffer, format=fmt)
    buffer.seek(0)
    return buffer, name


@pytest.fixture()
def app(tmp_path, monkeypatch):
    return build_test_app(tmp_path, monkeypatch)


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def images_root(app):
    from pathlib import Path

    return Path(app.config["IMAGES_FOLDER"])


@pytest.fixture()
def csrf_for(client):
    """Return a callable reading the CSRF token from a page for this client."""

    def _read(path):
        token = extract_csrf_token(client.get(path).get_data(as_text=True))
        assert token, f"no CSRF token on {path}"
        return token

    return _read


@pytest.fixture()
def admin_client(client, csrf_for):
    token = csrf_for("/admin/login")
    response = client.post(
        "/admin/login",
        data={"_csrf_token": token, "username": "admin", "password": "admin123"},
        follow_redirects=False,
    )
    assert response.status_code in (302, 303)
    return client


@pytest.fixture()
def make_image():
    return write_image


@pytest.fixture()
def upload_file():
    return image_upload


@pytest.fixture()
def make_app(tmp_path, monkeypatch):
    def _build(overrides=None):
        return build_test_app(tmp_path, monkeypatch, overrides)

    return _build
