import os
from urllib.parse import urlparse

basedir = os.path.abspath(os.path.dirname(__file__))

TRUE_VALUES = frozenset({'1', 'true', 'yes', 'on'})
MANAGED_RUNTIME_MARKERS = ('RAILWAY_ENVIRONMENT', 'RAILWAY_PROJECT_ID', 'RENDER', 'RENDER_SERVICE_ID')
PRODUCTION_ENV_VARS = ('FLASK_ENV', 'RAILWAY_ENVIRONMENT', 'RENDER_ENV')


def _env(name, default=''):
    return (os.environ.get(name) or default).strip()


def _as_bool(value, default=False):
    if value is None:
        return default
    return str(value).strip().lower() in TRUE_VALUES


def _as_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value, default):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _env_bool(name, default=False):
    return _as_bool(os.environ.get(name), default)


def _env_int(name, default):
    return _as_int(os.environ.get(name), default)


def _is_managed_runtime():
    return any(os.environ.get(marker) for marker in MANAGED_RUNTIME_MARKERS)


def _is_production_runtime():
    return any(_env(name).lower() == 'production' for name in PRODUCTION_ENV_VARS)


def _database_url():
    url = _env('DATABASE_URL')
    if not url:
        return 'sqlite:///' + os.path.join(basedir, 'site.db')
    # Heroku-style URLs still use the scheme SQLAlchemy dropped.
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    return url


def _database_engine_options(database_url):
    if database_url.startswith('sqlite'):
        return {}
    options = {'pool_pre_ping': True, 'pool_recycle': 300}
    if urlparse(database_url).scheme.startswith('postgresql'):
        timeout = max(1, _env_int('DB_CONNECT_TIMEOUT_SECONDS', 5))
        statement_ms = max(1000, _env_int('DB_STATEMENT_TIMEOUT_MS', 8000))
        options['connect_args'] = {
            'connect_timeout': timeout,
            'options': f'-c statement_timeout={statement_ms}',
        }
    return options


def _default_secure_cookies():
    return _env('PREFERRED_URL_SCHEME').lower() == 'https' or _is_production_runtime()


def _default_mail_from():
    domain = _env('MAILGUN_DOMAIN')
    return (
        _env('MAILGUN_FROM_EMAIL')
        or _env('MAIL_FROM')
        or _env('SMTP_USERNAME')
        or (f'noreply@{domain}' if domain else 'no-reply@localhost')
    )


class Config:
    SECRET_KEY = _env('SECRET_KEY')
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = _database_engine_options(SQLALCHEMY_DATABASE_URI)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Public image tree, served under /images/.
    IMAGES_FOLDER = _env('IMAGES_FOLDER') or os.path.join(basedir, 'public', 'images')
    ESTIMATE_UPLOAD_SUBDIR = 'estimate-requests'
    MAX_ESTIMATE_IMAGES = _env_int('MAX_ESTIMATE_IMAGES', 10)
    MAX_UPLOAD_FILE_BYTES = _env_int('MAX_UPLOAD_FILE_BYTES', 10 * 1024 * 1024)
    # Every estimate image at full size, plus room for the text fields.
    MAX_CONTENT_LENGTH = MAX_ESTIMATE_IMAGES * MAX_UPLOAD_FILE_BYTES + 1024 * 1024
    MAX_UPLOAD_IMAGE_PIXELS = _env_int('MAX_UPLOAD_IMAGE_PIXELS', 40_000_000)
    ALLOWED_IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
    ALLOWED_UPLOAD_MIME_TYPES = {f'image/{kind}' for kind in ('png', 'jpeg', 'gif', 'webp')}
    WEBP_QUALITY = _env_int('WEBP_QUALITY', 82)
    WEBP_MAX_WIDTH = _env_int('WEBP_MAX_WIDTH', 1920)

    ADMIN_USERNAME = _env('ADMIN_USERNAME') or 'admin'

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_SECURE = _env_bool('SESSION_COOKIE_SECURE', _default_secure_cookies())
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = 'Lax'
    REMEMBER_COOKIE_SECURE = SESSION_COOKIE_SECURE
    TRUST_PROXY_HEADERS = _env_bool('TRUST_PROXY_HEADERS', _is_managed_runtime())
    PREFERRED_URL_SCHEME = _env('PREFERRED_URL_SCHEME') or ('https' if SESSION_COOKIE_SECURE else 'http')
    APP_BASE_URL = _env('APP_BASE_URL').rstrip('/')
    HSTS_ENABLED = _env_bool('HSTS_ENABLED', True)
    HSTS_MAX_AGE = _env_int('HSTS_MAX_AGE', 31536000)
    HSTS_INCLUDE_SUBDOMAINS = _env_bool('HSTS_INCLUDE_SUBDOMAINS', True)
    HSTS_PRELOAD = _env_bool('HSTS_PRELOAD', False)

    # Outbound mail: Mailgun when keyed, otherwise SMTP when a host is set.
    SMTP_HOST = _env('SMTP_HOST')
    SMTP_PORT = _env_int('SMTP_PORT', 587)
    SMTP_USERNAME = _env('SMTP_USERNAME')
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD') or ''
    SMTP_USE_TLS = _env_bool('SMTP_USE_TLS', True)
    SMTP_USE_SSL = _env_bool('SMTP_USE_SSL', False)
    MAILGUN_API_KEY = _env('MAILGUN_API_KEY')
    MAILGUN_DOMAIN = _env('MAILGUN_DOMAIN')
    MAIL_FROM = _default_mail_from()
    CONTACT_NOTIFICATION_EMAILS = _env('CONTACT_NOTIFICATION_EMAILS') or _env('MAILGUN_TO_EMAIL')

    CONTACT_FORM_LIMIT = _env_int('CONTACT_FORM_LIMIT', 12)
    CONTACT_FORM_WINDOW_SECONDS = _env_int('CONTACT_FORM_WINDOW_SECONDS', 3600)
    ESTIMATE_FORM_LIMIT = _env_int('ESTIMATE_FORM_LIMIT', 8)
    ESTIMATE_FORM_WINDOW_SECONDS = _env_int('ESTIMATE_FORM_WINDOW_SECONDS', 3600)

    REVIEWS_FEED_TIMEOUT_SECONDS = _env_int('REVIEWS_FEED_TIMEOUT_SECONDS', 15)

    SENTRY_DSN = _env('SENTRY_DSN')
    SENTRY_ENVIRONMENT = _env('SENTRY_ENVIRONMENT')
    SENTRY_TRACES_SAMPLE_RATE = _as_float(os.environ.get('SENTRY_TRACES_SAMPLE_RATE'), 0.0)
    LOG_JSON = _env_bool('LOG_JSON', True)
    LOG_LEVEL = (_env('LOG_LEVEL') or 'INFO').upper()
