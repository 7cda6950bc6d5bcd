"""Request hardening: CSRF tokens, CSP nonces and response security headers."""
import secrets
from urllib.parse import urlparse

from flask import abort, current_app, g, request, session
from markupsafe import Markup, escape

CSRF_SESSION_KEY = '_csrf_token'
CSRF_HEADER = 'X-CSRF-Token'
CSRF_ERROR = 'Invalid or missing CSRF token.'
UNSAFE_METHODS = frozenset({'POST', 'PUT', 'PATCH', 'DELETE'})

ADMIN_ROBOTS_TAG = 'noindex, nofollow, noarchive'
LONG_CACHE_PREFIXES = ('/static/', '/images/')
LONG_CACHE_CONTROL = 'public, max-age=31536000, immutable'
NO_STORE_HEADERS = {
    'Cache-Control': 'no-store, no-cache, must-revalidate, max-age=0',
    'Pragma': 'no-cache',
    'Expires': '0',
}
BASE_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
    'Permissions-Policy': 'geolocation=(), microphone=(), camera=()',
    'Cross-Origin-Opener-Policy': 'same-origin',
}
CSP_DIRECTIVES = (
    "default-src 'self'",
    "base-uri 'self'",
    "frame-ancestors 'none'",
    "form-action 'self'",
    "object-src 'none'",
    "img-src 'self' data: https:",
    "script-src 'self' 'nonce-{nonce}'",
    "style-src 'self' 'nonce-{nonce}' https://fonts.googleapis.com",
    "font-src 'self' data: https://fonts.gstatic.com",
    "connect-src 'self'",
)


def get_csrf_token():
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = secrets.token_urlsafe(32)
        session[CSRF_SESSION_KEY] = token
    return token


def csrf_input():
    return Markup(f'<input type="hidden" name="{CSRF_SESSION_KEY}" value="{escape(get_csrf_token())}">')  # nosec B704


def verify_csrf():
    """before_request hook: reject state-changing requests without the session token."""
    if request.method not in UNSAFE_METHODS:
        return
    expected = session.get(CSRF_SESSION_KEY) or ''
    provided = request.form.get(CSRF_SESSION_KEY) or request.headers.get(CSRF_HEADER) or ''
    if not (expected and provided and secrets.compare_digest(expected, provided)):
        abort(400, description=CSRF_ERROR)


def is_csrf_error(error):
    return CSRF_ERROR in str(getattr(error, 'description', '') or '')


def get_csp_nonce():
    if not getattr(g, 'csp_nonce', ''):
        g.csp_nonce = secrets.token_urlsafe(16)
    return g.csp_nonce


def ensure_csp_nonce():
    """before_request hook; must return None so routing continues."""
    get_csp_nonce()


def safe_referrer_path(fallback):
    """Same-origin path (plus query) of the Referer header, else `fallback`."""
    parsed = urlparse((request.referrer or '').strip())
    if not parsed.path and not parsed.netloc:
        return fallback
    if parsed.scheme not in ('', 'http', 'https') or parsed.netloc not in ('', request.host):
        return fallback
    if not parsed.path.startswith('/'):
        return fallback
    return f'{parsed.path}?{parsed.query}' if parsed.query else parsed.path


def hsts_header(config):
    parts = [f"max-age={max(0, int(config.get('HSTS_MAX_AGE', 31536000)))}"]
    if config.get('HSTS_INCLUDE_SUBDOMAINS', True):
        parts.append('includeSubDomains')
    if config.get('HSTS_PRELOAD', False):
        parts.append('preload')
    return '; '.join(parts)


def content_security_policy(nonce, secure=False):
    directives = [directive.format(nonce=nonce) for directive in CSP_DIRECTIVES]
    if secure:
        directives.append('upgrade-insecure-requests')
    return '; '.join(directives)


def apply_security_headers(response):
    """after_request hook shared by every blueprint."""
    config = current_app.config
    response.headers['X-Request-ID'] = getattr(g, 'request_id', '')
    for name, value in BASE_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.is_secure and config.get('HSTS_ENABLED', True):
        response.headers.setdefault('Strict-Transport-Security', hsts_header(config))
    if request.path.startswith('/admin'):
        response.headers.setdefault('X-Robots-Tag', ADMIN_ROBOTS_TAG)

    if request.path.startswith(LONG_CACHE_PREFIXES) and response.status_code in (200, 304):
        response.headers['Cache-Control'] = LONG_CACHE_CONTROL

    if response.mimetype == 'text/html':
        response.headers.update(NO_STORE_HEADERS)
        response.headers['Content-Security-Policy'] = content_security_policy(get_csp_nonce(), request.is_secure)
    return response
