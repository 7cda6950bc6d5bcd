"""Small helpers shared by the public, API and admin blueprints."""
import ipaddress
import re
from datetime import timedelta

from flask import current_app, request

from .models import AuthRateLimitBucket, db, utc_now_naive

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
HTTP_SCHEMES = ('http://', 'https://')
_LIKE_SPECIALS = str.maketrans({'\\': '\\\\', '%': '\\%', '_': '\\_'})


def clean_text(value, max_length=255):
    return (value or '').strip()[:max_length]


def escape_like(value):
    """Escape LIKE wildcards; pair with ``escape='\\\\'`` in the query."""
    return (value or '').translate(_LIKE_SPECIALS)


def is_valid_email(value):
    return EMAIL_RE.match(value or '') is not None


def is_valid_url(value):
    """Empty is allowed; anything else must be an absolute http(s) URL."""
    return not value or value.startswith(HTTP_SCHEMES)


def parse_int(value, default=0, min_value=None, max_value=None):
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if min_value is not None:
        number = max(number, min_value)
    if max_value is not None:
        number = min(number, max_value)
    return number


def client_ip():
    # remote_addr already reflects X-Forwarded-For when ProxyFix is installed.
    first = (request.remote_addr or '').split(',', 1)[0].strip()
    try:
        return str(ipaddress.ip_address(first))
    except ValueError:
        return 'unknown'


def absolute_public_url(path):
    if path.startswith(HTTP_SCHEMES):
        return path
    base = (current_app.config.get('APP_BASE_URL') or '').strip()
    if not base.startswith(HTTP_SCHEMES):
        base = request.url_root
    return base.rstrip('/') + '/' + path.lstrip('/')


def _current_bucket(scope, window_seconds):
    """Load (or open) this client's bucket, restarting it once its window has passed."""
    now = utc_now_naive()
    window = timedelta(seconds=window_seconds)
    bucket = AuthRateLimitBucket.query.filter_by(scope=scope, ip=client_ip()).first()
    if bucket is None:
        bucket = AuthRateLimitBucket(scope=scope, ip=client_ip(), count=0, reset_at=now + window)
        db.session.add(bucket)
        db.session.commit()
    elif bucket.reset_at <= now:
        bucket.count = 0
        bucket.reset_at = now + window
        db.session.commit()
    return bucket


def is_rate_limited(scope, limit, window_seconds):
    """Return ``(limited, retry_after_seconds)`` for the requesting client."""
    bucket = _current_bucket(scope, window_seconds)
    if bucket.count < limit:
        return False, 0
    remaining = (bucket.reset_at - utc_now_naive()).total_seconds()
    return True, max(1, int(remaining))


def register_rate_limited_attempt(scope, window_seconds):
    bucket = _current_bucket(scope, window_seconds)
    bucket.count += 1
    db.session.commit()
    return bucket.count


def clear_rate_limit(scope):
    deleted = AuthRateLimitBucket.query.filter_by(scope=scope, ip=client_ip()).delete()
    if deleted:
        db.session.commit()
