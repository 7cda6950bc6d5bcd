"""Answer requests for permanently removed pages with 410 Gone.

Admins register removed paths as ``RemovedUrl`` rows. Every inbound page
request is checked against them before routing: a stored ``/old-page``
also covers ``/old-page/anything``. API, admin and static asset requests are
never checked. A failing lookup must not take the site down, so errors are
logged and the request continues as if nothing was removed.
"""
from flask import current_app, jsonify, request
from markupsafe import escape

from .models import RemovedUrl, db, isoformat_or_none, normalize_url_path

BYPASS_PREFIXES = ('/api/', '/admin/')
STATIC_EXTENSIONS = (
    '.js', '.css', '.png', '.jpg', '.jpeg', '.gif', '.svg', '.ico', '.woff',
    '.woff2', '.eot', '.ttf', '.otf', '.mp4', '.webp', '.json', '.xml', '.txt',
)
GONE_MESSAGE = 'This resource has been permanently removed.'
GONE_HTML = """<!DOCTYPE html>
<html>
  <head>
    <title>410 Gone</title>
    <meta charset="utf-8">
    <meta name="robots" content="noindex, nofollow">
  </head>
  <body>
    <h1>410 Gone</h1>
    <p>{message}</p>
    <p>The requested URL <code>{path}</code> is no longer available.</p>
  </body>
</html>
"""


def should_bypass(path):
    path = path or ''
    if path.startswith(BYPASS_PREFIXES):
        return True
    return path.lower().endswith(STATIC_EXTENSIONS)


def find_removed_url(path):
    """Return the RemovedUrl covering `path`, or None.

    An exact match wins; otherwise records are scanned in insertion order and
    the first one whose url is a segment prefix of the path is returned.
    """
    if not path:
        return None
    normalized = normalize_url_path(path)
    exact = RemovedUrl.query.filter_by(url=normalized).first()
    if exact:
        return exact
    for record in RemovedUrl.query.order_by(RemovedUrl.id.asc()).all():
        if record.covers(normalized):
            return record
    return None


def client_prefers_json():
    best = request.accept_mimetypes.best_match(
        ['application/json', 'text/html'],
        default='application/json',
    )
    if best == 'application/json':
        return True
    return 'application/json' in (request.headers.get('Accept') or '')


def gone_response(record):
    if client_prefers_json():
        response = jsonify({
            'error': 'Gone',
            'message': GONE_MESSAGE,
            'url': request.path,
            'removedAt': isoformat_or_none(record.removed_at or record.created_at),
        })
        response.status_code = 410
        return response
    body = GONE_HTML.format(message=GONE_MESSAGE, path=escape(request.path))
    return current_app.response_class(body, status=410, mimetype='text/html')


def check_removed_url():
    if should_bypass(request.path):
        return None
    try:
        record = find_removed_url(request.path)
    except Exception:
        db.session.rollback()
        current_app.logger.exception('Removed URL lookup failed; continuing with normal routing.')
        return None
    if record is None:
        return None
    current_app.logger.info(f'Serving 410 for removed URL {record.url} (path={request.path})')
    return gone_response(record)


def init_removed_url_guard(app):
    app.before_request(check_removed_url)
