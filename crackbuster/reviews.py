"""Google reviews: import from a JSON feed and reconcile with stored rows.

The feed is a JSON object ``{"place": {...}, "reviews": [...]}`` produced by
an external scraper. A feed review matches a stored one by ``review_id``, or
by author name plus the opening of its text, since feed ids are positional
and shift when new reviews arrive.
"""
import json
import time
import urllib.error
from datetime import datetime, timezone
from urllib.request import Request, urlopen

from flask import current_app
from sqlalchemy import func, or_

from .models import (
    GoogleReview,
    GoogleReviewSettings,
    SYNC_STATUS_ERROR,
    SYNC_STATUS_SUCCESS,
    SYNC_STATUS_SYNCING,
    db,
    utc_now_naive,
)
from .utils import escape_like

TEXT_MATCH_LENGTH = 80
# Epoch values above this are milliseconds (year 5138 in seconds).
EPOCH_MS_THRESHOLD = 10 ** 11
REVIEW_SORT_KEYS = ('newest_first', 'oldest_first', 'highest_rating', 'lowest_rating')


class ReviewSyncError(Exception):
    pass


def _parse_review_time(raw):
    iso_date = raw.get('iso_date')
    if iso_date:
        try:
            parsed = datetime.fromisoformat(str(iso_date).replace('Z', '+00:00'))
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
    epoch = raw.get('time')
    if epoch:
        try:
            seconds = float(epoch)
            if abs(seconds) >= EPOCH_MS_THRESHOLD:
                seconds /= 1000
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (TypeError, ValueError, OverflowError, OSError):
            pass
    return utc_now_naive()


def _parse_rating(value):
    if isinstance(value, bool):
        return 5
    if isinstance(value, (int, float)):
        rating = int(value)
    else:
        try:
            rating = int(str(value).strip())
        except (TypeError, ValueError):
            rating = 0
    if rating == 0:
        return 5
    return max(1, min(5, rating))


def _as_text(value):
    if value is None:
        return ''
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ''


def _image_urls(value):
    if not isinstance(value, list):
        return []
    return [url.strip() for url in value if isinstance(url, str) and url.strip()]


def map_feed_reviews(payload):
    """Map a feed payload to ``(reviews, place_name)`` ready for reconciliation."""
    if not isinstance(payload, dict):
        raise ReviewSyncError('Invalid response: expected JSON object.')
    raw_reviews = payload.get('reviews') if isinstance(payload.get('reviews'), list) else []
    place = payload.get('place') if isinstance(payload.get('place'), dict) else {}
    if not raw_reviews:
        raise ReviewSyncError('No reviews in feed. Expected JSON with "reviews" array.')

    place_id = (place.get('placeId') or '').strip() if isinstance(place.get('placeId'), str) else ''
    fetched_ms = int(time.time() * 1000)
    mapped = []
    for index, raw in enumerate(raw_reviews):
        if not isinstance(raw, dict):
            continue
        review_id = f'{place_id}-{index}' if place_id else f'feed-{index}-{fetched_ms}'
        original = dict(raw)
        original['place'] = place
        mapped.append({
            'review_id': review_id,
            'author_name': _as_text(raw.get('author_name'))[:200] or 'Anonymous',
            'author_photo': '',
            'author_url': '',
            'rating': _parse_rating(raw.get('rating')),
            'text': _as_text(raw.get('text')),
            'review_time': _parse_review_time(raw),
            'images': _image_urls(raw.get('images')),
            'original_data': original,
        })
    return mapped, _as_text(place.get('name'))


def import_from_feed_url(feed_url):
    url = (feed_url or '').strip() if isinstance(feed_url, str) else ''
    if not url:
        raise ReviewSyncError('Reviews feed URL is required.')
    if not (url.startswith('https://') or url.startswith('http://')):
        raise ReviewSyncError('Reviews feed URL must start with http:// or https://.')

    timeout = int(current_app.config.get('REVIEWS_FEED_TIMEOUT_SECONDS') or 15)
    req = Request(url, headers={'Accept': 'application/json'})
    try:
        with urlopen(req, timeout=timeout) as response:  # nosec B310
            payload = json.loads(response.read().decode('utf-8'))
    except urllib.error.HTTPError as exc:
        raise ReviewSyncError(f'Failed to fetch reviews: HTTP {exc.code}') from exc
    except (urllib.error.URLError, OSError) as exc:
        raise ReviewSyncError(f'Failed to fetch reviews: {exc}') from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ReviewSyncError('Invalid response: expected JSON object.') from exc
    return map_feed_reviews(payload)


def find_matching_review(review_data):
    conditions = [GoogleReview.review_id == review_data['review_id']]
    snippet = (review_data.get('text') or '')[:TEXT_MATCH_LENGTH]
    if snippet:
        conditions.append(db.and_(
            GoogleReview.author_name == review_data['author_name'],
            func.lower(GoogleReview.text).like(f'%{escape_like(snippet.lower())}%', escape='\\'),
        ))
    return GoogleReview.query.filter(or_(*conditions)).order_by(GoogleReview.id.asc()).first()


def reconcile_reviews(reviews):
    """Upsert mapped feed reviews; returns ``(saved_count, updated_count)``."""
    saved_count = 0
    updated_count = 0
    now = utc_now_naive()
    for review_data in reviews:
        existing = find_matching_review(review_data)
        if existing:
            for key, value in review_data.items():
                setattr(existing, key, value)
            existing.last_synced = now
            existing.active = True
            updated_count += 1
        else:
            db.session.add(GoogleReview(last_synced=now, active=True, **review_data))
            saved_count += 1
        db.session.flush()
    return saved_count, updated_count


def _mark_sync_error(message):
    db.session.rollback()
    settings = GoogleReviewSettings.get_settings()
    settings.sync_status = SYNC_STATUS_ERROR
    settings.last_sync_error = message
    db.session.commit()


def sync_reviews():
    current_app.logger.info('Google reviews sync starting.')
    settings = GoogleReviewSettings.get_settings()
    feed_url = (settings.reviews_feed_url or '').strip()
    if not feed_url:
        message = 'Please set the reviews feed URL in the review settings.'
        _mark_sync_error(message)
        raise ReviewSyncError(message)

    settings.sync_status = SYNC_STATUS_SYNCING
    settings.last_sync_error = ''
    db.session.commit()

    try:
        reviews, _place_name = import_from_feed_url(feed_url)
        saved_count, updated_count = reconcile_reviews(reviews)
        settings.sync_status = SYNC_STATUS_SUCCESS
        settings.last_synced = utc_now_naive()
        settings.last_sync_error = ''
        db.session.commit()
    except Exception as exc:
        current_app.logger.exception('Google reviews sync failed.')
        message = str(exc) or exc.__class__.__name__
        _mark_sync_error(message)
        if isinstance(exc, ReviewSyncError):
            raise
        raise ReviewSyncError(message) from exc

    current_app.logger.info(f'Google reviews sync finished: {saved_count} new, {updated_count} updated.')
    return {
        'success': True,
        'message': f'Synced: {saved_count} new, {updated_count} updated',
        'saved_count': saved_count,
        'updated_count': updated_count,
        'total_reviews': len(reviews),
    }


def _filtered_query(min_stars=None, max_stars=None, hide_empty=False):
    query = GoogleReview.query.filter(GoogleReview.active.is_(True))
    if min_stars is not None and min_stars >= 1:
        query = query.filter(GoogleReview.rating >= min_stars)
    if max_stars is not None and max_stars <= 5:
        query = query.filter(GoogleReview.rating <= max_stars)
    if hide_empty:
        query = query.filter(func.length(func.trim(GoogleReview.text)) > 0)
    return query


def _ordering(sort_by):
    if sort_by == 'oldest_first':
        return (GoogleReview.review_time.asc(),)
    if sort_by == 'highest_rating':
        return (GoogleReview.rating.desc(), GoogleReview.review_time.desc())
    if sort_by == 'lowest_rating':
        return (GoogleReview.rating.asc(), GoogleReview.review_time.desc())
    return (GoogleReview.review_time.desc(),)


def active_reviews(limit=5):
    return (
        GoogleReview.query.filter(GoogleReview.active.is_(True))
        .order_by(GoogleReview.review_time.desc())
        .limit(limit)
        .all()
    )


def paginated_reviews(page=1, per_page=9, min_stars=None, max_stars=None, hide_empty=False, sort_by='newest_first'):
    query = _filtered_query(min_stars, max_stars, hide_empty)
    total_count = query.count()
    page = max(1, page)
    reviews = (
        query.order_by(*_ordering(sort_by))
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return reviews, total_count


def review_stats(min_stars=None, max_stars=None, hide_empty=False):
    query = _filtered_query(min_stars, max_stars, hide_empty)
    average, count = query.with_entities(func.avg(GoogleReview.rating), func.count(GoogleReview.id)).one()
    if not count:
        return {'average_rating': 0, 'total_count': 0}
    return {'average_rating': round(float(average), 2), 'total_count': int(count)}
