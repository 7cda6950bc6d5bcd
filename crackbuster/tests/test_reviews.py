import json
import urllib.error
from datetime import datetime

import pytest

from crackbuster import reviews
from crackbuster.models import GoogleReview, GoogleReviewSettings, SYNC_STATUS_ERROR, SYNC_STATUS_SUCCESS, db
from crackbuster.reviews import ReviewSyncError, map_feed_reviews, sync_reviews

FEED_URL = "https://feeds.example.com/reviews.json"


class FakeResponse:
    def __init__(self, payload):
        self._body = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def feed(*items, place_id="place-1"):
    place = {"name": "CrackBuster", "placeId": place_id} if place_id else {"name": "CrackBuster"}
    return {"place": place, "reviews": list(items)}


def review(author, text, rating=5, iso_date="2024-03-01T10:00:00Z"):
    return {"author_name": author, "text": text, "rating": rating, "iso_date": iso_date}


def serve_feed(monkeypatch, payload):
    requested = []

    def fake_urlopen(req, timeout=None):
        requested.append((req.full_url, timeout))
        return FakeResponse(payload)

    monkeypatch.setattr(reviews, "urlopen", fake_urlopen)
    return requested


def configure_feed(app, url=FEED_URL, enabled=True):
    with app.app_context():
        settings = GoogleReviewSettings.get_settings()
        settings.reviews_feed_url = url
        settings.enabled = enabled
        db.session.commit()


def test_map_feed_reviews_builds_positional_ids():
    mapped, place_name = map_feed_reviews(feed(review("Ann", "Great"), review("Bob", "Fine", rating=4)))
    assert place_name == "CrackBuster"
    assert [item["review_id"] for item in mapped] == ["place-1-0", "place-1-1"]
    assert mapped[0]["review_time"] == datetime(2024, 3, 1, 10, 0)
    assert mapped[1]["rating"] == 4
    assert mapped[0]["original_data"]["place"]["placeId"] == "place-1"


def test_map_feed_reviews_defaults_and_clamps():
    mapped, _ = map_feed_reviews(
        feed(
            {"author_name": "", "rating": 0, "text": None},
            {"author_name": "Cy", "rating": 9, "time": 1700000000},
            {"author_name": "Di", "rating": "3", "images": ["https://x/1.jpg", 5]},
            place_id=None,
        )
    )
    assert mapped[0]["author_name"] == "Anonymous"
    assert mapped[0]["rating"] == 5
    assert mapped[0]["text"] == ""
    assert mapped[1]["rating"] == 5
    assert mapped[1]["review_time"] == datetime(2023, 11, 14, 22, 13, 20)
    assert mapped[2]["rating"] == 3
    assert mapped[2]["images"] == ["https://x/1.jpg"]
    assert all(item["review_id"].startswith("feed-") for item in mapped)


@pytest.mark.parametrize("payload", [[], "text", {"reviews": []}, {"place": {}}])
def test_map_feed_reviews_rejects_bad_payloads(payload):
    with pytest.raises(ReviewSyncError):
        map_feed_reviews(payload)


def test_map_feed_reviews_tolerates_wrong_field_types():
    mapped, place_name = map_feed_reviews(
        {
            "place": {"name": 7, "placeId": "p"},
            "reviews": [
                {"author_name": "A", "text": "hi", "images": "https://x/a.jpg"},
                {"author_name": 42, "text": ["not", "text"], "images": 5},
                {"author_name": {"first": "X"}, "text": 12.5, "images": None},
            ],
        }
    )
    assert place_name == "7"
    assert mapped[0]["images"] == []
    assert mapped[0]["author_name"] == "A"
    assert mapped[1]["author_name"] == "42"
    assert mapped[1]["text"] == ""
    assert mapped[1]["images"] == []
    assert mapped[2]["author_name"] == "Anonymous"
    assert mapped[2]["text"] == "12.5"


def test_map_feed_reviews_reads_epoch_seconds_and_milliseconds():
    mapped, _ = map_feed_reviews(
        feed(
            {"author_name": "Sec", "time": 1700000000},
            {"author_name": "Ms", "time": 1700000000000},
        )
    )
    assert mapped[0]["review_time"] == datetime(2023, 11, 14, 22, 13, 20)
    assert mapped[1]["review_time"] == datetime(2023, 11, 14, 22, 13, 20)


def test_sync_saves_then_updates_without_duplicates(app, monkeypatch):
    configure_feed(app)
    requested = serve_feed(monkeypatch, feed(review("Ann", "Great crack repair"), review("Bob", "Dry basement now")))

    with app.test_request_context("/"):
        first = sync_reviews()
        assert first["success"] is True
        assert first["message"] == "Synced: 2 new, 0 updated"
        assert (first["saved_count"], first["updated_count"], first["total_reviews"]) == (2, 0, 2)

        second = sync_reviews()
        assert second["message"] == "Synced: 0 new, 2 updated"
        assert GoogleReview.query.count() == 2

        settings = GoogleReviewSettings.get_settings()
        assert settings.sync_status == SYNC_STATUS_SUCCESS
        assert settings.last_synced is not None
        assert settings.last_sync_error == ""

    assert requested[0] == (FEED_URL, 15)


def test_sync_matches_by_author_and_text_when_ids_change(app, monkeypatch):
    configure_feed(app)
    serve_feed(monkeypatch, feed(review("Ann", "Great crack repair, very professional"), place_id=None))
    with app.test_request_context("/"):
        sync_reviews()
        original = GoogleReview.query.one()
        original.active = False
        db.session.commit()

    serve_feed(monkeypatch, feed(review("Ann", "Great crack repair, very professional", rating=4), place_id=None))
    with app.test_request_context("/"):
        result = sync_reviews()
        assert (result["saved_count"], result["updated_count"]) == (0, 1)
        stored = GoogleReview.query.one()
        assert stored.rating == 4
        assert stored.active is True


def test_sync_without_feed_url_records_error(app):
    with app.test_request_context("/"):
        with pytest.raises(ReviewSyncError):
            sync_reviews()
        settings = GoogleReviewSettings.get_settings()
        assert settings.sync_status == SYNC_STATUS_ERROR
        assert "feed URL" in settings.last_sync_error


def test_sync_http_failure_records_error_and_keeps_rows(app, monkeypatch):
    configure_feed(app)
    serve_feed(monkeypatch, feed(review("Ann", "Great")))
    with app.test_request_context("/"):
        sync_reviews()

    def failing_urlopen(req, timeout=None):
        raise urllib.error.HTTPError(req.full_url, 502, "Bad Gateway", hdrs=None, fp=None)

    monkeypatch.setattr(reviews, "urlopen", failing_urlopen)
    with app.test_request_context("/"):
        with pytest.raises(ReviewSyncError, match="HTTP 502"):
            sync_reviews()
        settings = GoogleReviewSettings.get_settings()
        assert settings.sync_status == SYNC_STATUS_ERROR
        assert settings.last_sync_error == "Failed to fetch reviews: HTTP 502"
        assert GoogleReview.query.count() == 1


def test_api_reviews_disabled(client):
    payload = client.get("/api/reviews").get_json()
    assert payload["enabled"] is False
    assert payload["reviews"] == []


def test_api_reviews_filters_and_sorts(client, app, monkeypatch):
    configure_feed(app)
    serve_feed(
        monkeypatch,
        feed(
            review("Ann", "Great", rating=5, iso_date="2024-01-01T00:00:00Z"),
            review("Bob", "", rating=4, iso_date="2024-02-01T00:00:00Z"),
            review("Cy", "Slow", rating=2, iso_date="2024-03-01T00:00:00Z"),
        ),
    )
    with app.test_request_context("/"):
        sync_reviews()

    newest = client.get("/api/reviews").get_json()
    assert [item["author_name"] for item in newest["reviews"]] == ["Cy", "Bob", "Ann"]
    assert newest["stats"] == {"average_rating": 3.67, "total_count": 3}

    filtered = client.get("/api/reviews?min_stars=4&hide_empty=1").get_json()
    assert [item["author_name"] for item in filtered["reviews"]] == ["Ann"]
    assert filtered["total"] == 1

    best = client.get("/api/reviews?sort_by=highest_rating&per_page=2&page=1").get_json()
    assert [item["author_name"] for item in best["reviews"]] == ["Ann", "Bob"]
    assert best["total"] == 3


def test_admin_sync_flashes_result(admin_client, app, monkeypatch, csrf_for):
    configure_feed(app)
    serve_feed(monkeypatch, feed(review("Ann", "Great")))

    token = csrf_for("/admin/reviews")
    response = admin_client.post("/admin/reviews/sync", data={"_csrf_token": token}, follow_redirects=True)
    assert response.status_code == 200
    assert "Synced: 1 new, 0 updated" in response.get_data(as_text=True)


def test_admin_sync_failure_is_flashed_not_500(admin_client, app, csrf_for):
    token = csrf_for("/admin/reviews")
    response = admin_client.post("/admin/reviews/sync", data={"_csrf_token": token}, follow_redirects=True)
    assert response.status_code == 200
    assert "Review sync failed" in response.get_data(as_text=True)


def test_admin_sync_with_malformed_feed_saves_cleaned_reviews(admin_client, app, monkeypatch, csrf_for):
    configure_feed(app)
    serve_feed(monkeypatch, feed({"author_name": 42, "text": "Solid work", "images": "https://x/a.jpg"}))

    token = csrf_for("/admin/reviews")
    response = admin_client.post("/admin/reviews/sync", data={"_csrf_token": token}, follow_redirects=True)
    assert response.status_code == 200
    assert "Synced: 1 new, 0 updated" in response.get_data(as_text=True)
    with app.app_context():
        saved = GoogleReview.query.one()
        assert saved.author_name == "42"
        assert saved.images == []


def test_unexpected_sync_failure_becomes_review_sync_error(app, monkeypatch):
    configure_feed(app)
    serve_feed(monkeypatch, feed(review("Ann", "Great")))

    def broken_reconcile(items):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(reviews, "reconcile_reviews", broken_reconcile)
    with app.test_request_context("/"):
        with pytest.raises(ReviewSyncError, match="database unavailable"):
            sync_reviews()
        settings = GoogleReviewSettings.get_settings()
        assert settings.sync_status == SYNC_STATUS_ERROR
        assert settings.last_sync_error == "database unavailable"


def test_admin_toggle_hides_review(admin_client, app, monkeypatch, csrf_for):
    configure_feed(app)
    serve_feed(monkeypatch, feed(review("Ann", "Great")))
    with app.test_request_context("/"):
        sync_reviews()
        review_id = GoogleReview.query.one().id

    token = csrf_for("/admin/reviews")
    response = admin_client.post(f"/admin/reviews/{review_id}/toggle", data={"_csrf_token": token})
    assert response.status_code in (302, 303)
    with app.app_context():
        assert db.session.get(GoogleReview, review_id).active is False
    assert client_reviews(admin_client) == []


def client_reviews(client):
    return client.get("/api/reviews").get_json()["reviews"]
