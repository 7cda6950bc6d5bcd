import uuid

import pytest

from crackbuster.models import (
    BlogPost,
    ContactRequest,
    REQUEST_TYPE_CONTACT,
    REQUEST_TYPE_ESTIMATE,
    SeoPage,
    Service,
    SiteSettings,
    Work,
    db,
)


@pytest.mark.parametrize(
    "path",
    ["/", "/about-us", "/services", "/blog", "/our-works", "/contact-us", "/get-estimate"],
)
def test_public_pages_render(client, path):
    response = client.get(path)
    assert response.status_code == 200
    assert response.mimetype == "text/html"
    html = response.get_data(as_text=True)
    assert html.lstrip().startswith("<!DOCTYPE html>")
    assert "</html>" in html


def test_about_page_renders_template_body(client):
    html = client.get("/about-us").get_data(as_text=True)
    assert "<title>About Us</title>" in html
    assert "<h1>About CrackBuster</h1>" in html


def test_routes_pass_through_request_hooks(client):
    # Hooks that return a value would short-circuit every view.
    assert client.get("/healthz").get_json() == {"status": "ok"}
    assert "sitemaps.org" in client.get("/sitemap.xml").get_data(as_text=True)
    assert "Disallow: /admin/" in client.get("/robots.txt").get_data(as_text=True)
    assert "services" in client.get("/api/services").get_json()


def test_public_pages_and_security_headers(client):
    response = client.get("/")
    csp = response.headers.get("Content-Security-Policy", "")
    assert "script-src 'self' 'nonce-" in csp
    assert "'unsafe-inline'" not in csp
    assert response.headers.get("X-Frame-Options") == "DENY"
    assert response.headers.get("X-Content-Type-Options") == "nosniff"
    assert response.headers.get("X-Request-ID")
    assert "no-store" in response.headers.get("Cache-Control", "")

    admin_login_page = client.get("/admin/login")
    assert admin_login_page.status_code == 200
    assert admin_login_page.headers.get("X-Robots-Tag") == "noindex, nofollow, noarchive"


def test_hsts_header_on_https_requests(client):
    response = client.get("/", base_url="https://example.com")
    assert response.status_code == 200
    assert response.headers.get("Strict-Transport-Security") == "max-age=31536000; includeSubDomains"


def test_health_and_readiness(client):
    assert client.get("/healthz").get_json()["status"] == "ok"
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.get_json()["checks"]["admin_user_seeded"] is True


def test_home_page_uses_seeded_seo(client):
    html = client.get("/").get_data(as_text=True)
    assert "<title>Foundation Crack Repair in Edmonton | CrackBuster</title>" in html
    assert 'property="og:title"' in html


def test_disabling_indexing_forces_noindex(client, app):
    with app.app_context():
        SiteSettings.get_settings().allow_indexing = False
        db.session.commit()

    html = client.get("/").get_data(as_text=True)
    assert '<meta name="robots" content="noindex, nofollow">' in html

    robots = client.get("/robots.txt").get_data(as_text=True)
    assert "Disallow: /\n" in robots
    assert "Allow: /" not in robots


def test_robots_txt_allows_indexing_by_default(client):
    response = client.get("/robots.txt")
    assert response.mimetype == "text/plain"
    body = response.get_data(as_text=True)
    assert "Allow: /" in body
    assert "Disallow: /admin/" in body
    assert "Sitemap: http://localhost/sitemap.xml" in body


def test_service_detail_and_unknown_slug(client, app):
    with app.app_context():
        slug = Service.query.first().slug

    response = client.get(f"/services/{slug}")
    assert response.status_code == 200
    assert "Frequently Asked Questions" in response.get_data(as_text=True)
    assert client.get("/services/no-such-service").status_code == 404


def test_blog_post_page_and_unpublished_post(client, app):
    with app.app_context():
        post = BlogPost.query.first()
        published_slug = post.slug
        db.session.add(BlogPost(title="Draft", slug="draft", excerpt="x", content="<p>x</p>", published=False))
        db.session.commit()

    assert client.get(f"/blog/{published_slug}").status_code == 200
    assert client.get("/blog/draft").status_code == 404


def test_service_content_images_are_resolved_on_render(client, app, images_root, make_image):
    make_image(images_root / "services" / "foundation-crack-repair.webp")
    with app.app_context():
        service = Service.query.filter_by(slug="foundation-crack-repair").one()
        assert 'src="/images/services/foundation-crack-repair.jpg"' in service.content

    html = client.get("/services/foundation-crack-repair").get_data(as_text=True)
    assert 'src="/images/services/foundation-crack-repair.webp"' in html
    assert "foundation-crack-repair.jpg" not in html


def test_works_page_hides_missing_gallery_images(client, app, images_root, make_image):
    make_image(images_root / "jobs" / "7" / "before.webp")
    with app.app_context():
        db.session.add(Work(
            title="Project 7",
            description="<p>Done</p>",
            images=["/images/jobs/7/before.jpg", "/images/jobs/7/missing.jpg"],
        ))
        db.session.commit()

    html = client.get("/our-works").get_data(as_text=True)
    assert 'src="/images/jobs/7/before.webp"' in html
    assert "missing.jpg" not in html


def test_contact_post_requires_csrf(client, app):
    response = client.post(
        "/contact-us",
        data={"name": "No Token", "email": "notoken@example.com", "message": "Should fail"},
        follow_redirects=False,
    )
    assert response.status_code in (302, 400)
    with app.app_context():
        assert ContactRequest.query.count() == 0


def test_csrf_failure_redirect_rejects_external_referrer(client):
    response = client.post(
        "/contact-us",
        data={"name": "No Token", "email": "notoken@example.com", "message": "Should fail", "_csrf_token": "bad"},
        headers={"Referer": "https://evil.example/phish"},
        follow_redirects=False,
    )
    assert response.status_code in (302, 303)
    location = response.headers.get("Location") or ""
    assert location.startswith("/")
    assert "evil.example" not in location


def test_contact_post_with_csrf_succeeds(client, app, csrf_for):
    email = f"contact-{uuid.uuid4().hex[:8]}@example.com"
    token = csrf_for("/contact-us")
    response = client.post(
        "/contact-us",
        data={
            "_csrf_token": token,
            "name": "Jane Homeowner",
            "email": email,
            "phone": "780-555-0100",
            "message": "There is a crack in my basement wall.",
        },
        follow_redirects=True,
    )
    assert response.status_code == 200
    assert "Thank you for your message!" in response.get_data(as_text=True)
    with app.app_context():
        saved = ContactRequest.query.filter_by(email=email).one()
        assert saved.request_type == REQUEST_TYPE_CONTACT
        assert saved.status == "new"


def test_contact_post_validation(client, app, csrf_for):
    token = csrf_for("/contact-us")
    missing = client.post("/contact-us", data={"_csrf_token": token, "name": "Jane", "email": "jane@example.com"})
    assert missing.status_code == 400
    bad_email = client.post(
        "/contact-us",
        data={"_csrf_token": token, "name": "Jane", "email": "not-an-email", "message": "Hi"},
    )
    assert bad_email.status_code == 400
    with app.app_context():
        assert ContactRequest.query.count() == 0


def test_contact_form_rate_limit_blocks_second_submission(client, app, csrf_for):
    app.config.update({"CONTACT_FORM_LIMIT": 1, "CONTACT_FORM_WINDOW_SECONDS": 3600})
    token = csrf_for("/contact-us")
    data = {"_csrf_token": token, "name": "Jane", "email": "jane@example.com", "message": "First"}

    assert client.post("/contact-us", data=data).status_code in (302, 303)
    blocked = client.post("/contact-us", data=dict(data, message="Second"))
    assert blocked.status_code == 429
    with app.app_context():
        assert ContactRequest.query.count() == 1


def estimate_data(token, **overrides):
    data = {
        "_csrf_token": token,
        "name": "Sam Owner",
        "email": "sam@example.com",
        "phone": "780-555-0199",
        "address": "123 Main St, Edmonton",
        "description": "Water seeping through a vertical crack.",
    }
    data.update(overrides)
    return data


def test_estimate_saves_request_and_images(client, app, images_root, csrf_for, upload_file):
    token = csrf_for("/get-estimate")
    data = estimate_data(token)
    data["images"] = [upload_file("crack-1.png"), upload_file("crack-2.jpg", fmt="JPEG")]

    response = client.post("/get-estimate", data=data, content_type="multipart/form-data", follow_redirects=True)
    assert response.status_code == 200
    assert "Estimate request received!" in response.get_data(as_text=True)

    with app.app_context():
        saved = ContactRequest.query.one()
        assert saved.request_type == REQUEST_TYPE_ESTIMATE
        assert saved.message == data["description"]
        assert len(saved.images) == 2
        for image_path in saved.images:
            assert image_path.startswith("/images/estimate-requests/sam-owner-")
            assert (images_root / image_path[len("/images/"):]).is_file()


def test_estimate_requires_at_least_one_image(client, app, csrf_for):
    token = csrf_for("/get-estimate")
    response = client.post("/get-estimate", data=estimate_data(token), content_type="multipart/form-data")
    assert response.status_code == 400
    assert "At least one image is required" in response.get_data(as_text=True)
    with app.app_context():
        assert ContactRequest.query.count() == 0


def test_estimate_rejects_too_many_images(client, app, csrf_for, upload_file):
    app.config["MAX_ESTIMATE_IMAGES"] = 1
    token = csrf_for("/get-estimate")
    data = estimate_data(token)
    data["images"] = [upload_file("a.png"), upload_file("b.png")]
    response = client.post("/get-estimate", data=data, content_type="multipart/form-data")
    assert response.status_code == 400
    with app.app_context():
        assert ContactRequest.query.count() == 0


def test_estimate_rejects_non_image_upload_and_cleans_up(client, app, images_root, csrf_for, upload_file):
    import io

    token = csrf_for("/get-estimate")
    data = estimate_data(token)
    data["images"] = [upload_file("good.png"), (io.BytesIO(b"MZ not an image"), "evil.png")]
    response = client.post("/get-estimate", data=data, content_type="multipart/form-data")
    assert response.status_code == 400

    with app.app_context():
        assert ContactRequest.query.count() == 0
    upload_dir = images_root / "estimate-requests"
    assert not upload_dir.exists() or not any(upload_dir.iterdir())


def test_estimate_requires_all_fields(client, csrf_for, upload_file):
    token = csrf_for("/get-estimate")
    data = estimate_data(token, address="")
    data["images"] = [upload_file()]
    response = client.post("/get-estimate", data=data, content_type="multipart/form-data")
    assert response.status_code == 400


def test_sitemap_lists_static_and_dynamic_pages(client, app):
    with app.app_context():
        service_slug = Service.query.first().slug
        post_slug = BlogPost.query.first().slug

    response = client.get("/sitemap.xml")
    assert response.status_code == 200
    assert response.mimetype == "application/xml"
    body = response.get_data(as_text=True)
    assert "<loc>http://localhost/</loc>" in body
    assert f"<loc>http://localhost/services/{service_slug}</loc>" in body
    assert f"<loc>http://localhost/blog/{post_slug}</loc>" in body
    assert "/admin" not in body
    assert body.index("<priority>1.0</priority>") < body.index("<priority>0.7</priority>")


def test_sitemap_uses_configured_base_url(make_app):
    configured = make_app({"APP_BASE_URL": "https://crackbuster.ca"})
    body = configured.test_client().get("/sitemap.xml").get_data(as_text=True)
    assert "<loc>https://crackbuster.ca/about-us</loc>" in body


def test_api_blog_and_services(client, app):
    posts = client.get("/api/blog").get_json()["posts"]
    assert posts and {"title", "slug", "excerpt", "featured_image", "published_at"} <= set(posts[0])

    detail = client.get(f"/api/blog/{posts[0]['slug']}").get_json()["post"]
    assert "content" in detail and "meta_title" in detail
    assert client.get("/api/blog/missing").get_json() == {"error": "Post not found"}

    services = client.get("/api/services").get_json()["services"]
    service = client.get(f"/api/services/{services[0]['slug']}").get_json()["service"]
    assert isinstance(service["faq"], list)
    missing = client.get("/api/services/missing")
    assert missing.status_code == 404
    assert missing.get_json() == {"error": "Service not found"}


def test_api_works_settings_and_seo(client, app, images_root, make_image):
    make_image(images_root / "jobs" / "1" / "after.webp")
    with app.app_context():
        service = Service.query.first()
        db.session.add(Work(
            title="Project 1",
            description="<p>Done</p>",
            images=["/images/jobs/1/after.jpg", "/images/jobs/1/gone.jpg"],
            service_id=service.id,
            featured=True,
        ))
        db.session.commit()
        service_slug = service.slug

    works = client.get("/api/works").get_json()["works"]
    assert works[0]["images"] == ["/images/jobs/1/after.webp"]
    assert works[0]["service"]["slug"] == service_slug

    settings = client.get("/api/settings").get_json()["settings"]
    assert settings["allow_indexing"] is True
    assert "phone" in settings

    seo = client.get("/api/seo").get_json()["seo"]
    assert {row["page"] for row in seo} >= {"home", "blog"}
    home = client.get("/api/seo/home")
    assert home.get_json()["seo"]["page"] == "home"
    assert home.headers.get("Cache-Control") == "no-cache"
    assert client.get("/api/seo/unknown").status_code == 404


def test_api_unknown_endpoint_returns_json_404(client):
    response = client.get("/api/does-not-exist")
    assert response.status_code == 404
    assert response.get_json() == {"error": "API endpoint not found", "path": "/api/does-not-exist"}


def test_seo_page_rows_are_seeded(app):
    with app.app_context():
        assert SeoPage.query.filter_by(page="home").one().title
