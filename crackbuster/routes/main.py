from html import escape as xml_escape

from flask import Blueprint, abort, current_app, flash, redirect, render_template, request, send_from_directory, url_for

from ..images import IMAGES_URL_PREFIX, existing_images, find_existing_image, resolve_image_path
from ..models import (
    BlogPost,
    ContactRequest,
    GoogleReviewSettings,
    REQUEST_TYPE_CONTACT,
    REQUEST_TYPE_ESTIMATE,
    Service,
    Work,
    db,
    utc_now_naive,
)
from ..notifications import send_contact_notification, send_estimate_notification
from ..reviews import active_reviews, review_stats
from ..site_context import get_site_context, record_meta
from ..uploads import UploadError, remove_image_files, save_image_upload
from ..utils import (
    absolute_public_url,
    clean_text,
    is_rate_limited,
    is_valid_email,
    register_rate_limited_attempt,
)

main_bp = Blueprint('main', __name__)

CONTACT_FORM_SCOPE = 'contact_form'
ESTIMATE_FORM_SCOPE = 'estimate_form'
BLOG_PAGE_SIZE = 9
STATIC_SITEMAP_ROUTES = (
    ('main.index', 'daily', '1.0'),
    ('main.about', 'monthly', '0.8'),
    ('main.services', 'weekly', '0.9'),
    ('main.blog', 'weekly', '0.8'),
    ('main.our_works', 'weekly', '0.7'),
    ('main.get_estimate', 'monthly', '0.8'),
    ('main.contact', 'monthly', '0.7'),
)


def resolve_works(works):
    """Pair each work with its gallery resolved against the image tree."""
    images_root = current_app.config['IMAGES_FOLDER']
    return [(work, existing_images(work.images, images_root)) for work in works]


def works_query():
    return Work.query.order_by(Work.featured.desc(), Work.completed_at.desc(), Work.id.desc())


def homepage_reviews():
    settings = GoogleReviewSettings.get_settings()
    if not settings.enabled:
        return [], None
    return active_reviews(limit=settings.display_count or 5), review_stats()


def format_sitemap_lastmod(dt_value):
    if not dt_value:
        return None
    return dt_value.strftime('%Y-%m-%d')


def build_sitemap_entry(path, lastmod=None, changefreq='weekly', priority='0.6'):
    return {
        'loc': absolute_public_url(path),
        'lastmod': format_sitemap_lastmod(lastmod),
        'changefreq': changefreq,
        'priority': priority,
    }


def render_sitemap_entry(entry):
    lines = [
        '  <url>',
        f"    <loc>{xml_escape(entry['loc'])}</loc>",
    ]
    if entry['lastmod']:
        lines.append(f"    <lastmod>{entry['lastmod']}</lastmod>")
    if entry['changefreq']:
        lines.append(f"    <changefreq>{entry['changefreq']}</changefreq>")
    if entry['priority']:
        lines.append(f"    <priority>{entry['priority']}</priority>")
    lines.append('  </url>')
    return '\n'.join(lines)


@main_bp.route('/')
def index():
    site = get_site_context()
    services = Service.query.order_by(Service.featured.desc(), Service.created_at.desc()).limit(6).all()
    posts = BlogPost.query.filter_by(published=True).order_by(BlogPost.published_at.desc()).limit(3).all()
    works = resolve_works(works_query().limit(6).all())
    reviews, stats = homepage_reviews()
    return render_template(
        'index.html',
        meta=site.meta('home'),
        services=services,
        posts=posts,
        works=works,
        reviews=reviews,
        review_stats=stats,
    )


@main_bp.route('/about-us')
def about():
    site = get_site_context()
    return render_template('about.html', meta=site.meta('about-us', title='About Us'))


@main_bp.route('/services')
def services():
    site = get_site_context()
    items = Service.query.order_by(Service.featured.desc(), Service.created_at.desc()).all()
    return render_template('services.html', meta=site.meta('services', title='Services'), services=items)


@main_bp.route('/services/<slug>')
def service_detail(slug):
    service = Service.query.filter_by(slug=slug).first_or_404()
    site = get_site_context()
    image = resolve_image_path(service.image, current_app.config['IMAGES_FOLDER'])
    works = resolve_works(works_query().filter(Work.service_id == service.id).limit(6).all())
    return render_template(
        'service_detail.html',
        meta=record_meta(site, 'service-detail', service, service.title, service.description, image),
        service=service,
        works=works,
    )


@main_bp.route('/blog')
def blog():
    site = get_site_context()
    page = request.args.get('page', 1, type=int)
    page = max(1, min(page, 1000))
    posts = BlogPost.query.filter_by(published=True)\
        .order_by(BlogPost.published_at.desc(), BlogPost.id.desc())\
        .paginate(page=page, per_page=BLOG_PAGE_SIZE, error_out=False)
    return render_template('blog.html', meta=site.meta('blog', title='Blog'), posts=posts)


@main_bp.route('/blog/<slug>')
def post(slug):
    item = BlogPost.query.filter_by(slug=slug, published=True).first_or_404()
    site = get_site_context()
    image = resolve_image_path(item.featured_image, current_app.config['IMAGES_FOLDER'])
    recent_posts = BlogPost.query.filter_by(published=True).filter(BlogPost.id != item.id)\
        .order_by(BlogPost.published_at.desc()).limit(3).all()
    return render_template(
        'post.html',
        meta=record_meta(site, 'blog-post', item, item.title, item.excerpt, image),
        post=item,
        recent_posts=recent_posts,
    )


@main_bp.route('/our-works')
def our_works():
    site = get_site_context()
    works = resolve_works(works_query().all())
    return render_template('works.html', meta=site.meta('our-works', title='Our Works'), works=works)


@main_bp.route('/contact-us', methods=['GET', 'POST'])
def contact():
    site = get_site_context()
    meta = site.meta('contact-us', title='Contact Us')
    if request.method == 'GET':
        return render_template('contact.html', meta=meta, form={})

    limited, seconds = is_rate_limited(
        CONTACT_FORM_SCOPE,
        current_app.config.get('CONTACT_FORM_LIMIT', 12),
        current_app.config.get('CONTACT_FORM_WINDOW_SECONDS', 3600),
    )
    if limited:
        current_app.logger.warning('Contact form rate limited.')
        flash(f'Too many contact submissions from this IP. Please wait {seconds} seconds and try again.', 'danger')
        return render_template('contact.html', meta=meta, form={}), 429
    register_rate_limited_attempt(CONTACT_FORM_SCOPE, current_app.config.get('CONTACT_FORM_WINDOW_SECONDS', 3600))

    form = {
        'name': clean_text(request.form.get('name', ''), 200),
        'email': clean_text(request.form.get('email', ''), 200),
        'phone': clean_text(request.form.get('phone', ''), 80),
        'message': clean_text(request.form.get('message', ''), 5000),
    }
    if not form['name'] or not form['email'] or not form['message']:
        flash('Name, email, and message are required.', 'danger')
        return render_template('contact.html', meta=meta, form=form), 400
    if not is_valid_email(form['email']):
        flash('Please provide a valid email address.', 'danger')
        return render_template('contact.html', meta=meta, form=form), 400

    submission = ContactRequest(request_type=REQUEST_TYPE_CONTACT, **form)
    db.session.add(submission)
    db.session.commit()
    current_app.logger.info(f'Contact request saved (id={submission.id})')
    result = send_contact_notification(submission)
    current_app.logger.info(f'Email notification result: {result}')
    flash('Thank you for your message! We will get back to you soon.', 'success')
    return redirect(url_for('main.contact'))


@main_bp.route('/get-estimate', methods=['GET', 'POST'])
def get_estimate():
    site = get_site_context()
    meta = site.meta('get-estimate', title='Get an Estimate')
    max_images = int(current_app.config.get('MAX_ESTIMATE_IMAGES', 10))
    if request.method == 'GET':
        return render_template('estimate.html', meta=meta, form={}, max_images=max_images)

    limited, seconds = is_rate_limited(
        ESTIMATE_FORM_SCOPE,
        current_app.config.get('ESTIMATE_FORM_LIMIT', 8),
        current_app.config.get('ESTIMATE_FORM_WINDOW_SECONDS', 3600),
    )
    if limited:
        current_app.logger.warning('Estimate form rate limited.')
        flash(f'Too many estimate requests from this IP. Please wait {seconds} seconds and try again.', 'danger')
        return render_template('estimate.html', meta=meta, form={}, max_images=max_images), 429
    register_rate_limited_attempt(ESTIMATE_FORM_SCOPE, current_app.config.get('ESTIMATE_FORM_WINDOW_SECONDS', 3600))

    form = {
        'name': clean_text(request.form.get('name', ''), 200),
        'email': clean_text(request.form.get('email', ''), 200),
        'phone': clean_text(request.form.get('phone', ''), 80),
        'address': clean_text(request.form.get('address', ''), 400),
        'description': clean_text(request.form.get('description', ''), 5000),
    }
    if not all(form.values()):
        flash('Name, email, phone, address, and description are required.', 'danger')
        return render_template('estimate.html', meta=meta, form=form, max_images=max_images), 400
    if not is_valid_email(form['email']):
        flash('Please provide a valid email address.', 'danger')
        return render_template('estimate.html', meta=meta, form=form, max_images=max_images), 400

    files = [file for file in request.files.getlist('images') if file and file.filename]
    if not files:
        flash('At least one image is required for estimate requests.', 'danger')
        return render_template('estimate.html', meta=meta, form=form, max_images=max_images), 400
    if len(files) > max_images:
        flash(f'You can upload at most {max_images} images.', 'danger')
        return render_template('estimate.html', meta=meta, form=form, max_images=max_images), 400

    folder = current_app.config.get('ESTIMATE_UPLOAD_SUBDIR', 'estimate-requests')
    image_paths = []
    try:
        for file in files:
            image_paths.append(save_image_upload(file, folder, name_hint=form['name']))
    except UploadError as exc:
        remove_image_files(image_paths)
        flash(str(exc), 'danger')
        return render_template('estimate.html', meta=meta, form=form, max_images=max_images), 400

    submission = ContactRequest(
        request_type=REQUEST_TYPE_ESTIMATE,
        message=form['description'],
        images=image_paths,
        **form,
    )
    try:
        db.session.add(submission)
        db.session.commit()
    except Exception:
        db.session.rollback()
        remove_image_files(image_paths)
        raise
    current_app.logger.info(f'Estimate request saved (id={submission.id}, images={len(image_paths)})')
    result = send_estimate_notification(submission)
    current_app.logger.info(f'Email notification result: {result}')
    flash('Estimate request received! We will contact you soon.', 'success')
    return redirect(url_for('main.get_estimate'))


@main_bp.route('/images/<path:filename>')
def image_file(filename):
    # Stored paths may still name the pre-migration format; serve whichever sibling exists.
    images_root = current_app.config['IMAGES_FOLDER']
    resolved = find_existing_image(f'{IMAGES_URL_PREFIX}{filename}', images_root)
    if not resolved:
        abort(404)
    return send_from_directory(images_root, resolved[len(IMAGES_URL_PREFIX):], conditional=True, etag=True)


@main_bp.route('/sitemap.xml')
def sitemap_xml():
    today = utc_now_naive()
    entries = [
        build_sitemap_entry(url_for(endpoint), lastmod=today, changefreq=changefreq, priority=priority)
        for endpoint, changefreq, priority in STATIC_SITEMAP_ROUTES
    ]

    try:
        for service in Service.query.order_by(Service.id.asc()).all():
            entries.append(
                build_sitemap_entry(
                    url_for('main.service_detail', slug=service.slug),
                    lastmod=service.updated_at or service.created_at or today,
                    changefreq='monthly',
                    priority='0.8',
                )
            )

        for post_item in BlogPost.query.filter_by(published=True).order_by(BlogPost.id.asc()).all():
            entries.append(
                build_sitemap_entry(
                    url_for('main.post', slug=post_item.slug),
                    lastmod=post_item.updated_at or post_item.published_at or post_item.created_at or today,
                    changefreq='monthly',
                    priority='0.7',
                )
            )
    except Exception:
        db.session.rollback()
        current_app.logger.exception('Failed to build full sitemap dynamic entries; serving core entries only.')

    entries.sort(key=lambda entry: (-float(entry['priority']), entry['loc']))
    xml_body = '\n'.join([
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">',
        *[render_sitemap_entry(entry) for entry in entries],
        '</urlset>',
    ])
    response = current_app.response_class(xml_body, mimetype='application/xml')
    response.headers['Cache-Control'] = 'public, max-age=3600'
    return response


@main_bp.route('/robots.txt')
def robots_txt():
    site = get_site_context()
    sitemap_url = absolute_public_url(url_for('main.sitemap_xml'))
    if site.allow_indexing:
        rules = ['User-agent: *', 'Allow: /', 'Disallow: /admin/']
    else:
        rules = ['User-agent: *', 'Disallow: /']
    body = '\n'.join([*rules, '', f'Sitemap: {sitemap_url}', ''])
    response = current_app.response_class(body, mimetype='text/plain')
    response.headers['Cache-Control'] = 'public, max-age=3600'
    return response
