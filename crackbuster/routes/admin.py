import os
from datetime import datetime

import bleach
from flask import Blueprint, abort, current_app, flash, redirect, render_template, request, session, url_for
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash
from slugify import slugify

from ..image_optimizer import ImageOptimizationError, optimize_image
from ..images import IMAGE_EXTENSIONS, IMAGES_URL_PREFIX, fix_image_paths_in_html, image_file_path, resolve_image_path
from ..models import (
    BlogPost,
    ContactRequest,
    GoogleReview,
    GoogleReviewSettings,
    REQUEST_STATUS_LABELS,
    REQUEST_STATUS_NEW,
    REQUEST_TYPES,
    RemovedUrl,
    SEO_PAGES,
    SeoFieldsMixin,
    SeoPage,
    Service,
    ServiceFaq,
    SiteSettings,
    User,
    Work,
    db,
    normalize_request_status,
    normalize_seo_page,
    normalize_url_path,
    utc_now_naive,
)
from ..reviews import ReviewSyncError, sync_reviews
from ..uploads import UploadError, folder_path, normalize_folder, remove_image_files, save_image_upload
from ..utils import (
    clean_text,
    clear_rate_limit,
    is_rate_limited,
    is_valid_email,
    is_valid_url,
    parse_int,
    register_rate_limited_attempt,
)

admin_bp = Blueprint('admin', __name__)
ADMIN_LOGIN_SCOPE = 'admin_login'
ADMIN_LOGIN_LIMIT = 5
ADMIN_LOGIN_WINDOW_SECONDS = 300
AUTH_DUMMY_HASH = generate_password_hash('CrackBuster::dummy-auth-check')
MAX_LIBRARY_UPLOADS = 20
DEFAULT_LIBRARY_FOLDER = 'uploads'
SEO_FIELD_LIMITS = {
    'meta_description': 500,
    'seo_description': 500,
    'og_description': 500,
    'twitter_description': 500,
    'keywords': 500,
    'seo_keywords': 500,
    'robots': 100,
}
ALLOWED_RICH_TEXT_TAGS = [
    'p', 'br', 'strong', 'em', 'b', 'i', 'u', 'blockquote', 'code', 'pre',
    'ul', 'ol', 'li', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'section', 'article',
    'a', 'img', 'table', 'thead', 'tbody', 'tr', 'th', 'td', 'hr', 'div', 'span'
]
ALLOWED_RICH_TEXT_ATTRIBUTES = {
    '*': ['class'],
    'a': ['href', 'title', 'target', 'rel'],
    'img': ['src', 'alt', 'title', 'width', 'height', 'loading'],
}
ALLOWED_RICH_TEXT_PROTOCOLS = ['http', 'https', 'mailto']


def sanitize_html(value, max_length=100000):
    html = (value or '').strip()
    cleaned = bleach.clean(
        html,
        tags=ALLOWED_RICH_TEXT_TAGS,
        attributes=ALLOWED_RICH_TEXT_ATTRIBUTES,
        protocols=ALLOWED_RICH_TEXT_PROTOCOLS,
        strip=True,
    )
    return cleaned[:max_length]


def rich_text_from_form(field, max_length=100000):
    """Sanitized HTML with image sources pointed at files that exist."""
    return fix_image_paths_in_html(
        sanitize_html(request.form.get(field, ''), max_length),
        current_app.config['IMAGES_FOLDER'],
    )


def image_path_from_form(field):
    value = clean_text(request.form.get(field, ''), 300)
    if not value:
        return ''
    return resolve_image_path(value, current_app.config['IMAGES_FOLDER'])


def parse_faq_lines(raw):
    """Parse ``question | answer`` lines; returns ``(faqs, invalid_lines)``."""
    faqs = []
    invalid = []
    for line in (raw or '').splitlines():
        line = line.strip()
        if not line:
            continue
        question, sep, answer = line.partition('|')
        question = question.strip()[:500]
        answer = answer.strip()[:5000]
        if not sep or not question or not answer:
            invalid.append(line)
            continue
        faqs.append((question, answer))
    return faqs, invalid


def faq_text(service):
    if not service:
        return ''
    return '\n'.join(f'{faq.question} | {faq.answer}' for faq in service.faqs)


def apply_seo_fields(item):
    for field in SeoFieldsMixin.SEO_FIELDS:
        setattr(item, field, clean_text(request.form.get(field, ''), SEO_FIELD_LIMITS.get(field, 300)))


def parse_date(value):
    raw = (value or '').strip()
    if not raw:
        return None
    try:
        return datetime.strptime(raw, '%Y-%m-%d')
    except ValueError:
        return None


# Auth
@admin_bp.route('/login', methods=['GET', 'POST'])
def login():
    if current_user.is_authenticated:
        return redirect(url_for('admin.dashboard'))
    if request.method == 'POST':
        limited, seconds = is_rate_limited(ADMIN_LOGIN_SCOPE, ADMIN_LOGIN_LIMIT, ADMIN_LOGIN_WINDOW_SECONDS)
        if limited:
            flash(f'Too many login attempts. Try again in {seconds} seconds.', 'danger')
            return render_template('admin/login.html'), 429

        username = clean_text(request.form.get('username'), 80)
        password = request.form.get('password', '')
        user = User.query.filter_by(username=username).first()
        password_ok = False
        if user:
            password_ok = user.check_password(password)
        else:
            # Keep response timing closer for unknown usernames.
            check_password_hash(AUTH_DUMMY_HASH, password or '')
        if user and password_ok:
            clear_rate_limit(ADMIN_LOGIN_SCOPE)
            session.clear()
            login_user(user)
            current_app.logger.info(f'Admin login succeeded for {username}')
            return redirect(url_for('admin.dashboard'))

        attempts = register_rate_limited_attempt(ADMIN_LOGIN_SCOPE, ADMIN_LOGIN_WINDOW_SECONDS)
        current_app.logger.warning('Admin login failed.')
        remaining = max(0, ADMIN_LOGIN_LIMIT - attempts)
        if remaining == 0:
            flash('Too many failed attempts. Please wait 5 minutes and try again.', 'danger')
        else:
            flash(f'Invalid credentials. {remaining} attempt(s) remaining before temporary lock.', 'danger')
    return render_template('admin/login.html')


@admin_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return redirect(url_for('admin.login'))


# Dashboard
@admin_bp.route('/')
@login_required
def dashboard():
    review_settings = GoogleReviewSettings.get_settings()
    stats = {
        'services': Service.query.count(),
        'posts': BlogPost.query.count(),
        'published_posts': BlogPost.query.filter_by(published=True).count(),
        'works': Work.query.count(),
        'new_requests': ContactRequest.query.filter_by(status=REQUEST_STATUS_NEW).count(),
        'removed_urls': RemovedUrl.query.count(),
        'reviews': GoogleReview.query.filter_by(active=True).count(),
    }
    recent_requests = ContactRequest.query.order_by(ContactRequest.created_at.desc()).limit(5).all()
    return render_template(
        'admin/dashboard.html',
        stats=stats,
        recent_requests=recent_requests,
        review_settings=review_settings,
    )


# Services CRUD
@admin_bp.route('/services')
@login_required
def services():
    items = Service.query.order_by(Service.featured.desc(), Service.created_at.desc()).all()
    return render_template('admin/services.html', items=items)


def _render_service_form(item, status=200):
    faqs = request.form.get('faq_text') if request.method == 'POST' else faq_text(item)
    return render_template('admin/service_form.html', item=item, faq_text=faqs or ''), status


def _save_service(item):
    title = clean_text(request.form.get('title'), 200)
    description = clean_text(request.form.get('description'), 10000)
    if not title or not description:
        flash('Title and description are required.', 'danger')
        return None

    slug = slugify(clean_text(request.form.get('slug'), 200) or title)
    if not slug:
        flash('Unable to generate a valid slug from title.', 'danger')
        return None
    slug_query = Service.query.filter(Service.slug == slug)
    if item is not None:
        slug_query = slug_query.filter(Service.id != item.id)
    if slug_query.first():
        flash('Another service already uses this title/slug.', 'danger')
        return None

    faqs, invalid = parse_faq_lines(request.form.get('faq_text'))
    if invalid:
        flash('Each FAQ line must look like "question | answer".', 'danger')
        return None

    if item is None:
        item = Service()
        db.session.add(item)
    item.title = title
    item.slug = slug
    item.description = description
    item.content = rich_text_from_form('content')
    item.image = image_path_from_form('image')
    item.featured = 'featured' in request.form
    apply_seo_fields(item)
    item.faqs = [
        ServiceFaq(question=question, answer=answer, sort_order=index)
        for index, (question, answer) in enumerate(faqs)
    ]
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        flash('Unable to save service due to duplicate data.', 'danger')
        return None
    return item


@admin_bp.route('/services/add', methods=['GET', 'POST'])
@login_required
def service_add():
    if request.method == 'POST':
        if _save_service(None) is None:
            return _render_service_form(None, 400)
        flash('Service added.', 'success')
        return redirect(url_for('admin.services'))
    return _render_service_form(None)


@admin_bp.route('/services/<int:id>/edit', methods=['GET', 'POST'])
@login_required
def service_edit(id):
    item = db.get_or_404(Service, id)
    if request.method == 'POST':
        if _save_service(item) is None:
            return _render_service_form(item, 400)
        flash('Service updated.', 'success')
        return redirect(url_for('admin.services'))
    return _render_service_form(item)


@admin_bp.route('/services/<int:id>/delete', methods=['POST'])
@login_required
def service_delete(id):
    item = db.get_or_404(Service, id)
    for work in item.works:
        work.service_id = None
    db.session.delete(item)
    db.session.commit()
    flash('Service deleted.', 'success')
    return redirect(url_for('admin.services'))


# Blog posts CRUD
@admin_bp.route('/posts')
@login_required
def posts():
    items = BlogPost.query.order_by(BlogPost.created_at.desc()).all()
    return render_template('admin/posts.html', items=items)


def _save_post(item):
    title = clean_text(request.form.get('title'), 300)
    excerpt = clean_text(request.form.get('excerpt', ''), 2000)
    content = rich_text_from_form('content')
    if not title or not excerpt or not content:
        flash('Title, excerpt, and content are required.', 'danger')
        return None

    slug = slugify(clean_text(request.form.get('slug'), 300) or title)
    if not slug:
        flash('Unable to generate a valid post slug.', 'danger')
        return None
    slug_query = BlogPost.query.filter(BlogPost.slug == slug)
    if item is not None:
        slug_query = slug_query.filter(BlogPost.id != item.id)
    if slug_query.first():
        flash('Another post already uses this title/slug.', 'danger')
        return None

    if item is None:
        item = BlogPost()
        db.session.add(item)
    item.title = title
    item.slug = slug
    item.excerpt = excerpt
    item.content = content
    item.featured_image = image_path_from_form('featured_image')
    item.published = 'published' in request.form
    if item.published and not item.published_at:
        item.published_at = utc_now_naive()
    apply_seo_fields(item)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        flash('Unable to save post due to duplicate data.', 'danger')
        return None
    return item


@admin_bp.route('/posts/add', methods=['GET', 'POST'])
@login_required
def post_add():
    if request.method == 'POST':
        if _save_post(None) is None:
            return render_template('admin/post_form.html', item=None), 400
        flash('Post created.', 'success')
        return redirect(url_for('admin.posts'))
    return render_template('admin/post_form.html', item=None)


@admin_bp.route('/posts/<int:id>/edit', methods=['GET', 'POST'])
@login_required
def post_edit(id):
    item = db.get_or_404(BlogPost, id)
    if request.method == 'POST':
        if _save_post(item) is None:
            return render_template('admin/post_form.html', item=item), 400
        flash('Post updated.', 'success')
        return redirect(url_for('admin.posts'))
    return render_template('admin/post_form.html', item=item)


@admin_bp.route('/posts/<int:id>/delete', methods=['POST'])
@login_required
def post_delete(id):
    db.session.delete(db.get_or_404(BlogPost, id))
    db.session.commit()
    flash('Post deleted.', 'success')
    return redirect(url_for('admin.posts'))


# Works CRUD
@admin_bp.route('/works')
@login_required
def works():
    items = Work.query.order_by(Work.featured.desc(), Work.completed_at.desc(), Work.id.desc()).all()
    return render_template('admin/works.html', items=items)


def _render_work_form(item, status=200):
    services_list = Service.query.order_by(Service.title.asc()).all()
    return render_template('admin/work_form.html', item=item, services=services_list), status


def _save_work(item):
    title = clean_text(request.form.get('title'), 300)
    description = sanitize_html(request.form.get('description', ''), 20000)
    if not title or not description:
        flash('Title and description are required.', 'danger')
        return None

    raw_service_id = request.form.get('service_id')
    service_id = parse_int(raw_service_id, default=None, min_value=1) if raw_service_id else None
    if raw_service_id and (service_id is None or not db.session.get(Service, service_id)):
        flash('Selected service does not exist.', 'danger')
        return None

    images_root = current_app.config['IMAGES_FOLDER']
    images = []
    for line in (request.form.get('images') or '').splitlines():
        image_path = clean_text(line, 300)
        if not image_path:
            continue
        if not image_path.startswith(IMAGES_URL_PREFIX):
            flash('Gallery images must be /images/... paths.', 'danger')
            return None
        images.append(resolve_image_path(image_path, images_root))

    raw_completed_at = request.form.get('completed_at')
    completed_at = parse_date(raw_completed_at)
    if raw_completed_at and completed_at is None:
        flash('Completion date must be YYYY-MM-DD.', 'danger')
        return None

    if item is None:
        item = Work()
        db.session.add(item)
    item.title = title
    item.description = description
    item.images = images
    item.service_id = service_id
    item.location = clean_text(request.form.get('location'), 200)
    item.completed_at = completed_at
    item.featured = 'featured' in request.form
    db.session.commit()
    return item


@admin_bp.route('/works/add', methods=['GET', 'POST'])
@login_required
def work_add():
    if request.method == 'POST':
        if _save_work(None) is None:
            return _render_work_form(None, 400)
        flash('Work added.', 'success')
        return redirect(url_for('admin.works'))
    return _render_work_form(None)


@admin_bp.route('/works/<int:id>/edit', methods=['GET', 'POST'])
@login_required
def work_edit(id):
    item = db.get_or_404(Work, id)
    if request.method == 'POST':
        if _save_work(item) is None:
            return _render_work_form(item, 400)
        flash('Work updated.', 'success')
        return redirect(url_for('admin.works'))
    return _render_work_form(item)


@admin_bp.route('/works/<int:id>/delete', methods=['POST'])
@login_required
def work_delete(id):
    db.session.delete(db.get_or_404(Work, id))
    db.session.commit()
    flash('Work deleted.', 'success')
    return redirect(url_for('admin.works'))


# Removed URLs
@admin_bp.route('/removed-urls')
@login_required
def removed_urls():
    items = RemovedUrl.query.order_by(RemovedUrl.removed_at.desc(), RemovedUrl.id.desc()).all()
    return render_template('admin/removed_urls.html', items=items)


def _save_removed_url(item):
    raw_url = clean_text(request.form.get('url'), 500)
    if not raw_url:
        flash('URL is required.', 'danger')
        return None
    url = normalize_url_path(raw_url)
    duplicate_query = RemovedUrl.query.filter(RemovedUrl.url == url)
    if item is not None:
        duplicate_query = duplicate_query.filter(RemovedUrl.id != item.id)
    if duplicate_query.first():
        flash(f'{url} is already marked as removed.', 'danger')
        return None

    raw_removed_at = request.form.get('removed_at')
    removed_at = parse_date(raw_removed_at)
    if raw_removed_at and removed_at is None:
        flash('Removal date must be YYYY-MM-DD.', 'danger')
        return None

    if item is None:
        item = RemovedUrl()
        db.session.add(item)
    item.url = url
    item.reason = clean_text(request.form.get('reason'), 300)
    item.notes = clean_text(request.form.get('notes'), 5000)
    item.removed_at = removed_at or item.removed_at or utc_now_naive()
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        flash(f'{url} is already marked as removed.', 'danger')
        return None
    current_app.logger.info(f'Removed URL saved: {url}')
    return item


@admin_bp.route('/removed-urls/add', methods=['GET', 'POST'])
@login_required
def removed_url_add():
    if request.method == 'POST':
        if _save_removed_url(None) is None:
            return render_template('admin/removed_url_form.html', item=None), 400
        flash('Removed URL added.', 'success')
        return redirect(url_for('admin.removed_urls'))
    return render_template('admin/removed_url_form.html', item=None)


@admin_bp.route('/removed-urls/<int:id>/edit', methods=['GET', 'POST'])
@login_required
def removed_url_edit(id):
    item = db.get_or_404(RemovedUrl, id)
    if request.method == 'POST':
        if _save_removed_url(item) is None:
            return render_template('admin/removed_url_form.html', item=item), 400
        flash('Removed URL updated.', 'success')
        return redirect(url_for('admin.removed_urls'))
    return render_template('admin/removed_url_form.html', item=item)


@admin_bp.route('/removed-urls/<int:id>/delete', methods=['POST'])
@login_required
def removed_url_delete(id):
    db.session.delete(db.get_or_404(RemovedUrl, id))
    db.session.commit()
    flash('Removed URL deleted.', 'success')
    return redirect(url_for('admin.removed_urls'))


# Settings
@admin_bp.route('/settings', methods=['GET', 'POST'])
@login_required
def settings():
    item = SiteSettings.get_settings()
    if request.method == 'POST':
        for email_key in ('email', 'secondary_email'):
            email = clean_text(request.form.get(email_key, ''), 200)
            if email and not is_valid_email(email):
                flash('Please provide a valid email address for contact settings.', 'danger')
                return render_template('admin/settings.html', item=item), 400

        for social_key in ('facebook', 'instagram', 'twitter', 'linkedin', 'youtube'):
            social_url = clean_text(request.form.get(social_key, ''), 300)
            if social_url and not is_valid_url(social_url):
                flash(f'{social_key.capitalize()} URL must start with http:// or https://.', 'danger')
                return render_template('admin/settings.html', item=item), 400

        for field in SiteSettings.TEXT_FIELDS:
            setattr(item, field, clean_text(request.form.get(field, ''), 400))
        item.allow_indexing = 'allow_indexing' in request.form
        db.session.commit()
        flash('Settings saved.', 'success')
        return redirect(url_for('admin.settings'))
    return render_template('admin/settings.html', item=item)


# SEO
@admin_bp.route('/seo')
@login_required
def seo_pages():
    rows = {row.page: row for row in SeoPage.query.all()}
    return render_template('admin/seo.html', pages=SEO_PAGES, rows=rows)


@admin_bp.route('/seo/<page>', methods=['GET', 'POST'])
@login_required
def seo_edit(page):
    page_key = normalize_seo_page(page)
    if not page_key:
        abort(404)
    item = SeoPage.get_seo(page_key)
    if request.method == 'POST':
        canonical_url = clean_text(request.form.get('canonical_url', ''), 300)
        if canonical_url and not is_valid_url(canonical_url):
            flash('Canonical URL must start with http:// or https://.', 'danger')
            return render_template('admin/seo_form.html', item=item), 400
        for field in SeoPage.TEXT_FIELDS:
            setattr(item, field, clean_text(request.form.get(field, ''), SEO_FIELD_LIMITS.get(field, 300)))
        db.session.commit()
        flash('SEO settings saved.', 'success')
        return redirect(url_for('admin.seo_pages'))
    return render_template('admin/seo_form.html', item=item)


# Contact and estimate requests
@admin_bp.route('/requests')
@login_required
def requests_list():
    type_filter = clean_text(request.args.get('type', 'all'), 20).lower()
    status_filter = clean_text(request.args.get('status', 'all'), 20).lower()
    query = ContactRequest.query
    if type_filter in REQUEST_TYPES:
        query = query.filter(ContactRequest.request_type == type_filter)
    else:
        type_filter = 'all'
    if status_filter in REQUEST_STATUS_LABELS:
        query = query.filter(ContactRequest.status == status_filter)
    else:
        status_filter = 'all'
    items = query.order_by(ContactRequest.created_at.desc(), ContactRequest.id.desc()).all()
    return render_template(
        'admin/requests.html',
        items=items,
        type_filter=type_filter,
        status_filter=status_filter,
        status_labels=REQUEST_STATUS_LABELS,
    )


@admin_bp.route('/requests/<int:id>')
@login_required
def request_view(id):
    item = db.get_or_404(ContactRequest, id)
    return render_template('admin/request_view.html', item=item, status_labels=REQUEST_STATUS_LABELS)


@admin_bp.route('/requests/<int:id>/status', methods=['POST'])
@login_required
def request_status(id):
    item = db.get_or_404(ContactRequest, id)
    item.status = normalize_request_status(request.form.get('status'), default=item.status)
    db.session.commit()
    flash('Request status updated.', 'success')
    return redirect(url_for('admin.request_view', id=item.id))


@admin_bp.route('/requests/<int:id>/delete', methods=['POST'])
@login_required
def request_delete(id):
    item = db.get_or_404(ContactRequest, id)
    removed = remove_image_files(item.images)
    db.session.delete(item)
    db.session.commit()
    current_app.logger.info(f'Request {id} deleted ({removed} image file(s) removed).')
    flash('Request deleted.', 'success')
    return redirect(url_for('admin.requests_list'))


# Image library
def _library_folders():
    root = os.path.abspath(current_app.config['IMAGES_FOLDER'])
    folders = []
    for dirpath, dirnames, _filenames in os.walk(root):
        dirnames.sort()
        relative = os.path.relpath(dirpath, root)
        if relative != '.':
            folders.append(relative.replace(os.sep, '/'))
    return folders


def _library_images(folder):
    target = folder_path(folder) if folder else os.path.abspath(current_app.config['IMAGES_FOLDER'])
    if not os.path.isdir(target):
        return []
    images = []
    for entry in sorted(os.scandir(target), key=lambda item: item.name.lower()):
        extension = os.path.splitext(entry.name)[1].lower().lstrip('.')
        if entry.is_file() and extension in IMAGE_EXTENSIONS:
            prefix = f'{IMAGES_URL_PREFIX}{folder}/' if folder else IMAGES_URL_PREFIX
            images.append({'path': f'{prefix}{entry.name}', 'name': entry.name, 'size': entry.stat().st_size})
    return images


def _library_redirect(folder):
    return redirect(url_for('admin.images', folder=folder or None))


@admin_bp.route('/images')
@login_required
def images():
    raw_folder = request.args.get('folder', '')
    folder = normalize_folder(raw_folder) if raw_folder else ''
    if folder is None:
        abort(404)
    return render_template(
        'admin/images.html',
        folders=_library_folders(),
        folder=folder,
        images=_library_images(folder),
    )


@admin_bp.route('/images/folders', methods=['POST'])
@login_required
def image_folder_create():
    folder = normalize_folder(request.form.get('name'))
    if not folder:
        flash('Folder names may contain lowercase letters, digits, dashes and underscores.', 'danger')
        return _library_redirect('')
    os.makedirs(folder_path(folder), exist_ok=True)
    flash(f'Folder {folder} created.', 'success')
    return _library_redirect(folder)


@admin_bp.route('/images/upload', methods=['POST'])
@login_required
def image_upload():
    folder = normalize_folder(request.form.get('folder') or DEFAULT_LIBRARY_FOLDER)
    if not folder:
        flash('Invalid folder.', 'danger')
        return _library_redirect('')
    files = [file for file in request.files.getlist('images') if file and file.filename]
    if not files:
        flash('Please choose at least one image to upload.', 'danger')
        return _library_redirect(folder)
    if len(files) > MAX_LIBRARY_UPLOADS:
        flash(f'You can upload at most {MAX_LIBRARY_UPLOADS} images at once.', 'danger')
        return _library_redirect(folder)

    saved = 0
    for file in files:
        try:
            save_image_upload(file, folder)
            saved += 1
        except UploadError:
            flash(f'Skipped {file.filename}: invalid image file.', 'danger')
    if saved:
        flash(f'{saved} image(s) uploaded.', 'success')
    return _library_redirect(folder)


def _library_file_from_form():
    image_path = clean_text(request.form.get('path'), 500)
    full_path = image_file_path(image_path, current_app.config['IMAGES_FOLDER'])
    if not full_path or not os.path.isfile(full_path):
        abort(404)
    folder = os.path.dirname(image_path[len(IMAGES_URL_PREFIX):])
    return image_path, full_path, folder


@admin_bp.route('/images/delete', methods=['POST'])
@login_required
def image_delete():
    image_path, full_path, folder = _library_file_from_form()
    os.remove(full_path)
    current_app.logger.info(f'Image deleted: {image_path}')
    flash('Image deleted.', 'success')
    return _library_redirect(folder)


@admin_bp.route('/images/convert', methods=['POST'])
@login_required
def image_convert():
    image_path, full_path, folder = _library_file_from_form()
    try:
        result = optimize_image(
            full_path,
            quality=current_app.config.get('WEBP_QUALITY', 82),
            max_width=current_app.config.get('WEBP_MAX_WIDTH', 1920),
            convert_to_webp=True,
        )
    except ImageOptimizationError as exc:
        flash(str(exc), 'danger')
        return _library_redirect(folder)
    current_app.logger.info(f'Image converted to WebP: {image_path} ({result.saved_percent}% smaller)')
    flash(f'Converted to WebP, saved {result.saved_percent}%.', 'success')
    return _library_redirect(folder)


# Google reviews
@admin_bp.route('/reviews', methods=['GET', 'POST'])
@login_required
def reviews():
    item = GoogleReviewSettings.get_settings()
    if request.method == 'POST':
        feed_url = clean_text(request.form.get('reviews_feed_url', ''), 500)
        if feed_url and not is_valid_url(feed_url):
            flash('Reviews feed URL must start with http:// or https://.', 'danger')
            return redirect(url_for('admin.reviews'))
        item.reviews_feed_url = feed_url
        item.place_id = clean_text(request.form.get('place_id', ''), 200)
        item.enabled = 'enabled' in request.form
        item.display_count = parse_int(request.form.get('display_count'), default=5, min_value=1, max_value=20)
        db.session.commit()
        flash('Review settings saved.', 'success')
        return redirect(url_for('admin.reviews'))
    items = GoogleReview.query.order_by(GoogleReview.review_time.desc()).all()
    return render_template('admin/reviews.html', item=item, items=items)


@admin_bp.route('/reviews/sync', methods=['POST'])
@login_required
def reviews_sync():
    try:
        result = sync_reviews()
    except ReviewSyncError as exc:
        flash(f'Review sync failed: {exc}', 'danger')
        return redirect(url_for('admin.reviews'))
    flash(result['message'], 'success')
    return redirect(url_for('admin.reviews'))


@admin_bp.route('/reviews/<int:id>/toggle', methods=['POST'])
@login_required
def review_toggle(id):
    item = db.get_or_404(GoogleReview, id)
    item.active = not item.active
    db.session.commit()
    flash('Review shown.' if item.active else 'Review hidden.', 'success')
    return redirect(url_for('admin.reviews'))
