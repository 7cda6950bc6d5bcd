from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy.orm import validates
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

REQUEST_TYPE_CONTACT = 'contact'
REQUEST_TYPE_ESTIMATE = 'estimate'
REQUEST_TYPES = (REQUEST_TYPE_CONTACT, REQUEST_TYPE_ESTIMATE)

REQUEST_STATUS_NEW = 'new'
REQUEST_STATUS_CONTACTED = 'contacted'
REQUEST_STATUS_COMPLETED = 'completed'
REQUEST_STATUSES = (
    REQUEST_STATUS_NEW,
    REQUEST_STATUS_CONTACTED,
    REQUEST_STATUS_COMPLETED,
)
REQUEST_STATUS_LABELS = {
    REQUEST_STATUS_NEW: 'New',
    REQUEST_STATUS_CONTACTED: 'Contacted',
    REQUEST_STATUS_COMPLETED: 'Completed',
}

SEO_PAGES = (
    'home',
    'about-us',
    'contact-us',
    'get-estimate',
    'our-works',
    'blog',
    'blog-post',
    'service-detail',
    'services',
    '404',
)

SYNC_STATUS_IDLE = 'idle'
SYNC_STATUS_SYNCING = 'syncing'
SYNC_STATUS_SUCCESS = 'success'
SYNC_STATUS_ERROR = 'error'
SYNC_STATUSES = (
    SYNC_STATUS_IDLE,
    SYNC_STATUS_SYNCING,
    SYNC_STATUS_SUCCESS,
    SYNC_STATUS_ERROR,
)


def utc_now_naive():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_url_path(value):
    """Canonical form of a site path: one leading slash, no trailing slash."""
    trimmed = (value or '').strip().strip('/')
    return f'/{trimmed}' if trimmed else '/'


def normalize_request_status(value, default=REQUEST_STATUS_NEW):
    candidate = (value or '').strip().lower()
    if candidate in REQUEST_STATUSES:
        return candidate
    return default


def normalize_seo_page(value):
    candidate = (value or '').strip().lower()
    if candidate in SEO_PAGES:
        return candidate
    return None


def isoformat_or_none(value):
    if not value:
        return None
    return value.replace(microsecond=0).isoformat() + 'Z'


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now_naive)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)


class SeoFieldsMixin:
    meta_title = db.Column(db.String(300))
    meta_description = db.Column(db.String(500))
    keywords = db.Column(db.String(500))
    seo_title = db.Column(db.String(300))
    seo_description = db.Column(db.String(500))
    seo_keywords = db.Column(db.String(500))
    og_title = db.Column(db.String(300))
    og_description = db.Column(db.String(500))
    og_image = db.Column(db.String(300))
    twitter_title = db.Column(db.String(300))
    twitter_description = db.Column(db.String(500))
    twitter_image = db.Column(db.String(300))
    canonical_url = db.Column(db.String(300))
    robots = db.Column(db.String(100))

    SEO_FIELDS = (
        'meta_title',
        'meta_description',
        'keywords',
        'seo_title',
        'seo_description',
        'seo_keywords',
        'og_title',
        'og_description',
        'og_image',
        'twitter_title',
        'twitter_description',
        'twitter_image',
        'canonical_url',
        'robots',
    )

    @property
    def keyword_list(self):
        return [item.strip() for item in (self.keywords or '').split(',') if item.strip()]

    def seo_dict(self):
        return {field: getattr(self, field) or '' for field in self.SEO_FIELDS}


class Service(SeoFieldsMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(200), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=False)
    content = db.Column(db.Text, nullable=False, default='')
    image = db.Column(db.String(300))
    featured = db.Column(db.Boolean, default=False, index=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)
    faqs = db.relationship(
        'ServiceFaq',
        backref='service',
        lazy=True,
        order_by='ServiceFaq.sort_order',
        cascade='all, delete-orphan',
    )
    works = db.relationship('Work', backref='service', lazy=True)


class ServiceFaq(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    service_id = db.Column(db.Integer, db.ForeignKey('service.id'), nullable=False, index=True)
    question = db.Column(db.String(500), nullable=False)
    answer = db.Column(db.Text, nullable=False)
    sort_order = db.Column(db.Integer, default=0)


class BlogPost(SeoFieldsMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    slug = db.Column(db.String(300), unique=True, nullable=False)
    excerpt = db.Column(db.Text, nullable=False)
    content = db.Column(db.Text, nullable=False)
    featured_image = db.Column(db.String(300))
    published = db.Column(db.Boolean, default=False, index=True)
    published_at = db.Column(db.DateTime, index=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    __table_args__ = (
        db.Index('ix_blog_post_published_published_at', 'published', 'published_at'),
    )


class Work(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=False)
    images = db.Column(db.JSON, nullable=False, default=list)
    service_id = db.Column(db.Integer, db.ForeignKey('service.id'), index=True)
    location = db.Column(db.String(200))
    completed_at = db.Column(db.DateTime, index=True)
    featured = db.Column(db.Boolean, default=False, index=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive)


class ContactRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=False)
    phone = db.Column(db.String(80))
    message = db.Column(db.Text, nullable=False)
    request_type = db.Column(db.String(20), nullable=False, default=REQUEST_TYPE_CONTACT, index=True)
    address = db.Column(db.String(400))
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default=REQUEST_STATUS_NEW, index=True)
    images = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)

    @property
    def status_label(self):
        return REQUEST_STATUS_LABELS.get(self.status, self.status)


class SiteSettings(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    phone = db.Column(db.String(80), default='(780) XXX-XXXX')
    email = db.Column(db.String(200), default='info@crackbuster.ca')
    address = db.Column(db.String(400), default='Edmonton, Alberta, Canada')
    service_area = db.Column(db.String(400), default='Edmonton and surrounding areas')
    facebook = db.Column(db.String(300), default='')
    instagram = db.Column(db.String(300), default='')
    twitter = db.Column(db.String(300), default='')
    linkedin = db.Column(db.String(300), default='')
    youtube = db.Column(db.String(300), default='')
    business_hours = db.Column(db.String(300), default='')
    secondary_phone = db.Column(db.String(80), default='')
    secondary_email = db.Column(db.String(200), default='')
    allow_indexing = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    TEXT_FIELDS = (
        'phone',
        'email',
        'address',
        'service_area',
        'facebook',
        'instagram',
        'twitter',
        'linkedin',
        'youtube',
        'business_hours',
        'secondary_phone',
        'secondary_email',
    )

    @classmethod
    def get_settings(cls):
        settings = cls.query.order_by(cls.id.asc()).first()
        if not settings:
            settings = cls()
            db.session.add(settings)
            db.session.commit()
        return settings

    def to_dict(self):
        data = {field: getattr(self, field) or '' for field in self.TEXT_FIELDS}
        data['allow_indexing'] = bool(self.allow_indexing)
        return data


class SeoPage(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    page = db.Column(db.String(40), unique=True, nullable=False)
    title = db.Column(db.String(300), default='')
    description = db.Column(db.String(500), default='')
    keywords = db.Column(db.String(500), default='')
    og_title = db.Column(db.String(300), default='')
    og_description = db.Column(db.String(500), default='')
    og_image = db.Column(db.String(300), default='')
    twitter_title = db.Column(db.String(300), default='')
    twitter_description = db.Column(db.String(500), default='')
    twitter_image = db.Column(db.String(300), default='')
    canonical_url = db.Column(db.String(300), default='')
    robots = db.Column(db.String(100), default='')
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    TEXT_FIELDS = (
        'title',
        'description',
        'keywords',
        'og_title',
        'og_description',
        'og_image',
        'twitter_title',
        'twitter_description',
        'twitter_image',
        'canonical_url',
        'robots',
    )

    @classmethod
    def get_seo(cls, page):
        seo = cls.query.filter_by(page=page).first()
        if not seo:
            seo = cls(page=page)
            db.session.add(seo)
            db.session.commit()
        return seo

    def to_dict(self):
        data = {field: getattr(self, field) or '' for field in self.TEXT_FIELDS}
        data['page'] = self.page
        return data


class RemovedUrl(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    url = db.Column(db.String(500), unique=True, nullable=False)
    reason = db.Column(db.String(300), nullable=False, default='')
    removed_at = db.Column(db.DateTime, default=utc_now_naive)
    notes = db.Column(db.Text, nullable=False, default='')
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    @validates('url')
    def _normalize_url(self, key, value):
        return normalize_url_path(value)

    def covers(self, normalized_path):
        """True when `normalized_path` is this url or one of its sub-paths."""
        if normalized_path == self.url:
            return True
        if self.url == '/':
            return False
        return normalized_path.startswith(self.url + '/')


class GoogleReview(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(db.String(200), nullable=False, default='', index=True)
    author_name = db.Column(db.String(200), nullable=False)
    author_photo = db.Column(db.String(500), default='')
    author_url = db.Column(db.String(500), default='')
    rating = db.Column(db.Integer, nullable=False, default=5)
    text = db.Column(db.Text, nullable=False, default='')
    review_time = db.Column(db.DateTime, default=utc_now_naive)
    images = db.Column(db.JSON, nullable=False, default=list)
    original_data = db.Column(db.JSON, nullable=False, default=dict)
    last_synced = db.Column(db.DateTime, default=utc_now_naive)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    __table_args__ = (
        db.Index('ix_google_review_active_review_time', 'active', 'review_time'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'review_id': self.review_id,
            'author_name': self.author_name,
            'author_photo': self.author_photo or '',
            'author_url': self.author_url or '',
            'rating': self.rating,
            'text': self.text or '',
            'review_time': isoformat_or_none(self.review_time),
            'images': list(self.images or []),
        }


class GoogleReviewSettings(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    place_id = db.Column(db.String(200), default='')
    api_key = db.Column(db.String(200), default='')
    reviews_feed_url = db.Column(db.String(500), default='')
    enabled = db.Column(db.Boolean, nullable=False, default=False)
    display_count = db.Column(db.Integer, nullable=False, default=5)
    last_synced = db.Column(db.DateTime)
    sync_status = db.Column(db.String(20), nullable=False, default=SYNC_STATUS_IDLE)
    last_sync_error = db.Column(db.Text, nullable=False, default='')
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    @classmethod
    def get_settings(cls):
        settings = cls.query.order_by(cls.id.asc()).first()
        if not settings:
            settings = cls()
            db.session.add(settings)
            db.session.commit()
        return settings


class AuthRateLimitBucket(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(80), nullable=False, index=True)
    ip = db.Column(db.String(64), nullable=False, index=True)
    count = db.Column(db.Integer, nullable=False, default=0)
    reset_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    __table_args__ = (
        db.UniqueConstraint('scope', 'ip', name='uq_auth_rate_limit_scope_ip'),
        db.Index('ix_auth_rate_limit_scope_reset_at', 'scope', 'reset_at'),
    )
