"""Per-request snapshot of site settings and page SEO."""
from dataclasses import dataclass, field

from flask import current_app, g

from .models import SEO_PAGES, SeoPage, SiteSettings, db

NOINDEX_ROBOTS = 'noindex, nofollow'


@dataclass(frozen=True)
class SiteContext:
    settings: dict = field(default_factory=dict)
    seo_pages: dict = field(default_factory=dict)

    @property
    def allow_indexing(self):
        return bool(self.settings.get('allow_indexing', True))

    def seo(self, page):
        return dict(self.seo_pages.get(page) or {})

    def meta(self, page, title='', description='', keywords='', image='', canonical='', robots=''):
        """Meta tags for `page`; record-level values win over the page defaults."""
        defaults = self.seo(page)
        title = title or defaults.get('title') or ''
        description = description or defaults.get('description') or ''
        image = image or defaults.get('og_image') or ''
        meta = {
            'title': title,
            'description': description,
            'keywords': keywords or defaults.get('keywords') or '',
            'og_title': defaults.get('og_title') or title,
            'og_description': defaults.get('og_description') or description,
            'og_image': image,
            'twitter_title': defaults.get('twitter_title') or title,
            'twitter_description': defaults.get('twitter_description') or description,
            'twitter_image': defaults.get('twitter_image') or image,
            'canonical_url': canonical or defaults.get('canonical_url') or '',
            'robots': robots or defaults.get('robots') or '',
        }
        if not self.allow_indexing:
            meta['robots'] = NOINDEX_ROBOTS
        return meta


def record_meta(site, page, record, fallback_title='', fallback_description='', image=''):
    """Meta for a Service or BlogPost detail page from its SEO columns."""
    return site.meta(
        page,
        title=record.seo_title or record.meta_title or fallback_title,
        description=record.seo_description or record.meta_description or fallback_description,
        keywords=record.seo_keywords or record.keywords or '',
        image=record.og_image or image,
        canonical=record.canonical_url or '',
        robots=record.robots or '',
    )


def load_site_context():
    try:
        settings = SiteSettings.get_settings().to_dict()
        seo_pages = {row.page: row.to_dict() for row in SeoPage.query.filter(SeoPage.page.in_(SEO_PAGES)).all()}
    except Exception:
        db.session.rollback()
        current_app.logger.exception('Failed to load site settings; using defaults.')
        return SiteContext()
    return SiteContext(settings=settings, seo_pages=seo_pages)


def get_site_context():
    site = getattr(g, 'site_context', None)
    if site is None:
        site = load_site_context()
        g.site_context = site
    return site
