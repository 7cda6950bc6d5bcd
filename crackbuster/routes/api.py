"""Read-only JSON API for content consumers."""
from flask import Blueprint, current_app, jsonify, request

from ..images import existing_images, fix_image_paths_in_html, resolve_image_path
from ..models import (
    BlogPost,
    GoogleReviewSettings,
    SEO_PAGES,
    SeoPage,
    Service,
    SiteSettings,
    isoformat_or_none,
    normalize_seo_page,
)
from ..reviews import REVIEW_SORT_KEYS, paginated_reviews, review_stats
from ..utils import parse_int
from .main import works_query

api_bp = Blueprint('api', __name__)


def _images_root():
    return current_app.config['IMAGES_FOLDER']


def _no_cache(response):
    response.headers['Cache-Control'] = 'no-cache'
    return response


def post_summary(post):
    return {
        'id': post.id,
        'title': post.title,
        'slug': post.slug,
        'excerpt': post.excerpt,
        'featured_image': resolve_image_path(post.featured_image, _images_root()),
        'published_at': isoformat_or_none(post.published_at),
    }


def post_detail(post):
    data = post_summary(post)
    data.update(post.seo_dict())
    data['content'] = fix_image_paths_in_html(post.content, _images_root())
    data['created_at'] = isoformat_or_none(post.created_at)
    data['updated_at'] = isoformat_or_none(post.updated_at)
    return data


def service_summary(service):
    return {
        'id': service.id,
        'title': service.title,
        'slug': service.slug,
        'description': service.description,
        'image': resolve_image_path(service.image, _images_root()),
        'featured': bool(service.featured),
    }


def service_detail(service):
    data = service_summary(service)
    data.update(service.seo_dict())
    data['content'] = fix_image_paths_in_html(service.content, _images_root())
    data['faq'] = [{'question': faq.question, 'answer': faq.answer} for faq in service.faqs]
    data['created_at'] = isoformat_or_none(service.created_at)
    data['updated_at'] = isoformat_or_none(service.updated_at)
    return data


def work_dict(work):
    service = work.service
    return {
        'id': work.id,
        'title': work.title,
        'description': work.description,
        'images': existing_images(work.images, _images_root()),
        'service': {'title': service.title, 'slug': service.slug} if service else None,
        'location': work.location or '',
        'completed_at': isoformat_or_none(work.completed_at),
        'featured': bool(work.featured),
    }


@api_bp.get('/blog')
def blog_list():
    posts = BlogPost.query.filter_by(published=True).order_by(BlogPost.published_at.desc(), BlogPost.id.desc()).all()
    return jsonify({'posts': [post_summary(post) for post in posts]})


@api_bp.get('/blog/<slug>')
def blog_detail(slug):
    post = BlogPost.query.filter_by(slug=slug, published=True).first()
    if not post:
        return jsonify({'error': 'Post not found'}), 404
    return jsonify({'post': post_detail(post)})


@api_bp.get('/services')
def service_list():
    services = Service.query.order_by(Service.featured.desc(), Service.created_at.desc()).all()
    return jsonify({'services': [service_summary(service) for service in services]})


@api_bp.get('/services/<slug>')
def service_by_slug(slug):
    service = Service.query.filter_by(slug=slug).first()
    if not service:
        return jsonify({'error': 'Service not found'}), 404
    return jsonify({'service': service_detail(service)})


@api_bp.get('/works')
def work_list():
    return jsonify({'works': [work_dict(work) for work in works_query().all()]})


@api_bp.get('/settings')
def settings():
    return jsonify({'settings': SiteSettings.get_settings().to_dict()})


@api_bp.get('/seo')
def seo_all():
    rows = {row.page: row.to_dict() for row in SeoPage.query.all()}
    return _no_cache(jsonify({'seo': [rows[page] for page in SEO_PAGES if page in rows]}))


@api_bp.get('/seo/<page>')
def seo_page(page):
    page_key = normalize_seo_page(page)
    if not page_key:
        return _no_cache(jsonify({'error': 'Unknown SEO page'})), 404
    return _no_cache(jsonify({'seo': SeoPage.get_seo(page_key).to_dict()}))


@api_bp.get('/reviews')
def reviews():
    settings = GoogleReviewSettings.get_settings()
    if not settings.enabled:
        return jsonify({'enabled': False, 'reviews': [], 'total': 0, 'stats': {'average_rating': 0, 'total_count': 0}})

    per_page = parse_int(request.args.get('per_page'), default=settings.display_count or 5, min_value=1, max_value=50)
    page = parse_int(request.args.get('page'), default=1, min_value=1, max_value=10000)
    min_stars = parse_int(request.args.get('min_stars'), default=None, min_value=1, max_value=5)
    max_stars = parse_int(request.args.get('max_stars'), default=None, min_value=1, max_value=5)
    hide_empty = (request.args.get('hide_empty') or '').strip().lower() in {'1', 'true', 'yes', 'on'}
    sort_by = request.args.get('sort_by', 'newest_first')
    if sort_by not in REVIEW_SORT_KEYS:
        sort_by = 'newest_first'

    items, total = paginated_reviews(
        page=page,
        per_page=per_page,
        min_stars=min_stars,
        max_stars=max_stars,
        hide_empty=hide_empty,
        sort_by=sort_by,
    )
    return jsonify({
        'enabled': True,
        'reviews': [item.to_dict() for item in items],
        'page': page,
        'per_page': per_page,
        'total': total,
        'stats': review_stats(min_stars=min_stars, max_stars=max_stars, hide_empty=hide_empty),
    })


@api_bp.route('/', defaults={'path': ''})
@api_bp.route('/<path:path>')
def not_found(path):
    return _no_cache(jsonify({'error': 'API endpoint not found', 'path': request.path})), 404
