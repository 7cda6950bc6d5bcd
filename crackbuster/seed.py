import os
import re
import secrets
from datetime import datetime, timedelta

from flask import current_app
from slugify import slugify

from .images import IMAGE_EXTENSIONS, fix_image_paths_in_html, resolve_image_path
from .models import (
    BlogPost,
    GoogleReviewSettings,
    SEO_PAGES,
    SeoPage,
    Service,
    ServiceFaq,
    SiteSettings,
    User,
    Work,
    db,
    utc_now_naive,
)

JOBS_FOLDER = 'jobs'
_DIGITS_RE = re.compile(r'\d+')

SEO_DEFAULTS = {
    'home': (
        'Foundation Crack Repair in Edmonton | CrackBuster',
        'Professional foundation crack repair services in Edmonton, Canada. Expert solutions for basement '
        'waterproofing, foundation repair, and crack injection. Free estimates available.',
        'foundation crack repair, edmonton, basement waterproofing, foundation repair, crack injection',
    ),
    'about-us': (
        'About Us - Foundation Crack Repair Experts in Edmonton | CrackBuster',
        'Over 12 years of experience in foundation crack repair across Edmonton, Sherwood Park, and St. Albert.',
        'about crackbuster, foundation repair experts, edmonton foundation repair',
    ),
    'contact-us': (
        'Contact Us - Foundation Repair Experts | CrackBuster Edmonton',
        'Contact CrackBuster for foundation repair services in Edmonton.',
        'contact crackbuster, foundation repair contact',
    ),
    'get-estimate': (
        'Get Free Estimate - Foundation Repair | CrackBuster Edmonton',
        'Get a free estimate for your foundation repair project in Edmonton. Send photos and we will get back to you.',
        'free estimate, foundation repair estimate, edmonton foundation repair quote',
    ),
    'our-works': (
        'Our Works - Foundation Repair Projects | CrackBuster Edmonton',
        'Completed foundation repair projects in Edmonton.',
        'foundation repair projects, completed works, portfolio',
    ),
    'blog': (
        'Foundation Repair Blog | CrackBuster Edmonton',
        'Articles about foundation repair, basement waterproofing, and crack repair.',
        'foundation repair blog, basement waterproofing tips, crack repair guides',
    ),
    'blog-post': ('', '', ''),
    'service-detail': ('', '', ''),
    'services': (
        'Foundation Repair Services | CrackBuster Edmonton',
        'Foundation crack repair, crack injection, and basement waterproofing services in Edmonton.',
        'foundation repair services, crack injection, basement waterproofing',
    ),
    '404': ('Page Not Found | CrackBuster', 'The page you are looking for does not exist.', ''),
}
DEFAULT_OG_IMAGE = '/images/og-image.jpg'

DEMO_SERVICES = [
    {
        'title': 'Foundation Crack Repair',
        'description': 'Foundation crack repair using injection techniques that restore the structure and stop water.',
        'content': (
            '<p>Foundation cracks can compromise the structure of a home and let water in. We seal them '
            'permanently from the inside.</p>'
            '<img src="/images/services/foundation-crack-repair.jpg" alt="Foundation crack repair">'
        ),
        'image': '/images/services/foundation-crack-repair.jpg',
        'featured': True,
        'meta_description': 'Professional foundation crack repair services in Edmonton.',
        'keywords': 'foundation crack repair, crack injection, edmonton',
        'faqs': [
            ('How long does a repair take?', 'Most single-crack repairs are completed in a few hours.'),
            ('Do you offer a warranty?', 'Yes, every repair comes with a written warranty.'),
        ],
    },
    {
        'title': 'Basement Waterproofing',
        'description': 'Interior and exterior waterproofing that keeps basements dry through spring thaw.',
        'content': (
            '<p>A dry basement starts with sealed cracks, working drainage, and correct grading.</p>'
            '<img src="/images/services/basement-waterproofing.jpg" alt="Basement waterproofing">'
        ),
        'image': '/images/services/basement-waterproofing.jpg',
        'featured': True,
        'meta_description': 'Basement waterproofing services in Edmonton.',
        'keywords': 'basement waterproofing, edmonton',
        'faqs': [
            ('Do you need to excavate?', 'Interior systems usually do not require excavation.'),
        ],
    },
    {
        'title': 'Crack Injection',
        'description': 'Epoxy and polyurethane crack injection for permanent, watertight repairs.',
        'content': (
            '<p>Epoxy restores strength to structural cracks; polyurethane seals active leaks.</p>'
            '<img src="/images/services/crack-injection.jpg" alt="Crack injection">'
        ),
        'image': '/images/services/crack-injection.jpg',
        'featured': False,
        'meta_description': 'Crack injection services in Edmonton.',
        'keywords': 'crack injection, epoxy injection, polyurethane injection',
        'faqs': [
            (
                'What is the difference between epoxy and polyurethane injection?',
                'Epoxy creates a rigid structural bond; polyurethane creates a flexible watertight seal.',
            ),
        ],
    },
]

DEMO_POSTS = [
    {
        'title': 'Types of Foundation Cracks and Assessment',
        'excerpt': 'Understanding the different types of foundation cracks and how to assess their severity.',
        'content': (
            '<p>Foundation cracks come in various forms, each indicating a different level of concern.</p>'
            '<img src="/images/stock/foundation-crack-types.jpg" alt="Types of foundation cracks">'
        ),
        'featured_image': '/images/stock/foundation-crack-types.jpg',
    },
    {
        'title': 'Why Is My Basement Leaking?',
        'excerpt': 'The most common reasons basements leak and what to do about them.',
        'content': (
            '<p>Most basement leaks come from foundation cracks, poor grading, or failed drainage.</p>'
            '<img src="/images/stock/basement-leak.jpg" alt="Basement leak">'
        ),
        'featured_image': '/images/stock/basement-leak.jpg',
    },
    {
        'title': 'Grading and Drainage for Foundation Protection',
        'excerpt': 'How proper grading and downspouts keep water away from your foundation.',
        'content': '<p>Water that pools against a foundation will eventually find a way in.</p>',
        'featured_image': '',
    },
]

WORK_DESCRIPTIONS = (
    '<p>Residential foundation repair: vertical cracks sealed with epoxy and polyurethane injection.</p>',
    '<p>Basement waterproofing and crack sealing after hydrostatic pressure caused horizontal cracks.</p>',
)


def _images_root():
    return current_app.config['IMAGES_FOLDER']


def seed_admin_user():
    username = current_app.config.get('ADMIN_USERNAME') or 'admin'
    env_password = os.environ.get('ADMIN_PASSWORD') or ''
    admin = User.query.filter_by(username=username).first()
    if admin:
        # Always sync admin password with env var on startup
        if env_password and not admin.check_password(env_password):
            admin.set_password(env_password)
            db.session.commit()
        return admin

    if not env_password:
        env_password = secrets.token_urlsafe(16)
        current_app.logger.warning(
            'ADMIN_PASSWORD not set. Seeded admin with a random password. '
            'Set ADMIN_PASSWORD and restart to rotate it to a known value.'
        )
    admin = User(username=username)
    admin.set_password(env_password)
    db.session.add(admin)
    db.session.commit()
    return admin


def seed_seo_defaults():
    existing = {row.page for row in SeoPage.query.all()}
    for page in SEO_PAGES:
        if page in existing:
            continue
        title, description, keywords = SEO_DEFAULTS.get(page, ('', '', ''))
        og_image = DEFAULT_OG_IMAGE if title else ''
        db.session.add(SeoPage(
            page=page,
            title=title,
            description=description,
            keywords=keywords,
            og_title=title,
            og_description=description,
            og_image=og_image,
            twitter_title=title,
            twitter_description=description,
            twitter_image=og_image,
        ))
    db.session.commit()


def seed_services():
    if Service.query.first():
        return 0
    images_root = _images_root()
    for data in DEMO_SERVICES:
        service = Service(
            title=data['title'],
            slug=slugify(data['title']),
            description=data['description'],
            content=fix_image_paths_in_html(data['content'], images_root),
            image=resolve_image_path(data['image'], images_root),
            featured=data['featured'],
            meta_title=data['title'],
            meta_description=data['meta_description'],
            keywords=data['keywords'],
        )
        for index, (question, answer) in enumerate(data['faqs']):
            service.faqs.append(ServiceFaq(question=question, answer=answer, sort_order=index))
        db.session.add(service)
    db.session.commit()
    return len(DEMO_SERVICES)


def seed_posts():
    if BlogPost.query.first():
        return 0
    images_root = _images_root()
    now = utc_now_naive()
    for data in DEMO_POSTS:
        db.session.add(BlogPost(
            title=data['title'],
            slug=slugify(data['title']),
            excerpt=data['excerpt'],
            content=fix_image_paths_in_html(data['content'], images_root),
            featured_image=resolve_image_path(data['featured_image'], images_root) if data['featured_image'] else '',
            published=True,
            published_at=now,
        ))
    db.session.commit()
    return len(DEMO_POSTS)


def _folder_sort_key(name):
    match = _DIGITS_RE.search(name)
    return (int(match.group()) if match else 0, name.lower())


def _image_kind(image_path):
    name = os.path.basename(image_path).lower()
    if 'before' in name:
        return 0
    if 'mid' in name or 'injection' in name or 'during' in name:
        return 1
    if 'after' in name:
        return 2
    return 3


def order_job_images(image_paths):
    """Before shots first, then work in progress, then after, then the rest."""
    return sorted(image_paths, key=_image_kind)


def collect_folder_images(folder_path, url_prefix):
    images = []
    for dirpath, dirnames, filenames in os.walk(folder_path):
        dirnames.sort()
        relative_dir = os.path.relpath(dirpath, folder_path)
        for filename in sorted(filenames):
            if os.path.splitext(filename)[1].lower().lstrip('.') not in IMAGE_EXTENSIONS:
                continue
            relative = filename if relative_dir == '.' else f'{relative_dir}/{filename}'
            images.append(f"{url_prefix}/{relative.replace(os.sep, '/')}")
    return images


def build_works_from_jobs():
    jobs_root = os.path.join(_images_root(), JOBS_FOLDER)
    if not os.path.isdir(jobs_root):
        current_app.logger.info(f'No {JOBS_FOLDER}/ image folder found; works are not seeded.')
        return []

    folders = sorted(
        (entry.name for entry in os.scandir(jobs_root) if entry.is_dir()),
        key=_folder_sort_key,
    )
    works = []
    for index, folder in enumerate(folders):
        images = collect_folder_images(
            os.path.join(jobs_root, folder),
            f'/images/{JOBS_FOLDER}/{folder}',
        )
        if not images:
            continue
        number = _folder_sort_key(folder)[0] or index + 1
        works.append(Work(
            title=f'Foundation Repair Project #{number}',
            description=WORK_DESCRIPTIONS[index % len(WORK_DESCRIPTIONS)],
            images=order_job_images(images),
            location='Edmonton, AB',
            completed_at=datetime(2024, 1, 1) + timedelta(days=15 * index),
            featured=index < 5,
        ))
    return works


def seed_works():
    if Work.query.first():
        return 0
    works = build_works_from_jobs()
    db.session.add_all(works)
    db.session.commit()
    return len(works)


def seed_database():
    seed_admin_user()
    SiteSettings.get_settings()
    GoogleReviewSettings.get_settings()
    seed_seo_defaults()
    services = seed_services()
    posts = seed_posts()
    works = seed_works()
    if services or posts or works:
        current_app.logger.info(f'Seeded {services} services, {posts} blog posts, {works} works.')
