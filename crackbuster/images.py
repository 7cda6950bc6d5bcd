"""Resolve stored ``/images/...`` paths against the files actually on disk.

Content rows keep the image path they were written with. After a bulk
format migration (jpg/png to webp) the original file is gone but a sibling
with another extension exists; these helpers find it. Resolution only reads
the filesystem and degrades to the original path when nothing is found.
"""
import os
import re

IMAGES_URL_PREFIX = '/images/'
IMAGE_EXTENSIONS = ('webp', 'jpg', 'jpeg', 'png', 'gif')
_IMAGE_EXTENSION_RE = re.compile(r'\.(jpg|jpeg|png|gif|webp)$', re.IGNORECASE)
_SRC_ATTR_RE = re.compile(r'src="([^"]+)"')


def image_file_path(image_path, images_root):
    """Map an ``/images/...`` URL path to a file path inside `images_root`.

    Returns None for other paths and for paths escaping the root.
    """
    if not image_path or not image_path.startswith(IMAGES_URL_PREFIX) or not images_root:
        return None
    relative = image_path[len(IMAGES_URL_PREFIX):]
    root = os.path.abspath(images_root)
    full_path = os.path.abspath(os.path.join(root, relative))
    try:
        if os.path.commonpath([root, full_path]) != root:
            return None
    except ValueError:
        return None
    return full_path


def _is_file(full_path):
    try:
        return bool(full_path) and os.path.isfile(full_path)
    except OSError:
        return False


def image_exists(image_path, images_root):
    return _is_file(image_file_path(image_path, images_root))


def _alternate_candidates(image_path):
    match = _IMAGE_EXTENSION_RE.search(image_path)
    original_ext = match.group(1).lower() if match else ''
    base = image_path[:match.start()] if match else image_path
    for ext in IMAGE_EXTENSIONS:
        if ext != original_ext:
            yield f'{base}.{ext}'


def find_existing_image(image_path, images_root):
    """Return the stored path or an existing sibling, or None when neither exists."""
    if not image_path or not image_path.startswith(IMAGES_URL_PREFIX):
        return None
    if image_exists(image_path, images_root):
        return image_path
    for candidate in _alternate_candidates(image_path):
        if image_exists(candidate, images_root):
            return candidate
    return None


def resolve_image_path(image_path, images_root):
    """Return the first existing variant of `image_path`, else `image_path` itself.

    Probe order after the verbatim path: webp, jpg, jpeg, png, gif, skipping
    the extension that already failed. Non ``/images/`` values (external URLs,
    empty fields) pass through untouched.
    """
    return find_existing_image(image_path, images_root) or image_path


def fix_image_paths_in_html(html_content, images_root):
    if not html_content:
        return html_content

    def _replace(match):
        src = match.group(1)
        if src.startswith(IMAGES_URL_PREFIX):
            return f'src="{resolve_image_path(src, images_root)}"'
        return match.group(0)

    return _SRC_ATTR_RE.sub(_replace, html_content)


def existing_images(image_paths, images_root):
    """Gallery view of `image_paths`: missing files dropped, migrated ones rewritten."""
    result = []
    for image_path in image_paths or []:
        resolved = find_existing_image(image_path, images_root)
        if resolved:
            result.append(resolved)
    return result
