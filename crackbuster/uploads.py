import os
import re
import secrets
import time

from flask import current_app
from PIL import Image, UnidentifiedImageError
from slugify import slugify
from werkzeug.utils import secure_filename

from .images import IMAGES_URL_PREFIX, image_file_path

EXTENSION_MIME_TYPES = {
    'png': {'image/png'},
    'jpg': {'image/jpeg'},
    'jpeg': {'image/jpeg'},
    'gif': {'image/gif'},
    'webp': {'image/webp'},
}
_FOLDER_RE = re.compile(r'^[a-z0-9][a-z0-9_-]{0,79}(/[a-z0-9][a-z0-9_-]{0,79}){0,3}$')


class UploadError(Exception):
    pass


def file_extension(filename):
    if '.' not in (filename or ''):
        return ''
    return filename.rsplit('.', 1)[1].lower()


def allowed_file(filename):
    return file_extension(filename) in current_app.config['ALLOWED_IMAGE_EXTENSIONS']


def _stream_size(file):
    file.stream.seek(0, os.SEEK_END)
    size = file.stream.tell()
    file.stream.seek(0)
    return size


def validate_uploaded_file(file):
    if not file or not file.filename:
        return False

    filename = secure_filename(file.filename)
    if not filename or len(filename) > 180 or not allowed_file(filename):
        return False

    extension = file_extension(filename)
    mime_type = (file.mimetype or '').split(';', 1)[0].lower()
    allowed_mimes = current_app.config.get('ALLOWED_UPLOAD_MIME_TYPES', set())
    if mime_type not in allowed_mimes or mime_type not in EXTENSION_MIME_TYPES.get(extension, set()):
        return False

    max_bytes = int(current_app.config.get('MAX_UPLOAD_FILE_BYTES') or 10 * 1024 * 1024)
    if _stream_size(file) > max_bytes:
        return False

    max_pixels = max(1, int(current_app.config.get('MAX_UPLOAD_IMAGE_PIXELS', 40_000_000)))
    try:
        with Image.open(file.stream) as image:
            width, height = image.size
            if width < 1 or height < 1 or (width * height) > max_pixels:
                return False
            image.verify()
        return True
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError):
        return False
    finally:
        file.stream.seek(0)


def normalize_folder(folder):
    """Lowercase relative folder under the image root, or None when unsafe."""
    candidate = (folder or '').strip().strip('/').lower()
    if not candidate or not _FOLDER_RE.match(candidate):
        return None
    return candidate


def folder_path(folder):
    root = os.path.abspath(current_app.config['IMAGES_FOLDER'])
    full_path = os.path.abspath(os.path.join(root, folder))
    if os.path.commonpath([root, full_path]) != root:
        raise UploadError('Invalid folder.')
    return full_path


def unique_image_name(original_filename, name_hint=''):
    extension = file_extension(secure_filename(original_filename or ''))
    stem = slugify(name_hint or os.path.splitext(original_filename or '')[0], max_length=60) or 'image'
    return f'{stem}-{int(time.time() * 1000)}-{secrets.token_hex(4)}.{extension}'


def save_image_upload(file, folder, name_hint=''):
    """Validate and store `file` under `folder`; returns its ``/images/...`` path."""
    if not validate_uploaded_file(file):
        raise UploadError('Invalid image file. Upload JPG, PNG, GIF or WebP images up to 10MB.')
    target_dir = folder_path(folder)
    os.makedirs(target_dir, exist_ok=True)
    filename = unique_image_name(file.filename, name_hint)
    file.save(os.path.join(target_dir, filename))
    return f'{IMAGES_URL_PREFIX}{folder}/{filename}'


def remove_image_files(image_paths):
    images_root = current_app.config['IMAGES_FOLDER']
    removed = 0
    for image_path in image_paths or []:
        full_path = image_file_path(image_path, images_root)
        if not full_path or not os.path.isfile(full_path):
            continue
        try:
            os.remove(full_path)
            removed += 1
        except OSError:
            current_app.logger.exception(f'Failed to delete image file {image_path}')
    return removed
