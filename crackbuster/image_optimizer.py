import os
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError

RASTER_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif')
OPTIMIZABLE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.webp')
PIL_FORMATS = {
    '.jpg': 'JPEG',
    '.jpeg': 'JPEG',
    '.png': 'PNG',
    '.webp': 'WEBP',
}


class ImageOptimizationError(Exception):
    pass


@dataclass
class OptimizationResult:
    path: str
    format: str
    original_size: int
    new_size: int

    @property
    def saved_bytes(self):
        return self.original_size - self.new_size

    @property
    def saved_percent(self):
        if not self.original_size:
            return 0.0
        return round(self.saved_bytes * 100.0 / self.original_size, 1)


@dataclass
class ConversionSummary:
    converted: int = 0
    skipped: int = 0
    failed: int = 0


def _save_kwargs(pil_format, quality):
    if pil_format == 'WEBP':
        return {'quality': quality, 'method': 6}
    if pil_format == 'JPEG':
        return {'quality': quality, 'optimize': True, 'progressive': True}
    if pil_format == 'PNG':
        return {'optimize': True, 'compress_level': 9}
    return {}


def _prepare_image(image, pil_format):
    image = ImageOps.exif_transpose(image)
    if pil_format == 'JPEG' and image.mode not in ('RGB', 'L'):
        return image.convert('RGB')
    if pil_format == 'WEBP' and image.mode not in ('RGB', 'RGBA'):
        return image.convert('RGBA' if 'A' in image.getbands() or 'transparency' in image.info else 'RGB')
    return image


def optimize_image(image_path, quality=85, max_width=None, max_height=None, convert_to_webp=False):
    """Re-encode `image_path`, optionally resizing and converting it to WebP.

    Converting writes the ``.webp`` sibling and removes the original file.
    Otherwise the file is rewritten in place through a temporary file.
    """
    if not os.path.isfile(image_path):
        raise ImageOptimizationError('Image file not found')

    base, ext = os.path.splitext(image_path)
    ext = ext.lower()
    if convert_to_webp:
        if ext not in RASTER_EXTENSIONS and ext != '.webp':
            raise ImageOptimizationError('Only JPG, PNG, GIF and WebP images can be converted')
        output_path = f'{base}.webp'
        pil_format = 'WEBP'
    else:
        if ext not in OPTIMIZABLE_EXTENSIONS:
            raise ImageOptimizationError('Only JPG, PNG and WebP images can be optimized')
        output_path = image_path
        pil_format = PIL_FORMATS[ext]

    original_size = os.path.getsize(image_path)
    temp_path = f'{base}.tmp{os.path.splitext(output_path)[1]}'
    try:
        with Image.open(image_path) as source:
            image = _prepare_image(source, pil_format)
            if max_width or max_height:
                image.thumbnail((max_width or image.width, max_height or image.height))
            image.save(temp_path, format=pil_format, **_save_kwargs(pil_format, quality))
    except (UnidentifiedImageError, OSError, ValueError, KeyError, Image.DecompressionBombError) as exc:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise ImageOptimizationError(f'Unable to process image: {exc}') from exc

    os.replace(temp_path, output_path)
    if output_path != image_path and os.path.exists(image_path):
        os.remove(image_path)

    return OptimizationResult(
        path=output_path,
        format=pil_format.lower(),
        original_size=original_size,
        new_size=os.path.getsize(output_path),
    )


def optimize_for_web(image_path, max_width=1920, max_height=1920, quality=85):
    is_webp = image_path.lower().endswith('.webp')
    return optimize_image(
        image_path,
        quality=quality,
        max_width=max_width,
        max_height=max_height,
        convert_to_webp=not is_webp,
    )


def iter_raster_files(root):
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in sorted(filenames):
            if os.path.splitext(filename)[1].lower() in RASTER_EXTENSIONS:
                yield os.path.join(dirpath, filename)


def convert_tree_to_webp(root, quality=82, max_width=1920, logger=None):
    """Convert every raster image under `root` to WebP.

    Files whose ``.webp`` sibling already exists are skipped and left alone.
    """
    summary = ConversionSummary()
    if not os.path.isdir(root):
        return summary
    for file_path in list(iter_raster_files(root)):
        webp_path = os.path.splitext(file_path)[0] + '.webp'
        relative = os.path.relpath(file_path, root)
        if os.path.exists(webp_path):
            summary.skipped += 1
            if logger:
                logger.info(f'Skip (webp exists): {relative}')
            continue
        try:
            optimize_image(file_path, quality=quality, max_width=max_width, convert_to_webp=True)
        except ImageOptimizationError:
            summary.failed += 1
            if logger:
                logger.exception(f'WebP conversion failed: {relative}')
            continue
        summary.converted += 1
        if logger:
            logger.info(f'Converted {relative} -> {os.path.basename(webp_path)}')
    return summary
