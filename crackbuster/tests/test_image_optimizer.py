import pytest
from PIL import Image

from crackbuster import image_optimizer
from crackbuster.image_optimizer import (
    ImageOptimizationError,
    convert_tree_to_webp,
    optimize_for_web,
    optimize_image,
)


def test_convert_to_webp_replaces_original(tmp_path, make_image):
    source = make_image(tmp_path / "before.jpg", size=(40, 30))

    result = optimize_image(str(source), quality=80, convert_to_webp=True)

    assert result.format == "webp"
    assert result.path == str(tmp_path / "before.webp")
    assert not source.exists()
    with Image.open(result.path) as converted:
        assert converted.format == "WEBP"
        assert converted.size == (40, 30)


def test_convert_resizes_to_max_width(tmp_path, make_image):
    source = make_image(tmp_path / "wide.png", size=(400, 100))

    result = optimize_image(str(source), max_width=200, convert_to_webp=True)

    with Image.open(result.path) as converted:
        assert converted.size == (200, 50)


def test_optimize_in_place_keeps_format(tmp_path, make_image):
    source = make_image(tmp_path / "photo.png", size=(20, 20))

    result = optimize_image(str(source))

    assert result.path == str(source)
    assert result.format == "png"
    assert source.exists()
    assert result.original_size > 0 and result.new_size > 0


def test_optimize_for_web_converts_non_webp(tmp_path, make_image):
    source = make_image(tmp_path / "shot.jpg", size=(10, 10))
    result = optimize_for_web(str(source), max_width=5, max_height=5)
    assert result.path.endswith("shot.webp")


def test_optimize_rejects_missing_and_invalid_files(tmp_path):
    with pytest.raises(ImageOptimizationError):
        optimize_image(str(tmp_path / "missing.jpg"))

    notes = tmp_path / "notes.txt"
    notes.write_text("not an image")
    with pytest.raises(ImageOptimizationError):
        optimize_image(str(notes), convert_to_webp=True)

    broken = tmp_path / "broken.jpg"
    broken.write_bytes(b"not really a jpeg")
    with pytest.raises(ImageOptimizationError):
        optimize_image(str(broken), convert_to_webp=True)
    assert broken.exists()
    assert not (tmp_path / "broken.webp").exists()


def test_convert_tree_skips_existing_webp_and_counts_failures(tmp_path, make_image):
    make_image(tmp_path / "jobs" / "1" / "before.jpg")
    make_image(tmp_path / "jobs" / "1" / "after.png")
    make_image(tmp_path / "jobs" / "2" / "during.jpg")
    make_image(tmp_path / "jobs" / "2" / "during.webp")
    (tmp_path / "jobs" / "2" / "corrupt.gif").write_bytes(b"not a gif")

    summary = convert_tree_to_webp(str(tmp_path), quality=70)

    assert summary.converted == 2
    assert summary.skipped == 1
    assert summary.failed == 1
    assert (tmp_path / "jobs" / "1" / "before.webp").exists()
    assert (tmp_path / "jobs" / "1" / "after.webp").exists()
    assert not (tmp_path / "jobs" / "1" / "before.jpg").exists()
    # Skipped originals stay in place next to their webp sibling.
    assert (tmp_path / "jobs" / "2" / "during.jpg").exists()


def test_convert_tree_on_missing_root_is_empty(tmp_path):
    summary = convert_tree_to_webp(str(tmp_path / "nope"))
    assert (summary.converted, summary.skipped, summary.failed) == (0, 0, 0)


@pytest.mark.parametrize(
    "error",
    [ValueError("conversion from I;16 to RGBA not supported"), KeyError("lossless")],
)
def test_unsupported_conversion_is_reported_not_raised(tmp_path, make_image, monkeypatch, error):
    def failing_prepare(image, pil_format):
        raise error

    monkeypatch.setattr(image_optimizer, "_prepare_image", failing_prepare)
    source = make_image(tmp_path / "deep.png")

    with pytest.raises(ImageOptimizationError):
        optimize_image(str(source), convert_to_webp=True)
    assert source.exists()
    assert not (tmp_path / "deep.webp").exists()


def test_convert_tree_counts_unconvertible_modes_and_keeps_going(tmp_path, make_image, monkeypatch):
    make_image(tmp_path / "a-ok.jpg")
    make_image(tmp_path / "b-sixteen-bit.png")
    make_image(tmp_path / "c-ok.jpg")
    real_prepare = image_optimizer._prepare_image

    def prepare(image, pil_format):
        if image.format == "PNG":
            raise ValueError("conversion from I;16 to RGBA not supported")
        return real_prepare(image, pil_format)

    monkeypatch.setattr(image_optimizer, "_prepare_image", prepare)
    summary = convert_tree_to_webp(str(tmp_path))

    assert (summary.converted, summary.skipped, summary.failed) == (2, 0, 1)
    assert (tmp_path / "b-sixteen-bit.png").exists()
    assert (tmp_path / "c-ok.webp").exists()
