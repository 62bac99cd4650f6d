import io

import pytest
from PIL import Image

from minder_resilience.core_logic.transfer_manager import ResizeOptions, UploadFile
from minder_resilience.image_processing import compute_target_dimensions, optimize_image
from minder_resilience.utils import ImageProcessingError
from tests.mocks.mock_transport import make_image_bytes


@pytest.mark.parametrize("width, height, fit, expected", [
    (400, 400, "contain", (400, 300)),
    (400, 400, "cover", (533, 400)),
    (400, 400, "fill", (400, 400)),
    (200, None, "contain", (200, 150)),
    (None, 300, "cover", (400, 300)),
    (None, None, "contain", (800, 600)),
    (1600, None, "contain", (1600, 1200)),
])
def test_compute_target_dimensions(width, height, fit, expected):
    assert compute_target_dimensions(800, 600, width, height, fit) == expected


def test_dimensions_never_collapse_to_zero():
    assert compute_target_dimensions(1000, 1, 10, None) == (10, 1)


def test_unknown_fit_mode_is_rejected():
    with pytest.raises(ValueError):
        compute_target_dimensions(800, 600, 400, 400, "stretch")


def _decode(file: UploadFile) -> Image.Image:
    img = Image.open(io.BytesIO(file.data))
    img.load()
    return img


def test_scenario_d_contain_resize():
    source = UploadFile("photo.png", make_image_bytes(800, 600))
    result = optimize_image(source, ResizeOptions(width=400, height=400, fit="contain"))
    img = _decode(result)
    assert img.size == (400, 300)
    assert img.format == "JPEG"
    assert result.name == "photo.jpeg"
    assert result.mime_type == "image/jpeg"


def test_reencode_to_png_keeps_dimensions():
    source = UploadFile("photo.jpg", make_image_bytes(64, 32, "JPEG"))
    result = optimize_image(source, image_format="png")
    img = _decode(result)
    assert img.size == (64, 32)
    assert img.format == "PNG"
    assert result.name == "photo.png"


def test_rgba_source_is_flattened_for_jpeg():
    buffer = io.BytesIO()
    Image.new("RGBA", (20, 20), (0, 0, 255, 128)).save(buffer, format="PNG")
    result = optimize_image(UploadFile("icon.png", buffer.getvalue()), image_format="jpeg", quality=90)
    img = _decode(result)
    assert img.mode == "RGB"
    red, green, blue = img.getpixel((10, 10))
    assert 110 <= red <= 145
    assert 110 <= green <= 145
    assert blue >= 240


def test_lower_quality_produces_smaller_jpeg():
    noisy = Image.effect_noise((256, 256), 64).convert("RGB")
    buffer = io.BytesIO()
    noisy.save(buffer, format="PNG")
    source = UploadFile("noise.png", buffer.getvalue())
    small = optimize_image(source, quality=10)
    large = optimize_image(source, quality=95)
    assert small.size < large.size


def test_undecodable_payload_raises():
    with pytest.raises(ImageProcessingError):
        optimize_image(UploadFile("broken.png", b"not an image"))


def test_unsupported_format_raises():
    with pytest.raises(ImageProcessingError):
        optimize_image(UploadFile("a.png", make_image_bytes(4, 4)), image_format="bmp")
