"""
Image Pre-processing
====================

Optional resize and re-encode step applied to images before they are
uploaded, by either the direct or the chunked strategy.

Fit modes (when both a target width and height are given):
- cover:   scale by max(target_w/src_w, target_h/src_h); the result covers
           the whole box and may overflow it in one dimension.
- contain: scale by min(target_w/src_w, target_h/src_h); the result fits
           inside the box.
- fill:    use the target dimensions exactly, ignoring the aspect ratio.

With only one target dimension the other one scales proportionally.

Dependencies:
- PIL (Pillow): decoding, resampling and encoding
"""

import io
import logging
import os
from enum import Enum
from typing import Optional, Tuple, TYPE_CHECKING

from PIL import Image, UnidentifiedImageError

from .utils import ImageProcessingError

if TYPE_CHECKING:
    from .core_logic.transfer_manager import ResizeOptions, UploadFile

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = "jpeg"
DEFAULT_QUALITY = 90

# Requested format -> (Pillow encoder name, mime type, file extension)
_FORMATS = {
    "jpeg": ("JPEG", "image/jpeg", "jpeg"),
    "jpg": ("JPEG", "image/jpeg", "jpeg"),
    "png": ("PNG", "image/png", "png"),
    "webp": ("WEBP", "image/webp", "webp"),
}


class FitMode(str, Enum):
    COVER = "cover"
    CONTAIN = "contain"
    FILL = "fill"


def compute_target_dimensions(
    src_width: int,
    src_height: int,
    width: Optional[int] = None,
    height: Optional[int] = None,
    fit: str = FitMode.CONTAIN.value,
) -> Tuple[int, int]:
    """
    Compute the output dimensions for a resize request.

    Args:
        src_width: Source image width in pixels
        src_height: Source image height in pixels
        width: Target width, or None
        height: Target height, or None
        fit: One of 'cover', 'contain', 'fill'

    Returns:
        Tuple of (width, height), each rounded and at least 1 pixel

    Example:
        >>> compute_target_dimensions(800, 600, 400, 400, "contain")
        (400, 300)
    """
    if src_width <= 0 or src_height <= 0:
        raise ValueError(f"Invalid source dimensions {src_width}x{src_height}")

    mode = FitMode(fit)
    out_w, out_h = float(src_width), float(src_height)

    if width and height:
        if mode is FitMode.COVER:
            ratio = max(width / src_width, height / src_height)
            out_w, out_h = src_width * ratio, src_height * ratio
        elif mode is FitMode.CONTAIN:
            ratio = min(width / src_width, height / src_height)
            out_w, out_h = src_width * ratio, src_height * ratio
        else:
            out_w, out_h = width, height
    elif width:
        out_w, out_h = width, src_height * (width / src_width)
    elif height:
        out_w, out_h = src_width * (height / src_height), height

    return max(1, int(round(out_w))), max(1, int(round(out_h)))


def _flatten_onto_white(img: Image.Image) -> Image.Image:
    """Composites transparent pixels onto a white background (JPEG has no alpha)."""
    if img.mode == "P" and "transparency" in img.info:
        img = img.convert("RGBA")
    if img.mode not in ("RGBA", "LA"):
        return img.convert("RGB")
    background = Image.new("RGB", img.size, (255, 255, 255))
    background.paste(img.convert("RGBA"), mask=img.getchannel("A"))
    return background


def optimize_image(
    file: "UploadFile",
    resize: Optional["ResizeOptions"] = None,
    image_format: Optional[str] = None,
    quality: Optional[int] = None,
) -> "UploadFile":
    """
    Resize and re-encode an image payload.

    Args:
        file: The image to process
        resize: Target box and fit mode, or None to keep the dimensions
        image_format: 'jpeg', 'png' or 'webp' (default 'jpeg')
        quality: Encoder quality 1-100 (default 90)

    Returns:
        A new UploadFile with the re-encoded bytes, matching mime type and
        the file extension replaced

    Raises:
        ImageProcessingError: If the payload cannot be decoded or encoded
    """
    from .core_logic.transfer_manager import UploadFile

    fmt_key = (image_format or DEFAULT_FORMAT).lower()
    if fmt_key not in _FORMATS:
        raise ImageProcessingError(f"Unsupported image format: {image_format}")
    encoder, mime_type, extension = _FORMATS[fmt_key]
    quality = DEFAULT_QUALITY if quality is None else max(1, min(100, int(quality)))

    try:
        with Image.open(io.BytesIO(file.data)) as img:
            img.load()
            target = (img.width, img.height)
            if resize and (resize.width or resize.height):
                target = compute_target_dimensions(img.width, img.height, resize.width, resize.height, resize.fit)

            processed = img.resize(target, Image.Resampling.LANCZOS) if target != (img.width, img.height) else img.copy()
            if encoder == "JPEG" and processed.mode not in ("RGB", "L"):
                processed = _flatten_onto_white(processed)

            buffer = io.BytesIO()
            save_kwargs = {"quality": quality} if encoder in ("JPEG", "WEBP") else {"optimize": True}
            processed.save(buffer, format=encoder, **save_kwargs)
    except UnidentifiedImageError as e:
        raise ImageProcessingError(f"Failed to load image '{file.name}': {e}") from e
    except (OSError, ValueError) as e:
        raise ImageProcessingError(f"Failed to process image '{file.name}': {e}") from e

    stem, _ = os.path.splitext(file.name)
    optimized = UploadFile(name=f"{stem}.{extension}", data=buffer.getvalue(), mime_type=mime_type)
    logger.info(f"Image optimized: {file.size} -> {optimized.size} bytes ({target[0]}x{target[1]} {fmt_key})")
    return optimized
