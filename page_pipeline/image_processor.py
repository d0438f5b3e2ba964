from io import BytesIO
from typing import Optional, Tuple

from PIL import Image, ImageFilter, UnidentifiedImageError
from loguru import logger

from .errors import SanitizationFailure
from .models import CoverageMeasurement

WHITE_THRESHOLD = 245
DARK_THRESHOLD = 10
# Fraction of dark pixels above which a canvas is treated as having no content
MAX_DARK_RATIO = 0.98


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode raw bytes into a loaded PIL image, raising SanitizationFailure on bad input."""
    if not image_bytes:
        raise SanitizationFailure("Image data is empty")
    try:
        img = Image.open(BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise SanitizationFailure(f"Could not decode image: {str(e)}") from e
    return img


def encode_png(img: Image.Image) -> bytes:
    """Encode an image as PNG bytes."""
    buffer = BytesIO()
    img.save(buffer, "PNG")
    return buffer.getvalue()


def flatten_onto_white(img: Image.Image) -> Image.Image:
    """Composite any transparency onto an opaque white canvas of the same size (RGB)."""
    if img.mode == 'P' and 'transparency' in img.info:
        img = img.convert('RGBA')

    if img.mode in ('RGBA', 'LA', 'PA'):
        rgba = img.convert('RGBA')
        background = Image.new('RGBA', rgba.size, (255, 255, 255, 255))
        background.alpha_composite(rgba)
        return background.convert('RGB')

    if img.mode != 'RGB':
        return img.convert('RGB')
    return img


def sanitize_image(image_bytes: bytes) -> bytes:
    """Flatten a candidate image onto white and return it as RGB PNG bytes.

    Raises:
        SanitizationFailure: if the bytes are not a decodable image, or the
            canvas is almost entirely black (the model produced no content).
    """
    img = decode_image(image_bytes)
    logger.debug(f"Sanitizing image: format={img.format}, mode={img.mode}, size={img.size}")

    flattened = flatten_onto_white(img)

    dark_ratio = luminance_fraction(flattened.convert('L'), upper=DARK_THRESHOLD)
    if dark_ratio > MAX_DARK_RATIO:
        raise SanitizationFailure(f"Image is {dark_ratio:.1%} black, no content to keep")

    return encode_png(flattened)


# --- Pixel measurements --- #

def luminance_fraction(gray: Image.Image, lower: int = 0, upper: int = 255) -> float:
    """Fraction of pixels of an 'L' image whose value lies in [lower, upper]."""
    histogram = gray.histogram()
    total = gray.width * gray.height
    if total == 0:
        return 0.0
    return sum(histogram[lower:upper + 1]) / total


def ink_mask(img: Image.Image, ink_threshold: int) -> Image.Image:
    """Binary mask (255 = ink) of pixels darker than ink_threshold."""
    return img.convert('L').point(lambda p: 255 if p < ink_threshold else 0)


def band_white_ratio(img: Image.Image, band_ratio: float, from_top: bool, near_white_level: int = 250) -> float:
    """Fraction of near-white pixels in the top or bottom horizontal band."""
    gray = img.convert('L')
    band_height = max(1, int(round(gray.height * band_ratio)))
    if from_top:
        band = gray.crop((0, 0, gray.width, band_height))
    else:
        band = gray.crop((0, gray.height - band_height, gray.width, gray.height))
    return luminance_fraction(band, lower=near_white_level + 1)


def measure_coverage(img: Image.Image, ink_threshold: int = 128, bottom_band_ratio: float = 0.10) -> CoverageMeasurement:
    """Measure the ink bounding box and the ink density of the bottom band."""
    mask = ink_mask(img, ink_threshold)
    width, height = mask.size
    bbox = mask.getbbox()

    if bbox is None:
        return CoverageMeasurement(bbox=None, bbox_height_ratio=0.0, bbox_bottom_ratio=0.0, bottom_ink_ratio=0.0)

    _, top, _, bottom = bbox
    band_height = max(1, int(round(height * bottom_band_ratio)))
    bottom_band = mask.crop((0, height - band_height, width, height))

    return CoverageMeasurement(
        bbox=tuple(bbox),
        bbox_height_ratio=(bottom - top) / height,
        bbox_bottom_ratio=bottom / height,
        bottom_ink_ratio=luminance_fraction(bottom_band, lower=255),
    )


def gray_shading_mask(img: Image.Image, low: int = 64, high: int = 200, smoothing: int = 5) -> Image.Image:
    """Mask (255 = shaded) of mid-gray pixels that survive a median filter.

    Anti-aliased line edges are thin and disappear under the filter; shaded
    areas do not.
    """
    gray = img.convert('L').filter(ImageFilter.MedianFilter(smoothing))
    return gray.point(lambda p: 255 if low <= p <= high else 0)


def solid_fill_mask(img: Image.Image, ink_threshold: int = 128, kernel_size: int = 9) -> Image.Image:
    """Ink regions wider than kernel_size in both directions (outlines erode away)."""
    if kernel_size % 2 == 0:
        kernel_size += 1
    return ink_mask(img, ink_threshold).filter(ImageFilter.MinFilter(kernel_size))


def edge_line_fractions(img: Image.Image, ink_threshold: int = 128, depth_ratio: float = 0.03) -> Tuple[float, float, float, float]:
    """Highest ink fraction of any single row/column near each edge (top, bottom, left, right)."""
    mask = ink_mask(img, ink_threshold)
    width, height = mask.size
    depth_y = max(1, int(height * depth_ratio))
    depth_x = max(1, int(width * depth_ratio))

    def line_fraction(box: Tuple[int, int, int, int]) -> float:
        return luminance_fraction(mask.crop(box), lower=255)

    top = max(line_fraction((0, y, width, y + 1)) for y in range(depth_y))
    bottom = max(line_fraction((0, height - y - 1, width, height - y)) for y in range(depth_y))
    left = max(line_fraction((x, 0, x + 1, height)) for x in range(depth_x))
    right = max(line_fraction((width - x - 1, 0, width - x, height)) for x in range(depth_x))
    return top, bottom, left, right


def describe_region(bbox: Optional[Tuple[int, int, int, int]], size: Tuple[int, int]) -> str:
    """Name the part of the canvas a bounding box sits in, e.g. 'upper left'."""
    if bbox is None:
        return "nowhere"
    width, height = size
    center_x = (bbox[0] + bbox[2]) / 2 / width
    center_y = (bbox[1] + bbox[3]) / 2 / height

    vertical = "upper" if center_y < 1 / 3 else "lower" if center_y > 2 / 3 else "middle"
    horizontal = "left" if center_x < 1 / 3 else "right" if center_x > 2 / 3 else "center"
    if vertical == "middle" and horizontal == "center":
        return "center"
    return f"{vertical} {horizontal}"


# --- Geometry --- #

def cover_crop(img: Image.Image, target_width: int, target_height: int,
               resample: Image.Resampling = Image.Resampling.LANCZOS) -> Image.Image:
    """Scale to fill the target dimensions and center-crop the excess."""
    if img.width == 0 or img.height == 0:
        raise SanitizationFailure("Cannot crop an empty image")

    # Use the larger ratio so the image fills the target dimensions
    width_ratio = target_width / img.width
    height_ratio = target_height / img.height
    scale_factor = max(width_ratio, height_ratio)

    new_width = max(target_width, int(round(img.width * scale_factor)))
    new_height = max(target_height, int(round(img.height * scale_factor)))
    img_resized = img.resize((new_width, new_height), resample)

    left = (new_width - target_width) // 2
    top = (new_height - target_height) // 2
    return img_resized.crop((left, top, left + target_width, top + target_height))
