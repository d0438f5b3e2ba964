from typing import Any, Dict, Optional, Tuple

from PIL import Image
from loguru import logger

from .image_processor import (
    band_white_ratio,
    cover_crop,
    decode_image,
    encode_png,
    flatten_onto_white,
    measure_coverage,
)
from .models import ReframeResult


class PageReframer:
    def __init__(self, reframe_settings: Dict[str, Any], validation_settings: Optional[Dict[str, Any]] = None):
        """Initialize the reframer with print canvas and band sampling settings."""
        self.print_width = reframe_settings.get('print_width', 2550)
        self.print_height = reframe_settings.get('print_height', 3300)
        self.margin_percent = reframe_settings.get('margin_percent', 2.0)
        self.min_margin_percent = reframe_settings.get('min_margin_percent', 1.5)
        self.band_percent = reframe_settings.get('band_percent', 8)
        self.empty_threshold = reframe_settings.get('empty_threshold', 0.92)
        self.near_white_level = reframe_settings.get('near_white_level', 250)
        self.retry_with_smaller_margin = reframe_settings.get('retry_with_smaller_margin', True)

        # Coverage of the final canvas uses the validator's ink settings
        validation_settings = validation_settings or {}
        self.ink_threshold = validation_settings.get('ink_threshold', 128)
        self.bottom_band_ratio = validation_settings.get('bottom_band_ratio', 0.10)

    @property
    def print_aspect_ratio(self) -> float:
        return self.print_width / self.print_height

    def reframe(self, image_bytes: bytes, target_aspect_ratio: Optional[float] = None,
                margin_percent: Optional[float] = None,
                retry_with_smaller_margin: Optional[bool] = None) -> ReframeResult:
        """Fit an accepted image onto the print canvas and report empty bands.

        Args:
            image_bytes: Sanitized PNG bytes of the accepted image.
            target_aspect_ratio: width / height of the print canvas; defaults to the configured print size.
            margin_percent: White margin on every edge as a percent of the shorter canvas side.
            retry_with_smaller_margin: Re-crop once at min_margin_percent when a band is empty.

        Returns:
            ReframeResult with the final PNG, the margin used and the empty-band flags.
            The image is always returned, even when a band is still empty.
        """
        ratio = target_aspect_ratio or self.print_aspect_ratio
        margin = self.margin_percent if margin_percent is None else margin_percent
        allow_retry = self.retry_with_smaller_margin if retry_with_smaller_margin is None else retry_with_smaller_margin

        source = flatten_onto_white(decode_image(image_bytes))
        canvas_size = (self.print_width, int(round(self.print_width / ratio)))

        canvas = self._compose(source, canvas_size, margin)
        top_white, bottom_white = self._band_ratios(canvas)
        was_retried = False

        if allow_retry and self._is_empty(top_white, bottom_white):
            logger.info(f"Empty band after reframe at {margin}% margin (top={top_white:.2f}, bottom={bottom_white:.2f}). "
                        f"Retrying at {self.min_margin_percent}%")
            margin = self.min_margin_percent
            canvas = self._compose(source, canvas_size, margin)
            top_white, bottom_white = self._band_ratios(canvas)
            was_retried = True

        has_empty_top = top_white > self.empty_threshold
        has_empty_bottom = bottom_white > self.empty_threshold
        if has_empty_top or has_empty_bottom:
            logger.warning(f"Reframed page still has an empty band (top={has_empty_top}, bottom={has_empty_bottom})")

        return ReframeResult(
            image_bytes=encode_png(canvas),
            width=canvas.width,
            height=canvas.height,
            margin_used=margin,
            was_retried=was_retried,
            top_white_ratio=top_white,
            bottom_white_ratio=bottom_white,
            has_empty_top=has_empty_top,
            has_empty_bottom=has_empty_bottom,
            coverage=measure_coverage(canvas, self.ink_threshold, self.bottom_band_ratio),
        )

    def _compose(self, source: Image.Image, canvas_size: Tuple[int, int], margin_percent: float) -> Image.Image:
        """Cover-crop the source into the canvas area inside the margin, on white."""
        canvas_width, canvas_height = canvas_size
        margin_pixels = int(round(min(canvas_width, canvas_height) * margin_percent / 100))
        inner_width = canvas_width - 2 * margin_pixels
        inner_height = canvas_height - 2 * margin_pixels

        artwork = cover_crop(source, inner_width, inner_height)
        background = Image.new('RGB', canvas_size, 'white')
        background.paste(artwork, (margin_pixels, margin_pixels))
        return background

    def _band_ratios(self, canvas: Image.Image) -> Tuple[float, float]:
        band_ratio = self.band_percent / 100
        top = band_white_ratio(canvas, band_ratio, from_top=True, near_white_level=self.near_white_level)
        bottom = band_white_ratio(canvas, band_ratio, from_top=False, near_white_level=self.near_white_level)
        return top, bottom

    def _is_empty(self, top_white: float, bottom_white: float) -> bool:
        return top_white > self.empty_threshold or bottom_white > self.empty_threshold
