"""Tests for sanitizing and pixel measurements."""

import pytest
from PIL import Image

from conftest import PAGE_HEIGHT, PAGE_WIDTH, to_png
from page_pipeline.errors import SanitizationFailure
from page_pipeline.image_processor import (
    band_white_ratio,
    cover_crop,
    decode_image,
    describe_region,
    measure_coverage,
    sanitize_image,
)


class TestSanitizeImage:
    def test_transparent_pixels_become_white(self):
        img = Image.new('RGBA', (40, 40), (0, 0, 0, 0))
        img.putpixel((5, 5), (0, 0, 0, 255))

        result = decode_image(sanitize_image(to_png(img)))

        assert result.mode == 'RGB'
        assert result.size == (40, 40)
        assert result.getpixel((0, 0)) == (255, 255, 255)
        assert result.getpixel((5, 5)) == (0, 0, 0)

    def test_palette_with_transparency_is_flattened(self):
        img = Image.new('P', (20, 20), 0)
        img.putpalette([0, 0, 0, 255, 255, 255] + [0] * 762)
        img.info['transparency'] = 0

        result = decode_image(sanitize_image(to_png(img)))

        assert result.mode == 'RGB'
        assert result.getpixel((10, 10)) == (255, 255, 255)

    def test_is_idempotent(self, valid_page_bytes):
        once = sanitize_image(valid_page_bytes)
        twice = sanitize_image(once)

        assert once == twice

    def test_grayscale_input_is_converted_to_rgb(self):
        img = Image.new('L', (30, 30), 255)

        assert decode_image(sanitize_image(to_png(img))).mode == 'RGB'

    @pytest.mark.parametrize("data", [b"", b"not an image", b"\x89PNG\r\n\x1a\n truncated"])
    def test_malformed_input_raises_typed_failure(self, data):
        with pytest.raises(SanitizationFailure):
            sanitize_image(data)

    def test_all_black_canvas_is_rejected(self):
        img = Image.new('RGB', (50, 50), 'black')

        with pytest.raises(SanitizationFailure, match="black"):
            sanitize_image(to_png(img))

    def test_oversized_image_raises_typed_failure(self, monkeypatch):
        # Twice the pixel limit makes Pillow refuse the image outright
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
        img = Image.new('RGB', (100, 100), 'white')

        with pytest.raises(SanitizationFailure, match="decode"):
            sanitize_image(to_png(img))


class TestMeasureCoverage:
    def test_full_page_line_art(self, valid_page):
        coverage = measure_coverage(valid_page)

        assert coverage.bbox is not None
        assert coverage.bbox_height_ratio > 0.9
        assert coverage.bbox_bottom_ratio > 0.95
        assert coverage.bottom_ink_ratio > 0.05

    def test_blank_canvas_has_no_bbox(self):
        coverage = measure_coverage(Image.new('RGB', (100, 100), 'white'))

        assert coverage.bbox is None
        assert coverage.bbox_height_ratio == 0.0
        assert coverage.bottom_ink_ratio == 0.0

    def test_ink_in_top_half_only(self, top_only_page_bytes):
        coverage = measure_coverage(decode_image(top_only_page_bytes))

        assert coverage.bbox_bottom_ratio < 0.6
        assert coverage.bottom_ink_ratio == 0.0


class TestBandWhiteRatio:
    def test_white_band_and_inked_band(self):
        img = Image.new('L', (100, 100), 255)
        img.paste(0, (0, 90, 100, 100))

        assert band_white_ratio(img, 0.1, from_top=True) == 1.0
        assert band_white_ratio(img, 0.1, from_top=False) == 0.0


class TestCoverCrop:
    def test_fills_target_without_letterboxing(self):
        img = Image.new('RGB', (PAGE_WIDTH, PAGE_HEIGHT), 'black')

        result = cover_crop(img, 300, 300)

        assert result.size == (300, 300)
        assert result.getpixel((0, 0)) == (0, 0, 0)
        assert result.getpixel((299, 299)) == (0, 0, 0)

    def test_crop_is_center_anchored(self):
        img = Image.new('RGB', (100, 300), 'white')
        img.paste((0, 0, 0), (0, 140, 100, 160))

        result = cover_crop(img, 100, 100)

        assert result.getpixel((50, 50)) == (0, 0, 0)
        assert result.getpixel((50, 5)) == (255, 255, 255)


def test_describe_region_names_corners_and_center():
    assert describe_region((0, 0, 10, 10), (300, 300)) == "upper left"
    assert describe_region((140, 140, 160, 160), (300, 300)) == "center"
    assert describe_region((280, 280, 300, 300), (300, 300)) == "lower right"
    assert describe_region(None, (300, 300)) == "nowhere"
