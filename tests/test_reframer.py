"""Tests for print reframing and empty-band detection."""

import pytest
from PIL import Image, ImageDraw

from conftest import to_png
from page_pipeline.image_processor import decode_image
from page_pipeline.reframer import PageReframer


@pytest.fixture
def reframer():
    # Small print canvas with the Letter aspect ratio keeps the tests fast
    return PageReframer({
        'print_width': 255,
        'print_height': 330,
        'margin_percent': 2.0,
        'min_margin_percent': 1.5,
        'band_percent': 8,
        'empty_threshold': 0.92,
        'near_white_level': 250,
    })


@pytest.fixture
def dense_page_bytes():
    img = Image.new('L', (400, 600), 255)
    draw = ImageDraw.Draw(img)
    for y in range(0, 600, 6):
        draw.line([(0, y), (399, y)], fill=0, width=3)
    return to_png(img.convert('RGB'))


class TestReframe:
    def test_output_is_print_canvas(self, reframer, dense_page_bytes):
        result = reframer.reframe(dense_page_bytes)

        img = decode_image(result.image_bytes)
        assert (result.width, result.height) == (255, 330)
        assert img.size == (255, 330)
        assert img.mode == 'RGB'

    def test_margin_is_white(self, reframer, dense_page_bytes):
        result = reframer.reframe(dense_page_bytes)

        img = decode_image(result.image_bytes)
        # 2% of the shorter side is 5 pixels
        for x, y in [(0, 0), (2, 165), (254, 329), (127, 1)]:
            assert img.getpixel((x, y)) == (255, 255, 255)

    def test_filled_page_is_not_retried(self, reframer, dense_page_bytes):
        result = reframer.reframe(dense_page_bytes)

        assert result.was_retried is False
        assert result.margin_used == 2.0
        assert result.has_empty_top is False
        assert result.has_empty_bottom is False

    def test_empty_bottom_retries_once_with_smaller_margin(self, reframer, top_only_page_bytes):
        result = reframer.reframe(top_only_page_bytes, retry_with_smaller_margin=True)

        assert result.was_retried is True
        assert result.margin_used == 1.5
        # Still empty after the retry: flag surfaced, image still returned
        assert result.has_empty_bottom is True
        assert result.bottom_white_ratio > 0.92
        assert decode_image(result.image_bytes).size == (255, 330)

    def test_no_retry_when_disabled(self, reframer, top_only_page_bytes):
        result = reframer.reframe(top_only_page_bytes, retry_with_smaller_margin=False)

        assert result.was_retried is False
        assert result.margin_used == 2.0
        assert result.has_empty_bottom is True

    def test_explicit_aspect_ratio(self, reframer, dense_page_bytes):
        result = reframer.reframe(dense_page_bytes, target_aspect_ratio=1.0)

        assert (result.width, result.height) == (255, 255)

    def test_reports_coverage_of_final_canvas(self, reframer, top_only_page_bytes):
        result = reframer.reframe(top_only_page_bytes)

        assert result.coverage is not None
        assert result.coverage.bbox_bottom_ratio < 0.7
