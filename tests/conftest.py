"""Shared fixtures: PIL-built pages and fakes for the generator, validator and clock."""

from io import BytesIO
from typing import List

import pytest
from PIL import Image, ImageDraw

from page_pipeline.api_client import GenerationResult
from page_pipeline.config import DEFAULT_CONFIG
from page_pipeline.models import ReframeResult, ValidationResult

PAGE_WIDTH = 400
PAGE_HEIGHT = 600


def to_png(img: Image.Image) -> bytes:
    buffer = BytesIO()
    img.save(buffer, "PNG")
    return buffer.getvalue()


def draw_line_art(img: Image.Image) -> Image.Image:
    """Outline-only page: a subject near the top and ground lines reaching the bottom edge."""
    draw = ImageDraw.Draw(img)
    draw.ellipse((100, 12, 300, 300), outline=0, width=3)
    draw.line([(200, 300), (200, 540)], fill=0, width=2)
    for y in (545, 560, 575, 590):
        draw.line([(0, y), (PAGE_WIDTH - 1, y)], fill=0, width=2)
    return img


def blank_page() -> Image.Image:
    return Image.new('L', (PAGE_WIDTH, PAGE_HEIGHT), 255)


@pytest.fixture
def valid_page() -> Image.Image:
    return draw_line_art(blank_page()).convert('RGB')


@pytest.fixture
def valid_page_bytes(valid_page) -> bytes:
    return to_png(valid_page)


@pytest.fixture
def top_only_page_bytes() -> bytes:
    """Ink only in the upper half: fails coverage and leaves an empty bottom band."""
    img = blank_page()
    ImageDraw.Draw(img).ellipse((100, 12, 300, 300), outline=0, width=3)
    return to_png(img.convert('RGB'))


@pytest.fixture
def filled_page_bytes() -> bytes:
    img = draw_line_art(blank_page())
    ImageDraw.Draw(img).rectangle((150, 100, 230, 180), fill=0)
    return to_png(img.convert('RGB'))


@pytest.fixture
def shaded_page_bytes() -> bytes:
    img = draw_line_art(blank_page())
    ImageDraw.Draw(img).rectangle((20, 320, 120, 420), fill=128)
    return to_png(img.convert('RGB'))


@pytest.fixture
def framed_page_bytes() -> bytes:
    img = draw_line_art(blank_page())
    ImageDraw.Draw(img).rectangle((2, 2, PAGE_WIDTH - 3, PAGE_HEIGHT - 3), outline=0, width=3)
    return to_png(img.convert('RGB'))


@pytest.fixture
def config():
    return {section: dict(values) for section, values in DEFAULT_CONFIG.items()}


@pytest.fixture
def storage_settings(tmp_path):
    return {
        'root_dir': str(tmp_path / "storage"),
        'bucket': 'generated',
        'retention_hours': 72,
        'signed_url_ttl_seconds': 300,
    }


class FakeClock:
    """Monotonic clock advanced only by sleeps and explicit ticks."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGenerator:
    """Returns scripted GenerationResults; the last one repeats."""

    def __init__(self, results, clock: FakeClock = None, seconds_per_call: float = 0.0):
        self.results = list(results)
        self.clock = clock
        self.seconds_per_call = seconds_per_call
        self.prompts: List[str] = []

    def generate(self, prompt, size) -> GenerationResult:
        self.prompts.append(prompt)
        if self.clock is not None:
            self.clock.advance(self.seconds_per_call)
        index = min(len(self.prompts), len(self.results)) - 1
        return self.results[index]


class FakeValidator:
    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    def validate(self, image_bytes, identity_profile=None, validate_identity=True) -> ValidationResult:
        self.calls += 1
        index = min(self.calls, len(self.results)) - 1
        return self.results[index]


class FakeReframer:
    def __init__(self):
        self.calls: List[bytes] = []

    def reframe(self, image_bytes, *args, **kwargs) -> ReframeResult:
        self.calls.append(image_bytes)
        return ReframeResult(
            image_bytes=image_bytes, width=PAGE_WIDTH, height=PAGE_HEIGHT, margin_used=2.0, was_retried=False,
            top_white_ratio=0.5, bottom_white_ratio=0.5, has_empty_top=False, has_empty_bottom=False,
        )


@pytest.fixture
def clock():
    return FakeClock()
