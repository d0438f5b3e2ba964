import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image
from loguru import logger

from .errors import PageGenerationError, VerdictParseError
from .image_processor import (
    decode_image,
    describe_region,
    edge_line_fractions,
    flatten_onto_white,
    gray_shading_mask,
    luminance_fraction,
    measure_coverage,
    solid_fill_mask,
)
from .models import CoverageMeasurement, SubjectIdentityProfile, ValidationKind, ValidationResult

COVERAGE_RETRY_REINFORCEMENT = (
    "CRITICAL: The artwork must fill the FULL PAGE. Extend the scene from top to bottom edge, "
    "with ground, floor or props reaching the bottom edge. No large empty white areas."
)
FILL_RETRY_REINFORCEMENT = (
    "CRITICAL: Remove ALL black fills{locations}. Convert to OUTLINES ONLY. Interior must be WHITE."
)
GRAYSCALE_RETRY_REINFORCEMENT = (
    "CRITICAL: Remove ALL gray/shading. Use ONLY pure black lines on pure white. ZERO gray pixels."
)
BORDER_RETRY_REINFORCEMENT = "CRITICAL: Do NOT draw a border or frame around the page."


@dataclass(frozen=True)
class OutlineVerdict:
    has_black_fills: bool
    has_grayscale: bool
    has_unwanted_border: bool
    fill_locations: Tuple[str, ...]
    confidence: float
    notes: str


@dataclass(frozen=True)
class IdentityVerdict:
    detected_species: str
    matches_species: bool
    present_traits: Tuple[str, ...]
    missing_traits: Tuple[str, ...]
    has_unexpected_markings: bool
    confidence: float
    notes: str


# --- Vision verdict parsing --- #

def _load_json_object(text: str) -> Dict[str, Any]:
    cleaned = re.sub(r"```(?:json)?", "", text or "", flags=re.IGNORECASE).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise VerdictParseError(f"Verdict is not valid JSON: {str(e)}") from e
    if not isinstance(data, dict):
        raise VerdictParseError(f"Verdict must be a JSON object, got {type(data).__name__}")
    return data


def _require_bool(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if not isinstance(value, bool):
        raise VerdictParseError(f"Verdict field '{key}' must be true/false, got {value!r}")
    return value


def _optional_str_list(data: Dict[str, Any], key: str) -> Tuple[str, ...]:
    value = data.get(key, [])
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise VerdictParseError(f"Verdict field '{key}' must be a list of strings")
    return tuple(value)


def _confidence(data: Dict[str, Any]) -> float:
    value = data.get('confidence', 0.5)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
        raise VerdictParseError(f"Verdict confidence must be a number in [0, 1], got {value!r}")
    return float(value)


def parse_outline_verdict(text: str) -> OutlineVerdict:
    """Parse raw vision text into an OutlineVerdict or raise VerdictParseError."""
    data = _load_json_object(text)
    return OutlineVerdict(
        has_black_fills=_require_bool(data, 'hasBlackFills'),
        has_grayscale=_require_bool(data, 'hasGrayscale'),
        has_unwanted_border=_require_bool(data, 'hasUnwantedBorder'),
        fill_locations=_optional_str_list(data, 'fillLocations'),
        confidence=_confidence(data),
        notes=str(data.get('notes') or ""),
    )


def parse_identity_verdict(text: str) -> IdentityVerdict:
    """Parse raw vision text into an IdentityVerdict or raise VerdictParseError."""
    data = _load_json_object(text)
    detected = data.get('detectedSpecies')
    if not isinstance(detected, str) or not detected.strip():
        raise VerdictParseError(f"Verdict field 'detectedSpecies' must be a non-empty string, got {detected!r}")
    markings = data.get('hasUnexpectedMarkings', False)
    if not isinstance(markings, bool):
        raise VerdictParseError(f"Verdict field 'hasUnexpectedMarkings' must be true/false, got {markings!r}")
    return IdentityVerdict(
        detected_species=detected.strip(),
        matches_species=_require_bool(data, 'matchesSpecies'),
        present_traits=_optional_str_list(data, 'presentTraits'),
        missing_traits=_optional_str_list(data, 'missingTraits'),
        has_unexpected_markings=markings,
        confidence=_confidence(data),
        notes=str(data.get('notes') or ""),
    )


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


class QualityValidator:
    def __init__(self, validation_settings: Dict[str, Any], vision_client=None):
        """Initialize the validator with thresholds and an optional vision client.

        Args:
            validation_settings: The ``validation`` config section.
            vision_client: Object with ``assess_outline`` and ``assess_identity``
                (normally the APIClient). Without one only pixel checks run and
                identity cannot be confirmed.
        """
        self.ink_threshold = validation_settings.get('ink_threshold', 128)
        self.min_bbox_height_ratio = validation_settings.get('min_bbox_height_ratio', 0.88)
        self.max_bottom_gap_ratio = validation_settings.get('max_bottom_gap_ratio', 0.05)
        self.bottom_band_ratio = validation_settings.get('bottom_band_ratio', 0.10)
        self.min_bottom_ink_ratio = validation_settings.get('min_bottom_ink_ratio', 0.05)
        self.max_gray_ratio = validation_settings.get('max_gray_ratio', 0.02)
        self.max_solid_fill_ratio = validation_settings.get('max_solid_fill_ratio', 0.01)
        self.fill_kernel_size = validation_settings.get('fill_kernel_size', 9)
        self.border_edge_ink_ratio = validation_settings.get('border_edge_ink_ratio', 0.9)
        self.fail_on_vision_error = validation_settings.get('fail_on_vision_error', False)
        self.vision_client = vision_client if validation_settings.get('use_vision', True) else None

    def validate(self, image_bytes: bytes, identity_profile: Optional[SubjectIdentityProfile] = None,
                 validate_identity: bool = True) -> ValidationResult:
        """Run outline, coverage and (with a profile) identity checks on a sanitized image."""
        img = flatten_onto_white(decode_image(image_bytes))

        reasons: List[str] = []
        notes: List[str] = []
        reinforcement: List[str] = []
        confidences: List[float] = []

        outline_valid = self._check_outline_pixels(img, reasons, reinforcement)
        if self.vision_client is not None:
            vision_valid = self._check_outline_vision(image_bytes, reasons, notes, reinforcement, confidences)
            outline_valid = vision_valid and outline_valid

        coverage = measure_coverage(img, self.ink_threshold, self.bottom_band_ratio)
        coverage_valid = self._check_coverage(coverage, reasons)
        if not coverage_valid:
            reinforcement.append(COVERAGE_RETRY_REINFORCEMENT)

        identity_valid = None
        if identity_profile is not None and validate_identity:
            identity_valid = self._check_identity(image_bytes, identity_profile, reasons, notes, reinforcement,
                                                  confidences)

        failure_kinds = []
        if not outline_valid:
            failure_kinds.append(ValidationKind.OUTLINE)
        if not coverage_valid:
            failure_kinds.append(ValidationKind.COVERAGE)
        if identity_valid is False:
            failure_kinds.append(ValidationKind.IDENTITY)

        result = ValidationResult(
            outline_valid=outline_valid,
            coverage_valid=coverage_valid,
            identity_valid=identity_valid,
            confidence=min(confidences) if confidences else 1.0,
            reasons=tuple(reasons),
            notes=tuple(notes),
            failure_kinds=tuple(failure_kinds),
            coverage=coverage,
            # Vision and pixel checks can report the same violation twice
            retry_reinforcement="\n".join(dict.fromkeys(reinforcement)),
        )
        logger.info(f"Validation result: valid={result.valid} (outline={outline_valid}, coverage={coverage_valid}, "
                    f"identity={identity_valid}), confidence={result.confidence:.2f}")
        return result

    def _inconclusive(self, message: str, reasons: List[str], notes: List[str], confidences: List[float]) -> bool:
        """Record a check that could not be decided. It only fails when fail_on_vision_error is set."""
        confidences.append(0.0)
        if self.fail_on_vision_error:
            reasons.append(message)
            return False
        notes.append(message)
        return True

    # --- Outline --- #

    def _check_outline_pixels(self, img: Image.Image, reasons: List[str], reinforcement: List[str]) -> bool:
        valid = True

        shading = gray_shading_mask(img)
        gray_ratio = luminance_fraction(shading, lower=255)
        if gray_ratio > self.max_gray_ratio:
            region = describe_region(shading.getbbox(), img.size)
            reasons.append(f"outline: grayscale shading covers {gray_ratio:.1%} of the page ({region})")
            reinforcement.append(GRAYSCALE_RETRY_REINFORCEMENT)
            valid = False

        fills = solid_fill_mask(img, self.ink_threshold, self.fill_kernel_size)
        fill_ratio = luminance_fraction(fills, lower=255)
        if fill_ratio > self.max_solid_fill_ratio:
            region = describe_region(fills.getbbox(), img.size)
            reasons.append(f"outline: solid black fill covers {fill_ratio:.1%} of the page ({region})")
            reinforcement.append(FILL_RETRY_REINFORCEMENT.format(locations=f" (found in: {region})"))
            valid = False

        edges = edge_line_fractions(img, self.ink_threshold)
        if all(fraction >= self.border_edge_ink_ratio for fraction in edges):
            reasons.append("outline: border frame drawn along all four edges")
            reinforcement.append(BORDER_RETRY_REINFORCEMENT)
            valid = False

        return valid

    def _check_outline_vision(self, image_bytes: bytes, reasons: List[str], notes: List[str],
                              reinforcement: List[str], confidences: List[float]) -> bool:
        try:
            verdict = parse_outline_verdict(self.vision_client.assess_outline(image_bytes))
        except PageGenerationError as e:
            logger.warning(f"Outline vision check inconclusive: {str(e)}")
            return self._inconclusive(f"outline: vision check inconclusive ({str(e)})", reasons, notes, confidences)

        confidences.append(verdict.confidence)
        valid = True
        if verdict.has_black_fills:
            locations = ", ".join(verdict.fill_locations) or "unspecified areas"
            reasons.append(f"outline: black fills reported in {locations}")
            reinforcement.append(FILL_RETRY_REINFORCEMENT.format(locations=f" (found in: {locations})"))
            valid = False
        if verdict.has_grayscale:
            reasons.append("outline: grayscale shading reported")
            reinforcement.append(GRAYSCALE_RETRY_REINFORCEMENT)
            valid = False
        if verdict.has_unwanted_border:
            reasons.append("outline: unwanted border reported")
            reinforcement.append(BORDER_RETRY_REINFORCEMENT)
            valid = False
        return valid

    # --- Coverage --- #

    def _check_coverage(self, coverage: CoverageMeasurement, reasons: List[str]) -> bool:
        if coverage.bbox is None:
            reasons.append("coverage: page has no ink")
            return False

        valid = True
        if coverage.bbox_height_ratio < self.min_bbox_height_ratio:
            reasons.append(f"coverage: artwork spans {coverage.bbox_height_ratio:.0%} of page height "
                           f"(minimum {self.min_bbox_height_ratio:.0%})")
            valid = False
        min_bottom = 1.0 - self.max_bottom_gap_ratio
        if coverage.bbox_bottom_ratio < min_bottom:
            reasons.append(f"coverage: ink ends at {coverage.bbox_bottom_ratio:.0%} of page height "
                           f"(must reach {min_bottom:.0%})")
            valid = False
        if coverage.bottom_ink_ratio < self.min_bottom_ink_ratio:
            reasons.append(f"coverage: bottom {self.bottom_band_ratio:.0%} of the page has "
                           f"{coverage.bottom_ink_ratio:.1%} ink (minimum {self.min_bottom_ink_ratio:.0%})")
            valid = False
        return valid

    # --- Identity --- #

    def _check_identity(self, image_bytes: bytes, profile: SubjectIdentityProfile, reasons: List[str],
                        notes: List[str], reinforcement: List[str], confidences: List[float]) -> bool:
        if self.vision_client is None:
            return self._inconclusive("identity: no vision client configured, identity not confirmed", reasons, notes,
                                      confidences)

        try:
            verdict = parse_identity_verdict(self.vision_client.assess_identity(image_bytes, profile))
        except PageGenerationError as e:
            logger.warning(f"Identity vision check inconclusive: {str(e)}")
            return self._inconclusive(f"identity: vision check inconclusive ({str(e)})", reasons, notes, confidences)

        confidences.append(verdict.confidence)
        valid = True

        expected = _normalize(profile.species)
        detected = _normalize(verdict.detected_species)
        if not verdict.matches_species or (expected not in detected and detected not in expected):
            reasons.append(f"identity: expected a {profile.species} but found a {verdict.detected_species}")
            reinforcement.append(f"CRITICAL: You drew a {verdict.detected_species} but you MUST draw a "
                                 f"{profile.species}. DO NOT substitute species.")
            valid = False

        present = {_normalize(trait) for trait in verdict.present_traits}
        missing = {_normalize(trait) for trait in verdict.missing_traits}
        for trait in dict.fromkeys(profile.always_present + profile.must_not_change):
            key = _normalize(trait)
            if key in missing or key not in present:
                reasons.append(f"identity: trait '{trait}' missing or changed")
                reinforcement.append(f"CRITICAL: Keep '{trait}' exactly as described.")
                valid = False

        if verdict.has_unexpected_markings:
            reasons.append("identity: unexpected markings on the subject")
            reinforcement.append("CRITICAL: Remove unexpected markings. Outlines only.")
            valid = False

        return valid
