import base64
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
from loguru import logger

from .errors import (
    ConfigurationError,
    GenerationError,
    GenerationErrorKind,
    GenerationFailure,
    classify_api_error,
)
from .models import ImageSize, SubjectIdentityProfile

COLORING_PAGE_PREFIX = (
    "IMPORTANT: Generate a COLORING BOOK PAGE with PURE WHITE background (#FFFFFF).\n"
    "The output must be BLACK LINE ART on WHITE BACKGROUND ONLY. No colors, no gray, no shading.\n"
    "This is a printable coloring page - the background MUST be pure white paper.\n\n"
)

# Aspect ratios accepted by the image model's imageConfig
SUPPORTED_ASPECT_RATIOS = {
    "1:1": 1.0,
    "2:3": 2 / 3,
    "3:2": 3 / 2,
    "3:4": 3 / 4,
    "4:3": 4 / 3,
    "9:16": 9 / 16,
    "16:9": 16 / 9,
}

# Finish/block reasons that mean the prompt or image was refused
CONTENT_POLICY_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY", "BLOCKLIST", "OTHER_SAFETY"}


@dataclass(frozen=True)
class GenerationResult:
    """Either one candidate image or a classified error, never both."""
    image: Optional[bytes] = None
    error: Optional[GenerationError] = None

    @property
    def ok(self) -> bool:
        return self.image is not None


def closest_aspect_ratio(size: ImageSize) -> str:
    """Map a pixel size onto the nearest aspect ratio the model accepts."""
    return min(SUPPORTED_ASPECT_RATIOS, key=lambda name: abs(SUPPORTED_ASPECT_RATIOS[name] - size.aspect_ratio))


def build_outline_prompt() -> str:
    return """You are a strict QA validator for coloring book images.

Analyze this image and check if it follows coloring page rules:
1. OUTLINES ONLY - no solid black fills
2. NO grayscale or shading
3. NO borders or frames around the image

Respond with ONLY valid JSON (no markdown, no explanation):
{
  "hasBlackFills": true/false,
  "hasGrayscale": true/false,
  "hasUnwantedBorder": true/false,
  "fillLocations": ["list of areas with fills, e.g., 'eye patches', 'ears'"],
  "confidence": 0.0-1.0,
  "notes": "brief explanation"
}

Be STRICT:
- Any solid black area larger than a thin line is a "fill"
- Panda patches, raccoon masks, dark ears should be outlines ONLY
- Gray shading anywhere = hasGrayscale true
- Rectangle around the image = hasUnwantedBorder true"""


def build_identity_prompt(profile: SubjectIdentityProfile) -> str:
    traits = list(profile.always_present) + [t for t in profile.must_not_change if t not in profile.always_present]
    trait_lines = "\n".join(f"- {trait}" for trait in traits) or "- (none listed)"
    subject = f"{profile.name} the {profile.species}" if profile.name else profile.species
    return f"""You are a strict QA validator for coloring book images.

Analyze this image and determine if the main character matches the required identity.

REQUIRED CHARACTER: {subject}
- Species: {profile.species}
Required traits:
{trait_lines}

Respond with ONLY valid JSON (no markdown, no explanation):
{{
  "detectedSpecies": "what animal/creature is shown",
  "matchesSpecies": true/false,
  "presentTraits": ["required traits that are visible and unchanged"],
  "missingTraits": ["required traits that are missing or changed"],
  "hasUnexpectedMarkings": true/false,
  "confidence": 0.0-1.0,
  "notes": "brief explanation"
}}

Be STRICT:
- If the species is different (e.g., expected unicorn but got panda), matchesSpecies = false
- Copy trait names exactly as listed above
- If there are filled black patches not in the profile, hasUnexpectedMarkings = true"""


class APIClient:
    def __init__(self, generation_settings: Dict[str, Any], api_key: Optional[str] = None):
        """Initialize the API client with generation-specific configuration."""
        # Load environment variables
        load_dotenv()

        # Load model configuration from environment variables
        self.model = os.getenv('GEMINI_IMAGE_MODEL', 'gemini-2.5-flash-image')
        self.vision_model = os.getenv('GEMINI_VISION_MODEL', 'gemini-2.5-flash')

        # Load debug settings from environment variables
        self.debug_enable_prompt = os.getenv('DEBUG_ENABLE_PROMPT', 'false').lower() == 'true'
        self.debug_enable_response = os.getenv('DEBUG_ENABLE_RESPONSE', 'false').lower() == 'true'

        self.generation_settings = generation_settings
        self.timeout = generation_settings.get('request_timeout_seconds', 90)

        self.api_key = api_key or self._initialize_api_key()

    def _initialize_api_key(self) -> str:
        """Initialize and validate the API key."""
        api_key = os.getenv("GEMINI_API_KEY")

        if not api_key:
            raise ConfigurationError("API key not found. Please set it as GEMINI_API_KEY environment variable.")

        if len(api_key) < 10:
            raise ConfigurationError("API key appears to be invalid. Please check your API key format.")

        if not api_key.startswith("AI") and not (len(api_key) > 30):
            logger.warning("API key doesn't match typical Google Gemini API key format. This might cause authentication issues.")

        return api_key

    def get_api_url(self, model_name: Optional[str] = None) -> str:
        """Get the API URL for the specified model."""
        model = model_name or self.model
        return f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def make_request(self, url: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Make an API request, raising GenerationFailure with a classified error on failure."""
        if self.debug_enable_prompt and data.get('contents'):
            self._log_prompt_debug(data)

        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key
        }

        try:
            response = requests.post(url, headers=headers, json=data, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.error(f"Request timed out after {self.timeout}s: {str(e)}")
            raise GenerationFailure(GenerationError(GenerationErrorKind.TIMEOUT, f"Request timed out: {str(e)}"))
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {str(e)}")
            raise GenerationFailure(GenerationError(GenerationErrorKind.NETWORK_ERROR, f"API request failed: {str(e)}"))

        if response.status_code != 200:
            error = self._classify_error_response(response)
            logger.error(f"API request failed with status code {response.status_code} ({error.kind.value}): {error.message}")
            raise GenerationFailure(error)

        try:
            response_json = response.json()
        except ValueError as e:
            raise GenerationFailure(GenerationError(
                GenerationErrorKind.GENERATION_FAILED, f"API returned invalid JSON: {str(e)}", response.status_code))

        if self.debug_enable_response:
            self._log_response_debug(response_json)

        return response_json

    def _classify_error_response(self, response: requests.Response) -> GenerationError:
        """Classify an error response from the API."""
        error_payload = None
        message = ""
        try:
            error_json = response.json()
            if isinstance(error_json, dict) and isinstance(error_json.get('error'), dict):
                error_payload = error_json['error']
        except ValueError:
            message = response.text[:500]
        return classify_api_error(response.status_code, error_payload, message)

    def _log_prompt_debug(self, data: Dict[str, Any]) -> None:
        """Log prompt debugging information."""
        logger.info("===== PROMPT DEBUGGING =====")
        for i, part in enumerate(data['contents'][0]['parts']):
            if 'text' in part:
                logger.info(f"PROMPT TEXT PART {i}:\n{part['text']}\n")
            elif 'inlineData' in part:
                logger.info(f"PROMPT PART {i}: [INLINE DATA - {part['inlineData']['mimeType']}]")
        logger.info("===== END PROMPT DEBUGGING =====")

    def _log_response_debug(self, response_json: Dict[str, Any]) -> None:
        """Log response debugging information."""
        logger.info("===== RESPONSE DEBUGGING =====")

        candidates = response_json.get('candidates', [])
        logger.info(f"Number of candidates: {len(candidates)}")
        for idx, candidate in enumerate(candidates):
            logger.info(f"Candidate {idx + 1}: finishReason={candidate.get('finishReason')}")
            for part_idx, part in enumerate(candidate.get('content', {}).get('parts', [])):
                if 'text' in part:
                    text = part['text']
                    text_preview = text[:100] + "..." if len(text) > 100 else text
                    logger.info(f"  Part {part_idx + 1} text: {text_preview}")
                elif 'inlineData' in part:
                    mime_type = part['inlineData'].get('mimeType', 'unknown')
                    data_length = len(part['inlineData'].get('data', ''))
                    logger.info(f"  Part {part_idx + 1} inline data: {mime_type}, length: {data_length}")

        if 'promptFeedback' in response_json:
            logger.info(f"Prompt feedback: {json.dumps(response_json['promptFeedback'], default=str)}")

        logger.info("===== END RESPONSE DEBUGGING =====")

    # --- Image generation --- #

    def generate(self, prompt: str, size: ImageSize) -> GenerationResult:
        """Generate one coloring page candidate.

        Args:
            prompt: Scene description for the page.
            size: Requested pixel size; mapped to the closest supported aspect ratio.

        Returns:
            GenerationResult with PNG/JPEG bytes, or a classified GenerationError.
            Provider failures are never raised.
        """
        gen_config_section = self.generation_settings.get('config', {})
        aspect_ratio = closest_aspect_ratio(size)
        logger.info(f"Generating image: size={size}, aspectRatio={aspect_ratio}, model={self.model}")

        data = {
            "contents": [{
                "role": "user",
                "parts": [{"text": COLORING_PAGE_PREFIX + prompt}]
            }],
            "generationConfig": {
                "temperature": gen_config_section.get('temperature', 0.4),
                "topP": gen_config_section.get('top_p', 1),
                "topK": gen_config_section.get('top_k', 32),
                "responseModalities": ["Text", "Image"],
                "imageConfig": {"aspectRatio": aspect_ratio},
            }
        }

        try:
            response = self.make_request(self.get_api_url(self.model), data)
        except GenerationFailure as e:
            return GenerationResult(error=e.error)

        refusal = self._content_policy_refusal(response)
        if refusal:
            logger.warning(f"Image generation refused by content policy: {refusal}")
            return GenerationResult(error=GenerationError(
                GenerationErrorKind.CONTENT_POLICY, f"Request blocked by content policy ({refusal})", 200, refusal))

        images = self._extract_images_from_response(response)
        if not images:
            return GenerationResult(error=GenerationError(
                GenerationErrorKind.NO_IMAGE, "No image data returned from API", 200))

        try:
            image_bytes = base64.b64decode(images[0], validate=True)
        except ValueError as e:
            return GenerationResult(error=GenerationError(
                GenerationErrorKind.NO_IMAGE, f"Image data is not valid base64: {str(e)}", 200))

        logger.info(f"Successfully generated image using model: {self.model} ({len(image_bytes)} bytes)")
        return GenerationResult(image=image_bytes)

    def _content_policy_refusal(self, response: Dict[str, Any]) -> Optional[str]:
        """Return the block/finish reason when the response is a safety refusal."""
        block_reason = response.get('promptFeedback', {}).get('blockReason')
        if block_reason:
            return block_reason
        for candidate in response.get('candidates', []):
            if candidate.get('finishReason') in CONTENT_POLICY_REASONS:
                return candidate['finishReason']
        return None

    def _extract_images_from_response(self, response: Optional[Dict[str, Any]]) -> List[str]:
        """Extracts base64 image data from the API response."""
        if not response or 'candidates' not in response:
            logger.warning("No candidates found in image generation response.")
            return []

        images = []
        for candidate in response['candidates']:
            content = candidate.get('content', {})
            for part in content.get('parts', []):
                if 'inlineData' in part and part['inlineData'].get('mimeType', '').startswith('image/'):
                    image_data = part['inlineData'].get('data')
                    if image_data and isinstance(image_data, str) and len(image_data) > 100:
                        images.append(image_data)
                    else:
                        logger.warning(f"Found image part but data seems invalid or empty. MimeType: {part['inlineData'].get('mimeType')}, Data Length: {len(image_data) if image_data else 0}")

        if not images:
            logger.warning("No valid image data found in any response candidates.")
        return images

    # --- Vision assessment --- #

    def assess_outline(self, image_bytes: bytes) -> str:
        """Ask the vision model for an outline-style verdict. Returns the raw model text."""
        return self._assess(build_outline_prompt(), image_bytes)

    def assess_identity(self, image_bytes: bytes, profile: SubjectIdentityProfile) -> str:
        """Ask the vision model whether the subject matches the identity profile. Returns the raw model text."""
        return self._assess(build_identity_prompt(profile), image_bytes)

    def _assess(self, prompt: str, image_bytes: bytes) -> str:
        data = {
            "contents": [{
                "role": "user",
                "parts": [
                    {"text": prompt},
                    {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(image_bytes).decode('ascii')}},
                ]
            }],
            "generationConfig": {
                "temperature": 0.1,
                "maxOutputTokens": 800,
                "responseMimeType": "application/json",
            }
        }

        response = self.make_request(self.get_api_url(self.vision_model), data)

        for candidate in response.get('candidates', []):
            for part in candidate.get('content', {}).get('parts', []):
                if part.get('text'):
                    return part['text']

        raise GenerationFailure(GenerationError(GenerationErrorKind.GENERATION_FAILED, "Vision response contained no text", 200))
