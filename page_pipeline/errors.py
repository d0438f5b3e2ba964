from enum import Enum
from typing import Any, Dict, Optional


class GenerationErrorKind(str, Enum):
    """Closed set of failure kinds reported by the generator client."""

    # Non-retriable: the sequence stops immediately
    BILLING_LIMIT = "BILLING_LIMIT"
    INSUFFICIENT_QUOTA = "INSUFFICIENT_QUOTA"
    INVALID_API_KEY = "INVALID_API_KEY"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONTENT_POLICY = "CONTENT_POLICY"
    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"

    # Retriable: the attempt loop backs off and continues
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    NO_IMAGE = "NO_IMAGE"
    GENERATION_FAILED = "GENERATION_FAILED"

    @property
    def is_retriable(self) -> bool:
        return self not in NON_RETRIABLE_KINDS


NON_RETRIABLE_KINDS = frozenset({
    GenerationErrorKind.BILLING_LIMIT,
    GenerationErrorKind.INSUFFICIENT_QUOTA,
    GenerationErrorKind.INVALID_API_KEY,
    GenerationErrorKind.UNAUTHORIZED,
    GenerationErrorKind.CONTENT_POLICY,
    GenerationErrorKind.ACCOUNT_DEACTIVATED,
})

# Provider error codes / status strings with a fixed meaning
PROVIDER_CODE_KINDS = {
    "billing_hard_limit_reached": GenerationErrorKind.BILLING_LIMIT,
    "insufficient_quota": GenerationErrorKind.INSUFFICIENT_QUOTA,
    "invalid_api_key": GenerationErrorKind.INVALID_API_KEY,
    "api_key_invalid": GenerationErrorKind.INVALID_API_KEY,
    "unauthenticated": GenerationErrorKind.UNAUTHORIZED,
    "account_deactivated": GenerationErrorKind.ACCOUNT_DEACTIVATED,
    "organization_suspended": GenerationErrorKind.ACCOUNT_DEACTIVATED,
    "content_policy_violation": GenerationErrorKind.CONTENT_POLICY,
    "rate_limit_exceeded": GenerationErrorKind.RATE_LIMIT,
}

USER_MESSAGES = {
    GenerationErrorKind.BILLING_LIMIT: "Generation paused: billing limit reached. Increase the API budget and retry.",
    GenerationErrorKind.INSUFFICIENT_QUOTA: "Generation paused: API quota exceeded. Add credits and retry.",
    GenerationErrorKind.INVALID_API_KEY: "Generation stopped: invalid API key. Check the configuration.",
    GenerationErrorKind.UNAUTHORIZED: "Generation stopped: API authorization failed.",
    GenerationErrorKind.CONTENT_POLICY: "This prompt was rejected by the content policy. Modify it and retry.",
    GenerationErrorKind.ACCOUNT_DEACTIVATED: "Generation stopped: the API account is deactivated or suspended.",
}


class GenerationError:
    """Classified failure returned by the generator client (never raised)."""

    def __init__(self, kind: GenerationErrorKind, message: str, http_status: Optional[int] = None,
                 provider_code: Optional[str] = None):
        self.kind = kind
        self.message = message
        self.http_status = http_status
        self.provider_code = provider_code

    @property
    def is_retriable(self) -> bool:
        return self.kind.is_retriable

    def user_message(self) -> str:
        """Message suitable for showing to the person who requested the page."""
        return USER_MESSAGES.get(self.kind, self.message)

    def __repr__(self) -> str:
        return f"GenerationError(kind={self.kind.value}, status={self.http_status}, message={self.message!r})"


def classify_api_error(http_status: Optional[int], error_payload: Optional[Dict[str, Any]] = None,
                       message: str = "") -> GenerationError:
    """Classify a provider failure into a GenerationErrorKind.

    Args:
        http_status: HTTP status code of the failed response, if any.
        error_payload: Decoded ``error`` object from the response body, if any.
        message: Fallback message when the payload carries none.

    Returns:
        A GenerationError whose kind decides retry policy downstream.
    """
    payload = error_payload or {}
    provider_code = payload.get('code') if isinstance(payload.get('code'), str) else None
    provider_status = payload.get('status') if isinstance(payload.get('status'), str) else None
    text = payload.get('message') or message or f"API request failed with status code {http_status}"
    lowered = text.lower()

    # Reasons listed in Google-style error details, e.g. API_KEY_INVALID
    reasons = [
        str(detail.get('reason', '')).lower()
        for detail in payload.get('details', []) or []
        if isinstance(detail, dict)
    ]

    def build(kind: GenerationErrorKind) -> GenerationError:
        return GenerationError(kind, text, http_status, provider_code or provider_status)

    for code in [provider_code, *reasons]:
        if code and code.lower() in PROVIDER_CODE_KINDS:
            return build(PROVIDER_CODE_KINDS[code.lower()])

    # Rate-limit (429) messages also mention quota and billing; only a 400 is a hard billing stop
    if "billing" in lowered and http_status in (400, None):
        return build(GenerationErrorKind.BILLING_LIMIT)
    if "insufficient_quota" in lowered:
        return build(GenerationErrorKind.INSUFFICIENT_QUOTA)
    if "api key not valid" in lowered or "invalid api key" in lowered:
        return build(GenerationErrorKind.INVALID_API_KEY)
    if "content policy" in lowered or "content_policy" in lowered:
        return build(GenerationErrorKind.CONTENT_POLICY)

    if http_status == 401 or provider_status == "UNAUTHENTICATED":
        return build(GenerationErrorKind.UNAUTHORIZED)
    if http_status == 403 or provider_status == "PERMISSION_DENIED":
        return build(GenerationErrorKind.INVALID_API_KEY)
    if http_status == 429 or provider_status == "RESOURCE_EXHAUSTED":
        return build(GenerationErrorKind.RATE_LIMIT)
    if http_status is not None and http_status >= 500:
        return build(GenerationErrorKind.SERVER_ERROR)

    return build(GenerationErrorKind.GENERATION_FAILED)


class PageGenerationError(Exception):
    """Base class for failures inside a page generation sequence."""


class GenerationFailure(PageGenerationError):
    """The generator produced no usable image."""

    def __init__(self, error: GenerationError):
        super().__init__(error.message)
        self.error = error


class NonRetriableFailure(GenerationFailure):
    """The generator signalled a condition that retrying cannot fix."""


class SanitizationFailure(PageGenerationError):
    """The candidate image could not be decoded or flattened."""


class ValidationFailure(PageGenerationError):
    """A quality check rejected the candidate."""

    def __init__(self, kind: str, reasons, retry_reinforcement: str = ""):
        self.kind = kind
        self.reasons = list(reasons)
        self.retry_reinforcement = retry_reinforcement
        super().__init__(f"{kind} validation failed: {'; '.join(self.reasons)}")


class UploadFailure(PageGenerationError):
    """Writing the accepted image to storage failed."""


class AssetStateError(PageGenerationError):
    """An asset update violates the asset status state machine."""


class ConfigurationError(PageGenerationError):
    """Required configuration or credentials are missing."""


class VerdictParseError(PageGenerationError):
    """Vision model text did not match the expected verdict shape."""
