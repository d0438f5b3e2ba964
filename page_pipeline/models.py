from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# Named page sizes accepted by the CLI and the generator client
PAGE_SIZES = {
    'portrait': (1024, 1536),
    'square': (1024, 1024),
    'landscape': (1536, 1024),
}


@dataclass(frozen=True)
class ImageSize:
    width: int
    height: int

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    @classmethod
    def from_name(cls, name: str) -> 'ImageSize':
        """Build a size from a named preset (portrait, square, landscape)."""
        if name not in PAGE_SIZES:
            raise ValueError(f"Unknown page size '{name}'. Expected one of: {', '.join(PAGE_SIZES)}")
        width, height = PAGE_SIZES[name]
        return cls(width, height)

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class SubjectIdentityProfile:
    """Traits of the recurring subject that must survive across pages."""
    species: str
    always_present: Tuple[str, ...] = ()
    must_not_change: Tuple[str, ...] = ()
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubjectIdentityProfile':
        if not data.get('species'):
            raise ValueError("Identity profile requires a 'species' label")
        return cls(
            species=str(data['species']),
            always_present=tuple(data.get('always_present') or ()),
            must_not_change=tuple(data.get('must_not_change') or ()),
            name=data.get('name'),
        )


@dataclass(frozen=True)
class GenerationRequest:
    asset_id: str
    prompt: str
    size: ImageSize
    identity_profile: Optional[SubjectIdentityProfile] = None
    validate: bool = True
    validate_identity: bool = True
    reframe: bool = True
    page_number: int = 1
    project_id: str = "default"
    user_id: str = "local"


class AttemptOutcome(str, Enum):
    NO_IMAGE = "no_image"
    SANITIZE_FAILED = "sanitize_failed"
    VALIDATION_FAILED = "validation_failed"
    UPLOAD_FAILED = "upload_failed"
    ACCEPTED = "accepted"


@dataclass
class GenerationAttempt:
    index: int
    elapsed_at_start: float
    outcome: Optional[AttemptOutcome] = None
    failure_reason: Optional[str] = None


class ValidationKind(str, Enum):
    OUTLINE = "outline"
    COVERAGE = "coverage"
    IDENTITY = "identity"


@dataclass(frozen=True)
class CoverageMeasurement:
    """Ink extent of a page: bbox is (left, top, right, bottom) or None for a blank canvas."""
    bbox: Optional[Tuple[int, int, int, int]]
    bbox_height_ratio: float
    bbox_bottom_ratio: float
    bottom_ink_ratio: float


@dataclass(frozen=True)
class ValidationResult:
    outline_valid: bool
    coverage_valid: bool
    identity_valid: Optional[bool] = None
    confidence: float = 1.0
    reasons: Tuple[str, ...] = ()
    # Inconclusive checks that did not affect the verdict
    notes: Tuple[str, ...] = ()
    failure_kinds: Tuple[ValidationKind, ...] = ()
    coverage: Optional[CoverageMeasurement] = None
    retry_reinforcement: str = ""

    @property
    def valid(self) -> bool:
        return self.outline_valid and self.coverage_valid and (self.identity_valid is None or self.identity_valid)


@dataclass(frozen=True)
class ReframeResult:
    image_bytes: bytes
    width: int
    height: int
    margin_used: float
    was_retried: bool
    top_white_ratio: float
    bottom_white_ratio: float
    has_empty_top: bool
    has_empty_bottom: bool
    coverage: Optional[CoverageMeasurement] = None


class AssetStatus(str, Enum):
    DRAFT = "draft"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AssetStatus.READY, AssetStatus.FAILED)


@dataclass
class Asset:
    id: str
    status: AssetStatus = AssetStatus.DRAFT
    attempts: int = 0
    max_attempts: int = 0
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    storage_path: Optional[str] = None
    expires_at: Optional[datetime] = None
    generation_id: Optional[str] = None
    prompt_hash: Optional[str] = None
    file_size: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_record(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dict for the record file."""
        return {
            'id': self.id,
            'status': self.status.value,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'last_error': self.last_error,
            'error_code': self.error_code,
            'storage_path': self.storage_path,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'generation_id': self.generation_id,
            'prompt_hash': self.prompt_hash,
            'file_size': self.file_size,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Asset':
        def parse_time(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=record['id'],
            status=AssetStatus(record.get('status', AssetStatus.DRAFT.value)),
            attempts=record.get('attempts', 0),
            max_attempts=record.get('max_attempts', 0),
            last_error=record.get('last_error'),
            error_code=record.get('error_code'),
            storage_path=record.get('storage_path'),
            expires_at=parse_time(record.get('expires_at')),
            generation_id=record.get('generation_id'),
            prompt_hash=record.get('prompt_hash'),
            file_size=record.get('file_size'),
            created_at=parse_time(record.get('created_at')) or datetime.now(),
            updated_at=parse_time(record.get('updated_at')) or datetime.now(),
        )


@dataclass(frozen=True)
class AssetOutcome:
    asset_id: str
    status: AssetStatus
    attempts: int
    storage_path: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Caller-facing result surface."""
        if self.status == AssetStatus.READY:
            return {
                'status': self.status.value,
                'storagePath': self.storage_path,
                'attempts': self.attempts,
                'assetId': self.asset_id,
                'expiresAt': self.expires_at.isoformat() if self.expires_at else None,
            }
        return {
            'status': self.status.value,
            'error': self.error,
            'errorCode': self.error_code,
            'attempts': self.attempts,
            'assetId': self.asset_id,
        }
