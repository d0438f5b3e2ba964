import hashlib
import hmac
import json
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote, urlparse

from loguru import logger

from .errors import AssetStateError, ConfigurationError, UploadFailure
from .models import Asset, AssetStatus


class SignedUrlCache:
    """Time-bounded cache of signed URLs keyed by (bucket, path)."""

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, bucket: str, path: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get((bucket, path))
            if entry is None:
                return None
            url, stored_at = entry
            if self.clock() - stored_at >= self.ttl_seconds:
                del self._entries[(bucket, path)]
                return None
            return url

    def put(self, bucket: str, path: str, url: str) -> None:
        with self._lock:
            self._entries[(bucket, path)] = (url, self.clock())

    def invalidate(self, bucket: str, path: str) -> None:
        with self._lock:
            self._entries.pop((bucket, path), None)


class ArtifactStore(ABC):
    """Durable asset records and page binaries."""

    @abstractmethod
    def begin_generation(self, asset_id: str, max_attempts: int, prompt_hash: Optional[str] = None,
                         force: bool = False) -> str:
        """Open a new generation sequence for an asset and return its generation id."""

    @abstractmethod
    def create_or_update_asset(self, asset_id: str, status: AssetStatus, attempts: int,
                               last_error: Optional[str] = None, storage_path: Optional[str] = None,
                               expires_at: Optional[datetime] = None, generation_id: Optional[str] = None,
                               error_code: Optional[str] = None, file_size: Optional[int] = None) -> Asset:
        """Create or update an asset record."""

    @abstractmethod
    def upload_binary(self, bucket: str, path: str, data: bytes, content_type: str = "image/png") -> str:
        """Store a binary, replacing any previous one at the same path. Returns the stored path."""

    @abstractmethod
    def get_asset(self, asset_id: str) -> Optional[Asset]:
        """Return the asset record, or None when it does not exist."""

    @abstractmethod
    def create_signed_url(self, bucket: str, path: str, expires_in: int = 3600) -> str:
        """Return a time-limited URL for a stored binary."""


class LocalArtifactStore(ArtifactStore):
    def __init__(self, storage_settings: Dict[str, Any], secret: Optional[str] = None,
                 now: Callable[[], datetime] = datetime.now, clock: Callable[[], float] = time.monotonic):
        """Initialize the store with a root directory for records and binaries."""
        self.root_dir = Path(storage_settings.get('root_dir', 'outputs/storage'))
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.records_file = self.root_dir / "assets.json"
        self.base_url = storage_settings.get('base_url', self.root_dir.resolve().as_uri())
        self.secret = secret or os.getenv('PAGE_STORAGE_SECRET')
        self.now = now

        self.url_cache = SignedUrlCache(storage_settings.get('signed_url_ttl_seconds', 300), clock)
        self._lock = threading.Lock()
        self._assets: Dict[str, Asset] = {}

        self._load_records()

    def _load_records(self) -> None:
        """Load asset records from file."""
        if not self.records_file.exists():
            return

        with open(self.records_file, 'r') as f:
            records = json.load(f)
        self._assets = {record['id']: Asset.from_record(record) for record in records}
        logger.info(f"Loaded {len(self._assets)} asset records from {self.records_file}")

    def _save_records(self) -> None:
        """Save asset records to file. Caller holds the lock."""
        tmp_file = self.records_file.with_suffix('.tmp')
        with open(tmp_file, 'w') as f:
            json.dump([asset.to_record() for asset in self._assets.values()], f, indent=2)
        os.replace(tmp_file, self.records_file)

    # --- Asset records --- #

    def begin_generation(self, asset_id: str, max_attempts: int, prompt_hash: Optional[str] = None,
                         force: bool = False) -> str:
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None:
                asset = Asset(id=asset_id, created_at=self.now())
                self._assets[asset_id] = asset
            elif asset.status == AssetStatus.GENERATING and not force:
                raise AssetStateError(f"Asset {asset_id} is already generating (generation {asset.generation_id})")

            asset.status = AssetStatus.GENERATING
            asset.generation_id = uuid.uuid4().hex
            asset.attempts = 0
            asset.max_attempts = max_attempts
            asset.prompt_hash = prompt_hash
            asset.last_error = None
            asset.error_code = None
            asset.updated_at = self.now()
            self._save_records()

        logger.info(f"Asset {asset_id}: generation {asset.generation_id} started (max {max_attempts} attempts)")
        return asset.generation_id

    def create_or_update_asset(self, asset_id: str, status: AssetStatus, attempts: int,
                               last_error: Optional[str] = None, storage_path: Optional[str] = None,
                               expires_at: Optional[datetime] = None, generation_id: Optional[str] = None,
                               error_code: Optional[str] = None, file_size: Optional[int] = None) -> Asset:
        status = AssetStatus(status)
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None:
                if status != AssetStatus.DRAFT:
                    raise AssetStateError(f"Asset {asset_id} does not exist; only drafts can be created directly")
                asset = Asset(id=asset_id, created_at=self.now())
                self._assets[asset_id] = asset
            else:
                self._check_update_allowed(asset, status, generation_id)

            asset.status = status
            asset.attempts = attempts
            asset.last_error = last_error
            asset.error_code = error_code
            if storage_path is not None:
                asset.storage_path = storage_path
            if expires_at is not None:
                asset.expires_at = expires_at
            if file_size is not None:
                asset.file_size = file_size
            asset.updated_at = self.now()
            self._save_records()

        logger.debug(f"Asset {asset_id}: status={status.value}, attempts={attempts}")
        return replace(asset)

    def _check_update_allowed(self, asset: Asset, status: AssetStatus, generation_id: Optional[str]) -> None:
        if generation_id is not None and generation_id != asset.generation_id:
            raise AssetStateError(f"Asset {asset.id}: update from stale generation {generation_id} "
                                  f"(current {asset.generation_id})")
        if asset.status.is_terminal and generation_id is not None:
            raise AssetStateError(f"Asset {asset.id}: generation {generation_id} already finished as {asset.status.value}")
        if status == AssetStatus.DRAFT and asset.status != AssetStatus.DRAFT:
            raise AssetStateError(f"Asset {asset.id}: cannot return to draft from {asset.status.value}")
        if status == AssetStatus.GENERATING and asset.status != AssetStatus.GENERATING:
            raise AssetStateError(f"Asset {asset.id}: use begin_generation to start generating")
        if status.is_terminal and asset.status != AssetStatus.GENERATING:
            raise AssetStateError(f"Asset {asset.id}: cannot move from {asset.status.value} to {status.value}")

    def get_asset(self, asset_id: str) -> Optional[Asset]:
        with self._lock:
            asset = self._assets.get(asset_id)
            return replace(asset) if asset else None

    # --- Binaries --- #

    def _binary_path(self, bucket: str, path: str) -> Path:
        if not bucket or not path or path.startswith('/') or '..' in Path(path).parts:
            raise UploadFailure(f"Invalid storage location: {bucket}/{path}")
        return self.root_dir / bucket / path

    def upload_binary(self, bucket: str, path: str, data: bytes, content_type: str = "image/png") -> str:
        target = self._binary_path(bucket, path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = target.with_name(target.name + '.tmp')
            with open(tmp_file, 'wb') as f:
                f.write(data)
            os.replace(tmp_file, target)
        except OSError as e:
            logger.error(f"Upload to {bucket}/{path} failed: {str(e)}")
            raise UploadFailure(f"Upload to {bucket}/{path} failed: {str(e)}") from e

        # The binary changed, so any cached URL is for old content
        self.url_cache.invalidate(bucket, path)
        logger.info(f"Uploaded {len(data)} bytes ({content_type}) to {bucket}/{path}")
        return path

    def read_binary(self, bucket: str, path: str) -> bytes:
        with open(self._binary_path(bucket, path), 'rb') as f:
            return f.read()

    def purge_expired(self, bucket: str = "generated") -> int:
        """Delete binaries of assets past their expiry. Returns the number removed."""
        now = self.now()
        removed = 0
        with self._lock:
            for asset in self._assets.values():
                if asset.storage_path and asset.expires_at and asset.expires_at <= now:
                    binary = self._binary_path(bucket, asset.storage_path)
                    self.url_cache.invalidate(bucket, asset.storage_path)
                    if binary.exists():
                        binary.unlink()
                        removed += 1
                    asset.storage_path = None
                    asset.updated_at = now
            if removed:
                self._save_records()
        logger.info(f"Purged {removed} expired binaries")
        return removed

    # --- Signed URLs --- #

    def _signature(self, bucket: str, path: str, expires: int) -> str:
        message = f"{bucket}/{path}:{expires}".encode('utf-8')
        return hmac.new(self.secret.encode('utf-8'), message, hashlib.sha256).hexdigest()

    def create_signed_url(self, bucket: str, path: str, expires_in: int = 3600) -> str:
        cached = self.url_cache.get(bucket, path)
        if cached:
            return cached

        if not self.secret:
            raise ConfigurationError("PAGE_STORAGE_SECRET is not set; cannot sign storage URLs.")
        if not self._binary_path(bucket, path).exists():
            raise FileNotFoundError(f"No stored binary at {bucket}/{path}")

        expires = int(self.now().timestamp()) + expires_in
        url = (f"{self.base_url}/{quote(bucket)}/{quote(path)}"
               f"?expires={expires}&signature={self._signature(bucket, path, expires)}")
        self.url_cache.put(bucket, path, url)
        return url

    def verify_signed_url(self, url: str) -> bool:
        """Check a URL produced by create_signed_url: signature intact and not expired."""
        if not self.secret:
            raise ConfigurationError("PAGE_STORAGE_SECRET is not set; cannot verify storage URLs.")

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        try:
            expires = int(params['expires'][0])
            signature = params['signature'][0]
        except (KeyError, IndexError, ValueError):
            return False

        base_path = urlparse(self.base_url).path.rstrip('/')
        relative = unquote(parsed.path[len(base_path):].lstrip("/"))
        bucket, _, path = relative.partition('/')
        if expires < self.now().timestamp():
            return False
        return hmac.compare_digest(signature, self._signature(bucket, path, expires))
