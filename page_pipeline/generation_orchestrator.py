import hashlib
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from loguru import logger

from .api_client import APIClient
from .artifact_store import ArtifactStore, LocalArtifactStore
from .errors import (
    GenerationError,
    GenerationErrorKind,
    GenerationFailure,
    NonRetriableFailure,
    SanitizationFailure,
    UploadFailure,
    ValidationFailure,
)
from .image_processor import sanitize_image
from .models import (
    AssetOutcome,
    AssetStatus,
    AttemptOutcome,
    GenerationAttempt,
    GenerationRequest,
)
from .quality_validator import QualityValidator
from .reframer import PageReframer

MAX_ATTEMPTS_EXHAUSTED = "MAX_ATTEMPTS_EXHAUSTED"
WALL_CLOCK_EXHAUSTED = "WALL_CLOCK_EXHAUSTED"
INTERNAL_ERROR = "INTERNAL_ERROR"


def prompt_hash(prompt: str) -> str:
    return hashlib.sha256(prompt.encode('utf-8')).hexdigest()[:16]


def page_storage_path(request: GenerationRequest) -> str:
    return f"{request.user_id}/{request.project_id}/pages/page-{request.page_number}.png"


class GenerationOrchestrator:
    def __init__(self, generator, validator: Optional[QualityValidator], reframer: Optional[PageReframer],
                 store: ArtifactStore, generation_settings: Dict[str, Any], storage_settings: Dict[str, Any],
                 clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep,
                 now: Callable[[], datetime] = datetime.now):
        """Initialize the attempt loop with its collaborators.

        Args:
            generator: Object with ``generate(prompt, size) -> GenerationResult``.
            validator: Quality validator, required when requests ask for validation.
            reframer: Print reframer, required when requests ask for reframing.
            store: Artifact store for asset records and binaries.
            generation_settings: The ``generation`` config section.
            storage_settings: The ``storage`` config section.
            clock: Monotonic seconds, used for the wall-clock budget.
            sleep: Backoff sleep.
            now: Wall time, used for expiry timestamps.
        """
        self.generator = generator
        self.validator = validator
        self.reframer = reframer
        self.store = store
        self.clock = clock
        self.sleep = sleep
        self.now = now

        self.max_attempts = generation_settings.get('max_attempts', 12)
        self.wall_clock_budget = generation_settings.get('wall_clock_budget_seconds', 120)
        self.base_delay = generation_settings.get('base_delay_seconds', 1.0)
        self.reinforce_prompt_on_retry = generation_settings.get('reinforce_prompt_on_retry', True)

        self.bucket = storage_settings.get('bucket', 'generated')
        self.retention_hours = storage_settings.get('retention_hours', 72)

    def run(self, request: GenerationRequest, max_attempts: Optional[int] = None,
            wall_clock_budget: Optional[float] = None) -> AssetOutcome:
        """Generate, check and store one page within the attempt and time budgets.

        Never raises for budget exhaustion or generator failures; those end in a
        ``failed`` outcome. Store rule violations and unexpected errors propagate
        after the asset is marked failed.
        """
        max_attempts = self.max_attempts if max_attempts is None else max_attempts
        budget = self.wall_clock_budget if wall_clock_budget is None else wall_clock_budget

        generation_id = self.store.begin_generation(request.asset_id, max_attempts, prompt_hash(request.prompt))
        start = self.clock()
        attempt = 0
        last_error: Optional[str] = None
        error_code = MAX_ATTEMPTS_EXHAUSTED
        prompt = request.prompt

        logger.info(f"Generating page {request.page_number} (asset {request.asset_id}): "
                    f"max {max_attempts} attempts, {budget}s budget")

        try:
            while attempt < max_attempts:
                elapsed = self.clock() - start
                if elapsed >= budget:
                    error_code = WALL_CLOCK_EXHAUSTED
                    logger.warning(f"Asset {request.asset_id}: wall-clock budget of {budget}s exhausted "
                                   f"after {attempt} attempts")
                    break

                attempt += 1
                record = GenerationAttempt(index=attempt, elapsed_at_start=elapsed)
                # Persist the count before the generator is called
                self.store.create_or_update_asset(request.asset_id, AssetStatus.GENERATING, attempt,
                                                  last_error=last_error, generation_id=generation_id)

                try:
                    storage_path, file_size = self._attempt(request, prompt)
                except NonRetriableFailure as e:
                    record.outcome, record.failure_reason = AttemptOutcome.NO_IMAGE, e.error.message
                    self._log_attempt(request, record, max_attempts)
                    last_error = e.error.user_message()
                    error_code = e.error.kind.value
                    break
                except GenerationFailure as e:
                    record.outcome, record.failure_reason = AttemptOutcome.NO_IMAGE, f"{e.error.kind.value}: {e.error.message}"
                    last_error = record.failure_reason
                    self._log_attempt(request, record, max_attempts)
                    self._backoff(attempt, start, budget)
                    continue
                except SanitizationFailure as e:
                    record.outcome, record.failure_reason = AttemptOutcome.SANITIZE_FAILED, str(e)
                    last_error = record.failure_reason
                    self._log_attempt(request, record, max_attempts)
                    continue
                except ValidationFailure as e:
                    record.outcome, record.failure_reason = AttemptOutcome.VALIDATION_FAILED, "; ".join(e.reasons)
                    last_error = f"Validation failed: {record.failure_reason}"
                    self._log_attempt(request, record, max_attempts)
                    if self.reinforce_prompt_on_retry and e.retry_reinforcement:
                        prompt = f"{request.prompt}\n\n{e.retry_reinforcement}"
                    self._backoff(attempt, start, budget)
                    continue
                except UploadFailure as e:
                    record.outcome, record.failure_reason = AttemptOutcome.UPLOAD_FAILED, str(e)
                    last_error = record.failure_reason
                    self._log_attempt(request, record, max_attempts)
                    self._backoff(attempt, start, budget)
                    continue

                record.outcome = AttemptOutcome.ACCEPTED
                self._log_attempt(request, record, max_attempts)
                return self._finish_ready(request, generation_id, attempt, storage_path, file_size)

        except Exception as e:
            logger.error(f"Asset {request.asset_id}: generation aborted by unexpected error: {str(e)}")
            self._finish_failed(request, generation_id, attempt, str(e), INTERNAL_ERROR)
            raise

        if last_error is None:
            last_error = "Generation budget exhausted before any attempt completed"
        return self._finish_failed(request, generation_id, attempt, last_error, error_code)

    def _attempt(self, request: GenerationRequest, prompt: str) -> Tuple[str, int]:
        """One generate/sanitize/validate/reframe/upload pass. Returns (storage path, file size) or raises."""
        result = self.generator.generate(prompt, request.size)
        if result.error is not None:
            if not result.error.is_retriable:
                raise NonRetriableFailure(result.error)
            raise GenerationFailure(result.error)
        if result.image is None:
            raise GenerationFailure(GenerationError(GenerationErrorKind.NO_IMAGE, "Generator returned no image"))

        image_bytes = sanitize_image(result.image)

        if request.validate:
            validation = self.validator.validate(image_bytes, request.identity_profile, request.validate_identity)
            if not validation.valid:
                kinds = ",".join(kind.value for kind in validation.failure_kinds) or "quality"
                raise ValidationFailure(kinds, validation.reasons, validation.retry_reinforcement)

        if request.reframe:
            reframed = self.reframer.reframe(image_bytes)
            image_bytes = reframed.image_bytes

        storage_path = self.store.upload_binary(self.bucket, page_storage_path(request), image_bytes, "image/png")
        return storage_path, len(image_bytes)

    def _backoff(self, attempt: int, start: float, budget: float) -> None:
        """Linear backoff, clamped so it never runs past the wall-clock budget."""
        remaining = budget - (self.clock() - start)
        delay = min(attempt * self.base_delay, max(0.0, remaining))
        if delay > 0:
            logger.debug(f"Backing off {delay:.1f}s before next attempt")
            self.sleep(delay)

    def _log_attempt(self, request: GenerationRequest, record: GenerationAttempt, max_attempts: int) -> None:
        message = (f"Page {request.page_number} attempt {record.index}/{max_attempts} "
                   f"(t+{record.elapsed_at_start:.1f}s): {record.outcome.value}")
        if record.failure_reason:
            logger.warning(f"{message} - {record.failure_reason}")
        else:
            logger.info(message)

    def _finish_ready(self, request: GenerationRequest, generation_id: str, attempts: int,
                      storage_path: str, file_size: int) -> AssetOutcome:
        expires_at = self.now() + timedelta(hours=self.retention_hours)
        self.store.create_or_update_asset(request.asset_id, AssetStatus.READY, attempts, storage_path=storage_path,
                                          expires_at=expires_at, generation_id=generation_id, file_size=file_size)
        logger.info(f"Page {request.page_number} ready after {attempts} attempt(s): {self.bucket}/{storage_path}")
        return AssetOutcome(asset_id=request.asset_id, status=AssetStatus.READY, attempts=attempts,
                            storage_path=storage_path, expires_at=expires_at)

    def _finish_failed(self, request: GenerationRequest, generation_id: str, attempts: int, error: str,
                       error_code: str) -> AssetOutcome:
        self.store.create_or_update_asset(request.asset_id, AssetStatus.FAILED, attempts, last_error=error,
                                          generation_id=generation_id, error_code=error_code)
        logger.error(f"Page {request.page_number} failed after {attempts} attempt(s) [{error_code}]: {error}")
        return AssetOutcome(asset_id=request.asset_id, status=AssetStatus.FAILED, attempts=attempts,
                            error=error, error_code=error_code)


class PageGenerationService:
    def __init__(self, config: Dict[str, Dict[str, Any]], generator=None, validator: Optional[QualityValidator] = None,
                 reframer: Optional[PageReframer] = None, store: Optional[ArtifactStore] = None, **orchestrator_kwargs):
        """Wire the pipeline from configuration; any collaborator can be passed in instead."""
        self.config = config
        generator = generator or APIClient(config['generation'])
        if validator is None:
            vision_client = generator if hasattr(generator, 'assess_outline') else None
            validator = QualityValidator(config['validation'], vision_client=vision_client)
        reframer = reframer or PageReframer(config['reframe'], config['validation'])
        store = store or LocalArtifactStore(config['storage'])

        self.store = store
        self.orchestrator = GenerationOrchestrator(generator, validator, reframer, store, config['generation'],
                                                   config['storage'], **orchestrator_kwargs)

    def generate_page(self, request: GenerationRequest) -> Dict[str, Any]:
        """Run one page through the pipeline and return the caller-facing result."""
        generation = self.config['generation']
        outcome = self.orchestrator.run(
            request,
            max_attempts=generation.get('max_attempts', 12),
            wall_clock_budget=generation.get('wall_clock_budget_seconds', 120),
        )
        return outcome.to_dict()
