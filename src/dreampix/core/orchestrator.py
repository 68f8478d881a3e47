"""Generation orchestration: fan-out, fan-in, collage and persistence.

:class:`GenerationOrchestrator` turns one user request into a
:class:`~dreampix.core.models.GenerationResult`:

1. A batch timestamp ``T`` (epoch milliseconds) is taken.  Every artifact id
   is ``T`` plus a role tag: ``orig-<i>``, ``enh-<i>``, ``collage`` or
   ``collage-enh``.
2. ``count`` generation calls for the original prompt are submitted to a
   thread pool.  When enhancement is requested, the prompt is enhanced while
   those calls run, then ``count`` more calls are submitted for the enhanced
   prompt.
3. Every call is awaited.  Calls returning ``None`` are dropped.  Calls that
   raise are logged and dropped as long as some image survived; if nothing
   survived and a call raised, :class:`~dreampix.core.errors.GenerationError`
   propagates.
4. Each batch with two or more survivors gets a 1:1 collage.
5. With enhancement and survivors in both batches, the provider explains the
   difference between the prompts.
6. Once the result is assembled, every artifact goes to history, and to the
   gallery if an account is signed in.  Store failures here are logged and
   collected on ``result.persist_errors``; they never fail the call.

Usage
-----
::

    orchestrator = GenerationOrchestrator(provider, store)
    result = orchestrator.generate(
        "a cat",
        enhance=True,
        aspect_ratio="16:9",
        count=2,
        current_account=account,
    )
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from dreampix.core.collage import DEFAULT_BACKGROUND, compose
from dreampix.core.errors import GenerationError, StoreError
from dreampix.core.models import ASPECT_RATIOS, Account, GeneratedImage, GenerationResult
from dreampix.core.providers import EXPLANATION_UNAVAILABLE, ImageProvider
from dreampix.core.store import Collection, ImageStore

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass
class _PendingCall:
    """One generation call.  The worker stamps ``started_at`` when it begins."""

    future: Future | None = None
    started_at: float | None = None
    started: threading.Event = field(default_factory=threading.Event)


@dataclass
class _BatchOutcome:
    """Settled fan-out: surviving payloads plus the failures that were dropped."""

    images: list[bytes] = field(default_factory=list)
    failures: list[BaseException] = field(default_factory=list)
    timed_out: bool = False


class GenerationOrchestrator:
    """Coordinates parallel generation calls and the persistence policy.

    Attributes:
        provider: Generation capability used for images, enhancement and
            explanations.
        store: Store receiving gallery and history writes.
    """

    def __init__(
        self,
        provider: ImageProvider,
        store: ImageStore,
        *,
        max_workers: int = 8,
        max_image_count: int = 4,
        call_timeout: float | None = None,
        collage_background: str = DEFAULT_BACKGROUND,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        """Initialise the orchestrator.

        Args:
            provider: Generation provider.
            store: Opened (or lazily opening) image store.
            max_workers: Upper bound on concurrently running generation calls
                when no ``call_timeout`` is set.
            max_image_count: Largest ``count`` accepted by :meth:`generate`.
            call_timeout: Seconds each generation call may take, measured
                from the moment it starts running.  Every call then gets
                its own worker.  ``None`` waits indefinitely.
            collage_background: Fill colour for empty collage cells.
            clock: Source of the batch timestamp in epoch milliseconds.
        """
        self.provider = provider
        self.store = store
        self._max_workers = max_workers
        self._max_image_count = max_image_count
        self._call_timeout = call_timeout
        self._collage_background = collage_background
        self._clock = clock

    # -- Public interface ---------------------------------------------------

    def generate(
        self,
        prompt: str,
        *,
        enhance: bool = False,
        aspect_ratio: str = "1:1",
        count: int = 1,
        reference_image: bytes | None = None,
        current_account: Account | None = None,
    ) -> GenerationResult:
        """Generate, assemble and persist one batch of images.

        Args:
            prompt: Free-form text prompt.
            enhance: Also generate from an enhanced version of the prompt.
            aspect_ratio: One of :data:`~dreampix.core.models.ASPECT_RATIOS`.
            count: Images per batch (1 to ``max_image_count``).
            reference_image: Optional encoded image sent with every call.
            current_account: Signed-in account, or ``None`` for a guest.

        Returns:
            The assembled result.  Empty lists mean every call returned no
            image.

        Raises:
            ValueError: On an empty prompt, unknown aspect ratio or count out
                of range.
            GenerationError: If no image survived and at least one call
                raised.
            CompositionError: If a collage could not be composed.
        """
        self._validate(prompt, aspect_ratio, count)

        batch_ts = self._clock()
        owner_id = current_account.id if current_account is not None else None
        total_calls = count * (2 if enhance else 1)
        if self._call_timeout is not None:
            # A deadline only holds if the call is running, so none may queue.
            workers = total_calls
        else:
            workers = max(1, min(self._max_workers, total_calls))

        logger.info(
            f"Starting batch {batch_ts}: count={count}, enhance={enhance}, "
            f"aspect={aspect_ratio}, signed_in={owner_id is not None}"
        )

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dreampix-gen")
        original_outcome = enhanced_outcome = None
        try:
            original_calls = self._submit_batch(
                pool, prompt, aspect_ratio, count, reference_image
            )

            enhanced_prompt: str | None = None
            enhanced_calls: list[_PendingCall] = []
            if enhance:
                # The original batch is already running while this blocks.
                enhanced_prompt = self._enhance(prompt)
                enhanced_calls = self._submit_batch(
                    pool, enhanced_prompt, aspect_ratio, count, reference_image
                )

            original_outcome = self._settle(original_calls, "original")
            if enhance:
                enhanced_outcome = self._settle(enhanced_calls, "enhanced")
        finally:
            timed_out = any(
                outcome is not None and outcome.timed_out
                for outcome in (original_outcome, enhanced_outcome)
            )
            # Timed-out calls may still be running; do not block on them.
            pool.shutdown(wait=not timed_out, cancel_futures=True)

        self._raise_if_nothing_survived(original_outcome, enhanced_outcome)

        result = GenerationResult()
        result.original = [
            GeneratedImage(
                id=f"{batch_ts}-orig-{index}",
                owner_id=owner_id,
                prompt=prompt,
                image_bytes=data,
                created_at=batch_ts,
                aspect_ratio=aspect_ratio,
            )
            for index, data in enumerate(original_outcome.images)
        ]
        result.collage = self._build_collage(
            original_outcome.images,
            image_id=f"{batch_ts}-collage",
            prompt=prompt,
            owner_id=owner_id,
            created_at=batch_ts,
        )

        if enhance:
            result.enhanced = [
                GeneratedImage(
                    id=f"{batch_ts}-enh-{index}",
                    owner_id=owner_id,
                    prompt=prompt,
                    enhanced_prompt=enhanced_prompt,
                    image_bytes=data,
                    created_at=batch_ts,
                    aspect_ratio=aspect_ratio,
                    is_enhanced_variant=True,
                )
                for index, data in enumerate(enhanced_outcome.images)
            ]
            result.enhanced_collage = self._build_collage(
                enhanced_outcome.images,
                image_id=f"{batch_ts}-collage-enh",
                prompt=enhanced_prompt,
                owner_id=owner_id,
                created_at=batch_ts,
                enhanced=True,
            )
            if result.original and result.enhanced:
                result.explanation = self._explain(prompt, enhanced_prompt)

        self._persist(result, signed_in=owner_id is not None)

        logger.info(
            f"Finished batch {batch_ts}: {len(result.original)} original, "
            f"{len(result.enhanced or [])} enhanced, "
            f"{len(result.persist_errors)} persistence errors"
        )
        return result

    # -- Fan-out / fan-in ---------------------------------------------------

    def _validate(self, prompt: str, aspect_ratio: str, count: int) -> None:
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")
        if aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(
                f"aspect_ratio must be one of {', '.join(ASPECT_RATIOS)}, got {aspect_ratio!r}"
            )
        if count < 1 or count > self._max_image_count:
            raise ValueError(f"count must be 1-{self._max_image_count}, got {count}")

    def _submit_batch(
        self,
        pool: ThreadPoolExecutor,
        prompt: str,
        aspect_ratio: str,
        count: int,
        reference_image: bytes | None,
    ) -> list[_PendingCall]:
        calls = []
        for _ in range(count):
            call = _PendingCall()
            call.future = pool.submit(
                self._run_call, call, prompt, aspect_ratio, reference_image
            )
            calls.append(call)
        return calls

    def _run_call(
        self,
        call: _PendingCall,
        prompt: str,
        aspect_ratio: str,
        reference_image: bytes | None,
    ) -> bytes | None:
        call.started_at = time.monotonic()
        call.started.set()
        return self.provider.generate_image(prompt, aspect_ratio, reference_image)

    def _settle(self, calls: list[_PendingCall], label: str) -> _BatchOutcome:
        """Wait for every call in a batch and keep the non-empty results."""
        outcome = _BatchOutcome()
        for index, call in enumerate(calls):
            timeout = None
            if self._call_timeout is not None:
                call.started.wait()
                remaining = call.started_at + self._call_timeout - time.monotonic()
                timeout = max(0.0, remaining)

            done, _ = wait([call.future], timeout=timeout)
            if not done:
                outcome.timed_out = True
                outcome.failures.append(
                    TimeoutError(f"exceeded call timeout of {self._call_timeout}s")
                )
                logger.warning(
                    f"Generation call {index} of {label} batch timed out "
                    f"after {self._call_timeout}s"
                )
                continue

            try:
                data = call.future.result()
            except Exception as e:
                outcome.failures.append(e)
                logger.warning(f"Generation call {index} of {label} batch failed: {e}")
                continue

            if data is None:
                logger.debug(f"Generation call {index} of {label} batch returned no image")
                continue
            outcome.images.append(data)
        return outcome

    @staticmethod
    def _raise_if_nothing_survived(*outcomes: _BatchOutcome | None) -> None:
        settled = [outcome for outcome in outcomes if outcome is not None]
        if any(outcome.images for outcome in settled):
            return
        failures = [failure for outcome in settled for failure in outcome.failures]
        if failures:
            logger.error(f"All generation calls failed; first error: {failures[0]}")
            raise GenerationError(
                f"Image generation failed ({len(failures)} failed calls)"
            ) from failures[0]

    # -- Assembly -----------------------------------------------------------

    def _enhance(self, prompt: str) -> str:
        try:
            enhanced = self.provider.enhance_prompt(prompt)
        except Exception as e:
            logger.warning(f"Prompt enhancement failed, using original prompt: {e}")
            return prompt
        return enhanced or prompt

    def _explain(self, original: str, enhanced: str) -> str:
        try:
            return self.provider.explain(original, enhanced)
        except Exception as e:
            logger.warning(f"Explanation failed: {e}")
            return EXPLANATION_UNAVAILABLE

    def _build_collage(
        self,
        images: list[bytes],
        *,
        image_id: str,
        prompt: str,
        owner_id: str | None,
        created_at: int,
        enhanced: bool = False,
    ) -> GeneratedImage | None:
        if len(images) < 2:
            return None
        return GeneratedImage(
            id=image_id,
            owner_id=owner_id,
            prompt=prompt,
            image_bytes=compose(images, background=self._collage_background),
            created_at=created_at,
            aspect_ratio="1:1",
            is_enhanced_variant=enhanced,
            is_collage=True,
        )

    # -- Persistence --------------------------------------------------------

    def _persist(self, result: GenerationResult, *, signed_in: bool) -> None:
        """Write each artifact independently; failures are recorded, not raised."""
        targets = [Collection.GALLERY, Collection.HISTORY] if signed_in else [Collection.HISTORY]
        for image in result.artifacts():
            for collection in targets:
                try:
                    self.store.put_image(collection, image)
                except StoreError as e:
                    logger.warning(f"Could not save {image.id} to {collection.value}: {e}")
                    result.persist_errors.append(e)
