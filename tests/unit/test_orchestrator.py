"""Unit tests for dreampix.core.orchestrator.

Covers the generation scenarios end to end against a real store and a
scripted provider:

- fan-out size and partial-failure tolerance
- collage threshold and aspect ratio
- owner attribution and the gallery/history persistence split
- enhancement, explanation and their fallbacks
- persistence failures reported without failing the call
- per-call timeouts and collage composition failures
"""

import logging
import threading
import time

import pytest

from dreampix.core.errors import CompositionError, GenerationError, StoreError, StoreErrorKind
from dreampix.core.models import Account
from dreampix.core.orchestrator import GenerationOrchestrator
from dreampix.core.providers import EXPLANATION_UNAVAILABLE
from dreampix.core.store import Collection, ImageStore

BATCH_TS = 1_700_000_000_000

USER = Account(id="user-1", email="u@example.com", credential="pw")


@pytest.fixture
def orchestrator(fake_provider, store):
    return GenerationOrchestrator(fake_provider, store, clock=lambda: BATCH_TS)


def _ids(images):
    return [img.id for img in images]


# ============================================================================
# Scenarios
# ============================================================================


class TestScenarios:
    """End-to-end generation scenarios against a real store."""

    def test_two_successes_make_a_collage(self, orchestrator):
        """Two surviving images produce two originals and a 1:1 collage."""
        result = orchestrator.generate("a cat", aspect_ratio="1:1", count=2)

        assert len(result.original) == 2
        assert result.collage is not None
        assert result.collage.is_collage is True
        assert result.collage.aspect_ratio == "1:1"
        assert result.enhanced is None
        assert result.explanation is None

    def test_one_null_result_drops_collage(self, orchestrator, fake_provider, png_factory):
        fake_provider.outcomes["a cat"] = [png_factory("red"), None]

        result = orchestrator.generate("a cat", count=2)

        assert len(result.original) == 1
        assert result.collage is None

    def test_enhanced_single_image_signed_in(self, orchestrator, fake_provider, store):
        result = orchestrator.generate(
            "a cat", enhance=True, aspect_ratio="16:9", count=1, current_account=USER
        )

        assert len(result.original) == 1
        assert len(result.enhanced) == 1
        assert result.explanation
        assert result.collage is None
        assert result.enhanced_collage is None

        gallery_ids = set(_ids(store.list_by_owner(Collection.GALLERY, USER.id)))
        history_ids = set(_ids(store.list_all(Collection.HISTORY)))
        produced = {result.original[0].id, result.enhanced[0].id}
        assert produced == gallery_ids == history_ids


# ============================================================================
# Ids and fan-out
# ============================================================================


class TestIdsAndFanOut:
    """Verify artifact ids and that calls are issued in parallel."""

    def test_ids_follow_batch_scheme(self, orchestrator):
        result = orchestrator.generate("a cat", enhance=True, count=2)

        assert _ids(result.original) == [f"{BATCH_TS}-orig-0", f"{BATCH_TS}-orig-1"]
        assert _ids(result.enhanced) == [f"{BATCH_TS}-enh-0", f"{BATCH_TS}-enh-1"]
        assert result.collage.id == f"{BATCH_TS}-collage"
        assert result.enhanced_collage.id == f"{BATCH_TS}-collage-enh"

    @pytest.mark.parametrize("count", [1, 2, 3, 4])
    @pytest.mark.parametrize("enhance", [False, True])
    def test_ids_unique_within_call(self, orchestrator, count, enhance):
        ids = _ids(orchestrator.generate("a cat", enhance=enhance, count=count).artifacts())
        assert len(ids) == len(set(ids))

    def test_all_images_share_batch_timestamp(self, orchestrator):
        result = orchestrator.generate("a cat", enhance=True, count=2)
        assert {img.created_at for img in result.artifacts()} == {BATCH_TS}

    def test_issues_count_calls_per_batch(self, orchestrator, fake_provider):
        orchestrator.generate("a cat", enhance=True, count=4)

        prompts = [call[0] for call in fake_provider.calls]
        assert prompts.count("a cat") == 4
        assert prompts.count("a cat, enhanced") == 4

    def test_reference_image_sent_with_every_call(self, orchestrator, fake_provider):
        orchestrator.generate("a cat", enhance=True, count=2, reference_image=b"ref")
        assert [call[2] for call in fake_provider.calls] == [b"ref"] * 4

    def test_calls_run_concurrently(self, store, png_factory):
        """All calls of a batch must be in flight at once to pass the barrier."""
        barrier = threading.Barrier(4, timeout=5)

        class BarrierProvider:
            name = "barrier"

            def generate_image(self, prompt, aspect_ratio, reference_image=None):
                barrier.wait()
                return png_factory()

            def enhance_prompt(self, prompt):
                return prompt

            def explain(self, original, enhanced):
                return ""

        orchestrator = GenerationOrchestrator(BarrierProvider(), store, max_workers=4)
        # Two calls per batch, two batches: only passes if both batches overlap.
        result = orchestrator.generate("p", enhance=True, count=2)
        assert len(result.original) == 2
        assert len(result.enhanced) == 2

    def test_enhancement_overlaps_original_batch(self, store):
        original_started = threading.Event()
        seen = {}

        class OverlapProvider:
            name = "overlap"

            def generate_image(self, prompt, aspect_ratio, reference_image=None):
                if prompt == "p":
                    original_started.set()
                return b"\x89PNG"

            def enhance_prompt(self, prompt):
                seen["original_running"] = original_started.wait(timeout=5)
                return "p+"

            def explain(self, original, enhanced):
                return "why"

        GenerationOrchestrator(OverlapProvider(), store).generate("p", enhance=True)
        assert seen["original_running"] is True


# ============================================================================
# Partial failure
# ============================================================================


class TestPartialFailure:
    """Verify that failed or empty calls are dropped without failing the batch."""

    @pytest.mark.parametrize("survivors", [0, 1, 2, 3, 4])
    def test_collage_iff_two_or_more_survive(
        self, orchestrator, fake_provider, png_factory, survivors
    ):
        fake_provider.outcomes["a cat"] = [png_factory()] * survivors + [None] * (4 - survivors)

        result = orchestrator.generate("a cat", count=4)

        assert len(result.original) == survivors
        assert (result.collage is not None) == (survivors >= 2)

    def test_all_null_produces_empty_result_and_no_writes(
        self, orchestrator, fake_provider, store
    ):
        fake_provider.outcomes["a cat"] = [None, None]

        result = orchestrator.generate("a cat", count=2, current_account=USER)

        assert result.is_empty
        assert store.count(Collection.HISTORY) == 0
        assert store.count(Collection.GALLERY) == 0

    def test_raising_call_among_successes_is_absorbed(
        self, orchestrator, fake_provider, png_factory
    ):
        fake_provider.outcomes["a cat"] = [png_factory(), ConnectionError("boom"), png_factory()]

        result = orchestrator.generate("a cat", count=3)

        assert len(result.original) == 2
        assert result.collage is not None

    def test_sole_call_raising_propagates(self, orchestrator, fake_provider, store):
        fake_provider.outcomes["a cat"] = [ConnectionError("network down")]

        with pytest.raises(GenerationError) as exc_info:
            orchestrator.generate("a cat", count=1)

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert store.count(Collection.HISTORY) == 0

    def test_every_call_raising_propagates(self, orchestrator, fake_provider):
        fake_provider.outcomes["a cat"] = [RuntimeError("a"), RuntimeError("b")]
        fake_provider.outcomes["a cat, enhanced"] = [RuntimeError("c"), None]

        with pytest.raises(GenerationError):
            orchestrator.generate("a cat", enhance=True, count=2)

    def test_enhanced_survivors_rescue_failed_original_batch(
        self, orchestrator, fake_provider
    ):
        fake_provider.outcomes["a cat"] = [RuntimeError("a")]

        result = orchestrator.generate("a cat", enhance=True, count=1)

        assert result.original == []
        assert len(result.enhanced) == 1
        assert result.explanation is None

    def test_slow_call_times_out_individually(self, store, png_factory):
        release = threading.Event()

        class SlowProvider:
            name = "slow"

            def __init__(self):
                self.calls = 0
                self._lock = threading.Lock()

            def generate_image(self, prompt, aspect_ratio, reference_image=None):
                with self._lock:
                    self.calls += 1
                    slow = self.calls == 1
                if slow:
                    release.wait(timeout=5)
                return png_factory()

            def enhance_prompt(self, prompt):
                return prompt

            def explain(self, original, enhanced):
                return ""

        orchestrator = GenerationOrchestrator(SlowProvider(), store, call_timeout=0.2)
        started = time.monotonic()
        try:
            result = orchestrator.generate("p", count=2)
        finally:
            release.set()

        assert time.monotonic() - started < 4
        assert len(result.original) == 1
        assert result.collage is None

    def test_timeout_counts_from_call_start_not_submission(self, store, png_factory):
        """More calls than max_workers must not spend their budget queued."""

        class SteadyProvider:
            name = "steady"

            def generate_image(self, prompt, aspect_ratio, reference_image=None):
                time.sleep(0.3)
                return png_factory()

            def enhance_prompt(self, prompt):
                return prompt

            def explain(self, original, enhanced):
                return ""

        orchestrator = GenerationOrchestrator(
            SteadyProvider(), store, max_workers=2, call_timeout=0.5
        )

        result = orchestrator.generate("p", count=4)

        assert len(result.original) == 4
        assert result.collage is not None

    def test_provider_timeout_error_is_a_call_failure(
        self, orchestrator, fake_provider, png_factory, caplog
    ):
        """A TimeoutError raised by the provider is not mistaken for a deadline."""
        fake_provider.outcomes["a cat"] = [TimeoutError("read timed out"), png_factory()]

        with caplog.at_level(logging.WARNING, logger="dreampix.core.orchestrator"):
            result = orchestrator.generate("a cat", count=2)

        assert len(result.original) == 1
        assert "batch failed: read timed out" in caplog.text
        assert "timed out after" not in caplog.text

    def test_sole_provider_timeout_error_propagates(self, orchestrator, fake_provider):
        fake_provider.outcomes["a cat"] = [TimeoutError("read timed out")]

        with pytest.raises(GenerationError) as exc_info:
            orchestrator.generate("a cat", count=1)

        assert isinstance(exc_info.value.__cause__, TimeoutError)


# ============================================================================
# Collage failures
# ============================================================================


class TestCollageFailure:
    """Verify an uncomposable collage fails the call instead of vanishing."""

    def test_undecodable_survivors_raise(self, orchestrator, fake_provider):
        fake_provider.outcomes["a cat"] = [b"junk", b"junk"]

        with pytest.raises(CompositionError):
            orchestrator.generate("a cat", count=2)

    def test_nothing_persisted_when_collage_fails(self, orchestrator, fake_provider, store):
        fake_provider.outcomes["a cat"] = [b"junk", b"junk"]

        with pytest.raises(CompositionError):
            orchestrator.generate("a cat", count=2, current_account=USER)

        assert store.count(Collection.HISTORY) == 0
        assert store.count(Collection.GALLERY) == 0

    def test_single_undecodable_survivor_needs_no_collage(self, orchestrator, fake_provider):
        fake_provider.outcomes["a cat"] = [b"junk", None]

        result = orchestrator.generate("a cat", count=2)

        assert [img.image_bytes for img in result.original] == [b"junk"]
        assert result.collage is None


# ============================================================================
# Enhancement and explanation
# ============================================================================


class TestEnhancement:
    """Verify enhanced variants, explanations and their fallbacks."""

    def test_enhanced_images_carry_both_prompts(self, orchestrator):
        result = orchestrator.generate("a cat", enhance=True, count=1)
        image = result.enhanced[0]

        assert image.prompt == "a cat"
        assert image.enhanced_prompt == "a cat, enhanced"
        assert image.is_enhanced_variant is True
        assert result.original[0].is_enhanced_variant is False

    def test_enhanced_collage_uses_enhanced_prompt(self, orchestrator):
        result = orchestrator.generate("a cat", enhance=True, count=2)

        assert result.enhanced_collage.prompt == "a cat, enhanced"
        assert result.enhanced_collage.is_enhanced_variant is True
        assert result.enhanced_collage.aspect_ratio == "1:1"
        assert result.collage.prompt == "a cat"

    def test_collage_is_square_for_any_aspect_ratio(self, orchestrator):
        result = orchestrator.generate("a cat", aspect_ratio="9:16", count=2)
        assert result.collage.aspect_ratio == "1:1"
        assert {img.aspect_ratio for img in result.original} == {"9:16"}

    def test_enhancement_failure_falls_back_to_original_prompt(
        self, orchestrator, fake_provider
    ):
        fake_provider.enhance_error = RuntimeError("text model down")

        result = orchestrator.generate("a cat", enhance=True, count=1)

        assert len(result.enhanced) == 1
        assert result.enhanced[0].enhanced_prompt == "a cat"
        assert [call[0] for call in fake_provider.calls] == ["a cat", "a cat"]

    def test_explanation_uses_both_prompts(self, orchestrator, fake_provider):
        orchestrator.generate("a cat", enhance=True, count=1)
        assert fake_provider.explain_calls == [("a cat", "a cat, enhanced")]

    def test_no_explanation_when_enhanced_batch_empty(self, orchestrator, fake_provider):
        fake_provider.outcomes["a cat, enhanced"] = [None]

        result = orchestrator.generate("a cat", enhance=True, count=1)

        assert result.enhanced == []
        assert result.explanation is None
        assert fake_provider.explain_calls == []

    def test_explanation_failure_falls_back(self, store, fake_provider):
        def broken_explain(original, enhanced):
            raise RuntimeError("quota")

        fake_provider.explain = broken_explain
        result = GenerationOrchestrator(fake_provider, store).generate("a cat", enhance=True)
        assert result.explanation == EXPLANATION_UNAVAILABLE


# ============================================================================
# Ownership and persistence
# ============================================================================


class TestPersistence:
    """Verify owner attribution and the gallery/history write policy."""

    def test_owner_set_when_signed_in(self, orchestrator):
        result = orchestrator.generate("a cat", enhance=True, count=2, current_account=USER)
        assert {img.owner_id for img in result.artifacts()} == {USER.id}

    def test_owner_absent_for_guest(self, orchestrator):
        result = orchestrator.generate("a cat", enhance=True, count=2)
        assert {img.owner_id for img in result.artifacts()} == {None}

    def test_signed_in_images_land_in_gallery_and_history(self, orchestrator, store):
        result = orchestrator.generate("a cat", enhance=True, count=2, current_account=USER)
        produced = set(_ids(result.artifacts()))

        assert set(_ids(store.list_all(Collection.HISTORY))) == produced
        assert set(_ids(store.list_by_owner(Collection.GALLERY, USER.id))) == produced

    def test_guest_images_only_land_in_history(self, orchestrator, store):
        result = orchestrator.generate("a cat", count=2)

        assert set(_ids(store.list_all(Collection.HISTORY))) == set(_ids(result.artifacts()))
        assert store.list_all(Collection.GALLERY) == []

    def test_write_failures_do_not_hide_result(self, fake_provider, temp_dir):
        class FlakyStore(ImageStore):
            def put_image(self, collection, image):
                if image.id.endswith("orig-1"):
                    raise StoreError(StoreErrorKind.WRITE_FAILED, f"cannot write {image.id}")
                super().put_image(collection, image)

        store = FlakyStore(temp_dir / "flaky.sqlite").open()
        orchestrator = GenerationOrchestrator(fake_provider, store, clock=lambda: BATCH_TS)

        result = orchestrator.generate("a cat", count=3, current_account=USER)

        assert len(result.original) == 3
        assert len(result.persist_errors) == 2  # gallery and history
        history = set(_ids(store.list_all(Collection.HISTORY)))
        assert history == {f"{BATCH_TS}-orig-0", f"{BATCH_TS}-orig-2", f"{BATCH_TS}-collage"}


# ============================================================================
# Validation
# ============================================================================


class TestValidation:
    """Verify invalid requests are rejected before any call is made."""

    @pytest.mark.parametrize("prompt", ["", "   "])
    def test_empty_prompt_rejected(self, orchestrator, fake_provider, prompt):
        with pytest.raises(ValueError):
            orchestrator.generate(prompt)
        assert fake_provider.calls == []

    @pytest.mark.parametrize("count", [0, 5, -1])
    def test_count_out_of_range(self, orchestrator, count):
        with pytest.raises(ValueError):
            orchestrator.generate("a cat", count=count)

    def test_unknown_aspect_ratio(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.generate("a cat", aspect_ratio="21:9")
