"""Tests for single segment generation, retries and regeneration."""

import asyncio

from app.models.errors import ProviderError
from app.models.shared import RegenerateType, SegmentStatus
from app.models.tasks import LongVideoTask, SegmentOverrides
from app.tasks.long_video.segment_generator import (
    GenerationStep,
    SegmentJob,
    SegmentOutcome,
)
from conftest import Harness, fast_settings, http_error, task_request


async def planned_task(harness: Harness, minutes: int = 1, **config) -> LongVideoTask:
    task = LongVideoTask.new(task_request(minutes, **config))
    for segment in task.segments:
        segment.prompt = f"Scene {segment.id}"
        segment.narration = f"Narration {segment.id}."
        segment.image_prompt = f"Image {segment.id}"
    await harness.store.save_all(task)
    return task


def run_segment(store_dir, segment_id=1, prepare=None, job_options=None, **harness_options):
    async def scenario():
        harness = Harness(store_dir, **harness_options)
        task = await planned_task(harness)
        segment = task.get_segment(segment_id)
        if prepare is not None:
            prepare(harness, segment)
        outcome = await harness.generator.generate(
            SegmentJob(task, segment, asyncio.Event(), **(job_options or {}))
        )
        stored = await harness.store.load_task(task.id)
        return harness, segment, outcome, stored.get_segment(segment_id)

    return asyncio.run(scenario())


class TestGenerate:
    """Happy path and step selection."""

    def test_success_writes_all_artifacts(self, store_dir):
        harness, segment, outcome, stored = run_segment(store_dir)

        assert outcome == SegmentOutcome.COMPLETED
        assert segment.status == SegmentStatus.COMPLETED
        assert segment.progress == 100
        assert segment.image_url.endswith(".png")
        assert segment.video_url.endswith(".mp4")
        assert segment.audio_url.endswith(".mp3")
        assert segment.retry_count == 0
        assert stored.video_url == segment.video_url
        assert stored.status == SegmentStatus.COMPLETED

    def test_images_can_be_disabled(self, store_dir):
        async def scenario():
            harness = Harness(store_dir)
            task = await planned_task(harness, generate_images=False)
            job = SegmentJob(task, task.get_segment(1), asyncio.Event())
            return harness.generator.steps_for(job)

        assert asyncio.run(scenario()) == [GenerationStep.VIDEO, GenerationStep.AUDIO]

    def test_no_narration_skips_audio(self, store_dir):
        def prepare(harness, segment):
            segment.narration = "  "

        harness, segment, outcome, _ = run_segment(store_dir, prepare=prepare)

        assert outcome == SegmentOutcome.COMPLETED
        assert segment.audio_url is None
        assert harness.tts.calls == []

    def test_calls_never_share_a_credential(self, store_dir):
        async def scenario():
            harness = Harness(store_dir, credentials_per_provider=2)
            task = await planned_task(harness)
            await asyncio.gather(
                *(
                    harness.generator.generate(SegmentJob(task, s, asyncio.Event()))
                    for s in task.segments
                )
            )
            return harness

        harness = asyncio.run(scenario())

        assert harness.tracker.peak
        assert all(peak == 1 for peak in harness.tracker.peak.values())


class TestRetries:
    """Classified failures drive retries within the attempt budget."""

    def test_throttled_everywhere_fails_after_exact_budget(self, store_dir):
        harness, segment, outcome, stored = run_segment(
            store_dir,
            credentials_per_provider=2,
            video_rule=lambda segment_id, attempt: http_error(429),
        )

        assert outcome == SegmentOutcome.FAILED
        assert len(harness.video.calls) == 3
        assert segment.status == SegmentStatus.FAILED
        assert segment.error_kind == "throttled"
        assert "429" in segment.error
        assert segment.retry_count == 3
        assert stored.status == SegmentStatus.FAILED

    def test_budget_follows_settings(self, store_dir):
        harness, segment, outcome, _ = run_segment(
            store_dir,
            settings=fast_settings(max_attempts=5),
            video_rule=lambda segment_id, attempt: http_error(429),
        )

        assert outcome == SegmentOutcome.FAILED
        assert len(harness.video.calls) == 5

    def test_throttle_then_success_rotates_and_costs_nothing(self, store_dir):
        harness, segment, outcome, _ = run_segment(
            store_dir,
            video_rule=lambda segment_id, attempt: http_error(429) if attempt == 1 else None,
        )

        assert outcome == SegmentOutcome.COMPLETED
        first_key, second_key = [call[1] for call in harness.video.calls]
        assert first_key != second_key
        assert segment.retry_count == 0

    def test_transient_error_retries_same_credential(self, store_dir):
        harness, segment, outcome, _ = run_segment(
            store_dir,
            video_rule=lambda segment_id, attempt: http_error(503) if attempt < 3 else None,
        )

        assert outcome == SegmentOutcome.COMPLETED
        assert len({call[1] for call in harness.video.calls}) == 1
        assert segment.retry_count == 2

    def test_invalid_input_is_not_retried(self, store_dir):
        harness, segment, outcome, _ = run_segment(
            store_dir, video_rule=lambda segment_id, attempt: http_error(400)
        )

        assert outcome == SegmentOutcome.FAILED
        assert len(harness.video.calls) == 1
        assert segment.error_kind == "invalid_input"

    def test_unavailable_provider_switches_to_fallback_model(self, store_dir):
        def rule(segment_id, attempt):
            if attempt == 1:
                return ProviderError("vector_engine", "Model not available", status_code=503)
            return None

        harness, segment, outcome, _ = run_segment(
            store_dir,
            video_rule=rule,
            video_fallback_model="veo-3.1-fast",
            settings=fast_settings(max_attempts=4),
        )

        assert outcome == SegmentOutcome.COMPLETED
        models = [call[2] for call in harness.video.calls]
        assert models == ["veo-3.1", "veo-3.1-fast"]

    def test_server_errors_on_two_credentials_switch_then_fallback_retries(self, store_dir):
        errors = {1: http_error(500), 2: http_error(429), 3: http_error(500), 4: http_error(502)}

        harness, segment, outcome, _ = run_segment(
            store_dir,
            video_rule=lambda segment_id, attempt: errors.get(attempt),
            video_fallback_model="veo-3.1-fast",
            settings=fast_settings(max_attempts=6),
        )

        assert outcome == SegmentOutcome.COMPLETED
        models = [call[2] for call in harness.video.calls]
        assert models == ["veo-3.1"] * 3 + ["veo-3.1-fast"] * 2
        # The fallback route starts with a clean slate, so its 502 is retried in place
        fallback_keys = {call[1] for call in harness.video.calls[3:]}
        assert len(fallback_keys) == 1

    def test_concurrent_segments_do_not_share_server_error_history(self, store_dir):
        async def scenario():
            harness = Harness(
                store_dir,
                video_rule=lambda segment_id, attempt: http_error(502) if attempt == 1 else None,
            )
            task = await planned_task(harness)
            outcomes = await asyncio.gather(
                *(
                    harness.generator.generate(SegmentJob(task, s, asyncio.Event()))
                    for s in task.segments
                )
            )
            return harness, task, outcomes

        harness, task, outcomes = asyncio.run(scenario())

        assert outcomes == [SegmentOutcome.COMPLETED] * 8
        for segment in task.segments:
            assert len(harness.video.calls_for(segment.id)) == 2
            assert segment.retry_count == 1


class TestRegenerate:
    """Regeneration replaces artifacts only on success."""

    @staticmethod
    def completed(harness, segment):
        segment.status = SegmentStatus.COMPLETED
        segment.progress = 100
        segment.image_url = "mem://old/image.png"
        segment.video_url = "mem://old/video.mp4"
        segment.audio_url = "mem://old/narration.mp3"

    def test_failed_regeneration_keeps_previous_artifacts(self, store_dir):
        harness, segment, outcome, stored = run_segment(
            store_dir,
            prepare=self.completed,
            video_rule=lambda segment_id, attempt: http_error(500),
            job_options={"regenerate_type": RegenerateType.ALL},
        )

        assert outcome == SegmentOutcome.FAILED
        # The new image was generated but never committed
        assert len(harness.image.calls) == 1
        assert segment.status == SegmentStatus.COMPLETED
        assert segment.image_url == "mem://old/image.png"
        assert segment.video_url == "mem://old/video.mp4"
        assert segment.audio_url == "mem://old/narration.mp3"
        assert segment.error_kind == "transient_server_error"
        assert stored.video_url == "mem://old/video.mp4"

    def test_audio_regeneration_with_new_narration(self, store_dir):
        harness, segment, outcome, _ = run_segment(
            store_dir,
            prepare=self.completed,
            job_options={
                "regenerate_type": RegenerateType.AUDIO,
                "overrides": SegmentOverrides(
                    narration="A new line.", voice_actor_id="cantonese-female-narrator"
                ),
            },
        )

        assert outcome == SegmentOutcome.COMPLETED
        assert harness.video.calls == []
        assert harness.tts.calls[0][2] == "cantonese-female-narrator"
        assert segment.narration == "A new line."
        assert segment.voice_actor_id == "cantonese-female-narrator"
        assert segment.video_url == "mem://old/video.mp4"
        assert segment.audio_url != "mem://old/narration.mp3"


class TestCancellation:
    def test_cancel_before_start_restores_pending(self, store_dir):
        async def scenario():
            harness = Harness(store_dir)
            task = await planned_task(harness)
            event = asyncio.Event()
            event.set()
            segment = task.get_segment(1)
            outcome = await harness.generator.generate(SegmentJob(task, segment, event))
            return harness, segment, outcome

        harness, segment, outcome = asyncio.run(scenario())

        assert outcome == SegmentOutcome.CANCELLED
        assert segment.status == SegmentStatus.PENDING
        assert harness.image.calls == []

    def test_in_flight_call_finishes_but_result_is_discarded(self, store_dir):
        async def scenario():
            harness = Harness(store_dir)
            task = await planned_task(harness)
            harness.video.gate = asyncio.Event()
            event = asyncio.Event()
            segment = task.get_segment(1)
            generation = asyncio.create_task(
                harness.generator.generate(SegmentJob(task, segment, event))
            )
            await harness.video.started.wait()
            event.set()
            harness.video.gate.set()
            return harness, segment, await generation

        harness, segment, outcome = asyncio.run(scenario())

        assert outcome == SegmentOutcome.CANCELLED
        assert len(harness.video.calls) == 1
        assert harness.tts.calls == []
        assert segment.status == SegmentStatus.PENDING
        assert segment.video_url is None
