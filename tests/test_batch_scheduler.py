"""Tests for batch partitioning and batch execution."""

import asyncio

from hypothesis import given, strategies as st

from app.models.shared import SegmentStatus
from app.models.tasks import LongVideoTask, Segment
from app.tasks.long_video.batch_scheduler import BatchScheduler, partition
from app.tasks.long_video.segment_generator import SegmentOutcome
from conftest import Harness, task_request


class TestPartition:
    @given(st.integers(min_value=1, max_value=500), st.integers(min_value=1, max_value=12))
    def test_batches_cover_segments_in_order(self, total, batch_size):
        segments = [Segment.create(i, batch_size) for i in range(total, 0, -1)]

        batches = partition(segments, batch_size)

        assert [s.id for batch in batches for s in batch] == list(range(1, total + 1))
        assert all(len(batch) == batch_size for batch in batches[:-1])
        assert 1 <= len(batches[-1]) <= batch_size
        assert all(s.batch_index == index for index, batch in enumerate(batches) for s in batch)


async def planned(harness: Harness) -> LongVideoTask:
    task = LongVideoTask.new(task_request(minutes=1))
    for segment in task.segments:
        segment.prompt = f"Scene {segment.id}"
        segment.narration = f"Narration {segment.id}."
    await harness.store.save_all(task)
    return task


class TestRunBatch:
    def test_runs_unresolved_segments_and_reports_each(self, store_dir):
        async def scenario():
            harness = Harness(store_dir)
            task = await planned(harness)
            batch = task.batch(0)
            batch[0].status = SegmentStatus.COMPLETED
            batch[0].video_url = "mem://done.mp4"
            done = []

            async def on_done(segment, outcome):
                done.append((segment.id, outcome))

            outcomes = await BatchScheduler(harness.generator).run_batch(
                task, batch, 3, asyncio.Event(), on_segment_done=on_done
            )
            return harness, batch, outcomes, done

        harness, batch, outcomes, done = asyncio.run(scenario())

        assert sorted(outcomes) == [2, 3, 4, 5, 6]
        assert set(outcomes.values()) == {SegmentOutcome.COMPLETED}
        assert sorted(segment_id for segment_id, _ in done) == [2, 3, 4, 5, 6]
        assert harness.video.calls_for(1) == []
        assert batch[0].video_url == "mem://done.mp4"

    def test_failures_do_not_stop_the_batch(self, store_dir):
        async def scenario():
            harness = Harness(
                store_dir,
                video_rule=lambda segment_id, attempt: (
                    ValueError("bad payload") if segment_id == 2 else None
                ),
            )
            task = await planned(harness)
            return await BatchScheduler(harness.generator).run_batch(
                task, task.batch(0), 6, asyncio.Event()
            )

        outcomes = asyncio.run(scenario())

        assert outcomes[2] == SegmentOutcome.FAILED
        assert [outcomes[i] for i in (1, 3, 4, 5, 6)] == [SegmentOutcome.COMPLETED] * 5

    def test_cancelled_batch_starts_nothing(self, store_dir):
        async def scenario():
            harness = Harness(store_dir)
            task = await planned(harness)
            event = asyncio.Event()
            event.set()
            outcomes = await BatchScheduler(harness.generator).run_batch(
                task, task.batch(1), 2, event
            )
            return harness, task, outcomes

        harness, task, outcomes = asyncio.run(scenario())

        assert set(outcomes.values()) == {SegmentOutcome.CANCELLED}
        assert harness.image.calls == []
        assert all(s.status == SegmentStatus.PENDING for s in task.batch(1))
