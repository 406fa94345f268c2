"""Tests for task and segment models."""

import math

import pytest
from hypothesis import given, strategies as st

from app.models.shared import SegmentStatus, TaskStatus
from app.models.tasks import (
    CreateTaskRequest,
    LongVideoTask,
    Segment,
    TaskStats,
    compute_batch_count,
    compute_segment_count,
)


def build_task(minutes: int, batch_size: int = 6) -> LongVideoTask:
    return LongVideoTask.new(
        CreateTaskRequest(duration_minutes=minutes, story="A story."),
        batch_size=batch_size,
    )


class TestSegmentCounts:
    """Derived segment and batch counts."""

    @given(st.integers(min_value=1, max_value=60))
    def test_counts_match_duration(self, minutes):
        task = build_task(minutes)

        assert task.total_segments == math.ceil(minutes * 60 / 8)
        assert task.total_batches == math.ceil(task.total_segments / 6)
        assert len(task.segments) == task.total_segments

    def test_one_minute_is_eight_segments_in_two_batches(self):
        task = build_task(1)

        assert task.total_segments == 8
        assert task.total_batches == 2
        assert [len(task.batch(0)), len(task.batch(1))] == [6, 2]

    def test_helpers(self):
        assert compute_segment_count(3) == 23
        assert compute_batch_count(23) == 4
        assert compute_batch_count(23, batch_size=10) == 3


class TestSegmentTimeline:
    """Segment offsets form a contiguous partition of the timeline."""

    @given(st.integers(min_value=1, max_value=60), st.integers(min_value=1, max_value=12))
    def test_contiguous_partition(self, minutes, batch_size):
        task = build_task(minutes, batch_size)

        cursor = 0
        for index, segment in enumerate(task.segments, start=1):
            assert segment.id == index
            assert segment.start_time == cursor
            assert segment.end_time == cursor + 8
            assert segment.batch_index == (index - 1) // batch_size
            cursor = segment.end_time
        assert cursor == task.total_segments * 8

    def test_create_segment(self):
        segment = Segment.create(7, batch_size=6, segment_duration=8)

        assert segment.start_time == 48
        assert segment.end_time == 56
        assert segment.batch_index == 1
        assert segment.status == SegmentStatus.PENDING


class TestTaskHelpers:
    def test_get_segment_out_of_range(self):
        task = build_task(1)

        with pytest.raises(KeyError):
            task.get_segment(0)
        with pytest.raises(KeyError):
            task.get_segment(9)
        assert task.get_segment(8).id == 8

    def test_progress_counts_resolved_segments_in_full(self):
        task = build_task(1)
        task.segments[0].status = SegmentStatus.COMPLETED
        task.segments[1].status = SegmentStatus.FAILED
        task.segments[2].status = SegmentStatus.GENERATING
        task.segments[2].progress = 40

        assert task.recompute_progress() == round((100 + 100 + 40) / 8)

    def test_document_excludes_segments(self):
        task = build_task(1)
        document = task.document()

        assert "segments" not in document
        assert document["status"] == TaskStatus.PENDING.value
        restored = LongVideoTask(**document)
        assert restored.total_segments == 8
        assert restored.segments == []


class TestTaskStats:
    def test_stats_for_partially_done_task(self):
        task = build_task(1)
        for segment in task.batch(0):
            segment.status = SegmentStatus.COMPLETED
        task.segments[6].status = SegmentStatus.GENERATING

        stats = TaskStats.from_task(task)

        assert stats.completed == 6
        assert stats.generating == 1
        assert stats.pending == 1
        assert stats.completed_batches == 1
        assert stats.current_batch == 1
        assert stats.estimated_remaining_minutes == 1

    def test_terminal_statuses(self):
        assert TaskStatus.COMPLETED_WITH_ERRORS.value in TaskStatus.terminal()
        assert TaskStatus.CANCELLING.value not in TaskStatus.terminal()
