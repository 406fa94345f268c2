"""Tests for the task persistence backends."""

import asyncio
import os
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.shared import SegmentStatus, TaskStatus
from app.models.tasks import LongVideoTask
from app.services.firestore_service import FirestoreService
from app.services.task_store import FirestoreTaskStore, JsonFileTaskStore
from conftest import task_request


class TestJsonFileTaskStore:
    def test_round_trip_with_segments(self, store_dir):
        store = JsonFileTaskStore(store_dir)
        task = LongVideoTask.new(task_request(minutes=2))
        task.get_segment(11).status = SegmentStatus.COMPLETED
        task.get_segment(11).video_url = "mem://11.mp4"

        async def scenario():
            await store.save_all(task)
            return await store.load_task(task.id)

        loaded = asyncio.run(scenario())

        assert loaded.id == task.id
        # Numeric ordering, not file name ordering
        assert [s.id for s in loaded.segments] == list(range(1, 16))
        assert loaded.get_segment(11).status == SegmentStatus.COMPLETED
        assert loaded.get_segment(11).video_url == "mem://11.mp4"
        assert loaded.config == task.config

    def test_segment_update_leaves_the_rest_alone(self, store_dir):
        store = JsonFileTaskStore(store_dir)
        task = LongVideoTask.new(task_request(minutes=1))

        async def scenario():
            await store.save_all(task)
            segment = task.get_segment(2).model_copy()
            segment.progress = 50
            await store.save_segment(task.id, segment)
            return await store.load_task(task.id)

        loaded = asyncio.run(scenario())

        assert loaded.get_segment(2).progress == 50
        assert loaded.get_segment(1).progress == 0

    def test_list_filters_by_status_newest_first(self, store_dir):
        store = JsonFileTaskStore(store_dir)
        older = LongVideoTask.new(task_request())
        newer = LongVideoTask.new(task_request())
        newer.created_at = older.created_at + timedelta(minutes=1)
        done = LongVideoTask.new(task_request())
        done.status = TaskStatus.COMPLETED

        async def scenario():
            for task in (older, newer, done):
                await store.save_task(task)
            return (
                await store.list_tasks(statuses=[TaskStatus.PENDING.value]),
                await store.list_tasks(limit=1),
            )

        pending, limited = asyncio.run(scenario())

        assert [t.id for t in pending] == [newer.id, older.id]
        assert len(limited) == 1

    def test_delete_and_missing(self, store_dir):
        store = JsonFileTaskStore(store_dir)
        task = LongVideoTask.new(task_request())

        async def scenario():
            await store.save_all(task)
            first = await store.delete_task(task.id)
            second = await store.delete_task(task.id)
            return first, second, await store.load_task(task.id)

        assert asyncio.run(scenario()) == (True, False, None)

    def test_concurrent_saves_apply_in_order(self, store_dir):
        store = JsonFileTaskStore(store_dir)
        task = LongVideoTask.new(task_request())

        async def save_with_progress(progress):
            snapshot = task.model_copy()
            snapshot.progress = progress
            await store.save_task(snapshot)

        async def scenario():
            await store.save_all(task)
            await asyncio.gather(*(save_with_progress(p) for p in range(1, 21)))
            return await store.load_task(task.id)

        loaded = asyncio.run(scenario())

        assert loaded.progress == 20
        assert not [n for n in os.listdir(os.path.join(store_dir, task.id)) if n.endswith(".tmp")]

    @pytest.mark.parametrize("task_id", ["", "../escape", ".hidden"])
    def test_rejects_unsafe_ids(self, store_dir, task_id):
        store = JsonFileTaskStore(store_dir)

        with pytest.raises(ValueError):
            asyncio.run(store.load_task(task_id))


def mock_firestore():
    firestore = MagicMock(spec=FirestoreService)
    firestore.set_document = AsyncMock(return_value="id")
    firestore.get_document = AsyncMock()
    firestore.query_collection = AsyncMock()
    return firestore


class TestFirestoreTaskStore:
    def test_save_writes_task_and_segment_documents(self):
        firestore = mock_firestore()
        store = FirestoreTaskStore(firestore)
        task = LongVideoTask.new(task_request())

        asyncio.run(store.save_all(task))

        task_call = firestore.set_document.call_args_list[0]
        assert task_call.args[0] == "tasks_long_video"
        assert task_call.args[1] == task.id
        assert "segments" not in task_call.args[2]
        segment_calls = firestore.set_document.call_args_list[1:]
        assert [c.args[1] for c in segment_calls] == [str(i) for i in range(1, 9)]
        assert all(c.args[0] == "segments" for c in segment_calls)
        assert all(c.kwargs["parent"] is firestore.get_document_ref.return_value for c in segment_calls)

    def test_load_sorts_segments(self):
        firestore = mock_firestore()
        store = FirestoreTaskStore(firestore)
        task = LongVideoTask.new(task_request())
        firestore.get_document.return_value = task.document()
        firestore.query_collection.return_value = [
            dict(s.model_dump(mode="json"), id=str(s.id)) for s in reversed(task.segments)
        ]

        loaded = asyncio.run(store.load_task(task.id))

        assert [s.id for s in loaded.segments] == list(range(1, 9))

    def test_load_missing_task(self):
        firestore = mock_firestore()
        firestore.get_document.return_value = None

        assert asyncio.run(FirestoreTaskStore(firestore).load_task("missing")) is None

    def test_list_queries_by_status(self):
        firestore = mock_firestore()
        firestore.query_collection.return_value = []

        asyncio.run(FirestoreTaskStore(firestore).list_tasks(statuses={"pending"}, limit=5))

        firestore.query_collection.assert_awaited_once_with(
            "tasks_long_video",
            filters=[("status", "in", ["pending"])],
            order_by="created_at",
            descending=True,
            limit=5,
        )

    def test_delete_removes_segments_in_one_batch(self):
        firestore = mock_firestore()
        task_ref = firestore.get_document_ref.return_value
        task_ref.get.return_value.exists = True
        segment_docs = [MagicMock(), MagicMock()]
        task_ref.collection.return_value.stream.return_value = segment_docs

        deleted = asyncio.run(FirestoreTaskStore(firestore).delete_task("abc"))

        batch = firestore.batch.return_value
        assert deleted
        assert batch.delete.call_count == 3
        batch.commit.assert_called_once()
