"""
Task Store

Persists long video tasks and their segments so that a task can be resumed
after a process restart. The task document and each segment document are
written separately, so a segment transition only rewrites that segment.
"""

import asyncio
import json
import logging
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from app.models.tasks import LongVideoTask, Segment
from app.services.firestore_service import FirestoreService

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class TaskStore(ABC):
    """Abstract base class for task persistence backends."""

    @abstractmethod
    async def save_task(self, task: LongVideoTask) -> None:
        """Write the task document (without segments)."""
        pass

    @abstractmethod
    async def save_segment(self, task_id: str, segment: Segment) -> None:
        """Write one segment document."""
        pass

    async def save_all(self, task: LongVideoTask) -> None:
        """Write the task document and every segment."""
        await self.save_task(task)
        for segment in task.segments:
            await self.save_segment(task.id, segment)

    @abstractmethod
    async def load_task(self, task_id: str) -> Optional[LongVideoTask]:
        """Load a task with all of its segments, or None if unknown."""
        pass

    @abstractmethod
    async def list_tasks(
        self, statuses: Optional[Iterable[str]] = None, limit: Optional[int] = None
    ) -> List[LongVideoTask]:
        """List task documents, newest first. Segments are not loaded."""
        pass

    @abstractmethod
    async def delete_task(self, task_id: str) -> bool:
        """Delete a task and its segments. Returns False if it did not exist."""
        pass


class FirestoreTaskStore(TaskStore):
    """Task store on Firestore: one document per task, segments in a subcollection."""

    COLLECTION = "tasks_long_video"
    SEGMENTS = "segments"

    def __init__(self, firestore_service: FirestoreService):
        self.firestore = firestore_service

    def _task_ref(self, task_id: str):
        return self.firestore.get_document_ref(self.COLLECTION, task_id)

    async def save_task(self, task: LongVideoTask) -> None:
        await self.firestore.set_document(self.COLLECTION, task.id, task.document())

    async def save_segment(self, task_id: str, segment: Segment) -> None:
        await self.firestore.set_document(
            self.SEGMENTS,
            str(segment.id),
            segment.model_dump(mode="json"),
            parent=self._task_ref(task_id),
        )

    async def load_task(self, task_id: str) -> Optional[LongVideoTask]:
        data = await self.firestore.get_document(self.COLLECTION, task_id)
        if data is None:
            return None
        segments = await self.firestore.query_collection(
            self.SEGMENTS, parent=self._task_ref(task_id)
        )
        data["segments"] = sorted(segments, key=lambda s: int(s["id"]))
        return LongVideoTask(**data)

    async def list_tasks(
        self, statuses: Optional[Iterable[str]] = None, limit: Optional[int] = None
    ) -> List[LongVideoTask]:
        filters = None
        if statuses is not None:
            filters = [("status", "in", list(statuses))]
        documents = await self.firestore.query_collection(
            self.COLLECTION,
            filters=filters,
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [LongVideoTask(**data) for data in documents]

    async def delete_task(self, task_id: str) -> bool:
        task_ref = self._task_ref(task_id)
        if not task_ref.get().exists:
            return False

        batch = self.firestore.batch()
        for doc in task_ref.collection(self.SEGMENTS).stream():
            batch.delete(doc.reference)
        batch.delete(task_ref)
        batch.commit()
        logger.info(f"Deleted task {task_id} and its segments")
        return True


class JsonFileTaskStore(TaskStore):
    """Task store on the local filesystem.

    Layout::

        root/
            <task_id>/
                task.json
                segments/
                    1.json
                    2.json
                    ...

    Files are written to a temporary name and renamed into place, so a crash
    never leaves a half-written document behind.
    """

    def __init__(self, root_dir: str):
        self.root_dir = root_dir
        os.makedirs(root_dir, exist_ok=True)
        # Writes to one file are applied in the order they were requested
        self._write_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _task_dir(self, task_id: str) -> str:
        if not task_id or os.sep in task_id or task_id.startswith("."):
            raise ValueError(f"Invalid task id: {task_id!r}")
        return os.path.join(self.root_dir, task_id)

    @staticmethod
    def _write_json(path: str, data: dict) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        temp_path = f"{path}.{uuid.uuid4().hex}.tmp"
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
        os.replace(temp_path, path)

    @staticmethod
    def _read_json(path: str) -> dict:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    async def _write(self, path: str, data: dict) -> None:
        async with self._write_locks[path]:
            await asyncio.to_thread(self._write_json, path, data)

    async def save_task(self, task: LongVideoTask) -> None:
        await self._write(os.path.join(self._task_dir(task.id), "task.json"), task.document())

    async def save_segment(self, task_id: str, segment: Segment) -> None:
        await self._write(
            os.path.join(self._task_dir(task_id), "segments", f"{segment.id}.json"),
            segment.model_dump(mode="json"),
        )

    def _load_task_data(self, task_dir: str) -> Optional[dict]:
        task_path = os.path.join(task_dir, "task.json")
        if not os.path.exists(task_path):
            return None

        data = self._read_json(task_path)
        segments_dir = os.path.join(task_dir, "segments")
        segments = []
        if os.path.isdir(segments_dir):
            for filename in os.listdir(segments_dir):
                if filename.endswith(".json"):
                    segments.append(self._read_json(os.path.join(segments_dir, filename)))
        data["segments"] = sorted(segments, key=lambda s: s["id"])
        return data

    async def load_task(self, task_id: str) -> Optional[LongVideoTask]:
        data = await asyncio.to_thread(self._load_task_data, self._task_dir(task_id))
        return LongVideoTask(**data) if data is not None else None

    def _read_task_documents(self) -> List[dict]:
        documents = []
        for entry in os.listdir(self.root_dir):
            task_path = os.path.join(self.root_dir, entry, "task.json")
            if os.path.exists(task_path):
                documents.append(self._read_json(task_path))
        return documents

    async def list_tasks(
        self, statuses: Optional[Iterable[str]] = None, limit: Optional[int] = None
    ) -> List[LongVideoTask]:
        wanted = set(statuses) if statuses is not None else None
        tasks = []
        for document in await asyncio.to_thread(self._read_task_documents):
            task = LongVideoTask(**document)
            if wanted is None or task.status in wanted:
                tasks.append(task)

        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks[:limit] if limit else tasks

    async def delete_task(self, task_id: str) -> bool:
        task_dir = self._task_dir(task_id)
        if not os.path.isdir(task_dir):
            return False
        await asyncio.to_thread(shutil.rmtree, task_dir)
        for path in [p for p in self._write_locks if p.startswith(task_dir + os.sep)]:
            del self._write_locks[path]
        logger.info(f"Deleted task {task_id} from {self.root_dir}")
        return True
