import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from app.models.tasks import LongVideoTask, Segment
from app.tasks.long_video.segment_generator import (
    SegmentGenerator,
    SegmentJob,
    SegmentOutcome,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def partition(segments: List[Segment], batch_size: int) -> List[List[Segment]]:
    """Group segments into consecutive batches of at most ``batch_size``, in id order."""
    ordered = sorted(segments, key=lambda s: s.id)
    return [ordered[i : i + batch_size] for i in range(0, len(ordered), batch_size)]


class BatchScheduler:
    """Runs one batch of segments through a bounded pool of generators.

    The scheduler never retries; a segment comes back completed, failed or
    cancelled from the generator and that is final for this batch.
    """

    def __init__(self, generator: SegmentGenerator):
        self.generator = generator

    async def run_batch(
        self,
        task: LongVideoTask,
        segments: List[Segment],
        concurrency: int,
        cancel_event: asyncio.Event,
        on_segment_done: Optional[
            Callable[[Segment, SegmentOutcome], Awaitable[None]]
        ] = None,
    ) -> Dict[int, SegmentOutcome]:
        """Generate every unresolved segment of a batch.

        Args:
            task: Task that owns the segments
            segments: Segments of this batch
            concurrency: Maximum generators running at once
            cancel_event: Set when the task is being cancelled
            on_segment_done: Awaited after each segment finishes

        Returns:
            Dict[int, SegmentOutcome]: Outcome per segment id that was run
        """
        pending = [s for s in segments if not s.is_resolved]
        skipped = len(segments) - len(pending)
        if skipped:
            logger.info(f"Task {task.id}: {skipped} segments of this batch already resolved")

        semaphore = asyncio.Semaphore(concurrency)
        outcomes: Dict[int, SegmentOutcome] = {}

        async def run_one(segment: Segment) -> None:
            async with semaphore:
                if cancel_event.is_set():
                    outcomes[segment.id] = SegmentOutcome.CANCELLED
                    return
                outcome = await self.generator.generate(
                    SegmentJob(task, segment, cancel_event)
                )
                outcomes[segment.id] = outcome
                if on_segment_done is not None:
                    await on_segment_done(segment, outcome)

        await asyncio.gather(*(run_one(segment) for segment in pending))
        return outcomes
