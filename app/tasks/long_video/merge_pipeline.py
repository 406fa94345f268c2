"""
Merge Pipeline

Composes the completed segments of a task into the final deliverable. Tiers
are tried in order (local compositor with one retry, remote compositor when
configured) and, when none of them produces a video, the pipeline degrades to
an emergency result listing the completed segment URLs in id order.
"""

import asyncio
import logging
from typing import List, Optional

from app.models.errors import MergeUnavailableError, NoSegmentsToMergeError
from app.models.shared import MergeMode, SegmentStatus, SubtitleSettings, VolumeLevels
from app.models.tasks import LongVideoTask, MergeResult, Segment
from app.services.storage_service import ArtifactStorage
from app.tasks.long_video.compositor import ClipSpec, CompositionJob, MediaCompositor
from app.tasks.long_video.subtitles import build_srt

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def playable_segments(task: LongVideoTask) -> List[Segment]:
    """Completed segments with a video clip, in id order."""
    return sorted(
        (
            s
            for s in task.segments
            if s.status == SegmentStatus.COMPLETED and s.video_url
        ),
        key=lambda s: s.id,
    )


class MergePipeline:
    def __init__(
        self,
        local: MediaCompositor,
        storage: ArtifactStorage,
        remote: Optional[MediaCompositor] = None,
        local_attempts: int = 2,
    ):
        self.local = local
        self.remote = remote
        self.storage = storage
        self.local_attempts = max(1, local_attempts)

    async def _upload_subtitles(self, task_id: str, segments: List[Segment]) -> Optional[str]:
        srt = build_srt(segments)
        if not srt:
            return None
        try:
            return await asyncio.to_thread(
                self.storage.upload,
                f"tasks/{task_id}/final/subtitles.srt",
                srt.encode("utf-8"),
                "application/x-subrip",
            )
        except Exception as e:
            logger.warning(f"Could not upload subtitles for task {task_id}: {e}")
            return None

    async def merge(
        self,
        task: LongVideoTask,
        volumes: Optional[VolumeLevels] = None,
        subtitles: Optional[SubtitleSettings] = None,
    ) -> MergeResult:
        """Merge a task's completed segments.

        Args:
            task: Task whose segments to merge
            volumes: Mixing levels, defaults to the task's configuration
            subtitles: Subtitle settings, defaults to the task's configuration

        Returns:
            MergeResult: The merged video, or the emergency segment list

        Raises:
            NoSegmentsToMergeError: If no segment has a playable video
        """
        volumes = volumes or task.config.volumes
        subtitles = subtitles or task.config.subtitles
        segments = playable_segments(task)
        if not segments:
            raise NoSegmentsToMergeError(f"Task {task.id} has no completed segments to merge")

        segment_urls = [s.video_url for s in segments]
        subtitle_url = None
        if subtitles.enabled and subtitles.mode != "none":
            subtitle_url = await self._upload_subtitles(task.id, segments)

        # Nothing to mix: the lone clip is the deliverable
        if (
            len(segments) == 1
            and task.config.bgm_type == "none"
            and not subtitles.burn_in
            and not segments[0].audio_url
        ):
            logger.info(f"Task {task.id} has a single plain segment, skipping compositing")
            return MergeResult(
                mode=MergeMode.LOCAL,
                video_url=segments[0].video_url,
                segment_urls=segment_urls,
                subtitle_url=subtitle_url,
            )

        job = CompositionJob(
            task_id=task.id,
            clips=[
                ClipSpec(
                    segment_id=s.id,
                    video_url=s.video_url,
                    audio_url=s.audio_url,
                    narration=s.narration,
                )
                for s in segments
            ],
            volumes=volumes,
            subtitles=subtitles,
            bgm_type=task.config.bgm_type,
        )

        errors = []
        tiers = [self.local] * self.local_attempts
        if self.remote is not None:
            tiers.append(self.remote)

        for attempt, compositor in enumerate(tiers, start=1):
            try:
                video_url = await compositor.compose(job)
            except MergeUnavailableError as e:
                logger.warning(
                    f"Merge attempt {attempt} ({compositor.mode.value}) for task {task.id} failed: {e}"
                )
                errors.append(f"{compositor.mode.value}: {e}")
                continue

            logger.info(f"Merged task {task.id} with the {compositor.mode.value} compositor")
            return MergeResult(
                mode=compositor.mode,
                video_url=video_url,
                segment_urls=segment_urls,
                subtitle_url=subtitle_url,
            )

        logger.error(
            f"All compositors failed for task {task.id}, "
            f"returning {len(segment_urls)} segment URLs"
        )
        return MergeResult(
            mode=MergeMode.EMERGENCY,
            segment_urls=segment_urls,
            subtitle_url=subtitle_url,
            error="; ".join(errors),
        )
