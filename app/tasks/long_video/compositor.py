"""
Media Compositors

A compositor turns the completed segments of a task into one video file.
``MoviePyCompositor`` renders in-process; ``CloudRunCompositor`` hands the
same job to a Cloud Run job that runs ``MoviePyCompositor`` remotely.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from traceback import format_exc
from typing import List, Optional

import numpy
from google.cloud import run_v2
from moviepy import (
    AudioFileClip,
    CompositeAudioClip,
    CompositeVideoClip,
    ImageClip,
    TextClip,
    VideoFileClip,
    concatenate_videoclips,
)
from moviepy.audio.fx import AudioLoop
from pydantic import BaseModel, Field

from app.models.errors import MergeUnavailableError
from app.models.shared import MergeMode, SubtitleSettings, VolumeLevels
from app.services.storage_service import ArtifactStorage, GcsArtifactStorage

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class ClipSpec(BaseModel):
    segment_id: int
    video_url: str
    audio_url: Optional[str] = None
    narration: Optional[str] = None


class CompositionJob(BaseModel):
    """Everything a compositor needs, serializable for the remote job."""

    task_id: str
    clips: List[ClipSpec]
    volumes: VolumeLevels = Field(default_factory=VolumeLevels)
    subtitles: SubtitleSettings = Field(default_factory=SubtitleSettings)
    bgm_type: str = "none"

    @property
    def output_path(self) -> str:
        return f"tasks/{self.task_id}/final/video.mp4"


class MediaCompositor(ABC):
    """Abstract base class for compositing tiers."""

    mode: MergeMode

    @abstractmethod
    async def compose(self, job: CompositionJob) -> str:
        """Render the job and return the merged video URL.

        Raises:
            MergeUnavailableError: If this tier could not produce the video
        """
        pass


class MoviePyCompositor(MediaCompositor):
    """Local compositor built on MoviePy and ffmpeg."""

    mode = MergeMode.LOCAL

    FONT_SIZES = {"small": 28, "medium": 36, "large": 48}
    CAPTION_PADDING = 40
    VIDEO_FPS = 24

    def __init__(self, storage: ArtifactStorage, bgm_dir: str, fonts_dir: Optional[str] = None):
        self.storage = storage
        self.bgm_dir = bgm_dir
        self.fonts_dir = fonts_dir

    # NOTE: Video effects

    @staticmethod
    def get_gradient_background(
        width: int, height: int, alpha_bottom: float = 0.7, alpha_top: float = 0.0
    ) -> numpy.ndarray:
        """
        Create a gradient background that fades from black to transparent vertically.

        Args:
            width: Width of the background
            height: Height of the background
            alpha_bottom: Starting alpha value at the bottom (0-1)
            alpha_top: Ending alpha value at the top (0-1)

        Returns:
            numpy.ndarray: RGBA array representing the gradient background
        """
        alpha_gradient = numpy.linspace(alpha_top, alpha_bottom, height)[:, numpy.newaxis]
        gradient = numpy.zeros((height, width, 4))
        gradient[:, :, 3] = numpy.tile(alpha_gradient, (1, width)) * 255
        return gradient.astype(numpy.uint8)

    @staticmethod
    def write_video_optimized(clip, output_path: str, fps: int = 24) -> None:
        """
        Write video with optimized encoding settings.

        Args:
            clip: MoviePy clip to write
            output_path: Output file path
            fps: Target frame rate
        """
        clip.write_videofile(
            output_path,
            codec="libx264",
            audio_codec="aac",
            fps=fps,
            preset="fast",  # Balanced speed vs quality
            ffmpeg_params=[
                "-crf",
                "23",
                "-threads",
                "0",
                "-movflags",
                "+faststart",  # Optimize for streaming
                "-pix_fmt",
                "yuv420p",
            ],
        )

    @staticmethod
    def cleanup_clips(clips: List) -> None:
        """Properly clean up MoviePy clips to free memory."""
        for clip in clips:
            if hasattr(clip, "close"):
                try:
                    clip.close()
                except Exception as e:
                    logger.warning(f"Error closing clip: {e}")

    def _font_path(self, font: str) -> Optional[str]:
        if not self.fonts_dir:
            return None
        for extension in (".ttf", ".otf"):
            path = os.path.join(self.fonts_dir, f"{font}{extension}")
            if os.path.exists(path):
                return path
        return None

    def _download(self, url: str, work_dir: str, name: str) -> str:
        path = os.path.join(work_dir, name)
        with open(path, "wb") as f:
            f.write(self.storage.fetch(url))
        return path

    def _subtitle_layers(
        self, text: str, start: float, duration: float, settings: SubtitleSettings, size
    ) -> List:
        video_width, video_height = size
        text_clip = TextClip(
            text=text,
            font=self._font_path(settings.font),
            font_size=self.FONT_SIZES.get(settings.size, 36),
            color=settings.color,
            method="caption",
            size=(video_width - 2 * self.CAPTION_PADDING, None),
        )
        text_height = text_clip.size[1]
        if settings.style == "top":
            text_y = self.CAPTION_PADDING
        else:
            text_y = video_height - text_height - self.CAPTION_PADDING

        layers = []
        if settings.style == "cinematic":
            gradient_height = min(int(text_height * 2.5), video_height)
            gradient_clip = ImageClip(
                self.get_gradient_background(video_width, gradient_height, alpha_bottom=1.0)
            ).with_position(("center", video_height - gradient_height))
            layers.append(gradient_clip)
        layers.append(text_clip.with_position(("center", text_y)))
        return [layer.with_start(start).with_duration(duration) for layer in layers]

    def render(self, job: CompositionJob) -> bytes:
        """Render the merged video synchronously and return its bytes."""
        logger.info(f"Compositing {len(job.clips)} clips for task {job.task_id}")
        opened = []
        with tempfile.TemporaryDirectory(prefix=f"merge_{job.task_id}_") as work_dir:
            try:
                video_clips = []
                narration_clips = []
                caption_layers = []
                cursor = 0.0

                for clip_spec in job.clips:
                    video_path = self._download(
                        clip_spec.video_url, work_dir, f"{clip_spec.segment_id}.mp4"
                    )
                    video_clip = VideoFileClip(video_path)
                    opened.append(video_clip)
                    if video_clip.audio is not None:
                        video_clip = video_clip.with_volume_scaled(job.volumes.video)
                    video_clips.append(video_clip)

                    if clip_spec.audio_url:
                        audio_path = self._download(
                            clip_spec.audio_url, work_dir, f"{clip_spec.segment_id}.mp3"
                        )
                        narration = AudioFileClip(audio_path)
                        opened.append(narration)
                        narration_clips.append(
                            narration.with_start(cursor).with_volume_scaled(
                                job.volumes.narration
                            )
                        )

                    if job.subtitles.burn_in and clip_spec.narration:
                        caption_layers.extend(
                            self._subtitle_layers(
                                clip_spec.narration,
                                cursor,
                                video_clip.duration,
                                job.subtitles,
                                video_clip.size,
                            )
                        )
                    cursor += video_clip.duration

                final_clip = concatenate_videoclips(video_clips, method="compose")
                if caption_layers:
                    final_clip = CompositeVideoClip([final_clip] + caption_layers)

                audio_tracks = []
                if final_clip.audio is not None:
                    audio_tracks.append(final_clip.audio)
                audio_tracks.extend(narration_clips)

                bgm_path = os.path.join(self.bgm_dir, f"{job.bgm_type}.mp3")
                if job.bgm_type != "none":
                    if os.path.exists(bgm_path):
                        bgm = AudioFileClip(bgm_path)
                        opened.append(bgm)
                        audio_tracks.append(
                            bgm.with_effects([AudioLoop(duration=final_clip.duration)])
                            .with_volume_scaled(job.volumes.bgm)
                        )
                    else:
                        logger.warning(f"Background music {bgm_path} not found, skipping")

                if audio_tracks:
                    final_clip = final_clip.with_audio(
                        CompositeAudioClip(audio_tracks).with_duration(final_clip.duration)
                    )

                output_path = os.path.join(work_dir, "final.mp4")
                self.write_video_optimized(final_clip, output_path, self.VIDEO_FPS)
                opened.append(final_clip)
                with open(output_path, "rb") as f:
                    video_bytes = f.read()
                logger.info(
                    f"Rendered {len(video_bytes)} bytes, {final_clip.duration:.1f}s for task {job.task_id}"
                )
                return video_bytes
            finally:
                self.cleanup_clips(opened)

    async def compose(self, job: CompositionJob) -> str:
        try:
            video_bytes = await asyncio.to_thread(self.render, job)
            return await asyncio.to_thread(
                self.storage.upload, job.output_path, video_bytes, "video/mp4"
            )
        except Exception as e:
            logger.error(f"Local compositing failed for task {job.task_id}: {e}\n{format_exc()}")
            raise MergeUnavailableError(f"Local compositor failed: {e}") from e


class CloudRunCompositor(MediaCompositor):
    """Remote compositor: runs the compositing Cloud Run job and waits for it."""

    mode = MergeMode.REMOTE

    def __init__(self, job_name: str, storage: GcsArtifactStorage, timeout: float = 1800.0):
        self.job_name = job_name
        self.storage = storage
        self.timeout = timeout

    def _run_job(self, job: CompositionJob) -> str:
        client = run_v2.JobsClient()
        operation = client.run_job(
            run_v2.RunJobRequest(
                name=self.job_name,
                overrides={
                    "container_overrides": [
                        {"args": [job.task_id, json.dumps(job.model_dump(mode="json"))]}
                    ],
                    "task_count": 1,
                },
            )
        )
        execution_name = operation.metadata.name
        logger.info(f"Started compositing job {execution_name} for task {job.task_id}")

        # Blocks until the execution finishes or the timeout elapses
        operation.result(timeout=self.timeout)

        if not self.storage.exists(job.output_path):
            raise MergeUnavailableError(
                f"Compositing job {execution_name} finished without writing {job.output_path}"
            )
        return self.storage.url_for(job.output_path)

    async def compose(self, job: CompositionJob) -> str:
        try:
            return await asyncio.to_thread(self._run_job, job)
        except MergeUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Remote compositing failed for task {job.task_id}: {e}\n{format_exc()}")
            raise MergeUnavailableError(f"Remote compositor failed: {e}") from e
