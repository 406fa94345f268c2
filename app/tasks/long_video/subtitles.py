from typing import Iterable, List, Tuple

from app.models.tasks import Segment


def format_srt_timestamp(seconds: float) -> str:
    """Format seconds as an SRT timestamp, HH:MM:SS,mmm."""
    total_ms = int(round(seconds * 1000))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def subtitle_cues(segments: Iterable[Segment]) -> List[Tuple[float, float, str]]:
    """(start, end, text) cues for segments with narration, on the merged timeline.

    Only segments that make it into the merged video are passed in, so the
    cue times are packed back-to-back rather than taken from the segments'
    nominal offsets, which would leave gaps where failed segments were dropped.
    """
    cues = []
    cursor = 0.0
    for segment in sorted(segments, key=lambda s: s.id):
        duration = segment.end_time - segment.start_time
        text = (segment.narration or "").strip()
        if text:
            cues.append((cursor, cursor + duration, text))
        cursor += duration
    return cues


def build_srt(segments: Iterable[Segment]) -> str:
    """Render narration of the given segments as SRT subtitles."""
    blocks = []
    for index, (start, end, text) in enumerate(subtitle_cues(segments), start=1):
        blocks.append(
            f"{index}\n{format_srt_timestamp(start)} --> {format_srt_timestamp(end)}\n{text}\n"
        )
    return "\n".join(blocks)
