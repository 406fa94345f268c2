import argparse
import asyncio
import logging

from app.models.shared import TaskStatus
from app.models.tasks import CreateTaskRequest, TaskConfig
from app.server.dependencies import build_orchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def get_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate a long video from a story file and follow its progress"
    )
    parser.add_argument(
        "--story-file", type=str, required=True, help="Text file with the story"
    )
    parser.add_argument("--minutes", type=int, default=1, help="Video length in minutes")
    parser.add_argument(
        "--language",
        type=str,
        default="cantonese",
        choices=["cantonese", "mandarin", "english"],
    )
    parser.add_argument("--voice-actor-id", type=str, default="cantonese-male-narrator")
    parser.add_argument(
        "--poll-seconds", type=float, default=3.0, help="Seconds between status polls"
    )
    return parser


async def run(args: argparse.Namespace) -> None:
    with open(args.story_file, "r", encoding="utf-8") as f:
        story = f.read()

    orchestrator = build_orchestrator()
    task = await orchestrator.create_task(
        CreateTaskRequest(
            duration_minutes=args.minutes,
            story=story,
            config=TaskConfig(language=args.language, voice_actor_id=args.voice_actor_id),
        )
    )
    logger.info(f"Task {task.id}: {task.total_segments} segments, {task.total_batches} batches")

    while True:
        view = await orchestrator.get_status(task.id)
        stats = view.stats
        logger.info(
            f"{view.task.status} {view.task.progress}% "
            f"({stats.completed} done, {stats.failed} failed, {stats.generating} generating)"
        )
        if view.task.status in TaskStatus.terminal():
            break
        await asyncio.sleep(args.poll_seconds)

    await orchestrator.wait(task.id)
    view = await orchestrator.get_status(task.id)
    if view.task.merge is not None:
        merge = view.task.merge
        logger.info(f"Merge mode: {merge.mode}")
        if merge.video_url:
            logger.info(f"Video: {merge.video_url}")
        for url in merge.segment_urls:
            logger.info(f"Segment: {url}")
    for segment in view.task.segments:
        if segment.error:
            logger.warning(f"Segment {segment.id}: {segment.error_kind}: {segment.error}")


def main():
    parser = get_argparser()
    args = parser.parse_args()

    try:
        asyncio.run(run(args))
    except Exception as e:
        logger.error(f"Error generating long video: {str(e)}")
        raise


if __name__ == "__main__":
    main()
