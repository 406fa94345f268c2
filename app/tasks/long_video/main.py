"""
Entry point of the compositing Cloud Run job.

    python -m app.tasks.long_video.main <task_id> <composition_job_json>

The job renders the merged video with the local compositor and writes it to
the artifacts bucket, where the server's remote compositor picks it up.
"""

import asyncio
import json
import logging
import sys

from app.services.storage_service import GcsArtifactStorage
from app.tasks.long_video.compositor import CompositionJob, MoviePyCompositor
from config import BGM_DIR, GCLOUD_STB_ARTIFACTS_NAME

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


if __name__ == "__main__":
    # This is the entry point when running as a Cloud Run Job
    if len(sys.argv) < 3:
        logger.error("Usage: python -m app.tasks.long_video.main <task_id> <job_json>")
        sys.exit(1)

    task_id = sys.argv[1]
    job = CompositionJob(**json.loads(sys.argv[2]))
    if job.task_id != task_id:
        logger.error(f"Job payload is for task {job.task_id}, not {task_id}")
        sys.exit(1)

    async def main():
        try:
            compositor = MoviePyCompositor(GcsArtifactStorage(GCLOUD_STB_ARTIFACTS_NAME), BGM_DIR)
            video_url = await compositor.compose(job)
            logger.info(f"Merged video for task {task_id} written to {video_url}")
        except Exception as e:
            logger.error(
                f"Error merging video for task {task_id}: {str(e)}",
                exc_info=True,
            )
            raise

    # Run the async main function
    asyncio.run(main())
