import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.server.dependencies import get_orchestrator
from app.server.routers.long_video_routes import long_video_router

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Pick up tasks that were running when the previous process stopped
    orchestrator = app.dependency_overrides.get(get_orchestrator, get_orchestrator)()
    resumed = await orchestrator.resume_unfinished()
    if resumed:
        logger.info(f"Resumed {len(resumed)} unfinished tasks")
    expired = await orchestrator.cleanup_expired()
    if expired:
        logger.info(f"Cleaned up {len(expired)} expired tasks")
    yield


app = FastAPI(lifespan=lifespan)

# Define the allowed origins
origins = [
    "http://localhost:8080",
    "http://localhost:8081",
    # Add other origins as needed
    "https://storyreel.github.io",
]

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,  # Allows requests from these origins
    allow_credentials=True,
    allow_methods=["*"],  # Allows all methods (GET, POST, etc.)
    allow_headers=["*"],  # Allows all headers
)


@app.get("/", tags=["root"])
def root():
    return {"message": "success"}


# Include the routers in the main app with a prefix
app.include_router(long_video_router, prefix="/long_video")

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
