import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Environment configuration
ENV = os.getenv("STORYREEL_ENV", "p").lower()
if ENV not in ["d", "p"]:
    raise ValueError(
        "STORYREEL_ENV must be either 'd' (development) or 'p' (production)"
    )


def _split_keys(value: str) -> list:
    """Split a comma-separated key list, dropping blanks."""
    return [key.strip() for key in (value or "").split(",") if key.strip()]


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


# API Keys
# NOTE: Every provider accepts a comma-separated list so the credential pool can rotate keys
PROVIDER_API_KEYS = {
    "huggingface": _split_keys(os.getenv("STORYREEL_HF_API_KEYS")),
    "pollinations": _split_keys(os.getenv("STORYREEL_POLLINATIONS_API_KEYS")),
    "vector_engine": _split_keys(os.getenv("STORYREEL_VIDEO_API_KEYS")),
    "google_tts": _split_keys(os.getenv("STORYREEL_TTS_API_KEYS")),
}
# NOTE: Pollinations works anonymously and Google TTS falls back to application default credentials
KEYLESS_PROVIDERS = ("pollinations", "google_tts")
if ENV == "p" and not PROVIDER_API_KEYS["vector_engine"]:
    raise ValueError("STORYREEL_VIDEO_API_KEYS environment variable is not set")

VECTOR_ENGINE_BASE_URL = os.getenv(
    "STORYREEL_VECTOR_ENGINE_BASE_URL", "https://api.vectorengine.ai"
)
VIDEO_FALLBACK_MODEL = os.getenv("STORYREEL_VIDEO_FALLBACK_MODEL", "veo-3.1-fast")

# Google Cloud resources
GCLOUD_PROJECT = os.getenv("STORYREEL_GCLOUD_PROJECT", "storyreel-p")
GCLOUD_REGION = os.getenv("STORYREEL_GCLOUD_REGION", "us-east1")
GCLOUD_STB_ARTIFACTS_NAME = os.getenv(
    "STORYREEL_GCLOUD_BUCKET", "storyreel-p-stb-usea1-artifacts"
)
GCLOUD_FIRESTORE_DATABASE = os.getenv("STORYREEL_FIRESTORE_DATABASE", "(default)")
# Remote compositing is disabled unless a Cloud Run job name is configured
GCLOUD_MERGE_JOB_NAME = os.getenv("STORYREEL_MERGE_JOB_NAME")

# Project root directory
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))

# Asset paths
ASSETS_DIR = os.path.join(PROJECT_ROOT, "app", "assets")
BGM_DIR = os.path.join(ASSETS_DIR, "bgm")

# Output directory for development environment
OUTPUT_DIR = os.getenv("STORYREEL_OUTPUT_DIR", os.path.join(PROJECT_ROOT, "output"))
TASKS_DIR = os.path.join(OUTPUT_DIR, "tasks")

# Long video generation
SEGMENT_DURATION_SECONDS = 8
BATCH_SIZE = 6
MIN_DURATION_MINUTES = 1
MAX_DURATION_MINUTES = 60
SUPPORTED_DURATIONS = [1, 2, 3, 5, 7, 10, 15, 20, 30]
ESTIMATED_SECONDS_PER_SEGMENT = 30
TASK_EXPIRY_DAYS = 7

SEGMENT_MAX_ATTEMPTS = int(_float_env("STORYREEL_SEGMENT_MAX_ATTEMPTS", 3))
RETRY_BASE_DELAY_SECONDS = _float_env("STORYREEL_RETRY_BASE_DELAY_SECONDS", 2.0)
RETRY_MAX_DELAY_SECONDS = _float_env("STORYREEL_RETRY_MAX_DELAY_SECONDS", 30.0)
COOLDOWN_BASE_SECONDS = _float_env("STORYREEL_COOLDOWN_BASE_SECONDS", 5.0)
COOLDOWN_MAX_SECONDS = _float_env("STORYREEL_COOLDOWN_MAX_SECONDS", 60.0)
CREDENTIAL_ACQUIRE_TIMEOUT_SECONDS = _float_env(
    "STORYREEL_CREDENTIAL_ACQUIRE_TIMEOUT_SECONDS", 120.0
)
CREDENTIAL_MAX_IN_FLIGHT = int(_float_env("STORYREEL_CREDENTIAL_MAX_IN_FLIGHT", 1))
PROVIDER_MAX_CONCURRENT = int(_float_env("STORYREEL_PROVIDER_MAX_CONCURRENT", 6))
BATCH_PAUSE_SECONDS = _float_env("STORYREEL_BATCH_PAUSE_SECONDS", 5.0)

# Fraction of failed segments above which a task is marked failed (unset = never)
FAILURE_THRESHOLD = (
    _float_env("STORYREEL_FAILURE_THRESHOLD", 0.0)
    if os.getenv("STORYREEL_FAILURE_THRESHOLD")
    else None
)
