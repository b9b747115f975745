"""
Reelsmith — Configuration
Environment-driven settings shared by the phase service and the pipeline runners.
"""
import os
import logging
from pathlib import Path

from dotenv import load_dotenv

from errors import ConfigError

load_dotenv()

# =============================================================================
# STORAGE
# =============================================================================

# If we are in production and the /app/data volume exists, use it. Otherwise, use local.
_vol_data_path = Path("/app/data/reelsmith")
if os.environ.get("DATA_DIR"):
    DATA_DIR = Path(os.environ["DATA_DIR"])
elif os.environ.get("FLASK_ENV") == "production" and _vol_data_path.parent.exists():
    DATA_DIR = _vol_data_path
else:
    DATA_DIR = Path(__file__).parent / "data"

# Public prefix for stored media, e.g. https://cdn.example.com (empty = relative /media URLs)
MEDIA_BASE_URL = os.environ.get("MEDIA_BASE_URL", "").rstrip("/")

# =============================================================================
# PROVIDERS
# =============================================================================

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
REPLICATE_API_TOKEN = os.environ.get("REPLICATE_API_TOKEN", "")
FAL_KEY = os.environ.get("FAL_KEY", "")
ELEVENLABS_API_KEY = os.environ.get("ELEVENLABS_API_KEY", "")

# =============================================================================
# PHASE TRANSPORT
# =============================================================================

# Empty = pipelines dispatch phases in-process to the local handlers
PHASE_BASE_URL = os.environ.get("PHASE_BASE_URL", "").rstrip("/")
PHASE_AUTH_TOKEN = os.environ.get("PHASE_AUTH_TOKEN", "")

# =============================================================================
# PIPELINE TIMING (seconds)
# =============================================================================

AUDIO_POLL_INTERVAL = float(os.environ.get("AUDIO_POLL_INTERVAL", "1.2"))
VIDEO_POLL_INTERVAL = float(os.environ.get("VIDEO_POLL_INTERVAL", "5"))
BATCH_FAILURE_WAIT = float(os.environ.get("BATCH_FAILURE_WAIT", "15"))
BATCH_WAIT = float(os.environ.get("BATCH_WAIT", "30"))
BATCH_RATE_LIMIT_WAIT = float(os.environ.get("BATCH_RATE_LIMIT_WAIT", "90"))
RECOVERY_CHECK_INTERVAL = float(os.environ.get("RECOVERY_CHECK_INTERVAL", "5"))

STALL_THRESHOLD = float(os.environ.get("STALL_THRESHOLD", "60"))
STALL_THRESHOLD_VIDEO = float(os.environ.get("STALL_THRESHOLD_VIDEO", "90"))

# A "generating" record untouched for this long is treated as interrupted
STALE_GENERATION_SECONDS = float(os.environ.get("STALE_GENERATION_SECONDS", "900"))

# =============================================================================
# PRICING (USD, used for cost tracking only)
# =============================================================================

COST_PER_1K_SCRIPT_TOKENS = 0.00125
COST_PER_AUDIO_SECOND = 0.0005
COST_PER_IMAGE = 0.04
COST_PER_VIDEO_SECOND = 0.084

# =============================================================================
# SERVER
# =============================================================================

PORT = int(os.environ.get("PORT", 5050))
SECRET_KEY = os.environ.get("SECRET_KEY", "reelsmith-dev")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def configure_logging(level=None):
    """Set the root log format once for the service process."""
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Quiet chatty HTTP clients
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def require(value, name):
    """Return a provider setting or raise ConfigError when it is missing."""
    if not value:
        raise ConfigError(f"{name} not set in environment. Add it to your .env file.")
    return value
