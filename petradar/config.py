"""
PetRadar configuration
----------------------
Environment-driven settings plus the matching policy constants.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# ─── bootstrap ──────────────────────────────────────────────────
load_dotenv()

# ─── matching policy ────────────────────────────────────────────
SIMILARITY_THRESHOLD = 0.75
SEARCH_DAYS_BEFORE = 30  # pets go missing before they are sighted
SEARCH_DAYS_AFTER = 7    # reporting lag
MAX_SEARCH_RESULTS = 20

# ─── uploads ────────────────────────────────────────────────────
ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")
MAX_IMAGE_SIZE = 10 * 1024 * 1024  # 10MB

DEFAULT_SIMILARITY_TIMEOUT = 60  # seconds, the model can be slow
DEFAULT_EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"


@dataclass(frozen=True)
class MatchingPolicy:
    """Knobs of the sighting matching phase"""
    similarity_threshold: float = SIMILARITY_THRESHOLD
    days_before: int = SEARCH_DAYS_BEFORE
    days_after: int = SEARCH_DAYS_AFTER
    max_results: int = MAX_SEARCH_RESULTS


@dataclass(frozen=True)
class Settings:
    project_id: str
    storage_bucket: str
    similarity_api_url: str
    similarity_timeout: float = DEFAULT_SIMILARITY_TIMEOUT
    expo_push_url: str = DEFAULT_EXPO_PUSH_URL
    expo_access_token: Optional[str] = None
    log_file: str = "activity.log"


def load_settings() -> Settings:
    """Read settings from the environment, failing fast on missing values."""
    project_id = os.getenv("PROJECT_ID")
    storage_bucket = os.getenv("STORAGE_BUCKET")
    similarity_api_url = os.getenv("SIMILARITY_API_URL")

    if not all([project_id, storage_bucket, similarity_api_url]):
        raise RuntimeError("PROJECT_ID, STORAGE_BUCKET and SIMILARITY_API_URL must be set")

    return Settings(
        project_id=project_id,
        storage_bucket=storage_bucket,
        similarity_api_url=similarity_api_url.rstrip("/"),
        similarity_timeout=float(os.getenv("SIMILARITY_API_TIMEOUT", DEFAULT_SIMILARITY_TIMEOUT)),
        expo_push_url=os.getenv("EXPO_PUSH_URL", DEFAULT_EXPO_PUSH_URL),
        expo_access_token=os.getenv("EXPO_ACCESS_TOKEN") or None,
        log_file=os.getenv("LOG_FILE", "activity.log"),
    )
