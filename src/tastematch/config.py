"""
Configuration constants for the tastematch profiling and similarity engine.

This module centralizes all magic numbers and configurable parameters.
Operational values can be overridden via environment variables; algorithm
constants are fixed so stored scores stay comparable across deployments.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("TASTEMATCH_DB", "data/tastematch.db"))

# Cache Configuration
TASTE_MAP_TTL_SECONDS = _get_int_env("TASTEMATCH_TASTE_MAP_TTL", 86400, min_val=1)  # 24h
CACHE_MAX_ENTRIES = _get_int_env("TASTEMATCH_CACHE_MAX_ENTRIES", 10000, min_val=1)
REDIS_URL = os.environ.get("TASTEMATCH_REDIS_URL", "")
REDIS_NAMESPACE = "tastematch:"

# Metadata lookups
TMDB_API_KEY = os.environ.get("TMDB_API_KEY", "")
TMDB_BASE_URL = "https://api.themoviedb.org/3"
HTTP_TIMEOUT = _get_float_env("TASTEMATCH_HTTP_TIMEOUT", 10.0, min_val=0.5)
MAX_HTTP_RETRIES = 3
METADATA_CACHE_TTL_SECONDS = _get_int_env("TASTEMATCH_METADATA_CACHE_TTL", 86400, min_val=1)
METADATA_NEGATIVE_TTL_SECONDS = 3600  # Failed lookups are retried sooner
METADATA_CACHE_MAX_ENTRIES = _get_int_env("TASTEMATCH_METADATA_CACHE_MAX_ENTRIES", 5000, min_val=1)

# Watch statuses
STATUS_WANT = "want"
STATUS_WATCHED = "watched"
STATUS_REWATCHED = "rewatched"
STATUS_DROPPED = "dropped"
STATUS_IN_PROGRESS = "in_progress"
ALL_STATUSES = (STATUS_WANT, STATUS_WATCHED, STATUS_REWATCHED, STATUS_DROPPED, STATUS_IN_PROGRESS)
COMPLETED_STATUSES = (STATUS_WATCHED, STATUS_REWATCHED)
MEDIA_TYPES = ("movie", "tv")

# Profile configuration
MAX_CAST_CONSIDERED = 20  # Leading cast members per item
TOP_PERSONS_LIMIT = 50  # Persons kept per profile after ranking
DIRECTOR_JOB = "Director"
RATING_SCALE_MAX = 10.0
HIGH_RATING_MIN = 8.0
MEDIUM_RATING_MIN = 5.0
DIVERSITY_GENRE_MIN_SCORE = 20  # Genres above this count toward diversity
DIVERSITY_POINTS_PER_GENRE = 5

# Similarity Weights - overall match combination
MATCH_WEIGHTS = {
    'taste': 0.5,
    'rating': 0.3,
    'person': 0.2,
}
SIMILARITY_THRESHOLD = 0.7  # taste_similarity must exceed this to be "similar"

# Rating pattern thresholds (absolute rating differences on the 1-10 scale)
PERFECT_MATCH_DIFF = 0
CLOSE_MATCH_MAX_DIFF = 1
MODERATE_MATCH_MAX_DIFF = 2
POSITIVE_RATING_MIN = 8.0

# Intensity brackets used for "same category" comparisons (inclusive upper bounds)
INTENSITY_BRACKETS = (3, 5, 7, 9, 10)

# Genre scores within this fraction of the 0-100 scale count as matching
GENRE_MATCH_MAX_DIFF = 0.4

# Persistence
SCORE_DECIMAL_PLACES = 4
DEFAULT_MAX_AGE_HOURS = _get_int_env("TASTEMATCH_SCORE_MAX_AGE_HOURS", 168, min_val=1)  # 7 days
SCORE_RETENTION_DAYS = _get_int_env("TASTEMATCH_SCORE_RETENTION_DAYS", 365, min_val=1)
COMPUTED_BY_SOURCES = ('scheduler', 'manual', 'on-demand')

# Candidate selection
ACTIVE_MIN_WATCHED = _get_int_env("TASTEMATCH_ACTIVE_MIN_WATCHED", 30, min_val=1)
ACTIVE_DAYS_BACK = _get_int_env("TASTEMATCH_ACTIVE_DAYS_BACK", 30, min_val=1)
ACTIVE_USERS_LIMIT = _get_int_env("TASTEMATCH_ACTIVE_LIMIT", 1000, min_val=1)
CANDIDATES_PER_USER = _get_int_env("TASTEMATCH_CANDIDATES_PER_USER", 20, min_val=1)

# Batch Processing
DEFAULT_BATCH_LIMIT = 100
BATCH_MAX_WORKERS = _get_int_env("TASTEMATCH_BATCH_WORKERS", 4, min_val=1)
PROGRESS_EVERY_USERS = 10
MAX_REPORTED_ERRORS = 10

# Similar-user listings
DEFAULT_SIMILAR_USERS_LIMIT = 50
MIN_USER_HISTORY = 5  # watch-list entries of any status

# Background refresh worker
REFRESH_QUEUE_MAX_SIZE = _get_int_env("TASTEMATCH_REFRESH_QUEUE_SIZE", 1000, min_val=1)
