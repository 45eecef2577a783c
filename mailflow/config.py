"""
Runtime configuration.

Every knob is read from the environment (a .env file at the project root is
loaded first). Numeric knobs are bounds-checked so a typo in the environment
cannot produce a zero-width worker pool or an unbounded one.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _parse_env_int(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds checking.

    Args:
        name: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value (inclusive)
        max_val: Maximum allowed value (inclusive)

    Returns:
        Parsed integer within bounds, or default if invalid
    """
    try:
        val = int(os.getenv(name, str(default)))
        if not (min_val <= val <= max_val):
            logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
            return default
        return val
    except ValueError:
        logger.warning(f"{name} invalid, using {default}")
        return default


def _parse_env_float(name: str, default: float, min_val: float, max_val: float) -> float:
    """Float counterpart of _parse_env_int."""
    try:
        val = float(os.getenv(name, str(default)))
        if not (min_val <= val <= max_val):
            logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
            return default
        return val
    except ValueError:
        logger.warning(f"{name} invalid, using {default}")
        return default


def get_database_url() -> str:
    """Get database connection string from environment."""
    return os.getenv("DATABASE_URL", "postgresql://localhost:5432/mailflow")


# Ingestion (Gmail allows roughly 50 messages.get calls per second per user)
SYNC_MAX_CONCURRENCY = _parse_env_int("MAILFLOW_SYNC_MAX_CONCURRENCY", 50, 1, 200)
SYNC_MIN_CONCURRENCY = _parse_env_int("MAILFLOW_SYNC_MIN_CONCURRENCY", 5, 1, 200)
SYNC_BATCH_SIZE = _parse_env_int("MAILFLOW_SYNC_BATCH_SIZE", 50, 1, 500)

# Classification
CLASSIFY_MAX_CONCURRENCY = _parse_env_int("MAILFLOW_CLASSIFY_MAX_CONCURRENCY", 30, 1, 200)
CLASSIFY_MIN_CONCURRENCY = _parse_env_int("MAILFLOW_CLASSIFY_MIN_CONCURRENCY", 5, 1, 200)
CLASSIFY_TIMEOUT_SECONDS = _parse_env_float("MAILFLOW_CLASSIFY_TIMEOUT", 30.0, 1.0, 600.0)
CLASSIFIER_MODEL = os.getenv("MAILFLOW_CLASSIFIER_MODEL", "gpt-4o-mini")

LOG_LEVEL = os.getenv("MAILFLOW_LOG_LEVEL", "INFO").upper()
