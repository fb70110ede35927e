"""
Environment Configuration Utility

Provides environment detection and the tunables of the skew engine.

ENVIRONMENT values:
- production: Live tastytrade endpoints, verbose errors hidden
- development: Default
- test: Automated testing

Every numeric knob is read from the environment with bounds validation.
Out-of-range or unparsable values fall back to the default with a warning.
"""
import os
import logging
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logger.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"


def is_test() -> bool:
    """Check if running in test environment."""
    return ENVIRONMENT == "test"


def _env_number(name: str, default, minimum, maximum, cast=float):
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = cast(raw)
    except (ValueError, TypeError):
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default
    if value < minimum or value > maximum:
        logger.warning(f"{name}={value} out of bounds [{minimum}, {maximum}], using default {default}")
        return default
    return value


# =============================================================================
# VENUE CREDENTIALS
# =============================================================================

def get_tasty_credentials():
    """
    Returns (client_secret, refresh_token); either may be None.

    Read lazily so credentials added to the environment after import are seen.
    """
    return os.environ.get("TASTY_CLIENT_SECRET"), os.environ.get("TASTY_REFRESH_TOKEN")


def is_sandbox() -> bool:
    return os.environ.get("TASTY_IS_SANDBOX", "").lower() in ("1", "true", "yes")


# =============================================================================
# SKEW ENGINE TUNABLES
# =============================================================================

TARGET_DTE = _env_number("SKEW_TARGET_DTE", 30, 0, 365, cast=int)
PHASE1_WINDOW_SECONDS = _env_number("SKEW_PHASE1_SECONDS", 5.0, 0.1, 120.0)
PHASE2_WINDOW_SECONDS = _env_number("SKEW_PHASE2_SECONDS", 10.0, 0.1, 300.0)
CACHE_TTL_SECONDS = _env_number("SKEW_CACHE_TTL_SECONDS", 3600, 1, 86400, cast=int)
CACHE_SWEEP_INTERVAL_SECONDS = _env_number("SKEW_CACHE_SWEEP_SECONDS", 300, 10, 86400, cast=int)
FEED_QUEUE_MAXSIZE = _env_number("FEED_QUEUE_MAXSIZE", 50000, 100, 1_000_000, cast=int)


def get_engine_config():
    """Current engine configuration, exposed on the health endpoint."""
    return {
        "environment": ENVIRONMENT,
        "sandbox": is_sandbox(),
        "target_dte": TARGET_DTE,
        "phase1_window_seconds": PHASE1_WINDOW_SECONDS,
        "phase2_window_seconds": PHASE2_WINDOW_SECONDS,
        "cache_ttl_seconds": CACHE_TTL_SECONDS,
        "cache_sweep_interval_seconds": CACHE_SWEEP_INTERVAL_SECONDS,
        "feed_queue_maxsize": FEED_QUEUE_MAXSIZE,
    }


# Log environment on module load
logger.info(f"Environment: {ENVIRONMENT} | Sandbox: {is_sandbox()}")
