"""Environment variable validation and management."""

import logging
import os
from typing import Dict

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_float(name: str, default: float) -> float:
    """Get a float from the environment, raising ``EnvironmentError`` on garbage."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise EnvironmentError(f"{name} must be a number, got {raw!r}") from exc


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise EnvironmentError(f"{name} must be an integer, got {raw!r}") from exc


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "LRS_URL": "Learning Record Store URL",
        "LRS_AUTH": "Learning Record Store authentication",
        "GAMIFICATION_RANKS_PATH": "Rank ladder override file",
    }

    share = get_env_float("MINI_TRAINING_XP_SHARE", 0.2)
    if not 0.0 < share <= 1.0:
        raise EnvironmentError(f"MINI_TRAINING_XP_SHARE must be in (0, 1], got {share}")

    if get_env_int("XP_PER_LEVEL", 1000) <= 0:
        raise EnvironmentError("XP_PER_LEVEL must be positive")

    if get_env_int("DB_MAX_CONNECTIONS", 10) <= 0:
        raise EnvironmentError("DB_MAX_CONNECTIONS must be positive")

    ranks_path = os.getenv("GAMIFICATION_RANKS_PATH")
    if ranks_path and not os.path.exists(ranks_path):
        raise EnvironmentError(f"GAMIFICATION_RANKS_PATH does not exist: {ranks_path}")

    url_vars = {"LRS_URL", "APP_BASE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.info("Optional environment variable not set: %s (%s)", var, description)
