"""Environment lookups with local .env fallback.

WHAT:
    `env_value()` reads a variable from the process environment, loading a
    local .env file (python-dotenv) once if the variable is not set yet.
WHY:
    DATABASE_URL and JWT_SECRET are read at import/call time, before
    pydantic-settings is involved. Developers keep Stripe test keys and a
    SQLite URL in .env; real deployments export variables and .env never
    overrides them.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_loaded = False


def load_env_file() -> bool:
    """Load .env into os.environ without overwriting existing variables.

    Returns True if a file was found. Only the first call touches disk.
    """
    global _env_loaded
    if _env_loaded:
        return False
    _env_loaded = True

    loaded = load_dotenv(override=False)
    if loaded:
        logger.info("[ENV] Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("[ENV] No local .env file found")
    return loaded


def env_value(name: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """Return `name` from the environment, falling back to .env, then `default`.

    Raises:
        RuntimeError: `required` and the variable is unset everywhere.
    """
    value = os.getenv(name)
    if not value:
        load_env_file()
        value = os.getenv(name)

    if not value:
        if required:
            raise RuntimeError(f"{name} is not set. Ensure .env is created or env var is exported.")
        return default
    return value
