import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def require_env(name: str) -> str:
    """Return the value of a mandatory environment variable or raise RuntimeError.
    WHY: Fail fast before a sync starts when the access token or account is missing.
    """
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_env_file() -> bool:
    """Load environment variables from .env file if not already set.

    WHAT:
        Loads variables from a local .env file into os.environ.
        Does NOT overwrite existing environment variables.
    WHY:
        Lets developers keep a Meta test token in .env without risking
        the variables a scheduler injects in production.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
    return loaded
