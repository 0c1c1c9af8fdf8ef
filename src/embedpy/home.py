"""embedpy Home resolution and validation.

embedpy Home is the root directory that holds one subdirectory per
installed interpreter instance, plus the optional config.yaml.
"""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

# Default embedpy Home location
DEFAULT_EMBEDPY_HOME = Path.home() / ".embedpy"

# Environment variable for custom embedpy Home location
EMBEDPY_HOME_ENV_VAR = "EMBEDPY_HOME"


def get_embedpy_home() -> Path:
    """Get the embedpy Home directory path.

    Resolution order:
    1. EMBEDPY_HOME environment variable (if set)
    2. Default: ~/.embedpy/

    Returns:
        Path to embedpy Home directory.
    """
    env_value = os.environ.get(EMBEDPY_HOME_ENV_VAR)
    if env_value:
        return Path(env_value).expanduser()
    return DEFAULT_EMBEDPY_HOME


def ensure_embedpy_home(path: Path) -> Path:
    """Make the root directory absolute and create it if it is missing.

    Args:
        path: Root directory, absolute or relative to the current directory.

    Returns:
        The absolute root directory, guaranteed to exist.
    """
    if not path.is_absolute():
        path = Path.cwd() / path

    if not path.exists():
        path.mkdir(parents=True)
        logger.info("Created root directory: %s", path)
    else:
        logger.debug("Using existing root directory: %s", path)

    return path


def validate_embedpy_home(path: Path) -> list[str]:
    """Check that a directory can serve as embedpy Home.

    Args:
        path: Path to check.

    Returns:
        Specific problems found; empty when the directory is usable.
    """
    if not path.exists():
        return [f"Path does not exist: {path}"]

    if not path.is_dir():
        return [f"Path is not a directory: {path}"]

    if not os.access(path, os.W_OK | os.X_OK):
        return [f"Directory is not writable: {path}"]

    return []
