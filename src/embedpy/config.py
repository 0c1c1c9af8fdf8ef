"""Manager configuration using Pydantic.

Configuration lives in config.yaml at the root of embedpy Home. Every
field has a default, so a missing file is a valid configuration.
"""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from embedpy.errors import format_validation_errors

CONFIG_FILENAME = "config.yaml"

GITHUB_TOKEN_ENV_VAR = "GITHUB_TOKEN"


class ManagerConfiguration(BaseModel):
    """Settings for instance acquisition and management."""

    default_python_version: str = Field(
        default="3.12",
        description="Version used when a caller does not specify one",
    )
    runtime_name: str = Field(
        default="python",
        description="First component of instance directory names",
    )
    release_repository: str = Field(
        default="astral-sh/python-build-standalone",
        description="GitHub repository (owner/name) publishing standalone builds",
    )
    github_token: str | None = Field(
        default=None,
        description="Bearer token for the GitHub API (falls back to GITHUB_TOKEN)",
    )
    retry_attempts: int = Field(default=3, ge=1, description="Total attempts per wrapped call")
    retry_delay: float = Field(default=1.0, ge=0, description="Seconds before the second attempt")
    use_exponential_backoff: bool = Field(default=True, description="Double the delay per attempt")
    max_retry_delay: float = Field(default=30.0, ge=0, description="Cap on any single retry delay")
    request_timeout: float = Field(default=30.0, gt=0, description="Seconds per API request")
    download_timeout: float = Field(default=1800.0, gt=0, description="Seconds per asset download")
    smoke_test_timeout: float = Field(default=5.0, gt=0, description="Seconds for the post-install check")

    def retry_delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        if not self.use_exponential_backoff:
            return min(self.retry_delay, self.max_retry_delay)
        return min(self.retry_delay * (2 ** (attempt - 1)), self.max_retry_delay)

    def resolve_github_token(self) -> str | None:
        """Return the configured token, or the GITHUB_TOKEN environment variable."""
        return self.github_token or os.environ.get(GITHUB_TOKEN_ENV_VAR) or None


def load_config(root: Path) -> ManagerConfiguration:
    """Load and validate config.yaml from embedpy Home.

    Args:
        root: Path to embedpy Home directory.

    Returns:
        Validated ManagerConfiguration; defaults when the file is absent.

    Raises:
        ValueError: If YAML is invalid or schema validation fails.
    """
    config_path = root / CONFIG_FILENAME
    if not config_path.exists():
        return ManagerConfiguration()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in '{config_path}': {e}"
        raise ValueError(msg) from e

    if data is None:
        return ManagerConfiguration()

    try:
        return ManagerConfiguration.model_validate(data)
    except ValidationError as e:
        clean_errors = format_validation_errors(e)
        msg = f"Invalid config '{config_path}': {clean_errors}"
        raise ValueError(msg) from e


def save_config(config: ManagerConfiguration, root: Path) -> None:
    """Save ManagerConfiguration to config.yaml in embedpy Home."""
    config_path = root / CONFIG_FILENAME
    config_path.write_text(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False, sort_keys=False)
    )
