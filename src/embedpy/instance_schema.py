"""Instance metadata document definitions using Pydantic.

Each installed instance carries its own instance_metadata.json inside its
installation root. There is no central index: the catalog is rebuilt by
scanning for these documents, so each one is the sole source of truth for
its instance.

The document also holds the instance's registry of named virtual
environments, which may live under the instance (``venvs/<name>``) or at
an external path anywhere on disk.
"""

import json
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator

from embedpy.archive import candidate_roots
from embedpy.errors import MetadataCorruptError, format_validation_errors
from embedpy.version import VersionSpec, normalize_version, parse_version

METADATA_FILENAME = "instance_metadata.json"

VENVS_DIRNAME = "venvs"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnvironmentRecord(BaseModel):
    """A named virtual environment registered on an instance."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias="Name", min_length=1)
    external_path: str | None = Field(
        default=None,
        alias="ExternalPath",
        description="Location outside the instance tree; None means the default venvs/ location",
    )
    created_at: datetime = Field(default_factory=_utcnow, alias="CreatedDate")

    @property
    def is_external(self) -> bool:
        return bool(self.external_path)

    def resolved_path(self, default_path: Path) -> Path:
        """The external path when set, otherwise ``default_path``."""
        return Path(self.external_path) if self.external_path else default_path


class InstanceRecord(BaseModel):
    """Metadata for one installed interpreter instance.

    Identity is ``(python_version, build_date)``. The on-disk location is
    not part of the document; it is bound when the record is loaded or
    created and is read-only afterwards.
    """

    model_config = ConfigDict(populate_by_name=True)

    python_version: str = Field(alias="PythonVersion")
    build_date: date = Field(alias="BuildDate")
    was_latest_build: bool = Field(default=False, alias="WasLatestBuild")
    installed_at: datetime = Field(default_factory=_utcnow, alias="InstallationDate")
    environments: list[EnvironmentRecord] = Field(
        default_factory=list, alias="VirtualEnvironments"
    )

    _directory: Path | None = PrivateAttr(default=None)
    _instance_directory: Path | None = PrivateAttr(default=None)

    @field_validator("python_version")
    @classmethod
    def validate_python_version(cls, v: str) -> str:
        """Require an exact X.Y.Z version and store it normalized."""
        spec = parse_version(v)
        if spec.is_partial:
            msg = f"PythonVersion must be an exact major.minor.patch version, got '{v}'"
            raise ValueError(msg)
        return normalize_version(spec)

    @field_validator("build_date", mode="before")
    @classmethod
    def truncate_build_datetime(cls, v: Any) -> Any:
        """Accept a full timestamp and keep only its date."""
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str) and "T" in v:
            return v.split("T", 1)[0]
        return v

    @property
    def directory(self) -> Path | None:
        """Installation root holding the metadata document."""
        return self._directory

    @property
    def instance_directory(self) -> Path | None:
        """Top-level managed directory for this instance under the root."""
        return self._instance_directory or self._directory

    @property
    def key(self) -> tuple[str, date]:
        return (self.python_version, self.build_date)

    @property
    def version_spec(self) -> VersionSpec:
        return parse_version(self.python_version)

    # Environment registry

    def get_environment(self, name: str) -> EnvironmentRecord | None:
        """Look up an environment by name, ignoring case."""
        wanted = name.casefold()
        return next((env for env in self.environments if env.name.casefold() == wanted), None)

    def set_environment(self, environment: EnvironmentRecord) -> None:
        """Insert an environment, replacing any entry with the same name."""
        self.remove_environment(environment.name)
        self.environments.append(environment)

    def remove_environment(self, name: str) -> bool:
        """Drop an environment entry. Returns False if it was not registered."""
        existing = self.get_environment(name)
        if existing is None:
            return False
        self.environments.remove(existing)
        return True

    def list_environments(self) -> list[EnvironmentRecord]:
        return sorted(self.environments, key=lambda env: env.name.casefold())

    def default_environment_path(self, name: str, default_root: Path | None = None) -> Path:
        root = default_root or self.directory
        if root is None:
            msg = f"Instance {self.python_version} has no directory bound"
            raise ValueError(msg)
        return root / VENVS_DIRNAME / name

    def resolve_environment_path(self, name: str, default_root: Path | None = None) -> Path:
        """Where an environment's files live.

        The registered external path if there is one, otherwise
        ``default_root/venvs/<name>`` (``default_root`` defaults to the
        installation root).
        """
        environment = self.get_environment(name)
        if environment is None:
            return self.default_environment_path(name, default_root)
        return environment.resolved_path(
            self.default_environment_path(environment.name, default_root)
        )


def bind_record_location(
    record: InstanceRecord, directory: Path, instance_directory: Path | None = None
) -> InstanceRecord:
    """Attach on-disk locations to a record; used only by load and acquisition."""
    record._directory = directory
    record._instance_directory = instance_directory
    return record


def find_record_document(instance_directory: Path) -> Path | None:
    """Find the directory holding the metadata document for an instance.

    Searches the same levels as installation-root discovery: the instance
    directory, its children, then its grandchildren.
    """
    for candidate in candidate_roots(instance_directory):
        if (candidate / METADATA_FILENAME).is_file():
            return candidate
    return None


def load_instance_record(
    directory: Path, instance_directory: Path | None = None
) -> InstanceRecord | None:
    """Load and validate the metadata document in ``directory``.

    Returns:
        The bound InstanceRecord, or None if the directory has no document.

    Raises:
        MetadataCorruptError: If the document is not valid JSON or fails validation.
    """
    path = directory / METADATA_FILENAME
    if not path.is_file():
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MetadataCorruptError(path, f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MetadataCorruptError(path, "expected a JSON object")

    try:
        record = InstanceRecord.model_validate(data)
    except ValidationError as e:
        raise MetadataCorruptError(path, format_validation_errors(e)) from e

    return bind_record_location(record, directory, instance_directory)


def save_instance_record(record: InstanceRecord) -> Path:
    """Write the record's document into its installation root.

    Returns:
        Path to the written document.
    """
    if record.directory is None:
        msg = f"Instance {record.python_version} has no directory bound"
        raise ValueError(msg)

    path = record.directory / METADATA_FILENAME
    path.write_text(record.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    return path
