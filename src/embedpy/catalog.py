"""Catalog of installed instances, rebuilt by scanning the root directory.

The catalog itself is never persisted. Each instance directory under the
root carries its own metadata document and the catalog is whatever a scan
of those documents yields.
"""

import logging
import shutil
from collections import defaultdict
from datetime import date, datetime
from pathlib import Path
from typing import Protocol

from embedpy.archive import verify_layout
from embedpy.errors import MetadataCorruptError
from embedpy.instance_schema import (
    InstanceRecord,
    find_record_document,
    load_instance_record,
    save_instance_record,
)
from embedpy.version import VersionSpec, parse_version, version_key, version_matches

logger = logging.getLogger(__name__)


class InstanceRepository(Protocol):
    """Storage interface for instance records."""

    def list_instances(self) -> list[InstanceRecord]: ...

    def find(
        self, version: VersionSpec | str, build_date: date | None = None
    ) -> InstanceRecord | None: ...

    def add(self, record: InstanceRecord) -> None: ...

    def remove(self, record: InstanceRecord) -> bool: ...


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


class DirectoryInstanceCatalog:
    """InstanceRepository backed by one directory per instance under a root."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._records: list[InstanceRecord] = self._scan()

    @property
    def root(self) -> Path:
        return self._root

    def _scan(self) -> list[InstanceRecord]:
        """Load every instance document directly under the root.

        A directory without a document, or with one that fails to parse,
        is left on disk and excluded; it never fails the scan.
        """
        if not self._root.is_dir():
            return []

        records: list[InstanceRecord] = []
        for instance_dir in sorted(p for p in self._root.iterdir() if p.is_dir()):
            try:
                document_dir = find_record_document(instance_dir)
                if document_dir is None:
                    logger.debug("No instance metadata in %s; skipping", instance_dir)
                    continue
                record = load_instance_record(document_dir, instance_dir)
            except (MetadataCorruptError, OSError) as e:
                logger.warning("Skipping instance directory %s: %s", instance_dir, e)
                continue
            if record is not None:
                records.append(record)

        logger.debug("Loaded %d instances from %s", len(records), self._root)
        return records

    def refresh(self) -> None:
        """Rebuild the catalog from disk."""
        self._records = self._scan()

    def list_instances(self) -> list[InstanceRecord]:
        """All records, ordered by version then build date."""
        return sorted(
            self._records, key=lambda r: (version_key(r.python_version), r.build_date)
        )

    def find(
        self, version: VersionSpec | str, build_date: date | datetime | None = None
    ) -> InstanceRecord | None:
        """Find the installed instance that best satisfies a request.

        Records whose version matches the spec are filtered by build date
        when one is given (date-only equality), otherwise by the latest
        flag. Of the survivors the numerically highest version wins, then
        the newest build date.
        """
        spec = parse_version(version) if isinstance(version, str) else version
        matching = [r for r in self._records if version_matches(r.python_version, spec)]

        if build_date is not None:
            wanted = _as_date(build_date)
            matching = [r for r in matching if r.build_date == wanted]
        else:
            self.reconcile_latest_flags()
            matching = [r for r in matching if r.was_latest_build]

        if not matching:
            return None

        return max(matching, key=lambda r: (version_key(r.python_version), r.build_date))

    def add(self, record: InstanceRecord) -> None:
        """Register a newly acquired record, replacing one with the same identity."""
        self._records = [r for r in self._records if r.key != record.key]
        self._records.append(record)
        self.reconcile_latest_flags()

    def remove(self, record: InstanceRecord) -> bool:
        """Delete an instance's directory and drop it from the catalog.

        Returns:
            True if a directory was deleted, False if it was already gone.
        """
        target = record.instance_directory
        existed = target is not None and target.exists()
        if existed:
            shutil.rmtree(target)
            logger.info("Removed instance directory %s", target)
        else:
            logger.debug("Instance directory for Python %s already removed", record.python_version)

        self._records = [r for r in self._records if r.key != record.key]
        return existed

    def remove_version(self, version: VersionSpec | str, build_date: date | None = None) -> bool:
        """Remove the instance ``find`` resolves for a request, if any."""
        record = self.find(version, build_date)
        if record is None:
            return False
        return self.remove(record)

    def reconcile_latest_flags(self) -> list[InstanceRecord]:
        """Clear superseded latest flags.

        Within each exact version only the flagged record with the newest
        build date keeps the flag. Cleared records are re-persisted.

        Returns:
            The records whose flag was cleared.
        """
        flagged: dict[str, list[InstanceRecord]] = defaultdict(list)
        for record in self._records:
            if record.was_latest_build:
                flagged[record.python_version].append(record)

        cleared: list[InstanceRecord] = []
        for python_version, records in flagged.items():
            if len(records) < 2:
                continue
            newest = max(records, key=lambda r: r.build_date)
            for record in records:
                if record is newest:
                    continue
                logger.warning(
                    "Python %s build %s is no longer the latest build (superseded by %s)",
                    python_version, record.build_date, newest.build_date,
                )
                record.was_latest_build = False
                if record.directory is not None:
                    save_instance_record(record)
                cleared.append(record)
        return cleared

    def instance_size(self, record: InstanceRecord) -> int:
        """Bytes used by an instance directory, 0 if it is gone."""
        return _directory_size(record.instance_directory)

    def total_disk_usage(self) -> int:
        return sum(self.instance_size(record) for record in self._records)

    def validate_integrity(self, record: InstanceRecord) -> bool:
        """Check that an instance's installation root still verifies."""
        if record.directory is None:
            return False
        valid = verify_layout(record.directory)
        if not valid:
            logger.warning(
                "Python %s (build %s) failed integrity check at %s",
                record.python_version, record.build_date, record.directory,
            )
        return valid


def _directory_size(directory: Path | None) -> int:
    if directory is None or not directory.is_dir():
        return 0
    return sum(
        path.stat().st_size
        for path in directory.rglob("*")
        if path.is_file() and not path.is_symlink()
    )
