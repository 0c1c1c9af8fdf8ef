"""Version specification parsing, normalization and matching.

A spec is either exact (``3.12.5``) or partial (``3.12``). Partial specs
match any patch level under the same major.minor.
"""

import re
from dataclasses import dataclass

from embedpy.errors import VersionFormatError

# Leading digits of a patch component, e.g. "5" in "5rc1"
_PATCH_PATTERN = re.compile(r"^(\d+)([A-Za-z][A-Za-z0-9]*)?$")


@dataclass(frozen=True)
class VersionSpec:
    """A parsed version request. ``patch is None`` marks a partial spec."""

    major: int
    minor: int
    patch: int | None = None

    @property
    def is_partial(self) -> bool:
        return self.patch is None

    def as_tuple(self) -> tuple[int, int, int]:
        """Numeric (major, minor, patch) with 0 for a missing patch."""
        return (self.major, self.minor, self.patch or 0)

    def __str__(self) -> str:
        if self.patch is None:
            return f"{self.major}.{self.minor}"
        return f"{self.major}.{self.minor}.{self.patch}"


def parse_version(text: str) -> VersionSpec:
    """Parse version text into a VersionSpec.

    Two components give a partial spec, three or more an exact one. A
    component beyond the third, or a letter suffix on the patch
    (``3.12.0rc1``), is a build/variant suffix and carries no numeric
    meaning.

    Raises:
        VersionFormatError: If fewer than two numeric components are present.
    """
    if text is None or not str(text).strip():
        raise VersionFormatError(str(text), "empty version")

    parts = str(text).strip().split(".")
    if len(parts) < 2:
        raise VersionFormatError(text, "at least major.minor is required")

    try:
        major = _parse_component(parts[0])
        minor = _parse_component(parts[1])
    except ValueError as e:
        raise VersionFormatError(text, str(e)) from e

    if len(parts) == 2:
        return VersionSpec(major=major, minor=minor)

    match = _PATCH_PATTERN.match(parts[2])
    if match is None:
        raise VersionFormatError(text, f"patch component '{parts[2]}' is not numeric")

    return VersionSpec(major=major, minor=minor, patch=int(match.group(1)))


def _parse_component(part: str) -> int:
    if not part.isdigit():
        msg = f"component '{part}' is not a non-negative integer"
        raise ValueError(msg)
    return int(part)


def normalize_version(spec: VersionSpec | str) -> str:
    """Render a spec as ``X.Y.Z``, substituting 0 for a missing patch."""
    if isinstance(spec, str):
        spec = parse_version(spec)
    major, minor, patch = spec.as_tuple()
    return f"{major}.{minor}.{patch}"


def compare_versions(a: VersionSpec | str, b: VersionSpec | str) -> int:
    """Numeric comparison on (major, minor, patch); returns -1, 0 or 1."""
    left = (parse_version(a) if isinstance(a, str) else a).as_tuple()
    right = (parse_version(b) if isinstance(b, str) else b).as_tuple()
    return (left > right) - (left < right)


def version_key(text: str) -> tuple[int, int, int]:
    """Sort key for exact version strings."""
    return parse_version(text).as_tuple()


def version_matches(candidate: VersionSpec | str, spec: VersionSpec | str) -> bool:
    """Check whether an exact candidate version satisfies a spec.

    Exact specs require full equality; partial specs require only
    major/minor equality.
    """
    if isinstance(candidate, str):
        candidate = parse_version(candidate)
    if isinstance(spec, str):
        spec = parse_version(spec)

    if (candidate.major, candidate.minor) != (spec.major, spec.minor):
        return False
    if spec.patch is None:
        return True
    return candidate.as_tuple()[2] == spec.patch
