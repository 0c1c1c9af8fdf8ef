"""Platform detection and minimum OS requirements.

Standalone builds are published per target triple. This module maps the
running OS and CPU architecture to that triple and checks the OS
prerequisites the builds document (Windows 8+, glibc 2.17+).
"""

import logging
import platform
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from embedpy.errors import PlatformUnsupportedError

logger = logging.getLogger(__name__)

TARGET_TRIPLES: dict[tuple[str, str], str] = {
    ("Windows", "x64"): "x86_64-pc-windows-msvc",
    ("Windows", "x86"): "i686-pc-windows-msvc",
    ("Linux", "x64"): "x86_64-unknown-linux-gnu",
    ("Linux", "x86"): "i686-unknown-linux-gnu",
    ("Linux", "ARM64"): "aarch64-unknown-linux-gnu",
    ("Linux", "ARMv7"): "armv7-unknown-linux-gnueabi",
    ("macOS", "x64"): "x86_64-apple-darwin",
    ("macOS", "ARM64"): "aarch64-apple-darwin",
}

MUSL_TRIPLE = "x86_64-unknown-linux-musl"

SUPPORTED_TARGET_TRIPLES = sorted({*TARGET_TRIPLES.values(), MUSL_TRIPLE})

MINIMUM_WINDOWS_VERSION = (6, 2)
MINIMUM_GLIBC_VERSION = (2, 17)

_ARCHITECTURES = {
    "x86_64": "x64",
    "amd64": "x64",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
    "arm64": "ARM64",
    "aarch64": "ARM64",
    "armv7l": "ARMv7",
    "armv7": "ARMv7",
}

_OPERATING_SYSTEMS = {
    "win32": "Windows",
    "cygwin": "Windows",
    "linux": "Linux",
    "darwin": "macOS",
}


@dataclass(frozen=True)
class PlatformInfo:
    """Operating system, architecture and standalone-build target triple."""

    operating_system: str
    architecture: str
    target_triple: str


class PlatformProbe(Protocol):
    """Protocol for the platform collaborator."""

    def detect(self) -> PlatformInfo:
        """Describe the running platform."""
        ...

    def validate_minimum_os_version(self) -> None:
        """Raise PlatformUnsupportedError when OS prerequisites are not met."""
        ...


def _operating_system() -> str:
    for prefix, name in _OPERATING_SYSTEMS.items():
        if sys.platform.startswith(prefix):
            return name
    msg = f"Unsupported operating system: {sys.platform}"
    raise PlatformUnsupportedError(msg, platform=sys.platform, supported=SUPPORTED_TARGET_TRIPLES)


def _architecture() -> str:
    machine = platform.machine().lower()
    arch = _ARCHITECTURES.get(machine)
    if arch is None:
        msg = f"Unsupported architecture: {platform.machine()}"
        raise PlatformUnsupportedError(msg, platform=machine, supported=SUPPORTED_TARGET_TRIPLES)
    return arch


def _is_musl() -> bool:
    libc, _ = platform.libc_ver()
    if libc == "glibc":
        return False
    lib_dir = Path("/lib")
    if not lib_dir.is_dir():
        return False
    return any(entry.name.startswith("ld-musl") for entry in lib_dir.iterdir())


def detect_platform() -> PlatformInfo:
    """Detect the running platform.

    Raises:
        PlatformUnsupportedError: If the OS/architecture pair has no builds.
    """
    os_name = _operating_system()
    arch = _architecture()

    if os_name == "Linux" and arch == "x64" and _is_musl():
        triple = MUSL_TRIPLE
    else:
        triple = TARGET_TRIPLES.get((os_name, arch))

    if triple is None:
        msg = f"Unsupported platform combination: {os_name} {arch}"
        raise PlatformUnsupportedError(
            msg, platform=f"{os_name} {arch}", supported=SUPPORTED_TARGET_TRIPLES
        )

    return PlatformInfo(operating_system=os_name, architecture=arch, target_triple=triple)


def _glibc_version() -> tuple[int, int] | None:
    libc, libc_version = platform.libc_ver()
    if libc != "glibc" or not libc_version:
        return None
    match = re.match(r"(\d+)\.(\d+)", libc_version)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def validate_minimum_os_version() -> None:
    """Check the OS prerequisites of standalone builds.

    - Windows: Windows 8 / Server 2012 (6.2) or newer.
    - Linux: glibc 2.17 or newer, when the version can be determined.
    - macOS: not checked.

    Raises:
        PlatformUnsupportedError: If the OS is too old.
    """
    if sys.platform == "win32":
        winver = sys.getwindowsversion()  # type: ignore[attr-defined]
        if (winver.major, winver.minor) < MINIMUM_WINDOWS_VERSION:
            msg = (
                "Python standalone builds require Windows 8 or Windows Server 2012 or newer. "
                f"Current OS version: {winver.major}.{winver.minor}.{winver.build}"
            )
            raise PlatformUnsupportedError(msg, platform="Windows")
        return

    if sys.platform.startswith("linux"):
        glibc = _glibc_version()
        if glibc is None:
            logger.warning(
                "Could not determine glibc version; execution will fail if glibc %d.%d+ is missing",
                *MINIMUM_GLIBC_VERSION,
            )
            return
        if glibc < MINIMUM_GLIBC_VERSION:
            msg = (
                "Python standalone builds require glibc 2.17 or newer. "
                f"Detected glibc version: {glibc[0]}.{glibc[1]}"
            )
            raise PlatformUnsupportedError(msg, platform="Linux")


class SystemPlatformProbe:
    """PlatformProbe backed by the running interpreter's view of the system."""

    def detect(self) -> PlatformInfo:
        return detect_platform()

    def validate_minimum_os_version(self) -> None:
        validate_minimum_os_version()


def describe_system_requirements(probe: PlatformProbe | None = None) -> dict[str, Any]:
    """Summarize the platform and the outcome of the OS-version check."""
    probe = probe or SystemPlatformProbe()
    results: dict[str, Any] = {}

    try:
        info = probe.detect()
    except PlatformUnsupportedError as e:
        results["platform_check"] = "failed"
        results["platform_error"] = str(e)
        return results

    results["operating_system"] = info.operating_system
    results["architecture"] = info.architecture
    results["target_triple"] = info.target_triple

    try:
        probe.validate_minimum_os_version()
        results["os_version_check"] = "passed"
    except PlatformUnsupportedError as e:
        results["os_version_check"] = "failed"
        results["os_version_error"] = str(e)

    return results
