"""embedpy - acquire and manage standalone Python interpreter instances."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("embedpy")
except PackageNotFoundError:
    __version__ = "0.0.0"
