"""Coach Stream - streaming session engine for long-lived agent conversations."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("coach-stream")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for development without install
