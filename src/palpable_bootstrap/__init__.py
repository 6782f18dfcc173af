"""Palpable Bootstrap.

Boot-time connectivity and provisioning orchestrator for Palpable devices.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("palpable-bootstrap")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = ["__version__"]
