"""
Centralized path management for development and production environments.

This module detects whether we run from a source checkout or from the boot
image and returns the appropriate locations for the boot partition, runtime
files, logs and the portal UI.

Environment variables can override any path:
- PALPABLE_BOOT_DIR: Boot partition (settings.txt, version.txt, claim.json)
- PALPABLE_RUNTIME_DIR: Generated daemon configuration and daemon logs
- PALPABLE_LOG_DIR: Log directory
- PALPABLE_STATIC_DIR: Captive portal UI (HTML, CSS, JS)

Development mode is auto-detected by checking for pyproject.toml in the
source tree root.
"""

import os
from functools import lru_cache
from pathlib import Path


@lru_cache(maxsize=1)
def get_project_root() -> Path:
    """Get project root directory (3 levels up from this file)."""
    return Path(__file__).parent.parent.parent


@lru_cache(maxsize=1)
def _is_development() -> bool:
    """Detect if running from a source checkout rather than the boot image."""
    return (get_project_root() / "pyproject.toml").exists()


def get_boot_dir() -> Path:
    """Get boot partition directory.

    Priority:
    1. PALPABLE_BOOT_DIR environment variable
    2. ./var/boot (development)
    3. /boot (production)
    """
    if override := os.getenv("PALPABLE_BOOT_DIR"):
        return Path(override)

    if _is_development():
        return get_project_root() / "var" / "boot"

    return Path("/boot")


def get_runtime_dir() -> Path:
    """Get directory for generated daemon configuration files.

    Priority:
    1. PALPABLE_RUNTIME_DIR environment variable
    2. ./var/run/palpable (development)
    3. /tmp/palpable (production, RAM-backed in the initramfs)
    """
    if override := os.getenv("PALPABLE_RUNTIME_DIR"):
        return Path(override)

    if _is_development():
        return get_project_root() / "var" / "run" / "palpable"

    return Path("/tmp/palpable")


def get_log_dir() -> Path:
    """Get log directory.

    Priority:
    1. PALPABLE_LOG_DIR environment variable
    2. ./var/log (development)
    3. /var/log (production)
    """
    if override := os.getenv("PALPABLE_LOG_DIR"):
        return Path(override)

    if _is_development():
        return get_project_root() / "var" / "log"

    return Path("/var/log")


def get_static_dir() -> Path:
    """Get captive portal UI directory.

    Priority:
    1. PALPABLE_STATIC_DIR environment variable
    2. ./portal (development)
    3. /portal (production)
    """
    if override := os.getenv("PALPABLE_STATIC_DIR"):
        return Path(override)

    if _is_development():
        return get_project_root() / "portal"

    return Path("/portal")
