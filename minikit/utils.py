"""Utility functions for minikit."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional

from minikit.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    PROFILE_NAME_RE,
)
from minikit.exceptions import ManagerError

_verbose = _LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    stream = sys.stderr if level in {"WARN", "ERROR"} else sys.stdout
    print(f"{colour}[{level}]{reset} {message}", file=stream, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ManagerError(
            f"Invalid disk size '{raw}'. Use a number with optional unit: b, k, m, g, t (e.g. '20000mb')"
        )
    return raw


def parse_size_to_mb(raw: str) -> int:
    """Convert a disk size such as '20g' or '20000mb' into MiB."""
    match = DISK_SIZE_RE.match(validate_disk_size(raw))
    assert match is not None
    number = int(match.group(1))
    unit = (match.group(2) or "mb").lower().rstrip("b")
    factors = {"": 1 / (1024 * 1024), "k": 1 / 1024, "m": 1, "g": 1024, "t": 1024 * 1024}
    return max(1, int(number * factors[unit]))


def validate_profile_name(name: str) -> str:
    if not PROFILE_NAME_RE.match(name or ""):
        raise ManagerError(
            f"Invalid profile name '{name}'. Use letters, digits, '.', '_' or '-', starting with a letter or digit"
        )
    return name


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
