"""Small helpers shared across modules: retries, binary checks, atomic writes, env parsing."""

from __future__ import annotations

import logging
import os
import random
import stat
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
) -> T:
    """
    Call `fn` until it returns, sleeping with jittered exponential backoff between
    attempts. Exceptions outside `retryable_exceptions` propagate immediately; the
    last retryable one is re-raised once attempts run out.
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retryable_exceptions as e:
            if attempt == attempts:
                raise
            delay = min(max_delay, base_delay * 2 ** (attempt - 1) + random.uniform(0, 1))
            logger.warning(f"Attempt {attempt}/{attempts} failed ({type(e).__name__}: {e}); retrying in {delay:.1f}s")
            time.sleep(delay)
    raise AssertionError("unreachable")


class BinaryNotFoundError(FileNotFoundError):
    pass


class BinaryNotExecutableError(PermissionError):
    pass


def validate_binary(path: Path, *, binary_name: str = "binary") -> Path:
    """
    Raises:
        BinaryNotFoundError: `path` is missing or not a regular file.
        BinaryNotExecutableError: `path` lacks execute permission.
    """
    try:
        mode = path.stat().st_mode
    except FileNotFoundError as e:
        raise BinaryNotFoundError(f"{binary_name} not found: {path}") from e
    if not stat.S_ISREG(mode):
        raise BinaryNotFoundError(f"{binary_name} is not a regular file: {path}")
    if not os.access(path, os.X_OK):
        raise BinaryNotExecutableError(f"{binary_name} is not executable: {path}")
    return path


def atomic_write_text(path: Path, content: str) -> None:
    """Write via a sibling temp file and rename, so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        # newline="" keeps the bytes identical across platforms.
        with tmp.open("w", encoding="utf-8", newline="") as f:
            f.write(content)
        os.replace(tmp, path)
    except (OSError, UnicodeEncodeError):
        logger.error(f"Could not write {path}")
        tmp.unlink(missing_ok=True)
        raise


def _clamp(v, lo, hi, name: str):
    if lo <= v <= hi:
        return v
    logger.warning(f"{name}={v} outside [{lo}, {hi}]; clamped")
    return max(lo, min(hi, v))


def safe_parse_float(
    val: Any, default: float, min_val: float = -float("inf"), max_val: float = float("inf"), name: str = "value"
) -> float:
    try:
        return _clamp(float(val), min_val, max_val, name)
    except (ValueError, TypeError):
        logger.warning(f"Ignoring {name}={val!r}; using {default}")
        return default


def safe_parse_int(
    val: Any, default: int, min_val: int = -sys.maxsize, max_val: int = sys.maxsize, name: str = "value"
) -> int:
    try:
        return _clamp(int(val), min_val, max_val, name)
    except (ValueError, TypeError):
        logger.warning(f"Ignoring {name}={val!r}; using {default}")
        return default


def tail_text(text: str, *, max_chars: int = 4000) -> str:
    """Keep the end of a long diagnostic, where toolchains print the actual error."""
    if len(text) <= max_chars:
        return text
    return "..." + text[-max_chars:]
