"""Log-based health monitoring."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

from .config import RunConfig

PathLike = Union[str, Path]

logger = logging.getLogger("node-watchdog.monitor")


@dataclass
class HealthSignal:
    """A reason to restart the child."""

    IDLE = "idle"
    ERROR_KEYWORD = "error_keyword"

    reason: str
    detail: str
    keyword: Optional[str] = None
    idle_seconds: Optional[float] = None

    def __str__(self) -> str:
        return f"{self.reason}: {self.detail}"


def log_age(log_path: PathLike, now: Optional[float] = None) -> Optional[float]:
    """Seconds since the log was last written, or None if it does not exist."""
    try:
        mtime = Path(log_path).stat().st_mtime
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Cannot stat log {log_path}: {e}")
        return None
    return (time.time() if now is None else now) - mtime


def is_idle(log_path: PathLike, threshold_secs: float, now: Optional[float] = None) -> bool:
    """True if the log exists and has not been written for more than ``threshold_secs``.

    A missing log is never idle: the child has not produced anything yet.
    """
    age = log_age(log_path, now)
    return age is not None and age > threshold_secs


def find_error_keyword(
    log_path: PathLike, keywords: Iterable[str], case_insensitive: bool = True
) -> Optional[str]:
    """Return the first keyword found as a literal substring of the log, if any."""
    if case_insensitive:
        needles = [(kw, kw.lower()) for kw in keywords if kw]
    else:
        needles = [(kw, kw) for kw in keywords if kw]
    if not needles:
        return None

    try:
        with open(log_path, encoding="utf-8", errors="replace") as f:
            for line in f:
                haystack = line.lower() if case_insensitive else line
                for keyword, needle in needles:
                    if needle in haystack:
                        return keyword
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Cannot read log {log_path}: {e}")
    return None


def has_error_signal(
    log_path: PathLike, keywords: Iterable[str], case_insensitive: bool = True
) -> bool:
    return find_error_keyword(log_path, keywords, case_insensitive) is not None


class HealthMonitor:
    """Decide whether the child needs a restart by reading its log."""

    is_idle = staticmethod(is_idle)
    has_error_signal = staticmethod(has_error_signal)
    find_error_keyword = staticmethod(find_error_keyword)

    def __init__(self, config: RunConfig):
        self.config = config

    def check(self, now: Optional[float] = None) -> Optional[HealthSignal]:
        """Run the idle check, then the keyword check. None means healthy."""
        log_file = self.config.log_file

        if is_idle(log_file, self.config.idle_seconds, now):
            age = log_age(log_file, now) or 0.0
            return HealthSignal(
                reason=HealthSignal.IDLE,
                detail=f"no output for {age:.0f}s (threshold {self.config.idle_seconds:g}s)",
                idle_seconds=age,
            )

        keyword = find_error_keyword(log_file, self.config.keywords, self.config.case_insensitive)
        if keyword is not None:
            return HealthSignal(
                reason=HealthSignal.ERROR_KEYWORD,
                detail=f"error keyword {keyword!r} found in log",
                keyword=keyword,
            )

        return None
