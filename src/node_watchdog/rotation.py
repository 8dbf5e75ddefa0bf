"""Log rotation between child runs."""

from __future__ import annotations

import gzip
import logging
import shutil
from pathlib import Path
from typing import Union

logger = logging.getLogger("node-watchdog.rotation")


class LogRotator:
    """Keeps a bounded set of gzipped archives of the live log.

    Archives are named ``<log>.1.gz`` (newest) through ``<log>.<keep>.gz``
    (oldest). Rotation only happens between runs, never while a child is
    writing.
    """

    def __init__(self, keep: int = 5):
        if keep < 1:
            raise ValueError("keep must be >= 1")
        self.keep = keep

    @staticmethod
    def archive_path(log_path: Union[str, Path], index: int) -> Path:
        log_path = Path(log_path)
        return log_path.with_name(f"{log_path.name}.{index}.gz")

    def archives(self, log_path: Union[str, Path]) -> list[Path]:
        """Existing archives, newest first."""
        paths = (self.archive_path(log_path, i) for i in range(1, self.keep + 1))
        return [p for p in paths if p.exists()]

    def rotate(self, log_path: Union[str, Path]) -> bool:
        """Archive the live log into slot 1 and truncate it.

        Returns False when there is no live log yet. A failure to compress
        is logged and the live log is truncated anyway, so the next run
        starts from an empty file.
        """
        log_path = Path(log_path)
        if not log_path.exists():
            return False

        for i in range(self.keep, 0, -1):
            archive = self.archive_path(log_path, i)
            if not archive.exists():
                continue
            if i == self.keep:
                archive.unlink()
            else:
                archive.rename(self.archive_path(log_path, i + 1))

        target = self.archive_path(log_path, 1)
        try:
            with open(log_path, "rb") as src, gzip.open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
        except OSError as e:
            logger.warning(f"Failed to compress {log_path} into {target}: {e}")

        with open(log_path, "wb"):
            pass

        logger.debug(f"Rotated {log_path} (keeping {self.keep} archives)")
        return True
