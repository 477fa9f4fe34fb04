"""Age based reaping of uploads, scratch space and artifacts.

Purely a filesystem policy: the sweeper knows nothing about jobs. It runs
independently of the delete-after-download path in the service; either one
alone keeps disk usage bounded.
"""

import asyncio
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SEC = 24 * 3600
DEFAULT_INTERVAL_SEC = 3600


class RetentionSweeper:
    def __init__(
        self,
        directories: Iterable[str | Path],
        *,
        retention_seconds: float = DEFAULT_RETENTION_SEC,
        interval_seconds: float = DEFAULT_INTERVAL_SEC,
        on_removed: Callable[[Path], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._directories = [Path(d) for d in directories]
        self._retention = retention_seconds
        self._interval = interval_seconds
        self._on_removed = on_removed
        self._clock = clock
        self._task: asyncio.Task | None = None

    def sweep(self) -> int:
        """Delete entries older than the retention window. Returns how many were removed."""
        removed = 0
        for directory in self._directories:
            removed += self._sweep_directory(directory)
        return removed

    def _sweep_directory(self, directory: Path) -> int:
        if not directory.is_dir():
            return 0
        now = self._clock()
        count = 0
        try:
            entries = list(os.scandir(directory))
        except OSError as e:
            logger.error("cleanup failed for %s: %s", directory, e)
            return 0

        for entry in entries:
            path = Path(entry.path)
            try:
                age = now - entry.stat(follow_symlinks=False).st_mtime
                if age <= self._retention:
                    continue
                if entry.is_dir(follow_symlinks=False):
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("failed to delete old file %s: %s", path, e)
                continue
            count += 1
            if self._on_removed is not None:
                try:
                    self._on_removed(path)
                except Exception:
                    logger.exception("on_removed hook failed for %s", path)

        if count:
            logger.info("cleanup: removed %d entries older than %ds from %s", count, self._retention, directory)
        return count

    async def start(self) -> None:
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("retention sweep failed")
            await asyncio.sleep(self._interval)
