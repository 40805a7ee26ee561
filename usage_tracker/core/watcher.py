"""
Directory change detection for log files.

Polls the log tree and reports when any JSONL file is added, removed or
modified. Debouncing is left to the consumer.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0

FileSignature = Tuple[int, int]  # (mtime_ns, size)


def snapshot_files(paths: Iterable[Path]) -> Dict[Path, FileSignature]:
    """Capture a change signature for each file.

    Files that disappear between listing and stat are left out.
    """
    signatures = {}
    for path in paths:
        try:
            stat = os.stat(path)
        except OSError:
            continue
        signatures[path] = (stat.st_mtime_ns, stat.st_size)
    return signatures


class DirectoryWatcher:
    """Polling watcher over the files returned by a listing function."""

    def __init__(
        self,
        list_files: Callable[[], Iterable[Path]],
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        """Initialize the watcher.

        Args:
            list_files: Returns the files to watch, re-evaluated every poll so
                new files and directories are picked up
            poll_interval: Seconds between polls
        """
        self.list_files = list_files
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None
        self._signatures: Dict[Path, FileSignature] = {}

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _scan(self) -> Dict[Path, FileSignature]:
        return snapshot_files(self.list_files())

    async def check(self) -> bool:
        """Poll once and report whether anything changed since the last poll."""
        current = await asyncio.to_thread(self._scan)
        changed = current != self._signatures
        self._signatures = current
        return changed

    async def start(self, on_change: Callable[[], None]) -> None:
        """Begin watching; ``on_change`` runs on the event loop for each change."""
        await self.stop()
        self._signatures = await asyncio.to_thread(self._scan)
        self._task = asyncio.get_running_loop().create_task(self._run(on_change))
        logger.debug("Watching %d log files", len(self._signatures))

    async def _run(self, on_change: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                changed = await self.check()
            except OSError as e:
                logger.warning("Log directory scan failed: %s", e)
                continue
            if changed:
                logger.debug("Log files changed")
                on_change()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
