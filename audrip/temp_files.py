"""Tracks and removes the temporary artifacts jobs leave in the work directory."""
import asyncio
import time
import logging
from pathlib import Path
from typing import List

from .constants import TEMP_PREFIX


class TempFileManager:
    """
    Deletes per-job artifacts by name prefix.

    Jobs never record the exact files they create (the engine picks the container
    extension, partial-download markers come and go), so everything is located by
    listing the work directory and matching the job's prefix.
    """

    def __init__(self, work_dir: Path):
        self.work_dir = work_dir
        self.logger = logging.getLogger(__name__)

    def ensure_work_dir(self) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        return self.work_dir

    def find(self, prefix: str) -> List[Path]:
        """Lists files in the work directory whose name starts with ``prefix``."""
        if not self.work_dir.is_dir():
            return []
        return sorted(p for p in self.work_dir.iterdir() if p.name.startswith(prefix) and p.is_file())

    def cleanup_sync(self, prefix: str) -> int:
        count = 0
        try:
            candidates = self.find(prefix)
        except OSError as e:
            self.logger.error(f"Could not list {self.work_dir} for cleanup: {e}")
            return 0
        for item in candidates:
            try:
                item.unlink()
                count += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                self.logger.error(f"Error deleting temp file {item.name}: {e}")
        if count > 0:
            self.logger.debug(f"Deleted {count} temporary file(s) for prefix '{prefix}'.")
        return count

    async def cleanup(self, prefix: str) -> int:
        """Deletes every file under ``prefix``. Individual failures are logged and skipped."""
        return await asyncio.to_thread(self.cleanup_sync, prefix)

    def sweep_orphans_sync(self, max_age: float) -> int:
        if not self.work_dir.is_dir():
            return 0
        cutoff = time.time() - max_age
        count = 0
        for item in list(self.work_dir.iterdir()):
            if not item.name.startswith(TEMP_PREFIX):
                continue
            try:
                if item.is_file() and item.stat().st_mtime < cutoff:
                    item.unlink()
                    count += 1
            except OSError as e:
                self.logger.error(f"Error deleting orphaned temp file {item.name}: {e}")
        if count > 0:
            self.logger.info(f"Deleted {count} orphaned temporary file(s).")
        return count

    async def sweep_orphans(self, max_age: float) -> int:
        """
        Deletes leftovers of a previous, abnormally terminated run.

        Only files older than ``max_age`` seconds are touched, so artifacts of
        jobs running right now are left alone.
        """
        return await asyncio.to_thread(self.sweep_orphans_sync, max_age)
