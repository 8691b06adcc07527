"""
Local music library: an mtime-keyed metadata cache refreshed by bounded-concurrency probing.

Cover art is deliberately left out of scan results; it is extracted lazily per
track by `CoverArtCache` and cached on disk by (path, mtime).
"""
import asyncio
import hashlib
import json
import os
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiofiles
from pydantic import BaseModel, ValidationError

from .constants import AUDIO_EXTENSIONS, UNKNOWN_ARTIST
from .exceptions import CacheIOError, DependencyMissing
from .probe import ProbeError, probe_file
from .process import run_supervised


class LibraryEntry(BaseModel):
    path: str
    mtime: float
    title: str
    artist: str = UNKNOWN_ARTIST
    album: str = ''
    duration: float = 0.0
    has_cover_art: bool = False


class Track(LibraryEntry):
    cover_art: Optional[bytes] = None  # Not yet loaded; see CoverArtCache.


class LibraryCacheFile(BaseModel):
    version: int = 1
    entries: Dict[str, LibraryEntry] = {}


def synthesize_entry(path: Path, mtime: float) -> LibraryEntry:
    """The fallback row used when a file cannot be probed."""
    return LibraryEntry(path=str(path), mtime=mtime, title=path.stem)


class LibraryCacheStore:
    """
    Owns the on-disk library cache.

    The file is only ever replaced as a whole; a corrupt or unreadable file is
    treated as an empty cache.
    """

    def __init__(self, cache_path: Path):
        self.cache_path = cache_path
        self.logger = logging.getLogger(__name__)
        self.entries: Dict[str, LibraryEntry] = {}

    def _read(self) -> Dict[str, LibraryEntry]:
        if not self.cache_path.exists():
            return {}
        try:
            data = json.loads(self.cache_path.read_text(encoding='utf-8'))
            return LibraryCacheFile.model_validate(data).entries
        except (OSError, ValueError, ValidationError) as e:
            raise CacheIOError(f"Library cache at {self.cache_path} is unreadable: {e}") from e

    def load(self) -> Dict[str, LibraryEntry]:
        try:
            self.entries = self._read()
        except CacheIOError as e:
            self.logger.warning(f"{e}. Starting with an empty cache.")
            self.entries = {}
        return self.entries

    def replace(self, entries: Dict[str, LibraryEntry]) -> None:
        self.entries = dict(entries)

    def save(self) -> None:
        payload = LibraryCacheFile(entries=self.entries).model_dump_json(indent=2)
        tmp_path = self.cache_path.with_suffix(self.cache_path.suffix + '.tmp')
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding='utf-8')
            os.replace(tmp_path, self.cache_path)
        except OSError as e:
            self.logger.error(f"Error saving library cache to {self.cache_path}: {e}")


class LibraryScanner:
    """Enumerates a directory of audio files, probing only what changed since the last scan."""

    def __init__(self, store: LibraryCacheStore, ffprobe_path: Optional[Path], max_concurrent_probes: int = 8):
        self.store = store
        self.ffprobe_path = ffprobe_path
        self.max_concurrent_probes = max_concurrent_probes
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def list_audio_files(directory: Path) -> List[Tuple[Path, float]]:
        files = []
        for item in directory.iterdir():
            if item.suffix.lower() not in AUDIO_EXTENSIONS:
                continue
            try:
                if item.is_file():
                    files.append((item.resolve(), item.stat().st_mtime))
            except OSError:
                continue  # Vanished between listing and stat.
        return files

    async def scan(self, directory: Path) -> List[Track]:
        """
        Returns every audio file in ``directory`` as a Track, sorted by path.

        Files whose mtime matches the cache are returned without running ffprobe.
        The cache is then replaced with exactly the files seen in this scan.
        """
        if not await asyncio.to_thread(directory.is_dir):
            self.logger.warning(f"Library directory does not exist: {directory}")
            return []

        cached = await asyncio.to_thread(self.store.load)
        files = await asyncio.to_thread(self.list_audio_files, directory)

        hits: Dict[str, LibraryEntry] = {}
        misses: List[Tuple[Path, float]] = []
        for path, mtime in files:
            entry = cached.get(str(path))
            if entry is not None and entry.mtime == mtime:
                hits[str(path)] = entry
            else:
                misses.append((path, mtime))

        self.logger.info(f"Library scan of {directory}: {len(hits)} cached, {len(misses)} to probe.")

        semaphore = asyncio.Semaphore(self.max_concurrent_probes)
        probed = await asyncio.gather(*(self._probe_one(semaphore, path, mtime) for path, mtime in misses))

        entries = dict(hits)
        for entry, persist in probed:
            if persist:
                entries[entry.path] = entry
        self.store.replace(entries)
        await asyncio.to_thread(self.store.save)

        results = list(hits.values()) + [entry for entry, _ in probed]
        return sorted((Track(**entry.model_dump()) for entry in results), key=lambda t: t.path)

    async def _probe_one(self, semaphore: asyncio.Semaphore, path: Path, mtime: float) -> Tuple[LibraryEntry, bool]:
        """Probes one file. Returns the entry and whether it belongs in the cache."""
        async with semaphore:
            try:
                result = await probe_file(self.ffprobe_path, path)
            except DependencyMissing:
                # Not cached, so the file is probed again once ffprobe is available.
                return synthesize_entry(path, mtime), False
            except ProbeError as e:
                self.logger.warning(f"Could not read tags from {path.name}: {e}")
                return synthesize_entry(path, mtime), True
        return LibraryEntry(
            path=str(path),
            mtime=mtime,
            title=result.title or path.stem,
            artist=result.artist or UNKNOWN_ARTIST,
            album=result.album or '',
            duration=result.duration,
            has_cover_art=result.has_cover_art,
        ), True


class CoverArtCache:
    """Extracts embedded cover art on demand and caches it by (path, mtime)."""

    def __init__(self, cache_dir: Path, ffmpeg_path: Optional[Path], timeout: float = 30):
        self.cache_dir = cache_dir
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def cache_key(path: Path, mtime: float) -> str:
        return hashlib.sha1(f"{path}|{mtime}".encode('utf-8')).hexdigest()

    async def get(self, path: Path) -> Optional[bytes]:
        """
        Returns the JPEG bytes of the file's embedded picture, or None.

        Both hits and known misses are answered from disk without invoking ffmpeg.
        """
        try:
            stat = await asyncio.to_thread(path.stat)
        except OSError:
            return None
        key = self.cache_key(path.resolve(), stat.st_mtime)
        image_path = self.cache_dir / f"{key}.jpg"
        miss_marker = self.cache_dir / f"{key}.none"

        if await asyncio.to_thread(image_path.exists):
            async with aiofiles.open(image_path, 'rb') as f_in:
                return await f_in.read()
        if await asyncio.to_thread(miss_marker.exists):
            return None
        if not self.ffmpeg_path:
            raise DependencyMissing('ffmpeg')

        await asyncio.to_thread(self.cache_dir.mkdir, parents=True, exist_ok=True)
        partial_path = self.cache_dir / f"{key}.partial.jpg"
        command = [str(self.ffmpeg_path), '-hide_banner', '-nostdin', '-i', str(path),
                   '-an', '-vcodec', 'mjpeg', '-vframes', '1', '-f', 'image2', '-y', str(partial_path)]
        try:
            return_code, _, _ = await run_supervised(command, self.timeout, capture_stdout=False)
        except FileNotFoundError:
            raise DependencyMissing('ffmpeg')
        except asyncio.TimeoutError:
            self.logger.warning(f"Cover art extraction timed out for {path.name}")
            return None

        if return_code == 0 and await asyncio.to_thread(partial_path.exists):
            async with aiofiles.open(partial_path, 'rb') as f_in:
                data = await f_in.read()
            if data:
                await asyncio.to_thread(os.replace, partial_path, image_path)
                return data

        try:
            await asyncio.to_thread(partial_path.unlink)
        except FileNotFoundError:
            pass
        await asyncio.to_thread(miss_marker.touch)
        return None
