"""Manages the discovery of yt-dlp, ffmpeg and ffprobe, and the download of yt-dlp."""
import sys
import shutil
import asyncio
import time
import logging
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, Optional, Tuple

import aiohttp
import aiofiles

from .constants import BIN_DIR, REQUEST_HEADERS, YT_DLP_URLS
from .exceptions import DependencyMissing, JobCancelledError
from .process import run_supervised

ENGINES = ('yt-dlp', 'ffmpeg', 'ffprobe')
EventCallback = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]


class DependencyManager:
    """Finds the external engines and reports what the pipeline can do without them."""
    DOWNLOAD_RETRY_ATTEMPTS = 3

    def __init__(self, event_callback: Optional[EventCallback] = None, bin_dir: Path = BIN_DIR):
        """
        Initializes the DependencyManager.

        Args:
            event_callback: The async function to call with install progress events.
            bin_dir: Directory of locally managed engine binaries, searched before PATH.
        """
        self.event_callback = event_callback
        self.bin_dir = bin_dir
        self.logger = logging.getLogger(__name__)
        self.paths: Dict[str, Optional[Path]] = {name: None for name in ENGINES}

    async def initialize(self):
        """Asynchronously finds paths to all engines to avoid blocking the event loop."""
        self.logger.info("Initializing dependency paths...")
        found = await asyncio.gather(*(asyncio.to_thread(self.find, name) for name in ENGINES))
        for name, path in zip(ENGINES, found):
            self.logger.info(f"{name} path: {path}")

    @property
    def yt_dlp_path(self) -> Optional[Path]:
        return self.paths['yt-dlp']

    @property
    def ffmpeg_path(self) -> Optional[Path]:
        return self.paths['ffmpeg']

    @property
    def ffprobe_path(self) -> Optional[Path]:
        return self.paths['ffprobe']

    def find(self, name: str) -> Optional[Path]:
        """Finds an executable, preferring a locally managed one, and remembers it."""
        local_path = self.bin_dir / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.exists():
            path: Optional[Path] = local_path
        else:
            path_in_system = shutil.which(name)
            path = Path(path_in_system) if path_in_system else None
        self.paths[name] = path
        return path

    def require(self, name: str) -> Path:
        """
        Returns the engine path.

        Raises:
            DependencyMissing: If the engine has not been found.
        """
        path = self.paths.get(name)
        if not path:
            raise DependencyMissing(name)
        return path

    def capabilities(self) -> Dict[str, bool]:
        """
        What the pipeline can currently do.

        Without ffmpeg the raw stream can still be fetched ('original' format), but
        nothing can be transcoded or tagged.
        """
        return {
            'acquire': self.yt_dlp_path is not None,
            'transcode': self.ffmpeg_path is not None,
            'probe': self.ffprobe_path is not None,
        }

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Asynchronously returns the first line of an engine's version output."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        flag = '-version' if executable_path.name.lower().startswith(('ffmpeg', 'ffprobe')) else '--version'
        lines: List[str] = []

        async def collect(line: str):
            lines.append(line)

        try:
            return_code, _, _ = await run_supervised([str(executable_path), flag], timeout=15, on_stdout=collect)
        except FileNotFoundError:
            return "Not found or no permission"
        except asyncio.TimeoutError:
            return "Version check timed out"
        except OSError:
            return "Cannot execute"
        if return_code != 0 or not lines:
            return "Cannot execute"
        return lines[0]

    async def get_versions(self) -> Dict[str, str]:
        versions = await asyncio.gather(*(self.get_version(self.paths[name]) for name in ENGINES))
        return dict(zip(ENGINES, versions))

    async def _emit(self, value: Dict[str, Any]):
        if self.event_callback:
            await self.event_callback(('dependency_progress', value))

    async def _download_file(self, session: aiohttp.ClientSession, url: str, save_path: Path):
        """Streams ``url`` to ``save_path``, with retries and progress events."""
        for attempt in range(self.DOWNLOAD_RETRY_ATTEMPTS):
            try:
                async with session.get(url, headers=REQUEST_HEADERS, timeout=aiohttp.ClientTimeout(total=None, sock_read=60)) as r:
                    r.raise_for_status()
                    total_size = int(r.headers.get('Content-Length', 0))
                    bytes_downloaded, start_time = 0, time.monotonic()
                    async with aiofiles.open(save_path, 'wb') as f_out:
                        async for chunk in r.content.iter_chunked(8192):
                            await f_out.write(chunk)
                            bytes_downloaded += len(chunk)
                            if total_size > 0:
                                elapsed = time.monotonic() - start_time
                                speed = (bytes_downloaded / elapsed) / 1024 / 1024 if elapsed > 0 else 0
                                await self._emit({'type': 'yt-dlp', 'status': 'determinate',
                                                  'text': f'Downloading... ({speed:.1f} MB/s)',
                                                  'value': bytes_downloaded / total_size * 100})
                return
            except aiohttp.ClientError as e:
                self.logger.error(f"yt-dlp download error on attempt {attempt + 1}: {e}")
                if attempt < self.DOWNLOAD_RETRY_ATTEMPTS - 1: await asyncio.sleep(2 ** attempt)
                else: raise

    async def install_yt_dlp(self) -> Dict[str, Any]:
        """Downloads the platform's yt-dlp release into the managed bin directory."""
        platform = sys.platform
        if platform not in YT_DLP_URLS:
            return {'type': 'yt-dlp', 'success': False, 'error': f"Unsupported OS: {platform}"}

        save_path = self.bin_dir / ('yt-dlp.exe' if platform == 'win32' else 'yt-dlp')
        try:
            await asyncio.to_thread(self.bin_dir.mkdir, parents=True, exist_ok=True)
            async with aiohttp.ClientSession() as session:
                await self._download_file(session, YT_DLP_URLS[platform], save_path)
            if platform in ['linux', 'darwin']:
                await asyncio.to_thread(save_path.chmod, 0o755)
            self.paths['yt-dlp'] = save_path
            await self._emit({'type': 'yt-dlp', 'status': 'determinate', 'text': 'Download complete.', 'value': 100})
            return {'type': 'yt-dlp', 'success': True, 'path': str(save_path)}
        except asyncio.CancelledError:
            self.logger.info("yt-dlp download cancelled by user.")
            raise JobCancelledError("Download cancelled by user.")
        except aiohttp.ClientError as e:
            return {'type': 'yt-dlp', 'success': False, 'error': f"Network error: {e}"}
        except OSError as e:
            return {'type': 'yt-dlp', 'success': False, 'error': f"File error: {e}"}
