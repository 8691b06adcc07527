"""
Provides methods to extract information from URLs using yt-dlp.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .constants import YOUTUBE_THUMBNAIL_URL
from .exceptions import DependencyMissing, URLExtractionError, JobCancelledError
from .process import run_supervised


def _fallback_thumbnail(video_id: str) -> str:
    # mqdefault is native 16:9; hqdefault is letterboxed 4:3.
    return YOUTUBE_THUMBNAIL_URL.format(video_id=video_id, tier='mqdefault')


def _looks_like_video_platform(info: Dict[str, Any]) -> bool:
    page_url = info.get('webpage_url') or ''
    return 'youtube' in page_url or 'youtu.be' in page_url or len(str(info.get('id') or '')) == 11


def _title_from_soundcloud_url(url: str) -> Tuple[Optional[str], Optional[str]]:
    """Derives (artist, title) from a ``soundcloud.com/<artist>/<slug>`` URL."""
    try:
        parts = url.split('soundcloud.com/', 1)[1].split('/')
    except IndexError:
        return None, None
    if len(parts) < 2 or not parts[1]:
        return None, None
    slug = parts[1].split('?')[0].replace('-', ' ')
    return parts[0] or None, slug.title()


class URLInfoExtractor:
    """
    Provides info-only lookups (no media download) using yt-dlp's JSON dump.
    """
    def __init__(self, yt_dlp_path: Optional[Path]):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
        """
        self.yt_dlp_path = yt_dlp_path
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr_lines: List[str]) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr_lines:
            return "yt-dlp returned an error with no output."

        for line in stderr_lines:
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr_lines[-1]

    async def _run_command(self, args: List[str], timeout: int) -> List[str]:
        """
        A robust wrapper for running a yt-dlp command.

        Returns:
            Every stdout line.

        Raises:
            DependencyMissing: If yt-dlp cannot be found.
            URLExtractionError: On a timeout or non-zero exit code.
            JobCancelledError: If the task is cancelled.
        """
        if not self.yt_dlp_path:
            raise DependencyMissing('yt-dlp')
        command = [str(self.yt_dlp_path), *args]
        stdout_lines: List[str] = []

        async def collect(line: str):
            stdout_lines.append(line)

        try:
            return_code, _, err_tail = await run_supervised(command, timeout, on_stdout=collect)
        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise DependencyMissing('yt-dlp')
        except asyncio.TimeoutError:
            self.logger.error(f"yt-dlp command timed out: {' '.join(command)}")
            raise URLExtractionError("URL processing command timed out.")
        except asyncio.CancelledError:
            raise JobCancelledError("URL processing cancelled.")

        if return_code != 0:
            error_msg = self._parse_yt_dlp_error(list(err_tail))
            self.logger.error(f"yt-dlp command failed for '{command[-1]}': {error_msg}")
            raise URLExtractionError(error_msg)

        return stdout_lines

    async def get_media_info(self, url: str) -> Dict[str, Any]:
        """
        Retrieves the descriptive metadata of a single item.

        Returns:
            A dict with id, title, duration, thumbnail, channel and url.

        Raises:
            URLExtractionError: If the yt-dlp command fails or prints invalid JSON.
        """
        lines = await self._run_command(['--dump-json', '--no-playlist', '--no-warnings', url], timeout=60)
        try:
            info = json.loads('\n'.join(lines))
        except json.JSONDecodeError:
            raise URLExtractionError("Failed to parse video info.")
        if not isinstance(info, dict):
            raise URLExtractionError("Failed to parse video info.")

        thumbnail = info.get('thumbnail')
        if info.get('id') and (not thumbnail or 'hqdefault' in thumbnail):
            thumbnail = _fallback_thumbnail(info['id'])

        return {
            'id': info.get('id'),
            'title': info.get('title'),
            'duration': info.get('duration'),
            'thumbnail': thumbnail,
            'channel': info.get('channel') or info.get('uploader'),
            'url': info.get('webpage_url') or url,
        }

    async def get_stream_url(self, url: str, format_spec: str = 'bestvideo[height<=720]') -> Optional[str]:
        """
        Resolves the direct media URL of an item's video stream.

        Returns:
            The URL, or None if the item has no matching stream.
        """
        try:
            lines = await self._run_command(['-f', format_spec, '-g', '--no-playlist', '--no-warnings', url], timeout=60)
        except URLExtractionError as e:
            self.logger.info(f"No video stream for '{url}': {e}")
            return None
        return next((line.strip() for line in lines if line.strip()), None)

    async def get_playlist_entries(self, url: str) -> List[Dict[str, Any]]:
        """
        Lists the items of a playlist without resolving each one.

        Malformed records are skipped.

        Raises:
            URLExtractionError: If the command fails or yields no items.
        """
        lines = await self._run_command(['--dump-json', '--flat-playlist', '--yes-playlist', '--no-warnings', url], timeout=120)
        items = []
        for line in lines:
            try:
                info = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(info, dict):
                continue

            thumbnail = info.get('thumbnail')
            thumbnails = info.get('thumbnails')
            if not thumbnail and isinstance(thumbnails, list) and thumbnails:
                thumbnail = (thumbnails[-1] or {}).get('url')
            if not thumbnail and info.get('id') and _looks_like_video_platform(info):
                thumbnail = _fallback_thumbnail(info['id'])

            title = info.get('title')
            artist = info.get('channel') or info.get('uploader')
            page_url = info.get('webpage_url') or info.get('url') or ''
            if (not title or title == 'Unknown Title') and 'soundcloud.com' in page_url:
                slug_artist, slug_title = _title_from_soundcloud_url(page_url)
                artist = artist or slug_artist
                title = slug_title or title

            items.append({
                'id': info.get('id'),
                'title': title or 'Unknown Title',
                'duration': info.get('duration') or 0,
                'thumbnail': thumbnail or '',
                'channel': artist or 'Unknown',
                'url': page_url or f"https://www.youtube.com/watch?v={info.get('id')}",
            })

        if not items:
            raise URLExtractionError("No videos found in playlist.")
        return items
