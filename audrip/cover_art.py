"""Resolves the best available cover art for a job before transcoding."""
import asyncio
import base64
import binascii
import re
import logging
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import aiohttp
import aiofiles

from .constants import (
    REQUEST_HEADERS, SOUNDCLOUD_ART_SIZES, YOUTUBE_THUMBNAIL_TIERS, YOUTUBE_THUMBNAIL_URL
)
from .jobs import Job

_YTIMG_ID = re.compile(r'/vi(?:_webp)?/([^/]+)/')
_YOUTU_BE_ID = re.compile(r'youtu\.be/([A-Za-z0-9_-]+)')
_SIZE_TOKEN = re.compile(r'-\w+\.(jpg|png)$', re.IGNORECASE)
_DATA_URI = re.compile(r'^data:image/(\w+);base64,(.*)$', re.DOTALL)


@dataclass(frozen=True)
class CoverArtCandidate:
    url: str
    tier: str
    needs_crop_correction: bool = False


@dataclass(frozen=True)
class ResolvedArt:
    path: Path
    needs_crop_correction: bool = False


def is_video_platform(art_url: str, reference: str) -> bool:
    return 'ytimg.com' in art_url or 'youtube.com' in reference or 'youtu.be' in reference


def is_audio_platform(art_url: str, reference: str) -> bool:
    return 'soundcloud.com' in reference or 'sndcdn.com' in art_url


def extract_video_id(art_url: str, reference: str) -> Optional[str]:
    """Finds the asset id in a thumbnail URL, falling back to the watch URL."""
    if match := _YTIMG_ID.search(art_url):
        return match.group(1)
    parsed = urllib.parse.urlparse(reference)
    if video_ids := urllib.parse.parse_qs(parsed.query).get('v'):
        return video_ids[0]
    if match := _YOUTU_BE_ID.search(reference):
        return match.group(1)
    return None


def build_candidates(art_url: str, reference: str) -> List[CoverArtCandidate]:
    """
    Returns the fetch order for a remote cover-art URL, best quality first.

    Video-platform thumbnails below the top tier are 4:3 frames padded around
    16:9 content and are flagged for crop correction. The URL exactly as given
    is always the last resort and is never cropped.
    """
    candidates: List[CoverArtCandidate] = []
    if is_video_platform(art_url, reference):
        video_id = extract_video_id(art_url, reference)
        if video_id:
            for index, tier in enumerate(YOUTUBE_THUMBNAIL_TIERS):
                url = YOUTUBE_THUMBNAIL_URL.format(video_id=video_id, tier=tier)
                candidates.append(CoverArtCandidate(url, tier, needs_crop_correction=index > 0))
    elif is_audio_platform(art_url, reference):
        for size in SOUNDCLOUD_ART_SIZES:
            url = _SIZE_TOKEN.sub(lambda m: f"-{size}.{m.group(1)}", art_url)
            if url != art_url:
                candidates.append(CoverArtCandidate(url, size))

    if art_url not in {c.url for c in candidates}:
        candidates.append(CoverArtCandidate(art_url, 'as-given'))
    return candidates


def decode_data_uri(data_uri: str) -> Optional[tuple]:
    """Splits a ``data:image/<type>;base64,`` string into (extension, bytes)."""
    match = _DATA_URI.match(data_uri.strip())
    if not match:
        return None
    subtype, payload = match.groups()
    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError):
        return None
    if not data:
        return None
    extension = {'jpeg': 'jpg', 'svg+xml': 'svg'}.get(subtype.lower(), subtype.lower())
    return extension, data


def encode_data_uri(data: bytes, subtype: str = 'jpeg') -> str:
    return f"data:image/{subtype};base64,{base64.b64encode(data).decode('ascii')}"


class CoverArtResolver:
    """Walks the cover-art fallback chain for a job and writes the winner to the work dir."""

    def __init__(self, work_dir: Path, timeout: float = 15):
        self.work_dir = work_dir
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def resolve(self, job: Job) -> Optional[ResolvedArt]:
        """
        Returns the resolved image, or None when there is no usable art.

        Never raises for fetch problems; a missing image is not a job failure.
        """
        source = (job.cover_art or '').strip()
        if not source:
            return None

        if source.startswith('data:image'):
            return await self._write_inline(job, source)

        if not source.startswith(('http://', 'https://')):
            self.logger.warning(f"[{job.job_id}] Ignoring unsupported cover art source.")
            return None

        dest = self.work_dir / f"{job.temp_prefix}cover.jpg"
        candidates = build_candidates(source, job.reference)
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(headers=REQUEST_HEADERS, timeout=timeout) as session:
            for candidate in candidates:
                self.logger.debug(f"[{job.job_id}] Trying cover art tier '{candidate.tier}': {candidate.url}")
                if await self._download_image(session, candidate.url, dest):
                    self.logger.info(f"[{job.job_id}] Using cover art tier '{candidate.tier}'.")
                    return ResolvedArt(dest, candidate.needs_crop_correction)

        self.logger.info(f"[{job.job_id}] No cover art could be fetched; continuing without it.")
        return None

    async def _write_inline(self, job: Job, data_uri: str) -> Optional[ResolvedArt]:
        decoded = decode_data_uri(data_uri)
        if decoded is None:
            self.logger.error(f"[{job.job_id}] Failed to decode custom album art.")
            return None
        extension, data = decoded
        dest = self.work_dir / f"{job.temp_prefix}custom.{extension}"
        try:
            async with aiofiles.open(dest, 'wb') as f_out:
                await f_out.write(data)
        except OSError as e:
            self.logger.error(f"[{job.job_id}] Failed to save custom album art: {e}")
            return None
        return ResolvedArt(dest, False)

    async def _download_image(self, session: aiohttp.ClientSession, url: str, dest: Path) -> bool:
        """Fetches one tier. Any bad status or transport error just reports failure."""
        try:
            async with session.get(url, allow_redirects=True) as response:
                if not 200 <= response.status < 300:
                    self.logger.debug(f"Cover art request returned {response.status}: {url}")
                    return False
                data = await response.read()
            if not data:
                return False
            async with aiofiles.open(dest, 'wb') as f_out:
                await f_out.write(data)
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            self.logger.debug(f"Cover art request failed for {url}: {e}")
            return False
