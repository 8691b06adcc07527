"""Wrapper utilities for reading container metadata with ffprobe."""
import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import DependencyMissing
from .process import run_supervised

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 30


class ProbeError(Exception):
    """ffprobe failed or returned something unusable."""
    pass


@dataclass
class ProbeResult:
    title: Optional[str]
    artist: Optional[str]
    album: Optional[str]
    duration: float
    has_cover_art: bool


def _tag(tags: Dict[str, Any], name: str) -> Optional[str]:
    """Looks a tag up case-insensitively (``title``, ``TITLE``, ``Title``...)."""
    if name in tags:
        return str(tags[name]) or None
    lowered = {str(k).lower(): v for k, v in tags.items()}
    value = lowered.get(name.lower())
    return str(value) if value else None


def parse_probe_output(payload: Dict[str, Any]) -> ProbeResult:
    """Reads the ``format`` and ``streams`` sections of ffprobe's JSON output."""
    fmt = payload.get('format') or {}
    tags = fmt.get('tags') or {}
    try:
        duration = float(fmt.get('duration') or 0)
    except (TypeError, ValueError):
        duration = 0.0
    has_cover_art = any(
        stream.get('codec_type') == 'video' or (stream.get('disposition') or {}).get('attached_pic') == 1
        for stream in payload.get('streams') or []
    )
    return ProbeResult(
        title=_tag(tags, 'title'),
        artist=_tag(tags, 'artist'),
        album=_tag(tags, 'album'),
        duration=duration,
        has_cover_art=has_cover_art,
    )


async def probe_file(ffprobe_path: Optional[Path], file_path: Path, timeout: float = PROBE_TIMEOUT) -> ProbeResult:
    """
    Runs ffprobe against ``file_path`` and parses its JSON report.

    Raises:
        DependencyMissing: If ffprobe cannot be found.
        ProbeError: On a non-zero exit, a timeout, or unparsable output.
    """
    if not ffprobe_path:
        raise DependencyMissing('ffprobe')
    command = [
        str(ffprobe_path),
        '-v', 'quiet',
        '-print_format', 'json',
        '-show_format',
        '-show_streams',
        str(file_path),
    ]
    lines = []

    async def collect(line: str):
        lines.append(line)

    try:
        return_code, _, _ = await run_supervised(command, timeout, on_stdout=collect)
    except FileNotFoundError:
        raise DependencyMissing('ffprobe')
    except asyncio.TimeoutError:
        raise ProbeError(f"ffprobe timed out while probing: {file_path.name}")

    if return_code != 0:
        raise ProbeError(f"ffprobe exited with {return_code} for {file_path.name}")
    try:
        payload = json.loads('\n'.join(lines) or '{}')
    except json.JSONDecodeError as e:
        raise ProbeError(f"ffprobe returned invalid JSON for {file_path.name}") from e
    if not isinstance(payload, dict):
        raise ProbeError(f"ffprobe returned unexpected output for {file_path.name}")
    return parse_probe_output(payload)
