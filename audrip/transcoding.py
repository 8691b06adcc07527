"""Builds and runs the ffmpeg invocations that produce the finished audio file."""
import asyncio
import re
import logging
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from .constants import WIDESCREEN_ART_SIZE
from .cover_art import ResolvedArt
from .exceptions import DependencyMissing, TranscodeFailed, TranscodeTimeout
from .jobs import AspectPolicy, ProgressEvent, TargetFormat, TrackMetadata, TrimRange
from .process import run_supervised

ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]
ProcessCallback = Callable[[asyncio.subprocess.Process], Awaitable[None]]

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')
_COMPONENT_PREFIX = re.compile(r'^(?:\[[^\]]*@\s*0x[0-9a-fA-F]+\]\s*)+')
_TIME_PROGRESS = re.compile(r'time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)')

# Legacy thumbnails pad 16:9 content into a 4:3 frame; cut back to the 16:9 band.
CROP_TO_16_9 = 'crop=iw:iw*9/16:(iw-ow)/2:(ih-oh)/2'

# Assumed length of an item whose duration is unknown when picking frames.
DEFAULT_FRAME_SOURCE_DURATION = 60


def safe_filename(name: str, fallback: str = 'audio') -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub('_', name).strip().strip('.')
    return cleaned or fallback


def format_seconds(value: float) -> str:
    return f"{value:g}"


def art_filter_chain(aspect: AspectPolicy, needs_crop_correction: bool, square_size: int = 1000) -> str:
    """Returns the -vf chain that frames cover art for the requested aspect."""
    if aspect is AspectPolicy.WIDESCREEN:
        width, height = WIDESCREEN_ART_SIZE
        return f"scale={width}:{height}:force_original_aspect_ratio=increase,crop={width}:{height}"
    cover = f"scale={square_size}:{square_size}:force_original_aspect_ratio=increase,crop={square_size}:{square_size}"
    return f"{CROP_TO_16_9},{cover}" if needs_crop_correction else cover


def codec_args(target_format: TargetFormat, reencode: bool = False) -> List[str]:
    if target_format is TargetFormat.MP3:
        quality = ['-b:a', '320k'] if reencode else ['-q:a', '2']
        return ['-c:a', 'libmp3lame', *quality, '-id3v2_version', '3']
    if target_format is TargetFormat.M4A:
        return ['-c:a', 'aac', '-b:a', '256k', '-movflags', '+faststart', '-f', 'ipod']
    raise ValueError(f"No codec for target format '{target_format.value}'.")


def metadata_args(metadata: TrackMetadata, skip_empty: bool = False) -> List[str]:
    args: List[str] = []
    for key in ('title', 'artist', 'album'):
        value = getattr(metadata, key)
        if skip_empty and not value:
            continue
        args.extend(['-metadata', f"{key}={value}"])
    return args


def build_ffmpeg_command(ffmpeg_path: Path, audio_path: Path, output_path: Path,
                         target_format: TargetFormat, metadata: TrackMetadata,
                         trim: Optional[TrimRange] = None, art: Optional[ResolvedArt] = None,
                         aspect: AspectPolicy = AspectPolicy.SQUARE, square_size: int = 1000,
                         reencode: bool = False) -> List[str]:
    """
    Builds a single ffmpeg invocation.

    With ``reencode`` set, the input's own tags and picture stream are carried
    over and only non-empty metadata fields are overridden; trim and cover-art
    geometry are not applied.
    """
    command = [str(ffmpeg_path), '-hide_banner', '-nostdin']

    if reencode:
        command.extend(['-i', str(audio_path), '-map', '0:a', '-map', '0:v?', '-map_metadata', '0', '-c:v', 'copy'])
        command.extend(codec_args(target_format, reencode=True))
        command.extend(metadata_args(metadata, skip_empty=True))
        command.extend(['-y', str(output_path)])
        return command

    # Input-level seeking is more precise for audio.
    if trim is not None:
        if trim.start is not None:
            command.extend(['-ss', format_seconds(trim.start)])
        if trim.end is not None:
            command.extend(['-to', format_seconds(trim.end)])

    command.extend(['-i', str(audio_path)])
    if art is not None:
        command.extend(['-i', str(art.path), '-map', '0:a', '-map', '1:0'])
        command.extend([
            '-c:v', 'mjpeg',
            '-pix_fmt', 'yuv420p',
            '-vf', art_filter_chain(aspect, art.needs_crop_correction, square_size),
            '-disposition:v', 'attached_pic',
        ])
    else:
        command.extend(['-map', '0:a'])

    command.extend(codec_args(target_format))
    command.extend(metadata_args(metadata))
    command.extend(['-y', str(output_path)])
    return command


def frame_timestamps(duration: Optional[float], count: int) -> List[int]:
    """Whole-second positions that split the item into ``count + 1`` equal parts."""
    total = duration or DEFAULT_FRAME_SOURCE_DURATION
    return [int(total / (count + 1) * (index + 1)) for index in range(count)]


def image_frame_size(aspect: AspectPolicy, size: int = 500) -> Tuple[int, int]:
    if aspect is AspectPolicy.WIDESCREEN:
        return size, round(size * 9 / 16)
    return size, size


def build_frame_command(ffmpeg_path: Path, source: str, timestamp: int, output_path: Path) -> List[str]:
    """Grabs one still from ``source`` (a local path or a direct stream URL)."""
    return [str(ffmpeg_path), '-hide_banner', '-nostdin', '-ss', str(timestamp), '-i', source,
            '-vframes', '1', '-q:v', '2', '-y', str(output_path)]


def build_image_frame_command(ffmpeg_path: Path, input_path: Path, output_path: Path,
                              aspect: AspectPolicy, size: int = 500) -> List[str]:
    width, height = image_frame_size(aspect, size)
    return [str(ffmpeg_path), '-hide_banner', '-nostdin', '-i', str(input_path),
            '-vf', f"scale={width}:{height}:force_original_aspect_ratio=increase,crop={width}:{height}",
            '-y', str(output_path)]


def summarize_ffmpeg_error(lines: Iterable[str]) -> str:
    """Returns ffmpeg's last diagnostic line without the ``[component @ 0x...]`` noise."""
    lines = [line for line in lines if line.strip() and not line.startswith(('size=', 'frame='))]
    if not lines:
        return "FFmpeg failed without a diagnostic message."
    message = _COMPONENT_PREFIX.sub('', lines[-1]).strip()
    return message[:200] + "..." if len(message) > 200 else message or "FFmpeg failed."


def parse_time_progress(line: str, total: Optional[float]) -> Optional[float]:
    """Converts an ffmpeg ``time=`` status line into a percentage of ``total`` seconds."""
    if not total or total <= 0:
        return None
    match = _TIME_PROGRESS.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    elapsed = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    return max(0.0, min(100.0, elapsed / total * 100))


class Transcoder:
    """Supervises ffmpeg runs with a wall-clock timeout."""

    def __init__(self, ffmpeg_path: Optional[Path], timeout: float = 600, square_size: int = 1000):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self.square_size = square_size
        self.logger = logging.getLogger(__name__)

    def require_engine(self) -> Path:
        if not self.ffmpeg_path:
            raise DependencyMissing('ffmpeg')
        return self.ffmpeg_path

    async def run(self, command: List[str], label: str, expected_duration: Optional[float] = None,
                  on_progress: Optional[ProgressCallback] = None,
                  on_start: Optional[ProcessCallback] = None,
                  check_cancelled: Optional[Callable[[], Awaitable[None]]] = None) -> None:
        """
        Runs ffmpeg and translates its outcome.

        Raises:
            DependencyMissing, TranscodeTimeout, TranscodeFailed, or whatever
            ``check_cancelled`` raises for a cancelled job.
        """
        self.logger.info(f"[{label}] FFmpeg processing: {' '.join(command)}")

        async def handle_stderr(line: str):
            self.logger.debug(f"[{label}] {line}")
            percent = parse_time_progress(line, expected_duration)
            if percent is not None and on_progress:
                await on_progress(ProgressEvent(stage='converting', percent=percent))

        try:
            return_code, _, err_tail = await run_supervised(
                command, self.timeout, on_start=on_start, on_stderr=handle_stderr, capture_stdout=False
            )
        except FileNotFoundError:
            self.logger.error(f"FFmpeg executable not found at: {self.ffmpeg_path}")
            raise DependencyMissing('ffmpeg')
        except asyncio.TimeoutError:
            self.logger.error(f"[{label}] FFmpeg timed out after {self.timeout}s.")
            raise TranscodeTimeout(f"Conversion timed out after {int(self.timeout)} seconds.")

        if check_cancelled is not None:
            await check_cancelled()

        if return_code != 0:
            message = summarize_ffmpeg_error(err_tail)
            self.logger.error(f"[{label}] FFmpeg exited with {return_code}: {message}")
            raise TranscodeFailed(message)

    async def transcode(self, audio_path: Path, output_path: Path, target_format: TargetFormat,
                        metadata: TrackMetadata, label: str, trim: Optional[TrimRange] = None,
                        art: Optional[ResolvedArt] = None, aspect: AspectPolicy = AspectPolicy.SQUARE,
                        **run_kwargs) -> Path:
        """Trims, converts, frames the cover art and tags ``audio_path`` into ``output_path``."""
        command = build_ffmpeg_command(
            self.require_engine(), audio_path, output_path, target_format, metadata,
            trim=trim, art=art, aspect=aspect, square_size=self.square_size
        )
        expected = trim.duration if trim is not None else None
        await self.run(command, label, expected_duration=expected, **run_kwargs)
        return output_path

    async def reencode(self, input_path: Path, output_path: Path, target_format: TargetFormat,
                       metadata: TrackMetadata, label: str, **run_kwargs) -> Path:
        """Converts an existing local file, keeping its tags and overriding the given ones."""
        command = build_ffmpeg_command(
            self.require_engine(), input_path, output_path, target_format, metadata, reencode=True
        )
        await self.run(command, label, **run_kwargs)
        return output_path

    async def extract_frame(self, source: str, timestamp: int, output_path: Path, label: str) -> Path:
        """Writes the still at ``timestamp`` seconds of ``source`` to ``output_path`` as JPEG."""
        await self.run(build_frame_command(self.require_engine(), source, timestamp, output_path), label)
        return output_path

    async def frame_image(self, input_path: Path, output_path: Path, aspect: AspectPolicy,
                          size: int, label: str) -> Path:
        """Scales and center-crops an image to a square or 16:9 frame."""
        await self.run(build_image_frame_command(self.require_engine(), input_path, output_path, aspect, size), label)
        return output_path
