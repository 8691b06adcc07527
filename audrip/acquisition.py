"""Drives yt-dlp to fetch the raw audio stream for a job."""
import asyncio
import re
import logging
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional

from .constants import IMAGE_SUFFIXES, PARTIAL_SUFFIXES
from .exceptions import AcquisitionFailed, AcquisitionTimeout, DependencyMissing, MissingOutput
from .jobs import Job, ProgressEvent
from .process import run_supervised

ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]
ProcessCallback = Callable[[asyncio.subprocess.Process], Awaitable[None]]

_PERCENT = re.compile(r'(\d+(?:\.\d+)?)%')
_RATE = re.compile(r'\bat\s+(\S+/s)')
_ETA = re.compile(r'\bETA\s+(\S+)')
_EXTRACTOR_PREFIX = re.compile(r'^\[[\w:.-]+\]\s*(?:[\w-]+:\s+)?')
MAX_ERROR_LENGTH = 200


def parse_progress_line(line: str) -> Optional[ProgressEvent]:
    """
    Extracts a download progress event from one line of yt-dlp output.

    Returns None for anything that is not a ``[download]`` percentage line.
    """
    if '[download]' not in line:
        return None
    match = _PERCENT.search(line)
    if not match:
        return None
    try:
        percent = float(match.group(1))
    except ValueError:
        return None
    rate = _RATE.search(line)
    eta = _ETA.search(line)
    return ProgressEvent(
        stage='downloading',
        percent=max(0.0, min(100.0, percent)),
        rate=rate.group(1) if rate and 'Unknown' not in rate.group(1) else None,
        eta=eta.group(1) if eta and eta.group(1) != 'Unknown' else None,
    )


def summarize_engine_error(lines: Iterable[str], redact: Optional[Path] = None) -> str:
    """
    Turns yt-dlp's diagnostic output into a short, user-facing message.

    Prefers the last ``ERROR:`` line, drops the ``ERROR:`` and ``[extractor] id:``
    prefixes, removes work-directory paths and truncates.
    """
    lines = [line for line in lines if line.strip()]
    if not lines:
        return "yt-dlp returned an error with no output."
    error_lines = [line for line in lines if line.lower().startswith('error:')]
    message = (error_lines[-1][6:] if error_lines else lines[-1]).strip()
    message = _EXTRACTOR_PREFIX.sub('', message)
    if redact is not None:
        message = message.replace(f"{redact}/", '').replace(f"{redact}\\", '').replace(str(redact), '')
    message = message.strip() or "yt-dlp failed."
    return message[:MAX_ERROR_LENGTH] + "..." if len(message) > MAX_ERROR_LENGTH else message


def locate_raw_audio(work_dir: Path, prefix: str) -> Optional[Path]:
    """Finds the fetched audio file: prefixed, not an image, not a partial-download marker."""
    if not work_dir.is_dir():
        return None
    for item in sorted(work_dir.iterdir()):
        name = item.name
        if not name.startswith(prefix) or not item.is_file():
            continue
        suffix = item.suffix.lower()
        if suffix in IMAGE_SUFFIXES or suffix in PARTIAL_SUFFIXES:
            continue
        # Only the engine's own output (prefix + extension), not our side files.
        if '.' in name[len(prefix):]:
            continue
        return item
    return None


class Acquirer:
    """Builds and supervises yt-dlp invocations."""

    def __init__(self, yt_dlp_path: Optional[Path], ffmpeg_path: Optional[Path], work_dir: Path, timeout: float = 300):
        self.yt_dlp_path = yt_dlp_path
        self.ffmpeg_path = ffmpeg_path
        self.work_dir = work_dir
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def build_command(self, job: Job) -> List[str]:
        """Builds the full yt-dlp command list for a job."""
        if not self.yt_dlp_path:
            raise DependencyMissing('yt-dlp')
        output_template = self.work_dir / f"{job.temp_prefix}%(ext)s"
        command = [
            str(self.yt_dlp_path),
            '-f', 'bestaudio',
            '--no-playlist',
            '--progress',
            '--newline',
            '--force-overwrites',
            '-o', str(output_template),
        ]
        if self.ffmpeg_path:
            command.extend(['--ffmpeg-location', str(self.ffmpeg_path)])
        command.append(job.reference)
        return command

    async def acquire(self, job: Job, on_progress: Optional[ProgressCallback] = None,
                      on_start: Optional[ProcessCallback] = None,
                      check_cancelled: Optional[Callable[[], Awaitable[None]]] = None) -> Path:
        """
        Downloads the best audio stream for ``job`` into the work directory.

        Args:
            job: The job to fetch.
            on_progress: Receives normalized download progress events.
            on_start: Receives the spawned process so it can be registered for cancellation.
            check_cancelled: Awaited after the engine exits; raises when the job was
                cancelled, so a cancelled job never reports the engine's outcome.

        Returns:
            The path of the raw audio file.

        Raises:
            DependencyMissing, AcquisitionTimeout, AcquisitionFailed, MissingOutput,
            JobCancelledError (raised by the caller-supplied check).
        """
        command = self.build_command(job)
        self.logger.info(f"[{job.job_id}] Starting yt-dlp: {' '.join(command)}")

        async def handle_stdout(line: str):
            self.logger.debug(f"[{job.job_id}] {line}")
            event = parse_progress_line(line)
            if event is not None and on_progress:
                await on_progress(event)

        async def handle_stderr(line: str):
            self.logger.debug(f"[{job.job_id}] stderr: {line}")

        try:
            return_code, out_tail, err_tail = await run_supervised(
                command, self.timeout, on_start=on_start, on_stdout=handle_stdout, on_stderr=handle_stderr
            )
        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise DependencyMissing('yt-dlp')
        except asyncio.TimeoutError:
            self.logger.error(f"[{job.job_id}] yt-dlp timed out after {self.timeout}s.")
            raise AcquisitionTimeout(f"Download timed out after {int(self.timeout)} seconds.")

        if check_cancelled is not None:
            await check_cancelled()

        if return_code != 0:
            message = summarize_engine_error(list(err_tail) + [l for l in out_tail if l.startswith('ERROR:')], self.work_dir)
            self.logger.error(f"[{job.job_id}] yt-dlp exited with {return_code}: {message}")
            raise AcquisitionFailed(message)

        raw_path = await asyncio.to_thread(locate_raw_audio, self.work_dir, job.temp_prefix)
        if raw_path is None:
            self.logger.error(f"[{job.job_id}] yt-dlp succeeded but no file matching '{job.temp_prefix}*' was found.")
            raise MissingOutput()
        self.logger.info(f"[{job.job_id}] Downloaded raw audio: {raw_path.name}")
        return raw_path
