"""
Defines the main AppController class, which orchestrates the application's logic.
"""
import asyncio
import logging
import uuid
import aiofiles
from pydantic import ValidationError
from typing import Any, Callable, Coroutine, Dict, List, Optional, Tuple
from pathlib import Path

from .config import ConfigManager, Settings
from .constants import COVER_CACHE_DIR, HISTORY_FILE, LIBRARY_CACHE_FILE, METADATA_HISTORY_FILE
from .cover_art import decode_data_uri, encode_data_uri
from .dependencies import DependencyManager
from .downloads import DownloadManager, JobHandle
from .exceptions import DependencyMissing, TranscodeFailed, TranscodeTimeout
from .history import HistoryEntry, HistoryStore, MetadataHistory
from .jobs import AspectPolicy, Job, JobKind, JobState, ProgressEvent, TargetFormat, TrackMetadata, make_temp_prefix
from .library import CoverArtCache, LibraryCacheStore, LibraryScanner, Track
from .transcoding import Transcoder, frame_timestamps
from .url_extractor import URLInfoExtractor

Listener = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]

# Share of the overall bar given to acquisition; transcoding gets the rest.
ACQUISITION_SHARE = 70.0


def overall_percent(event: ProgressEvent) -> float:
    """Maps a stage-local progress event onto a single 0-100 bar."""
    if event.stage == 'complete':
        return 100.0
    if event.stage == 'converting':
        return ACQUISITION_SHARE + event.percent * (100.0 - ACQUISITION_SHARE) / 100.0
    return event.percent * ACQUISITION_SHARE / 100.0


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, config_manager: ConfigManager, config: Settings,
                 dep_manager: Optional[DependencyManager] = None,
                 history_store: Optional[HistoryStore] = None,
                 library_store: Optional[LibraryCacheStore] = None,
                 cover_cache_dir: Path = COVER_CACHE_DIR):
        """
        Initializes the AppController.

        Args:
            config_manager: The manager for handling configuration persistence.
            config: The loaded application settings.
            dep_manager: Finds the engines; a default one is created if omitted.
            history_store: Download history persistence.
            library_store: The library metadata cache.
            cover_cache_dir: Where extracted cover art is cached.
        """
        self.config_manager = config_manager
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.listener: Optional[Listener] = None  # Set by the front end

        # Application State
        self.job_store: Dict[str, Job] = {}
        self.job_progress: Dict[str, float] = {}

        # Backend Managers
        self.dep_manager = dep_manager or DependencyManager(self._on_manager_event)
        self.download_manager = DownloadManager(self._on_manager_event, self.config)
        self.history_store = history_store or HistoryStore(HISTORY_FILE, METADATA_HISTORY_FILE)
        self.library_store = library_store or LibraryCacheStore(LIBRARY_CACHE_FILE)
        self.scanner = LibraryScanner(self.library_store, None, self.config.max_concurrent_probes)
        self.cover_cache = CoverArtCache(cover_cache_dir, None)
        self.url_extractor = URLInfoExtractor(None)

    def set_listener(self, listener: Optional[Listener]):
        """Sets the front end's async callback for job and dependency events."""
        self.listener = listener

    async def run_startup_checks(self) -> Dict[str, bool]:
        """
        Finds the engines and sweeps leftovers of earlier runs.

        Returns:
            What the pipeline can do with the engines that were found.
        """
        await self.dep_manager.initialize()
        self._apply_engine_paths()
        await self.download_manager.initialize()

        capabilities = self.dep_manager.capabilities()
        if not capabilities['acquire']:
            self.logger.warning("yt-dlp was not found. Downloads are unavailable until it is installed.")
        if not capabilities['transcode']:
            self.logger.warning("ffmpeg was not found. Only the 'original' format can be downloaded.")
        if not capabilities['probe']:
            self.logger.warning("ffprobe was not found. Library scans will not read tags or durations.")
        return capabilities

    def _apply_engine_paths(self):
        """Hands the discovered engine paths to every component that runs one."""
        self.download_manager.set_config(self.config.max_concurrent_jobs, self.dep_manager.yt_dlp_path, self.dep_manager.ffmpeg_path)
        self.scanner.ffprobe_path = self.dep_manager.ffprobe_path
        self.scanner.max_concurrent_probes = self.config.max_concurrent_probes
        self.cover_cache.ffmpeg_path = self.dep_manager.ffmpeg_path
        self.url_extractor.yt_dlp_path = self.dep_manager.yt_dlp_path

    async def _on_manager_event(self, event: Tuple[str, Any]):
        """
        Handles events from backend managers, updates state, and forwards them
        to the front end. Called directly by the managers.
        """
        msg_type, value = event
        handler_map = {
            'state': self._handle_state,
            'progress': self._handle_progress,
            'done': self._handle_done,
            'dependency_progress': self._handle_dependency_progress,
        }
        handler = handler_map.get(msg_type)
        if handler:
            await handler(value)
        else:
            self.logger.warning(f"Unhandled manager event type: {msg_type}")
            return
        if self.listener:
            await self.listener(event)

    async def _handle_state(self, value: Tuple[str, JobState]):
        job_id, state = value
        if state is JobState.QUEUED:
            self.job_progress[job_id] = 0.0

    async def _handle_progress(self, value: Tuple[str, ProgressEvent]):
        job_id, progress = value
        if job_id in self.job_store:
            self.job_progress[job_id] = overall_percent(progress)

    async def _handle_done(self, value: Tuple[str, JobState, Optional[str]]):
        job_id, state, error = value
        self.job_progress.pop(job_id, None)
        job = self.job_store.pop(job_id, None)
        if job is None:
            return
        if state is JobState.COMPLETE:
            entry = HistoryEntry(
                title=job.metadata.title or (job.output_path.stem if job.output_path else job_id),
                artist=job.metadata.artist,
                album=job.metadata.album,
                format=job.target_format.value,
                output_path=str(job.output_path or ''),
                reference=job.reference,
            )
            await asyncio.to_thread(self.history_store.add, entry)
        else:
            self.logger.info(f"Job {job_id} finished as {state.value}: {error}")

    async def _handle_dependency_progress(self, value: Dict[str, Any]):
        self.logger.debug(f"Dependency progress: {value.get('text')}")

    async def download_and_tag(self, job: Job) -> JobHandle:
        """
        Queues an acquire+transcode job.

        Raises:
            DependencyMissing: If yt-dlp is unavailable, or ffmpeg is unavailable
                and the target format needs it.
            ValueError: If a job with the same id is still active.
        """
        if not self.dep_manager.yt_dlp_path:
            raise DependencyMissing('yt-dlp')
        if job.target_format.needs_transcoder and not self.dep_manager.ffmpeg_path:
            raise DependencyMissing('ffmpeg', "ffmpeg is required for mp3/m4a output. Use the 'original' format or install ffmpeg.")
        return await self._submit(job)

    async def convert_file(self, path: Path, target_format: TargetFormat,
                           metadata: Optional[TrackMetadata] = None,
                           output_dir: Optional[Path] = None) -> JobHandle:
        """Queues a re-encode of a local file; the output lands next to it unless ``output_dir`` is set."""
        self.dep_manager.require('ffmpeg')
        job = Job(reference=str(path), kind=JobKind.REENCODE, target_format=target_format,
                  metadata=metadata or TrackMetadata(), output_dir=output_dir)
        return await self._submit(job)

    async def _submit(self, job: Job) -> JobHandle:
        self.download_manager.set_config(self.config.max_concurrent_jobs, self.dep_manager.yt_dlp_path, self.dep_manager.ffmpeg_path)
        handle = await self.download_manager.submit(job)
        self.job_store[job.job_id] = job
        return handle

    async def cancel(self, job_id: str) -> bool:
        """Cancels a queued or running job. Unknown ids are remembered and return False."""
        return await self.download_manager.cancel(job_id)

    async def scan_library(self, directory: Optional[Path] = None) -> List[Track]:
        """Scans ``directory`` (the download directory by default) for audio files."""
        return await self.scanner.scan(Path(directory) if directory else self.config.download_dir)

    async def get_cover_art(self, path: Path) -> Optional[bytes]:
        return await self.cover_cache.get(Path(path))

    async def get_media_info(self, url: str) -> Dict[str, Any]:
        return await self.url_extractor.get_media_info(url)

    async def get_playlist_entries(self, url: str) -> List[Dict[str, Any]]:
        return await self.url_extractor.get_playlist_entries(url)

    async def extract_frames(self, url: str, count: int = 6) -> List[str]:
        """
        Picks cover-art candidates from evenly spaced points of a video.

        Frames come back as ``data:image/jpeg`` URIs, in time order; frames that
        cannot be grabbed are skipped. When there is no video stream, no ffmpeg,
        or no frame at all, the item's thumbnail URL stands in.

        Raises:
            ValueError: If ``count`` is not positive.
            DependencyMissing: If yt-dlp is unavailable.
            URLExtractionError: If the item cannot be looked up.
        """
        if count < 1:
            raise ValueError("Frame count must be at least 1.")
        info = await self.url_extractor.get_media_info(url)
        fallback = [info['thumbnail']] if info.get('thumbnail') else []

        stream_url = await self.url_extractor.get_stream_url(url)
        if not stream_url or not self.dep_manager.ffmpeg_path:
            return fallback * count

        temp_files = self.download_manager.temp_files
        await asyncio.to_thread(temp_files.ensure_work_dir)
        prefix = make_temp_prefix(f"frames-{uuid.uuid4().hex}")
        transcoder = Transcoder(self.dep_manager.ffmpeg_path, self.config.transcode_timeout)
        frames: List[str] = []
        try:
            for index, timestamp in enumerate(frame_timestamps(info.get('duration'), count)):
                frame_path = temp_files.work_dir / f"{prefix}{index}.jpg"
                try:
                    await transcoder.extract_frame(stream_url, timestamp, frame_path, f"frame {index}")
                    async with aiofiles.open(frame_path, 'rb') as f_in:
                        data = await f_in.read()
                except (TranscodeFailed, TranscodeTimeout, OSError) as e:
                    self.logger.warning(f"Skipping frame at {timestamp}s of '{url}': {e}")
                    continue
                if data:
                    frames.append(encode_data_uri(data))
        finally:
            await temp_files.cleanup(prefix)
        return frames or fallback

    async def frame_cover_art(self, image: str, aspect: AspectPolicy = AspectPolicy.SQUARE, size: int = 500) -> str:
        """
        Scales and center-crops a ``data:image`` URI to a square or 16:9 frame.

        Returns:
            The framed picture as a ``data:image/jpeg`` URI.

        Raises:
            ValueError: If ``image`` is not a base64 image URI or ``size`` is not positive.
            DependencyMissing: If ffmpeg is unavailable.
            TranscodeFailed: If ffmpeg cannot read the picture.
        """
        decoded = decode_data_uri(image)
        if decoded is None:
            raise ValueError("Cover art must be a base64 data:image URI.")
        if size < 1:
            raise ValueError("Cover art size must be positive.")
        extension, data = decoded
        transcoder = Transcoder(self.dep_manager.require('ffmpeg'), self.config.transcode_timeout)

        temp_files = self.download_manager.temp_files
        await asyncio.to_thread(temp_files.ensure_work_dir)
        prefix = make_temp_prefix(f"art-{uuid.uuid4().hex}")
        input_path = temp_files.work_dir / f"{prefix}input.{extension}"
        output_path = temp_files.work_dir / f"{prefix}output.jpg"
        try:
            async with aiofiles.open(input_path, 'wb') as f_out:
                await f_out.write(data)
            await transcoder.frame_image(input_path, output_path, AspectPolicy(aspect), size, "cover art")
            async with aiofiles.open(output_path, 'rb') as f_in:
                framed = await f_in.read()
        finally:
            await temp_files.cleanup(prefix)
        if not framed:
            raise TranscodeFailed("FFmpeg produced an empty picture.")
        return encode_data_uri(framed)

    async def get_history(self) -> List[HistoryEntry]:
        return await asyncio.to_thread(self.history_store.load)

    async def clear_history(self):
        await asyncio.to_thread(self.history_store.clear)

    async def get_metadata_history(self) -> MetadataHistory:
        return await asyncio.to_thread(self.history_store.load_metadata)

    async def get_dependency_versions(self) -> Dict[str, str]:
        """Returns the first line of each engine's version output."""
        return await self.dep_manager.get_versions()

    async def initiate_dependency_download(self) -> Dict[str, Any]:
        """Installs yt-dlp into the managed bin directory and re-applies engine paths."""
        try:
            result = await self.dep_manager.install_yt_dlp()
        except Exception as e:
            self.logger.exception("Error during yt-dlp download")
            result = {'type': 'yt-dlp', 'success': False, 'error': str(e)}
        self._apply_engine_paths()
        return result

    def save_settings(self, new_settings_data: Dict[str, Any]) -> Tuple[bool, str]:
        """Validates and saves new settings."""
        try:
            new_settings = Settings.model_validate(self.config.model_copy(update=new_settings_data).model_dump())
            self.config_manager.save(new_settings)
            self.config.__dict__.update(new_settings.__dict__)
            self._apply_engine_paths()
            return True, "Settings have been saved."
        except ValidationError as e:
            error_details = e.errors()[0]
            field, msg = error_details['loc'][0], error_details['msg']
            return False, f"Error in field '{field}': {msg}"

    async def shutdown(self):
        """Cancels all work still in flight."""
        self.logger.info("Application closing.")
        await self.download_manager.stop_all()
