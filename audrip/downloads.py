"""Manages the job queue, worker tasks, cancellation registry and engine processes."""
import asyncio
import shutil
import logging
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, Optional, Set, Tuple

from .acquisition import Acquirer
from .config import Settings
from .cover_art import CoverArtResolver, ResolvedArt
from .exceptions import AudRipError, DependencyMissing, JobCancelledError, TranscodeFailed
from .jobs import Job, JobKind, JobState, ProgressEvent, TargetFormat
from .process import kill_process_tree
from .temp_files import TempFileManager
from .transcoding import Transcoder, safe_filename

EventCallback = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]


def download_output_path(job: Job, download_dir: Path, suffix: str) -> Path:
    directory = job.output_dir or download_dir
    return directory / f"{safe_filename(job.metadata.title, fallback=job.job_id)}{suffix}"


def reencode_output_path(input_path: Path, target_format: TargetFormat, output_dir: Optional[Path] = None) -> Path:
    """Places the converted file next to the input, never on top of it."""
    directory = output_dir or input_path.parent
    candidate = directory / f"{input_path.stem}.{target_format.value}"
    if candidate.resolve() == input_path.resolve():
        candidate = directory / f"{input_path.stem} (converted).{target_format.value}"
    return candidate


class JobHandle:
    """
    The caller's view of a submitted job.

    ``events`` receives ProgressEvents and a final None once the job is terminal.
    ``await handle.result()`` returns the output path or raises the classified error.
    """

    def __init__(self, job: Job):
        self.job = job
        self.events: asyncio.Queue = asyncio.Queue()
        self.claimed = False  # Set once a worker (or an early cancel) owns the job.
        self.cancel_event = asyncio.Event()
        self.pending_output: Optional[Path] = None
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._future.add_done_callback(self._mark_retrieved)

    @staticmethod
    def _mark_retrieved(future: asyncio.Future):
        # Jobs nobody awaits should not log "exception was never retrieved".
        if not future.cancelled():
            future.exception()

    def done(self) -> bool:
        return self._future.done()

    async def result(self) -> Path:
        return await asyncio.shield(self._future)


class DownloadManager:
    """
    The job coordinator.

    A fixed number of worker tasks drain a FIFO queue. Each worker runs one job
    at a time: acquisition (with cover art resolved concurrently), then
    transcoding, then cleanup of everything under the job's temp prefix.
    """
    def __init__(self, event_callback: Optional[EventCallback], settings: Settings,
                 temp_files: Optional[TempFileManager] = None):
        """
        Initializes the DownloadManager.

        Args:
            event_callback: The async function to call with manager events.
            settings: Timeouts, directories and pool size.
            temp_files: Cleans per-job artifacts; defaults to one over ``settings.work_dir``.
        """
        self.event_callback = event_callback
        self.settings = settings
        self.temp_files = temp_files or TempFileManager(settings.work_dir)
        self.logger = logging.getLogger(__name__)
        self.job_queue: asyncio.Queue[JobHandle] = asyncio.Queue()
        self.worker_tasks: Set[asyncio.Task] = set()
        self.background_tasks: Set[asyncio.Task] = set()
        self.registry_lock = asyncio.Lock()
        self.active_jobs: Dict[str, JobHandle] = {}
        self.active_processes: Dict[str, asyncio.subprocess.Process] = {}
        self.cancelled_ids: Set[str] = set()
        self.stats_lock = asyncio.Lock()
        self.completed_jobs: int = 0
        self.total_jobs: int = 0
        self.max_concurrent_jobs: int = settings.max_concurrent_jobs
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None

    async def initialize(self):
        """Prepares the work directory and removes leftovers of crashed runs."""
        await asyncio.to_thread(self.temp_files.ensure_work_dir)
        await self.temp_files.sweep_orphans(self.settings.orphan_max_age)

    def set_config(self, max_concurrent: int, yt_dlp_path: Optional[Path], ffmpeg_path: Optional[Path]):
        """Sets runtime configuration for the manager."""
        self.max_concurrent_jobs = max_concurrent
        self.yt_dlp_path = yt_dlp_path
        self.ffmpeg_path = ffmpeg_path

    async def get_stats(self) -> Tuple[int, int]:
        """Gets the current (completed, total) job counts."""
        async with self.stats_lock:
            return self.completed_jobs, self.total_jobs

    async def submit(self, job: Job) -> JobHandle:
        """
        Queues a job and returns its handle.

        Raises:
            ValueError: If a job with the same id is still active, or the job
                asks for something no pipeline can produce.
        """
        if job.kind is JobKind.REENCODE and job.target_format is TargetFormat.ORIGINAL:
            raise ValueError("A re-encode job needs an mp3 or m4a target format.")
        async with self.registry_lock:
            if job.job_id in self.active_jobs:
                raise ValueError(f"Job {job.job_id} is already active.")
            handle = JobHandle(job)
            self.active_jobs[job.job_id] = handle
        async with self.stats_lock:
            self.total_jobs += 1

        self.logger.info(f"Queued job {job.job_id} ({job.kind.value}, {job.target_format.value}): {job.reference}")
        await self._emit(('state', (job.job_id, job.state)))
        self._start_workers()
        self.job_queue.put_nowait(handle)
        return handle

    async def cancel(self, job_id: str) -> bool:
        """
        Cancels a job.

        The id is always recorded, even when no such job is active, so a job
        finishing (or starting) concurrently still sees the request.

        Returns:
            True if a queued or running job was found.
        """
        async with self.registry_lock:
            self.cancelled_ids.add(job_id)
            handle = self.active_jobs.get(job_id)
            process = self.active_processes.get(job_id)
            claim_queued = handle is not None and not handle.claimed
            if claim_queued:
                handle.claimed = True

        if handle is None:
            self.logger.info(f"Cancel request for {job_id}: no active job.")
            return False

        self.logger.info(f"Cancel request for job {job_id}.")
        handle.cancel_event.set()
        if claim_queued:
            # Never started: nothing to kill, finish it right away.
            await self._finalize(handle, None, JobCancelledError())
            return True

        if process is not None:
            self.logger.info(f"Killing process for {job_id} (PID: {process.pid})...")
            kill_process_tree(process)
        self._spawn_background(self._cleanup_after_cancel(handle.job.temp_prefix, process))
        return True

    async def stop_all(self):
        """Cancels every queued and running job and stops the workers."""
        self.logger.info("STOP signal received. Cancelling all jobs...")
        async with self.registry_lock:
            job_ids = list(self.active_jobs)
        for job_id in job_ids:
            await self.cancel(job_id)
        try:
            await asyncio.wait_for(self.job_queue.join(), timeout=10)
        except asyncio.TimeoutError:
            self.logger.warning("Jobs did not finish after cancellation; stopping workers anyway.")

        tasks = self.worker_tasks.union(self.background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _cleanup_after_cancel(self, prefix: str, process: Optional[asyncio.subprocess.Process]):
        """Waits for the killed engine to exit, then a short grace delay, then deletes the job's files."""
        grace = self.settings.cancel_grace_delay
        if process is not None:
            try:
                await asyncio.wait_for(process.wait(), timeout=max(grace, 1.0))
            except asyncio.TimeoutError:
                self.logger.warning(f"Process {process.pid} still running after kill.")
        await asyncio.sleep(grace)
        try:
            await self.temp_files.cleanup(prefix)
        except OSError as e:
            self.logger.warning(f"Cleanup after cancel failed for '{prefix}': {e}")

    def _spawn_background(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self._task_done_callback(self.background_tasks))
        return task

    def _task_done_callback(self, task_set: set) -> Callable:
        """Creates a callback to remove a task from a set and log exceptions."""
        def callback(task: asyncio.Task):
            task_set.discard(task)
            try:
                task.result()
            except asyncio.CancelledError:
                pass  # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback

    def _start_workers(self):
        """Starts worker tasks up to the configured maximum."""
        needed = self.max_concurrent_jobs - len(self.worker_tasks)
        for _ in range(needed):
            task = asyncio.create_task(self._worker_task())
            self.worker_tasks.add(task)
            task.add_done_callback(self._task_done_callback(self.worker_tasks))

    async def _worker_task(self):
        """Main loop for a worker task."""
        try:
            while True:
                handle = await self.job_queue.get()
                try:
                    if handle.claimed:
                        continue  # Cancelled while queued; already finalized.
                    handle.claimed = True
                    await self._run_job(handle)
                finally:
                    self.job_queue.task_done()
        except asyncio.CancelledError:
            self.logger.info("Download worker task cancelled.")

    async def _emit(self, event: Tuple[str, Any]):
        if not self.event_callback:
            return
        try:
            await self.event_callback(event)
        except Exception:
            self.logger.exception(f"Event handler failed for '{event[0]}' event.")

    async def _set_state(self, handle: JobHandle, state: JobState):
        handle.job.advance(state)
        await self._emit(('state', (handle.job.job_id, state)))

    async def _report(self, handle: JobHandle, event: ProgressEvent):
        handle.events.put_nowait(event)
        await self._emit(('progress', (handle.job.job_id, event)))

    async def _raise_if_cancelled(self, job: Job):
        async with self.registry_lock:
            if job.job_id in self.cancelled_ids:
                raise JobCancelledError()

    def _process_registrar(self, job: Job):
        async def register(process: asyncio.subprocess.Process):
            async with self.registry_lock:
                self.active_processes[job.job_id] = process
                cancelled = job.job_id in self.cancelled_ids
            if cancelled:
                # The cancel arrived between our last check and the spawn.
                kill_process_tree(process)
        return register

    async def _release_process(self, job: Job):
        async with self.registry_lock:
            self.active_processes.pop(job.job_id, None)

    async def _run_job(self, handle: JobHandle):
        """Runs one job to a terminal state. Never raises, except to propagate task cancellation."""
        job = handle.job
        try:
            await self._raise_if_cancelled(job)
            if job.kind is JobKind.REENCODE:
                output = await self._execute_reencode(handle)
            else:
                output = await self._execute_download(handle)
        except asyncio.CancelledError:
            await self._finalize(handle, None, JobCancelledError())
            raise
        except AudRipError as e:
            await self._finalize(handle, None, e)
        except Exception:
            self.logger.exception(f"Unexpected error during job {job.job_id}")
            await self._finalize(handle, None, AudRipError("An unexpected error occurred."))
        else:
            await self._finalize(handle, output, None)

    async def _await_cover_art(self, handle: JobHandle, art_task: asyncio.Task) -> Optional[ResolvedArt]:
        """Waits for the concurrent cover-art lookup, giving up early if the job is cancelled."""
        cancel_waiter = asyncio.create_task(handle.cancel_event.wait())
        try:
            await asyncio.wait({art_task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
        if not art_task.done():
            raise JobCancelledError()
        try:
            return art_task.result()
        except asyncio.CancelledError:
            return None
        except Exception:
            self.logger.exception(f"[{handle.job.job_id}] Cover art lookup failed; continuing without art.")
            return None

    async def _execute_download(self, handle: JobHandle) -> Path:
        job = handle.job
        settings = self.settings
        if job.target_format.needs_transcoder and not self.ffmpeg_path:
            raise DependencyMissing('ffmpeg')

        await self._set_state(handle, JobState.DOWNLOADING)
        await asyncio.to_thread(self.temp_files.ensure_work_dir)

        art_task: Optional[asyncio.Task] = None
        if job.cover_art and job.target_format.needs_transcoder:
            resolver = CoverArtResolver(settings.work_dir, timeout=settings.cover_art_timeout)
            art_task = asyncio.create_task(resolver.resolve(job))

        try:
            acquirer = Acquirer(self.yt_dlp_path, self.ffmpeg_path, settings.work_dir, settings.acquisition_timeout)
            raw_path = await acquirer.acquire(
                job,
                on_progress=lambda event: self._report(handle, event),
                on_start=self._process_registrar(job),
                check_cancelled=lambda: self._raise_if_cancelled(job),
            )
            await self._release_process(job)

            await self._set_state(handle, JobState.CONVERTING)
            await self._report(handle, ProgressEvent(stage='converting', percent=0))
            art = await self._await_cover_art(handle, art_task) if art_task else None
            await self._raise_if_cancelled(job)

            if job.target_format is TargetFormat.ORIGINAL:
                output_path = download_output_path(job, settings.download_dir, raw_path.suffix)
                await asyncio.to_thread(output_path.parent.mkdir, parents=True, exist_ok=True)
                if not await asyncio.to_thread(output_path.exists):
                    handle.pending_output = output_path
                await asyncio.to_thread(shutil.move, str(raw_path), str(output_path))
            else:
                output_path = download_output_path(job, settings.download_dir, f".{job.target_format.value}")
                await asyncio.to_thread(output_path.parent.mkdir, parents=True, exist_ok=True)
                if not await asyncio.to_thread(output_path.exists):
                    handle.pending_output = output_path
                transcoder = Transcoder(self.ffmpeg_path, settings.transcode_timeout, settings.square_art_size)
                await transcoder.transcode(
                    raw_path, output_path, job.target_format, job.metadata, job.job_id,
                    trim=job.trim, art=art, aspect=job.aspect,
                    on_progress=lambda event: self._report(handle, event),
                    on_start=self._process_registrar(job),
                    check_cancelled=lambda: self._raise_if_cancelled(job),
                )
        finally:
            await self._release_process(job)
            if art_task is not None and not art_task.done():
                art_task.cancel()
                await asyncio.gather(art_task, return_exceptions=True)

        await self._report(handle, ProgressEvent(stage='complete', percent=100))
        return output_path

    async def _execute_reencode(self, handle: JobHandle) -> Path:
        job = handle.job
        input_path = Path(job.reference)
        if not self.ffmpeg_path:
            raise DependencyMissing('ffmpeg')
        if not await asyncio.to_thread(input_path.is_file):
            raise TranscodeFailed(f"Input file not found: {input_path.name}")

        await self._set_state(handle, JobState.CONVERTING)
        await self._report(handle, ProgressEvent(stage='converting', percent=0))

        output_path = reencode_output_path(input_path, job.target_format, job.output_dir)
        await asyncio.to_thread(output_path.parent.mkdir, parents=True, exist_ok=True)
        if not await asyncio.to_thread(output_path.exists):
            handle.pending_output = output_path
        transcoder = Transcoder(self.ffmpeg_path, self.settings.transcode_timeout, self.settings.square_art_size)
        try:
            await transcoder.reencode(
                input_path, output_path, job.target_format, job.metadata, job.job_id,
                on_start=self._process_registrar(job),
                check_cancelled=lambda: self._raise_if_cancelled(job),
            )
        finally:
            await self._release_process(job)

        await self._report(handle, ProgressEvent(stage='complete', percent=100))
        return output_path

    async def _finalize(self, handle: JobHandle, output: Optional[Path], error: Optional[AudRipError]):
        """
        Moves the job to its terminal state, cleans its files and resolves the handle.

        A cancellation request always wins over whatever the pipeline produced.
        """
        job = handle.job
        async with self.registry_lock:
            if job.job_id in self.cancelled_ids and not isinstance(error, JobCancelledError):
                if output is not None or error is not None:
                    self.logger.info(f"Job {job.job_id} was cancelled; discarding its result.")
                error, output = JobCancelledError(), None

        if error is not None and handle.pending_output is not None:
            try:
                await asyncio.to_thread(handle.pending_output.unlink)
            except FileNotFoundError:
                pass
            except OSError as e:
                self.logger.warning(f"Could not remove partial output {handle.pending_output.name}: {e}")

        await self.temp_files.cleanup(job.temp_prefix)

        if error is None:
            state = JobState.COMPLETE
            job.output_path = output
        elif isinstance(error, JobCancelledError):
            state = JobState.CANCELLED
            job.error, job.error_kind = str(error), error.kind
        else:
            state = JobState.ERROR
            job.error, job.error_kind = str(error), error.kind
        job.advance(state)

        async with self.registry_lock:
            self.active_jobs.pop(job.job_id, None)
            self.active_processes.pop(job.job_id, None)
            self.cancelled_ids.discard(job.job_id)
        async with self.stats_lock:
            self.completed_jobs += 1

        if state is JobState.COMPLETE:
            self.logger.info(f"Job {job.job_id} complete: {output}")
        else:
            self.logger.info(f"Job {job.job_id} ended {state.value}: {job.error}")

        # Listeners see the outcome before anyone awaiting the handle does.
        await self._emit(('done', (job.job_id, state, job.error)))
        handle.events.put_nowait(None)
        if error is None:
            handle._future.set_result(output)
        else:
            handle._future.set_exception(error)
