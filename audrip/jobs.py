"""
Defines the data classes for jobs, their state machine and progress events.
"""
import hashlib
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .constants import TEMP_PREFIX
from .exceptions import InvalidStateTransition


class JobState(str, Enum):
    QUEUED = 'Queued'
    DOWNLOADING = 'Downloading'
    CONVERTING = 'Converting'
    COMPLETE = 'Complete'
    ERROR = 'Error'
    CANCELLED = 'Cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETE, JobState.ERROR, JobState.CANCELLED)

    @property
    def is_running(self) -> bool:
        return self in (JobState.DOWNLOADING, JobState.CONVERTING)


# Rank in the forward-only lifecycle. All terminal states share the last rank.
_STATE_RANK = {
    JobState.QUEUED: 0,
    JobState.DOWNLOADING: 1,
    JobState.CONVERTING: 2,
    JobState.COMPLETE: 3,
    JobState.ERROR: 3,
    JobState.CANCELLED: 3,
}


class JobKind(str, Enum):
    DOWNLOAD = 'download'
    REENCODE = 'reencode'


class TargetFormat(str, Enum):
    MP3 = 'mp3'
    M4A = 'm4a'
    ORIGINAL = 'original'

    @property
    def needs_transcoder(self) -> bool:
        return self is not TargetFormat.ORIGINAL


class AspectPolicy(str, Enum):
    SQUARE = 'square'
    WIDESCREEN = 'widescreen'


@dataclass
class TrackMetadata:
    title: str = ''
    artist: str = ''
    album: str = ''


@dataclass
class TrimRange:
    """Half-open trim window in seconds. Either bound may be omitted."""
    start: Optional[float] = None
    end: Optional[float] = None

    def __post_init__(self):
        if self.start is not None and self.start < 0:
            raise ValueError("Trim start cannot be negative.")
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise ValueError("Trim end must be after trim start.")

    @property
    def duration(self) -> Optional[float]:
        if self.start is None or self.end is None:
            return None
        return self.end - self.start


@dataclass
class ProgressEvent:
    """A normalized progress report: stage is 'downloading', 'converting' or 'complete'."""
    stage: str
    percent: float
    rate: Optional[str] = None
    eta: Optional[str] = None


def make_temp_prefix(job_id: str) -> str:
    """
    Builds the artifact name stem for a job id.

    Anything outside ``[A-Za-z0-9_-]`` is replaced. Ids that needed replacing
    also get ``~`` and a short hash of the raw id, which a safe id can never
    contain, so two ids never share a stem. The stem ends with a dot, so the
    prefix of one id can never match the files of another.
    """
    safe_id = re.sub(r'[^A-Za-z0-9_-]', '_', job_id)
    if safe_id != job_id or not safe_id:
        digest = hashlib.sha1(job_id.encode('utf-8')).hexdigest()[:8]
        safe_id = f"{safe_id}~{digest}"
    return f"{TEMP_PREFIX}{safe_id}."


@dataclass
class Job:
    """
    Represents a single acquire+transcode (or re-encode) request.

    Attributes:
        job_id: A unique identifier for the job.
        reference: The source URL, or a local file path for re-encode jobs.
        kind: Whether the job downloads first or only re-encodes a local file.
        target_format: The output container/codec.
        metadata: Tags written into the output file.
        cover_art: An inline ``data:image`` string, a remote image URL, or None.
        trim: Optional trim window applied at decode time.
        aspect: Target framing for embedded cover art.
        output_dir: Overrides the configured download directory when set.
        state: The current lifecycle state.
        temp_prefix: Name stem shared by every temp file the job produces.
        error: Human-readable error for the Error/Cancelled states.
        error_kind: Classification of ``error``.
        output_path: The finished file once Complete.
    """
    reference: str
    metadata: TrackMetadata = field(default_factory=TrackMetadata)
    target_format: TargetFormat = TargetFormat.MP3
    kind: JobKind = JobKind.DOWNLOAD
    cover_art: Optional[str] = None
    trim: Optional[TrimRange] = None
    aspect: AspectPolicy = AspectPolicy.SQUARE
    output_dir: Optional[Path] = None
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: JobState = JobState.QUEUED
    temp_prefix: str = ''
    error: Optional[str] = None
    error_kind: Optional[str] = None
    output_path: Optional[Path] = None

    def __post_init__(self):
        self.target_format = TargetFormat(self.target_format)
        self.kind = JobKind(self.kind)
        self.aspect = AspectPolicy(self.aspect)
        if not self.temp_prefix:
            self.temp_prefix = make_temp_prefix(self.job_id)

    def advance(self, new_state: JobState) -> None:
        """
        Moves the job forward in its lifecycle.

        Raises:
            InvalidStateTransition: If the move is backwards, sideways, or out of
                a terminal state.
        """
        new_state = JobState(new_state)
        if self.state.is_terminal or _STATE_RANK[new_state] <= _STATE_RANK[self.state]:
            raise InvalidStateTransition(f"Job {self.job_id}: cannot move from {self.state.value} to {new_state.value}")
        self.state = new_state
