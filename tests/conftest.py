import stat
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, List, Set, Tuple

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from audrip import dependencies
from audrip.config import Settings
from audrip.jobs import JobState

FAKES_DIR = Path(__file__).parent / 'fakes'


def install_fake(bin_dir: Path, name: str, script: str) -> Path:
    """Writes an executable wrapper named like the real engine that runs a fake script."""
    path = bin_dir / name
    path.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKES_DIR / script}" "$@"\n')
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def engines(tmp_path):
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()
    return SimpleNamespace(
        bin_dir=bin_dir,
        yt_dlp=install_fake(bin_dir, 'yt-dlp', 'fake_yt_dlp.py'),
        ffmpeg=install_fake(bin_dir, 'ffmpeg', 'fake_ffmpeg.py'),
        ffprobe=install_fake(bin_dir, 'ffprobe', 'fake_ffprobe.py'),
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        download_dir=tmp_path / 'out',
        work_dir=tmp_path / 'work',
        acquisition_timeout=20,
        transcode_timeout=20,
        cover_art_timeout=2,
        cancel_grace_delay=0.05,
    )


class EventRecorder:
    """Collects manager events and tracks how many jobs run at once."""

    def __init__(self):
        self.events: List[Tuple[str, Any]] = []
        self.running: Set[str] = set()
        self.max_running = 0

    async def __call__(self, event):
        self.events.append(event)
        kind, value = event
        if kind == 'state':
            job_id, state = value
            if state.is_running:
                self.running.add(job_id)
        elif kind == 'done':
            self.running.discard(value[0])
        self.max_running = max(self.max_running, len(self.running))

    def states(self, job_id: str) -> List[JobState]:
        states = [value[1] for kind, value in self.events if kind == 'state' and value[0] == job_id]
        states += [value[1] for kind, value in self.events if kind == 'done' and value[0] == job_id]
        return states


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest_asyncio.fixture
async def release_server(monkeypatch):
    """Serves a fake yt-dlp release; the first ``failures`` requests get a 503."""
    state = {'requests': 0, 'failures': 0, 'body': b'#!/bin/sh\necho fake-yt-dlp\n' + b'x' * 20000}

    async def release(request):
        state['requests'] += 1
        if state['requests'] <= state['failures']:
            return web.Response(status=503)
        return web.Response(body=state['body'])

    app = web.Application()
    app.router.add_get('/yt-dlp', release)
    server = test_utils.TestServer(app)
    await server.start_server()
    monkeypatch.setattr(dependencies, 'YT_DLP_URLS', {sys.platform: str(server.make_url('/yt-dlp'))})
    yield state
    await server.close()
