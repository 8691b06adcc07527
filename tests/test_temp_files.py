"""Tests for prefix cleanup and the startup orphan sweep."""
import os
import time

import pytest

from audrip.jobs import Job
from audrip.temp_files import TempFileManager


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / 'work'
    path.mkdir()
    return path


class TestCleanup:
    @pytest.mark.asyncio
    async def test_removes_only_the_jobs_files(self, work_dir) -> None:
        for name in ('yt_1.webm', 'yt_1.webm.part', 'yt_1.cover.jpg', 'yt_12.webm', 'notes.txt'):
            (work_dir / name).write_text('x')

        deleted = await TempFileManager(work_dir).cleanup('yt_1.')

        assert deleted == 3
        assert sorted(p.name for p in work_dir.iterdir()) == ['notes.txt', 'yt_12.webm']

    @pytest.mark.asyncio
    async def test_missing_work_dir_is_not_an_error(self, tmp_path) -> None:
        assert await TempFileManager(tmp_path / 'absent').cleanup('yt_1.') == 0

    @pytest.mark.asyncio
    async def test_ids_that_sanitize_alike_do_not_share_files(self, work_dir) -> None:
        spaced, underscored = Job('u', job_id='song 1'), Job('u', job_id='song_1')
        (work_dir / f"{spaced.temp_prefix}webm").write_text('x')
        kept = work_dir / f"{underscored.temp_prefix}webm"
        kept.write_text('x')

        deleted = await TempFileManager(work_dir).cleanup(spaced.temp_prefix)

        assert deleted == 1
        assert kept.exists()


class TestOrphanSweep:
    @pytest.mark.asyncio
    async def test_deletes_stale_prefixed_files_only(self, work_dir) -> None:
        stale = work_dir / 'yt_old.webm'
        fresh = work_dir / 'yt_new.webm'
        unrelated = work_dir / 'keep.webm'
        for path in (stale, fresh, unrelated):
            path.write_text('x')
        two_hours_ago = time.time() - 7200
        os.utime(stale, (two_hours_ago, two_hours_ago))
        os.utime(unrelated, (two_hours_ago, two_hours_ago))

        deleted = await TempFileManager(work_dir).sweep_orphans(3600)

        assert deleted == 1
        assert not stale.exists()
        assert fresh.exists() and unrelated.exists()
