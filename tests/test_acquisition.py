"""Tests for yt-dlp command building, progress parsing and outcome classification."""
import pytest

from audrip.acquisition import (
    Acquirer, locate_raw_audio, parse_progress_line, summarize_engine_error
)
from audrip.exceptions import AcquisitionFailed, AcquisitionTimeout, DependencyMissing, MissingOutput
from audrip.jobs import Job


class TestParseProgressLine:
    def test_full_line(self) -> None:
        event = parse_progress_line('[download]  42.3% of 3.50MiB at 1.21MiB/s ETA 00:02')
        assert event.stage == 'downloading'
        assert event.percent == pytest.approx(42.3)
        assert event.rate == '1.21MiB/s'
        assert event.eta == '00:02'

    def test_unknown_rate_and_eta(self) -> None:
        event = parse_progress_line('[download]   0.0% of ~3.50MiB at Unknown B/s ETA Unknown')
        assert event.percent == 0
        assert event.eta is None

    def test_non_progress_lines_are_ignored(self) -> None:
        assert parse_progress_line('[youtube] abc: Downloading webpage') is None
        assert parse_progress_line('[download] Destination: yt_1.webm') is None

    def test_percent_is_clamped(self) -> None:
        assert parse_progress_line('[download] 130% of 1MiB').percent == 100


class TestSummarizeEngineError:
    def test_last_error_line_without_prefixes(self) -> None:
        lines = ['WARNING: something', 'ERROR: first', 'ERROR: [youtube] dQw4w9WgXcQ: Video unavailable']
        assert summarize_engine_error(lines) == 'Video unavailable'

    def test_falls_back_to_last_line(self) -> None:
        assert summarize_engine_error(['noise', 'Killed']) == 'Killed'

    def test_work_dir_paths_are_removed(self, tmp_path) -> None:
        message = summarize_engine_error([f'ERROR: unable to open {tmp_path}/yt_1.webm'], redact=tmp_path)
        assert str(tmp_path) not in message
        assert 'yt_1.webm' in message

    def test_long_messages_are_truncated(self) -> None:
        message = summarize_engine_error(['ERROR: ' + 'x' * 500])
        assert len(message) == 203 and message.endswith('...')


class TestLocateRawAudio:
    def test_skips_images_partials_and_other_jobs(self, tmp_path) -> None:
        for name in ('yt_1.webm.part', 'yt_1.jpg', 'yt_1.cover.jpg', 'yt_12.m4a', 'yt_1.opus'):
            (tmp_path / name).write_text('x')
        assert locate_raw_audio(tmp_path, 'yt_1.').name == 'yt_1.opus'

    def test_nothing_found(self, tmp_path) -> None:
        (tmp_path / 'yt_1.webm.part').write_text('x')
        assert locate_raw_audio(tmp_path, 'yt_1.') is None


class TestBuildCommand:
    def test_argument_order(self, tmp_path, engines) -> None:
        job = Job(reference='https://www.youtube.com/watch?v=abc', job_id='j1')
        command = Acquirer(engines.yt_dlp, engines.ffmpeg, tmp_path).build_command(job)
        assert command == [
            str(engines.yt_dlp), '-f', 'bestaudio', '--no-playlist', '--progress', '--newline',
            '--force-overwrites', '-o', str(tmp_path / 'yt_j1.%(ext)s'),
            '--ffmpeg-location', str(engines.ffmpeg), 'https://www.youtube.com/watch?v=abc',
        ]

    def test_without_ffmpeg(self, tmp_path, engines) -> None:
        command = Acquirer(engines.yt_dlp, None, tmp_path).build_command(Job(reference='u'))
        assert '--ffmpeg-location' not in command

    def test_missing_engine(self, tmp_path) -> None:
        with pytest.raises(DependencyMissing):
            Acquirer(None, None, tmp_path).build_command(Job(reference='u'))


class TestAcquire:
    @pytest.mark.asyncio
    async def test_success_reports_progress_and_returns_raw_file(self, tmp_path, engines) -> None:
        events = []

        async def on_progress(event):
            events.append(event)

        job = Job(reference='https://example.com/track?ext=m4a', job_id='ok')
        raw = await Acquirer(engines.yt_dlp, None, tmp_path).acquire(job, on_progress=on_progress)

        assert raw == tmp_path / 'yt_ok.m4a'
        assert [e.percent for e in events] == [0, 25, 50, 75, 100]
        assert events[1].rate == '1.20MiB/s'

    @pytest.mark.asyncio
    async def test_engine_failure(self, tmp_path, engines) -> None:
        job = Job(reference='https://example.com/track?fail=abc')
        with pytest.raises(AcquisitionFailed) as excinfo:
            await Acquirer(engines.yt_dlp, None, tmp_path).acquire(job)
        assert str(excinfo.value) == 'Video unavailable. This video is private'
        assert excinfo.value.kind == 'acquisition_failed'

    @pytest.mark.asyncio
    async def test_success_without_file(self, tmp_path, engines) -> None:
        job = Job(reference='https://example.com/track?nofile=1')
        with pytest.raises(MissingOutput):
            await Acquirer(engines.yt_dlp, None, tmp_path).acquire(job)

    @pytest.mark.asyncio
    async def test_timeout_kills_the_engine(self, tmp_path, engines) -> None:
        job = Job(reference='https://example.com/track?sleep=20')
        with pytest.raises(AcquisitionTimeout):
            await Acquirer(engines.yt_dlp, None, tmp_path, timeout=1).acquire(job)

    @pytest.mark.asyncio
    async def test_nonexistent_executable(self, tmp_path) -> None:
        with pytest.raises(DependencyMissing) as excinfo:
            await Acquirer(tmp_path / 'nope', None, tmp_path).acquire(Job(reference='u'))
        assert excinfo.value.dependency == 'yt-dlp'
