"""Tests for the ffmpeg command builder and the supervised transcode run."""
import json
from pathlib import Path

import pytest

from audrip.cover_art import ResolvedArt
from audrip.exceptions import DependencyMissing, TranscodeFailed, TranscodeTimeout
from audrip.jobs import AspectPolicy, TargetFormat, TrackMetadata, TrimRange
from audrip.transcoding import (
    Transcoder, art_filter_chain, build_ffmpeg_command, build_frame_command, build_image_frame_command,
    codec_args, frame_timestamps, image_frame_size, parse_time_progress, safe_filename, summarize_ffmpeg_error
)

FFMPEG = Path('/usr/bin/ffmpeg')
META = TrackMetadata('Song', 'Artist', 'Album')


class TestArtFilterChain:
    def test_square_with_crop_correction(self) -> None:
        assert art_filter_chain(AspectPolicy.SQUARE, True) == (
            'crop=iw:iw*9/16:(iw-ow)/2:(ih-oh)/2,'
            'scale=1000:1000:force_original_aspect_ratio=increase,crop=1000:1000'
        )

    def test_square_without_crop_correction(self) -> None:
        assert art_filter_chain(AspectPolicy.SQUARE, False, 600) == (
            'scale=600:600:force_original_aspect_ratio=increase,crop=600:600'
        )

    def test_widescreen_ignores_crop_flag(self) -> None:
        assert art_filter_chain(AspectPolicy.WIDESCREEN, True) == (
            'scale=1920:1080:force_original_aspect_ratio=increase,crop=1920:1080'
        )


class TestBuildCommand:
    def test_trimmed_mp3_without_art(self) -> None:
        command = build_ffmpeg_command(FFMPEG, Path('/w/yt_1.webm'), Path('/o/Song.mp3'),
                                       TargetFormat.MP3, META, trim=TrimRange(5, 20.5))
        assert command == [
            '/usr/bin/ffmpeg', '-hide_banner', '-nostdin', '-ss', '5', '-to', '20.5',
            '-i', '/w/yt_1.webm', '-map', '0:a',
            '-c:a', 'libmp3lame', '-q:a', '2', '-id3v2_version', '3',
            '-metadata', 'title=Song', '-metadata', 'artist=Artist', '-metadata', 'album=Album',
            '-y', '/o/Song.mp3',
        ]

    def test_m4a_with_art(self) -> None:
        art = ResolvedArt(Path('/w/yt_1.cover.jpg'), needs_crop_correction=True)
        command = build_ffmpeg_command(FFMPEG, Path('/w/yt_1.webm'), Path('/o/Song.m4a'),
                                       TargetFormat.M4A, META, art=art, aspect=AspectPolicy.SQUARE)
        image_input = command.index('/w/yt_1.cover.jpg')
        assert command[image_input - 1] == '-i'
        assert command[image_input + 1:image_input + 5] == ['-map', '0:a', '-map', '1:0']
        assert command[command.index('-vf') + 1].startswith('crop=iw:iw*9/16')
        assert command[command.index('-disposition:v') + 1] == 'attached_pic'
        assert command[command.index('-c:a'):command.index('-c:a') + 8] == [
            '-c:a', 'aac', '-b:a', '256k', '-movflags', '+faststart', '-f', 'ipod'
        ]

    def test_trim_precedes_first_input(self) -> None:
        command = build_ffmpeg_command(FFMPEG, Path('a'), Path('b'), TargetFormat.MP3, META, trim=TrimRange(end=30))
        assert command.index('-to') < command.index('-i')
        assert '-ss' not in command

    def test_reencode_keeps_source_tags_and_picture(self) -> None:
        command = build_ffmpeg_command(FFMPEG, Path('/m/a.flac'), Path('/m/a.mp3'), TargetFormat.MP3,
                                       TrackMetadata(title='New'), reencode=True)
        assert command == [
            '/usr/bin/ffmpeg', '-hide_banner', '-nostdin', '-i', '/m/a.flac',
            '-map', '0:a', '-map', '0:v?', '-map_metadata', '0', '-c:v', 'copy',
            '-c:a', 'libmp3lame', '-b:a', '320k', '-id3v2_version', '3',
            '-metadata', 'title=New', '-y', '/m/a.mp3',
        ]

    def test_original_has_no_codec(self) -> None:
        with pytest.raises(ValueError):
            codec_args(TargetFormat.ORIGINAL)


class TestHelpers:
    def test_safe_filename(self) -> None:
        assert safe_filename('AC/DC: Back <In> Black?') == 'AC_DC_ Back _In_ Black_'
        assert safe_filename('   ', fallback='job-1') == 'job-1'

    def test_error_summary_strips_component_prefix(self) -> None:
        lines = ['frame=1', '[mp3 @ 0x55d0c8a0] Invalid data found when processing input']
        assert summarize_ffmpeg_error(lines) == 'Invalid data found when processing input'

    def test_time_progress(self) -> None:
        assert parse_time_progress('size= 1kB time=00:00:07.50 bitrate=1', 15) == 50
        assert parse_time_progress('size= 1kB time=00:00:07.50 bitrate=1', None) is None
        assert parse_time_progress('no time here', 15) is None


class TestFrameCommands:
    def test_timestamps_split_the_item_evenly(self) -> None:
        assert frame_timestamps(70, 6) == [10, 20, 30, 40, 50, 60]
        assert frame_timestamps(10, 3) == [2, 5, 7]

    def test_unknown_duration_assumes_a_minute(self) -> None:
        assert frame_timestamps(None, 2) == [20, 40]

    def test_single_still(self) -> None:
        assert build_frame_command(FFMPEG, 'https://cdn/v.mp4', 30, Path('/w/f.jpg')) == [
            '/usr/bin/ffmpeg', '-hide_banner', '-nostdin', '-ss', '30', '-i', 'https://cdn/v.mp4',
            '-vframes', '1', '-q:v', '2', '-y', '/w/f.jpg',
        ]

    def test_image_framing(self) -> None:
        command = build_image_frame_command(FFMPEG, Path('/w/in.png'), Path('/w/out.jpg'), AspectPolicy.WIDESCREEN, 800)
        assert command[command.index('-vf') + 1] == 'scale=800:450:force_original_aspect_ratio=increase,crop=800:450'
        assert image_frame_size(AspectPolicy.SQUARE) == (500, 500)


class TestTranscoder:
    @pytest.mark.asyncio
    async def test_writes_tagged_output(self, tmp_path, engines) -> None:
        source = tmp_path / 'yt_1.webm'
        source.write_text('audio')
        output = tmp_path / 'Song.mp3'

        await Transcoder(engines.ffmpeg).transcode(source, output, TargetFormat.MP3, META, 'job-1')

        assert json.loads(output.read_text())['tags'] == {'title': 'Song', 'artist': 'Artist', 'album': 'Album'}

    @pytest.mark.asyncio
    async def test_reports_converting_progress_for_known_duration(self, tmp_path, engines) -> None:
        events = []

        async def on_progress(event):
            events.append(event)

        await Transcoder(engines.ffmpeg).transcode(tmp_path / 'a', tmp_path / 'b.mp3', TargetFormat.MP3, META, 'j',
                                                   trim=TrimRange(0, 4), on_progress=on_progress)
        assert [(e.stage, e.percent) for e in events] == [('converting', 25)]

    @pytest.mark.asyncio
    async def test_failure_is_classified(self, tmp_path, engines, monkeypatch) -> None:
        monkeypatch.setenv('FAKE_FFMPEG_FAIL', '1')
        with pytest.raises(TranscodeFailed) as excinfo:
            await Transcoder(engines.ffmpeg).transcode(tmp_path / 'a', tmp_path / 'b.mp3', TargetFormat.MP3, META, 'j')
        assert str(excinfo.value) == 'Invalid data found when processing input'

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path, engines, monkeypatch) -> None:
        monkeypatch.setenv('FAKE_FFMPEG_SLEEP', '20')
        with pytest.raises(TranscodeTimeout):
            await Transcoder(engines.ffmpeg, timeout=0.5).transcode(tmp_path / 'a', tmp_path / 'b.mp3',
                                                                    TargetFormat.MP3, META, 'j')

    @pytest.mark.asyncio
    async def test_missing_engine(self, tmp_path) -> None:
        with pytest.raises(DependencyMissing):
            await Transcoder(None).transcode(tmp_path / 'a', tmp_path / 'b.mp3', TargetFormat.MP3, META, 'j')

    @pytest.mark.asyncio
    async def test_extract_frame(self, tmp_path, engines) -> None:
        output = await Transcoder(engines.ffmpeg).extract_frame('https://cdn/v.mp4', 12, tmp_path / 'f.jpg', 'frame')
        assert output.read_bytes() == b'\xff\xd8frame@12'

    @pytest.mark.asyncio
    async def test_failed_frame_is_classified(self, tmp_path, engines, monkeypatch) -> None:
        monkeypatch.setenv('FAKE_FFMPEG_BAD_FRAMES', '12')
        with pytest.raises(TranscodeFailed) as excinfo:
            await Transcoder(engines.ffmpeg).extract_frame('https://cdn/v.mp4', 12, tmp_path / 'f.jpg', 'frame')
        assert '403 Forbidden' in str(excinfo.value)
