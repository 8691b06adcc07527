"""Acquire, transcode, tag and catalogue audio using yt-dlp and ffmpeg."""
from ._version import __version__
