"""
Defines application-wide constants, paths, and utility functions.

This module centralizes configuration for paths, URLs, and subprocess behavior.
"""

import sys
import subprocess
from pathlib import Path

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.audrip'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
BIN_DIR: Path = USER_DATA_DIR / 'bin'
WORK_DIR: Path = USER_DATA_DIR / 'work'
LIBRARY_CACHE_FILE: Path = USER_DATA_DIR / 'library-cache.json'
COVER_CACHE_DIR: Path = USER_DATA_DIR / 'covers'
HISTORY_FILE: Path = USER_DATA_DIR / 'history.json'
METADATA_HISTORY_FILE: Path = USER_DATA_DIR / 'metadata-history.json'
DEFAULT_DOWNLOAD_DIR: Path = Path.home() / 'Downloads' / 'AudRip'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Temp artifacts ---
TEMP_PREFIX = 'yt_'
IMAGE_SUFFIXES = {'.jpg', '.jpeg', '.png', '.webp', '.gif'}
PARTIAL_SUFFIXES = {'.part', '.ytdl'}

# --- Library ---
AUDIO_EXTENSIONS = ('.mp3', '.m4a', '.aac', '.ogg', '.flac', '.wav')
UNKNOWN_ARTIST = 'Unknown Artist'

# --- Cover art ---
YOUTUBE_THUMBNAIL_TIERS = ('maxresdefault', 'sddefault', 'hqdefault', 'mqdefault')
YOUTUBE_THUMBNAIL_URL = 'https://i.ytimg.com/vi/{video_id}/{tier}.jpg'
SOUNDCLOUD_ART_SIZES = ('t3000x3000', 'original', 't500x500')
WIDESCREEN_ART_SIZE = (1920, 1080)

# --- Engines ---
YT_DLP_URLS = {
    'win32': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp.exe',
    'linux': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp',
    'darwin': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_macos'
}
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36'
}
