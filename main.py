"""
Main entry point for the AudRip command line.

This script initializes the configuration, sets up logging, creates the
controller, and runs the requested command on an asyncio event loop.
"""

import argparse
import sys
import logging
import asyncio
from pathlib import Path
from types import TracebackType
from typing import List, Optional, Type

from audrip._version import __version__
from audrip.config import ConfigManager
from audrip.constants import CONFIG_FILE
from audrip.controller import AppController, overall_percent
from audrip.cover_art import decode_data_uri, encode_data_uri
from audrip.exceptions import AudRipError, URLExtractionError
from audrip.jobs import AspectPolicy, Job, TargetFormat, TrackMetadata, TrimRange
from audrip.logging_config import setup_logging


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='audrip', description="Download, tag and organize audio.")
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('-v', '--verbose', action='store_true', help="Print log messages down to INFO.")
    commands = parser.add_subparsers(dest='command', required=True)

    download = commands.add_parser('download', help="Download a URL and tag the result.")
    download.add_argument('url')
    download.add_argument('--format', choices=[f.value for f in TargetFormat], default=None)
    download.add_argument('--title', default='')
    download.add_argument('--artist', default='')
    download.add_argument('--album', default='')
    download.add_argument('--cover', default=None, help="Cover art URL or data:image URI.")
    download.add_argument('--start', type=float, default=None, help="Trim start in seconds.")
    download.add_argument('--end', type=float, default=None, help="Trim end in seconds.")
    download.add_argument('--aspect', choices=[a.value for a in AspectPolicy], default=None)
    download.add_argument('--output-dir', type=Path, default=None)

    info = commands.add_parser('info', help="Show metadata for a URL without downloading.")
    info.add_argument('url')
    info.add_argument('--playlist', action='store_true', help="List the items of a playlist.")

    scan = commands.add_parser('scan', help="List the audio files in a directory.")
    scan.add_argument('directory', nargs='?', type=Path, default=None)

    convert = commands.add_parser('convert', help="Re-encode local files.")
    convert.add_argument('files', nargs='+', type=Path)
    convert.add_argument('--format', choices=[TargetFormat.MP3.value, TargetFormat.M4A.value], default='mp3')
    convert.add_argument('--output-dir', type=Path, default=None)

    history = commands.add_parser('history', help="Show recent downloads.")
    history.add_argument('--clear', action='store_true')


    frames = commands.add_parser('frames', help="Save evenly spaced stills of a video as cover-art candidates.")
    frames.add_argument('url')
    frames.add_argument('--count', type=int, default=6)
    frames.add_argument('--output-dir', type=Path, default=Path('.'))

    art = commands.add_parser('art', help="Crop a picture to a square or 16:9 cover.")
    art.add_argument('image', type=Path)
    art.add_argument('--aspect', choices=[a.value for a in AspectPolicy], default=AspectPolicy.SQUARE.value)
    art.add_argument('--size', type=int, default=500)
    art.add_argument('--output', type=Path, default=None)

    commands.add_parser('versions', help="Show the versions of the external engines.")
    commands.add_parser('install-yt-dlp', help="Download the latest yt-dlp into the managed bin directory.")
    return parser


async def print_progress(handle):
    """Prints a job's progress until its event stream ends."""
    last_shown = -1
    while True:
        event = await handle.events.get()
        if event is None:
            break
        percent = int(overall_percent(event))
        if percent != last_shown:
            last_shown = percent
            details = ' '.join(part for part in (event.rate, event.eta and f"ETA {event.eta}") if part)
            print(f"\r{event.stage:<12} {percent:3d}% {details}", end='', flush=True)
    print()


async def await_jobs(handles) -> int:
    exit_code = 0
    for handle in handles:
        await print_progress(handle)
        try:
            output = await handle.result()
            print(f"Saved: {output}")
        except AudRipError as e:
            print(f"{handle.job.reference}: {e}", file=sys.stderr)
            exit_code = 1
    return exit_code


async def run_command(controller: AppController, args: argparse.Namespace) -> int:
    await controller.run_startup_checks()
    config = controller.config

    if args.command == 'download':
        trim = TrimRange(args.start, args.end) if args.start is not None or args.end is not None else None
        job = Job(
            reference=args.url,
            metadata=TrackMetadata(args.title, args.artist, args.album),
            target_format=args.format or config.default_format,
            cover_art=args.cover,
            trim=trim,
            aspect=args.aspect or config.default_aspect,
            output_dir=args.output_dir,
        )
        handle = await controller.download_and_tag(job)
        return await await_jobs([handle])

    if args.command == 'convert':
        handles = [await controller.convert_file(path, TargetFormat(args.format), output_dir=args.output_dir)
                   for path in args.files]
        return await await_jobs(handles)

    if args.command == 'info':
        if args.playlist:
            for item in await controller.get_playlist_entries(args.url):
                print(f"{item['title']} - {item['channel']} ({item['duration']}s) {item['url']}")
        else:
            info = await controller.get_media_info(args.url)
            for key, value in info.items():
                print(f"{key:<10} {value}")
        return 0

    if args.command == 'scan':
        for track in await controller.scan_library(args.directory):
            print(f"{track.artist} - {track.title} [{track.album}] {track.duration:.0f}s  {track.path}")
        return 0

    if args.command == 'history':
        if args.clear:
            await controller.clear_history()
            return 0
        for entry in await controller.get_history():
            print(f"{entry.title} - {entry.artist} ({entry.format}) {entry.output_path}")
        return 0

    if args.command == 'frames':
        await asyncio.to_thread(args.output_dir.mkdir, parents=True, exist_ok=True)
        for index, frame in enumerate(await controller.extract_frames(args.url, args.count)):
            decoded = decode_data_uri(frame)
            if decoded is None:
                print(frame)
                continue
            extension, data = decoded
            path = args.output_dir / f"frame_{index + 1}.{extension}"
            await asyncio.to_thread(path.write_bytes, data)
            print(path)
        return 0

    if args.command == 'art':
        extension = args.image.suffix.lstrip('.').lower() or 'jpeg'
        data = await asyncio.to_thread(args.image.read_bytes)
        image = encode_data_uri(data, 'jpeg' if extension == 'jpg' else extension)
        framed = await controller.frame_cover_art(image, AspectPolicy(args.aspect), args.size)
        output = args.output or args.image.with_name(f"{args.image.stem}_{args.aspect}.jpg")
        await asyncio.to_thread(output.write_bytes, decode_data_uri(framed)[1])
        print(f"Saved: {output}")
        return 0

    if args.command == 'install-yt-dlp':
        result = await controller.initiate_dependency_download()
        if not result['success']:
            print(f"yt-dlp install failed: {result['error']}", file=sys.stderr)
            return 1
        print(f"Installed: {result['path']}")
        return 0

    if args.command == 'versions':
        for name, version in (await controller.get_dependency_versions()).items():
            print(f"{name:<8} {version}")
        return 0
    return 2


def run(argv: Optional[List[str]] = None) -> int:
    """Console script entry point."""
    args = build_parser().parse_args(argv)

    # 1. Load configuration before setting up logging
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()

    # 2. Use the configured log level for file logging
    setup_logging(config.log_level, 'INFO' if args.verbose else 'WARNING')

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception

    # 4. Create the Controller, which holds all business logic
    controller = AppController(config_manager, config)

    async def main_with_exception_handler() -> int:
        """Wrapper to set the asyncio exception handler for the running loop."""
        try:
            loop = asyncio.get_running_loop()
            loop.set_exception_handler(handle_async_exception)
        except RuntimeError:
            logging.error("Could not get running loop to set exception handler.")
        try:
            return await run_command(controller, args)
        except (AudRipError, URLExtractionError, ValueError, OSError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        finally:
            await controller.shutdown()

    try:
        return asyncio.run(main_with_exception_handler())
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
        return 130


if __name__ == "__main__":
    sys.exit(run())
