"""Helpers for spawning engine subprocesses in their own process group and killing them."""
import asyncio
import os
import sys
import signal
import logging
import subprocess
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Awaitable

from .constants import SUBPROCESS_CREATION_FLAGS

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], Awaitable[None]]


async def spawn(command: List[str], stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE) -> asyncio.subprocess.Process:
    """
    Starts an engine in a new process group so the whole tree can be killed at once.

    Raises:
        FileNotFoundError: If the executable does not exist.
    """
    kwargs: Dict[str, Any] = {}
    if sys.platform == 'win32':
        kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs['start_new_session'] = True
    return await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=stdout,
        stderr=stderr,
        **kwargs
    )


def kill_process_tree(process: asyncio.subprocess.Process) -> None:
    """Hard-kills a process and its group. Already-exited processes are ignored."""
    if process.returncode is not None:
        return
    try:
        if sys.platform == 'win32':
            process.kill()
        else:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError):
        try: process.kill()
        except (ProcessLookupError, OSError): pass  # Already gone


async def read_lines(stream: Optional[asyncio.StreamReader], on_line: Optional[LineCallback] = None,
                     keep: int = 20) -> Deque[str]:
    """
    Reads a stream to EOF, splitting on both newlines and carriage returns.

    Returns the last ``keep`` non-empty lines.
    """
    tail: Deque[str] = deque(maxlen=keep)
    if stream is None:
        return tail
    buffer = b''
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        buffer += chunk.replace(b'\r', b'\n')
        *lines, buffer = buffer.split(b'\n')
        for raw in lines:
            line = raw.decode('utf-8', 'replace').strip()
            if not line:
                continue
            tail.append(line)
            if on_line:
                await on_line(line)
    if buffer.strip():
        line = buffer.decode('utf-8', 'replace').strip()
        tail.append(line)
        if on_line:
            await on_line(line)
    return tail


async def run_supervised(command: List[str], timeout: float,
                         on_start: Optional[Callable[[asyncio.subprocess.Process], Awaitable[None]]] = None,
                         on_stdout: Optional[LineCallback] = None,
                         on_stderr: Optional[LineCallback] = None,
                         capture_stdout: bool = True) -> tuple:
    """
    Runs an engine to completion under a wall-clock timeout.

    The process is force-killed on timeout or task cancellation, and always
    reaped before this coroutine returns or raises.

    Returns:
        (return_code, stdout_tail, stderr_tail)

    Raises:
        FileNotFoundError: If the executable does not exist.
        asyncio.TimeoutError: If ``timeout`` expired.
        asyncio.CancelledError: If the calling task was cancelled.
    """
    process = await spawn(command, stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL)
    if on_start:
        await on_start(process)

    async def pump():
        out_tail, err_tail = await asyncio.gather(
            read_lines(process.stdout, on_stdout),
            read_lines(process.stderr, on_stderr),
        )
        return_code = await process.wait()
        return return_code, out_tail, err_tail

    try:
        return await asyncio.wait_for(pump(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        logger.debug(f"Killing {command[0]} (PID: {process.pid})")
        kill_process_tree(process)
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} did not exit after SIGKILL.")
        raise
