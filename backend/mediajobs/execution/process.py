"""
Subprocess runner shared by the tool-backed executors.

One asyncio subprocess per stage invocation. stdout and stderr are merged
and fed line by line to the caller's parser.

Design rules:
- Executable not found or not runnable -> <STAGE>_EXECUTABLE_MISSING
- Stage timeout exceeded -> <STAGE>_TIMEOUT
- Cancellation token tripped -> StageCancelled
- Termination is SIGTERM first, SIGKILL after a grace period
- Non-zero exit is NOT raised here; the executor classifies it
"""

import asyncio
import logging
import os
import shutil
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, List, Optional, Sequence, Union

from ..jobs.models import JobStatus
from .base import CancellationToken
from .errors import ErrorKind, StageCancelled, StageError

logger = logging.getLogger(__name__)

# How often the runner checks the cancellation token and timeout
POLL_INTERVAL = 0.1

# Seconds between SIGTERM and SIGKILL
TERMINATE_GRACE = 5.0

# Output lines kept for error details
TAIL_LINES = 20


@dataclass
class ProcessResult:
    """Outcome of a finished subprocess."""

    exit_code: int
    tail: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(self.tail)


async def _terminate(process: asyncio.subprocess.Process, label: str) -> None:
    """SIGTERM, then SIGKILL if the process outlives the grace period."""
    if process.returncode is not None:
        return
    logger.info(f"[PROCESS] Sending SIGTERM to {label} PID {process.pid}")
    try:
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE)
        except asyncio.TimeoutError:
            logger.warning(f"[PROCESS] {label} PID {process.pid} did not terminate, sending SIGKILL")
            process.kill()
            await process.wait()
    except ProcessLookupError:
        pass  # Already exited


async def run_process(
    cmd: Sequence[Union[str, Path]],
    *,
    job_id: str,
    stage: JobStatus,
    cancel_token: CancellationToken,
    on_line: Optional[Callable[[str], None]] = None,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
    log: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
) -> ProcessResult:
    """
    Run a command to completion, streaming its output.

    Args:
        cmd: Executable and arguments
        job_id: Owning job, for errors and logs
        stage: Stage the command runs in; namespaces error codes
        cancel_token: Token watched while the process runs
        on_line: Called with each decoded output line (stripped)
        timeout: Seconds before the process is killed, None for no limit
        cwd: Working directory
        log: Logger for the command line and exit status (defaults to module logger)

    Returns:
        ProcessResult with exit code and the last output lines

    Raises:
        StageError: Executable missing or timeout
        StageCancelled: Token tripped while running
    """
    log = log or logger
    argv = [str(part) for part in cmd]
    label = Path(argv[0]).name

    cancel_token.raise_if_cancelled(job_id, stage)

    log.info(f"[PROCESS] Executing: {' '.join(argv)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=str(cwd) if cwd else None,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise StageError.for_stage(
            stage,
            ErrorKind.EXECUTABLE_MISSING,
            f"{label} could not be started: {e}",
            {"executable": argv[0]},
        ) from e

    log.info(f"[PROCESS] Started {label} PID {process.pid}")
    tail: Deque[str] = deque(maxlen=TAIL_LINES)

    async def _pump() -> None:
        assert process.stdout is not None
        while True:
            raw = await process.stdout.readline()
            if not raw:
                break
            # ffmpeg and yt-dlp may separate updates with bare carriage returns
            for piece in raw.decode("utf-8", errors="replace").replace("\r", "\n").split("\n"):
                line = piece.strip()
                if not line:
                    continue
                tail.append(line)
                if on_line is not None:
                    try:
                        on_line(line)
                    except Exception:
                        log.exception(f"[PROCESS] Output handler raised on: {line}")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout else None
    reader = asyncio.ensure_future(_pump())
    waiter = asyncio.ensure_future(process.wait())

    try:
        while True:
            done, _ = await asyncio.wait({waiter}, timeout=POLL_INTERVAL)
            if done:
                break
            if cancel_token.cancelled:
                log.info(f"[PROCESS] Cancellation requested for job {job_id}")
                await _terminate(process, label)
                raise StageCancelled(job_id, stage)
            if deadline is not None and loop.time() >= deadline:
                log.error(f"[PROCESS] {label} exceeded {timeout}s timeout")
                await _terminate(process, label)
                raise StageError.for_stage(
                    stage,
                    ErrorKind.TIMEOUT,
                    f"{label} did not finish within {timeout} seconds",
                    {"timeout": timeout, "output": "\n".join(tail)},
                )
        await reader
    except asyncio.CancelledError:
        # Orchestrator shutdown: never leave the child running
        await _terminate(process, label)
        raise
    finally:
        if not reader.done():
            reader.cancel()
        if not waiter.done():
            waiter.cancel()

    exit_code = process.returncode if process.returncode is not None else -1
    log.info(f"[PROCESS] {label} PID {process.pid} exited with code {exit_code}")
    return ProcessResult(exit_code=exit_code, tail=list(tail))


# Common install locations checked after PATH
_COMMON_BIN_DIRS = ("/usr/local/bin", "/usr/bin", "/opt/homebrew/bin")


def find_executable(configured: Optional[str], default_name: str) -> Optional[str]:
    """
    Resolve a tool binary.

    An explicitly configured path wins, even if it does not exist, so a
    misconfiguration surfaces as EXECUTABLE_MISSING instead of silently
    running a different binary.

    Returns:
        Path to the executable, or None if it cannot be found
    """
    if configured:
        return configured

    found = shutil.which(default_name)
    if found:
        return found

    for directory in _COMMON_BIN_DIRS:
        candidate = os.path.join(directory, default_name)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate

    return None
