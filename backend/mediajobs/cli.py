#!/usr/bin/env python3
"""
mediajobs CLI - thin entrypoint for operator commands.

Commands:
- serve: run the HTTP/WebSocket backend with uvicorn
- run:   execute one job in-process and report its outcome

Design Principles:
==================
- CLI is a dispatcher only
- No pipeline logic inside CLI
- Surface errors verbatim from the job layer
- Exit non-zero on failure

Exit Codes (run):
=================
- 0: Job completed
- 1: Validation or configuration error
- 2: Job failed
- 3: Job cancelled (including Ctrl-C)
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

from .commands import JobCommands
from .config import AppSettings, ConfigError, load_settings
from .execution.executor_registry import ExecutorRegistry
from .execution.scheduler import StageScheduler
from .jobs.errors import ValidationError
from .jobs.events import EventBus, JobEvent, JobEventType
from .jobs.models import JobRecord, JobStatus, PostAction
from .jobs.orchestrator import PipelineOrchestrator
from .jobs.queue import JobQueue

EXIT_COMPLETED = 0
EXIT_VALIDATION = 1
EXIT_FAILED = 2
EXIT_CANCELLED = 3

_STATUS_EXIT_CODES = {
    JobStatus.COMPLETED: EXIT_COMPLETED,
    JobStatus.FAILED: EXIT_FAILED,
    JobStatus.CANCELLED: EXIT_CANCELLED,
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_settings_or_exit() -> AppSettings:
    try:
        return load_settings()
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_VALIDATION)


class _EventPrinter:
    """Print stage changes (and, if verbose, progress) for one job."""

    def __init__(self, verbose: bool = False, stream=None):
        self.verbose = verbose
        self.stream = stream or sys.stdout
        self._last_percent: Dict[str, int] = {}

    def __call__(self, event: JobEvent) -> None:
        payload = event.payload
        if event.type == JobEventType.STAGE_CHANGED:
            print(f"[{event.job_id}] {payload['oldStatus']} -> {payload['newStatus']}", file=self.stream)
        elif event.type == JobEventType.FAILED:
            error = payload.get("error") or {}
            print(f"[{event.job_id}] FAILED {error.get('code')}: {error.get('message')}", file=self.stream)
        elif event.type == JobEventType.PROGRESS and self.verbose:
            percent = payload.get("percent", 0)
            # One line per 10% step
            if percent // 10 != self._last_percent.get(event.job_id, -1) // 10:
                self._last_percent[event.job_id] = percent
                print(f"[{event.job_id}] {payload.get('stage')} {percent}%", file=self.stream)


async def run_single_job(
    settings: AppSettings,
    request: Dict[str, Any],
    executors: Optional[ExecutorRegistry] = None,
    verbose: bool = False,
) -> JobRecord:
    """
    Create one job, run it to a final status and return its record.

    No persistence: the job lives only for this process.

    Raises:
        ValidationError: If the request is malformed
    """
    if executors is None:
        executors = ExecutorRegistry.with_defaults(
            ytdlp_path=settings.ytdlp_path,
            ffmpeg_path=settings.ffmpeg_path,
            whisper_path=settings.whisper_path,
            whisper_model=settings.whisper_model,
            stage_timeout=settings.stage_timeout,
        )

    queue = JobQueue(event_bus=EventBus())
    orchestrator = PipelineOrchestrator(
        queue,
        executors,
        StageScheduler(max_concurrent=settings.max_concurrent_stages),
    )
    commands = JobCommands(queue, orchestrator, downloads_dir=settings.downloads_dir)

    with queue.subscribe(_EventPrinter(verbose=verbose)):
        job = commands.create(request)
        print(f"[{job.id}] created in {job.output_dir}")
        try:
            return await orchestrator.wait(job.id)
        except asyncio.CancelledError:
            # Ctrl-C: cancel cooperatively and let the executor clean up
            if not queue.get_or_raise(job.id).is_terminal:
                orchestrator.cancel(job.id)
            await orchestrator.shutdown()
            raise


def cmd_run(args: argparse.Namespace) -> NoReturn:
    """
    Execute one job in-process.

    Exit codes:
        0: Job completed
        1: Validation error
        2: Job failed
        3: Job cancelled
    """
    settings = _load_settings_or_exit()

    request: Dict[str, Any] = {
        "url": args.url,
        "options": {
            "language": args.language,
            "keepVideo": args.keep_video,
            "postAction": args.post_action,
            "translate": args.translate,
        },
    }
    if args.output_dir:
        request["outputDir"] = str(Path(args.output_dir).expanduser())
    if args.format:
        request["options"]["format"] = args.format

    try:
        job = asyncio.run(run_single_job(settings, request, verbose=args.verbose))
    except ValidationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_VALIDATION)
    except KeyboardInterrupt:
        print("\nJob cancelled by user.", file=sys.stderr)
        sys.exit(EXIT_CANCELLED)

    print(f"[{job.id}] {job.status.value}")
    if job.status == JobStatus.COMPLETED:
        for name, path in sorted(job.artifacts.items()):
            print(f"  {name}: {path}")
    sys.exit(_STATUS_EXIT_CODES.get(job.status, EXIT_FAILED))


def cmd_serve(args: argparse.Namespace) -> NoReturn:
    """Run the backend service until interrupted."""
    import uvicorn

    from .main import create_app

    settings = _load_settings_or_exit()
    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port)
    sys.exit(0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mediajobs',
        description='mediajobs - download, extract and transcribe media jobs',
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Log pipeline activity and print progress'
    )

    subparsers = parser.add_subparsers(dest='command', required=True, help='Command to execute')

    # Serve command
    parser_serve = subparsers.add_parser(
        'serve',
        help='Run the HTTP/WebSocket backend'
    )
    parser_serve.add_argument('--host', default='127.0.0.1', help='Bind address (default: 127.0.0.1)')
    parser_serve.add_argument('--port', type=int, default=8085, help='Port (default: 8085)')
    parser_serve.set_defaults(func=cmd_serve)

    # Run command
    parser_run = subparsers.add_parser(
        'run',
        help='Run a single job in-process'
    )
    parser_run.add_argument('url', help='Media URL to download')
    parser_run.add_argument(
        '--output-dir',
        default=None,
        help='Root for the job directory (default: MEDIAJOBS_DOWNLOADS_DIR)'
    )
    parser_run.add_argument('--language', default='auto', help='Transcription language (default: auto)')
    parser_run.add_argument('--format', default=None, help='yt-dlp format selector')
    parser_run.add_argument(
        '--keep-video',
        action='store_true',
        help='Keep the downloaded media after audio extraction'
    )
    parser_run.add_argument(
        '--post-action',
        choices=[action.value for action in PostAction],
        default=PostAction.TRANSCRIBE.value,
        help='What to do after downloading (default: transcribe)'
    )
    parser_run.add_argument('--translate', action='store_true', help='Translate the transcript to English')
    parser_run.set_defaults(func=cmd_run)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """
    Main CLI entrypoint.

    Parses arguments and dispatches to subcommands.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    args.func(args)


if __name__ == '__main__':
    main()
