"""
Download stage: fetch source media with yt-dlp.

The source lands at <job_dir>/<job_id>.<ext>. Network-looking failures
are classified as DOWNLOAD_NETWORK_ERROR so the UI can suggest a retry.
"""

import re
from typing import List, Optional
from urllib.parse import urlparse

from ..jobs.models import JobRecord, JobStatus
from .base import CancellationToken, ProgressCallback, StageContext, StageExecutor, StageResult
from .errors import ErrorKind, StageError
from .paths import JobPaths, ensure_directory
from .process import find_executable, run_process
from .progress import YtDlpProgressParser

# yt-dlp messages that indicate a transient network problem
NETWORK_ERROR_PATTERN = re.compile(
    r"(unable to download|HTTP Error 5\d\d|HTTP Error 429|timed out|"
    r"connection (reset|refused|aborted)|temporary failure in name resolution|"
    r"urlopen error|network is unreachable|getaddrinfo failed)",
    re.IGNORECASE,
)

SUPPORTED_SCHEMES = ("http", "https")


class YtDlpDownloader(StageExecutor):
    """
    yt-dlp backed downloader.

    Args:
        binary: Explicit yt-dlp path (None searches PATH)
        timeout: Seconds before the download is aborted
    """

    def __init__(self, binary: Optional[str] = None, timeout: Optional[float] = None):
        self._binary = binary
        self.timeout = timeout

    @property
    def stage(self) -> JobStatus:
        return JobStatus.DOWNLOADING

    @property
    def name(self) -> str:
        return "yt-dlp"

    @property
    def available(self) -> bool:
        return find_executable(self._binary, "yt-dlp") is not None

    def build_command(self, binary: str, job: JobRecord, paths: JobPaths) -> List[str]:
        cmd = [
            binary,
            "--newline",
            "--no-playlist",
            "--progress",
            "-o", paths.source_template,
        ]
        if job.options.format:
            cmd.extend(["-f", job.options.format])
        cmd.append(job.url)
        return cmd

    async def execute(
        self,
        job: JobRecord,
        context: StageContext,
        on_progress: ProgressCallback,
        cancel_token: CancellationToken,
    ) -> StageResult:
        parsed = urlparse(job.url)
        if parsed.scheme.lower() not in SUPPORTED_SCHEMES or not parsed.netloc:
            raise StageError.for_stage(
                self.stage,
                ErrorKind.INVALID_INPUT,
                f"Unsupported URL: {job.url}",
                {"url": job.url},
            )

        binary = find_executable(self._binary, "yt-dlp")
        if binary is None:
            raise StageError.for_stage(
                self.stage,
                ErrorKind.EXECUTABLE_MISSING,
                "yt-dlp was not found on this system",
            )

        paths = JobPaths(context.job_dir, job.id)
        ensure_directory(paths.job_dir)

        parser = YtDlpProgressParser()

        def _on_line(line: str) -> None:
            update = parser.parse_line(line)
            if update:
                on_progress(update.current, update.total, update.message)

        result = await run_process(
            self.build_command(binary, job, paths),
            job_id=job.id,
            stage=self.stage,
            cancel_token=cancel_token,
            on_line=_on_line,
            timeout=self.timeout,
            cwd=paths.job_dir,
            log=context.log,
        )

        if not result.succeeded:
            kind = ErrorKind.NETWORK_ERROR if NETWORK_ERROR_PATTERN.search(result.output) else ErrorKind.PROCESS_EXIT
            raise StageError.for_stage(
                self.stage,
                kind,
                f"yt-dlp exited with code {result.exit_code}",
                {"exit_code": result.exit_code, "output": result.output},
            )

        source = paths.find_source()
        if source is None:
            raise StageError.for_stage(
                self.stage,
                ErrorKind.OUTPUT_MISSING,
                "yt-dlp finished but no media file was written",
                {"job_dir": str(paths.job_dir)},
            )

        on_progress(100, 100, "Download complete")
        return StageResult(artifacts={"source": str(source)}, message=f"Downloaded {source.name}")
