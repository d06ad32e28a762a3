"""
Extraction stage: convert the source media to audio with ffmpeg.

Writes audio.mp3 at the job's bitrate. When the job will be transcribed,
the same ffmpeg run also writes audio.wav (16 kHz mono PCM), the input
format whisper.cpp expects.
"""

from pathlib import Path
from typing import List, Optional

from ..jobs.models import JobRecord, JobStatus, PostAction
from .base import CancellationToken, ProgressCallback, StageContext, StageExecutor, StageResult
from .errors import ErrorKind, StageError
from .paths import JobPaths
from .process import find_executable, run_process
from .progress import FFmpegProgressParser


class FFmpegAudioExtractor(StageExecutor):
    """ffmpeg backed audio extraction."""

    def __init__(self, binary: Optional[str] = None, timeout: Optional[float] = None):
        self._binary = binary
        self.timeout = timeout

    @property
    def stage(self) -> JobStatus:
        return JobStatus.EXTRACTING

    @property
    def name(self) -> str:
        return "ffmpeg"

    @property
    def available(self) -> bool:
        return find_executable(self._binary, "ffmpeg") is not None

    def build_command(self, binary: str, job: JobRecord, source: str, paths: JobPaths) -> List[str]:
        cmd = [
            binary,
            "-hide_banner",
            "-y",
            "-i", source,
            "-progress", "pipe:1",
            "-nostats",
            # MP3 output
            "-vn",
            "-c:a", "libmp3lame",
            "-b:a", job.options.audio_bitrate,
            str(paths.audio_mp3),
        ]
        if job.options.post_action == PostAction.TRANSCRIBE:
            cmd.extend([
                "-vn",
                "-ar", "16000",
                "-ac", "1",
                "-c:a", "pcm_s16le",
                str(paths.audio_wav),
            ])
        return cmd

    async def execute(
        self,
        job: JobRecord,
        context: StageContext,
        on_progress: ProgressCallback,
        cancel_token: CancellationToken,
    ) -> StageResult:
        if job.options.post_action == PostAction.NONE:
            return StageResult.skip("Audio extraction not requested")

        source = context.artifact("source")
        if source is None or not source.is_file():
            raise StageError.for_stage(
                self.stage,
                ErrorKind.INVALID_INPUT,
                "Downloaded media file is missing",
                {"source": str(source) if source else None},
            )

        binary = find_executable(self._binary, "ffmpeg")
        if binary is None:
            raise StageError.for_stage(
                self.stage,
                ErrorKind.EXECUTABLE_MISSING,
                "ffmpeg was not found on this system",
            )

        paths = JobPaths(context.job_dir, job.id)
        parser = FFmpegProgressParser()

        def _on_line(line: str) -> None:
            update = parser.parse_line(line)
            if update:
                on_progress(update.current, update.total, update.message)

        result = await run_process(
            self.build_command(binary, job, str(source), paths),
            job_id=job.id,
            stage=self.stage,
            cancel_token=cancel_token,
            on_line=_on_line,
            timeout=self.timeout,
            log=context.log,
        )

        if not result.succeeded:
            raise StageError.for_stage(
                self.stage,
                ErrorKind.PROCESS_EXIT,
                f"ffmpeg exited with code {result.exit_code}",
                {"exit_code": result.exit_code, "output": result.output},
            )

        artifacts = {"audio": str(paths.audio_mp3)}
        if job.options.post_action == PostAction.TRANSCRIBE:
            artifacts["wav"] = str(paths.audio_wav)

        missing = [path for path in artifacts.values() if not Path(path).is_file()]
        if missing:
            raise StageError.for_stage(
                self.stage,
                ErrorKind.OUTPUT_MISSING,
                "ffmpeg finished but audio output is missing",
                {"missing": missing},
            )

        return StageResult(artifacts=artifacts, message="Audio extracted")
