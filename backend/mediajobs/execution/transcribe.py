"""
Transcription stage: offline speech recognition with whisper.cpp.

Reads audio.wav produced by extraction and writes transcript.txt.
Runs only for post_action "transcribe".
"""

from pathlib import Path
from typing import List, Optional

from ..jobs.models import JobRecord, JobStatus, PostAction
from .base import CancellationToken, ProgressCallback, StageContext, StageExecutor, StageResult
from .errors import ErrorKind, StageError
from .paths import JobPaths
from .process import find_executable, run_process
from .progress import WhisperProgressParser


class WhisperCppTranscriber(StageExecutor):
    """
    whisper.cpp backed transcription.

    Args:
        binary: Explicit whisper.cpp CLI path (None searches PATH for whisper-cli)
        model_path: ggml model file
        timeout: Seconds before transcription is aborted
    """

    def __init__(
        self,
        binary: Optional[str] = None,
        model_path: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._binary = binary
        self.model_path = model_path
        self.timeout = timeout

    @property
    def stage(self) -> JobStatus:
        return JobStatus.TRANSCRIBING

    @property
    def name(self) -> str:
        return "whisper.cpp"

    @property
    def available(self) -> bool:
        return (
            self._resolve_binary() is not None
            and self.model_path is not None
            and Path(self.model_path).is_file()
        )

    def _resolve_binary(self) -> Optional[str]:
        return find_executable(self._binary, "whisper-cli") or find_executable(None, "whisper-cpp")

    def build_command(self, binary: str, job: JobRecord, wav: Path, paths: JobPaths) -> List[str]:
        cmd = [
            binary,
            "-m", str(self.model_path),
            "-f", str(wav),
            "-l", job.options.language,
            "-otxt",
            "-of", str(paths.transcript_base),
            "-pp",
        ]
        if job.options.translate:
            cmd.append("-tr")
        if job.options.threads:
            cmd.extend(["-t", str(job.options.threads)])
        return cmd

    async def execute(
        self,
        job: JobRecord,
        context: StageContext,
        on_progress: ProgressCallback,
        cancel_token: CancellationToken,
    ) -> StageResult:
        if job.options.post_action != PostAction.TRANSCRIBE:
            return StageResult.skip("Transcription not requested")

        wav = context.artifact("wav")
        if wav is None or not wav.is_file():
            raise StageError.for_stage(
                self.stage,
                ErrorKind.INVALID_INPUT,
                "WAV audio for transcription is missing",
                {"wav": str(wav) if wav else None},
            )

        binary = self._resolve_binary()
        if binary is None:
            raise StageError.for_stage(
                self.stage,
                ErrorKind.EXECUTABLE_MISSING,
                "whisper.cpp was not found on this system",
            )
        if not self.model_path or not Path(self.model_path).is_file():
            raise StageError.for_stage(
                self.stage,
                ErrorKind.EXECUTABLE_MISSING,
                "whisper.cpp model file is missing",
                {"model": self.model_path},
            )

        paths = JobPaths(context.job_dir, job.id)
        parser = WhisperProgressParser()

        def _on_line(line: str) -> None:
            update = parser.parse_line(line)
            if update:
                on_progress(update.current, update.total, update.message)

        result = await run_process(
            self.build_command(binary, job, wav, paths),
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
                f"whisper.cpp exited with code {result.exit_code}",
                {"exit_code": result.exit_code, "output": result.output},
            )

        if not paths.transcript.is_file():
            raise StageError.for_stage(
                self.stage,
                ErrorKind.OUTPUT_MISSING,
                "whisper.cpp finished but transcript.txt was not written",
                {"expected": str(paths.transcript)},
            )

        on_progress(100, 100, "Transcription complete")
        return StageResult(artifacts={"transcript": str(paths.transcript)}, message="Transcribed")
