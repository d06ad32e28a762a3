"""
Packing stage: verify the job's outputs and tidy the job directory.

No external tool. When keep_video is false and audio was extracted, the
downloaded source media is deleted. The metadata snapshot itself is
written by the orchestrator after every stage.
"""

from pathlib import Path
from typing import Dict, List

from ..jobs.models import JobRecord, JobStatus, PostAction
from .base import CancellationToken, ProgressCallback, StageContext, StageExecutor, StageResult
from .errors import ErrorKind, StageError


# Artifacts each post_action must have produced by the time we pack
REQUIRED_ARTIFACTS: Dict[PostAction, List[str]] = {
    PostAction.NONE: ["source"],
    PostAction.EXTRACT: ["source", "audio"],
    PostAction.TRANSCRIBE: ["source", "audio", "transcript"],
}


class OutputPacker(StageExecutor):
    """Verify outputs and remove the source media unless it is kept."""

    @property
    def stage(self) -> JobStatus:
        return JobStatus.PACKING

    @property
    def name(self) -> str:
        return "packer"

    async def execute(
        self,
        job: JobRecord,
        context: StageContext,
        on_progress: ProgressCallback,
        cancel_token: CancellationToken,
    ) -> StageResult:
        required = REQUIRED_ARTIFACTS[job.options.post_action]
        missing = {
            name: context.artifacts.get(name)
            for name in required
            if not context.artifacts.get(name) or not Path(context.artifacts[name]).is_file()
        }
        if missing:
            raise StageError.for_stage(
                self.stage,
                ErrorKind.OUTPUT_MISSING,
                f"Expected outputs are missing: {', '.join(sorted(missing))}",
                {"missing": missing},
            )

        on_progress(50, 100, "Verifying outputs")
        cancel_token.raise_if_cancelled(job.id, self.stage)

        removed: List[str] = []
        if not job.options.keep_video and "audio" in context.artifacts:
            source = Path(context.artifacts["source"])
            try:
                source.unlink()
                removed.append("source")
                context.log.info(f"[PACK] Deleted source media {source.name} (keep_video is off)")
            except FileNotFoundError:
                removed.append("source")
            except OSError as e:
                # Outputs are complete; a stuck source file is not a job failure
                context.log.warning(f"[PACK] Could not delete source media {source}: {e}")

        on_progress(100, 100, "Packed")
        return StageResult(removed=removed, message="Outputs packed")
