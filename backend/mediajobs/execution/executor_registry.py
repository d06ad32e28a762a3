"""
Stage executor registry.

Central lookup from pipeline stage to executor.

Design rules:
- Exactly one executor per stage
- Explicit registration, no inference or fallback
- Executors are singletons per registry
"""

import logging
from typing import Dict, Iterable, List, Optional

from ..jobs.models import JobStatus
from ..jobs.state import STAGE_SEQUENCE
from .base import StageExecutor
from .download import YtDlpDownloader
from .errors import ExecutorNotRegisteredError
from .extract import FFmpegAudioExtractor
from .pack import OutputPacker
from .transcribe import WhisperCppTranscriber

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """
    Registry of stage executors.

    Provides:
    - Executor lookup by stage
    - Availability listing for diagnostics
    """

    def __init__(self, executors: Optional[Iterable[StageExecutor]] = None):
        self._executors: Dict[JobStatus, StageExecutor] = {}
        for executor in executors or ():
            self.register(executor)

    @classmethod
    def with_defaults(
        cls,
        ytdlp_path: Optional[str] = None,
        ffmpeg_path: Optional[str] = None,
        whisper_path: Optional[str] = None,
        whisper_model: Optional[str] = None,
        stage_timeout: Optional[float] = None,
    ) -> "ExecutorRegistry":
        """Build the registry of tool-backed executors."""
        registry = cls([
            YtDlpDownloader(binary=ytdlp_path, timeout=stage_timeout),
            FFmpegAudioExtractor(binary=ffmpeg_path, timeout=stage_timeout),
            WhisperCppTranscriber(binary=whisper_path, model_path=whisper_model, timeout=stage_timeout),
            OutputPacker(),
        ])

        for executor in registry.list_executors():
            status = "available" if executor.available else "not available"
            logger.info(f"Executor '{executor.name}' ({executor.stage.value}): {status}")

        return registry

    def register(self, executor: StageExecutor) -> None:
        """
        Register (or replace) the executor for its stage.

        Raises:
            ValueError: If the executor's stage is not a pipeline stage
        """
        if executor.stage not in STAGE_SEQUENCE:
            raise ValueError(f"{executor.stage.value} is not a pipeline stage")
        self._executors[executor.stage] = executor

    def get(self, stage: JobStatus) -> StageExecutor:
        """
        Get executor by stage.

        Raises:
            ExecutorNotRegisteredError: If no executor is registered for the stage
        """
        executor = self._executors.get(stage)
        if executor is None:
            raise ExecutorNotRegisteredError(stage)
        return executor

    def list_executors(self) -> List[StageExecutor]:
        """Executors in pipeline order."""
        return [self._executors[stage] for stage in STAGE_SEQUENCE if stage in self._executors]

    def availability(self) -> Dict[str, bool]:
        """Stage name -> whether its tooling is installed."""
        return {executor.stage.value: executor.available for executor in self.list_executors()}
