"""
Conventional file names inside a job directory.

Layout of <output_dir>/<job_id>/:
    <job_id>.<ext>     downloaded source media
    audio.mp3          extracted audio
    audio.wav          16 kHz mono PCM for transcription
    transcript.txt     transcription output
    metadata.json      job metadata snapshot
    logs.txt           per-job log
"""

from pathlib import Path
from typing import Optional

AUDIO_MP3_NAME = "audio.mp3"
AUDIO_WAV_NAME = "audio.wav"
TRANSCRIPT_STEM = "transcript"
TRANSCRIPT_NAME = f"{TRANSCRIPT_STEM}.txt"
METADATA_NAME = "metadata.json"
LOG_NAME = "logs.txt"

# yt-dlp leftovers that are never the finished source file
_PARTIAL_SUFFIXES = {".part", ".ytdl", ".temp", ".tmp"}


class JobPaths:
    """Resolve the conventional paths for one job directory."""

    def __init__(self, job_dir: Path, job_id: str):
        self.job_dir = Path(job_dir)
        self.job_id = job_id

    @property
    def source_template(self) -> str:
        """yt-dlp -o template for the source media."""
        return str(self.job_dir / f"{self.job_id}.%(ext)s")

    @property
    def audio_mp3(self) -> Path:
        return self.job_dir / AUDIO_MP3_NAME

    @property
    def audio_wav(self) -> Path:
        return self.job_dir / AUDIO_WAV_NAME

    @property
    def transcript_base(self) -> Path:
        """Path without extension; whisper.cpp -of appends .txt."""
        return self.job_dir / TRANSCRIPT_STEM

    @property
    def transcript(self) -> Path:
        return self.job_dir / TRANSCRIPT_NAME

    @property
    def metadata(self) -> Path:
        return self.job_dir / METADATA_NAME

    @property
    def log(self) -> Path:
        return self.job_dir / LOG_NAME

    def find_source(self) -> Optional[Path]:
        """
        Locate the downloaded source media.

        Returns:
            The largest completed <job_id>.* file, or None
        """
        if not self.job_dir.is_dir():
            return None

        candidates = [
            path for path in self.job_dir.glob(f"{self.job_id}.*")
            if path.is_file() and path.suffix not in _PARTIAL_SUFFIXES
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.stat().st_size)


def ensure_directory(path: Path) -> None:
    """Create a directory (and parents) if missing."""
    Path(path).mkdir(parents=True, exist_ok=True)
