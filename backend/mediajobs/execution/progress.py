"""
Progress parsing for the wrapped tools.

Each tool reports progress differently:

yt-dlp (run with --newline):
    [download]  42.3% of ~12.34MiB at  1.21MiB/s ETA 00:07

ffmpeg (run with -progress pipe:1 -nostats), after the banner line
    Duration: 00:03:25.48, start: 0.000000, bitrate: 128 kb/s
emits key=value blocks containing
    out_time=00:00:01.000000

whisper.cpp (run with -pp):
    whisper_print_progress_callback: progress =  10%

Parsers are fed one line at a time and return an update only when the
line carries progress. They never raise on unrecognised input.
"""

import re
from dataclasses import dataclass
from typing import Optional


# yt-dlp download percentage
YTDLP_PERCENT_PATTERN = re.compile(r'\[download\]\s+(\d+(?:\.\d+)?)%')

# yt-dlp: file already present from an earlier attempt
YTDLP_ALREADY_PATTERN = re.compile(r'\[download\] .* has already been downloaded')

# Media duration from the ffmpeg input banner
DURATION_PATTERN = re.compile(r'Duration:\s*(\d{2}):(\d{2}):(\d{2})\.(\d{2})')

# Encoded position; also matches out_time= in -progress output
TIME_PATTERN = re.compile(r'time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})')

# whisper.cpp progress callback
WHISPER_PERCENT_PATTERN = re.compile(r'progress\s*=\s*(\d+)%')


@dataclass(frozen=True)
class ProgressUpdate:
    """A single progress reading."""

    current: float
    total: float
    message: str = ""


def _hms_to_seconds(match: "re.Match") -> float:
    hours, minutes, seconds, hundredths = (int(g) for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds + hundredths / 100.0


class YtDlpProgressParser:
    """Parse yt-dlp stdout lines into percent-of-100 updates."""

    def parse_line(self, line: str) -> Optional[ProgressUpdate]:
        match = YTDLP_PERCENT_PATTERN.search(line)
        if match:
            percent = min(float(match.group(1)), 100.0)
            return ProgressUpdate(current=percent, total=100.0, message="Downloading")
        if YTDLP_ALREADY_PATTERN.search(line):
            return ProgressUpdate(current=100.0, total=100.0, message="Already downloaded")
        return None


class FFmpegProgressParser:
    """
    Parse ffmpeg output into seconds-of-duration updates.

    The duration is learned from the input banner. Until it is known,
    time= lines are ignored, since there is nothing to compare them to.
    """

    def __init__(self, duration: Optional[float] = None):
        self.duration = duration
        self.current_time = 0.0

    def parse_line(self, line: str) -> Optional[ProgressUpdate]:
        if self.duration is None:
            match = DURATION_PATTERN.search(line)
            if match:
                self.duration = _hms_to_seconds(match)
                return None

        match = TIME_PATTERN.search(line)
        if not match or not self.duration:
            return None

        self.current_time = min(_hms_to_seconds(match), self.duration)
        return ProgressUpdate(
            current=round(self.current_time, 2),
            total=round(self.duration, 2),
            message="Extracting audio",
        )


class WhisperProgressParser:
    """Parse whisper.cpp progress callback lines."""

    def parse_line(self, line: str) -> Optional[ProgressUpdate]:
        match = WHISPER_PERCENT_PATTERN.search(line)
        if not match:
            return None
        percent = min(int(match.group(1)), 100)
        return ProgressUpdate(current=percent, total=100, message="Transcribing")
