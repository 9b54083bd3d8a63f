"""FFmpeg progress output parsing.

FFmpeg run with ``-progress pipe:2`` writes blocks of ``key=value`` lines to
stderr::

    frame=100
    fps=25.00
    bitrate=1234.5kbits/s
    out_time_us=4000000
    out_time_ms=4000000
    speed=1.5x
    progress=continue

The classic one-line stats (``frame=  100 fps= 25 ... speed=1.5x``) are
understood as well. ``out_time_ms`` is in microseconds despite its name.
"""

import dataclasses
import re
from typing import Optional

from convert_engine.models.job import ConversionProgress

_FRAME_RE = re.compile(r"\bframe=\s*(\d+)")
_FPS_RE = re.compile(r"\bfps=\s*(\d+(?:\.\d+)?)")
_BITRATE_RE = re.compile(r"\bbitrate=\s*(\d+(?:\.\d+)?)\s*kbits/s")
_SPEED_RE = re.compile(r"\bspeed=\s*(\d+(?:\.\d+)?)x")
_OUT_TIME_RE = re.compile(r"\bout_time_(?:us|ms)=(\d+)")
_STATE_RE = re.compile(r"^progress=(continue|end)\s*$")
_KEY_VALUE_RE = re.compile(r"^[a-z0-9_]+=.*$")

_STAGES = {
    "continue": "Converting",
    "end": "Finalizing",
}


def is_progress_line(line: str) -> bool:
    """True for lines that belong to FFmpeg's progress reporting."""
    line = line.strip()
    if not line:
        return False
    if _KEY_VALUE_RE.match(line):
        return True
    return bool(_FRAME_RE.search(line) and _SPEED_RE.search(line))


def parse_progress(chunk: str, previous: ConversionProgress) -> Optional[ConversionProgress]:
    """Parse a chunk of stderr into a new snapshot.

    Only fields whose markers appear in ``chunk`` change; everything else is
    carried over from ``previous``, which is never mutated. Returns None when
    the chunk contains nothing recognisable.
    """
    values = {}

    for line in re.split(r"[\r\n]+", chunk):
        if not line:
            continue

        match = _FRAME_RE.search(line)
        if match:
            values["frame"] = int(match.group(1))

        match = _FPS_RE.search(line)
        if match:
            values["fps"] = float(match.group(1))

        match = _BITRATE_RE.search(line)
        if match:
            values["bitrate"] = float(match.group(1)) * 1000

        match = _SPEED_RE.search(line)
        if match:
            values["speed"] = float(match.group(1))

        match = _OUT_TIME_RE.search(line)
        if match:
            values["current_time"] = int(match.group(1)) / 1_000_000

        match = _STATE_RE.match(line.strip())
        if match:
            values["stage"] = _STAGES[match.group(1)]

    if not values:
        return None

    progress = dataclasses.replace(previous, **values)

    if progress.total_time > 0 and "current_time" in values:
        percentage = min(100.0, progress.current_time / progress.total_time * 100)
        progress.percentage = max(previous.percentage, percentage)

    if progress.total_time > 0 and progress.speed > 0 and ("current_time" in values or "speed" in values):
        progress.eta = max(0.0, (progress.total_time - progress.current_time) / progress.speed)

    return progress
