from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import FrozenSet, Optional


DEFAULT_QUALITY = 90

# Sources we are willing to decode. ".webp" is included so a tree can be
# re-encoded into a separate output directory.
DEFAULT_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tif", ".tiff", ".webp"}
)

# 16384 x 16384
DEFAULT_MAX_INPUT_PIXELS = 268402689

SPACE_MARGIN = 1.2


def default_max_concurrent(cpu_count: Optional[int] = None) -> int:
    """Leave one core for the rest of the machine, never more than 4 workers."""
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    return min(max(1, cpu_count - 1), 4)


def _default_scratch() -> Path:
    return Path(tempfile.gettempdir()) / "towebp"


@dataclass(frozen=True)
class RunConfiguration:
    """
    Knobs for a conversion run.

    Pure data: set once when the converter is built and never mutated
    while a run is in progress. Use normalize_config() to get clamped values.
    """

    # ----- Encoding -----
    quality: int = DEFAULT_QUALITY  # 1-100

    # ----- Scheduling -----
    # None means "pick from the host": see default_max_concurrent()
    max_concurrent: Optional[int] = None

    # ----- Discovery -----
    extensions: FrozenSet[str] = DEFAULT_EXTENSIONS

    # ----- Scratch space -----
    # Each run creates its own private directory below this one.
    scratch_directory: Path = field(default_factory=_default_scratch)

    # ----- Decoder limits -----
    max_input_pixels: int = DEFAULT_MAX_INPUT_PIXELS

    # Free space required at the output root, as a multiple of the input size.
    space_margin: float = SPACE_MARGIN


def normalize_config(c: RunConfiguration) -> RunConfiguration:
    quality = max(1, min(int(c.quality), 100))

    if c.max_concurrent is None:
        max_concurrent = default_max_concurrent()
    else:
        max_concurrent = max(1, int(c.max_concurrent))

    extensions = frozenset(
        e.lower() if e.startswith(".") else f".{e.lower()}" for e in c.extensions
    )

    return replace(
        c,
        quality=quality,
        max_concurrent=max_concurrent,
        extensions=extensions,
        scratch_directory=Path(c.scratch_directory),
    )
