from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image


class FakeCodec:
    """
    Writes a fixed-size payload instead of encoding.

    out_sizes maps source file names to the number of bytes to write;
    names in fail_on raise instead.
    """

    def __init__(
        self,
        out_size: int = 10,
        out_sizes: Optional[Dict[str, int]] = None,
        fail_on: Optional[set] = None,
        delay: float = 0.0,
    ) -> None:
        self.out_size = out_size
        self.out_sizes = out_sizes or {}
        self.fail_on = fail_on or set()
        self.delay = delay
        self.calls: List[Path] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.events: List[tuple] = []
        self._lock = threading.Lock()

    def encode(self, source: Path, destination: Path, quality: int) -> None:
        with self._lock:
            self.calls.append(source)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.events.append(("start", source.name))
        try:
            if self.delay:
                time.sleep(self.delay)
            if source.name in self.fail_on:
                raise RuntimeError(f"simulated failure for {source.name}")
            size = self.out_sizes.get(source.name, self.out_size)
            destination.write_bytes(b"W" * size)
        finally:
            with self._lock:
                self.in_flight -= 1
                self.events.append(("end", source.name))


def make_image(path: Path, size=(32, 24), mode: str = "RGB", color=(200, 40, 40), **save_kwargs) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    im = Image.new(mode, size, color)
    im.save(path, **save_kwargs)
    return path


def make_file(path: Path, size: int = 1000) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path
