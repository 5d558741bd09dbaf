from __future__ import annotations

import logging
import shutil
import sys
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Sequence, TextIO

from .engine import PillowWebPCodec
from .errors import RunCancelled, ScratchDirectoryUnavailable
from .paths import ConversionTask, resolve_tasks
from .report import build_result, write_progress
from .results import ConversionResult, RunStats, TaskOutcome
from .settings import RunConfiguration, default_max_concurrent, normalize_config
from .writer import Codec, convert_task


logger = logging.getLogger(__name__)

# A live run touches its scratch dir with every file it converts.
STALE_SCRATCH_SECONDS = 24 * 60 * 60


class ImageConverter:
    """
    Runs one batch: resolve the input, convert in windows, summarize.

    Progress lines go to stream (stdout by default). A converter can be
    reused; every run() starts from fresh stats and a fresh scratch dir.
    """

    def __init__(
        self,
        config: Optional[RunConfiguration] = None,
        codec: Optional[Codec] = None,
        stream: Optional[TextIO] = None,
    ) -> None:
        self.config = normalize_config(config or RunConfiguration())
        self.codec = codec or PillowWebPCodec(max_input_pixels=self.config.max_input_pixels)
        self.max_concurrent: int = self.config.max_concurrent or default_max_concurrent()
        self._stream = stream
        self.stats = RunStats()
        self._lock = threading.Lock()

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def run(
        self,
        input_path: Path,
        output_dir: Optional[Path] = None,
        recursive: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> ConversionResult:
        self.stats = RunStats(start_time=time.monotonic())

        plan = resolve_tasks(Path(input_path), self.config, output_dir=output_dir, recursive=recursive)
        self.stats.total_files = plan.total_files
        self.stats.skipped = len(plan.skipped)

        if plan.tasks:
            scratch = self._make_scratch()
            try:
                self.process_in_batches(plan.tasks, scratch, cancel_event=cancel_event)
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

        self.stats.end_time = time.monotonic()
        return build_result(self.stats)

    def process_in_batches(
        self,
        tasks: Sequence[ConversionTask],
        scratch_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[TaskOutcome]:
        window = self.max_concurrent
        total = len(tasks)
        outcomes: List[TaskOutcome] = []

        with ThreadPoolExecutor(max_workers=window, thread_name_prefix="towebp") as pool:
            for start in range(0, total, window):
                if cancel_event is not None and cancel_event.is_set():
                    if start:
                        self._end_progress(total)
                    raise RunCancelled(f"Cancelled after {start} of {total} file(s)")

                batch = tasks[start:start + window]
                futures = [pool.submit(self._convert_one, t, scratch_dir) for t in batch]
                # Barrier: nothing from the next window starts before these resolve.
                outcomes.extend(f.result() for f in futures)

                done = start + len(batch)
                with self._lock:
                    saved = self.stats.saved_bytes
                write_progress(self.stream, done, total, saved)

        self._end_progress(total)
        return outcomes

    def _convert_one(self, task: ConversionTask, scratch_dir: Path) -> TaskOutcome:
        try:
            outcome = convert_task(task, self.config.quality, scratch_dir, self.codec)
        except Exception as e:
            # convert_task reports per-file errors itself; this only guards the window.
            logger.exception("Unexpected error converting %s", task.source)
            outcome = TaskOutcome.failed(file=task.source.name, error=str(e) or type(e).__name__)

        with self._lock:
            self.stats.record(outcome)
        return outcome

    def _make_scratch(self) -> Path:
        root = self.config.scratch_directory
        try:
            root.mkdir(parents=True, exist_ok=True)
            _remove_stale_scratch(root)
            return Path(tempfile.mkdtemp(prefix="run-", dir=str(root)))
        except OSError as e:
            raise ScratchDirectoryUnavailable(f"Cannot create scratch directory in {root}: {e}") from e

    def _end_progress(self, total: int) -> None:
        if total > 0:
            self.stream.write("\n")
            self.stream.flush()


def _remove_stale_scratch(root: Path, max_age: float = STALE_SCRATCH_SECONDS) -> None:
    # Left behind by runs that were killed before their own cleanup.
    cutoff = time.time() - max_age
    for d in root.glob("run-*"):
        try:
            if d.is_dir() and d.stat().st_mtime < cutoff:
                shutil.rmtree(d, ignore_errors=True)
                logger.debug("Removed stale scratch directory %s", d)
        except OSError:
            continue


def convert(
    input_path: Path,
    output_dir: Optional[Path] = None,
    recursive: bool = False,
    config: Optional[RunConfiguration] = None,
) -> ConversionResult:
    """Library shortcut for a single run with the default codec."""
    return ImageConverter(config).run(input_path, output_dir=output_dir, recursive=recursive)
