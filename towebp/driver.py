"""
Run the converter as a child process and follow its output.

This is the consumer side of the stdout protocol: progress lines are
turned into ProgressUpdate callbacks, everything else is passed on as
opaque log text, and the summary block is parsed once the child exits.
"""
from __future__ import annotations

import codecs
import queue
import re
import subprocess
import sys
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import IO, Callable, List, Optional, Sequence, Tuple

from .report import SUMMARY_HEADER
from .settings import DEFAULT_QUALITY


PROGRESS_RE = re.compile(
    r"Progress:\s*(?P<percent>\d+(?:\.\d+)?)%\s*\((?P<done>\d+)/(?P<total>\d+)\)"
    r"(?:\s*\|\s*Saved:\s*(?P<saved>-?\d+(?:\.\d+)?)MB)?"
)

_INT_LABELS = {
    "Total files": "total_files",
    "Processed": "processed",
    "Skipped": "skipped",
    "Failed": "failed",
}
_TEXT_LABELS = {
    "Duration": "duration",
    "Total size": "total_size",
    "Saved": "saved_size",
    "Compression": "compression_ratio",
}

_READ_SIZE = 4096


@dataclass(frozen=True)
class ProgressUpdate:
    percent: float
    done: int
    total: int
    saved_mb: float = 0.0

    @property
    def fraction(self) -> float:
        return self.percent / 100.0


@dataclass(frozen=True)
class SummaryReport:
    total_files: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    duration: str = ""
    total_size: str = ""
    saved_size: str = ""
    compression_ratio: str = ""


@dataclass(frozen=True)
class LogEntry:
    text: str
    is_error: bool = False


@dataclass
class DriverOutcome:
    exit_code: int
    result: Optional[SummaryReport] = None
    error: Optional[str] = None
    log: List[LogEntry] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.result is not None


def split_lines(buffer: str, chunk: str) -> Tuple[str, List[str]]:
    """
    Append chunk to buffer and cut off every complete line.

    Both "\\r" and "\\n" end a line (progress updates use "\\r"). Returns
    the unfinished tail and the complete, non-empty lines in order.
    """
    data = buffer + chunk
    lines: List[str] = []
    start = 0
    for i, ch in enumerate(data):
        if ch in "\r\n":
            line = data[start:i]
            if line:
                lines.append(line)
            start = i + 1
    return data[start:], lines


def parse_progress(line: str) -> Optional[ProgressUpdate]:
    if "Progress:" not in line:
        return None
    m = PROGRESS_RE.search(line)
    if not m:
        return None
    saved = m.group("saved")
    return ProgressUpdate(
        percent=float(m.group("percent")),
        done=int(m.group("done")),
        total=int(m.group("total")),
        saved_mb=float(saved) if saved is not None else 0.0,
    )


def _parse_block(lines: Sequence[str]) -> SummaryReport:
    values: dict = {}
    for raw in lines:
        line = raw.strip()
        if ":" not in line:
            continue
        label, _, value = line.partition(":")
        value = value.strip()
        if label in _INT_LABELS:
            try:
                values[_INT_LABELS[label]] = int(value)
            except ValueError:
                values[_INT_LABELS[label]] = 0
        elif label in _TEXT_LABELS:
            values[_TEXT_LABELS[label]] = value
    return SummaryReport(**values)


def parse_summary(text: str) -> Optional[SummaryReport]:
    """
    Parse the summary block(s) out of a complete stdout capture.

    Returns None when no "Conversion completed:" marker is present. With
    several blocks (one per input path) counts are added up and the text
    fields come from the last block.
    """
    if SUMMARY_HEADER not in text:
        return None

    _, lines = split_lines("", text + "\n")
    blocks: List[List[str]] = []
    for line in lines:
        if SUMMARY_HEADER in line:
            blocks.append([])
        elif blocks:
            blocks[-1].append(line)

    merged: Optional[SummaryReport] = None
    for b in blocks:
        r = _parse_block(b)
        if merged is None:
            merged = r
            continue
        merged = replace(
            r,
            total_files=merged.total_files + r.total_files,
            processed=merged.processed + r.processed,
            skipped=merged.skipped + r.skipped,
            failed=merged.failed + r.failed,
        )
    return merged


def default_command() -> List[str]:
    return [sys.executable, "-m", "towebp"]


class ConversionRunner:
    """
    Launch the converter and report what it does.

    on_progress gets a ProgressUpdate per progress line, on_log gets a
    LogEntry for every other stdout/stderr line. Both run on the thread
    that called run().
    """

    def __init__(self, command: Optional[Sequence[str]] = None) -> None:
        self.command = list(command) if command else default_command()
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    @staticmethod
    def build_args(paths: Sequence[Path], quality: int = DEFAULT_QUALITY, recursive: bool = False) -> List[str]:
        args: List[str] = []
        if quality != DEFAULT_QUALITY:
            args += ["-q", str(quality)]
        if recursive:
            args.append("-r")
        # Paths may start with "-".
        args.append("--")
        args += [str(p) for p in paths]
        return args

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    def cancel(self) -> None:
        with self._lock:
            proc = self._process
        if proc is not None and proc.poll() is None:
            proc.terminate()

    def run(
        self,
        paths: Sequence[Path],
        quality: int = DEFAULT_QUALITY,
        recursive: bool = False,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
        on_log: Optional[Callable[[LogEntry], None]] = None,
    ) -> DriverOutcome:
        argv = self.command + self.build_args(paths, quality=quality, recursive=recursive)

        try:
            proc = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            return DriverOutcome(exit_code=-1, error=f"Failed to launch towebp: {e}")

        with self._lock:
            self._process = proc

        q: "queue.Queue[Tuple[str, Optional[str]]]" = queue.Queue()
        readers = [
            threading.Thread(target=_pump, args=("stdout", proc.stdout, q), daemon=True),
            threading.Thread(target=_pump, args=("stderr", proc.stderr, q), daemon=True),
        ]
        for t in readers:
            t.start()

        log: List[LogEntry] = []
        stdout_text: List[str] = []
        stderr_text: List[str] = []
        buffers = {"stdout": "", "stderr": ""}

        def emit(entry: LogEntry) -> None:
            log.append(entry)
            if on_log:
                on_log(entry)

        def handle(name: str, lines: List[str]) -> None:
            for line in lines:
                if name == "stdout":
                    update = parse_progress(line)
                    if update is not None:
                        if on_progress:
                            on_progress(update)
                        continue
                    emit(LogEntry(line))
                else:
                    text = line.strip()
                    if text:
                        emit(LogEntry(text, is_error=True))

        open_streams = 2
        while open_streams:
            name, chunk = q.get()
            if chunk is None:
                open_streams -= 1
                # Flush a last line that had no terminator.
                tail, buffers[name] = buffers[name], ""
                handle(name, [tail] if tail else [])
                continue
            (stdout_text if name == "stdout" else stderr_text).append(chunk)
            buffers[name], lines = split_lines(buffers[name], chunk)
            handle(name, lines)

        exit_code = proc.wait()
        for t in readers:
            t.join()

        with self._lock:
            self._process = None

        outcome = DriverOutcome(exit_code=exit_code, log=log)
        outcome.result = parse_summary("".join(stdout_text))
        if outcome.result is None:
            err = "".join(stderr_text).strip()
            outcome.error = err or f"towebp exited with code {exit_code}"
        return outcome


def _pump(name: str, stream: Optional[IO[bytes]], q: "queue.Queue[Tuple[str, Optional[str]]]") -> None:
    if stream is None:
        q.put((name, None))
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            data = stream.read1(_READ_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            text = decoder.decode(data)
            if text:
                q.put((name, text))
        rest = decoder.decode(b"", final=True)
        if rest:
            q.put((name, rest))
    finally:
        stream.close()
        q.put((name, None))
