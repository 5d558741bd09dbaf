from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple


OutcomeStatus = Literal["processed", "skipped", "failed"]


@dataclass(frozen=True)
class FailedFile:
    file: str  # base name of the source
    error: str


@dataclass(frozen=True)
class TaskOutcome:
    """
    Output of converting a single task.

    Immutable so it can be handed from a worker thread to the scheduler
    without any locking; only RunStats.record() turns it into counters.
    """
    status: OutcomeStatus
    src_bytes: int = 0
    out_bytes: int = 0
    failure: Optional[FailedFile] = None

    @classmethod
    def processed(cls, src_bytes: int, out_bytes: int) -> "TaskOutcome":
        return cls(status="processed", src_bytes=src_bytes, out_bytes=out_bytes)

    @classmethod
    def skipped(cls) -> "TaskOutcome":
        return cls(status="skipped")

    @classmethod
    def failed(cls, file: str, error: str) -> "TaskOutcome":
        return cls(status="failed", failure=FailedFile(file=file, error=error))

    @property
    def saved_bytes(self) -> int:
        # Negative when the WebP came out bigger than the source.
        return self.src_bytes - self.out_bytes


@dataclass
class RunStats:
    processed: int = 0
    skipped: int = 0
    failed: List[FailedFile] = field(default_factory=list)
    total_files: int = 0
    total_bytes_in: int = 0
    saved_bytes: int = 0
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def done(self) -> int:
        return self.processed + self.skipped + len(self.failed)

    def record(self, outcome: TaskOutcome) -> None:
        if outcome.status == "processed":
            self.processed += 1
            self.total_bytes_in += outcome.src_bytes
            self.saved_bytes += outcome.saved_bytes
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            if outcome.failure is None:
                raise ValueError(f"{outcome.status} outcome without a FailedFile")
            self.failed.append(outcome.failure)


@dataclass(frozen=True)
class ConversionResult:
    total_files: int
    processed: int
    skipped: int
    failed: Tuple[FailedFile, ...]
    duration: str
    total_size: str
    saved_size: str
    compression_ratio: str

    # Raw values behind the formatted strings above.
    total_bytes_in: int = 0
    saved_bytes: int = 0
    elapsed_seconds: float = 0.0
