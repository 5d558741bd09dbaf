from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, TextIO

from .results import ConversionResult, RunStats


SUMMARY_HEADER = "Conversion completed:"

_UNITS = ["B", "KB", "MB", "GB"]


def format_bytes(n: int) -> str:
    size = float(n)
    unit = 0
    while size >= 1024 and unit < len(_UNITS) - 1:
        size /= 1024
        unit += 1
    return f"{size:.2f} {_UNITS[unit]}"


def format_duration(seconds: float) -> str:
    total = int(seconds)
    minutes = total // 60
    if minutes > 0:
        return f"{minutes}m {total % 60}s"
    return f"{total}s"


def format_ratio(saved_bytes: int, total_bytes: int) -> str:
    if total_bytes <= 0:
        return "0%"
    return f"{saved_bytes / total_bytes * 100:.2f}%"


def build_result(stats: RunStats) -> ConversionResult:
    if stats.start_time is not None and stats.end_time is not None:
        elapsed = max(0.0, stats.end_time - stats.start_time)
    else:
        elapsed = 0.0

    return ConversionResult(
        total_files=stats.total_files,
        processed=stats.processed,
        skipped=stats.skipped,
        failed=tuple(stats.failed),
        duration=format_duration(elapsed),
        total_size=format_bytes(stats.total_bytes_in),
        saved_size=format_bytes(stats.saved_bytes),
        compression_ratio=format_ratio(stats.saved_bytes, stats.total_bytes_in),
        total_bytes_in=stats.total_bytes_in,
        saved_bytes=stats.saved_bytes,
        elapsed_seconds=elapsed,
    )


# ---------------- stdout protocol ----------------

def progress_line(done: int, total: int, saved_bytes: int) -> str:
    percent = (done / total * 100) if total else 100.0
    saved_mb = saved_bytes / 1024 / 1024
    return f"Progress: {percent:.1f}% ({done}/{total}) | Saved: {saved_mb:.2f}MB"


def write_progress(stream: TextIO, done: int, total: int, saved_bytes: int) -> None:
    # "\r" so a terminal keeps rewriting the same line.
    stream.write("\r" + progress_line(done, total, saved_bytes))
    stream.flush()


def render_summary(result: ConversionResult) -> List[str]:
    lines = [
        SUMMARY_HEADER,
        f"  Total files: {result.total_files}",
        f"  Processed: {result.processed}",
        f"  Skipped: {result.skipped}",
        f"  Failed: {len(result.failed)}",
        f"  Duration: {result.duration}",
        f"  Total size: {result.total_size}",
        f"  Saved: {result.saved_size}",
        f"  Compression: {result.compression_ratio}",
    ]
    if result.failed:
        lines.append("")
        lines.append("Failed files:")
        for f in result.failed:
            lines.append(f"  - {f.file}: {f.error}")
    return lines


def print_summary(result: ConversionResult, stream: TextIO) -> None:
    stream.write("\n" + "\n".join(render_summary(result)) + "\n")
    stream.flush()


# ---------------- JSON report ----------------

@dataclass(frozen=True)
class RunReport:
    created_utc: str
    input_path: str
    output_dir: Optional[str]
    summary: dict
    failed: List[dict]


def build_report(result: ConversionResult, input_path: Path, output_dir: Optional[Path] = None) -> RunReport:
    created_utc = datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")

    summary = {
        "total_files": result.total_files,
        "processed": result.processed,
        "skipped": result.skipped,
        "failed": len(result.failed),
        "duration": result.duration,
        "elapsed_seconds": round(result.elapsed_seconds, 3),
        "total_bytes_in": result.total_bytes_in,
        "saved_bytes": result.saved_bytes,
        "compression_ratio": result.compression_ratio,
    }

    return RunReport(
        created_utc=created_utc,
        input_path=str(input_path),
        output_dir=str(output_dir) if output_dir else None,
        summary=summary,
        failed=[{"file": f.file, "error": f.error} for f in result.failed],
    )


def save_report_json(reports: List[RunReport], path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with path.open("w", encoding="utf-8") as f:
        json.dump([asdict(r) for r in reports], f, indent=2, ensure_ascii=False)
