from __future__ import annotations

from .paths import ConversionTask


def needs_conversion(task: ConversionTask) -> bool:
    """
    Decide whether task.destination has to be (re)written.

    A missing or zero-length destination is always rewritten, as is one
    older than its source. Metadata errors mean "convert".
    """
    try:
        try:
            dst = task.destination.stat()
        except FileNotFoundError:
            return True

        if dst.st_size == 0:
            return True

        src = task.source.stat()
        return src.st_mtime_ns > dst.st_mtime_ns
    except OSError:
        return True
