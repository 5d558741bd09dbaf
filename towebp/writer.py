from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Protocol

from .errors import CodecError, ConversionFailure, DestinationWriteError, EmptyOutput, SourceUnreadable
from .freshness import needs_conversion
from .paths import ConversionTask
from .results import TaskOutcome


logger = logging.getLogger(__name__)

# Read once: os.umask() can only be queried by setting it.
_UMASK = os.umask(0)
os.umask(_UMASK)


class Codec(Protocol):
    def encode(self, source: Path, destination: Path, quality: int) -> None: ...


def convert_task(task: ConversionTask, quality: int, scratch_dir: Path, codec: Codec) -> TaskOutcome:
    """
    Convert one task without ever leaving a partial destination behind.

    The codec writes into scratch_dir; only a rename makes the result
    visible at task.destination. Errors come back as a failed outcome.
    """
    if not needs_conversion(task):
        logger.debug("Up to date: %s", task.destination)
        return TaskOutcome.skipped()

    tmp_path = None
    try:
        try:
            src_bytes = task.source.stat().st_size
        except OSError as e:
            raise SourceUnreadable(f"Cannot read {task.source.name}: {e}") from e

        tmp_path = _scratch_file(scratch_dir)

        try:
            codec.encode(task.source, tmp_path, quality)
        except ConversionFailure:
            raise
        except Exception as e:
            raise CodecError(str(e) or type(e).__name__) from e

        out_bytes = _file_size(tmp_path)
        if out_bytes == 0:
            raise EmptyOutput("Generated file is empty")

        _publish(tmp_path, task.destination)
        tmp_path = None

        return TaskOutcome.processed(src_bytes=src_bytes, out_bytes=out_bytes)

    except ConversionFailure as e:
        logger.debug("Failed: %s (%s)", task.source, e)
        return TaskOutcome.failed(file=task.source.name, error=str(e))

    finally:
        if tmp_path is not None:
            _discard(tmp_path)


def _scratch_file(scratch_dir: Path) -> Path:
    try:
        fd, name = tempfile.mkstemp(suffix=".webp", dir=str(scratch_dir))
    except OSError as e:
        raise DestinationWriteError(f"Cannot create temporary file in {scratch_dir}: {e}") from e
    os.close(fd)
    return Path(name)


def _publish(tmp_path: Path, destination: Path) -> None:
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        mode = _output_mode(destination)
        os.chmod(tmp_path, mode)
        try:
            os.replace(tmp_path, destination)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            _replace_across_devices(tmp_path, destination, mode)
    except OSError as e:
        raise DestinationWriteError(f"Cannot write {destination}: {e}") from e


def _replace_across_devices(tmp_path: Path, destination: Path, mode: int) -> None:
    # Scratch lives on another filesystem: stage a copy next to the
    # destination so the final step is still a same-directory rename.
    fd, name = tempfile.mkstemp(prefix=".towebp_", suffix=".webp", dir=str(destination.parent))
    os.close(fd)
    staged = Path(name)
    try:
        shutil.copyfile(tmp_path, staged)
        os.chmod(staged, mode)
        os.replace(staged, destination)
    except OSError:
        _discard(staged)
        raise
    _discard(tmp_path)


def _output_mode(destination: Path) -> int:
    """
    Permission bits for a published file.

    An existing destination keeps its mode; a new one gets the usual
    umask default instead of mkstemp's 0600.
    """
    try:
        return stat.S_IMODE(destination.stat().st_mode)
    except FileNotFoundError:
        return 0o666 & ~_UMASK


def _discard(p: Path) -> None:
    try:
        p.unlink(missing_ok=True)
    except OSError:
        pass


def _file_size(p: Path) -> int:
    try:
        return p.stat().st_size
    except FileNotFoundError:
        return 0
