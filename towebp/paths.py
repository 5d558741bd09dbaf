from __future__ import annotations

import logging
import math
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import InsufficientSpace, InvalidInputPath, NoImagesFound, NotAnImage
from .settings import RunConfiguration


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionTask:
    source: Path
    destination: Path


@dataclass
class TaskPlan:
    tasks: List[ConversionTask] = field(default_factory=list)
    # Sources dropped by the same-path guard; they count as skipped.
    skipped: List[Path] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.tasks) + len(self.skipped)


def is_image(p: Path, extensions: Iterable[str]) -> bool:
    return p.suffix.lower() in extensions


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def iter_images(
    root: Path,
    extensions: Iterable[str],
    recursive: bool = False,
    exclude_dir: Optional[Path] = None,
) -> Iterable[Path]:
    """
    Yield recognized image files below root, in sorted order.

    Only direct children are looked at unless recursive is set.

    exclude_dir:
        Files inside this directory are skipped, so an output directory
        nested in the input tree is not converted again on the next run.
    """
    exclude_resolved = exclude_dir.resolve() if exclude_dir else None

    pattern = "**/*" if recursive else "*"
    for f in sorted(root.glob(pattern)):
        if not f.is_file():
            continue
        if not is_image(f, extensions):
            continue
        if exclude_resolved and _is_relative_to(f.resolve(), exclude_resolved):
            continue
        yield f


def webp_destination(source: Path, root: Path, output_dir: Optional[Path]) -> Path:
    name = f"{source.stem}.webp"
    if output_dir is None:
        return source.with_name(name)
    # Mirror in/sub/a.jpg -> out/sub/a.webp
    rel_dir = source.parent.relative_to(root)
    return output_dir / rel_dir / name


def directory_size(path: Path) -> int:
    """
    Sum of the sizes of the immediate files of path.

    Subdirectories are not walked, so with a recursive run this
    underestimates what will be written.
    """
    total = 0
    with os.scandir(path) as it:
        for entry in it:
            try:
                if entry.is_file():
                    total += entry.stat().st_size
            except OSError:
                continue
    return total


def available_space(path: Path) -> float:
    try:
        return float(shutil.disk_usage(path).free)
    except OSError:
        # Unknown free space never blocks a run.
        return math.inf


def validate_output(input_dir: Path, output_dir: Path, config: RunConfiguration) -> None:
    if not os.access(input_dir, os.R_OK):
        raise InvalidInputPath(f"Input directory is not readable: {input_dir}")

    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise InvalidInputPath(f"Cannot create output directory {output_dir}: {e}") from e

    if not os.access(output_dir, os.W_OK):
        raise InvalidInputPath(f"Output directory is not writable: {output_dir}")

    available = available_space(output_dir)
    required = directory_size(input_dir) * config.space_margin
    if available < required:
        raise InsufficientSpace(
            f"Insufficient disk space in {output_dir}: "
            f"{int(available)} bytes available, {int(required)} required"
        )


def _drop_same_path(plan: TaskPlan, tasks: List[ConversionTask]) -> None:
    for t in tasks:
        if t.source.resolve() == t.destination.resolve():
            logger.warning("Skipping: source and output are the same file: %s", t.source)
            plan.skipped.append(t.source)
            continue
        plan.tasks.append(t)


def resolve_tasks(
    root: Path,
    config: RunConfiguration,
    output_dir: Optional[Path] = None,
    recursive: bool = False,
) -> TaskPlan:
    root = Path(root)
    output_dir = Path(output_dir) if output_dir is not None else None

    if root.is_file():
        if not is_image(root, config.extensions):
            raise NotAnImage(f"Not a supported image file: {root}")

        if output_dir is not None:
            try:
                output_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise InvalidInputPath(f"Cannot create output directory {output_dir}: {e}") from e

        dest = (output_dir or root.parent) / f"{root.stem}.webp"
        plan = TaskPlan()
        _drop_same_path(plan, [ConversionTask(source=root, destination=dest)])
        return plan

    if root.is_dir():
        if output_dir is not None:
            validate_output(root, output_dir, config)

        # An output dir nested in the input tree holds earlier results.
        exclude = None
        if output_dir is not None:
            out_resolved, root_resolved = output_dir.resolve(), root.resolve()
            if out_resolved != root_resolved and _is_relative_to(out_resolved, root_resolved):
                exclude = output_dir

        sources = list(iter_images(root, config.extensions, recursive=recursive, exclude_dir=exclude))
        if not sources:
            raise NoImagesFound(f"No valid image files found in input directory: {root}")

        tasks = [
            ConversionTask(source=s, destination=webp_destination(s, root, output_dir))
            for s in sources
        ]
        plan = TaskPlan()
        _drop_same_path(plan, tasks)
        logger.debug("Resolved %d task(s), %d same-path skip(s) in %s", len(plan.tasks), len(plan.skipped), root)
        return plan

    raise InvalidInputPath(f"Input is neither a file nor a directory: {root}")
