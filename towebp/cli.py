from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List

from . import __version__
from .batch import ImageConverter
from .errors import FatalError, RunCancelled
from .report import RunReport, build_report, print_summary, save_report_json
from .settings import DEFAULT_QUALITY, RunConfiguration


logger = logging.getLogger("towebp")


def _quality(text: str) -> int:
    try:
        q = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid quality: {text!r}")
    if not 1 <= q <= 100:
        raise argparse.ArgumentTypeError("quality must be between 1 and 100")
    return q


def _jobs(text: str) -> int:
    try:
        n = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid job count: {text!r}")
    if n < 1:
        raise argparse.ArgumentTypeError("job count must be at least 1")
    return n


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="towebp",
        description="Convert images (JPEG, PNG, GIF, BMP, TIFF, WebP) to WebP.",
    )
    p.add_argument("paths", nargs="+", help="Image files and/or folders to convert")
    p.add_argument(
        "-q", "--quality",
        type=_quality,
        default=DEFAULT_QUALITY,
        help=f"WebP quality (1-100), default {DEFAULT_QUALITY}",
    )
    p.add_argument("-r", "--recursive", action="store_true", help="Scan folders recursively")
    p.add_argument(
        "-o", "--output",
        default=None,
        help="Output directory (default: next to each source). Subfolders are mirrored.",
    )
    p.add_argument(
        "-j", "--jobs",
        type=_jobs,
        default=None,
        help="Files converted at the same time (default: CPU count - 1, max 4)",
    )
    p.add_argument("--report", default=None, help="Also write a JSON report to this path")

    verbosity = p.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    verbosity.add_argument("--quiet", action="store_true", help="Only log errors")

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR

    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )


def _install_sigterm(cancel_event: threading.Event):
    """
    Turn SIGTERM into a cooperative cancel: the current window finishes,
    its scratch files are removed and main() returns 143.
    """
    def _on_sigterm(signum, frame) -> None:
        logger.warning("Termination requested, stopping after the current batch")
        cancel_event.set()

    try:
        return signal.signal(signal.SIGTERM, _on_sigterm)
    except ValueError:
        # Not the main thread; leave signal handling alone.
        return None


def _restore_sigterm(previous) -> None:
    if previous is not None:
        signal.signal(signal.SIGTERM, previous)


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=args.verbose, quiet=args.quiet)

    config = RunConfiguration(quality=args.quality, max_concurrent=args.jobs)
    converter = ImageConverter(config)
    output_dir = Path(args.output) if args.output else None

    exit_code = 0
    reports: List[RunReport] = []

    cancel_event = threading.Event()
    previous_handler = _install_sigterm(cancel_event)

    try:
        for raw in args.paths:
            if cancel_event.is_set():
                raise RunCancelled(f"Terminated before {raw}")
            input_path = Path(raw)
            try:
                result = converter.run(
                    input_path,
                    output_dir=output_dir,
                    recursive=args.recursive,
                    cancel_event=cancel_event,
                )
            except FatalError as e:
                print(f"Error: {e}", file=sys.stderr)
                exit_code = 1
                continue

            print_summary(result, sys.stdout)
            reports.append(build_report(result, input_path, output_dir))
    except KeyboardInterrupt:
        sys.stdout.write("\n")
        print("Conversion cancelled", file=sys.stderr)
        return 130
    except RunCancelled as e:
        print(f"Conversion cancelled: {e}", file=sys.stderr)
        return 143
    finally:
        _restore_sigterm(previous_handler)

    if args.report:
        try:
            save_report_json(reports, Path(args.report))
        except OSError as e:
            print(f"Error: cannot write report {args.report}: {e}", file=sys.stderr)
            return 1
        logger.info("Report written: %s", args.report)

    return exit_code
