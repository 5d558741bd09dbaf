import io
import os
import threading

import pytest

from towebp.batch import ImageConverter
from towebp.errors import NoImagesFound, RunCancelled, ScratchDirectoryUnavailable
from towebp.settings import RunConfiguration

from .helpers import FakeCodec, make_file


def _progress(stream):
    return [line for line in stream.getvalue().replace("\r", "\n").splitlines() if line.startswith("Progress:")]


def _converter(config, codec):
    stream = io.StringIO()
    return ImageConverter(config, codec=codec, stream=stream), stream


def test_counts_add_up(tmp_path, config):
    root = tmp_path / "in"
    for name in ("a.jpg", "b.png", "c.gif", "d.webp"):
        make_file(root / name)
    codec = FakeCodec(fail_on={"c.gif"})
    conv, _ = _converter(config, codec)

    result = conv.run(root)

    assert result.total_files == 4
    assert result.processed == 2
    assert result.skipped == 1  # d.webp onto itself
    assert len(result.failed) == 1
    assert result.processed + result.skipped + len(result.failed) == result.total_files


def test_same_path_webp_never_reaches_codec(tmp_path, config):
    src = make_file(tmp_path / "a.webp")
    codec = FakeCodec()
    conv, stream = _converter(config, codec)

    result = conv.run(src)

    assert codec.calls == []
    assert (result.total_files, result.processed, result.skipped, len(result.failed)) == (1, 0, 1, 0)
    assert src.read_bytes() == b"x" * 1000
    assert stream.getvalue() == ""


def test_saved_bytes_only_counts_processed(tmp_path, config):
    root = tmp_path / "in"
    for name in ("a.jpg", "b.jpg", "c.jpg"):
        make_file(root / name, size=1000)
    codec = FakeCodec(out_sizes={"a.jpg": 900, "b.jpg": 800}, fail_on={"c.jpg"})
    conv, _ = _converter(config, codec)

    result = conv.run(root)

    assert result.saved_bytes == 300
    assert result.total_bytes_in == 2000
    assert result.compression_ratio == "15.00%"
    assert [f.file for f in result.failed] == ["c.jpg"]


def test_output_growth_gives_negative_savings(tmp_path, config):
    src = make_file(tmp_path / "a.png", size=100)
    conv, _ = _converter(config, FakeCodec(out_size=150))

    result = conv.run(src)

    assert result.saved_bytes == -50
    assert result.compression_ratio == "-50.00%"


def test_processed_files_exist_and_sources_are_untouched(tmp_path, config):
    root = tmp_path / "in"
    srcs = [make_file(root / f"{i}.jpg", size=500 + i) for i in range(3)]
    conv, _ = _converter(config, FakeCodec(out_size=42))

    result = conv.run(root)

    assert result.processed == 3
    for s in srcs:
        assert s.read_bytes() == b"x" * s.stat().st_size
        out = s.with_suffix(".webp")
        assert out.stat().st_size == 42


def test_rerun_skips_and_keeps_bytes(tmp_path, config):
    src = make_file(tmp_path / "a.jpg")
    conv, _ = _converter(config, FakeCodec(out_size=33))
    conv.run(src)
    dst = tmp_path / "a.webp"
    before = dst.read_bytes()

    codec = FakeCodec(out_size=99)
    conv2, _ = _converter(config, codec)
    result = conv2.run(src)

    assert result.skipped == 1
    assert result.processed == 0
    assert codec.calls == []
    assert dst.read_bytes() == before


def test_touching_source_forces_reconversion(tmp_path, config):
    src = make_file(tmp_path / "a.jpg")
    conv, _ = _converter(config, FakeCodec(out_size=33))
    conv.run(src)
    dst = tmp_path / "a.webp"
    t = dst.stat().st_mtime + 5
    os.utime(src, (t, t))

    conv2, _ = _converter(config, FakeCodec(out_size=99))
    result = conv2.run(src)

    assert result.processed == 1
    assert dst.read_bytes() == b"W" * 99


def test_no_images_is_fatal(tmp_path, config):
    root = tmp_path / "in"
    make_file(root / "notes.txt")
    conv, stream = _converter(config, FakeCodec())

    with pytest.raises(NoImagesFound):
        conv.run(root)
    assert stream.getvalue() == ""


def test_window_bound_and_progress_cadence(tmp_path, config):
    root = tmp_path / "in"
    names = [f"{i}.jpg" for i in range(5)]
    for n in names:
        make_file(root / n)
    codec = FakeCodec(delay=0.05)
    conv, stream = _converter(config, codec)

    conv.run(root)

    assert codec.max_in_flight <= 2
    lines = _progress(stream)
    assert [l.split("(")[1].split(")")[0] for l in lines] == ["2/5", "4/5", "5/5"]
    assert lines[-1].startswith("Progress: 100.0% (5/5) | Saved: ")
    assert stream.getvalue().endswith("\n")


def test_windows_do_not_overlap(tmp_path, config):
    root = tmp_path / "in"
    for i in range(5):
        make_file(root / f"{i}.jpg")
    codec = FakeCodec(delay=0.02)
    conv, _ = _converter(config, codec)

    conv.run(root)

    windows = [{"0.jpg", "1.jpg"}, {"2.jpg", "3.jpg"}, {"4.jpg"}]
    ends = {}
    starts = {}
    for i, (kind, name) in enumerate(codec.events):
        (starts if kind == "start" else ends)[name] = i
    for earlier, later in zip(windows, windows[1:]):
        assert max(ends[n] for n in earlier) < min(starts[n] for n in later)


def test_one_failure_in_ten_is_not_fatal(tmp_path, config):
    root = tmp_path / "in"
    for i in range(10):
        make_file(root / f"img{i}.png")
    conv, _ = _converter(config, FakeCodec(fail_on={"img3.png"}))

    result = conv.run(root)

    assert result.processed == 9
    assert len(result.failed) == 1
    assert result.failed[0].file == "img3.png"


def test_recursive_mirrors_into_output_dir(tmp_path, config):
    make_file(tmp_path / "in" / "sub" / "a.jpg")
    conv, _ = _converter(config, FakeCodec())

    result = conv.run(tmp_path / "in", output_dir=tmp_path / "out", recursive=True)

    assert result.processed == 1
    assert (tmp_path / "out" / "sub" / "a.webp").is_file()


def test_scratch_dir_is_removed_after_run(tmp_path, config):
    make_file(tmp_path / "in" / "a.jpg")
    conv, _ = _converter(config, FakeCodec())

    conv.run(tmp_path / "in")

    assert list(config.scratch_directory.iterdir()) == []


def test_scratch_unavailable_is_fatal(tmp_path):
    blocker = make_file(tmp_path / "blocker", size=1)
    make_file(tmp_path / "in" / "a.jpg")
    cfg = RunConfiguration(scratch_directory=blocker / "scratch")
    conv, _ = _converter(cfg, FakeCodec())

    with pytest.raises(ScratchDirectoryUnavailable):
        conv.run(tmp_path / "in")


def test_cancel_stops_before_next_window(tmp_path, config):
    root = tmp_path / "in"
    for i in range(6):
        make_file(root / f"{i}.jpg")
    cancel = threading.Event()

    class CancellingCodec(FakeCodec):
        def encode(self, source, destination, quality):
            super().encode(source, destination, quality)
            cancel.set()

    codec = CancellingCodec()
    conv, _ = _converter(config, codec)

    with pytest.raises(RunCancelled):
        conv.run(root, cancel_event=cancel)

    assert len(codec.calls) == 2
    assert (root / "0.webp").is_file()
    assert not (root / "2.webp").exists()


def test_each_run_starts_fresh(tmp_path, config):
    make_file(tmp_path / "a.jpg")
    make_file(tmp_path / "b.jpg")
    conv, _ = _converter(config, FakeCodec())

    first = conv.run(tmp_path / "a.jpg")
    second = conv.run(tmp_path / "b.jpg")

    assert first.processed == 1
    assert second.total_files == 1
    assert second.processed == 1


def test_stale_scratch_from_killed_runs_is_removed(tmp_path, config):
    make_file(tmp_path / "in" / "a.jpg")
    root = config.scratch_directory
    stale = root / "run-killed"
    live = root / "run-live"
    for d in (stale, live):
        d.mkdir(parents=True)
        (d / "leftover.webp").write_bytes(b"x")
    old = stale.stat().st_mtime - 2 * 24 * 60 * 60
    os.utime(stale, (old, old))
    conv, _ = _converter(config, FakeCodec())

    conv.run(tmp_path / "in")

    assert not stale.exists()
    assert (live / "leftover.webp").exists()
