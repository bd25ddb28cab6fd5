import itertools
import os
import re
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from catall import CandidateFilter, CatConfig, resolve_output_target

ROOT = Path("/project").absolute()

PATHS = [
    ROOT / "src" / "main.go",
    ROOT / "README.md",
    ROOT / "src" / "util" / "strings.go",
    ROOT / "Makefile",
    ROOT / ".gitignore",
    ROOT / "src" / ".ignore",
]


def make_filter(**kwargs):
    return CandidateFilter(CatConfig(root_dir=ROOT, **kwargs))


def test_output_is_sorted_for_every_arrival_order():
    expected = sorted(PATHS[:4], key=str)
    for order in itertools.permutations(PATHS[:4]):
        assert make_filter().collect(list(order) + PATHS[4:]) == expected


def test_sort_is_by_path_string():
    # "src-old" sorts before "src/" byte-wise, unlike a per-component Path sort
    paths = [ROOT / "src" / "a.go", ROOT / "src-old" / "a.go"]
    assert make_filter().collect(paths) == [ROOT / "src-old" / "a.go", ROOT / "src" / "a.go"]


def test_ignore_files_never_returned():
    result = make_filter().collect(PATHS)
    assert all(p.name not in (".gitignore", ".ignore") for p in result)


def test_ignore_files_dropped_even_when_filter_matches_them():
    result = make_filter(filter_re=re.compile(r"ignore$")).collect(PATHS)
    assert result == []


def test_filter_regex_keeps_only_matches():
    result = make_filter(filter_re=re.compile(r"\.go$")).collect(PATHS)
    assert result == sorted((PATHS[0], PATHS[2]), key=str)
    assert all(p.suffix == ".go" for p in result)


def test_filter_matches_anywhere_in_absolute_path():
    result = make_filter(filter_re=re.compile(r"util")).collect(PATHS)
    assert result == [ROOT / "src" / "util" / "strings.go"]


def test_output_target_is_excluded():
    target = ROOT / "README.md"
    result = make_filter(output_target=target).collect(PATHS)
    assert target not in result
    assert ROOT / "Makefile" in result


def test_relative_locations_are_made_absolute(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = CandidateFilter(CatConfig(root_dir=tmp_path)).collect(["./b.txt", "a.txt"])
    cwd = Path.cwd()
    assert result == [cwd / "a.txt", cwd / "b.txt"]


def test_unresolvable_location_is_dropped():
    real_absolute = Path.absolute

    def flaky_absolute(self):
        if self.name == "x":
            raise OSError("cwd gone")
        return real_absolute(self)

    with patch.object(Path, "absolute", flaky_absolute):
        assert make_filter().collect(["x", PATHS[3]]) == [PATHS[3]]


def test_should_include_reports_reason():
    ok, reason = make_filter(filter_re=re.compile(r"\.py$")).should_include(PATHS[0])
    assert not ok
    assert "No match" in reason


# -- output target resolution -------------------------------------------------

@pytest.mark.skipif(not os.path.isdir("/proc/self/fd"), reason="needs /proc")
def test_resolve_output_target_for_regular_file(tmp_path):
    out = tmp_path / "out.txt"
    with open(out, "w") as f:
        assert resolve_output_target(f.fileno()) == out.resolve()


@pytest.mark.skipif(not os.path.isdir("/proc/self/fd"), reason="needs /proc")
def test_resolve_output_target_for_pipe_is_none():
    read_fd, write_fd = os.pipe()
    try:
        assert resolve_output_target(write_fd) is None
    finally:
        os.close(read_fd)
        os.close(write_fd)


def test_resolve_output_target_for_terminal_is_none():
    tty = os.stat_result((stat.S_IFCHR | 0o620, 0, 0, 1, 0, 0, 0, 0, 0, 0))
    with patch("catall.os.fstat", return_value=tty):
        assert resolve_output_target(1) is None


def test_resolve_output_target_for_closed_fd_is_none():
    with patch("catall.os.fstat", side_effect=OSError("bad fd")):
        assert resolve_output_target(99) is None


def test_resolve_output_target_unsupported_platform_is_none():
    regular = os.stat_result((stat.S_IFREG | 0o644, 0, 0, 1, 0, 0, 0, 0, 0, 0))
    with patch("catall.os.fstat", return_value=regular), \
            patch("catall._fd_path", return_value=None):
        assert resolve_output_target(1) is None


def test_resolve_output_target_returns_path():
    regular = os.stat_result((stat.S_IFREG | 0o644, 0, 0, 1, 0, 0, 0, 0, 0, 0))
    with patch("catall.os.fstat", return_value=regular), \
            patch("catall._fd_path", return_value="/work/dump.txt"):
        assert resolve_output_target(1) == Path("/work/dump.txt")
