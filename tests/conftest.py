import pytest

import catall


@pytest.fixture
def sample_tree(tmp_path):
    """A small project: one text file, one binary, one ignored file."""
    (tmp_path / "a.txt").write_text("hello")
    (tmp_path / "b.bin").write_bytes(b"\x00\x01\x02\xff" * 64)
    (tmp_path / ".gitignore").write_text("ignored.txt\n")
    (tmp_path / "ignored.txt").write_text("should not show up")
    return tmp_path


@pytest.fixture
def in_tree(sample_tree, monkeypatch):
    """Run from inside sample_tree with stdout treated as a terminal."""
    monkeypatch.chdir(sample_tree)
    monkeypatch.setattr(catall, "resolve_output_target", lambda fd=1: None)
    return sample_tree
