"""Tests for transient storage cleanup."""

from __future__ import annotations

from pathlib import Path

import pytest

from embedpg import cleanup as cleanup_module
from embedpg.cleanup import CleanupWarning, apply_cleanup, iter_deepest_first, sweep
from embedpg.models import Storage


def _populate(root: Path) -> None:
    (root / "base" / "1").mkdir(parents=True)
    (root / "base" / "1" / "1259").write_bytes(b"\x00" * 16)
    (root / "global").mkdir()
    (root / "global" / "pg_control").write_bytes(b"ctrl")
    (root / "PG_VERSION").write_text("16\n")


def test_iter_deepest_first_yields_children_before_parents(tmp_path: Path) -> None:
    root = tmp_path / "data"
    root.mkdir()
    _populate(root)

    entries = list(iter_deepest_first(root))

    assert entries[-1] == root
    assert entries.index(root / "base" / "1" / "1259") < entries.index(root / "base" / "1")
    assert entries.index(root / "base" / "1") < entries.index(root / "base")


def test_sweep_removes_tree(tmp_path: Path) -> None:
    root = tmp_path / "data"
    root.mkdir()
    _populate(root)

    report = sweep(root)

    assert report.ok
    assert not root.exists()
    assert root in report.removed


def test_sweep_continues_past_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root = tmp_path / "data"
    root.mkdir()
    _populate(root)
    stubborn = root / "global" / "pg_control"
    original_remove = cleanup_module._remove

    def _remove(path: Path) -> None:
        if path == stubborn:
            raise PermissionError("locked")
        original_remove(path)

    monkeypatch.setattr(cleanup_module, "_remove", _remove)

    report = sweep(root)

    assert not report.ok
    failed = [path for path, _ in report.failures]
    assert stubborn in failed
    assert not (root / "base").exists()
    assert not (root / "PG_VERSION").exists()
    assert stubborn.exists()
    assert "locked" in report.summary()


def test_sweep_skips_entries_deleted_externally(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root = tmp_path / "data"
    root.mkdir()
    _populate(root)
    vanished = root / "PG_VERSION"
    original_iter = cleanup_module.iter_deepest_first

    def _iter(path: Path, onerror=None):  # type: ignore[no-untyped-def]
        entries = list(original_iter(path, onerror))
        vanished.unlink()
        yield from entries

    monkeypatch.setattr(cleanup_module, "iter_deepest_first", _iter)

    report = sweep(root)

    assert report.ok
    assert not root.exists()
    assert vanished not in report.removed


def test_apply_cleanup_leaves_persistent_storage(tmp_path: Path) -> None:
    root = tmp_path / "data"
    root.mkdir()
    _populate(root)
    storage = Storage(db_name="postgres", directory=root, transient=False)

    report = apply_cleanup(storage)

    assert report.skipped is True
    assert (root / "global" / "pg_control").read_bytes() == b"ctrl"


def test_apply_cleanup_warns_on_partial_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root = tmp_path / "data"
    root.mkdir()
    _populate(root)

    def _remove(path: Path) -> None:
        raise PermissionError("denied")

    monkeypatch.setattr(cleanup_module, "_remove", _remove)
    storage = Storage(db_name="postgres", directory=root, transient=True)

    with pytest.warns(CleanupWarning, match="denied"):
        report = apply_cleanup(storage)

    assert len(report.failures) == len(list(iter_deepest_first(root)))


def test_apply_cleanup_tolerates_missing_directory(tmp_path: Path) -> None:
    storage = Storage(db_name="postgres", directory=tmp_path / "gone", transient=True)

    report = apply_cleanup(storage)

    assert report.ok
    assert report.removed == ()
