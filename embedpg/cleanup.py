"""Best-effort removal of transient data directories."""

from __future__ import annotations

import logging
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from .models import Storage

LOG = logging.getLogger(__name__)


class CleanupWarning(UserWarning):
    """Emitted when some entries of a transient data directory survived stop()."""


@dataclass(frozen=True, slots=True)
class CleanupReport:
    """Outcome of a directory sweep."""

    root: Path | None = None
    removed: tuple[Path, ...] = ()
    failures: tuple[tuple[Path, OSError], ...] = ()
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary(self) -> str:
        if self.skipped:
            return "cleanup skipped"
        if self.ok:
            return f"removed {len(self.removed)} entries under '{self.root}'"
        details = "; ".join(f"{path}: {exc}" for path, exc in self.failures)
        return f"failed to remove {len(self.failures)} entries under '{self.root}': {details}"


def iter_deepest_first(root: Path, onerror: Callable[[OSError], None] | None = None) -> Iterator[Path]:
    """Yield every entry below ``root`` (and ``root`` itself) children before parents."""

    for dirpath, dirnames, filenames in os.walk(root, topdown=False, onerror=onerror):
        base = Path(dirpath)
        for name in filenames:
            yield base / name
        for name in dirnames:
            yield base / name
    yield root


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        path.rmdir()
    else:
        path.unlink()


def sweep(root: Path) -> CleanupReport:
    """Delete ``root`` recursively, collecting per-entry failures instead of aborting."""

    removed: list[Path] = []
    failures: list[tuple[Path, OSError]] = []

    def _walk_failed(exc: OSError) -> None:
        failures.append((Path(exc.filename or root), exc))

    for entry in iter_deepest_first(root, _walk_failed):
        if not os.path.lexists(entry):
            continue
        try:
            _remove(entry)
        except OSError as exc:
            failures.append((entry, exc))
        else:
            removed.append(entry)
    return CleanupReport(root=root, removed=tuple(removed), failures=tuple(failures))


def apply_cleanup(storage: Storage) -> CleanupReport:
    """Sweep transient storage; persistent directories are left untouched."""

    if not storage.transient:
        LOG.debug("Keeping persistent data directory", extra={"directory": str(storage.directory)})
        return CleanupReport(root=storage.directory, skipped=True)
    if not storage.directory.exists():
        return CleanupReport(root=storage.directory)
    report = sweep(storage.directory)
    if report.ok:
        LOG.debug("Removed transient data directory", extra={"directory": str(storage.directory)})
    else:
        LOG.warning("Transient data directory not fully removed: %s", report.summary())
        warnings.warn(report.summary(), CleanupWarning, stacklevel=3)
    return report


__all__ = ["CleanupReport", "CleanupWarning", "apply_cleanup", "iter_deepest_first", "sweep"]
