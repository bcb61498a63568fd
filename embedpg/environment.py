"""Runtime environments: artifact store wiring and command post-processing."""

from __future__ import annotations

import logging
import struct
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol, runtime_checkable

from .models import Version

LOG = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = Path(tempfile.gettempdir()) / "embedpg-artifacts"


class ArtifactError(OSError):
    """Base class for I/O failures while resolving, preparing or launching PostgreSQL."""


class ResolutionError(ArtifactError):
    """Raised when no distribution can be obtained for a version."""


class PreparationError(ArtifactError):
    """Raised when a distribution cannot be turned into runnable binaries."""


class LaunchError(ArtifactError):
    """Raised when the server process fails to start or become ready."""


class Platform(str, Enum):
    LINUX = "linux"
    OSX = "osx"
    WINDOWS = "windows"

    @classmethod
    def detect(cls) -> Platform:
        if sys.platform.startswith("win"):
            return cls.WINDOWS
        if sys.platform == "darwin":
            return cls.OSX
        return cls.LINUX


@dataclass(frozen=True, slots=True)
class Distribution:
    """A concrete artifact: version plus the platform it runs on."""

    version: Version
    platform: Platform
    bitsize: int = 64

    @classmethod
    def detect(cls, version: Version) -> Distribution:
        return cls(version=version, platform=Platform.detect(), bitsize=struct.calcsize("P") * 8)

    @property
    def slug(self) -> str:
        return f"postgresql-{self.version}-{self.platform.value}-x{self.bitsize}"

    def executable_name(self, name: str) -> str:
        return f"{name}.exe" if self.platform is Platform.WINDOWS else name


CommandPostProcessor = Callable[[Distribution, list[str]], list[str]]


def do_nothing(_distribution: Distribution, args: list[str]) -> list[str]:
    return args


@runtime_checkable
class ArtifactFetcher(Protocol):
    """Populates an empty installation directory for a distribution."""

    def fetch(self, distribution: Distribution, target: Path) -> None:
        """Download/extract the distribution so ``target/bin`` holds its binaries."""


class UnavailableFetcher:
    """Fetcher used when no download mechanism is configured."""

    def fetch(self, distribution: Distribution, target: Path) -> None:
        raise ResolutionError(
            f"No PostgreSQL {distribution.version} artifact in '{target}' and no fetcher configured."
        )


class ArtifactStore:
    """Directory of extracted distributions, populated on first use.

    ``pinned`` is informational: it records whether the caller chose the
    directory (``cached_environment``) rather than taking the default. Lookup
    and reuse behave the same either way.
    """

    def __init__(self, directory: Path, *, pinned: bool = False, fetcher: ArtifactFetcher | None = None) -> None:
        self.directory = Path(directory)
        self.pinned = pinned
        self._fetcher = fetcher or UnavailableFetcher()
        self._lock = threading.Lock()
        self._fetch_count = 0

    @property
    def fetch_count(self) -> int:
        """Number of times the fetcher was asked to populate the store."""

        return self._fetch_count

    def installation_dir(self, distribution: Distribution) -> Path:
        return self.directory / distribution.slug

    def is_extracted(self, distribution: Distribution) -> bool:
        bindir = self.installation_dir(distribution) / "bin"
        return all(
            (bindir / distribution.executable_name(name)).is_file()
            for name in ("postgres", "initdb")
        )

    def locate(self, distribution: Distribution) -> Path:
        """Return the installation root, fetching the distribution if missing."""

        target = self.installation_dir(distribution)
        with self._lock:
            if self.is_extracted(distribution):
                LOG.debug("Artifact cache hit", extra={"artifact": distribution.slug, "store": str(self.directory)})
                return target
            self._fetch_count += 1
            LOG.info(
                "Populating artifact store",
                extra={"artifact": distribution.slug, "store": str(self.directory), "pinned": self.pinned},
            )
            target.mkdir(parents=True, exist_ok=True)
            try:
                self._fetcher.fetch(distribution, target)
            except ArtifactError:
                raise
            except OSError as exc:
                raise PreparationError(f"Failed to extract {distribution.slug} into '{target}': {exc}") from exc
            if not self.is_extracted(distribution):
                raise PreparationError(f"Fetcher did not produce binaries for {distribution.slug} in '{target}'.")
            return target


@dataclass(frozen=True, slots=True)
class RuntimeEnvironment:
    """Reusable, instance-independent settings handed to the artifact runtime."""

    store: ArtifactStore
    post_processor: CommandPostProcessor = do_nothing

    def adjust_command(self, distribution: Distribution, args: list[str]) -> list[str]:
        return self.post_processor(distribution, list(args))


def runas_command(platform: Platform, args: list[str]) -> list[str]:
    """Wrap a ``postgres.exe`` invocation so Windows runs it without admin rights."""

    if platform is Platform.WINDOWS and args and args[0].endswith("postgres.exe"):
        return ["runas", "/trustlevel:0x20000", '"{}"'.format(" ".join(args))]
    return args


def is_elevated(platform: Platform | None = None) -> bool:
    """Best-effort check whether the current Windows user holds admin rights."""

    if (platform or Platform.detect()) is not Platform.WINDOWS:
        return False
    try:
        result = subprocess.run(["net", "session"], capture_output=True, timeout=10, check=False)
    except (OSError, subprocess.SubprocessError) as exc:
        LOG.debug("Privilege detection failed; assuming unprivileged: %s", exc)
        return False
    return result.returncode == 0


def privileged_runas_postprocessor(
    platform: Platform | None = None,
    *,
    elevated: Callable[[Platform], bool] = is_elevated,
) -> CommandPostProcessor:
    """Return a post-processor dropping privileges when running elevated on Windows."""

    platform = platform or Platform.detect()
    if platform is Platform.WINDOWS and elevated(platform):
        LOG.info("Elevated Windows session detected; postgres will run through runas")

        def _run_without_privileges(distribution: Distribution, args: list[str]) -> list[str]:
            return runas_command(distribution.platform, args)

        return _run_without_privileges

    return do_nothing


def default_environment(*, fetcher: ArtifactFetcher | None = None) -> RuntimeEnvironment:
    """Environment keeping artifacts in the system temporary directory."""

    return RuntimeEnvironment(
        store=ArtifactStore(DEFAULT_ARTIFACT_DIR, pinned=False, fetcher=fetcher),
        post_processor=privileged_runas_postprocessor(),
    )


def cached_environment(path: str | Path, *, fetcher: ArtifactFetcher | None = None) -> RuntimeEnvironment:
    """Environment pinned to ``path``; an existing extraction there is reused."""

    return RuntimeEnvironment(
        store=ArtifactStore(Path(path), pinned=True, fetcher=fetcher),
        post_processor=privileged_runas_postprocessor(),
    )


__all__ = [
    "ArtifactError",
    "ArtifactFetcher",
    "ArtifactStore",
    "CommandPostProcessor",
    "DEFAULT_ARTIFACT_DIR",
    "Distribution",
    "LaunchError",
    "Platform",
    "PreparationError",
    "ResolutionError",
    "RuntimeEnvironment",
    "UnavailableFetcher",
    "cached_environment",
    "default_environment",
    "do_nothing",
    "is_elevated",
    "privileged_runas_postprocessor",
    "runas_command",
]
