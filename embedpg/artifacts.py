"""Artifact runtime: turns a config into a running PostgreSQL server process."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any, Coroutine, Protocol, runtime_checkable

import asyncpg

from .environment import (
    ArtifactError,
    Distribution,
    LaunchError,
    Platform,
    PreparationError,
    ResolutionError,
    RuntimeEnvironment,
)
from .models import PRODUCTION, ConfigurationError, PostgresConfig, Version

LOG = logging.getLogger(__name__)

_RETRY_INTERVAL = 0.1
_MAINTENANCE_DB = "postgres"
_SERVER_VERSION = re.compile(r"\(PostgreSQL\)\s+(\d+)")


@runtime_checkable
class ProcessHandle(Protocol):
    """A live server process plus the configuration it was started with."""

    @property
    def config(self) -> PostgresConfig: ...

    def is_running(self) -> bool: ...

    def terminate(self, timeout: float) -> None:
        """Stop the process gracefully, waiting at most ``timeout`` seconds."""


@runtime_checkable
class Executable(Protocol):
    def launch(self) -> ProcessHandle:
        """Start the server and block until it accepts connections."""


@runtime_checkable
class ArtifactRuntime(Protocol):
    """Resolves, prepares and starts PostgreSQL distributions."""

    def resolve(self, version: Version) -> Distribution: ...

    def prepare(
        self,
        config: PostgresConfig,
        environment: RuntimeEnvironment,
        distribution: Distribution,
    ) -> Executable: ...


class PostgresProcess:
    """Handle for a ``postgres`` server started by :class:`PostgresExecutable`."""

    def __init__(self, popen: subprocess.Popen[bytes], config: PostgresConfig, log_path: Path | None = None) -> None:
        self._popen = popen
        self._config = config
        self._log_path = log_path

    @property
    def config(self) -> PostgresConfig:
        return self._config

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def is_running(self) -> bool:
        return self._popen.poll() is None

    def terminate(self, timeout: float) -> None:
        if self.is_running():
            LOG.debug("Stopping postgres", extra={"pid": self.pid, "port": self._config.net.port})
            if os.name == "nt":
                self._popen.terminate()
            else:
                # SIGINT requests a fast shutdown: open sessions are disconnected.
                self._popen.send_signal(signal.SIGINT)
            try:
                self._popen.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                LOG.warning("postgres did not stop within %.1fs; killing", timeout, extra={"pid": self.pid})
                self._popen.kill()
                self._popen.wait()
        if self._log_path is not None:
            self._log_path.unlink(missing_ok=True)


class PostgresExecutable:
    """Prepared binaries for one config; ``launch`` runs initdb and postgres."""

    def __init__(
        self,
        config: PostgresConfig,
        distribution: Distribution,
        environment: RuntimeEnvironment,
        bindir: Path,
    ) -> None:
        self.config = config
        self.distribution = distribution
        self.environment = environment
        self.bindir = bindir

    def binary(self, name: str) -> Path:
        return self.bindir / self.distribution.executable_name(name)

    def initdb_command(self, pwfile: Path) -> list[str]:
        return [
            str(self.binary("initdb")),
            "-D",
            str(self.config.storage.directory),
            "-U",
            self.config.credentials.username,
            f"--pwfile={pwfile}",
            "--auth=md5",
            *self.config.additional_init_params,
        ]

    def server_command(self) -> list[str]:
        command = [
            str(self.binary("postgres")),
            "-D",
            str(self.config.storage.directory),
            "-p",
            str(self.config.net.port),
            "-h",
            self.config.net.host,
        ]
        if self.distribution.platform is not Platform.WINDOWS:
            command.extend(["-k", str(self.config.storage.directory)])
        return command

    def launch(self) -> PostgresProcess:
        deadline = time.monotonic() + self.config.timeout.startup
        if not (self.config.storage.directory / "PG_VERSION").exists():
            self._initdb()
        process = self._spawn()
        try:
            _run_blocking(self._await_ready(process, deadline))
        except BaseException:
            process.terminate(self.config.timeout.shutdown)
            raise
        LOG.info(
            "postgres is ready",
            extra={"pid": process.pid, "host": self.config.net.host, "port": self.config.net.port},
        )
        return process

    def _initdb(self) -> None:
        self.config.storage.directory.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile("w", prefix="embedpg-pw-", delete=False) as handle:
            handle.write(self.config.credentials.password + "\n")
            pwfile = Path(handle.name)
        command = self.environment.adjust_command(self.distribution, self.initdb_command(pwfile))
        LOG.debug("Running initdb", extra={"command": command})
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.config.timeout.startup,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise LaunchError(f"initdb failed to run: {exc}") from exc
        finally:
            pwfile.unlink(missing_ok=True)
        if result.returncode != 0:
            raise LaunchError(f"initdb exited with {result.returncode}: {result.stderr.strip()}")

    def _spawn(self) -> PostgresProcess:
        command = self.environment.adjust_command(self.distribution, self.server_command())
        log_file = tempfile.NamedTemporaryFile(prefix="embedpg-", suffix=".log", delete=False)
        log_path = Path(log_file.name)
        LOG.debug("Starting postgres", extra={"command": command, "log": str(log_path)})
        try:
            with log_file:
                popen = subprocess.Popen(command, stdout=log_file, stderr=subprocess.STDOUT)
        except OSError as exc:
            log_path.unlink(missing_ok=True)
            raise LaunchError(f"Failed to start postgres: {exc}") from exc
        return PostgresProcess(popen, self.config, log_path)

    async def _await_ready(self, process: PostgresProcess, deadline: float) -> None:
        while True:
            if not process.is_running():
                raise LaunchError(f"postgres exited during startup: {_tail(process.log_path)}")
            try:
                conn = await asyncpg.connect(**self._connect_kwargs(deadline))
            except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
                if time.monotonic() >= deadline:
                    raise LaunchError(
                        f"postgres not ready after {self.config.timeout.startup:.1f}s: {exc}"
                    ) from exc
                await asyncio.sleep(_RETRY_INTERVAL)
                continue
            try:
                await self._ensure_database(conn)
            finally:
                await conn.close()
            return

    async def _ensure_database(self, conn: asyncpg.Connection) -> None:
        db_name = self.config.storage.db_name
        if db_name == _MAINTENANCE_DB:
            return
        try:
            exists = await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", db_name)
            if not exists:
                quoted = db_name.replace('"', '""')
                await conn.execute(f'CREATE DATABASE "{quoted}"')
        except asyncpg.PostgresError as exc:
            raise LaunchError(f"Failed to create database '{db_name}': {exc}") from exc

    def _connect_kwargs(self, deadline: float) -> dict[str, object]:
        return {
            "host": self.config.net.host,
            "port": self.config.net.port,
            "user": self.config.credentials.username,
            "password": self.config.credentials.password,
            "database": _MAINTENANCE_DB,
            "timeout": max(0.5, min(3.0, deadline - time.monotonic())),
        }


class LocalArtifactRuntime:
    """Runs distributions from the environment's store or an installed PostgreSQL."""

    def __init__(self, *, use_system_binaries: bool = True) -> None:
        self._use_system_binaries = use_system_binaries

    def resolve(self, version: Version | str) -> Distribution:
        try:
            parsed = Version.parse(version)
        except ConfigurationError as exc:
            raise ResolutionError(str(exc)) from exc
        return Distribution.detect(parsed)

    def prepare(
        self,
        config: PostgresConfig,
        environment: RuntimeEnvironment,
        distribution: Distribution | None = None,
    ) -> PostgresExecutable:
        distribution = distribution or self.resolve(config.version)
        system_bindir: Path | None = None
        try:
            bindir = environment.store.locate(distribution) / "bin"
        except ResolutionError:
            system = self._system_bindir() if self._use_system_binaries else None
            if system is None:
                raise
            LOG.info("Using installed PostgreSQL binaries", extra={"bindir": str(system)})
            bindir = system_bindir = system
        executable = PostgresExecutable(config, distribution, environment, bindir)
        for name in ("initdb", "postgres"):
            if not executable.binary(name).is_file():
                raise PreparationError(f"Missing '{name}' binary in '{bindir}'.")
        if bindir == system_bindir:
            self._check_installed_version(executable)
        return executable

    @staticmethod
    def _check_installed_version(executable: PostgresExecutable) -> None:
        """Reject installed binaries whose major version differs from the requested one.

        The production alias accepts whatever is installed.
        """

        requested = executable.distribution.version
        if requested == PRODUCTION:
            return
        postgres = executable.binary("postgres")
        try:
            result = subprocess.run(
                [str(postgres), "--version"], capture_output=True, text=True, timeout=10, check=True
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise ResolutionError(f"Cannot determine the version of '{postgres}': {exc}") from exc
        match = _SERVER_VERSION.search(result.stdout)
        if match is None:
            raise ResolutionError(f"Unrecognised version output from '{postgres}': {result.stdout.strip()!r}")
        installed = int(match.group(1))
        if installed != requested.major:
            raise ResolutionError(
                f"Installed PostgreSQL {installed} in '{executable.bindir}' does not match requested {requested}."
            )

    @staticmethod
    def _system_bindir() -> Path | None:
        pg_config = shutil.which("pg_config")
        if pg_config:
            try:
                result = subprocess.run(
                    [pg_config, "--bindir"], capture_output=True, text=True, timeout=10, check=True
                )
            except (OSError, subprocess.SubprocessError) as exc:
                LOG.debug("pg_config lookup failed: %s", exc)
            else:
                return Path(result.stdout.strip())
        postgres = shutil.which("postgres")
        if postgres:
            return Path(postgres).resolve().parent
        return None


def _run_blocking(coro: Coroutine[Any, Any, None]) -> None:
    """Run a coroutine to completion, even when called from inside an event loop."""

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(coro)
        return
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        pool.submit(asyncio.run, coro).result()


def _tail(path: Path | None, lines: int = 20) -> str:
    if path is None:
        return "no server log"
    try:
        content = path.read_text(errors="replace")
    except OSError:
        return "server log unavailable"
    return "\n".join(content.strip().splitlines()[-lines:]) or "server log empty"


__all__ = [
    "ArtifactError",
    "ArtifactRuntime",
    "Executable",
    "LaunchError",
    "LocalArtifactRuntime",
    "PostgresExecutable",
    "PostgresProcess",
    "PreparationError",
    "ProcessHandle",
    "ResolutionError",
]
