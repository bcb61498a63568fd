"""Lifecycle manager for a single embedded PostgreSQL instance."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Iterable

from .artifacts import ArtifactRuntime, LocalArtifactRuntime, ProcessHandle
from .cleanup import CleanupReport, apply_cleanup, sweep
from .environment import RuntimeEnvironment, default_environment
from .models import (
    DEFAULT_DB_NAME,
    DEFAULT_HOST,
    DEFAULT_PASSWORD,
    DEFAULT_USER,
    PRODUCTION,
    PostgresConfig,
    Timeout,
    Version,
)
from .ports import PortAllocator, SocketPortAllocator

LOG = logging.getLogger(__name__)

URL_TEMPLATE = "jdbc:postgresql://{host}:{port}/{db_name}?user={user}&password={password}"


class LifecycleError(RuntimeError):
    """Raised when start/stop is called in the wrong lifecycle state."""


class LifecycleState(str, Enum):
    UNSTARTED = "unstarted"
    RUNNING = "running"
    STOPPED = "stopped"


def build_url(host: str, port: int, db_name: str, user: str, password: str) -> str:
    """Format the JDBC-style connection URL; values are substituted verbatim."""

    return URL_TEMPLATE.format(host=host, port=port, db_name=db_name, user=user, password=password)


def format_connection_url(config: PostgresConfig) -> str:
    return build_url(
        config.net.host,
        config.net.port,
        config.storage.db_name,
        config.credentials.username,
        config.credentials.password,
    )


class EmbeddedPostgres:
    """Starts one PostgreSQL server, exposes its URL and tears it down.

    An instance goes ``UNSTARTED -> RUNNING -> STOPPED`` exactly once; create a
    new instance to start again. Not safe for concurrent use.
    """

    def __init__(
        self,
        version: Version | str = PRODUCTION,
        data_dir: str | Path | None = None,
        *,
        runtime: ArtifactRuntime | None = None,
        port_allocator: PortAllocator | None = None,
        timeout: Timeout | None = None,
    ) -> None:
        self._version = Version.parse(version)
        self._data_dir = Path(data_dir) if data_dir is not None else None
        self._runtime = runtime or LocalArtifactRuntime()
        self._port_allocator = port_allocator
        self._timeout = timeout or Timeout()
        self._state = LifecycleState.UNSTARTED
        self._config: PostgresConfig | None = None
        self._process: ProcessHandle | None = None

    @property
    def version(self) -> Version:
        return self._version

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def config(self) -> PostgresConfig | None:
        """Configuration of the running instance; ``None`` before start."""

        return self._config

    @property
    def process(self) -> ProcessHandle | None:
        """Process handle while running; ``None`` before start and after stop."""

        return self._process

    @property
    def connection_url(self) -> str | None:
        if self._config is None:
            return None
        return format_connection_url(self._config)

    def start(
        self,
        environment: RuntimeEnvironment | None = None,
        host: str = DEFAULT_HOST,
        port: int | None = None,
        db_name: str = DEFAULT_DB_NAME,
        user: str = DEFAULT_USER,
        password: str = DEFAULT_PASSWORD,
        additional_params: Iterable[str] | None = None,
    ) -> str:
        """Start the server and return its connection URL.

        Raises ``LifecycleError`` unless the manager is unstarted and
        ``OSError`` subclasses for resolution, preparation or launch failures;
        after a failure the manager is still unstarted and may be retried.
        """

        if self._state is not LifecycleState.UNSTARTED:
            raise LifecycleError(f"Cannot start instance in state '{self._state.value}'.")
        if port is None:
            allocator = self._port_allocator or SocketPortAllocator(host)
            port = allocator.acquire_free_port()
        environment = environment or default_environment()
        config = PostgresConfig.build(
            self._version,
            host=host,
            port=port,
            db_name=db_name,
            user=user,
            password=password,
            data_dir=self._data_dir,
            timeout=self._timeout,
            additional_init_params=additional_params,
        )
        LOG.info(
            "Starting embedded postgres",
            extra={"version": str(config.version), "host": host, "port": port, "db_name": db_name},
        )
        try:
            distribution = self._runtime.resolve(config.version)
            executable = self._runtime.prepare(config, environment, distribution)
            process = executable.launch()
        except BaseException:
            if config.storage.transient:
                sweep(config.storage.directory)
            raise
        self._config = config
        self._process = process
        self._state = LifecycleState.RUNNING
        return format_connection_url(config)

    def stop(self) -> CleanupReport:
        """Stop the server and remove transient storage.

        Cleanup failures do not raise; they are returned in the report and
        emitted as ``CleanupWarning``.
        """

        process = self._process
        if self._state is not LifecycleState.RUNNING or process is None:
            raise LifecycleError("Cannot stop not started instance!")
        self._process = None
        self._state = LifecycleState.STOPPED
        try:
            process.terminate(process.config.timeout.shutdown)
        finally:
            report = apply_cleanup(process.config.storage)
        LOG.info("Embedded postgres stopped", extra={"port": process.config.net.port, "cleanup": report.summary()})
        return report

    def close(self) -> None:
        """Stop if running; a no-op otherwise."""

        if self._state is LifecycleState.RUNNING:
            self.stop()

    def __enter__(self) -> EmbeddedPostgres:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"EmbeddedPostgres(version={self._version}, state={self._state.value})"


__all__ = [
    "EmbeddedPostgres",
    "LifecycleError",
    "LifecycleState",
    "URL_TEMPLATE",
    "build_url",
    "format_connection_url",
]
