"""Immutable configuration models describing one embedded PostgreSQL instance."""

from __future__ import annotations

import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

DEFAULT_USER = "postgres"
DEFAULT_PASSWORD = "postgres"
DEFAULT_DB_NAME = "postgres"
DEFAULT_HOST = "localhost"
DEFAULT_ADD_PARAMS: tuple[str, ...] = (
    "-E",
    "SQL_ASCII",
    "--locale=C",
    "--lc-collate=C",
    "--lc-ctype=C",
)

DEFAULT_STARTUP_TIMEOUT = 15.0
DEFAULT_SHUTDOWN_TIMEOUT = 10.0

_RELEASE_PATTERN = re.compile(r"^\d+(\.\d+){0,2}(-\d+)?$")
_PRODUCTION_ALIASES = frozenset({"latest", "production"})


class ConfigurationError(ValueError):
    """Raised when an instance configuration is invalid."""


@dataclass(frozen=True, slots=True)
class Version:
    """A PostgreSQL release identifier such as ``16.4-1``."""

    release: str

    def __post_init__(self) -> None:
        if not _RELEASE_PATTERN.match(self.release):
            raise ConfigurationError(f"Malformed PostgreSQL version '{self.release}'.")

    @property
    def major(self) -> int:
        return int(self.release.split(".", 1)[0].split("-", 1)[0])

    @classmethod
    def parse(cls, value: Version | str) -> Version:
        """Accept a Version, a release string, or a production alias."""

        if isinstance(value, Version):
            return value
        text = str(value).strip()
        if text.lower() in _PRODUCTION_ALIASES:
            return PRODUCTION
        return cls(text)

    def __str__(self) -> str:
        return self.release


V16 = Version("16.4-1")
V15 = Version("15.8-1")
V14 = Version("14.13-1")
PRODUCTION = V16


@dataclass(frozen=True, slots=True)
class Net:
    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigurationError("Host must not be empty.")
        if not 1 <= self.port <= 65535:
            raise ConfigurationError(f"Port {self.port} is outside 1-65535.")


@dataclass(frozen=True, slots=True)
class Storage:
    """Data directory for the cluster; transient directories are deleted on stop."""

    db_name: str
    directory: Path
    transient: bool

    @classmethod
    def create(cls, db_name: str, directory: str | Path | None = None) -> Storage:
        if not db_name:
            raise ConfigurationError("Database name must not be empty.")
        if directory is None:
            return cls(db_name=db_name, directory=Path(tempfile.mkdtemp(prefix="embedpg-")), transient=True)
        return cls(db_name=db_name, directory=Path(directory), transient=False)


@dataclass(frozen=True, slots=True)
class Timeout:
    """Startup/shutdown wait bounds in seconds."""

    startup: float = DEFAULT_STARTUP_TIMEOUT
    shutdown: float = DEFAULT_SHUTDOWN_TIMEOUT

    def __post_init__(self) -> None:
        if self.startup <= 0 or self.shutdown <= 0:
            raise ConfigurationError("Timeouts must be positive.")


@dataclass(frozen=True, slots=True)
class Credentials:
    username: str
    password: str


@dataclass(frozen=True, slots=True)
class PostgresConfig:
    """Everything needed to initialise and run one PostgreSQL cluster."""

    version: Version
    net: Net
    storage: Storage
    timeout: Timeout
    credentials: Credentials
    additional_init_params: tuple[str, ...] = DEFAULT_ADD_PARAMS

    @classmethod
    def build(
        cls,
        version: Version | str,
        *,
        host: str,
        port: int,
        db_name: str,
        user: str,
        password: str,
        data_dir: str | Path | None = None,
        timeout: Timeout | None = None,
        additional_init_params: Iterable[str] | None = None,
    ) -> PostgresConfig:
        """Validate parameters, then allocate storage.

        The temporary directory is only created once every other field passed
        validation, so a rejected configuration leaves nothing on disk.
        """

        parsed_version = Version.parse(version)
        net = Net(host, port)
        params = tuple(DEFAULT_ADD_PARAMS if additional_init_params is None else additional_init_params)
        storage = Storage.create(db_name, data_dir)
        return cls(
            version=parsed_version,
            net=net,
            storage=storage,
            timeout=timeout or Timeout(),
            credentials=Credentials(user, password),
            additional_init_params=params,
        )

    def dsn(self) -> str:
        """Connection string understood by asyncpg and libpq clients."""

        return (
            f"postgresql://{self.credentials.username}:{self.credentials.password}"
            f"@{self.net.host}:{self.net.port}/{self.storage.db_name}"
        )


__all__ = [
    "ConfigurationError",
    "Credentials",
    "DEFAULT_ADD_PARAMS",
    "DEFAULT_DB_NAME",
    "DEFAULT_HOST",
    "DEFAULT_PASSWORD",
    "DEFAULT_USER",
    "Net",
    "PRODUCTION",
    "PostgresConfig",
    "Storage",
    "Timeout",
    "V14",
    "V15",
    "V16",
    "Version",
]
