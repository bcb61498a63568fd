"""Embedded PostgreSQL instances for automated tests."""

from __future__ import annotations

__version__ = "0.1.0"

from .artifacts import (
    ArtifactRuntime,
    Executable,
    LocalArtifactRuntime,
    PostgresExecutable,
    PostgresProcess,
    ProcessHandle,
)
from .cleanup import CleanupReport, CleanupWarning
from .environment import (
    ArtifactError,
    ArtifactFetcher,
    ArtifactStore,
    Distribution,
    LaunchError,
    Platform,
    PreparationError,
    ResolutionError,
    RuntimeEnvironment,
    cached_environment,
    default_environment,
)
from .manager import EmbeddedPostgres, LifecycleError, LifecycleState, build_url, format_connection_url
from .models import (
    DEFAULT_ADD_PARAMS,
    DEFAULT_DB_NAME,
    DEFAULT_HOST,
    DEFAULT_PASSWORD,
    DEFAULT_USER,
    PRODUCTION,
    ConfigurationError,
    Credentials,
    Net,
    PostgresConfig,
    Storage,
    Timeout,
    Version,
)
from .ports import PortAllocationError, PortAllocator, SocketPortAllocator, find_free_port

__all__ = [
    "ArtifactError",
    "ArtifactFetcher",
    "ArtifactRuntime",
    "ArtifactStore",
    "CleanupReport",
    "CleanupWarning",
    "ConfigurationError",
    "Credentials",
    "DEFAULT_ADD_PARAMS",
    "DEFAULT_DB_NAME",
    "DEFAULT_HOST",
    "DEFAULT_PASSWORD",
    "DEFAULT_USER",
    "Distribution",
    "EmbeddedPostgres",
    "Executable",
    "LaunchError",
    "LifecycleError",
    "LifecycleState",
    "LocalArtifactRuntime",
    "Net",
    "PRODUCTION",
    "Platform",
    "PortAllocationError",
    "PortAllocator",
    "PostgresConfig",
    "PostgresExecutable",
    "PostgresProcess",
    "PreparationError",
    "ProcessHandle",
    "ResolutionError",
    "RuntimeEnvironment",
    "SocketPortAllocator",
    "Storage",
    "Timeout",
    "Version",
    "build_url",
    "cached_environment",
    "default_environment",
    "find_free_port",
    "format_connection_url",
]
