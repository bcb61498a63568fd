"""pytest fixtures exposing a session-wide embedded PostgreSQL server."""

from __future__ import annotations

import logging
from typing import Iterator

import pytest

from .config import load_settings
from .environment import RuntimeEnvironment, cached_environment
from .manager import EmbeddedPostgres

LOG = logging.getLogger(__name__)


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("embedpg", "embedded PostgreSQL")
    group.addoption(
        "--embedpg-cache-dir",
        default=None,
        help="Directory caching extracted PostgreSQL binaries across runs.",
    )
    group.addoption(
        "--embedpg-version",
        default=None,
        help="PostgreSQL release to run (default from settings, else latest).",
    )


@pytest.fixture(scope="session")
def embedded_postgres_environment(pytestconfig: pytest.Config) -> RuntimeEnvironment:
    cache_dir = pytestconfig.getoption("embedpg_cache_dir")
    if cache_dir:
        return cached_environment(cache_dir)
    return load_settings().environment()


@pytest.fixture(scope="session")
def embedded_postgres(
    pytestconfig: pytest.Config,
    embedded_postgres_environment: RuntimeEnvironment,
) -> Iterator[EmbeddedPostgres]:
    """Running server shared by the test session; skipped if it cannot start."""

    settings = load_settings()
    version = pytestconfig.getoption("embedpg_version") or settings.version
    postgres = EmbeddedPostgres(version, timeout=settings.timeout())
    try:
        postgres.start(embedded_postgres_environment, host=settings.host)
    except OSError as exc:
        LOG.warning("Embedded postgres unavailable: %s", exc)
        pytest.skip(f"embedded postgres unavailable: {exc}")
    with postgres:
        yield postgres


@pytest.fixture(scope="session")
def embedded_postgres_url(embedded_postgres: EmbeddedPostgres) -> str:
    url = embedded_postgres.connection_url
    assert url is not None
    return url


__all__ = ["embedded_postgres", "embedded_postgres_environment", "embedded_postgres_url"]
