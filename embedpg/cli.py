"""Command line entry point that runs an embedded PostgreSQL until interrupted."""

from __future__ import annotations

import argparse
import logging
import sys
import threading

from .config import Settings, load_settings
from .environment import cached_environment
from .manager import EmbeddedPostgres
from .models import DEFAULT_DB_NAME, DEFAULT_PASSWORD, DEFAULT_USER

LOG = logging.getLogger(__name__)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="embedpg", description=__doc__)
    parser.add_argument("--version", dest="pg_version", help="PostgreSQL release, or 'latest'")
    parser.add_argument("--host", help="Address to bind to")
    parser.add_argument("--port", type=int, help="Port to bind to (default: a free port)")
    parser.add_argument("--database", default=DEFAULT_DB_NAME, help="Database to create")
    parser.add_argument("--user", default=DEFAULT_USER, help="Superuser name")
    parser.add_argument("--password", default=DEFAULT_PASSWORD, help="Superuser password")
    parser.add_argument("--data-dir", help="Persistent data directory (default: temporary)")
    parser.add_argument("--cache-dir", help="Directory caching extracted binaries")
    parser.add_argument("--log-level", help="Logging level, e.g. INFO")
    return parser.parse_args(argv)


def wait_for_interrupt() -> None:
    """Block until Ctrl+C."""

    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print()


def run(args: argparse.Namespace, settings: Settings) -> int:
    settings = settings.with_overrides(
        version=args.pg_version,
        host=args.host,
        log_level=args.log_level,
    )
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    environment = cached_environment(args.cache_dir) if args.cache_dir else settings.environment()
    try:
        postgres = EmbeddedPostgres(settings.version, args.data_dir, timeout=settings.timeout())
        url = postgres.start(
            environment,
            host=settings.host,
            port=args.port,
            db_name=args.database,
            user=args.user,
            password=args.password,
        )
    except (OSError, ValueError) as exc:
        LOG.error("Failed to start postgres: %s", exc)
        print(f"Failed to start postgres: {exc}", file=sys.stderr)
        return 1
    with postgres:
        print(f"JDBC URL: {url}")
        print(f"DSN:      {postgres.config.dsn()}")
        print("Press Ctrl+C to stop.")
        wait_for_interrupt()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    return run(args, load_settings())


__all__ = ["main", "parse_args", "run", "wait_for_interrupt"]
