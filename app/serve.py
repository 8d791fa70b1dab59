"""Command-line entry point: ``xhub-serve --addr HOST:PORT --dbfile PATH``."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from app.config import BACKENDS, ConfigError, Settings
from app.main import create_app

logger = logging.getLogger("xhub")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="xhub-serve", description="Serve study, trial and file metadata over HTTP.")
    parser.add_argument("--addr", help="host name or ip address with port (default localhost:8081)")
    parser.add_argument("--dbfile", help="path to the sqlite database file (default xhub.db)")
    parser.add_argument("--backend", choices=BACKENDS, help="storage engine (default sqlite)")
    parser.add_argument("--public-url", help="URL prefix used for resource links")
    parser.add_argument("--log-level", help="logging level (default INFO)")
    return parser


def settings_from_args(argv: list[str] | None = None) -> Settings:
    args = build_parser().parse_args(argv)
    return Settings.from_env().with_overrides(
        addr=args.addr,
        db_path=args.dbfile,
        backend=args.backend,
        public_url=args.public_url,
        log_level=args.log_level.upper() if args.log_level else None,
    )


def main(argv: list[str] | None = None) -> int:
    try:
        settings = settings_from_args(argv)
    except ConfigError as exc:
        print(f"xhub-serve: {exc}", file=sys.stderr)
        return 2
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
