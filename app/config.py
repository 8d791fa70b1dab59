"""Process settings, built once at startup and passed to the app factory."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

ROOT = Path(__file__).resolve().parents[1]
BACKENDS = ("sqlite", "memory", "postgres")


class ConfigError(ValueError):
    pass


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigError(f"addr must look like HOST:PORT, got {addr!r}")
    return host, int(port)


@dataclass(frozen=True)
class Settings:
    addr: str = "localhost:8081"
    backend: str = "sqlite"
    db_path: str = "xhub.db"
    database_url: str | None = None
    public_url: str | None = None
    log_level: str = "INFO"
    req_slow_ms: float = 250.0
    api_version: str = "1"

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigError(f"backend must be one of {', '.join(BACKENDS)}, got {self.backend!r}")
        if self.backend == "postgres" and not self.database_url:
            raise ConfigError("DATABASE_URL is required when backend is postgres")
        split_addr(self.addr)

    @property
    def host(self) -> str:
        return split_addr(self.addr)[0]

    @property
    def port(self) -> int:
        return split_addr(self.addr)[1]

    @property
    def base_url(self) -> str:
        """Prefix joined with a stored key to form a resource URL."""
        if self.public_url:
            return self.public_url.rstrip("/")
        return f"http://{self.addr}"

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, env_file: Path | None = None) -> "Settings":
        if environ is None:
            _load_env_file(env_file or ROOT / "app" / ".env")
            environ = os.environ
        try:
            slow_ms = float(environ.get("XHUB_REQ_SLOW_MS", "250"))
        except ValueError as exc:
            raise ConfigError(f"XHUB_REQ_SLOW_MS must be a number: {exc}") from exc
        return cls(
            addr=environ.get("XHUB_ADDR", "").strip() or "localhost:8081",
            backend=environ.get("XHUB_BACKEND", "").strip().lower() or "sqlite",
            db_path=environ.get("XHUB_DBFILE", "").strip() or "xhub.db",
            database_url=environ.get("DATABASE_URL", "").strip() or None,
            public_url=environ.get("XHUB_PUBLIC_URL", "").strip() or None,
            log_level=environ.get("XHUB_LOG_LEVEL", "").strip().upper() or "INFO",
            req_slow_ms=slow_ms,
        )
