from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


__version__ = "0.4.0"

DEFAULT_ENDPOINT = "https://happo.io"
DEFAULT_FETCH_WORKERS = 10
DEFAULT_REQUEST_TIMEOUT_MS = 60_000
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
TRUTHY = {"1", "true", "yes", "on"}
PACKAGE_LOGGERS = (
    "asset_discovery",
    "asset_fetcher",
    "asset_package",
    "asset_urls",
    "deterministic_archive",
    "http_client",
    "service_client",
)


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in TRUTHY


def _parse_int(value: Optional[str], default: int, min_value: int, max_value: int) -> int:
    try:
        parsed = int(value) if value is not None else default
    except (TypeError, ValueError):
        parsed = default
    return max(min_value, min(max_value, parsed))


@dataclass(frozen=True)
class Settings:
    endpoint: str = DEFAULT_ENDPOINT
    api_key: str = ""
    api_secret: str = ""
    project: str = ""
    debug: bool = False
    download_all_assets: bool = False
    fetch_workers: int = DEFAULT_FETCH_WORKERS
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    signed_url_uploads: bool = False

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        env_file: Optional[Path] = None,
    ) -> "Settings":
        if environ is None and env_file is not None:
            load_env_file(Path(env_file))
        env = os.environ if environ is None else environ
        return cls(
            endpoint=(env.get("SNAPBUNDLE_ENDPOINT") or DEFAULT_ENDPOINT).strip().rstrip("/"),
            api_key=(env.get("SNAPBUNDLE_API_KEY") or "").strip(),
            api_secret=(env.get("SNAPBUNDLE_API_SECRET") or "").strip(),
            project=(env.get("SNAPBUNDLE_PROJECT") or "").strip(),
            debug=_parse_bool(env.get("SNAPBUNDLE_DEBUG")),
            download_all_assets=_parse_bool(env.get("SNAPBUNDLE_DOWNLOAD_ALL_ASSETS")),
            fetch_workers=_parse_int(env.get("SNAPBUNDLE_FETCH_WORKERS"), DEFAULT_FETCH_WORKERS, 1, 64),
            request_timeout_ms=_parse_int(
                env.get("SNAPBUNDLE_REQUEST_TIMEOUT_MS"), DEFAULT_REQUEST_TIMEOUT_MS, 100, 10 * 60_000
            ),
            signed_url_uploads=_parse_bool(env.get("SNAPBUNDLE_SIGNED_URL")),
        )

    @property
    def log_tag(self) -> str:
        return f"[{self.project}] " if self.project else ""


def configure_logging(debug: bool = False) -> None:
    """Log to stderr; debug mode traces every naming and fetch decision."""
    root = logging.getLogger()
    if not any(getattr(handler, "_snapbundle", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._snapbundle = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > logging.INFO:
        root.setLevel(logging.INFO)
    for name in PACKAGE_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.NOTSET)
