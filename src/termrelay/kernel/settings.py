"""Bridge settings.

Settings are read from ~/.termrelay/settings.yaml (or $TERMRELAY_HOME/settings.yaml)
and overridden by TERMRELAY_* environment variables:

    runtime_mode: tmux            # or "pty"
    session_prefix: ""
    poll_interval_seconds: 30
    capture_timeout_seconds: 3
    chunk_size: 1900
    listener_host: 127.0.0.1
    listener_port: 18470
    submit_delay_ms: null         # null = per-agent default
    log_level: INFO
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml  # type: ignore

from ..paths import termrelay_home
from ..util.conv import coerce_float, coerce_int

DEFAULT_LISTENER_HOST = "127.0.0.1"
DEFAULT_LISTENER_PORT = 18470
DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_CAPTURE_TIMEOUT_SECONDS = 3.0
DEFAULT_CHUNK_SIZE = 1900

RUNTIME_MODES = ("tmux", "pty")

# setting name -> environment variable
_ENV_KEYS: Dict[str, str] = {
    "runtime_mode": "TERMRELAY_RUNTIME_MODE",
    "session_prefix": "TERMRELAY_SESSION_PREFIX",
    "poll_interval_seconds": "TERMRELAY_POLL_INTERVAL",
    "capture_timeout_seconds": "TERMRELAY_CAPTURE_TIMEOUT",
    "chunk_size": "TERMRELAY_CHUNK_SIZE",
    "listener_host": "TERMRELAY_HOSTNAME",
    "listener_port": "TERMRELAY_PORT",
    "submit_delay_ms": "TERMRELAY_SUBMIT_DELAY_MS",
    "log_level": "TERMRELAY_LOG_LEVEL",
}


def settings_path() -> Path:
    return termrelay_home() / "settings.yaml"


def load_settings_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the YAML settings document; missing or invalid files read as {}."""
    p = path or settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        return doc if isinstance(doc, dict) else {}
    except Exception:
        return {}


@dataclass
class BridgeSettings:
    runtime_mode: str = "tmux"
    session_prefix: str = ""
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    capture_timeout_seconds: float = DEFAULT_CAPTURE_TIMEOUT_SECONDS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    listener_host: str = DEFAULT_LISTENER_HOST
    listener_port: int = DEFAULT_LISTENER_PORT
    submit_delay_ms: Optional[int] = None
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "BridgeSettings":
        mode = str(d.get("runtime_mode") or "tmux").strip().lower()
        if mode not in RUNTIME_MODES:
            mode = "tmux"
        delay_raw = d.get("submit_delay_ms")
        submit_delay_ms: Optional[int] = None
        if delay_raw is not None and str(delay_raw).strip() != "":
            submit_delay_ms = coerce_int(delay_raw, default=-1, max_value=60_000)
            if submit_delay_ms < 0:
                submit_delay_ms = None
        return cls(
            runtime_mode=mode,
            session_prefix=str(d.get("session_prefix") or ""),
            poll_interval_seconds=coerce_float(
                d.get("poll_interval_seconds"), default=DEFAULT_POLL_INTERVAL_SECONDS, min_value=0.05
            ),
            capture_timeout_seconds=coerce_float(
                d.get("capture_timeout_seconds"), default=DEFAULT_CAPTURE_TIMEOUT_SECONDS, min_value=0.1
            ),
            chunk_size=coerce_int(d.get("chunk_size"), default=DEFAULT_CHUNK_SIZE, min_value=100, max_value=4000),
            listener_host=str(d.get("listener_host") or "").strip() or DEFAULT_LISTENER_HOST,
            listener_port=coerce_int(
                d.get("listener_port"), default=DEFAULT_LISTENER_PORT, min_value=1, max_value=65535
            ),
            submit_delay_ms=submit_delay_ms,
            log_level=str(d.get("log_level") or "").strip().upper() or "INFO",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runtime_mode": self.runtime_mode,
            "session_prefix": self.session_prefix,
            "poll_interval_seconds": self.poll_interval_seconds,
            "capture_timeout_seconds": self.capture_timeout_seconds,
            "chunk_size": self.chunk_size,
            "listener_host": self.listener_host,
            "listener_port": self.listener_port,
            "submit_delay_ms": self.submit_delay_ms,
            "log_level": self.log_level,
        }


def load_bridge_settings(
    *, env: Optional[Mapping[str, str]] = None, path: Optional[Path] = None
) -> BridgeSettings:
    """Resolve settings: environment > settings.yaml > defaults."""
    merged: Dict[str, Any] = dict(load_settings_file(path))
    source = os.environ if env is None else env
    for name, var in _ENV_KEYS.items():
        raw = source.get(var)
        if raw is not None and str(raw).strip():
            merged[name] = str(raw).strip()
    return BridgeSettings.from_dict(merged)
