"""Agent-side hook emitter.

Runs inside hook processes spawned by the agent CLI. It must never fail or
block its parent: every delivery problem is logged at debug and ignored.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

from ...contracts.v1 import DEFAULT_AGENT_TYPE
from ...kernel.settings import DEFAULT_LISTENER_HOST, DEFAULT_LISTENER_PORT
from ...util.conv import coerce_int

logger = logging.getLogger("termrelay.ports.hook.emitter")

DEFAULT_TIMEOUT_S = 2.0


@dataclass(frozen=True)
class HookConfig:
    project_name: str = ""
    agent_type: str = DEFAULT_AGENT_TYPE
    instance_id: str = ""
    port: int = DEFAULT_LISTENER_PORT
    hostname: str = DEFAULT_LISTENER_HOST

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "HookConfig":
        e = os.environ if env is None else env
        return cls(
            project_name=str(e.get("TERMRELAY_PROJECT") or "").strip(),
            agent_type=str(e.get("TERMRELAY_AGENT") or "").strip() or DEFAULT_AGENT_TYPE,
            instance_id=str(e.get("TERMRELAY_INSTANCE") or "").strip(),
            port=coerce_int(e.get("TERMRELAY_PORT"), default=DEFAULT_LISTENER_PORT, min_value=1, max_value=65535),
            hostname=str(e.get("TERMRELAY_HOSTNAME") or "").strip() or DEFAULT_LISTENER_HOST,
        )

    def url(self, path: str) -> str:
        return f"http://{self.hostname}:{self.port}{path}"

    @property
    def endpoint(self) -> str:
        return self.url("/opencode-event")


def build_payload(config: HookConfig, event_type: str, text: str = "", **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "projectName": config.project_name,
        "agentType": config.agent_type,
        "type": event_type,
        "text": text,
    }
    if config.instance_id:
        payload["instanceId"] = config.instance_id
    for k, v in extra.items():
        if v is not None:
            payload[k] = v
    return payload


def post_event(
    config: HookConfig,
    event_type: str,
    text: str = "",
    *,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    **extra: Any,
) -> bool:
    """POST one event to the bridge listener. Returns False instead of raising."""
    if not config.project_name:
        return False
    return _post(config, config.endpoint, build_payload(config, event_type, text, **extra), timeout_s)


def post_files(config: HookConfig, files: Sequence[str], *, timeout_s: float = DEFAULT_TIMEOUT_S) -> bool:
    """Ask the bridge to attach project files to the agent's channel."""
    paths: List[str] = [os.path.abspath(f) for f in files if f]
    if not config.project_name or not paths:
        return False
    payload: Dict[str, Any] = {"projectName": config.project_name, "agentType": config.agent_type, "files": paths}
    if config.instance_id:
        payload["instanceId"] = config.instance_id
    return _post(config, config.url("/send-files"), payload, timeout_s)


def _post(config: HookConfig, url: str, payload: Dict[str, Any], timeout_s: float) -> bool:
    try:
        r = requests.post(url, json=payload, timeout=timeout_s)
        r.raise_for_status()
        return True
    except Exception as e:
        logger.debug(f"hook delivery failed: {e}", extra={"op": "hook.post", "project": config.project_name})
        return False
