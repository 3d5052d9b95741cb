"""Agent CLI records and the registry that holds them.

Agents differ only in data (command, channel suffix) plus an optional flag
hook, so each one is a record rather than a subclass.
"""
from __future__ import annotations

import shlex
import shutil
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class AgentSpec:
    name: str
    display_name: str
    command: str
    channel_suffix: str
    # Extra CLI flags given the yolo switch.
    extra_flags: Optional[Callable[[bool], List[str]]] = None
    # Delay between typing a message and pressing Enter.
    submit_delay_ms: int = 300

    def flags(self, yolo: bool = False) -> List[str]:
        if self.extra_flags is None:
            return []
        return list(self.extra_flags(bool(yolo)))


def _claude_flags(yolo: bool) -> List[str]:
    return ["--dangerously-skip-permissions"] if yolo else []


DEFAULT_AGENTS: Tuple[AgentSpec, ...] = (
    AgentSpec(
        name="claude",
        display_name="Claude Code",
        command="claude",
        channel_suffix="claude",
        extra_flags=_claude_flags,
    ),
    AgentSpec(name="codex", display_name="Codex CLI", command="codex", channel_suffix="codex"),
    # The opencode TUI drops Enter if it arrives too soon after pasted text.
    AgentSpec(
        name="opencode",
        display_name="OpenCode",
        command="opencode",
        channel_suffix="opencode",
        submit_delay_ms=75,
    ),
)


class AgentRegistry:
    def __init__(self) -> None:
        self._specs: Dict[str, AgentSpec] = {}

    def register(self, spec: AgentSpec) -> None:
        self._specs[spec.name] = spec

    def get(self, name: str) -> Optional[AgentSpec]:
        return self._specs.get(name)

    def all(self) -> List[AgentSpec]:
        return list(self._specs.values())

    def by_channel_suffix(self, suffix: str) -> Optional[AgentSpec]:
        for spec in self._specs.values():
            if spec.channel_suffix == suffix:
                return spec
        return None

    def parse_channel_name(self, channel_name: str) -> Optional[Tuple[str, AgentSpec]]:
        """Split "myproj-claude" into ("myproj", <claude spec>)."""
        for spec in self._specs.values():
            suffix = f"-{spec.channel_suffix}"
            if channel_name.endswith(suffix) and len(channel_name) > len(suffix):
                return channel_name[: -len(suffix)], spec
        return None

    def channel_name(self, project_name: str, spec: AgentSpec) -> str:
        return f"{project_name}-{spec.channel_suffix}"

    @staticmethod
    def is_installed(spec: AgentSpec) -> bool:
        return shutil.which(spec.command) is not None

    @staticmethod
    def start_command(spec: AgentSpec, project_path: str, yolo: bool = False) -> str:
        parts = [spec.command, *spec.flags(yolo)]
        return f"cd {shlex.quote(project_path)} && {' '.join(parts)}"


def create_agent_registry() -> AgentRegistry:
    registry = AgentRegistry()
    for spec in DEFAULT_AGENTS:
        registry.register(spec)
    return registry
