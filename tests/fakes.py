from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Set, Tuple

from termrelay.contracts.v1 import WindowInfo
from termrelay.runners.base import AgentRuntime, RuntimeProviderError


class FakeRuntime(AgentRuntime):
    """Scripted runtime: each buffer read pops the next scripted reply.

    A reply may be a string, None (window gone) or an exception instance
    (raised). Once the script runs out, `default` is returned.
    """

    name = "fake"

    def __init__(self, replies: Optional[List[Any]] = None, *, default: Any = None) -> None:
        self._replies = list(replies or [])
        self._default = default
        self._lock = threading.Lock()
        self.reads = 0
        self.calls: List[Tuple[Any, ...]] = []
        self.env: Dict[str, Dict[str, str]] = {}
        self.windows: Dict[str, List[str]] = {}
        self.dead: Set[Tuple[str, str]] = set()
        self.read_panes: List[Optional[str]] = []

    def get_or_create_session(self, project_name: str, first_window_name: Optional[str] = None) -> str:
        self.calls.append(("session", project_name))
        self.windows.setdefault(project_name, [])
        return project_name

    def set_session_env(self, session: str, key: str, value: str) -> None:
        self.calls.append(("env", session, key, value))
        self.env.setdefault(session, {})[key] = value

    def window_exists(self, session: str, window: str) -> bool:
        return window in self.windows.get(session, [])

    def start_agent_in_window(self, session: str, window: str, command: str) -> None:
        # Like the real backends: a live window is left alone, a dead one restarted.
        existing = self.windows.setdefault(session, [])
        if window in existing and (session, window) not in self.dead:
            return
        self.dead.discard((session, window))
        self.calls.append(("start", session, window, command))
        if window not in existing:
            existing.append(window)

    def send_keys_to_window(self, session: str, window: str, keys: str, pane_hint: Optional[str] = None) -> None:
        self.type_keys_to_window(session, window, keys, pane_hint)
        self.send_enter_to_window(session, window, pane_hint)

    def type_keys_to_window(self, session: str, window: str, keys: str, pane_hint: Optional[str] = None) -> None:
        self.calls.append(("type", session, window, keys))

    def send_enter_to_window(self, session: str, window: str, pane_hint: Optional[str] = None) -> None:
        self.calls.append(("enter", session, window))

    def get_window_buffer(self, session: str, window: str, pane_hint: Optional[str] = None) -> Optional[str]:
        with self._lock:
            self.reads += 1
            self.read_panes.append(pane_hint)
            reply = self._replies.pop(0) if self._replies else self._default
        if isinstance(reply, BaseException):
            raise reply
        return reply


class ListingRuntime(FakeRuntime):
    """FakeRuntime that also reports window status; `exit_after` reads mark it exited."""

    def __init__(self, replies: Optional[List[Any]] = None, *, default: Any = None, exit_after: int = 2) -> None:
        super().__init__(replies, default=default)
        self.exit_after = exit_after

    def list_windows(self, session: Optional[str] = None) -> List[WindowInfo]:
        status = "exited" if self.reads >= self.exit_after else "running"
        return [WindowInfo(session=session or "p", window="w", status=status)]


class DisposableRuntime(FakeRuntime):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.disposed = 0
        self.stopped: List[Tuple[str, str]] = []

    def stop_window(self, session: str, window: str, sig: int = 15) -> bool:
        self.stopped.append((session, window))
        return True

    def dispose(self, sig: int = 15) -> None:
        self.disposed += 1


def provider_error(msg: str = "boom") -> RuntimeProviderError:
    return RuntimeProviderError(msg)
