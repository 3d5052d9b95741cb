"""Runtime capability contract for terminal backends.

Every backend implements the mandatory core in `AgentRuntime`. Optional
capabilities are separate protocols; callers check them with `supports()`
before use and must tolerate their absence.
"""
from __future__ import annotations

import signal
from abc import ABC, abstractmethod
from typing import List, Optional, Protocol, runtime_checkable

from ..contracts.v1 import StyledFrame, WindowInfo


class RuntimeProviderError(RuntimeError):
    """A backend operation failed (tmux error, dead process, timeout)."""


class AgentRuntime(ABC):
    name: str = "unknown"

    @abstractmethod
    def get_or_create_session(self, project_name: str, first_window_name: Optional[str] = None) -> str:
        """Return the session for a project, creating it when missing (idempotent)."""

    @abstractmethod
    def set_session_env(self, session: str, key: str, value: str) -> None:
        """Set an environment variable inherited by windows started afterwards."""

    @abstractmethod
    def window_exists(self, session: str, window: str) -> bool:
        pass

    @abstractmethod
    def start_agent_in_window(self, session: str, window: str, command: str) -> None:
        """Launch `command` in the window; raises RuntimeProviderError on failure."""

    @abstractmethod
    def send_keys_to_window(self, session: str, window: str, keys: str, pane_hint: Optional[str] = None) -> None:
        """Type `keys` literally, then press Enter."""

    @abstractmethod
    def type_keys_to_window(self, session: str, window: str, keys: str, pane_hint: Optional[str] = None) -> None:
        """Type `keys` literally without submitting."""

    @abstractmethod
    def send_enter_to_window(self, session: str, window: str, pane_hint: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def get_window_buffer(self, session: str, window: str, pane_hint: Optional[str] = None) -> Optional[str]:
        """Current text of the window, or None when the window does not exist."""


@runtime_checkable
class WindowLister(Protocol):
    def list_windows(self, session: Optional[str] = None) -> List[WindowInfo]: ...


@runtime_checkable
class FrameProvider(Protocol):
    def get_window_frame(
        self, session: str, window: str, cols: Optional[int] = None, rows: Optional[int] = None
    ) -> Optional[StyledFrame]: ...


@runtime_checkable
class WindowStopper(Protocol):
    def stop_window(self, session: str, window: str, sig: int = signal.SIGTERM) -> bool: ...


@runtime_checkable
class WindowResizer(Protocol):
    def resize_window(self, session: str, window: str, cols: int, rows: int) -> None: ...


@runtime_checkable
class Disposable(Protocol):
    def dispose(self, sig: int = signal.SIGTERM) -> None: ...


def supports(runtime: object, capability: type) -> bool:
    return isinstance(runtime, capability)
