from __future__ import annotations

from typing import TYPE_CHECKING

from .base import (
    AgentRuntime,
    Disposable,
    FrameProvider,
    RuntimeProviderError,
    WindowLister,
    WindowResizer,
    WindowStopper,
    supports,
)
from .tmux import TmuxRuntime

if TYPE_CHECKING:
    from ..kernel.settings import BridgeSettings


def create_runtime(settings: "BridgeSettings") -> AgentRuntime:
    """Build the backend named by `settings.runtime_mode` (tmux unless "pty")."""
    if settings.runtime_mode == "pty":
        try:
            from .pty import PtyRuntime
        except ImportError as e:
            # Windows and some Python builds lack termios/fcntl.
            raise RuntimeProviderError(f"pty runtime unavailable on this platform: {e}") from e
        return PtyRuntime()
    return TmuxRuntime(session_prefix=settings.session_prefix, timeout_s=settings.capture_timeout_seconds)


__all__ = [
    "AgentRuntime",
    "Disposable",
    "FrameProvider",
    "RuntimeProviderError",
    "TmuxRuntime",
    "WindowLister",
    "WindowResizer",
    "WindowStopper",
    "create_runtime",
    "supports",
]
