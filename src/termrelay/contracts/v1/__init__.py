from __future__ import annotations

from .event import (
    DEFAULT_AGENT_TYPE,
    EventKind,
    EventSource,
    HookPayload,
    LifecycleState,
    OutboundEvent,
)
from .window import CaptureSnapshot, StyledFrame, StyledLine, StyledSegment, WindowInfo

__all__ = [
    "CaptureSnapshot",
    "DEFAULT_AGENT_TYPE",
    "EventKind",
    "EventSource",
    "HookPayload",
    "LifecycleState",
    "OutboundEvent",
    "StyledFrame",
    "StyledLine",
    "StyledSegment",
    "WindowInfo",
]
