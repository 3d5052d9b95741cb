from __future__ import annotations

from typing import Optional

from ..contracts.v1 import LifecycleState


def detect_state(current: Optional[str], previous: Optional[str], stable_count: int = 0) -> LifecycleState:
    """Classify a window from two successive cleaned samples.

    - current is None           -> "offline" (window gone or unreadable)
    - previous is None          -> "working" (first observation)
    - current != previous       -> "working"
    - current == previous       -> "stopped"

    `stable_count` is accepted but intentionally unused: there is no debounce.
    """
    _ = stable_count
    if current is None:
        return "offline"
    if previous is None:
        return "working"
    if current != previous:
        return "working"
    return "stopped"
