"""Single ordered event stream shared by pollers and the push listener."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from ..contracts.v1 import LifecycleState, OutboundEvent

logger = logging.getLogger("termrelay.daemon.hub")

WindowKey = Tuple[str, str]

# Terminal lifecycle states a window should report at most once in a row.
_DEDUP_STATES = ("stopped", "offline")


class EventHub:
    """asyncio.Queue of OutboundEvent plus a per-window last-emitted marker.

    Only touched from the event loop thread, so the marker map needs no lock.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[OutboundEvent]]" = asyncio.Queue()
        self._last: Dict[WindowKey, LifecycleState] = {}
        self._closed = False

    def last_state(self, key: WindowKey) -> Optional[LifecycleState]:
        return self._last.get(key)

    def publish(self, event: OutboundEvent) -> bool:
        """Enqueue `event` unless it repeats the window's last stopped/offline marker."""
        if self._closed:
            return False
        if event.kind == "lifecycle" and event.state is not None:
            key = event.window_key
            if event.state in _DEDUP_STATES and self._last.get(key) == event.state:
                logger.debug(
                    "duplicate lifecycle event dropped",
                    extra={
                        "op": "hub.dedup",
                        "project": event.project_name,
                        "instance_id": event.instance_id,
                        "state": event.state,
                        "event_id": event.id,
                    },
                )
                return False
            self._last[key] = event.state
        self._queue.put_nowait(event)
        return True

    def forget(self, key: WindowKey) -> None:
        self._last.pop(key, None)

    async def get(self) -> Optional[OutboundEvent]:
        """Next event in publish order; None once the hub is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def drain(self) -> List[OutboundEvent]:
        out: List[OutboundEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not None:
                out.append(item)
        return out

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
