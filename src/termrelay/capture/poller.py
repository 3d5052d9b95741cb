"""Capture poller: one asyncio task per tracked window.

Each task owns its window's poll state (previous cleaned sample, stable count,
last observed lifecycle state). Nothing outside the task writes to it.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..contracts.v1 import CaptureSnapshot, LifecycleState, OutboundEvent
from ..runners.base import AgentRuntime, WindowLister, supports
from .detector import detect_state
from .text import DEFAULT_CHUNK_SIZE, chunk, clean_capture

logger = logging.getLogger("termrelay.capture.poller")

WindowKey = Tuple[str, str]
EmitFn = Callable[[OutboundEvent], object]
FinishedFn = Callable[[WindowKey], object]


@dataclass(frozen=True)
class TrackedWindow:
    project_name: str
    agent_type: str
    instance_id: str
    session: str
    window: str
    pane_hint: Optional[str] = None
    # The agent pushes its own idle events: polling only reports working and offline.
    event_hook: bool = False

    @property
    def key(self) -> WindowKey:
        return (self.project_name, self.instance_id)

    def log_extra(self, op: str) -> Dict[str, str]:
        return {
            "op": op,
            "project": self.project_name,
            "agent_type": self.agent_type,
            "instance_id": self.instance_id,
            "window": f"{self.session}:{self.window}",
        }


class _WindowPoll:
    def __init__(self, window: TrackedWindow) -> None:
        self.window = window
        self.previous: Optional[str] = None
        self.stable_count = 0
        self.last_state: Optional[LifecycleState] = None


class CapturePoller:
    def __init__(
        self,
        runtime: AgentRuntime,
        emit: EmitFn,
        *,
        interval_s: float = 30.0,
        capture_timeout_s: float = 3.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_finished: Optional[FinishedFn] = None,
    ) -> None:
        self._runtime = runtime
        self._emit = emit
        self._on_finished = on_finished
        self.interval_s = max(0.0, float(interval_s))
        self.capture_timeout_s = float(capture_timeout_s)
        self.chunk_size = int(chunk_size)
        self._tasks: Dict[WindowKey, "asyncio.Task[None]"] = {}
        self._windows: Dict[WindowKey, TrackedWindow] = {}

    # Registration

    def register(self, window: TrackedWindow) -> bool:
        """Start polling `window`; False when it is already being polled."""
        key = window.key
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return False
        self._windows[key] = window
        task = asyncio.create_task(self._run(window), name=f"termrelay-poll:{key[0]}:{key[1]}")
        task.add_done_callback(functools.partial(self._reap, key))
        self._tasks[key] = task
        logger.info("window registered", extra=window.log_extra("poll.register"))
        return True

    async def unregister(self, key: WindowKey) -> None:
        """Stop polling and emit the final offline event; nothing follows it."""
        task = self._tasks.pop(key, None)
        window = self._windows.pop(key, None)
        if task is None:
            return
        finished_on_its_own = task.done()
        if not finished_on_its_own:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.warning("poll task failed", exc_info=True)
        if window is not None and not finished_on_its_own:
            self._publish(window, "offline", "")
        if window is not None:
            logger.info("window unregistered", extra=window.log_extra("poll.unregister"))
        self._finished(key)

    def _reap(self, key: WindowKey, task: "asyncio.Task[None]") -> None:
        # Tasks that end on their own (window gone or exited) leave the maps here;
        # unregister has already popped the ones it cancels.
        if self._tasks.get(key) is not task:
            return
        del self._tasks[key]
        window = self._windows.pop(key, None)
        if not task.cancelled() and task.exception() is not None:
            extra = window.log_extra("poll.task") if window is not None else {"op": "poll.task"}
            logger.warning("poll task failed", exc_info=task.exception(), extra=extra)
        self._finished(key)

    def _finished(self, key: WindowKey) -> None:
        if self._on_finished is None:
            return
        try:
            self._on_finished(key)
        except Exception:
            logger.warning("on_finished callback failed", exc_info=True)

    async def close(self) -> None:
        for key in list(self._tasks):
            await self.unregister(key)

    def tracked(self) -> List[WindowKey]:
        return [k for k, t in self._tasks.items() if not t.done()]

    def window(self, key: WindowKey) -> Optional[TrackedWindow]:
        return self._windows.get(key)

    async def wait_stopped(self, key: WindowKey) -> None:
        """Wait until the window's poll task ends (exit detected or unregistered)."""
        task = self._tasks.get(key)
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    # Poll loop

    async def _run(self, window: TrackedWindow) -> None:
        poll = _WindowPoll(window)
        while True:
            if not await self._poll_once(poll):
                logger.info("polling stopped", extra=window.log_extra("poll.stop"))
                return
            await asyncio.sleep(self.interval_s)

    async def _poll_once(self, poll: _WindowPoll) -> bool:
        """Run one cycle; False when the window is gone and polling should end."""
        w = poll.window
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._runtime.get_window_buffer, w.session, w.window, w.pane_hint),
                timeout=self.capture_timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            # Transient: offline for this cycle only, previous sample is kept.
            logger.warning("capture failed", exc_info=True, extra=w.log_extra("poll.capture"))
            self._observe(poll, None)
            return True

        if raw is None or await self._process_exited(w):
            self._observe(poll, None)
            return False

        self._observe(poll, clean_capture(raw))
        return True

    async def _process_exited(self, w: TrackedWindow) -> bool:
        if not supports(self._runtime, WindowLister):
            return False
        try:
            infos = await asyncio.wait_for(
                asyncio.to_thread(self._runtime.list_windows, w.session),  # type: ignore[attr-defined]
                timeout=self.capture_timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.debug("list_windows failed", exc_info=True, extra=w.log_extra("poll.reconcile"))
            return False
        base = w.window.split(".", 1)[0]
        for info in infos:
            if info.session == w.session and info.window == base:
                return info.has_exited
        return False

    def _observe(self, poll: _WindowPoll, current: Optional[str]) -> None:
        state = detect_state(current, poll.previous, poll.stable_count)
        transitioned = state != poll.last_state

        if current is not None:
            if current == poll.previous:
                poll.stable_count += 1
            else:
                poll.stable_count = 0
            poll.previous = current
        poll.last_state = state

        if state == "working":
            # Reached only when content changed or on the first sample.
            self._publish(poll.window, state, current or "")
        elif transitioned and not (state == "stopped" and poll.window.event_hook):
            self._publish(poll.window, state, current or "")

    def _publish(self, window: TrackedWindow, state: LifecycleState, text: str) -> None:
        event = OutboundEvent(
            project_name=window.project_name,
            agent_type=window.agent_type,
            instance_id=window.instance_id,
            kind="lifecycle",
            state=state,
            source="poll",
            text=text,
            chunks=chunk(text, self.chunk_size) if text else [],
        )
        try:
            self._emit(event)
        except Exception:
            logger.warning("event sink failed", exc_info=True, extra=window.log_extra("poll.emit"))


def capture_snapshot(
    runtime: AgentRuntime, session: str, window: str, pane_hint: Optional[str] = None
) -> CaptureSnapshot:
    """One synchronous read; cleaned_text is None when the window cannot be read."""
    raw = runtime.get_window_buffer(session, window, pane_hint)
    return CaptureSnapshot(raw_text=raw, cleaned_text=None if raw is None else clean_capture(raw))
