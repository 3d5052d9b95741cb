"""Bridge: launches agent windows, feeds chat input into them, and dispatches events."""
from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Union

from ..capture.poller import CapturePoller, TrackedWindow, WindowKey
from ..capture.text import split_lines_for_chat
from ..contracts.v1 import OutboundEvent
from ..kernel.agents import AgentRegistry
from ..kernel.settings import BridgeSettings
from ..runners.base import AgentRuntime, Disposable, WindowStopper, supports
from .hub import EventHub

if TYPE_CHECKING:
    from ..ports.hook.main import ListenerServer

logger = logging.getLogger("termrelay.daemon.bridge")

MAX_INPUT_CHARS = 10_000

Sink = Callable[[OutboundEvent, str], Union[None, Awaitable[None]]]


def sanitize_input(text: str) -> str:
    """Chat text as it should be typed; ValueError when empty or too long."""
    if not text or not text.strip():
        raise ValueError("empty message")
    if len(text) > MAX_INPUT_CHARS:
        raise ValueError(f"message too long (>{MAX_INPUT_CHARS} chars)")
    return text.replace("\0", "").rstrip()


class Bridge:
    def __init__(
        self,
        settings: BridgeSettings,
        runtime: AgentRuntime,
        registry: AgentRegistry,
        hub: EventHub,
        poller: Optional[CapturePoller] = None,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.registry = registry
        self.hub = hub
        self.poller = poller or CapturePoller(
            runtime,
            hub.publish,
            interval_s=settings.poll_interval_seconds,
            capture_timeout_s=settings.capture_timeout_seconds,
            chunk_size=settings.chunk_size,
            on_finished=hub.forget,
        )
        self.listener: Optional[ListenerServer] = None
        self._instances: Dict[WindowKey, TrackedWindow] = {}
        self._project_paths: Dict[str, str] = {}
        self._closed = False

    def project_path(self, project_name: str) -> Optional[str]:
        """Resolved directory the project was launched in, None when never launched."""
        return self._project_paths.get(project_name)

    def session_env(self, project_name: str, agent_type: str, instance_id: str) -> dict:
        return {
            "TERMRELAY_PROJECT": project_name,
            "TERMRELAY_AGENT": agent_type,
            "TERMRELAY_INSTANCE": instance_id,
            "TERMRELAY_PORT": str(self.settings.listener_port),
            "TERMRELAY_HOSTNAME": self.settings.listener_host,
        }

    def launch(
        self,
        project_name: str,
        agent_type: str,
        instance_id: Optional[str] = None,
        *,
        project_path: str = ".",
        yolo: bool = False,
        event_hook: bool = False,
        pane_hint: Optional[str] = None,
    ) -> TrackedWindow:
        """Ensure the agent window is running and start polling it.

        The backend leaves a live window alone and restarts one whose process exited.
        """
        spec = self.registry.get(agent_type)
        if spec is None:
            raise ValueError(f"unknown agent type: {agent_type}")
        iid = (instance_id or "").strip() or spec.name
        window_name = iid

        session = self.runtime.get_or_create_session(project_name)
        # Session env must be in place before the agent starts so its hooks inherit it.
        for k, v in self.session_env(project_name, spec.name, iid).items():
            self.runtime.set_session_env(session, k, v)
        self.runtime.start_agent_in_window(
            session, window_name, self.registry.start_command(spec, project_path, yolo=yolo)
        )
        self._project_paths[project_name] = str(Path(project_path).expanduser().resolve())

        tracked = TrackedWindow(
            project_name=project_name,
            agent_type=spec.name,
            instance_id=iid,
            session=session,
            window=window_name,
            pane_hint=(pane_hint or "").strip() or None,
            event_hook=bool(event_hook),
        )
        self._instances[tracked.key] = tracked
        self.hub.forget(tracked.key)
        self.poller.register(tracked)
        logger.info("agent launched", extra=tracked.log_extra("bridge.launch"))
        return tracked

    def _submit_delay_s(self, agent_type: str) -> float:
        if self.settings.submit_delay_ms is not None:
            return max(0, self.settings.submit_delay_ms) / 1000.0
        spec = self.registry.get(agent_type)
        return (spec.submit_delay_ms if spec is not None else 300) / 1000.0

    async def submit(self, key: WindowKey, text: str) -> None:
        """Type `text` into the window, pause, then press Enter."""
        window = self.poller.window(key)
        if window is None:
            raise ValueError(f"window not tracked: {key[0]}/{key[1]}")
        prompt = sanitize_input(text)
        await asyncio.to_thread(
            self.runtime.type_keys_to_window, window.session, window.window, prompt, window.pane_hint
        )
        delay = self._submit_delay_s(window.agent_type)
        if delay > 0:
            await asyncio.sleep(delay)
        await asyncio.to_thread(self.runtime.send_enter_to_window, window.session, window.window, window.pane_hint)
        logger.debug("input submitted", extra=window.log_extra("bridge.submit"))

    async def stop_instance(self, key: WindowKey) -> bool:
        """Stop polling a window and, when the backend can, its process."""
        # Polling may already have ended on its own (exit detected).
        window = self._instances.pop(key, None) or self.poller.window(key)
        await self.poller.unregister(key)
        if window is None or not supports(self.runtime, WindowStopper):
            return False
        return await asyncio.to_thread(self.runtime.stop_window, window.session, window.window)  # type: ignore[attr-defined]

    async def _deliver(self, sink: Sink, event: OutboundEvent, piece: str) -> None:
        try:
            result = sink(event, piece)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(
                "event delivery failed",
                exc_info=True,
                extra={
                    "op": "bridge.dispatch",
                    "project": event.project_name,
                    "instance_id": event.instance_id,
                    "event_id": event.id,
                },
            )

    async def dispatch_forever(self, sink: Sink) -> None:
        """Hand every hub event to `sink` chunk by chunk until the hub closes."""
        while True:
            event = await self.hub.get()
            if event is None:
                return
            pieces = split_lines_for_chat(event.text, self.settings.chunk_size) if event.text.strip() else []
            if not pieces:
                await self._deliver(sink, event, "")
                continue
            for piece in pieces:
                await self._deliver(sink, event, piece)

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.poller.close()
        if self.listener is not None:
            self.listener.stop()
        if supports(self.runtime, Disposable):
            await asyncio.to_thread(self.runtime.dispose)  # type: ignore[attr-defined]
        self.hub.close()
        logger.info("bridge stopped", extra={"op": "bridge.shutdown"})
