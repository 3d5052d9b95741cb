from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, List, Optional, TextIO, Tuple

from . import __version__
from .capture.poller import capture_snapshot
from .contracts.v1 import OutboundEvent
from .daemon.bridge import Bridge
from .daemon.hub import EventHub
from .kernel.agents import create_agent_registry
from .kernel.settings import BridgeSettings, load_bridge_settings
from .ports.hook.app import create_app
from .ports.hook.emitter import HookConfig, post_event, post_files
from .ports.hook.main import ListenerServer
from .runners import AgentRuntime, RuntimeProviderError, create_runtime
from .util.obslog import setup_root_json_logging

WatchSpec = Tuple[str, str, Optional[str]]


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def parse_watch(value: str) -> WatchSpec:
    """Parse "proj:claude" or "proj:claude:claude-2" into (project, agent, instance)."""
    parts = [p.strip() for p in (value or "").split(":")]
    if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
        raise ValueError(f"invalid --watch value: {value!r} (expected project:agent[:instance])")
    instance = parts[2] if len(parts) == 3 and parts[2] else None
    return parts[0], parts[1], instance


def _apply_overrides(settings: BridgeSettings, args: argparse.Namespace) -> BridgeSettings:
    d = settings.to_dict()
    for name in ("runtime_mode", "listener_host", "listener_port", "poll_interval_seconds"):
        v = getattr(args, name, None)
        if v is not None:
            d[name] = v
    return BridgeSettings.from_dict(d)


def _event_line(event: OutboundEvent, piece: str) -> str:
    row = event.model_dump(exclude={"text", "chunks"})
    row["chunk"] = piece
    return json.dumps(row, ensure_ascii=False)


async def run_bridge(
    settings: BridgeSettings,
    runtime: AgentRuntime,
    watches: List[WatchSpec],
    *,
    project_path: str = ".",
    yolo: bool = False,
    out: Optional[TextIO] = None,
) -> None:
    stream = out or sys.stdout
    hub = EventHub()
    bridge = Bridge(settings, runtime, create_agent_registry(), hub)
    listener = ListenerServer(
        create_app(hub, chunk_size=settings.chunk_size, project_path_for=bridge.project_path),
        host=settings.listener_host,
        port=settings.listener_port,
    )
    bridge.listener = listener

    def _write(event: OutboundEvent, piece: str) -> None:
        stream.write(_event_line(event, piece) + "\n")
        stream.flush()

    dispatcher = asyncio.create_task(bridge.dispatch_forever(_write))
    try:
        for project, agent, instance in watches:
            bridge.launch(project, agent, instance, project_path=project_path, yolo=yolo)
        await listener.serve()
    finally:
        await bridge.shutdown()
        await dispatcher


def cmd_run(args: argparse.Namespace) -> int:
    settings = _apply_overrides(load_bridge_settings(), args)
    setup_root_json_logging(component="termrelay", level=settings.log_level)
    try:
        watches = [parse_watch(w) for w in (args.watch or [])]
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    try:
        runtime = create_runtime(settings)
    except RuntimeProviderError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    try:
        asyncio.run(run_bridge(settings, runtime, watches, project_path=str(args.path), yolo=bool(args.yolo)))
    except KeyboardInterrupt:
        pass
    except (RuntimeProviderError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_capture(args: argparse.Namespace) -> int:
    settings = load_bridge_settings()
    if settings.runtime_mode != "tmux":
        # A pty runtime only knows the windows its own process started.
        settings = BridgeSettings.from_dict({**settings.to_dict(), "runtime_mode": "tmux"})
    runtime = create_runtime(settings)
    try:
        snap = capture_snapshot(runtime, str(args.session), str(args.window))
    except RuntimeProviderError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    if snap.raw_text is None:
        print(f"error: window not found: {args.session}:{args.window}", file=sys.stderr)
        return 1
    if args.json:
        _print_json(snap.model_dump())
    else:
        print(snap.raw_text if args.raw else snap.cleaned_text)
    return 0


def cmd_hook(args: argparse.Namespace) -> int:
    # Never fail the agent process that invoked us.
    text = args.text
    if text is None and sys.stdin is not None and not sys.stdin.isatty():
        try:
            text = sys.stdin.read()
        except (OSError, ValueError):
            text = ""
    post_event(
        HookConfig.from_env(),
        str(args.type),
        text or "",
        turnText=args.turn_text,
        notificationType=args.notification_type,
    )
    return 0


def cmd_send_files(args: argparse.Namespace) -> int:
    ok = post_files(HookConfig.from_env(), list(args.files or []))
    if not ok:
        print("error: files were not accepted by the bridge", file=sys.stderr)
        return 1
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="termrelay", description="Bridge terminal AI agents to chat")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the bridge in the foreground (events are printed as JSON lines)")
    p_run.add_argument(
        "--watch",
        action="append",
        default=[],
        metavar="PROJECT:AGENT[:INSTANCE]",
        help="Launch (if needed) and track an agent window; repeatable",
    )
    p_run.add_argument("--path", default=".", help="Project directory for launched agents (default: .)")
    p_run.add_argument("--yolo", action="store_true", help="Start agents with permission prompts disabled")
    p_run.add_argument("--runtime", dest="runtime_mode", choices=["tmux", "pty"], default=None)
    p_run.add_argument("--host", dest="listener_host", default=None, help="Listener bind host")
    p_run.add_argument("--port", dest="listener_port", type=int, default=None, help="Listener port")
    p_run.add_argument("--interval", dest="poll_interval_seconds", type=float, default=None, help="Poll interval (s)")
    p_run.set_defaults(func=cmd_run)

    p_cap = sub.add_parser("capture", help="Print the cleaned text of a tmux window once")
    p_cap.add_argument("session")
    p_cap.add_argument("window")
    p_cap.add_argument("--raw", action="store_true", help="Print the raw buffer")
    p_cap.add_argument("--json", action="store_true", help="Print the snapshot as JSON")
    p_cap.set_defaults(func=cmd_capture)

    p_hook = sub.add_parser("hook", help="Post an agent event to the bridge listener (always exits 0)")
    p_hook.add_argument("type", help="session.idle | session.notification | session.error")
    p_hook.add_argument("--text", default=None, help="Event text (default: read stdin)")
    p_hook.add_argument("--turn-text", dest="turn_text", default=None)
    p_hook.add_argument("--notification-type", dest="notification_type", default=None)
    p_hook.set_defaults(func=cmd_hook)

    p_files = sub.add_parser("send-files", help="Attach project files to the agent's chat channel")
    p_files.add_argument("files", nargs="+", help="Files inside the project directory")
    p_files.set_defaults(func=cmd_send_files)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
