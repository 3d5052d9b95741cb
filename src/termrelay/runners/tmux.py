from __future__ import annotations

import logging
import signal
import subprocess
from typing import List, Optional, Tuple

from ..contracts.v1 import WindowInfo
from .base import AgentRuntime, RuntimeProviderError

logger = logging.getLogger("termrelay.runners.tmux")

# stderr fragments tmux prints when a target (or the whole server) is gone.
_MISSING_TARGET_MARKERS = (
    "can't find window",
    "can't find session",
    "can't find pane",
    "no server running",
    "error connecting to",
    "session not found",
)

_LIST_FORMAT = "\t".join(
    [
        "#{session_name}",
        "#{window_name}",
        "#{pane_pid}",
        "#{pane_dead}",
        "#{pane_dead_status}",
    ]
)


def _run_tmux(args: List[str], *, timeout_s: float = 3.0) -> Tuple[int, str, str]:
    try:
        p = subprocess.run(
            ["tmux", *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
            check=False,
        )
        return int(p.returncode), (p.stdout or ""), (p.stderr or "")
    except subprocess.TimeoutExpired:
        return 124, "", "tmux timeout"
    except OSError as e:
        return 127, "", str(e)


def _is_missing_target(err: str) -> bool:
    s = (err or "").strip().lower()
    return any(m in s for m in _MISSING_TARGET_MARKERS)


def _truthy_flag(value: str) -> bool:
    return (value or "").strip() in ("1", "yes", "on", "true")


def pane_target(session: str, window: str, pane_hint: Optional[str] = None) -> str:
    """`session:window.N`; a window name that already names a pane is used as-is."""
    win = (window or "").strip()
    if "." in win:
        return f"{session}:{win}"
    hint = (pane_hint or "").strip()
    if hint:
        if "." in hint:
            return f"{session}:{hint}"
        if hint.isdigit():
            return f"{session}:{win}.{hint}"
    return f"{session}:{win}.0"


class TmuxRuntime(AgentRuntime):
    """Runtime backed by the tmux CLI. tmux owns process lifecycles."""

    name = "tmux"

    def __init__(self, *, session_prefix: str = "", timeout_s: float = 3.0) -> None:
        self.session_prefix = session_prefix
        self.timeout_s = float(timeout_s)

    def _tmux(self, args: List[str]) -> Tuple[int, str, str]:
        return _run_tmux(args, timeout_s=self.timeout_s)

    def _check(self, args: List[str], what: str) -> str:
        code, out, err = self._tmux(args)
        if code != 0:
            raise RuntimeProviderError(f"tmux {what} failed: {err.strip() or f'exit {code}'}")
        return out

    def session_name(self, project_name: str) -> str:
        return f"{self.session_prefix}{project_name}"

    def has_session(self, session: str) -> bool:
        code, _, _ = self._tmux(["has-session", "-t", session])
        return code == 0

    def _list_window_names(self, session: str) -> List[str]:
        code, out, _ = self._tmux(["list-windows", "-t", session, "-F", "#{window_name}"])
        if code != 0:
            return []
        return [ln.strip() for ln in (out or "").splitlines() if ln.strip()]

    def _pane_dead(self, target: str) -> bool:
        code, out, _ = self._tmux(["display-message", "-p", "-t", target, "#{pane_dead}"])
        if code != 0:
            return False
        return _truthy_flag(out)

    # Core contract

    def get_or_create_session(self, project_name: str, first_window_name: Optional[str] = None) -> str:
        session = self.session_name(project_name)
        if self.has_session(session):
            return session
        first = (first_window_name or "").strip() or "system"
        self._check(["new-session", "-d", "-s", session, "-n", first], "new-session")
        logger.info("created tmux session", extra={"op": "session.create", "project": project_name})
        return session

    def set_session_env(self, session: str, key: str, value: str) -> None:
        self._check(["set-environment", "-t", session, key, value], "set-environment")

    def window_exists(self, session: str, window: str) -> bool:
        return window.split(".", 1)[0] in set(self._list_window_names(session))

    def start_agent_in_window(self, session: str, window: str, command: str) -> None:
        win = (window or "").strip()
        if not win:
            raise ValueError("missing window name")

        target = pane_target(session, win)
        if self.window_exists(session, win):
            if not self._pane_dead(target):
                return
            self._tmux(["kill-window", "-t", f"{session}:{win}"])

        self._check(["new-window", "-d", "-t", session, "-n", win], "new-window")
        cmd = (command or "").strip()
        if not cmd:
            return
        self._check(["send-keys", "-t", target, "-l", cmd], "send-keys")
        self._check(["send-keys", "-t", target, "Enter"], "send-keys")
        logger.info("started agent", extra={"op": "window.start", "window": f"{session}:{win}"})

    def type_keys_to_window(self, session: str, window: str, keys: str, pane_hint: Optional[str] = None) -> None:
        target = pane_target(session, window, pane_hint)
        # Literal mode so tmux does not interpret words like "Enter" or "C-c".
        self._check(["send-keys", "-t", target, "-l", keys], "send-keys")

    def send_enter_to_window(self, session: str, window: str, pane_hint: Optional[str] = None) -> None:
        target = pane_target(session, window, pane_hint)
        self._check(["send-keys", "-t", target, "Enter"], "send-keys")

    def send_keys_to_window(self, session: str, window: str, keys: str, pane_hint: Optional[str] = None) -> None:
        self.type_keys_to_window(session, window, keys, pane_hint)
        self.send_enter_to_window(session, window, pane_hint)

    def get_window_buffer(self, session: str, window: str, pane_hint: Optional[str] = None) -> Optional[str]:
        code, out, err = self._tmux(["capture-pane", "-p", "-J", "-t", pane_target(session, window, pane_hint)])
        if code == 0:
            return out
        if _is_missing_target(err):
            return None
        raise RuntimeProviderError(f"tmux capture-pane failed: {err.strip() or f'exit {code}'}")

    # Optional capabilities

    def list_windows(self, session: Optional[str] = None) -> List[WindowInfo]:
        scope = ["-t", session] if session else ["-a"]
        code, out, err = self._tmux(["list-windows", *scope, "-F", _LIST_FORMAT])
        if code != 0:
            if _is_missing_target(err):
                return []
            raise RuntimeProviderError(f"tmux list-windows failed: {err.strip() or f'exit {code}'}")

        items: List[WindowInfo] = []
        for line in (out or "").splitlines():
            parts = line.split("\t")
            if len(parts) < 2 or not parts[0] or not parts[1]:
                continue
            pid_s = parts[2].strip() if len(parts) > 2 else ""
            dead = _truthy_flag(parts[3]) if len(parts) > 3 else False
            status_s = parts[4].strip() if len(parts) > 4 else ""
            items.append(
                WindowInfo(
                    session=parts[0],
                    window=parts[1],
                    status="exited" if dead else "running",
                    pid=int(pid_s) if pid_s.isdigit() else None,
                    exit_code=int(status_s) if dead and status_s.lstrip("-").isdigit() else None,
                )
            )
        return sorted(items, key=lambda w: (w.session, w.window))

    def stop_window(self, session: str, window: str, sig: int = signal.SIGTERM) -> bool:
        # tmux delivers SIGHUP to the pane's process when its window is killed.
        _ = sig
        code, _, _ = self._tmux(["kill-window", "-t", f"{session}:{window.split('.', 1)[0]}"])
        return code == 0

    def resize_window(self, session: str, window: str, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            return
        self._check(
            ["resize-window", "-t", f"{session}:{window.split('.', 1)[0]}", "-x", str(int(cols)), "-y", str(int(rows))],
            "resize-window",
        )

    def dispose(self, sig: int = signal.SIGTERM) -> None:
        _ = sig
        return None
