"""PTY-backed runtime: the bridge process supervises agent processes itself.

Each window owns one pseudo-terminal, one child process (in its own process
group) and one reader thread. Output is kept as a bounded raw text buffer and
also fed into a `pyte` screen so callers can ask for a rendered frame.
"""
from __future__ import annotations

import codecs
import fcntl
import logging
import os
import pty
import selectors
import signal
import struct
import subprocess
import termios
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pyte

from ..contracts.v1 import StyledFrame, StyledLine, StyledSegment, WindowInfo
from ..util.time import utc_iso
from .base import AgentRuntime, RuntimeProviderError

logger = logging.getLogger("termrelay.runners.pty")

DEFAULT_MAX_BUFFER_CHARS = 256 * 1024
DEFAULT_COLS = 140
DEFAULT_ROWS = 40

MIN_COLS, MAX_COLS = 30, 240
MIN_ROWS, MAX_ROWS = 10, 120


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    try:
        winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
    except OSError:
        pass


def _best_effort_killpg(pid: int, sig: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.killpg(pid, sig)
        return True
    except OSError:
        try:
            os.kill(pid, sig)
            return True
        except OSError:
            return False


def _color(value: str) -> Optional[str]:
    s = str(value or "")
    return None if (not s or s == "default") else s


class PtyWindow:
    def __init__(
        self,
        *,
        session: str,
        window: str,
        max_buffer_chars: int = DEFAULT_MAX_BUFFER_CHARS,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ) -> None:
        self.session = session
        self.window = window
        self._max_buffer_chars = max(1024, int(max_buffer_chars))
        self._lock = threading.Lock()

        self._buffer = ""
        self._screen = pyte.Screen(cols, rows)
        self._screen.set_mode(pyte.modes.LNM)
        self._stream = pyte.Stream(self._screen)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        self._proc: Optional[subprocess.Popen] = None
        self._master_fd: Optional[int] = None
        self._thread: Optional[threading.Thread] = None
        self._selector: Optional[selectors.BaseSelector] = None
        self._running = False

        self.status = "idle"
        self.pid: Optional[int] = None
        self.started_at: Optional[datetime] = None
        self.exited_at: Optional[datetime] = None
        self.exit_code: Optional[int] = None
        self.signal: Optional[str] = None

    def is_running(self) -> bool:
        return bool(self._running) and self._proc is not None and self._proc.poll() is None

    def start(self, *, shell: str, command: str, env: Dict[str, str]) -> None:
        # A restart must not share fds with the previous run's reader.
        prev = self._thread
        if prev is not None and prev.is_alive():
            prev.join(timeout=2.0)
        cols, rows = self._screen.columns, self._screen.lines
        master_fd, slave_fd = pty.openpty()
        _set_winsize(master_fd, cols=cols, rows=rows)
        os.set_blocking(master_fd, False)

        def _preexec() -> None:
            try:
                os.setsid()
            except OSError:
                pass
            try:
                fcntl.ioctl(0, termios.TIOCSCTTY, 0)
            except OSError:
                pass

        with self._lock:
            self.status = "starting"
            self.started_at = datetime.now(timezone.utc)
            self.exited_at = None
            self.exit_code = None
            self.signal = None
        try:
            proc = subprocess.Popen(
                [shell, "-lc", command],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                close_fds=True,
                preexec_fn=_preexec,
            )
        except OSError as e:
            os.close(master_fd)
            os.close(slave_fd)
            with self._lock:
                self.status = "error"
                self.exited_at = datetime.now(timezone.utc)
            raise RuntimeProviderError(f"failed to spawn agent: {e}") from e
        os.close(slave_fd)

        self._proc = proc
        self._master_fd = master_fd
        self._selector = selectors.DefaultSelector()
        self._selector.register(master_fd, selectors.EVENT_READ)
        self._running = True
        with self._lock:
            self.pid = proc.pid
            self.status = "running"
        self._append(f"[runtime] process started (pid={proc.pid})\n")

        self._thread = threading.Thread(
            target=self._loop, name=f"termrelay-pty:{self.session}:{self.window}", daemon=True
        )
        self._thread.start()

    def _append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._buffer += text
            if len(self._buffer) > self._max_buffer_chars:
                self._buffer = self._buffer[-self._max_buffer_chars :]
            self._stream.feed(text)

    def _read_available(self) -> bool:
        """Drain readable output; False once the PTY reports EOF."""
        fd = self._master_fd
        if fd is None:
            return False
        while True:
            try:
                data = os.read(fd, 65536)
            except BlockingIOError:
                return True
            except OSError:
                # EIO once the child side is closed.
                return False
            if not data:
                return False
            self._append(self._decoder.decode(data))

    def _loop(self) -> None:
        try:
            while self._running:
                sel = self._selector
                if sel is None:
                    break
                events = sel.select(timeout=0.1)
                if events:
                    if not self._read_available():
                        break
                    continue
                if self._proc is not None and self._proc.poll() is not None:
                    self._read_available()
                    break
        finally:
            self._finish()

    def _finish(self) -> None:
        self._running = False
        code: Optional[int] = None
        if self._proc is not None:
            try:
                code = self._proc.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                code = None
        sig_name: Optional[str] = None
        exit_code: Optional[int] = code
        if code is not None and code < 0:
            try:
                sig_name = signal.Signals(-code).name
            except ValueError:
                sig_name = str(-code)
            exit_code = None
        self._append(self._decoder.decode(b"", final=True))
        self._append(f"[runtime] process exited (code={exit_code}, signal={sig_name})\n")
        self._close_fds()
        with self._lock:
            self.exited_at = datetime.now(timezone.utc)
            self.exit_code = exit_code
            self.signal = sig_name
            self.status = "exited" if code == 0 else "error"
        logger.info(
            "agent process exited",
            extra={"op": "window.exit", "window": f"{self.session}:{self.window}"},
        )

    def _close_fds(self) -> None:
        sel, self._selector = self._selector, None
        if sel is not None:
            try:
                sel.close()
            except OSError:
                pass
        fd, self._master_fd = self._master_fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass

    def write(self, data: bytes) -> None:
        """Write all of `data` to the PTY, retrying while the kernel buffer is full."""
        fd = self._master_fd
        if not self.is_running() or fd is None:
            raise RuntimeProviderError(f"window not running: {self.session}:{self.window}")
        remaining = data
        attempts = 0
        while remaining and attempts < 50:
            try:
                written = os.write(fd, remaining)
            except BlockingIOError:
                attempts += 1
                time.sleep(0.1)
                continue
            except OSError as e:
                raise RuntimeProviderError(f"write to {self.session}:{self.window} failed: {e}") from e
            remaining = remaining[written:]
            attempts = 0
        if remaining:
            raise RuntimeProviderError(f"write to {self.session}:{self.window} timed out")

    def signal_process(self, sig: int) -> bool:
        if not self.is_running():
            return False
        return _best_effort_killpg(int(self.pid or 0), sig)

    def stop(self, sig: int = signal.SIGTERM) -> None:
        if self.is_running():
            _best_effort_killpg(int(self.pid or 0), sig)
            deadline = time.time() + 1.0
            while time.time() < deadline and self._proc is not None and self._proc.poll() is None:
                time.sleep(0.05)
            if self._proc is not None and self._proc.poll() is None:
                _best_effort_killpg(int(self.pid or 0), signal.SIGKILL)
        self._running = False
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)

    def resize(self, *, cols: int, rows: int) -> None:
        with self._lock:
            self._screen.resize(lines=rows, columns=cols)
        fd = self._master_fd
        if fd is not None:
            _set_winsize(fd, cols=cols, rows=rows)
        self.signal_process(signal.SIGWINCH)

    def buffer(self) -> str:
        with self._lock:
            return self._buffer

    def frame(self, cols: Optional[int] = None, rows: Optional[int] = None) -> StyledFrame:
        with self._lock:
            screen = self._screen
            width = min(int(cols), screen.columns) if cols else screen.columns
            height = min(int(rows), screen.lines) if rows else screen.lines
            lines: List[StyledLine] = []
            for y in range(height):
                row = screen.buffer[y]
                segments: List[StyledSegment] = []
                last_key: Optional[Tuple[object, ...]] = None
                for x in range(width):
                    ch = row[x]
                    key = (_color(ch.fg), _color(ch.bg), ch.bold, ch.italics, ch.underscore, ch.reverse)
                    if segments and key == last_key:
                        segments[-1].text += ch.data
                        continue
                    segments.append(
                        StyledSegment(
                            text=ch.data,
                            fg=key[0],
                            bg=key[1],
                            bold=bool(ch.bold),
                            italics=bool(ch.italics),
                            underscore=bool(ch.underscore),
                            reverse=bool(ch.reverse),
                        )
                    )
                    last_key = key
                lines.append(StyledLine(segments=segments))
            return StyledFrame(
                cols=width,
                rows=height,
                cursor_row=min(screen.cursor.y, max(0, height - 1)),
                cursor_col=min(screen.cursor.x, max(0, width - 1)),
                lines=lines,
            )

    def info(self) -> WindowInfo:
        with self._lock:
            return WindowInfo(
                session=self.session,
                window=self.window,
                status=self.status,
                pid=self.pid,
                started_at=utc_iso(self.started_at),
                exited_at=utc_iso(self.exited_at),
                exit_code=self.exit_code,
                signal=self.signal,
            )


class PtyRuntime(AgentRuntime):
    name = "pty"

    def __init__(
        self,
        *,
        shell: Optional[str] = None,
        max_buffer_chars: int = DEFAULT_MAX_BUFFER_CHARS,
    ) -> None:
        self.shell = shell or os.environ.get("SHELL") or "/bin/bash"
        self.max_buffer_chars = int(max_buffer_chars)
        self._lock = threading.Lock()
        self._sessions: Dict[str, Dict[str, str]] = {}
        self._windows: Dict[Tuple[str, str], PtyWindow] = {}
        self._disposed = False

    def _ensure_session(self, session: str) -> Dict[str, str]:
        with self._lock:
            return self._sessions.setdefault(session, {})

    def _ensure_window(self, session: str, window: str) -> PtyWindow:
        key = (session, window)
        with self._lock:
            rec = self._windows.get(key)
            if rec is None:
                rec = PtyWindow(session=session, window=window, max_buffer_chars=self.max_buffer_chars)
                self._windows[key] = rec
            return rec

    def _get(self, session: str, window: str) -> Optional[PtyWindow]:
        with self._lock:
            return self._windows.get((session, window))

    def _running_window(self, session: str, window: str) -> PtyWindow:
        rec = self._get(session, window)
        if rec is None or not rec.is_running():
            raise RuntimeProviderError(f"window not running: {session}:{window}")
        return rec

    # Core contract

    def get_or_create_session(self, project_name: str, first_window_name: Optional[str] = None) -> str:
        session = project_name
        self._ensure_session(session)
        if first_window_name:
            self._ensure_window(session, first_window_name)
        return session

    def set_session_env(self, session: str, key: str, value: str) -> None:
        env = self._ensure_session(session)
        with self._lock:
            env[key] = value

    def window_exists(self, session: str, window: str) -> bool:
        return self._get(session, window) is not None

    def start_agent_in_window(self, session: str, window: str, command: str) -> None:
        if self._disposed:
            raise RuntimeProviderError("runtime disposed")
        if not (window or "").strip():
            raise ValueError("missing window name")
        session_env = dict(self._ensure_session(session))
        rec = self._ensure_window(session, window)
        if rec.is_running():
            return

        env = os.environ.copy()
        env.update(session_env)
        env.setdefault("TERM", "xterm-256color")
        env.setdefault("COLORTERM", "truecolor")
        env.setdefault("COLUMNS", str(DEFAULT_COLS))
        env.setdefault("LINES", str(DEFAULT_ROWS))
        rec.start(shell=self.shell, command=command, env=env)

    def type_keys_to_window(self, session: str, window: str, keys: str, pane_hint: Optional[str] = None) -> None:
        _ = pane_hint
        self._running_window(session, window).write(keys.encode("utf-8"))

    def send_enter_to_window(self, session: str, window: str, pane_hint: Optional[str] = None) -> None:
        _ = pane_hint
        self._running_window(session, window).write(b"\r")

    def send_keys_to_window(self, session: str, window: str, keys: str, pane_hint: Optional[str] = None) -> None:
        self.type_keys_to_window(session, window, keys, pane_hint)
        self.send_enter_to_window(session, window, pane_hint)

    def get_window_buffer(self, session: str, window: str, pane_hint: Optional[str] = None) -> Optional[str]:
        _ = pane_hint
        rec = self._get(session, window)
        return None if rec is None else rec.buffer()

    # Optional capabilities

    def list_windows(self, session: Optional[str] = None) -> List[WindowInfo]:
        with self._lock:
            recs = [r for (s, _), r in self._windows.items() if session is None or s == session]
        return sorted((r.info() for r in recs), key=lambda w: (w.session, w.window))

    def get_window_frame(
        self, session: str, window: str, cols: Optional[int] = None, rows: Optional[int] = None
    ) -> Optional[StyledFrame]:
        rec = self._get(session, window)
        return None if rec is None else rec.frame(cols, rows)

    def stop_window(self, session: str, window: str, sig: int = signal.SIGTERM) -> bool:
        rec = self._get(session, window)
        if rec is None:
            return False
        return rec.signal_process(sig)

    def resize_window(self, session: str, window: str, cols: int, rows: int) -> None:
        rec = self._get(session, window)
        if rec is None:
            return
        safe_cols = max(MIN_COLS, min(MAX_COLS, int(cols)))
        safe_rows = max(MIN_ROWS, min(MAX_ROWS, int(rows)))
        rec.resize(cols=safe_cols, rows=safe_rows)

    def dispose(self, sig: int = signal.SIGTERM) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            recs = list(self._windows.values())
        for rec in recs:
            try:
                rec.stop(sig)
            except Exception:
                logger.warning("failed to stop window during dispose", exc_info=True)
