"""Terminal capture text helpers: control-sequence stripping, cleanup, chunking."""
from __future__ import annotations

import re
from typing import Iterable, List, Optional


DEFAULT_CHUNK_SIZE = 1900

# CSI with any parameter/intermediate bytes, OSC ended by BEL or ST (ESC \), charset
# selection, and the two-byte escapes agent TUIs emit (ESC 7/8, ESC =/>, ESC M).
_CONTROL_RE = re.compile(
    r"\x1b(?:\[[0-?]*[ -/]*[@-~]|\].*?(?:\x07|\x1b\\)|[()][A-Z0-9]|[78=>MDEHc])",
    re.DOTALL,
)

_FENCE_LINE_RE = re.compile(r"^```", re.MULTILINE)
_FENCE_OPEN_RE = re.compile(r"^```(\w*)")

_FILE_EXTENSIONS = (
    "png", "jpg", "jpeg", "gif", "webp", "svg", "bmp",
    "pdf", "docx", "pptx", "xlsx", "csv", "json", "txt",
)

_FILE_PATH_RE = re.compile(
    r"(?:^|[\s`\"'(\[])(/[^\s`\"')\]]+\.(?:" + "|".join(_FILE_EXTENSIONS) + r"))(?=[\s`\"')\].,;:!?]|$)",
    re.IGNORECASE | re.MULTILINE,
)


def strip_control_sequences(text: str) -> str:
    """Remove terminal escape sequences; every other character is kept as-is."""
    return _CONTROL_RE.sub("", text or "")


def clean_capture(text: str) -> str:
    """Strip control sequences and drop trailing blank lines.

    Interior structure (including interior blank lines) is preserved.
    """
    lines = strip_control_sequences(text).split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def chunk(text: str, max_len: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """Split text into chunks of at most `max_len` characters on line breaks.

    Lines are packed greedily. A line longer than `max_len` is cut to
    `max_len` characters and emitted as its own chunk. When no line is cut,
    "\\n".join(result) == text.
    """
    limit = max(1, int(max_len))
    s = text or ""
    if len(s) <= limit:
        return [s]

    out: List[str] = []
    current: List[str] = []
    current_len = 0
    for line in s.split("\n"):
        if len(line) > limit:
            if current:
                out.append("\n".join(current))
                current, current_len = [], 0
            out.append(line[:limit])
            continue
        if not current:
            current, current_len = [line], len(line)
            continue
        if current_len + 1 + len(line) > limit:
            out.append("\n".join(current))
            current, current_len = [line], len(line)
            continue
        current.append(line)
        current_len += 1 + len(line)
    if current:
        out.append("\n".join(current))
    return out


def split_lines_for_chat(text: str, max_len: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """`chunk` for delivery: whitespace-only pieces are dropped and code fences balanced.

    A fenced block cut by a chunk boundary is closed at the end of that piece
    and reopened, with the same language tag, at the start of the next one.
    """
    out: List[str] = []
    open_lang: Optional[str] = None
    for piece in chunk(text, max_len):
        if not piece.strip():
            continue
        if open_lang is not None:
            piece = f"```{open_lang}\n{piece}"
        inside = False
        lang = ""
        for line in piece.split("\n"):
            m = _FENCE_OPEN_RE.match(line)
            if m is None:
                continue
            if inside:
                inside, lang = False, ""
            else:
                inside, lang = True, m.group(1)
        if inside:
            piece += "\n```"
            open_lang = lang
        else:
            open_lang = None
        out.append(piece)
    return out


def strip_outer_codeblock(text: str) -> str:
    """Remove one fenced code block when it wraps the entire text.

    "```ts\\nfoo\\n```" -> "foo"; "```\\nfoo\\n```\\nbar" is returned unchanged.
    """
    trimmed = (text or "").strip()
    if not trimmed.startswith("```") or not trimmed.endswith("```"):
        return text
    first_newline = trimmed.find("\n")
    if first_newline == -1:
        return text
    closing = trimmed.rfind("```")
    if closing <= first_newline:
        return text
    inner = trimmed[first_newline + 1 : closing]
    # An odd number of inner fences means the outer pair does not wrap everything.
    if len(_FENCE_LINE_RE.findall(inner)) % 2 != 0:
        return text
    return inner.rstrip()


def extract_file_paths(text: str) -> List[str]:
    """Absolute file paths with known extensions, unique, in order of first appearance."""
    seen = set()
    out: List[str] = []
    for m in _FILE_PATH_RE.finditer(text or ""):
        p = m.group(1)
        if p in seen:
            continue
        seen.add(p)
        out.append(p)
    return out


def strip_file_paths(text: str, paths: Iterable[str]) -> str:
    """Remove the given paths from display text (markdown images, code spans, bare)."""
    out = text or ""
    for p in sorted(set(paths), key=len, reverse=True):
        esc = re.escape(p)
        out = re.sub(r"!\[[^\]]*\]\(" + esc + r"\)", "", out)
        out = re.sub(r"`" + esc + r"`", "", out)
        out = out.replace(p, "")
    lines = [ln.rstrip() for ln in out.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()
