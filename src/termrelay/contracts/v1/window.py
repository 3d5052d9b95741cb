from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


_EXITED_STATUSES = ("exited", "error", "dead")


class CaptureSnapshot(BaseModel):
    """One sampled read of a window. `raw_text=None` means the window could not be read."""

    raw_text: Optional[str] = None
    cleaned_text: Optional[str] = None
    captured_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="forbid")


class WindowInfo(BaseModel):
    session: str
    window: str
    status: Optional[str] = None
    pid: Optional[int] = None
    started_at: Optional[str] = None
    exited_at: Optional[str] = None
    exit_code: Optional[int] = None
    signal: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @property
    def has_exited(self) -> bool:
        if self.exited_at:
            return True
        return (self.status or "").strip().lower() in _EXITED_STATUSES


class StyledSegment(BaseModel):
    text: str
    fg: Optional[str] = None
    bg: Optional[str] = None
    bold: bool = False
    italics: bool = False
    underscore: bool = False
    reverse: bool = False

    model_config = ConfigDict(extra="forbid")


class StyledLine(BaseModel):
    segments: List[StyledSegment] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    def plain(self) -> str:
        return "".join(s.text for s in self.segments)


class StyledFrame(BaseModel):
    cols: int
    rows: int
    cursor_row: int = 0
    cursor_col: int = 0
    lines: List[StyledLine] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    def plain_text(self) -> str:
        out = [ln.plain().rstrip() for ln in self.lines]
        while out and not out[-1].strip():
            out.pop()
        return "\n".join(out)
