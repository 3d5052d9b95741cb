from __future__ import annotations

import uuid
from typing import Any, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ...util.time import utc_now_iso


LifecycleState = Literal["offline", "working", "stopped"]
EventKind = Literal["lifecycle", "notification"]
EventSource = Literal["poll", "hook"]

DEFAULT_AGENT_TYPE = "opencode"


class OutboundEvent(BaseModel):
    """One message-worthy observation about an agent window.

    `chunks` joined with "\\n" reproduces `text` whenever no single line of
    `text` is longer than the chunk size the event was built with.
    """

    v: int = 1
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    ts: str = Field(default_factory=utc_now_iso)
    project_name: str
    agent_type: str
    instance_id: str
    kind: EventKind
    state: Optional[LifecycleState] = None
    notification_type: Optional[str] = None
    source: EventSource = "poll"
    text: str = ""
    chunks: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @property
    def window_key(self) -> Tuple[str, str]:
        return (self.project_name, self.instance_id)


def _str_or_none(v: Any) -> Optional[str]:
    return v if isinstance(v, str) else None


class HookPayload(BaseModel):
    """Body posted by agent-side hooks to the push listener.

    Every field is optional and wrongly typed values are treated as absent:
    hooks are fire-and-forget, so a malformed body degrades to an empty one.
    """

    project_name: Optional[str] = Field(default=None, alias="projectName")
    agent_type: str = Field(default=DEFAULT_AGENT_TYPE, alias="agentType")
    instance_id: Optional[str] = Field(default=None, alias="instanceId")
    type: Optional[str] = None
    text: Optional[str] = None
    message: Optional[str] = None
    turn_text: Optional[str] = Field(default=None, alias="turnText")
    notification_type: Optional[str] = Field(default=None, alias="notificationType")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator(
        "project_name",
        "instance_id",
        "type",
        "text",
        "message",
        "turn_text",
        "notification_type",
        mode="before",
    )
    @classmethod
    def _drop_non_strings(cls, v: Any) -> Optional[str]:
        return _str_or_none(v)

    @field_validator("agent_type", mode="before")
    @classmethod
    def _default_agent_type(cls, v: Any) -> str:
        s = _str_or_none(v)
        return s.strip() if s and s.strip() else DEFAULT_AGENT_TYPE

    @classmethod
    def parse(cls, raw: Any) -> "HookPayload":
        if not isinstance(raw, dict):
            return cls()
        try:
            return cls.model_validate(raw)
        except ValidationError:
            return cls()

    @property
    def resolved_instance_id(self) -> str:
        iid = (self.instance_id or "").strip()
        return iid or self.agent_type

    def event_text(self) -> str:
        """`text` when non-blank, else `message`, else empty."""
        for candidate in (self.text, self.message):
            if candidate and candidate.strip():
                return candidate
        return ""
