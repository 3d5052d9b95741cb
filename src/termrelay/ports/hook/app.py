from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from fastapi import FastAPI, HTTPException, Request

from ... import __version__
from ...capture.text import (
    DEFAULT_CHUNK_SIZE,
    chunk,
    extract_file_paths,
    strip_file_paths,
    strip_outer_codeblock,
)
from ...contracts.v1 import HookPayload, OutboundEvent
from ...daemon.hub import EventHub

logger = logging.getLogger("termrelay.ports.hook")

ProjectPathFn = Callable[[str], Optional[str]]


def validate_file_paths(paths: Iterable[str], project_path: Optional[str]) -> List[str]:
    """Keep paths that exist and whose real location is inside `project_path`."""
    if not project_path:
        return []
    root = Path(project_path).resolve()
    out: List[str] = []
    for p in paths:
        try:
            real = Path(p).resolve(strict=True)
        except (OSError, RuntimeError):
            continue
        if real == root or root in real.parents:
            out.append(p)
    return out


def normalize_hook_payload(
    payload: HookPayload,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    project_path: Optional[str] = None,
) -> Optional[OutboundEvent]:
    """Map a hook body onto an OutboundEvent; None when it carries nothing actionable.

    `files` only lists paths inside `project_path`; they are removed from the text.
    """
    project = (payload.project_name or "").strip()
    if not project:
        return None

    base: Dict[str, Any] = {
        "project_name": project,
        "agent_type": payload.agent_type,
        "instance_id": payload.resolved_instance_id,
        "source": "hook",
    }
    event_type = (payload.type or "").strip()

    if event_type == "session.idle":
        text = strip_outer_codeblock(payload.event_text()).strip()
        files = validate_file_paths(extract_file_paths((payload.turn_text or "").strip() or text), project_path)
        if files:
            text = strip_file_paths(text, files)
        return OutboundEvent(
            **base,
            kind="lifecycle",
            state="stopped",
            text=text,
            chunks=chunk(text, chunk_size) if text else [],
            files=files,
        )

    if event_type == "session.notification":
        text = payload.event_text().strip()
        return OutboundEvent(
            **base,
            kind="notification",
            notification_type=(payload.notification_type or "").strip() or None,
            text=text,
            chunks=chunk(text, chunk_size) if text else [],
        )

    if event_type == "session.error":
        text = payload.event_text().strip() or "unknown error"
        return OutboundEvent(
            **base,
            kind="notification",
            notification_type="error",
            text=text,
            chunks=chunk(text, chunk_size),
        )

    return None


def _decode_body(body: bytes) -> Any:
    if not body:
        return {}
    try:
        return json.loads(body.decode("utf-8", errors="replace"))
    except ValueError:
        return {}


def _bad_request(code: str, message: str, status_code: int = 400) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def create_app(
    hub: EventHub,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    project_path_for: Optional[ProjectPathFn] = None,
) -> FastAPI:
    """Push listener app. `project_path_for` maps a project name to its launch directory."""
    app = FastAPI(title="termrelay hook listener", version=__version__)

    def _project_path(project: str) -> Optional[str]:
        return project_path_for(project) if project_path_for is not None else None

    @app.get("/api/v1/ping")
    async def ping() -> Dict[str, Any]:
        return {"ok": True, "version": __version__}

    @app.post("/opencode-event")
    async def opencode_event(request: Request) -> Dict[str, Any]:
        # Hooks are fire-and-forget: every body gets a 200.
        try:
            payload = HookPayload.parse(_decode_body(await request.body()))
            event = normalize_hook_payload(
                payload,
                chunk_size=chunk_size,
                project_path=_project_path((payload.project_name or "").strip()),
            )
            if event is None:
                return {"ok": True, "accepted": False}
            accepted = hub.publish(event)
            logger.info(
                "hook event",
                extra={
                    "op": "hook.event",
                    "project": event.project_name,
                    "agent_type": event.agent_type,
                    "instance_id": event.instance_id,
                    "event_id": event.id,
                    "state": event.state or event.notification_type,
                },
            )
            return {"ok": True, "accepted": accepted}
        except Exception:
            logger.warning("hook event handling failed", exc_info=True, extra={"op": "hook.event"})
            return {"ok": True, "accepted": False}

    @app.post("/send-files")
    async def send_files(request: Request) -> Dict[str, Any]:
        body = await request.body()
        try:
            raw = json.loads(body.decode("utf-8", errors="replace")) if body else {}
        except ValueError:
            raise _bad_request("invalid_json", "invalid JSON body")
        if not isinstance(raw, dict):
            raise _bad_request("invalid_payload", "payload must be an object")

        payload = HookPayload.parse(raw)
        project = (payload.project_name or "").strip()
        if not project:
            raise _bad_request("missing_project", "missing projectName")
        raw_files = raw.get("files")
        files = [f for f in raw_files if isinstance(f, str)] if isinstance(raw_files, list) else []
        if not files:
            raise _bad_request("no_files", "no files provided")
        project_path = _project_path(project)
        if not project_path:
            raise _bad_request("project_not_found", f"project not found: {project}", status_code=404)
        valid = validate_file_paths(files, project_path)
        if not valid:
            raise _bad_request("no_valid_files", "no valid files")

        event = OutboundEvent(
            project_name=project,
            agent_type=payload.agent_type,
            instance_id=payload.resolved_instance_id,
            kind="notification",
            notification_type="files",
            source="hook",
            files=valid,
        )
        hub.publish(event)
        logger.info(
            f"send-files: {len(valid)} file(s)",
            extra={"op": "hook.send_files", "project": project, "instance_id": event.instance_id, "event_id": event.id},
        )
        return {"ok": True, "files": valid}

    return app
