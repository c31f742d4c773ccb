"""JSON + markdown chat transcripts."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Sequence
import uuid

from .collaborators import AttachmentInfo, ChatFiles
from .util import atomic_write_text, utc_now_iso


class ChatHistory:
    """One active session at a time; ``end_session`` writes it to a directory."""

    JSON_NAME = "chat.json"
    MD_NAME = "chat.md"

    def __init__(self) -> None:
        self._session: dict[str, Any] | None = None

    @property
    def active(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> dict[str, Any] | None:
        return self._session

    def start_session(self, metadata: dict[str, Any]) -> None:
        self._session = {
            "session_id": uuid.uuid4().hex[:8],
            "start_time": utc_now_iso(),
            "end_time": None,
            "metadata": dict(metadata),
            "messages": [],
            "summary": None,
        }

    def _append(self, message: dict[str, Any]) -> None:
        if self._session is None:
            raise RuntimeError("no active chat session")
        message = {"timestamp": utc_now_iso(), **message}
        self._session["messages"].append(message)

    def add_user_message(
        self, text: str, attachments: Sequence[AttachmentInfo] | None = None
    ) -> None:
        message: dict[str, Any] = {"role": "user", "content": text}
        if attachments:
            message["attachments"] = [
                {"file_name": a.file_name, "mime_type": a.mime_type} for a in attachments
            ]
        self._append(message)

    def add_assistant_message(self, text: str) -> None:
        self._append({"role": "assistant", "content": text})

    def add_tool_execution(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: str,
        *,
        source: str,
        success: bool = True,
        trigger: dict[str, Any] | None = None,
    ) -> None:
        message: dict[str, Any] = {
            "role": "tool",
            "tool_name": tool_name,
            "tool_input": tool_input,
            "tool_output": tool_output,
            "source": source,
            "success": success,
        }
        if trigger:
            message["trigger"] = dict(trigger)
        self._append(message)

    def add_phase_event(
        self, kind: str, phase: str, trigger: dict[str, Any] | None = None
    ) -> None:
        message: dict[str, Any] = {"role": "client", "event": kind, "phase": phase}
        if trigger:
            message["trigger"] = dict(trigger)
        self._append(message)

    def referenced_attachments(self) -> list[str]:
        if self._session is None:
            return []
        names: list[str] = []
        for message in self._session["messages"]:
            for att in message.get("attachments") or []:
                name = att.get("file_name")
                if name and name not in names:
                    names.append(name)
        return names

    def end_session(self, summary: str, *, directory: Path) -> ChatFiles:
        if self._session is None:
            raise RuntimeError("no active chat session")
        session = self._session
        self._session = None
        session["end_time"] = utc_now_iso()
        session["summary"] = summary

        json_path = directory / self.JSON_NAME
        md_path = directory / self.MD_NAME
        atomic_write_text(json_path, json.dumps(session, indent=2, ensure_ascii=False) + "\n")
        atomic_write_text(md_path, render_markdown(session))
        return ChatFiles(file_path=json_path, md_file_path=md_path)


def render_markdown(session: dict[str, Any]) -> str:
    meta = session.get("metadata") or {}
    lines = [f"# Chat {session.get('session_id', '')}", ""]
    for key in ("ablation", "phase", "provider", "model", "thinking", "run"):
        if key in meta:
            lines.append(f"**{key.title()}:** {meta[key]}  ")
    lines.append(f"**Started:** {session.get('start_time')}  ")
    if session.get("end_time"):
        lines.append(f"**Ended:** {session['end_time']}  ")
    if session.get("summary"):
        lines.append(f"**Summary:** {session['summary']}  ")
    lines += ["", "---", "", "## Conversation", ""]

    for msg in session.get("messages", []):
        role = msg.get("role")
        ts = msg.get("timestamp", "")
        if role == "user":
            lines.append(f"### You ({ts})")
            lines.append("")
            attachments = msg.get("attachments") or []
            if attachments:
                lines.append("**Attachments:**")
                for att in attachments:
                    lines.append(f"- {att['file_name']} ({att['mime_type']})")
                lines.append("")
            lines += [msg.get("content", ""), ""]
        elif role == "assistant":
            lines += [f"### Assistant ({ts})", "", msg.get("content", ""), ""]
        elif role == "tool":
            mark = "✓" if msg.get("success", True) else "✗"
            header = f"### Tool {mark} `{msg.get('tool_name')}` [{msg.get('source')}] ({ts})"
            lines += [header, ""]
            trigger = msg.get("trigger")
            if trigger:
                lines += [f"_trigger: {json.dumps(trigger)}_", ""]
            lines += [
                "```json",
                json.dumps(msg.get("tool_input", {}), indent=2, ensure_ascii=False),
                "```",
                "",
                "```",
                str(msg.get("tool_output", "")).rstrip(),
                "```",
                "",
            ]
        elif role == "client":
            lines += [f"_{msg.get('event')}: {msg.get('phase')} ({ts})_", ""]
    return "\n".join(lines).rstrip() + "\n"
