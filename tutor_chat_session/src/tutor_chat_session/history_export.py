"""
History Entries and Export

Builds the entries stored in the per-student history log and renders them
for download (Markdown or JSON).
"""

import html
import json
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from tutor_chat_session.session_state import SessionRecord
from tutor_chat_session.session_store import record_to_dict

DEFAULT_PREVIEW = "Chat session with BiocBot"
PREVIEW_LENGTH = 100

_TAG_RE = re.compile(r"<[^>]+>")


def strip_html(content: str) -> str:
    return html.unescape(_TAG_RE.sub("", content or ""))


def format_duration(start: datetime, end: datetime) -> str:
    """`1h 2m 3s`, `2m 3s` or `3s`."""
    total_seconds = max(int((end - start).total_seconds()), 0)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _timestamp(message: Dict[str, Any]) -> Optional[datetime]:
    value = message.get("timestamp")
    return datetime.fromisoformat(value) if value else None


def calculate_duration(chat_data: Optional[Dict[str, Any]]) -> str:
    """Duration from the first user message to the last bot message (or last message)."""
    messages = (chat_data or {}).get("messages") or []
    first_user = next((m for m in messages if m.get("type") == "user"), None)
    if not first_user or not _timestamp(first_user):
        return "0s"

    last_bot = next((m for m in reversed(messages) if m.get("type") == "bot"), None)
    end_message = last_bot if last_bot and _timestamp(last_bot) else messages[-1]
    end = _timestamp(end_message)
    if not end:
        return "0s"
    return format_duration(_timestamp(first_user), end)


def generate_chat_preview(chat_data: Optional[Dict[str, Any]]) -> str:
    """First user message (or first bot message), HTML stripped, cut at 100 characters."""
    messages = (chat_data or {}).get("messages") or []
    for sender in ("user", "bot"):
        first = next((m for m in messages if m.get("type") == sender), None)
        if first:
            content = first.get("content", "")
            if first.get("isHtml"):
                content = strip_html(content)
            return content[:PREVIEW_LENGTH] + ("..." if len(content) > PREVIEW_LENGTH else "")
    return DEFAULT_PREVIEW


def build_history_entry(record: SessionRecord, saved_at: Optional[datetime] = None, title: Optional[str] = None) -> Dict[str, Any]:
    """Snapshot a session record as a history log entry."""
    saved_at = saved_at or datetime.now()
    chat_data = record_to_dict(record)
    return {
        "id": record.session_id,
        "title": title or f"Chat Session {saved_at.strftime('%Y-%m-%d')}",
        "preview": generate_chat_preview(chat_data),
        "courseId": record.metadata.course_id,
        "unitName": record.metadata.unit_name or "Unknown Unit",
        "messageCount": len(record.messages),
        "duration": calculate_duration(chat_data),
        "savedAt": saved_at.isoformat(),
        "chatData": chat_data,
    }


def html_to_markdown(content: str) -> str:
    text = content or ""
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</?(strong|b)>", "**", text, flags=re.IGNORECASE)
    text = re.sub(r"</?(em|i)>", "*", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "- ", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|div|li|h\d)>", "\n", text, flags=re.IGNORECASE)
    text = strip_html(text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def export_markdown(entry: Dict[str, Any], student_name: str) -> str:
    """Render a history entry as a Markdown transcript."""
    saved_at = entry.get("savedAt")
    lines: List[str] = [
        f"# {entry.get('title', 'Chat Session')}",
        "",
        f"**Date:** {datetime.fromisoformat(saved_at).strftime('%Y-%m-%d %H:%M:%S') if saved_at else 'Unknown'}",
        f"**Course:** {entry.get('courseId') or 'Unknown'}",
        f"**Student:** {student_name}",
        f"**Unit:** {entry.get('unitName') or 'Unknown'}",
        f"**Duration:** {entry.get('duration', '0s')}",
        "",
        "---",
        "",
    ]

    messages = (entry.get("chatData") or {}).get("messages")
    if not messages:
        lines.append("*No messages found.*")
        return "\n".join(lines)

    for message in messages:
        role = "Student" if message.get("type") == "user" else "BiocBot"
        timestamp = _timestamp(message)
        header = f"### {role} ({timestamp.strftime('%Y-%m-%d %H:%M:%S')})" if timestamp else f"### {role}"
        content = message.get("content", "")
        if message.get("isHtml"):
            content = html_to_markdown(content)
        lines.extend([header, "", content, "", "---", ""])

    return "\n".join(lines)


def export_json(entry: Dict[str, Any]) -> str:
    return json.dumps(entry, indent=2, ensure_ascii=False)
