"""
Supabase-backed collaborators

- SupabaseSessionStore: remote mirror of session snapshots (chat_sessions table)
- SupabaseStruggleTopicService: clears struggle topics (struggle_state table)

The supabase client is synchronous, so calls run in a worker thread to keep
the event loop free.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from tutor_chat_session.collaborators import StruggleResetResult, SyncResult

logger = logging.getLogger(__name__)


class SupabaseSessionStore:
    """
    Stores one row per session id; every save overwrites the whole row, so
    snapshots arriving out of order settle on the last one written.
    """

    def __init__(self, supabase_client, table: str = "chat_sessions"):
        self.supabase = supabase_client
        self.table = table

    def _row(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        chat_data = payload.get("chatData") or {}
        return {
            "session_id": payload["sessionId"],
            "course_id": payload.get("courseId"),
            "student_id": payload.get("studentId"),
            "unit_name": payload.get("unitName"),
            "message_count": len(chat_data.get("messages") or []),
            "chat_data": json.dumps(chat_data),
            "saved_at": datetime.now().isoformat(),
        }

    def _upsert(self, row: Dict[str, Any]):
        return self.supabase.table(self.table).upsert(row, on_conflict="session_id").execute()

    async def save(self, payload: Dict[str, Any]) -> SyncResult:
        try:
            result = await asyncio.to_thread(self._upsert, self._row(payload))
        except Exception as e:
            logger.warning(f"⚠️ [SupabaseSessionStore] Error saving session {payload.get('sessionId')}: {e}")
            return SyncResult(success=False, message=str(e))

        if result.data:
            return SyncResult(success=True)
        return SyncResult(success=False, message="No row returned")


class SupabaseStruggleTopicService:
    """Deletes struggle rows for one student: a single topic, or all of them."""

    def __init__(self, supabase_client, student_id: str, table: str = "struggle_state"):
        self.supabase = supabase_client
        self.student_id = student_id
        self.table = table

    def _delete(self, topic: str, course_id: Optional[str]):
        query = self.supabase.table(self.table).delete().eq("student_id", self.student_id)
        if course_id:
            query = query.eq("course_id", course_id)
        if topic.upper() != "ALL":
            query = query.eq("topic", topic.strip().lower())
        return query.execute()

    async def reset(self, topic: str, course_id: Optional[str]) -> StruggleResetResult:
        try:
            await asyncio.to_thread(self._delete, topic, course_id)
        except Exception as e:
            logger.error(f"❌ [SupabaseStruggleTopicService] Error resetting '{topic}': {e}")
            return StruggleResetResult(success=False, message="Failed to reset state")
        return StruggleResetResult(success=True, message="Struggle state reset successfully")
