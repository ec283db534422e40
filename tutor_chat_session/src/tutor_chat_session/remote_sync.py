"""
Remote Sync Agent

Best-effort mirror of the local session record to a remote store.

Each local mutation schedules one fire-and-forget task carrying a full
snapshot of the record. Tasks are not ordered relative to each other and
failures are logged and dropped (no retry): the local store stays
authoritative and the last snapshot to arrive overwrites the rest.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Set

from tutor_chat_session.collaborators import RemoteSessionStore
from tutor_chat_session.session_state import SessionRecord
from tutor_chat_session.session_store import record_to_dict

logger = logging.getLogger(__name__)


def build_sync_payload(record: SessionRecord) -> Dict[str, Any]:
    """Full-state snapshot keyed by session id."""
    return {
        "sessionId": record.session_id,
        "courseId": record.metadata.course_id,
        "studentId": record.metadata.student_id,
        "unitName": record.metadata.unit_name,
        "chatData": record_to_dict(record),
    }


class RemoteSyncAgent:
    """Schedules and tracks sync tasks; never blocks the caller."""

    def __init__(self, remote_store: Optional[RemoteSessionStore] = None, enabled: bool = True):
        self.remote_store = remote_store
        self.enabled = enabled and remote_store is not None
        self.pending: Set[asyncio.Task] = set()
        self.last_sync: Optional[datetime] = None
        self.sync_count = 0
        self.failure_count = 0

    def schedule(self, record: SessionRecord) -> Optional[asyncio.Task]:
        """
        Snapshot `record` now and send it in the background.

        Returns the task, or None when sync is disabled or no event loop is
        running.
        """
        if not self.enabled:
            return None

        payload = build_sync_payload(record)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"🔍 [RemoteSync] No running event loop, skipping sync of {payload['sessionId']}")
            return None

        task = loop.create_task(self._run_sync(payload))
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)
        return task

    async def _run_sync(self, payload: Dict[str, Any]):
        """Run a single sync operation. May silently fail."""
        session_id = payload["sessionId"]
        try:
            result = await self.remote_store.save(payload)
        except Exception as e:
            self.failure_count += 1
            logger.warning(f"⚠️ [RemoteSync] Sync of {session_id} failed: {e}")
            return

        if result.success:
            self.sync_count += 1
            self.last_sync = datetime.now()
            logger.debug(f"🔍 [RemoteSync] Synced {session_id}")
        else:
            self.failure_count += 1
            logger.warning(f"⚠️ [RemoteSync] Remote store rejected {session_id}: {result.message}")

    async def flush(self):
        """Wait for all scheduled syncs to settle."""
        while self.pending:
            await asyncio.gather(*list(self.pending), return_exceptions=True)

    async def stop(self):
        """Cancel syncs that have not finished yet."""
        for task in list(self.pending):
            task.cancel()
        if self.pending:
            await asyncio.gather(*list(self.pending), return_exceptions=True)
        logger.info("🛑 [RemoteSync] Sync agent stopped")

    def get_status(self) -> dict:
        return {
            "enabled": self.enabled,
            "pending": len(self.pending),
            "sync_count": self.sync_count,
            "failure_count": self.failure_count,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
        }
