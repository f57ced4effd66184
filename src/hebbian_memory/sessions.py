"""Session records: counters, stated intent and recent-session listings.

Rows in the ``sessions`` table are created lazily by the first access or
recall of a session and carry its running totals.  A session may also carry
a free-text *intent*, typically the first user request, so later sessions
can see what earlier ones were about.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from hebbian_memory.config import HebbianConfig
from hebbian_memory.exceptions import ValidationError
from hebbian_memory.learning import validate_session_id
from hebbian_memory.storage import Storage, utcnow_iso

log = logging.getLogger(__name__)


@dataclass
class SessionSummary:
    """One row of the ``sessions`` table.

    Parameters
    ----------
    id:
        Session identifier.
    started_at:
        ISO-8601 timestamp of the session's first activity.
    last_active_at:
        ISO-8601 timestamp of its most recent access or recall.
    total_accesses:
        Accesses recorded in the session.
    tokens_used, tokens_saved:
        Estimated token spend and token savings credited by recall.
    recalls:
        Recall calls that returned at least one result.
    intent:
        Free-text description of what the session is for, if set.
    """

    id: str
    started_at: str
    last_active_at: str | None
    total_accesses: int
    tokens_used: int
    tokens_saved: int
    recalls: int
    intent: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> SessionSummary:
        return cls(
            id=row["id"],
            started_at=row["started_at"],
            last_active_at=row["last_active_at"],
            total_accesses=row["total_accesses"],
            tokens_used=row["tokens_used"],
            tokens_saved=row["tokens_saved"],
            recalls=row["recalls"],
            intent=row["intent"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at,
            "last_active_at": self.last_active_at,
            "total_accesses": self.total_accesses,
            "tokens_used": self.tokens_used,
            "tokens_saved": self.tokens_saved,
            "recalls": self.recalls,
            "intent": self.intent,
        }


class SessionManager:
    """Reads and annotates ``sessions`` rows."""

    def __init__(self, storage: Storage, config: HebbianConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or storage.config

    async def set_intent(self, session_id: str, intent: str) -> None:
        """Store *intent* on the session, creating the row if needed."""
        session_id = validate_session_id(session_id)
        if not isinstance(intent, str) or not intent.strip():
            raise ValidationError("intent", "must be a non-empty string", intent)
        stamp = utcnow_iso()
        await self._storage.execute_write(
            """
            INSERT INTO sessions (id, started_at, last_active_at, intent)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET intent = excluded.intent
            """,
            (session_id, stamp, stamp, intent.strip()),
        )
        log.debug("session %s intent set", session_id)

    async def get_intent(self, session_id: str) -> str | None:
        rows = await self._storage.execute(
            "SELECT intent FROM sessions WHERE id = ?", (session_id,)
        )
        return rows[0]["intent"] if rows else None

    async def get(self, session_id: str) -> SessionSummary | None:
        rows = await self._storage.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return SessionSummary.from_row(rows[0]) if rows else None

    async def recent(self, days: int = 7) -> list[SessionSummary]:
        """Sessions started within the last *days* days, newest first."""
        if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
            raise ValidationError("days", "must be a positive integer", days)
        since = (datetime.now(tz=timezone.utc) - timedelta(days=days)).isoformat(
            timespec="microseconds"
        )
        rows = await self._storage.execute(
            "SELECT * FROM sessions WHERE started_at >= ? ORDER BY started_at DESC, id ASC",
            (since,),
        )
        return [SessionSummary.from_row(row) for row in rows]
