# history.py - Transcript history storage
import logging
from datetime import datetime, timezone
from typing import Dict, List

from components import HistoryStore
from models import Turn
from supabase_client import SupabaseClient

logger = logging.getLogger("History")


class SupabaseHistoryStore(HistoryStore):
    """Stores turns in the ``chat_history`` table, one row per turn."""

    table = "chat_history"

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def load(self, session_id: str) -> List[Turn]:
        rows = await self.client.select(self.table, {
            "select": "id,user_text,model_text",
            "session_id": f"eq.{session_id}",
            "order": "created_at.asc",
        })
        return [
            Turn(id=row["id"], user_text=row.get("user_text") or "", model_text=row.get("model_text") or "")
            for row in rows
        ]

    async def append(self, session_id: str, turn: Turn) -> None:
        # one-sided turns are shown but not stored
        if not turn.user_text or not turn.model_text:
            logger.debug("Skipping one-sided turn %s", turn.id)
            return
        await self.client.insert(self.table, {
            "session_id": session_id,
            "user_text": turn.user_text,
            "model_text": turn.model_text,
        })


class InMemoryHistoryStore(HistoryStore):
    """Process-local history, used when no Supabase project is configured."""

    def __init__(self):
        self.rows: Dict[str, List[dict]] = {}

    async def load(self, session_id: str) -> List[Turn]:
        rows = sorted(self.rows.get(session_id, []), key=lambda row: row["created_at"])
        return [Turn(id=row["id"], user_text=row["user_text"], model_text=row["model_text"]) for row in rows]

    async def append(self, session_id: str, turn: Turn) -> None:
        self.rows.setdefault(session_id, []).append({
            "id": turn.id,
            "session_id": session_id,
            "user_text": turn.user_text,
            "model_text": turn.model_text,
            "created_at": datetime.now(timezone.utc),
        })
