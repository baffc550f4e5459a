"""
UserData stores - per-user, per-flow key/value state
Table: flowcore_user_data (one row per key, NULL value when cleared)
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Tuple

from ..core.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

USER_DATA_TABLE = "flowcore_user_data"


class UserDataStore(Protocol):
    """
    Persistent UserData contract used by the executor.

    A `None` value in a patch deletes the key.
    """

    async def get_user_data(self, user_id: str, flow_id: str) -> Dict[str, Any]:
        ...

    async def set_user_data(
        self,
        user_id: str,
        flow_id: str,
        patch: Dict[str, Any],
        conversation_id: Optional[str] = None,
    ) -> None:
        ...


# ==================== SERIALIZATION ====================

def encode_value(value: Any) -> Tuple[str, str]:
    """Serialize a value with its type tag"""
    if isinstance(value, bool):
        return "boolean", "true" if value else "false"
    if isinstance(value, (int, float)):
        return "number", json.dumps(value)
    if isinstance(value, str):
        return "string", value
    return "json", json.dumps(value, ensure_ascii=False)


def decode_value(type_tag: Optional[str], raw: Optional[str]) -> Any:
    """Inverse of encode_value (unknown tags come back as strings)"""
    if raw is None:
        return None
    if type_tag == "boolean":
        return raw == "true"
    if type_tag in ("number", "json"):
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Undecodable {type_tag} value in user data, keeping raw text")
            return raw
    return raw


# ==================== IN MEMORY ====================

class InMemoryUserDataStore:
    """Process-local store (default backend and tests)"""

    def __init__(self):
        self._data: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def get_user_data(self, user_id: str, flow_id: str) -> Dict[str, Any]:
        return dict(self._data.get((user_id, flow_id), {}))

    async def set_user_data(
        self,
        user_id: str,
        flow_id: str,
        patch: Dict[str, Any],
        conversation_id: Optional[str] = None,
    ) -> None:
        current = self._data.setdefault((user_id, flow_id), {})
        for key, value in patch.items():
            if value is None:
                current.pop(key, None)
            else:
                current[key] = value

    def clear(self) -> None:
        self._data.clear()


# ==================== SUPABASE ====================

class SupabaseUserDataStore:
    """UserData rows in Supabase, one row per (user, flow, key)"""

    def __init__(self, table: str = USER_DATA_TABLE):
        self.table = table

    @property
    def client(self):
        return get_supabase_client()

    async def get_user_data(self, user_id: str, flow_id: str) -> Dict[str, Any]:
        """Get all keys stored for a user in a flow (cleared keys are skipped)"""
        response = self.client.table(self.table).select("key, value, type").eq(
            "user_id", user_id
        ).eq("flow_id", flow_id).execute()
        if not response.data:
            return {}
        return {
            row["key"]: decode_value(row.get("type"), row.get("value"))
            for row in response.data
            if row.get("value") is not None
        }

    async def set_user_data(
        self,
        user_id: str,
        flow_id: str,
        patch: Dict[str, Any],
        conversation_id: Optional[str] = None,
    ) -> None:
        """
        Apply a patch with a single upsert.

        Keys set to None are cleared in the same statement (value and type
        become NULL), so a patch is never half applied.
        """
        rows = []
        cleared = 0
        now = datetime.now().isoformat()
        for key, value in patch.items():
            if value is None:
                type_tag, raw = None, None
                cleared += 1
            else:
                type_tag, raw = encode_value(value)
            rows.append({
                "user_id": user_id,
                "flow_id": flow_id,
                "key": key,
                "value": raw,
                "type": type_tag,
                "conversation_id": conversation_id,
                "updated_at": now,
            })

        if rows:
            self.client.table(self.table).upsert(rows, on_conflict="user_id,flow_id,key").execute()
        logger.debug(f"Stored {len(rows) - cleared} and cleared {cleared} keys for user {user_id} in {flow_id}")


def create_user_data_store(backend: str) -> UserDataStore:
    """Factory for the configured backend (memory | supabase)"""
    if backend == "supabase":
        return SupabaseUserDataStore()
    if backend != "memory":
        logger.warning(f"Unknown user data backend '{backend}', using memory")
    return InMemoryUserDataStore()
