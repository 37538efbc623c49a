"""
MySQL implementations of the vector store, append log and profile store.

MySQL has no native vector index, so nearest-neighbour search loads the
live (unexpired) rows of a single topic and ranks them with numpy. Topic
buckets stay small in practice (one per agent and debate topic), which
keeps the scan cheap.
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from . import db as db_core
from .stores import LogEntry, VectorMatch, cosine_distance


class MySQLVectorStore:
    async def search_nearest(self, topic: str, vector: Sequence[float], k: int) -> List[VectorMatch]:
        rows = await db_core.fetch_all(
            "SELECT cache_key, payload_json FROM semantic_cache "
            "WHERE topic=%s AND expires_at > UTC_TIMESTAMP()",
            (topic,),
        )
        matches: List[VectorMatch] = []
        for row in rows or []:
            payload = db_core.safe_json(row.get("payload_json"), {})
            stored_vector = payload.get("vector")
            if not isinstance(stored_vector, list) or not stored_vector:
                continue
            matches.append(VectorMatch(str(row.get("cache_key")), cosine_distance(vector, stored_vector), payload))
        matches.sort(key=lambda match: match.distance)
        return matches[: max(0, k)]

    async def upsert(self, key: str, payload: Dict[str, Any], ttl: int) -> None:
        expires_at = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=int(ttl))
        await db_core.execute(
            "INSERT INTO semantic_cache (cache_key, topic, payload_json, expires_at) "
            "VALUES (%s, %s, %s, %s) "
            "ON DUPLICATE KEY UPDATE "
            "topic=VALUES(topic), payload_json=VALUES(payload_json), expires_at=VALUES(expires_at)",
            (key, str(payload.get("topic") or ""), json.dumps(payload, ensure_ascii=False), expires_at),
        )

    async def count(self) -> int:
        rows = await db_core.fetch_all(
            "SELECT COUNT(*) AS total FROM semantic_cache WHERE expires_at > UTC_TIMESTAMP()"
        )
        return int((rows or [{}])[0].get("total") or 0)

    async def purge_expired(self) -> None:
        await db_core.execute("DELETE FROM semantic_cache WHERE expires_at <= UTC_TIMESTAMP()")


class MySQLAppendLog:
    async def append(self, stream_key: str, fields: Dict[str, Any]) -> str:
        entry_id = await db_core.execute(
            "INSERT INTO debate_log_entries (stream_key, fields_json) VALUES (%s, %s)",
            (stream_key, json.dumps(fields, ensure_ascii=False)),
        )
        return str(entry_id or "")

    async def read_recent(self, stream_key: str, count: int) -> List[LogEntry]:
        if count <= 0:
            return []
        rows = await db_core.fetch_all(
            "SELECT id, fields_json, created_at FROM debate_log_entries "
            "WHERE stream_key=%s ORDER BY id DESC LIMIT %s",
            (stream_key, int(count)),
        )
        entries: List[LogEntry] = []
        for row in reversed(rows or []):
            created_at = row.get("created_at")
            timestamp = created_at.timestamp() if hasattr(created_at, "timestamp") else time.time()
            entries.append(LogEntry(str(row.get("id")), timestamp, db_core.safe_json(row.get("fields_json"), {})))
        return entries

    async def delete(self, stream_key: str) -> None:
        await db_core.execute("DELETE FROM debate_log_entries WHERE stream_key=%s", (stream_key,))


class MySQLProfileStore:
    async def get(self, agent_id: str) -> Optional[Dict[str, Any]]:
        rows = await db_core.fetch_all(
            "SELECT profile_json FROM agent_profiles WHERE agent_id=%s",
            (agent_id,),
        )
        if not rows:
            return None
        profile = db_core.safe_json(rows[0].get("profile_json"), None)
        return profile if isinstance(profile, dict) else None

    async def set(self, agent_id: str, profile: Dict[str, Any]) -> None:
        await db_core.execute(
            "INSERT INTO agent_profiles (agent_id, profile_json) VALUES (%s, %s) "
            "ON DUPLICATE KEY UPDATE profile_json=VALUES(profile_json)",
            (agent_id, json.dumps(profile, ensure_ascii=False)),
        )

    async def list_ids(self) -> List[str]:
        rows = await db_core.fetch_all("SELECT agent_id FROM agent_profiles ORDER BY agent_id")
        return [str(row.get("agent_id")) for row in rows or []]
