import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS kv_store(
                    key TEXT PRIMARY KEY,
                    value_json TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )

    async def kv_get(self, key: str) -> Any:
        row = await self.fetchone("SELECT value_json FROM kv_store WHERE key=?", (key,))
        if not row:
            return None
        try:
            return json.loads(row["value_json"] or "null")
        except ValueError:
            return None

    async def kv_set(self, key: str, value: Any) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO kv_store(key, value_json, updated_at) VALUES (?,?,?)",
            (key, json.dumps(value, ensure_ascii=True), utc_now()),
        )

    async def kv_delete(self, key: str) -> None:
        await self.execute("DELETE FROM kv_store WHERE key=?", (key,))
