import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def connect(path: str) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(path) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys=ON")
        yield db


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    user_query TEXT NOT NULL,
                    state TEXT NOT NULL,
                    context TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                );
                CREATE TABLE IF NOT EXISTS conversation_steps(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                    step_id INTEGER NOT NULL,
                    step_type TEXT NOT NULL,
                    llm_request TEXT,
                    llm_response TEXT,
                    tool_calls TEXT NOT NULL,
                    results TEXT,
                    status TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                );
                CREATE TABLE IF NOT EXISTS hn_items(
                    id INTEGER PRIMARY KEY,
                    item_type TEXT NOT NULL,
                    by TEXT,
                    time TIMESTAMP NOT NULL,
                    text TEXT,
                    url TEXT,
                    score INTEGER,
                    title TEXT,
                    parent INTEGER,
                    kids TEXT,
                    descendants INTEGER,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    dead INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL
                );
                CREATE TABLE IF NOT EXISTS entities(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id INTEGER NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_value TEXT NOT NULL,
                    original_text TEXT NOT NULL,
                    start_offset INTEGER NOT NULL DEFAULT 0,
                    end_offset INTEGER NOT NULL DEFAULT 0,
                    confidence REAL,
                    created_at TIMESTAMP NOT NULL
                );
                CREATE TABLE IF NOT EXISTS entity_relations(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_entity_id INTEGER NOT NULL,
                    target_entity_id INTEGER NOT NULL,
                    relation_type TEXT NOT NULL,
                    confidence REAL,
                    item_id INTEGER,
                    created_at TIMESTAMP NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_steps_conversation ON conversation_steps(conversation_id, step_id);
                CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at);
                CREATE INDEX IF NOT EXISTS idx_items_type ON hn_items(item_type);
                CREATE INDEX IF NOT EXISTS idx_items_time ON hn_items(time);
                CREATE INDEX IF NOT EXISTS idx_items_by ON hn_items(by);
                CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(entity_type);
                CREATE INDEX IF NOT EXISTS idx_entities_value ON entities(entity_value);
                CREATE INDEX IF NOT EXISTS idx_relations_type ON entity_relations(relation_type);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        async with connect(self.path) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[Dict[str, Any]]:
        async with connect(self.path) as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def add_item(
        self,
        item_id: int,
        item_type: str,
        *,
        by: Optional[str] = None,
        time: Optional[str] = None,
        title: Optional[str] = None,
        text: Optional[str] = None,
        url: Optional[str] = None,
        score: Optional[int] = None,
        descendants: Optional[int] = None,
        kids: Optional[List[int]] = None,
    ) -> None:
        now = utc_now()
        await self.execute(
            """
            INSERT OR REPLACE INTO hn_items(id, item_type, by, time, text, url, score, title, kids, descendants, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item_id,
                item_type,
                by,
                time or now,
                text,
                url,
                score,
                title,
                json.dumps(kids or [], ensure_ascii=True),
                descendants,
                now,
            ),
        )

    async def add_entity(
        self,
        item_id: int,
        entity_type: str,
        entity_value: str,
        original_text: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> int:
        async with connect(self.path) as db:
            cursor = await db.execute(
                """
                INSERT INTO entities(item_id, entity_type, entity_value, original_text, confidence, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (item_id, entity_type, entity_value, original_text or entity_value, confidence, utc_now()),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def add_relation(
        self,
        source_entity_id: int,
        target_entity_id: int,
        relation_type: str,
        confidence: Optional[float] = None,
        item_id: Optional[int] = None,
    ) -> int:
        async with connect(self.path) as db:
            cursor = await db.execute(
                """
                INSERT INTO entity_relations(source_entity_id, target_entity_id, relation_type, confidence, item_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (source_entity_id, target_entity_id, relation_type, confidence, item_id, utc_now()),
            )
            await db.commit()
            return int(cursor.lastrowid)
