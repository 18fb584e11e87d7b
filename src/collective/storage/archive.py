"""
Snapshot Archive — durable history of exported state documents.

The in-memory registries stay the source of truth; the archive keeps the
documents ``Coordinator.export_state`` produces so a later process can
restore from the latest one.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite

from collective.errors import ValidationError


class SnapshotArchive:
    """
    Async SQLite store of versioned state snapshots.

    Usage:
        async with SnapshotArchive(path) as archive:
            snapshot_id = await archive.save(coordinator.export_state())
            latest = await archive.latest()
    """

    DB_PATH = Path.home() / ".collective" / "data" / "snapshots.db"

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path) if db_path else self.DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def __aenter__(self) -> SnapshotArchive:
        await self._init_db()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    async def _init_db(self) -> None:
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schema_version INTEGER NOT NULL,
                generation INTEGER NOT NULL,
                fitness_score REAL NOT NULL,
                trust_edges INTEGER NOT NULL DEFAULT 0,
                patterns INTEGER NOT NULL DEFAULT 0,
                strategies INTEGER NOT NULL DEFAULT 0,
                document TEXT NOT NULL,
                created_at REAL NOT NULL,
                CHECK (schema_version >= 1),
                CHECK (generation >= 0),
                CHECK (fitness_score BETWEEN 0.0 AND 1.0)
            )
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_snapshots_created
            ON snapshots(created_at DESC)
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def save(self, document: dict[str, Any]) -> int:
        """Store one exported document. Returns the snapshot id."""
        assert self._db is not None
        try:
            schema_version = int(document["schema_version"])
            generation = int(document["generation"])
            fitness_score = float(document["fitness_score"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Not a state document: {e}") from e

        cursor = await self._db.execute(
            """INSERT INTO snapshots
               (schema_version, generation, fitness_score, trust_edges,
                patterns, strategies, document, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                schema_version,
                generation,
                fitness_score,
                len(document.get("trust_edges", [])),
                len(document.get("patterns", [])),
                len(document.get("strategies", [])),
                json.dumps(document),
                time.time(),
            ),
        )
        await self._db.commit()
        return cursor.lastrowid or 0

    async def latest(self) -> dict[str, Any] | None:
        """Most recently saved document, or None when the archive is empty."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT document FROM snapshots ORDER BY id DESC LIMIT 1"
        )
        row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def get(self, snapshot_id: int) -> dict[str, Any] | None:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT document FROM snapshots WHERE id = ?", (snapshot_id,)
        )
        row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def history(self, limit: int = 20) -> list[dict[str, Any]]:
        """Summaries of recent snapshots, newest first."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT id, schema_version, generation, fitness_score, trust_edges, "
            "patterns, strategies, created_at "
            "FROM snapshots ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "id": row[0],
                "schema_version": row[1],
                "generation": row[2],
                "fitness_score": row[3],
                "trust_edges": row[4],
                "patterns": row[5],
                "strategies": row[6],
                "created_at": row[7],
            }
            for row in rows
        ]
