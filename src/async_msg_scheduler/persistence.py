# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed document store for the message scheduler.

Each tenant owns a handful of JSON documents, addressed by ``(kind, tenant_id)``:

- ``jobs``: the tenant's job collection (a JSON array)
- ``recent``: the tenant's most-recent targets/messages history

A document is always replaced as a whole inside one SQLite transaction, so a
crash mid-write leaves either the previous or the new document visible, never
a half-written one. Documents that fail to parse are read back as the empty
default and logged, trading the unreadable data for availability.

Example:
    Basic usage::

        persistence = Persistence("/data/msg_scheduler.db")
        await persistence.init_db()
        await persistence.write_collection("acme", [job.to_document()])
        docs = await persistence.read_collection("acme")
"""

from __future__ import annotations

import json
from typing import Any

import aiosqlite

from .logger import get_logger

JOBS_KIND = "jobs"
RECENT_KIND = "recent"

logger = get_logger("Persistence")


class Persistence:
    """Async SQLite persistence layer for per-tenant documents.

    Each operation opens and closes its own connection, making it safe for
    concurrent use from several tenants.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "/data/msg_scheduler.db"):
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the schema. Idempotent."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    kind TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (kind, tenant_id)
                )
                """
            )
            await db.commit()

    # Generic documents -----------------------------------------------------
    async def read_document(self, kind: str, tenant_id: str, default: Any = None) -> Any:
        """Read one document, returning ``default`` when missing or corrupt."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT body FROM documents WHERE kind = ? AND tenant_id = ?",
                (kind, tenant_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None or not str(row[0]).strip():
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as exc:
            logger.warning("Unreadable %s document for tenant %s, using default: %s", kind, tenant_id, exc)
            return default

    async def write_document(self, kind: str, tenant_id: str, body: Any) -> None:
        """Atomically replace one document."""
        payload = json.dumps(body, indent=2)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO documents (kind, tenant_id, body, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(kind, tenant_id) DO UPDATE SET
                    body = excluded.body,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (kind, tenant_id, payload),
            )
            await db.commit()

    async def delete_document(self, kind: str, tenant_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM documents WHERE kind = ? AND tenant_id = ?",
                (kind, tenant_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    # Job collections -------------------------------------------------------
    async def read_collection(self, tenant_id: str) -> list[dict[str, Any]]:
        """Return the tenant's job documents, ``[]`` if missing or corrupt."""
        docs = await self.read_document(JOBS_KIND, tenant_id, [])
        if not isinstance(docs, list):
            logger.warning("Job collection of tenant %s is not a list, ignoring it", tenant_id)
            return []
        return [doc for doc in docs if isinstance(doc, dict)]

    async def write_collection(self, tenant_id: str, jobs: list[dict[str, Any]]) -> None:
        await self.write_document(JOBS_KIND, tenant_id, list(jobs))

    async def delete_collection(self, tenant_id: str) -> bool:
        return await self.delete_document(JOBS_KIND, tenant_id)

    async def list_tenants(self) -> list[str]:
        """Tenant ids owning a job collection, sorted."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT tenant_id FROM documents WHERE kind = ? ORDER BY tenant_id",
                (JOBS_KIND,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # Recent history --------------------------------------------------------
    async def read_recent(self, tenant_id: str) -> dict[str, list[str]]:
        doc = await self.read_document(RECENT_KIND, tenant_id, {})
        if not isinstance(doc, dict):
            doc = {}
        targets = doc.get("targets")
        messages = doc.get("messages")
        return {
            "targets": targets if isinstance(targets, list) else [],
            "messages": messages if isinstance(messages, list) else [],
        }

    async def write_recent(self, tenant_id: str, recent: dict[str, list[str]]) -> None:
        await self.write_document(RECENT_KIND, tenant_id, recent)

    async def delete_tenant(self, tenant_id: str) -> int:
        """Remove every document of a tenant. Returns the number removed."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM documents WHERE tenant_id = ?", (tenant_id,))
            await db.commit()
            return cursor.rowcount
