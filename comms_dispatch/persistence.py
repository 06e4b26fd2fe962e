# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite backed message store used by the dispatcher.

Holds communications, bulk communications, dispatch jobs, delivery events
and the send log used by the rate limiter. Every status change goes through
:meth:`Persistence.transition`, a conditional per-id update: the row only
changes when its current status is one of the expected sources, which makes
the update itself the mutual exclusion boundary between workers and the
webhook reconciler.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from typing import Any

import aiosqlite

JSON_COLUMNS = {
    "communications": (
        "to_addresses",
        "recipients",
        "content",
        "template",
        "delivery_status",
        "error",
        "settings",
        "context",
        "metadata",
    ),
    "bulk_communications": (
        "recipients",
        "communication_ids",
        "content",
        "template",
        "settings",
        "context",
        "progress",
    ),
    "jobs": ("payload",),
    "communication_events": ("metadata",),
}

# Lifecycle timestamps are written once and never overwritten.
SET_ONCE_COLUMNS = {"sent_ts", "delivered_ts", "started_ts", "completed_ts"}

COMMUNICATION_COLUMNS = (
    "id",
    "bulk_id",
    "type",
    "status",
    "priority",
    "to_addresses",
    "recipients",
    "content",
    "template",
    "provider",
    "provider_message_id",
    "scheduled_ts",
    "sent_ts",
    "delivered_ts",
    "cost",
    "delivery_status",
    "error",
    "settings",
    "context",
    "metadata",
    "attempt",
    "retry_count",
)

BULK_COLUMNS = (
    "id",
    "name",
    "description",
    "type",
    "priority",
    "recipients",
    "communication_ids",
    "content",
    "template",
    "settings",
    "context",
    "status",
    "progress",
    "scheduled_ts",
    "started_ts",
    "completed_ts",
)


class Persistence:
    """Helper class responsible for reading and writing service state."""

    def __init__(self, db_path: str = "/data/comms_dispatch.db"):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS communications (
                    id TEXT PRIMARY KEY,
                    bulk_id TEXT,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'normal',
                    to_addresses TEXT NOT NULL,
                    recipients TEXT,
                    content TEXT,
                    template TEXT,
                    provider TEXT,
                    provider_message_id TEXT,
                    scheduled_ts INTEGER,
                    sent_ts INTEGER,
                    delivered_ts INTEGER,
                    cost REAL,
                    delivery_status TEXT,
                    error TEXT,
                    settings TEXT,
                    context TEXT,
                    metadata TEXT,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_comm_provider_msg ON communications(provider_message_id)"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_comm_bulk ON communications(bulk_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_comm_status ON communications(status)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS bulk_communications (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    type TEXT NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'normal',
                    recipients TEXT,
                    communication_ids TEXT NOT NULL,
                    content TEXT,
                    template TEXT,
                    settings TEXT,
                    context TEXT,
                    status TEXT NOT NULL,
                    progress TEXT,
                    scheduled_ts INTEGER,
                    started_ts INTEGER,
                    completed_ts INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    job_name TEXT NOT NULL,
                    communication_id TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 2,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    payload TEXT NOT NULL,
                    available_ts INTEGER NOT NULL,
                    claimed_by TEXT,
                    claimed_ts INTEGER,
                    completed_ts INTEGER,
                    outcome TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_ready ON jobs(completed_ts, available_ts, priority)"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_comm ON jobs(communication_id)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS communication_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    communication_id TEXT NOT NULL,
                    event_key TEXT NOT NULL UNIQUE,
                    event_type TEXT NOT NULL,
                    provider TEXT,
                    event_ts INTEGER NOT NULL,
                    description TEXT,
                    metadata TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_comm ON communication_events(communication_id)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS send_log (
                    provider TEXT,
                    timestamp INTEGER
                )
                """
            )
            await db.commit()

    # Encoding ------------------------------------------------------------------
    @staticmethod
    def _encode(table: str, data: dict[str, Any]) -> dict[str, Any]:
        encoded = dict(data)
        for col in JSON_COLUMNS.get(table, ()):
            if col in encoded and encoded[col] is not None:
                encoded[col] = json.dumps(encoded[col])
        return encoded

    @staticmethod
    def _decode(table: str, row: dict[str, Any]) -> dict[str, Any]:
        decoded = dict(row)
        for col in JSON_COLUMNS.get(table, ()):
            value = decoded.get(col)
            if value is None:
                continue
            try:
                decoded[col] = json.loads(value)
            except (json.JSONDecodeError, TypeError):
                decoded[col] = None
        return decoded

    def _decode_communication(self, row: dict[str, Any]) -> dict[str, Any]:
        data = self._decode("communications", row)
        data["to"] = data.pop("to_addresses", None) or []
        data["recipients"] = data.get("recipients") or []
        return data

    async def _fetch_all(self, query: str, params: dict[str, Any] | Sequence[Any] = ()) -> list[dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def _fetch_one(self, query: str, params: dict[str, Any] | Sequence[Any] = ()) -> dict[str, Any] | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def _execute(self, query: str, params: dict[str, Any] | Sequence[Any] = ()) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    # Communications -----------------------------------------------------------
    @staticmethod
    def _communication_row(record: dict[str, Any]) -> dict[str, Any]:
        row = {col: record.get(col) for col in COMMUNICATION_COLUMNS}
        row["to_addresses"] = record.get("to") or record.get("to_addresses") or []
        row["attempt"] = int(record.get("attempt") or 0)
        row["retry_count"] = int(record.get("retry_count") or 0)
        return row

    async def insert_communications(self, records: Sequence[dict[str, Any]]) -> list[str]:
        """Persist new communications, returning the ids that were stored.

        Existing ids are never overwritten.
        """
        if not records:
            return []
        columns = ", ".join(COMMUNICATION_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in COMMUNICATION_COLUMNS)
        inserted: list[str] = []
        async with aiosqlite.connect(self.db_path) as db:
            for record in records:
                row = self._encode("communications", self._communication_row(record))
                cursor = await db.execute(
                    f"INSERT OR IGNORE INTO communications ({columns}) VALUES ({placeholders})",
                    row,
                )
                if cursor.rowcount:
                    inserted.append(record["id"])
            await db.commit()
        return inserted

    async def insert_communication(self, record: dict[str, Any]) -> bool:
        return bool(await self.insert_communications([record]))

    async def get_communication(self, communication_id: str) -> dict[str, Any] | None:
        row = await self._fetch_one("SELECT * FROM communications WHERE id = ?", (communication_id,))
        return self._decode_communication(row) if row else None

    async def find_by_provider_message_id(
        self, provider_message_id: str, provider: str | None = None
    ) -> dict[str, Any] | None:
        """Return the communication correlated to a provider message id."""
        query = "SELECT * FROM communications WHERE provider_message_id = :pmid"
        params: dict[str, Any] = {"pmid": provider_message_id}
        if provider:
            query += " AND provider = :provider"
            params["provider"] = provider
        query += " ORDER BY created_at DESC LIMIT 1"
        row = await self._fetch_one(query, params)
        return self._decode_communication(row) if row else None

    @staticmethod
    def _where(filters: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        clauses: list[str] = []
        params: dict[str, Any] = {}
        for key in ("type", "status", "priority", "bulk_id", "provider"):
            value = filters.get(key)
            if value is not None:
                clauses.append(f"{key} = :{key}")
                params[key] = value
        campaign_id = filters.get("campaign_id")
        if campaign_id is not None:
            clauses.append("json_extract(context, '$.campaign_id') = :campaign_id")
            params["campaign_id"] = campaign_id
        statuses = filters.get("statuses")
        if statuses:
            names = []
            for idx, status in enumerate(statuses):
                names.append(f":status_{idx}")
                params[f"status_{idx}"] = status
            clauses.append(f"status IN ({', '.join(names)})")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def list_communications(
        self, filters: dict[str, Any] | None = None, *, limit: int = 20, offset: int = 0
    ) -> list[dict[str, Any]]:
        where, params = self._where(filters or {})
        params.update({"limit": int(limit), "offset": int(offset)})
        rows = await self._fetch_all(
            f"SELECT * FROM communications{where} ORDER BY created_at DESC, id ASC LIMIT :limit OFFSET :offset",
            params,
        )
        return [self._decode_communication(row) for row in rows]

    async def count_communications(self, filters: dict[str, Any] | None = None) -> int:
        where, params = self._where(filters or {})
        row = await self._fetch_one(f"SELECT COUNT(*) AS cnt FROM communications{where}", params)
        return int(row["cnt"]) if row else 0

    async def transition(
        self,
        communication_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Move a communication to ``to_status`` if it is in one of ``from_statuses``.

        ``fields`` are written in the same statement; lifecycle timestamps are
        only filled when still empty. Returns ``True`` when the row changed.
        """
        sources = [s for s in from_statuses]
        if not sources:
            return False
        values = self._encode("communications", dict(fields or {}))
        assignments = ["status = :to_status", "updated_at = CURRENT_TIMESTAMP"]
        params: dict[str, Any] = {"id": communication_id, "to_status": to_status}
        for col, value in values.items():
            if col not in COMMUNICATION_COLUMNS or col in ("id", "status"):
                raise ValueError(f"Unknown communication column '{col}'")
            if col in SET_ONCE_COLUMNS:
                assignments.append(f"{col} = COALESCE({col}, :{col})")
            else:
                assignments.append(f"{col} = :{col}")
            params[col] = value
        names = []
        for idx, status in enumerate(sources):
            names.append(f":from_{idx}")
            params[f"from_{idx}"] = status
        rowcount = await self._execute(
            f"""
            UPDATE communications SET {', '.join(assignments)}
            WHERE id = :id AND status IN ({', '.join(names)})
            """,
            params,
        )
        return rowcount > 0

    async def update_communication_fields(self, communication_id: str, fields: dict[str, Any]) -> bool:
        """Update non-status fields of a communication."""
        if not fields:
            return False
        values = self._encode("communications", fields)
        assignments = ["updated_at = CURRENT_TIMESTAMP"]
        for col in values:
            if col not in COMMUNICATION_COLUMNS or col in ("id", "status"):
                raise ValueError(f"Unknown communication column '{col}'")
            if col in SET_ONCE_COLUMNS:
                assignments.append(f"{col} = COALESCE({col}, :{col})")
            else:
                assignments.append(f"{col} = :{col}")
        values["id"] = communication_id
        rowcount = await self._execute(
            f"UPDATE communications SET {', '.join(assignments)} WHERE id = :id",
            values,
        )
        return rowcount > 0

    async def status_counts(self, bulk_id: str) -> dict[str, int]:
        """Return ``{status: count}`` for the communications of a bulk request."""
        rows = await self._fetch_all(
            "SELECT status, COUNT(*) AS cnt FROM communications WHERE bulk_id = ? GROUP BY status",
            (bulk_id,),
        )
        return {row["status"]: int(row["cnt"]) for row in rows}

    async def list_communication_ids_for_bulk(self, bulk_id: str, statuses: Iterable[str] | None = None) -> list[str]:
        filters: dict[str, Any] = {"bulk_id": bulk_id}
        if statuses is not None:
            filters["statuses"] = list(statuses)
        where, params = self._where(filters)
        rows = await self._fetch_all(f"SELECT id FROM communications{where} ORDER BY id", params)
        return [row["id"] for row in rows]

    async def list_expirable(self, deadline_ts: int) -> list[dict[str, Any]]:
        """Return pending scheduled communications whose schedule is older than ``deadline_ts``."""
        rows = await self._fetch_all(
            """
            SELECT id, bulk_id, scheduled_ts FROM communications
            WHERE status = 'pending' AND scheduled_ts IS NOT NULL AND scheduled_ts < ?
            ORDER BY scheduled_ts ASC
            """,
            (deadline_ts,),
        )
        return rows

    # Bulk communications ------------------------------------------------------
    async def insert_bulk(self, record: dict[str, Any]) -> None:
        row = self._encode("bulk_communications", {col: record.get(col) for col in BULK_COLUMNS})
        columns = ", ".join(BULK_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in BULK_COLUMNS)
        await self._execute(f"INSERT INTO bulk_communications ({columns}) VALUES ({placeholders})", row)

    async def get_bulk(self, bulk_id: str) -> dict[str, Any] | None:
        row = await self._fetch_one("SELECT * FROM bulk_communications WHERE id = ?", (bulk_id,))
        return self._decode("bulk_communications", row) if row else None

    async def update_bulk(self, bulk_id: str, fields: dict[str, Any]) -> bool:
        if not fields:
            return False
        values = self._encode("bulk_communications", fields)
        assignments = ["updated_at = CURRENT_TIMESTAMP"]
        for col in values:
            if col not in BULK_COLUMNS or col == "id":
                raise ValueError(f"Unknown bulk column '{col}'")
            if col in SET_ONCE_COLUMNS:
                assignments.append(f"{col} = COALESCE({col}, :{col})")
            else:
                assignments.append(f"{col} = :{col}")
        values["id"] = bulk_id
        rowcount = await self._execute(
            f"UPDATE bulk_communications SET {', '.join(assignments)} WHERE id = :id",
            values,
        )
        return rowcount > 0

    # Jobs ---------------------------------------------------------------------
    async def insert_job(self, job: dict[str, Any]) -> bool:
        """Insert a dispatch job; an existing job with the same id is kept."""
        row = self._encode("jobs", job)
        rowcount = await self._execute(
            """
            INSERT OR IGNORE INTO jobs
            (id, job_name, communication_id, priority, attempt, payload, available_ts)
            VALUES (:id, :job_name, :communication_id, :priority, :attempt, :payload, :available_ts)
            """,
            row,
        )
        return rowcount > 0

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        row = await self._fetch_one("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._decode("jobs", row) if row else None

    async def fetch_claimable_jobs(self, *, now_ts: int, stale_before: int, limit: int) -> list[dict[str, Any]]:
        """Return open jobs that are due and either unclaimed or abandoned."""
        rows = await self._fetch_all(
            """
            SELECT * FROM jobs
            WHERE completed_ts IS NULL
              AND available_ts <= :now_ts
              AND (claimed_by IS NULL OR claimed_ts < :stale_before)
            ORDER BY priority ASC, available_ts ASC, created_at ASC, id ASC
            LIMIT :limit
            """,
            {"now_ts": now_ts, "stale_before": stale_before, "limit": limit},
        )
        return [self._decode("jobs", row) for row in rows]

    async def claim_job(self, job_id: str, worker_id: str, *, now_ts: int, stale_before: int) -> bool:
        """Take ownership of a job; only one caller can win."""
        rowcount = await self._execute(
            """
            UPDATE jobs SET claimed_by = :worker_id, claimed_ts = :now_ts
            WHERE id = :id AND completed_ts IS NULL
              AND (claimed_by IS NULL OR claimed_ts < :stale_before)
            """,
            {"id": job_id, "worker_id": worker_id, "now_ts": now_ts, "stale_before": stale_before},
        )
        return rowcount > 0

    async def complete_job(self, job_id: str, outcome: str, completed_ts: int) -> None:
        await self._execute(
            "UPDATE jobs SET completed_ts = :ts, outcome = :outcome WHERE id = :id AND completed_ts IS NULL",
            {"id": job_id, "ts": completed_ts, "outcome": outcome},
        )

    async def release_job(self, job_id: str, available_ts: int) -> None:
        """Give a claimed job back to the queue, due at ``available_ts``."""
        await self._execute(
            """
            UPDATE jobs SET claimed_by = NULL, claimed_ts = NULL, available_ts = :available_ts
            WHERE id = :id AND completed_ts IS NULL
            """,
            {"id": job_id, "available_ts": available_ts},
        )

    async def cancel_jobs_for(self, communication_id: str, completed_ts: int) -> int:
        return await self._execute(
            """
            UPDATE jobs SET completed_ts = :ts, outcome = 'cancelled'
            WHERE communication_id = :cid AND completed_ts IS NULL
            """,
            {"cid": communication_id, "ts": completed_ts},
        )

    async def list_jobs_for(self, communication_id: str) -> list[dict[str, Any]]:
        rows = await self._fetch_all(
            "SELECT * FROM jobs WHERE communication_id = ? ORDER BY attempt ASC",
            (communication_id,),
        )
        return [self._decode("jobs", row) for row in rows]

    async def count_open_jobs(self) -> int:
        row = await self._fetch_one("SELECT COUNT(*) AS cnt FROM jobs WHERE completed_ts IS NULL")
        return int(row["cnt"]) if row else 0

    async def remove_completed_jobs_before(self, threshold_ts: int) -> int:
        return await self._execute(
            "DELETE FROM jobs WHERE completed_ts IS NOT NULL AND completed_ts < ?",
            (threshold_ts,),
        )

    # Events -------------------------------------------------------------------
    async def add_event(
        self,
        *,
        communication_id: str,
        event_key: str,
        event_type: str,
        event_ts: int,
        provider: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Record a delivery event; returns ``False`` when ``event_key`` was already seen."""
        row = self._encode(
            "communication_events",
            {
                "communication_id": communication_id,
                "event_key": event_key,
                "event_type": event_type,
                "event_ts": event_ts,
                "provider": provider,
                "description": description,
                "metadata": metadata or None,
            },
        )
        rowcount = await self._execute(
            """
            INSERT OR IGNORE INTO communication_events
            (communication_id, event_key, event_type, provider, event_ts, description, metadata)
            VALUES (:communication_id, :event_key, :event_type, :provider, :event_ts, :description, :metadata)
            """,
            row,
        )
        return rowcount > 0

    async def has_event(self, event_key: str) -> bool:
        row = await self._fetch_one("SELECT 1 AS found FROM communication_events WHERE event_key = ?", (event_key,))
        return row is not None

    async def list_events(self, communication_id: str) -> list[dict[str, Any]]:
        rows = await self._fetch_all(
            """
            SELECT id, communication_id, event_key, event_type, provider, event_ts, description, metadata
            FROM communication_events WHERE communication_id = ?
            ORDER BY event_ts ASC, id ASC
            """,
            (communication_id,),
        )
        return [self._decode("communication_events", row) for row in rows]

    # Send log -----------------------------------------------------------------
    async def log_send(self, provider: str, timestamp: int) -> None:
        """Record a delivery event for rate limiting purposes."""
        await self._execute("INSERT INTO send_log (provider, timestamp) VALUES (?, ?)", (provider, timestamp))

    async def count_sends_since(self, provider: str, since_ts: int) -> int:
        """Count messages sent through ``provider`` at or after ``since_ts``."""
        row = await self._fetch_one(
            "SELECT COUNT(*) AS cnt FROM send_log WHERE provider = ? AND timestamp >= ?",
            (provider, since_ts),
        )
        return int(row["cnt"]) if row else 0

    async def purge_send_log_before(self, threshold_ts: int) -> int:
        return await self._execute("DELETE FROM send_log WHERE timestamp < ?", (threshold_ts,))


__all__ = ["Persistence"]
