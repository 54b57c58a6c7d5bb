"""Append-only audit log of validation decisions, plus rollups.

Every decision the validator makes becomes a ``HallucinationLogEntry``.
Writes go through ``AuditLogger``, which retries with exponential backoff
and then gives up: a lost audit row is counted, logged and published as a
metric, but never fails the validation that produced it.  ``submit``
runs the write as a background task so the decision is returned without
waiting on storage.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from threading import RLock

from pydantic import BaseModel, Field

from src import config
from src.models import HallucinationLogEntry, utcnow
from src.services.metrics import metrics

logger = logging.getLogger(__name__)


# ── Stores ───────────────────────────────────────────────────────────


class AuditStore(ABC):
    @abstractmethod
    async def append(self, entry: HallucinationLogEntry) -> None: ...

    @abstractmethod
    async def entries(self, since: datetime | None = None) -> list[HallucinationLogEntry]:
        """Entries created at or after *since*, oldest first."""

    async def recent(self, limit: int = 50) -> list[HallucinationLogEntry]:
        """The latest *limit* entries, newest first."""
        return list(reversed(await self.entries()))[:limit]

    async def close(self) -> None:
        return None


class InMemoryAuditStore(AuditStore):
    def __init__(self) -> None:
        self._entries: list[HallucinationLogEntry] = []

    async def append(self, entry: HallucinationLogEntry) -> None:
        self._entries.append(entry.model_copy(deep=True))

    async def entries(self, since: datetime | None = None) -> list[HallucinationLogEntry]:
        return [e.model_copy(deep=True) for e in self._entries if since is None or e.created_at >= since]


_COLUMNS = (
    "session_id", "conversation_id", "operation_type", "function_name",
    "hallucination_type", "hallucination_types", "severity", "original_request", "validation_error",
    "validator_reasoning", "corrected_request", "action_taken", "validator_model",
    "cost", "tokens_used", "prevented_error", "user_impact", "created_at",
)
_JSON_COLUMNS = {"hallucination_types", "original_request", "corrected_request"}


class SQLiteAuditStore(AuditStore):
    """SQLite-backed audit log; rows are inserted, never updated or deleted."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = Path(db_path or config.AUDIT_DB_PATH or "audit.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        # Guarded by the lock, so the connection may cross threads.
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._ensure_table()

    def _ensure_table(self) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS hallucination_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    conversation_id TEXT,
                    operation_type TEXT NOT NULL,
                    function_name TEXT NOT NULL,
                    hallucination_type TEXT NOT NULL,
                    hallucination_types TEXT NOT NULL DEFAULT '[]',
                    severity TEXT NOT NULL,
                    original_request TEXT NOT NULL,
                    validation_error TEXT,
                    validator_reasoning TEXT,
                    corrected_request TEXT,
                    action_taken TEXT NOT NULL,
                    validator_model TEXT,
                    cost REAL NOT NULL DEFAULT 0,
                    tokens_used INTEGER NOT NULL DEFAULT 0,
                    prevented_error INTEGER NOT NULL DEFAULT 0,
                    user_impact TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_hallucination_logs_created_at "
                "ON hallucination_logs(created_at)"
            )
            existing = {row["name"] for row in self.conn.execute("PRAGMA table_info(hallucination_logs)")}
            if "hallucination_types" not in existing:
                self.conn.execute(
                    "ALTER TABLE hallucination_logs "
                    "ADD COLUMN hallucination_types TEXT NOT NULL DEFAULT '[]'"
                )

    def _insert(self, entry: HallucinationLogEntry) -> None:
        row = entry.model_dump(mode="json")
        values = [
            json.dumps(row[c]) if c in _JSON_COLUMNS and row[c] is not None else row[c]
            for c in _COLUMNS
        ]
        values[_COLUMNS.index("prevented_error")] = int(entry.prevented_error)
        # Same format as the ``since`` bound so text comparison orders correctly.
        values[_COLUMNS.index("created_at")] = entry.created_at.isoformat()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock, self.conn:
            self.conn.execute(
                f"INSERT INTO hallucination_logs({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                values,
            )

    def _select(self, since: datetime | None) -> list[HallucinationLogEntry]:
        with self._lock:
            cur = self.conn.cursor()
            if since is None:
                cur.execute("SELECT * FROM hallucination_logs ORDER BY id")
            else:
                cur.execute(
                    "SELECT * FROM hallucination_logs WHERE created_at >= ? ORDER BY id",
                    (since.isoformat(),),
                )
            rows = cur.fetchall()
        entries = []
        for row in rows:
            data = {c: row[c] for c in _COLUMNS}
            for c in _JSON_COLUMNS:
                if data[c] is not None:
                    data[c] = json.loads(data[c])
            data["prevented_error"] = bool(data["prevented_error"])
            entries.append(HallucinationLogEntry.model_validate(data))
        return entries

    async def append(self, entry: HallucinationLogEntry) -> None:
        await asyncio.to_thread(self._insert, entry)

    async def entries(self, since: datetime | None = None) -> list[HallucinationLogEntry]:
        return await asyncio.to_thread(self._select, since)

    async def close(self) -> None:
        with self._lock:
            self.conn.close()


def build_audit_store() -> AuditStore:
    if config.AUDIT_DB_PATH:
        return SQLiteAuditStore(config.AUDIT_DB_PATH)
    return InMemoryAuditStore()


# ── Logger ───────────────────────────────────────────────────────────


class AuditLogger:
    """Durable, non-blocking writer in front of an ``AuditStore``."""

    def __init__(
        self,
        store: AuditStore | None = None,
        *,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.store = store or InMemoryAuditStore()
        self._max_attempts = max(1, max_attempts or config.AUDIT_MAX_ATTEMPTS)
        self._backoff = config.AUDIT_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self._pending: set[asyncio.Task[bool]] = set()
        self._dropped = 0

    @property
    def dropped_count(self) -> int:
        return self._dropped

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def record(self, entry: HallucinationLogEntry) -> bool:
        """Append *entry*; returns ``False`` if it had to be dropped."""
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self.store.append(entry)
                return True
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Audit write attempt %d/%d failed (%s)",
                    attempt, self._max_attempts, type(exc).__name__,
                )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff * (2 ** (attempt - 1)))

        self._dropped += 1
        metrics.record_audit_dropped(type(last_error).__name__)
        logger.warning(
            "Dropped audit entry for session %s (%s/%s) after %d attempts: %s "
            "[%d dropped so far]",
            entry.session_id, entry.function_name, entry.action_taken.value,
            self._max_attempts, last_error, self._dropped,
        )
        return False

    def submit(self, entry: HallucinationLogEntry) -> asyncio.Task[bool]:
        """Write *entry* in the background."""
        task = asyncio.create_task(self.record(entry), name=f"audit-{entry.session_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every background write started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


# ── Rollups ──────────────────────────────────────────────────────────


class DailyCount(BaseModel):
    date: str
    total: int = 0
    prevented: int = 0
    cost: float = 0.0


class ValidationStats(BaseModel):
    window_days: int
    total_validations: int = 0
    prevented_count: int = 0
    by_severity: dict[str, int] = Field(default_factory=dict)
    by_hallucination_type: dict[str, int] = Field(default_factory=dict)
    by_action: dict[str, int] = Field(default_factory=dict)
    daily_trend: list[DailyCount] = Field(default_factory=list)
    total_cost: float = 0.0
    total_tokens: int = 0
    sessions_affected: int = 0
    support_cost_per_prevented_issue: float = 0.0
    roi: float = 0.0
    dropped_writes: int = 0


class StatsAggregator:
    def __init__(
        self,
        store: AuditStore,
        *,
        support_cost_per_prevented_issue: float | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._support_cost = (
            config.SUPPORT_COST_PER_PREVENTED_ISSUE
            if support_cost_per_prevented_issue is None
            else support_cost_per_prevented_issue
        )
        self._audit_logger = audit_logger
        self._clock = clock

    async def aggregate(self, window_days: int = 30) -> ValidationStats:
        since = self._clock() - timedelta(days=window_days)
        entries = await self._store.entries(since)

        daily: dict[str, DailyCount] = {}
        for entry in entries:
            day = entry.created_at.date().isoformat()
            bucket = daily.setdefault(day, DailyCount(date=day))
            bucket.total += 1
            bucket.prevented += int(entry.prevented_error)
            bucket.cost += entry.cost

        prevented = [e for e in entries if e.prevented_error]
        total_cost = sum(e.cost for e in entries)
        return ValidationStats(
            window_days=window_days,
            total_validations=len(entries),
            prevented_count=len(prevented),
            by_severity=dict(Counter(e.severity.value for e in entries)),
            by_hallucination_type=dict(Counter(e.hallucination_type.value for e in entries)),
            by_action=dict(Counter(e.action_taken.value for e in entries)),
            daily_trend=[daily[d] for d in sorted(daily)],
            total_cost=total_cost,
            total_tokens=sum(e.tokens_used for e in entries),
            sessions_affected=len({e.session_id for e in prevented}),
            support_cost_per_prevented_issue=self._support_cost,
            roi=self._support_cost * len(prevented) - total_cost,
            dropped_writes=self._audit_logger.dropped_count if self._audit_logger else 0,
        )

    async def recent(self, limit: int = 50) -> list[HallucinationLogEntry]:
        return await self._store.recent(limit)
