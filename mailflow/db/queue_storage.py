"""
Storage engines for the sync queue.

The queue logic (claiming, retry accounting, stale reclaim) lives in
mailflow.sync_queue.SyncQueue; a QueueStore only offers row-level
insert/select/update/delete scoped to an owner.

- PostgresQueueStore: durable, the sync_queue table from schema.sql
- MemoryQueueStore: in-process dict, for tests and throwaway runs
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from psycopg2.extras import RealDictCursor, execute_values

from .models import QueueItem, QueueStatus

logger = logging.getLogger(__name__)

UPDATABLE_COLUMNS = {"status", "retry_count", "last_error", "updated_at", "completed_at"}


def _status_values(statuses: Optional[Iterable[QueueStatus]]) -> Optional[List[str]]:
    if statuses is None:
        return None
    return [QueueStatus(s).value for s in statuses]


class QueueStore(ABC):
    """Row-level access to queue items for one or more owners."""

    @abstractmethod
    def insert_pending(self, owner_id: str, natural_ids: Sequence[str], now: datetime) -> int:
        """
        Insert pending rows, skipping ids the owner already has.

        Returns:
            Number of rows actually inserted
        """

    @abstractmethod
    def select(
        self,
        owner_id: str,
        statuses: Optional[Iterable[QueueStatus]] = None,
        natural_ids: Optional[Sequence[str]] = None,
        updated_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[QueueItem]:
        """Select rows matching all given filters, oldest created first."""

    @abstractmethod
    def update(
        self,
        owner_id: str,
        natural_ids: Sequence[str],
        fields: Dict[str, Any],
        statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> int:
        """
        Set fields on the given rows (optionally only those in given statuses).

        Returns:
            Number of rows updated
        """

    @abstractmethod
    def delete(
        self,
        owner_id: str,
        natural_ids: Optional[Sequence[str]] = None,
        statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> int:
        """Delete rows matching the filters. Returns number deleted."""

    @abstractmethod
    def count_by_status(self, owner_id: str) -> Dict[str, int]:
        """Row counts keyed by status value."""


class PostgresQueueStore(QueueStore):
    """QueueStore backed by the sync_queue table.

    Args:
        connection_factory: Context manager factory yielding a psycopg2
            connection (defaults to mailflow.db.connection.get_connection)
    """

    INSERT_CHUNK_SIZE = 100

    def __init__(self, connection_factory: Optional[Callable] = None):
        if connection_factory is None:
            from .connection import get_connection
            connection_factory = get_connection
        self._connect = connection_factory

    @staticmethod
    def _where(
        owner_id: str,
        statuses: Optional[Iterable[QueueStatus]] = None,
        natural_ids: Optional[Sequence[str]] = None,
        updated_before: Optional[datetime] = None,
    ) -> tuple:
        clauses = ["owner_id = %s"]
        params: List[Any] = [owner_id]
        status_values = _status_values(statuses)
        if status_values is not None:
            clauses.append("status = ANY(%s)")
            params.append(status_values)
        if natural_ids is not None:
            clauses.append("natural_id = ANY(%s)")
            params.append(list(natural_ids))
        if updated_before is not None:
            clauses.append("updated_at < %s")
            params.append(updated_before)
        return " AND ".join(clauses), params

    def insert_pending(self, owner_id: str, natural_ids: Sequence[str], now: datetime) -> int:
        if not natural_ids:
            return 0

        sql = """
        INSERT INTO sync_queue (natural_id, owner_id, status, created_at, updated_at)
        VALUES %s
        ON CONFLICT (natural_id, owner_id) DO NOTHING
        RETURNING natural_id
        """
        added = 0
        with self._connect() as conn:
            with conn.cursor() as cur:
                for i in range(0, len(natural_ids), self.INSERT_CHUNK_SIZE):
                    chunk = natural_ids[i:i + self.INSERT_CHUNK_SIZE]
                    values = [(nid, owner_id, QueueStatus.PENDING.value, now, now) for nid in chunk]
                    rows = execute_values(cur, sql, values, fetch=True)
                    added += len(rows)
        return added

    def select(
        self,
        owner_id: str,
        statuses: Optional[Iterable[QueueStatus]] = None,
        natural_ids: Optional[Sequence[str]] = None,
        updated_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[QueueItem]:
        where, params = self._where(owner_id, statuses, natural_ids, updated_before)
        sql = f"""
        SELECT natural_id, owner_id, status, retry_count, last_error,
               created_at, updated_at, completed_at
        FROM sync_queue
        WHERE {where}
        ORDER BY created_at, id
        """
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return [QueueItem(**row) for row in cur.fetchall()]

    def update(
        self,
        owner_id: str,
        natural_ids: Sequence[str],
        fields: Dict[str, Any],
        statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> int:
        if not natural_ids or not fields:
            return 0
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update sync_queue columns: {sorted(unknown)}")

        assignments = ", ".join(f"{column} = %s" for column in fields)
        values = [v.value if isinstance(v, QueueStatus) else v for v in fields.values()]
        where, params = self._where(owner_id, statuses, natural_ids)
        sql = f"UPDATE sync_queue SET {assignments} WHERE {where}"

        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, values + params)
                return cur.rowcount

    def delete(
        self,
        owner_id: str,
        natural_ids: Optional[Sequence[str]] = None,
        statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> int:
        where, params = self._where(owner_id, statuses, natural_ids)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM sync_queue WHERE {where}", params)
                return cur.rowcount

    def count_by_status(self, owner_id: str) -> Dict[str, int]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT status, COUNT(*) FROM sync_queue WHERE owner_id = %s GROUP BY status",
                    (owner_id,),
                )
                return {status: count for status, count in cur.fetchall()}


class MemoryQueueStore(QueueStore):
    """QueueStore kept in a dict; state is lost when the process exits."""

    def __init__(self):
        self._rows: Dict[tuple, QueueItem] = {}

    def insert_pending(self, owner_id: str, natural_ids: Sequence[str], now: datetime) -> int:
        added = 0
        for natural_id in natural_ids:
            key = (owner_id, natural_id)
            if key in self._rows:
                continue
            self._rows[key] = QueueItem(
                natural_id=natural_id,
                owner_id=owner_id,
                created_at=now,
                updated_at=now,
            )
            added += 1
        return added

    def _matching(
        self,
        owner_id: str,
        statuses: Optional[Iterable[QueueStatus]] = None,
        natural_ids: Optional[Sequence[str]] = None,
        updated_before: Optional[datetime] = None,
    ) -> List[QueueItem]:
        status_values = _status_values(statuses)
        wanted_ids = set(natural_ids) if natural_ids is not None else None
        rows = [
            item for (owner, natural_id), item in self._rows.items()
            if owner == owner_id
            and (status_values is None or item.status.value in status_values)
            and (wanted_ids is None or natural_id in wanted_ids)
            and (updated_before is None or item.updated_at < updated_before)
        ]
        # dicts keep insertion order, so the sort is stable for equal timestamps
        return sorted(rows, key=lambda item: item.created_at)

    def select(
        self,
        owner_id: str,
        statuses: Optional[Iterable[QueueStatus]] = None,
        natural_ids: Optional[Sequence[str]] = None,
        updated_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[QueueItem]:
        rows = self._matching(owner_id, statuses, natural_ids, updated_before)
        if limit is not None:
            rows = rows[:limit]
        return [item.model_copy() for item in rows]

    def update(
        self,
        owner_id: str,
        natural_ids: Sequence[str],
        fields: Dict[str, Any],
        statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> int:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update sync_queue columns: {sorted(unknown)}")
        if "status" in fields:
            fields = {**fields, "status": QueueStatus(fields["status"])}

        rows = self._matching(owner_id, statuses, natural_ids)
        for item in rows:
            self._rows[(owner_id, item.natural_id)] = item.model_copy(update=fields)
        return len(rows)

    def delete(
        self,
        owner_id: str,
        natural_ids: Optional[Sequence[str]] = None,
        statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> int:
        rows = self._matching(owner_id, statuses, natural_ids)
        for item in rows:
            del self._rows[(owner_id, item.natural_id)]
        return len(rows)

    def count_by_status(self, owner_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for (owner, _), item in self._rows.items():
            if owner == owner_id:
                counts[item.status.value] = counts.get(item.status.value, 0) + 1
        return counts
