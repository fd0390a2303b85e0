"""
SQLite database for persistent work items.

Work items are the queue: the poller selects claimable rows, claims one with a
single conditional UPDATE and later writes the outcome back. Several worker
processes can share one database file; the conditional UPDATE is what keeps two
of them from claiming the same row.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional, Union
from uuid import uuid4

from .errors import StoreError
from .models import DocgenRequest, WorkItem, WorkItemStatus


# Default database path
DEFAULT_DB_PATH = Path("data/docgen.db")

# Fixed-width UTC format so that text comparison in SQL matches time order
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

UPDATABLE_COLUMNS = {
    "status",
    "attempts",
    "correlation_id",
    "lock_expiry",
    "priority",
    "scheduled_retry_at",
    "error",
    "output_file_id",
    "merged_docx_file_id",
}


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to a fixed-width UTC string."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize a stored timestamp to an aware UTC datetime."""
    if not s:
        return None
    return datetime.strptime(s, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _serialize_datetime(value)
    if isinstance(value, Enum):
        return value.value
    return value


class WorkItemDatabase:
    """
    SQLite database for work item persistence.

    Thread-safe: each call opens its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Union[Path, str] = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open work item database: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise StoreError(f"Work item write rejected: {exc}", 409) from exc
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"Work item database error: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS work_items (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    request_json TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    correlation_id TEXT,
                    lock_expiry TEXT,
                    priority INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    scheduled_retry_at TEXT,
                    error TEXT,
                    output_file_id TEXT,
                    merged_docx_file_id TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_work_items_claim
                ON work_items(status, priority DESC, created_at ASC)
            """)

    def enqueue(
        self,
        request: Union[DocgenRequest, Mapping[str, Any], str],
        priority: int = 0,
        work_item_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WorkItem:
        """
        Insert a new QUEUED work item.

        Args:
            request: Request payload as a model, a mapping or raw JSON text
            priority: Higher priorities are claimed first
            work_item_id: Explicit id; a random hex id is generated when omitted
            correlation_id: Optional correlation id to store with the item
            now: Creation time (defaults to the current UTC time)

        Returns:
            The stored work item
        """
        if isinstance(request, DocgenRequest):
            request_json = request.model_dump_json(exclude_none=True)
        elif isinstance(request, str):
            request_json = request
        else:
            request_json = json.dumps(dict(request))

        item_id = work_item_id or uuid4().hex
        created = _serialize_datetime(now or utcnow())
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO work_items (
                    id, status, request_json, attempts, correlation_id,
                    priority, created_at, updated_at
                ) VALUES (?, ?, ?, 0, ?, ?, ?, ?)
            """, (
                item_id,
                WorkItemStatus.QUEUED.value,
                request_json,
                correlation_id,
                priority,
                created,
                created,
            ))

        item = self.get_work_item(item_id)
        assert item is not None
        return item

    def get_work_item(self, work_item_id: str) -> Optional[WorkItem]:
        """
        Retrieve a work item by ID.

        Returns:
            WorkItem or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM work_items WHERE id = ?", (work_item_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_item(row)

    _CLAIMABLE = """
        (
            status = 'QUEUED'
            AND (lock_expiry IS NULL OR lock_expiry <= :now)
            AND (scheduled_retry_at IS NULL OR scheduled_retry_at <= :now)
        ) OR (
            status = 'PROCESSING'
            AND lock_expiry IS NOT NULL
            AND lock_expiry <= :now
        )
    """

    def fetch_candidates(self, limit: int, now: Optional[datetime] = None) -> List[WorkItem]:
        """
        Select claimable work items.

        Claimable means QUEUED with no live lease and no pending retry delay, or
        PROCESSING with an expired lease (a worker died mid-item).
        Ordered by priority (highest first), then creation time (oldest first).
        """
        params = {"now": _serialize_datetime(now or utcnow()), "limit": limit}
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM work_items WHERE {self._CLAIMABLE} "
                "ORDER BY priority DESC, created_at ASC LIMIT :limit",
                params,
            ).fetchall()
            return [self._row_to_item(row) for row in rows]

    def try_lock(
        self,
        work_item_id: str,
        lease_until: datetime,
        correlation_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Claim a work item with a conditional update.

        Returns:
            True if this call claimed the row, False if it was no longer claimable
        """
        now_text = _serialize_datetime(now or utcnow())
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE work_items
                SET status = 'PROCESSING', lock_expiry = :lease_until,
                    correlation_id = :correlation_id, updated_at = :now
                WHERE id = :id AND ({self._CLAIMABLE})
                """,
                {
                    "lease_until": _serialize_datetime(lease_until),
                    "correlation_id": correlation_id,
                    "now": now_text,
                    "id": work_item_id,
                },
            )
            return cursor.rowcount == 1

    def update_status(
        self,
        work_item_id: str,
        fields: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> None:
        """
        Write the given fields to a work item (last write wins).

        Raises:
            ValueError: If ``fields`` names a column that cannot be updated
            StoreError: If the work item does not exist
        """
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update work item columns: {sorted(unknown)}")

        updates = ["updated_at = ?"]
        values: List[Any] = [_serialize_datetime(now or utcnow())]
        for column, value in fields.items():
            updates.append(f"{column} = ?")
            values.append(_serialize_value(value))
        values.append(work_item_id)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE work_items SET {', '.join(updates)} WHERE id = ?",
                values,
            )
            if cursor.rowcount == 0:
                raise StoreError(f"Work item not found: {work_item_id}", 404)

    def ping(self) -> bool:
        with self._get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def _row_to_item(self, row: sqlite3.Row) -> WorkItem:
        """Convert a database row to a WorkItem."""
        return WorkItem(
            id=row["id"],
            status=WorkItemStatus(row["status"]),
            request_json=row["request_json"],
            attempts=row["attempts"],
            correlation_id=row["correlation_id"],
            lock_expiry=_deserialize_datetime(row["lock_expiry"]),
            priority=row["priority"],
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
            scheduled_retry_at=_deserialize_datetime(row["scheduled_retry_at"]),
            error=row["error"],
            output_file_id=row["output_file_id"],
            merged_docx_file_id=row["merged_docx_file_id"],
        )
