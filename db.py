import json
import logging
import os
import sqlite3
from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import ValidationError

from db_pool import PoolTimeoutError, SQLiteConnectionPool
from schemas import HistoryFilter, MetricSnapshot, UserMetricsProfile, ensure_utc

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


class PersistenceError(RuntimeError):
    """Raised when the SQLite backing store cannot be reached or written."""


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, params)
            con.commit()
            return cur
    except (sqlite3.Error, PoolTimeoutError) as exc:
        raise PersistenceError(str(exc)) from exc


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, params)
            return cur.fetchall()
    except (sqlite3.Error, PoolTimeoutError) as exc:
        raise PersistenceError(str(exc)) from exc


def _ts(value: datetime) -> str:
    # Fixed-width ISO strings keep lexical and chronological order aligned.
    return ensure_utc(value).isoformat(timespec="microseconds")


def init():
    _exec(
        """
        CREATE TABLE IF NOT EXISTS metrics_profiles (
            user_id TEXT PRIMARY KEY,
            profile TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    _exec(
        """
        CREATE TABLE IF NOT EXISTS metric_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            metric_id TEXT NOT NULL,
            recorded_at TEXT NOT NULL,
            value TEXT,
            metadata TEXT
        )
        """
    )
    _exec(
        """
        CREATE INDEX IF NOT EXISTS idx_metric_history_lookup
        ON metric_history (user_id, metric_id, recorded_at)
        """
    )


# -------------- profiles --------------
def save_metrics_profile(profile: UserMetricsProfile) -> None:
    """Upsert the serialized ``profile`` keyed by its user id."""
    _exec(
        """
        INSERT INTO metrics_profiles (user_id, profile, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(user_id) DO UPDATE SET
            profile = excluded.profile,
            updated_at = CURRENT_TIMESTAMP
        """,
        [profile.user_id, profile.model_dump_json()],
    )


def load_metrics_profile(user_id: str) -> Optional[UserMetricsProfile]:
    rows = _query("SELECT profile FROM metrics_profiles WHERE user_id = ?", [user_id])
    if not rows:
        return None
    try:
        return UserMetricsProfile.model_validate_json(rows[0]["profile"])
    except ValidationError:
        logger.warning("Stored metrics profile for %s is unreadable; treating as missing", user_id)
        return None


def delete_metrics_profile(user_id: str) -> bool:
    """Remove the profile and its metric history; True when a profile existed."""
    cur = _exec("DELETE FROM metrics_profiles WHERE user_id = ?", [user_id])
    deleted = cur.rowcount > 0
    _exec("DELETE FROM metric_history WHERE user_id = ?", [user_id])
    return deleted


# -------------- metric history --------------
def append_metric_snapshot(snapshot: MetricSnapshot) -> None:
    payload = snapshot.model_dump(mode="json")
    _exec(
        """
        INSERT INTO metric_history (user_id, metric_id, recorded_at, value, metadata)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            snapshot.user_id,
            snapshot.metric_id,
            _ts(snapshot.timestamp),
            json.dumps(payload["value"]),
            json.dumps(payload["metadata"]),
        ),
    )


def _decode_json_field(value: Optional[str]):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def query_metric_history(
    user_id: str,
    metric_id: str,
    history_filter: Optional[HistoryFilter] = None,
) -> List[MetricSnapshot]:
    """Return snapshots for one metric in chronological order.

    Date bounds are inclusive and applied before ``offset``/``limit``.
    """
    clauses = ["user_id = ?", "metric_id = ?"]
    params: list = [user_id, metric_id]
    history_filter = history_filter or HistoryFilter()
    if history_filter.start_date is not None:
        clauses.append("recorded_at >= ?")
        params.append(_ts(history_filter.start_date))
    if history_filter.end_date is not None:
        clauses.append("recorded_at <= ?")
        params.append(_ts(history_filter.end_date))

    sql = (
        "SELECT user_id, metric_id, recorded_at, value, metadata FROM metric_history "
        f"WHERE {' AND '.join(clauses)} ORDER BY recorded_at ASC, id ASC"
    )
    if history_filter.limit is not None or history_filter.offset is not None:
        sql += " LIMIT ? OFFSET ?"
        params.append(history_filter.limit if history_filter.limit is not None else -1)
        params.append(history_filter.offset or 0)

    rows = _query(sql, params)
    return [
        MetricSnapshot(
            user_id=row["user_id"],
            metric_id=row["metric_id"],
            timestamp=datetime.fromisoformat(row["recorded_at"]),
            value=_decode_json_field(row["value"]),
            metadata=_decode_json_field(row["metadata"]) or {},
        )
        for row in rows
    ]


def prune_metric_history(
    older_than: Optional[datetime] = None,
    max_per_metric: Optional[int] = None,
) -> int:
    """Apply the retention policy; returns the number of deleted snapshots."""
    deleted = 0
    if older_than is not None:
        cur = _exec("DELETE FROM metric_history WHERE recorded_at < ?", [_ts(older_than)])
        deleted += max(cur.rowcount, 0)
    if max_per_metric is not None and max_per_metric >= 0:
        cur = _exec(
            """
            DELETE FROM metric_history WHERE id IN (
                SELECT id FROM (
                    SELECT id, ROW_NUMBER() OVER (
                        PARTITION BY user_id, metric_id
                        ORDER BY recorded_at DESC, id DESC
                    ) AS position
                    FROM metric_history
                ) WHERE position > ?
            )
            """,
            [max_per_metric],
        )
        deleted += max(cur.rowcount, 0)
    return deleted
