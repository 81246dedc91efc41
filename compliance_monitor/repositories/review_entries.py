from __future__ import annotations

import json
import threading
from typing import Any

from compliance_monitor.db.postgres import PostgresTxRunner, validate_identifier
from compliance_monitor.errors import ReviewTransitionError
from compliance_monitor.models import REVIEW_PENDING, REVIEW_TERMINAL_STATUSES


def _sort_key(entry: dict[str, Any]) -> tuple[int, str]:
    return (-int(entry.get("priority", 0)), str(entry.get("created_at", "")))


def _check_target(status: str) -> None:
    if status not in REVIEW_TERMINAL_STATUSES:
        raise ReviewTransitionError(f"review entries can only move to {sorted(REVIEW_TERMINAL_STATUSES)}")


class InMemoryReviewEntriesRepository:
    """Review entries are never deleted; the table is the audit log."""

    def __init__(self, entries: dict[str, dict[str, Any]] | None = None) -> None:
        self._entries = entries if entries is not None else {}
        self._lock = threading.Lock()

    def create(self, *, entry: dict[str, Any]) -> dict[str, Any]:
        item = dict(entry)
        if item.get("status") != REVIEW_PENDING:
            raise ReviewTransitionError("review entries must be created pending")
        with self._lock:
            if str(item["review_id"]) in self._entries:
                raise ReviewTransitionError(f"review {item['review_id']} already exists")
            self._entries[str(item["review_id"])] = item
        return dict(item)

    def get(self, *, review_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._entries.get(review_id)
        return dict(row) if row is not None else None

    def transition(self, *, review_id: str, status: str, changes: dict[str, Any]) -> dict[str, Any]:
        _check_target(status)
        with self._lock:
            row = self._entries.get(review_id)
            if row is None or row.get("status") != REVIEW_PENDING:
                raise ReviewTransitionError(f"review {review_id} is missing or not pending")
            row.update(changes)
            row["status"] = status
            return dict(row)

    def list(self, *, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(x) for x in self._entries.values()]
        if status:
            rows = [x for x in rows if x.get("status") == status]
        rows.sort(key=_sort_key)
        return rows[: max(1, limit)]

    def list_pending(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(x) for x in self._entries.values() if x.get("status") == REVIEW_PENDING]
        rows.sort(key=_sort_key)
        return rows


class PostgresReviewEntriesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "template_reviews") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def create(self, *, entry: dict[str, Any]) -> dict[str, Any]:
        item = dict(entry)
        if item.get("status") != REVIEW_PENDING:
            raise ReviewTransitionError("review entries must be created pending")
        sql = f"""
            INSERT INTO {self._table_name} (
                review_id, template_id, change_record_id, status, priority, created_at, updated_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["review_id"],
                        item["template_id"],
                        item["change_record_id"],
                        item["status"],
                        int(item.get("priority", 0)),
                        item["created_at"],
                        item.get("updated_at") or item["created_at"],
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, review_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE review_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (review_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def transition(self, *, review_id: str, status: str, changes: dict[str, Any]) -> dict[str, Any]:
        _check_target(status)
        patch = dict(changes)
        patch["status"] = status
        updated_at = str(patch.get("updated_at") or patch.get("review_completed_at") or "")
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s,
                updated_at = COALESCE(NULLIF(%s, '')::timestamptz, now()),
                payload = payload || %s::jsonb
            WHERE review_id = %s AND status = %s
            RETURNING payload
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        status,
                        updated_at,
                        json.dumps(patch, ensure_ascii=True, sort_keys=True),
                        review_id,
                        REVIEW_PENDING,
                    ),
                )
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        updated = self._tx_runner.run_in_tx(fn=_op)
        if updated is None:
            raise ReviewTransitionError(f"review {review_id} is missing or not pending")
        return updated

    def list(self, *, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        params: list[Any] = []
        where = ""
        if status:
            where = "WHERE status = %s"
            params.append(status)
        params.append(max(1, int(limit)))
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            {where}
            ORDER BY priority DESC, created_at ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [r[0] for r in rows if isinstance(r[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_pending(self) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE status = %s
            ORDER BY priority DESC, created_at ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (REVIEW_PENDING,))
                rows = cur.fetchall() or []
            return [r[0] for r in rows if isinstance(r[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
