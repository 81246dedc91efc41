from __future__ import annotations

import json
import threading
import uuid
from typing import Any

from compliance_monitor.db.postgres import PostgresTxRunner, validate_identifier
from compliance_monitor.models import RUN_IN_PROGRESS, RUN_TERMINAL_STATUSES


def _with_row_id(summary: dict[str, Any]) -> dict[str, Any]:
    item = dict(summary)
    item.setdefault("row_id", f"runrow_{uuid.uuid4().hex[:12]}")
    return item


def _dangling(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    terminal = {str(x.get("run_id")) for x in rows if x.get("status") in RUN_TERMINAL_STATUSES}
    return [x for x in rows if x.get("status") == RUN_IN_PROGRESS and str(x.get("run_id")) not in terminal]


class InMemoryRunSummariesRepository:
    """Append-only: a run writes an in_progress row and later a separate terminal row."""

    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self._rows = rows if rows is not None else []
        self._lock = threading.Lock()

    def append(self, *, summary: dict[str, Any]) -> dict[str, Any]:
        item = _with_row_id(summary)
        with self._lock:
            self._rows.append(item)
        return dict(item)

    def list(self, *, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(x) for x in self._rows]
        rows.reverse()
        return rows[: max(1, limit)]

    def list_for_run(self, *, run_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(x) for x in self._rows if x.get("run_id") == run_id]

    def list_dangling(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(x) for x in self._rows]
        return _dangling(rows)


class PostgresRunSummariesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "monitoring_runs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def append(self, *, summary: dict[str, Any]) -> dict[str, Any]:
        item = _with_row_id(summary)
        sql = f"""
            INSERT INTO {self._table_name} (
                row_id, run_id, status, started_at, recorded_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["row_id"],
                        item["run_id"],
                        item["status"],
                        item["started_at"],
                        item.get("recorded_at") or item["started_at"],
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def _select(self, where: str, params: tuple[Any, ...], *, order: str, limit: int | None) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table_name} {where} ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT %s"
            params = params + (max(1, int(limit)),)

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [r[0] for r in rows if isinstance(r[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, *, limit: int = 50) -> list[dict[str, Any]]:
        return self._select("", (), order="recorded_at DESC", limit=limit)

    def list_for_run(self, *, run_id: str) -> list[dict[str, Any]]:
        return self._select("WHERE run_id = %s", (run_id,), order="recorded_at ASC", limit=None)

    def list_dangling(self) -> list[dict[str, Any]]:
        where = f"""
            WHERE status = %s
              AND run_id NOT IN (
                SELECT run_id FROM {self._table_name} WHERE status <> %s
              )
        """
        return self._select(where, (RUN_IN_PROGRESS, RUN_IN_PROGRESS), order="started_at ASC", limit=None)
