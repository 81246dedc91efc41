from __future__ import annotations

import json
import threading
from typing import Any

from compliance_monitor.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryChangeRecordsRepository:
    def __init__(self, records: dict[str, dict[str, Any]] | None = None) -> None:
        self._records = records if records is not None else {}
        self._lock = threading.Lock()

    def create(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = dict(record)
        with self._lock:
            self._records[str(item["record_id"])] = item
        return dict(item)

    def get(self, *, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._records.get(record_id)
        return dict(row) if row is not None else None

    def list(self, *, jurisdiction_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(x) for x in self._records.values()]
        if jurisdiction_id:
            rows = [x for x in rows if x.get("jurisdiction_id") == jurisdiction_id]
        rows.sort(key=lambda x: str(x.get("created_at", "")), reverse=True)
        return rows[: max(1, limit)]


class PostgresChangeRecordsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "change_records") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def create(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = dict(record)
        sql = f"""
            INSERT INTO {self._table_name} (
                record_id, source_kind, external_id, jurisdiction_id, relevance_level, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["record_id"],
                        item["source_kind"],
                        item["external_id"],
                        item["jurisdiction_id"],
                        item["relevance_level"],
                        item["created_at"],
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, record_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE record_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (record_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, *, jurisdiction_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        params: list[Any] = []
        where = ""
        if jurisdiction_id:
            where = "WHERE jurisdiction_id = %s"
            params.append(jurisdiction_id)
        params.append(max(1, int(limit)))
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            {where}
            ORDER BY created_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [r[0] for r in rows if isinstance(r[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
