from __future__ import annotations

import threading
from typing import Any

from compliance_monitor.db.postgres import PostgresTxRunner, validate_identifier
from compliance_monitor.errors import LedgerWriteFailure


class InMemoryChangeLedger:
    """Set of processed ``(source_kind, external_id)`` keys."""

    def __init__(self, records: dict[tuple[str, str], str] | None = None) -> None:
        self._records = records if records is not None else {}
        self._lock = threading.Lock()

    def has_processed(self, *, source_kind: str, external_id: str) -> bool:
        with self._lock:
            return (source_kind, str(external_id)) in self._records

    def mark_processed(self, *, source_kind: str, external_id: str, processed_at: str) -> bool:
        """Insert the key; returns False if it was already present."""
        key = (source_kind, str(external_id))
        with self._lock:
            if key in self._records:
                return False
            self._records[key] = processed_at
            return True

    def list_records(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"source_kind": k[0], "external_id": k[1], "processed_at": v}
                for k, v in sorted(self._records.items())
            ]

    def count(self) -> int:
        with self._lock:
            return len(self._records)


class PostgresChangeLedger:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "change_ledger") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def has_processed(self, *, source_kind: str, external_id: str) -> bool:
        sql = f"""
            SELECT 1
            FROM {self._table_name}
            WHERE source_kind = %s AND external_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (source_kind, str(external_id)))
                return cur.fetchone() is not None

        return bool(self._tx_runner.run_in_tx(fn=_op))

    def mark_processed(self, *, source_kind: str, external_id: str, processed_at: str) -> bool:
        sql = f"""
            INSERT INTO {self._table_name} (source_kind, external_id, processed_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (source_kind, external_id) DO NOTHING
            RETURNING source_kind
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (source_kind, str(external_id), processed_at))
                return cur.fetchone() is not None

        try:
            return bool(self._tx_runner.run_in_tx(fn=_op))
        except Exception as exc:
            raise LedgerWriteFailure(
                f"could not mark {source_kind}:{external_id} processed: {type(exc).__name__}"
            ) from exc

    def list_records(self) -> list[dict[str, Any]]:
        sql = f"""
            SELECT source_kind, external_id, processed_at
            FROM {self._table_name}
            ORDER BY source_kind ASC, external_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return [
                {"source_kind": r[0], "external_id": r[1], "processed_at": str(r[2])}
                for r in rows
            ]

        return self._tx_runner.run_in_tx(fn=_op)

    def count(self) -> int:
        sql = f"SELECT COUNT(*) FROM {self._table_name}"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql)
                row = cur.fetchone()
            return int(row[0]) if row else 0

        return self._tx_runner.run_in_tx(fn=_op)
