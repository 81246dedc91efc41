from __future__ import annotations

from typing import Any

from compliance_monitor.db.postgres import PostgresTxRunner

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS jurisdictions (
      jurisdiction_id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS templates (
      template_id TEXT PRIMARY KEY,
      jurisdiction_id TEXT NOT NULL,
      title TEXT NOT NULL,
      category TEXT NOT NULL,
      is_active BOOLEAN NOT NULL DEFAULT TRUE,
      version INTEGER NOT NULL DEFAULT 1,
      version_notes TEXT,
      last_update_reason TEXT,
      updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS template_versions (
      template_id TEXT NOT NULL,
      version_number INTEGER NOT NULL,
      notes TEXT NOT NULL,
      reason TEXT NOT NULL,
      published_by TEXT NOT NULL,
      review_id TEXT,
      created_at TIMESTAMPTZ NOT NULL,
      PRIMARY KEY (template_id, version_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS change_ledger (
      source_kind TEXT NOT NULL,
      external_id TEXT NOT NULL,
      processed_at TIMESTAMPTZ NOT NULL,
      PRIMARY KEY (source_kind, external_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS change_records (
      record_id TEXT PRIMARY KEY,
      source_kind TEXT NOT NULL,
      external_id TEXT NOT NULL,
      jurisdiction_id TEXT NOT NULL,
      relevance_level TEXT NOT NULL,
      created_at TIMESTAMPTZ NOT NULL,
      payload JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS template_reviews (
      review_id TEXT PRIMARY KEY,
      template_id TEXT NOT NULL,
      change_record_id TEXT NOT NULL,
      status TEXT NOT NULL,
      priority INTEGER NOT NULL,
      created_at TIMESTAMPTZ NOT NULL,
      updated_at TIMESTAMPTZ NOT NULL,
      payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_template_reviews_status ON template_reviews (status, priority DESC)",
    """
    CREATE TABLE IF NOT EXISTS monitoring_runs (
      row_id TEXT PRIMARY KEY,
      run_id TEXT NOT NULL,
      status TEXT NOT NULL,
      started_at TIMESTAMPTZ NOT NULL,
      recorded_at TIMESTAMPTZ NOT NULL,
      payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_monitoring_runs_run_id ON monitoring_runs (run_id)",
)


def apply_schema(tx_runner: PostgresTxRunner) -> None:
    def _op(conn: Any) -> None:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)

    tx_runner.run_in_tx(fn=_op)
