from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta, timezone

import pytest
from conftest import ScriptedCompletion, bill

from compliance_monitor.db.postgres import PostgresTxRunner
from compliance_monitor.errors import JobLockBusy
from compliance_monitor.runtime import build_runtime_from_env, next_run_after
from compliance_monitor.store import create_postgres_store, create_store_from_env

DEPOSIT_VERDICT = {
    "relevanceLevel": "high",
    "analysis": "Deposit return deadline changes.",
    "affectedTemplateIds": ["ut-lease-v3"],
    "recommendedChanges": "Return deposits within 45 days.",
}


def _deposit_source(make_source):
    return make_source(
        kind="bill",
        name="legiscan",
        candidates={"UT": [bill("1001", "Security Deposit Return Timeline Extension")]},
    )


def test_next_run_after_monthly_slots():
    assert next_run_after(datetime(2026, 10, 18, 12, 0, tzinfo=UTC)) == datetime(2026, 11, 1, 6, 0, tzinfo=UTC)
    assert next_run_after(datetime(2026, 10, 1, 5, 59, tzinfo=UTC)) == datetime(2026, 10, 1, 6, 0, tzinfo=UTC)
    assert next_run_after(datetime(2026, 10, 1, 6, 0, tzinfo=UTC)) == datetime(2026, 11, 1, 6, 0, tzinfo=UTC)
    assert next_run_after(datetime(2026, 12, 20, tzinfo=UTC), day_of_month=15, hour_utc=3) == datetime(
        2027, 1, 15, 3, 0, tzinfo=UTC
    )
    mountain = timezone(timedelta(hours=-6))
    assert next_run_after(datetime(2026, 10, 1, 1, 0, tzinfo=mountain)) == datetime(2026, 11, 1, 6, 0, tzinfo=UTC)


def test_run_now_publishes_and_tags_trigger(store, make_source, make_runtime):
    runtime = make_runtime(
        sources=[_deposit_source(make_source)],
        completion=ScriptedCompletion(default=DEPOSIT_VERDICT),
    )
    summary = runtime.run_now(jurisdiction_ids=["UT"])

    assert summary["status"] == "success"
    assert summary["trigger"] == "manual"
    assert summary["templates_published"] == 1
    assert store.catalog.get_template("ut-lease-v3").version == 4
    assert runtime.job_lock.status()["locked"] is False


def test_run_now_rejects_overlapping_run(make_source, make_runtime):
    runtime = make_runtime(sources=[_deposit_source(make_source)])
    with runtime.job_lock.hold("monitoring:scheduled:run_x"):
        with pytest.raises(JobLockBusy) as excinfo:
            runtime.run_now()
    assert excinfo.value.current_job == "monitoring:scheduled:run_x"


def test_run_forever_sleeps_until_slot_then_runs(store, make_source, make_runtime):
    sleeps: list[float] = []
    runtime = make_runtime(sources=[_deposit_source(make_source)])
    runtime._now = lambda: datetime(2026, 10, 31, 6, 0, tzinfo=UTC)
    runtime._sleep = sleeps.append

    summaries = runtime.run_forever(stop_after_iterations=2)

    assert sleeps == [86400.0, 86400.0]
    assert [s["trigger"] for s in summaries] == ["scheduled", "scheduled"]
    assert len(store.run_summaries.list_for_run(run_id=summaries[0]["run_id"])) == 2


def test_run_forever_skips_when_locked(make_source, make_runtime):
    runtime = make_runtime(sources=[_deposit_source(make_source)])
    runtime._sleep = lambda _s: None
    with runtime.job_lock.hold("monitoring:api:run_y"):
        assert runtime.run_forever(stop_after_iterations=1) == []


def test_cancel_stops_scheduler(make_source, make_runtime):
    runtime = make_runtime(sources=[_deposit_source(make_source)])
    runtime.cancel()
    assert runtime.run_forever() == []


def test_build_runtime_from_env_uses_memory_store(tmp_path):
    templates_file = tmp_path / "templates.json"
    templates_file.write_text(
        json.dumps([{"id": "ut-lease-v3", "jurisdiction_id": "UT", "title": "Utah Lease", "category": "lease"}]),
        encoding="utf-8",
    )
    runtime = build_runtime_from_env(
        {
            "MONITOR_TEMPLATES_FILE": str(templates_file),
            "MONITOR_JURISDICTIONS": "UT:Utah",
            "LEGISCAN_API_KEY": "lk",
        }
    )
    assert runtime.store.backend == "memory"
    assert [t.id for t in runtime.store.catalog.list_templates()] == ["ut-lease-v3"]
    assert {s.name: s.enabled for s in runtime.sources} == {"legiscan": True, "courtlistener": False}
    assert runtime.completion_fn is None


def test_store_factory_rejects_bad_backend_config():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_store_from_env({"MONITOR_STORE_BACKEND": "postgres"})
    with pytest.raises(ValueError, match="unsupported"):
        create_store_from_env({"MONITOR_STORE_BACKEND": "sqlite"})
    with pytest.raises(ValueError, match="must not be empty"):
        PostgresTxRunner("  ")


def test_postgres_store_applies_schema_and_seeds_catalog(jurisdictions, templates):
    statements: list[str] = []

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, query: str, params=None):
            statements.append(query)

    class FakeConnection:
        def cursor(self):
            return FakeCursor()

    class FakeRunner:
        def run_in_tx(self, *, fn):
            return fn(FakeConnection())

    store = create_postgres_store(tx_runner=FakeRunner(), jurisdictions=jurisdictions, templates=templates)

    assert store.backend == "postgres"
    assert any("CREATE TABLE IF NOT EXISTS change_ledger" in s for s in statements)
    assert sum("INSERT INTO jurisdictions" in s for s in statements) == 3
    assert sum("INSERT INTO templates" in s for s in statements) == 4


def test_build_run_resolves_since_year_from_settings(make_source, make_runtime):
    pinned = make_runtime(sources=[_deposit_source(make_source)])
    assert pinned.build_run("run_a").since_year == 2025

    current = make_runtime(sources=[_deposit_source(make_source)], since_year=None)
    assert current.build_run("run_b").since_year == datetime.now(UTC).year
