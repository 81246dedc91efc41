from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from compliance_monitor.catalog import InMemoryCatalogStore, PostgresCatalogStore, load_templates_file
from compliance_monitor.config import MonitorSettings
from compliance_monitor.db.postgres import PostgresTxRunner
from compliance_monitor.db.schema import apply_schema
from compliance_monitor.models import Jurisdiction, Template
from compliance_monitor.notifications import LoggingNotificationSink
from compliance_monitor.repositories import (
    InMemoryChangeLedger,
    InMemoryChangeRecordsRepository,
    InMemoryReviewEntriesRepository,
    InMemoryRunSummariesRepository,
    PostgresChangeLedger,
    PostgresChangeRecordsRepository,
    PostgresReviewEntriesRepository,
    PostgresRunSummariesRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class MonitoringStore:
    backend: str
    catalog: Any
    ledger: Any
    change_records: Any
    reviews: Any
    run_summaries: Any
    notifier: Any


def create_memory_store(
    *,
    jurisdictions: Iterable[Jurisdiction] = (),
    templates: Iterable[Template] = (),
    notifier: Any | None = None,
) -> MonitoringStore:
    return MonitoringStore(
        backend="memory",
        catalog=InMemoryCatalogStore(jurisdictions=jurisdictions, templates=templates),
        ledger=InMemoryChangeLedger(),
        change_records=InMemoryChangeRecordsRepository(),
        reviews=InMemoryReviewEntriesRepository(),
        run_summaries=InMemoryRunSummariesRepository(),
        notifier=notifier or LoggingNotificationSink(),
    )


def create_postgres_store(
    *,
    tx_runner: Any,
    jurisdictions: Iterable[Jurisdiction] = (),
    templates: Iterable[Template] = (),
    notifier: Any | None = None,
    apply_ddl: bool = True,
) -> MonitoringStore:
    if apply_ddl:
        apply_schema(tx_runner)
    catalog = PostgresCatalogStore(tx_runner=tx_runner)
    for jurisdiction in jurisdictions:
        catalog.upsert_jurisdiction(jurisdiction)
    for template in templates:
        catalog.upsert_template(template)
    return MonitoringStore(
        backend="postgres",
        catalog=catalog,
        ledger=PostgresChangeLedger(tx_runner=tx_runner),
        change_records=PostgresChangeRecordsRepository(tx_runner=tx_runner),
        reviews=PostgresReviewEntriesRepository(tx_runner=tx_runner),
        run_summaries=PostgresRunSummariesRepository(tx_runner=tx_runner),
        notifier=notifier or LoggingNotificationSink(),
    )


def create_store_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    settings: MonitorSettings | None = None,
) -> MonitoringStore:
    settings = settings or MonitorSettings.from_env(environ)
    templates = load_templates_file(settings.templates_file) if settings.templates_file else []
    if settings.store_backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when MONITOR_STORE_BACKEND=postgres")
        runner = PostgresTxRunner(
            settings.postgres_dsn,
            statement_timeout_ms=settings.postgres_statement_timeout_ms,
        )
        return create_postgres_store(
            tx_runner=runner,
            jurisdictions=settings.jurisdictions,
            templates=templates,
        )
    if settings.store_backend != "memory":
        raise ValueError(f"unsupported MONITOR_STORE_BACKEND: {settings.store_backend}")
    if not templates:
        logger.warning("memory store has no templates; set MONITOR_TEMPLATES_FILE to seed the catalog")
    return create_memory_store(jurisdictions=settings.jurisdictions, templates=templates)
