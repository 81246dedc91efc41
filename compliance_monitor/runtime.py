"""Process-level entry point shared by the manual and the scheduled trigger."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from compliance_monitor.classifier import CompletionFn, RelevanceClassifier
from compliance_monitor.config import MonitorSettings
from compliance_monitor.errors import JobLockBusy
from compliance_monitor.http_client import JsonHttpClient
from compliance_monitor.job_lock import JobLock
from compliance_monitor.llm_provider import RunTokenBudget, create_completion_fn_from_env
from compliance_monitor.orchestrator import MonitoringRun
from compliance_monitor.publisher import ReviewPublisher
from compliance_monitor.sources import BillSource, CaseLawSource, ChangeSource
from compliance_monitor.store import MonitoringStore, create_store_from_env

logger = logging.getLogger(__name__)


def next_run_after(now: datetime, *, day_of_month: int = 1, hour_utc: int = 6) -> datetime:
    """First monthly slot strictly after ``now``."""
    now = now.astimezone(UTC)
    candidate = now.replace(day=day_of_month, hour=hour_utc, minute=0, second=0, microsecond=0)
    if candidate > now:
        return candidate
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    return candidate.replace(year=year, month=month)


class MonitorRuntime:
    def __init__(
        self,
        *,
        settings: MonitorSettings,
        store: MonitoringStore,
        sources: Sequence[ChangeSource],
        completion_fn: CompletionFn | None = None,
        job_lock: JobLock | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sources = list(sources)
        self.completion_fn = completion_fn
        self.job_lock = job_lock or JobLock()
        self._now = now
        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._active_run: MonitoringRun | None = None

    def build_classifier(self, run_id: str) -> RelevanceClassifier:
        s = self.settings
        return RelevanceClassifier(
            completion_fn=self.completion_fn,
            budget=RunTokenBudget(run_id=run_id, max_tokens_budget=s.run_token_budget),
            min_interval_ms=s.classifier_delay_ms,
            retry_max=s.classifier_retry_max,
            backoff_base_ms=s.retry_backoff_base_ms,
            backoff_max_ms=s.retry_backoff_max_ms,
            bill_text_max_chars=s.bill_text_max_chars,
            case_text_max_chars=s.case_text_max_chars,
        )

    def build_run(self, run_id: str) -> MonitoringRun:
        s = self.settings
        publisher = ReviewPublisher(
            catalog=self.store.catalog,
            reviews=self.store.reviews,
            notifier=self.store.notifier,
            auto_publish_min_level=s.auto_publish_min_level,
        )
        return MonitoringRun(
            catalog=self.store.catalog,
            sources=self.sources,
            classifier=self.build_classifier(run_id),
            ledger=self.store.ledger,
            change_records=self.store.change_records,
            run_summaries=self.store.run_summaries,
            publisher=publisher,
            max_candidates_per_source=s.max_candidates_per_source,
            since_year=s.effective_since_year(),
            jurisdiction_workers=s.jurisdiction_workers,
        )

    def run_now(self, *, jurisdiction_ids: Sequence[str] | None = None, trigger: str = "manual") -> dict[str, Any]:
        """Execute one run; raises ``JobLockBusy`` if another run holds the lock."""
        run_id = f"run_{uuid.uuid4().hex[:12]}"
        with self.job_lock.hold(f"monitoring:{trigger}:{run_id}"):
            run = self.build_run(run_id)
            self._active_run = run
            try:
                summary = run.execute(jurisdiction_ids=jurisdiction_ids, run_id=run_id)
            finally:
                self._active_run = None
        summary["trigger"] = trigger
        return summary

    def cancel(self) -> None:
        """Stop the scheduler and cancel the in-flight run between jurisdictions."""
        self._stop_event.set()
        run = self._active_run
        if run is not None:
            run.cancel()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> list[dict[str, Any]]:
        summaries: list[dict[str, Any]] = []
        iterations = 0
        while not self._stop_event.is_set():
            now = self._now()
            due = next_run_after(
                now,
                day_of_month=self.settings.schedule_day_of_month,
                hour_utc=self.settings.schedule_hour_utc,
            )
            wait_s = max(0.0, (due - now).total_seconds())
            logger.info("next scheduled monitoring run at %s", due.isoformat())
            self._sleep(wait_s)
            if self._stop_event.is_set():
                break
            try:
                summaries.append(self.run_now(trigger="scheduled"))
            except JobLockBusy as exc:
                logger.warning("scheduled run skipped, %s since %s", exc.message, exc.locked_since)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
        return summaries


def build_sources(settings: MonitorSettings) -> list[ChangeSource]:
    def _http() -> JsonHttpClient:
        return JsonHttpClient(
            timeout_s=settings.source_timeout_s,
            retry_max=settings.source_retry_max,
            backoff_base_ms=settings.retry_backoff_base_ms,
            backoff_max_ms=settings.retry_backoff_max_ms,
        )

    return [
        BillSource(
            api_key=settings.legiscan_api_key,
            http=_http(),
            fetch_full_text=settings.fetch_full_text,
            full_text_max_chars=settings.bill_text_max_chars,
        ),
        CaseLawSource(
            api_key=settings.courtlistener_api_key,
            http=_http(),
            fetch_full_text=settings.fetch_full_text,
            full_text_max_chars=settings.case_text_max_chars,
        ),
    ]


def build_runtime_from_env(environ: Mapping[str, str] | None = None) -> MonitorRuntime:
    settings = MonitorSettings.from_env(environ)
    return MonitorRuntime(
        settings=settings,
        store=create_store_from_env(settings=settings),
        sources=build_sources(settings),
        completion_fn=create_completion_fn_from_env(environ),
    )
