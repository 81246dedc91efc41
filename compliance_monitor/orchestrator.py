"""One monitoring pass over every active jurisdiction and every change source.

Per candidate the order is fixed: pre-filter, ledger check, ledger mark,
optional full-text fetch, classification, change record, review & publish.
Everything after the catalog/jurisdiction load is isolated per jurisdiction,
per source phase and per candidate; only a failure before the first
jurisdiction starts produces a ``failed`` run summary.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from compliance_monitor.errors import LedgerWriteFailure, RunFatal, SourceUnavailable
from compliance_monitor.models import (
    RELEVANCE_DISMISSED,
    REVIEW_PENDING,
    REVIEW_REJECTED,
    RUN_FAILED,
    RUN_IN_PROGRESS,
    RUN_SUCCESS,
    ChangeCandidate,
    Jurisdiction,
    RelevanceVerdict,
    Template,
    utcnow_iso,
)
from compliance_monitor.publisher import CatalogSnapshot, PublishOutcome, ReviewPublisher
from compliance_monitor.sources.base import ChangeSource

logger = logging.getLogger(__name__)

ANALYSIS_PREVIEW_CHARS = 200


@dataclass
class JurisdictionResult:
    jurisdiction_id: str
    name: str
    candidates_found: int = 0
    filtered_out: int = 0
    already_processed: int = 0
    deferred: int = 0
    dismissed: int = 0
    recorded: int = 0
    relevant: int = 0
    published: int = 0
    rejected: int = 0
    pending: int = 0
    source_errors: list[str] = field(default_factory=list)
    candidate_errors: int = 0
    ledger_failures: int = 0
    error: str = ""
    lines: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "jurisdiction_id": self.jurisdiction_id,
            "name": self.name,
            "candidates_found": self.candidates_found,
            "filtered_out": self.filtered_out,
            "already_processed": self.already_processed,
            "deferred": self.deferred,
            "dismissed": self.dismissed,
            "recorded": self.recorded,
            "relevant": self.relevant,
            "published": self.published,
            "rejected": self.rejected,
            "pending": self.pending,
            "source_errors": list(self.source_errors),
            "candidate_errors": self.candidate_errors,
            "ledger_failures": self.ledger_failures,
            "error": self.error,
        }


def build_change_record(
    *,
    candidate: ChangeCandidate,
    verdict: RelevanceVerdict,
    run_id: str,
    created_at: str,
) -> dict[str, Any]:
    return {
        "record_id": f"chg_{uuid.uuid4().hex[:12]}",
        "run_id": run_id,
        "source_kind": candidate.source,
        "external_id": candidate.external_id,
        "jurisdiction_id": candidate.jurisdiction_id,
        "identifier": candidate.label,
        "title": candidate.title,
        "description": candidate.description,
        "url": candidate.url,
        "status": candidate.status,
        "last_action": candidate.last_action,
        "last_action_date": candidate.last_action_date,
        "discovered_at": candidate.discovered_at,
        "has_full_text": bool(candidate.full_text),
        "metadata": dict(candidate.metadata),
        **verdict.as_dict(),
        "is_reviewed": False,
        "created_at": created_at,
    }


def render_report(
    *,
    run_id: str,
    started_at: str,
    results: Sequence[JurisdictionResult],
    totals: dict[str, int],
    cancelled: bool,
) -> str:
    lines = [
        "Compliance Monitoring Run Complete",
        "==================================",
        f"Run ID: {run_id}",
        f"Started: {started_at}",
        f"Jurisdictions Checked: {', '.join(r.name for r in results) or 'none'}",
        f"Candidates Found: {totals['candidates_found']}",
        f"Relevant Candidates: {totals['relevant_candidates']}",
        f"Templates Published: {totals['templates_published']}",
    ]
    if totals["reviews_rejected"]:
        lines.append(f"Publish Rejections: {totals['reviews_rejected']}")
    if totals["reviews_pending"]:
        lines.append(f"Reviews Pending: {totals['reviews_pending']}")
    if totals["candidates_deferred"]:
        lines.append(f"Deferred To Next Run: {totals['candidates_deferred']}")
    if cancelled:
        lines.append("Run cancelled before all jurisdictions were processed")
    for result in results:
        lines.append("")
        lines.append(f"## {result.jurisdiction_id} - {result.name}")
        lines.append(f"Found {result.candidates_found} candidate(s)")
        for err in result.source_errors:
            lines.append(f"Source unavailable: {err}")
        if result.error:
            lines.append(f"Jurisdiction failed: {result.error}")
        if not result.lines and not result.source_errors and not result.error:
            lines.append("No new changes found")
        lines.extend(result.lines)
    return "\n".join(lines)


class MonitoringRun:
    def __init__(
        self,
        *,
        catalog: Any,
        sources: Sequence[ChangeSource],
        classifier: Any,
        ledger: Any,
        change_records: Any,
        run_summaries: Any,
        publisher: ReviewPublisher,
        since_year: int,
        max_candidates_per_source: int = 10,
        jurisdiction_workers: int = 1,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], str] = utcnow_iso,
    ) -> None:
        self.catalog = catalog
        self.sources = list(sources)
        self.classifier = classifier
        self.ledger = ledger
        self.change_records = change_records
        self.run_summaries = run_summaries
        self.publisher = publisher
        self.max_candidates_per_source = max(1, int(max_candidates_per_source))
        self.since_year = since_year
        self.jurisdiction_workers = max(1, int(jurisdiction_workers))
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock

    def cancel(self) -> None:
        self.cancel_event.set()

    def execute(self, *, jurisdiction_ids: Sequence[str] | None = None, run_id: str | None = None) -> dict[str, Any]:
        run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"
        started_at = self._clock()
        logger.info("monitoring run started run_id=%s", run_id)

        try:
            jurisdictions = self._load_jurisdictions(jurisdiction_ids)
            snapshot = CatalogSnapshot.take(self.catalog)
            self.run_summaries.append(
                summary={
                    "run_id": run_id,
                    "status": RUN_IN_PROGRESS,
                    "started_at": started_at,
                    "recorded_at": started_at,
                    "jurisdictions_checked": [j.id for j in jurisdictions],
                    "candidates_found": 0,
                    "relevant_candidates": 0,
                    "templates_published": 0,
                    "error_message": None,
                    "report": "",
                }
            )
        except Exception as exc:
            fatal = exc if isinstance(exc, RunFatal) else RunFatal(f"{type(exc).__name__}: {exc}")
            logger.error("monitoring run failed before processing run_id=%s: %s", run_id, fatal.message)
            return self._finish_failed(run_id=run_id, started_at=started_at, message=fatal.message)

        results, cancelled = self._process_all(jurisdictions, snapshot=snapshot, run_id=run_id)
        return self._finish(run_id=run_id, started_at=started_at, results=results, cancelled=cancelled)

    def _load_jurisdictions(self, jurisdiction_ids: Sequence[str] | None) -> list[Jurisdiction]:
        jurisdictions = self.catalog.list_jurisdictions(active_only=True)
        if jurisdiction_ids:
            wanted = {x.strip().upper() for x in jurisdiction_ids if x.strip()}
            jurisdictions = [j for j in jurisdictions if j.id in wanted]
            if not jurisdictions:
                raise RunFatal(f"no active jurisdiction matches {sorted(wanted)}")
        return jurisdictions

    def _process_all(
        self,
        jurisdictions: list[Jurisdiction],
        *,
        snapshot: CatalogSnapshot,
        run_id: str,
    ) -> tuple[list[JurisdictionResult], bool]:
        if self.jurisdiction_workers <= 1 or len(jurisdictions) <= 1:
            results: list[JurisdictionResult] = []
            for jurisdiction in jurisdictions:
                if self.cancel_event.is_set():
                    logger.warning("monitoring run cancelled run_id=%s before %s", run_id, jurisdiction.id)
                    return results, True
                results.append(self._process_jurisdiction_safe(jurisdiction, snapshot=snapshot, run_id=run_id))
            return results, False

        with ThreadPoolExecutor(
            max_workers=self.jurisdiction_workers,
            thread_name_prefix="monitor-jurisdiction",
        ) as pool:
            futures = [
                pool.submit(self._process_if_not_cancelled, jurisdiction, snapshot, run_id)
                for jurisdiction in jurisdictions
            ]
            outcomes = [f.result() for f in futures]
        results = [r for r in outcomes if r is not None]
        return results, len(results) < len(jurisdictions)

    def _process_if_not_cancelled(
        self,
        jurisdiction: Jurisdiction,
        snapshot: CatalogSnapshot,
        run_id: str,
    ) -> JurisdictionResult | None:
        if self.cancel_event.is_set():
            logger.warning("monitoring run cancelled run_id=%s before %s", run_id, jurisdiction.id)
            return None
        return self._process_jurisdiction_safe(jurisdiction, snapshot=snapshot, run_id=run_id)

    def _process_jurisdiction_safe(
        self,
        jurisdiction: Jurisdiction,
        *,
        snapshot: CatalogSnapshot,
        run_id: str,
    ) -> JurisdictionResult:
        result = JurisdictionResult(jurisdiction_id=jurisdiction.id, name=jurisdiction.name)
        logger.info("checking jurisdiction=%s run_id=%s", jurisdiction.id, run_id)
        try:
            templates = snapshot.for_jurisdiction(jurisdiction.id)
            for source in self.sources:
                try:
                    self._run_phase(
                        source,
                        jurisdiction,
                        templates=templates,
                        snapshot=snapshot,
                        run_id=run_id,
                        result=result,
                    )
                except Exception as exc:
                    logger.exception(
                        "source phase failed source=%s jurisdiction=%s run_id=%s",
                        source.kind,
                        jurisdiction.id,
                        run_id,
                    )
                    result.source_errors.append(f"{source.name}: {type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception("jurisdiction failed jurisdiction=%s run_id=%s", jurisdiction.id, run_id)
            result.error = f"{type(exc).__name__}: {exc}"
        return result

    def _run_phase(
        self,
        source: ChangeSource,
        jurisdiction: Jurisdiction,
        *,
        templates: list[Template],
        snapshot: CatalogSnapshot,
        run_id: str,
        result: JurisdictionResult,
    ) -> None:
        try:
            candidates = source.fetch_candidates(jurisdiction, since_year=self.since_year)
        except SourceUnavailable as exc:
            logger.warning(
                "source unavailable source=%s jurisdiction=%s run_id=%s: %s",
                source.kind,
                jurisdiction.id,
                run_id,
                exc.message,
            )
            result.source_errors.append(f"{source.name}: {exc.message}")
            return

        result.candidates_found += len(candidates)
        accepted = 0
        deferred = 0
        for candidate in candidates:
            try:
                if not source.is_relevant_candidate(candidate):
                    result.filtered_out += 1
                    continue
                if self.ledger.has_processed(source_kind=candidate.source, external_id=candidate.external_id):
                    result.already_processed += 1
                    continue
                if accepted >= self.max_candidates_per_source:
                    deferred += 1
                    continue
                accepted += 1
                self._process_candidate(
                    source,
                    candidate,
                    templates=templates,
                    snapshot=snapshot,
                    run_id=run_id,
                    result=result,
                )
            except Exception:
                logger.exception(
                    "candidate failed source=%s external_id=%s jurisdiction=%s run_id=%s",
                    candidate.source,
                    candidate.external_id,
                    jurisdiction.id,
                    run_id,
                )
                result.candidate_errors += 1
        if deferred:
            logger.info(
                "deferred candidates beyond cap source=%s jurisdiction=%s deferred=%d",
                source.kind,
                jurisdiction.id,
                deferred,
            )
            result.deferred += deferred

    def _process_candidate(
        self,
        source: ChangeSource,
        candidate: ChangeCandidate,
        *,
        templates: list[Template],
        snapshot: CatalogSnapshot,
        run_id: str,
        result: JurisdictionResult,
    ) -> None:
        try:
            inserted = self.ledger.mark_processed(
                source_kind=candidate.source,
                external_id=candidate.external_id,
                processed_at=self._clock(),
            )
        except LedgerWriteFailure as exc:
            logger.warning(
                "ledger mark failed, leaving candidate for next run source=%s external_id=%s jurisdiction=%s: %s",
                candidate.source,
                candidate.external_id,
                candidate.jurisdiction_id,
                exc.message,
            )
            result.ledger_failures += 1
            return
        if not inserted:
            # Another worker claimed the same change first.
            result.already_processed += 1
            return

        candidate = source.hydrate(candidate)
        verdict = self.classifier.classify(candidate, templates)
        record = build_change_record(candidate=candidate, verdict=verdict, run_id=run_id, created_at=self._clock())
        try:
            self.change_records.create(record=record)
        except Exception as exc:
            logger.error(
                "change record write failed source=%s external_id=%s jurisdiction=%s: %s",
                candidate.source,
                candidate.external_id,
                candidate.jurisdiction_id,
                exc,
            )
            result.candidate_errors += 1
            return
        result.recorded += 1
        if verdict.level == RELEVANCE_DISMISSED:
            logger.info(
                "dismissed source=%s external_id=%s jurisdiction=%s",
                candidate.source,
                candidate.external_id,
                candidate.jurisdiction_id,
            )
            result.dismissed += 1
            return
        if not verdict.requires_review:
            return

        result.relevant += 1
        result.lines.append("")
        result.lines.append(f"### {candidate.reason_text()}")
        level_text = verdict.level.upper()
        if verdict.model == "keyword-heuristic":
            level_text += " (keyword fallback)"
        result.lines.append(f"Relevance: {level_text}")
        analysis = verdict.analysis
        if len(analysis) > ANALYSIS_PREVIEW_CHARS:
            analysis = analysis[:ANALYSIS_PREVIEW_CHARS] + "..."
        result.lines.append(f"Analysis: {analysis}")

        outcomes = self.publisher.process(
            candidate=candidate,
            verdict=verdict,
            change_record_id=record["record_id"],
            snapshot=snapshot,
            run_id=run_id,
        )
        for outcome in outcomes:
            self._tally(outcome, snapshot=snapshot, result=result)

    @staticmethod
    def _tally(outcome: PublishOutcome, *, snapshot: CatalogSnapshot, result: JurisdictionResult) -> None:
        template = snapshot.get(outcome.template_id)
        title = template.title if template else outcome.template_id
        if outcome.published:
            result.published += 1
            result.lines.append(f"  -> Published template: {title} (v{outcome.version_number})")
            if outcome.status == REVIEW_PENDING:
                result.pending += 1
                result.lines.append(f"     review {outcome.review_id} needs manual reconciliation")
        elif outcome.status == REVIEW_REJECTED:
            result.rejected += 1
            result.lines.append(f"  -> Publish rejected for template: {title} ({outcome.error})")
        elif outcome.status == REVIEW_PENDING and outcome.error:
            result.pending += 1
            result.lines.append(f"  -> Publish rejected for template: {title} ({outcome.error})")
            result.lines.append(f"     review {outcome.review_id} needs manual reconciliation")
        elif outcome.status == REVIEW_PENDING:
            result.pending += 1
            result.lines.append(f"  -> Awaiting sign-off: {title}")

    @staticmethod
    def _totals(results: Sequence[JurisdictionResult]) -> dict[str, int]:
        return {
            "candidates_found": sum(r.candidates_found for r in results),
            "relevant_candidates": sum(r.relevant for r in results),
            "templates_published": sum(r.published for r in results),
            "reviews_rejected": sum(r.rejected for r in results),
            "reviews_pending": sum(r.pending for r in results),
            "candidates_deferred": sum(r.deferred for r in results),
            "candidate_errors": sum(r.candidate_errors for r in results),
            "source_errors": sum(len(r.source_errors) for r in results),
        }

    def _finish(
        self,
        *,
        run_id: str,
        started_at: str,
        results: list[JurisdictionResult],
        cancelled: bool,
    ) -> dict[str, Any]:
        totals = self._totals(results)
        finished_at = self._clock()
        summary = {
            "run_id": run_id,
            "status": RUN_SUCCESS,
            "started_at": started_at,
            "finished_at": finished_at,
            "recorded_at": finished_at,
            "jurisdictions_checked": [r.jurisdiction_id for r in results],
            **totals,
            "cancelled": cancelled,
            "error_message": "cancelled before all jurisdictions were processed" if cancelled else None,
            "report": render_report(
                run_id=run_id,
                started_at=started_at,
                results=results,
                totals=totals,
                cancelled=cancelled,
            ),
            "jurisdictions": [r.as_dict() for r in results],
        }
        self._write_terminal(summary)
        logger.info(
            "monitoring run finished run_id=%s candidates=%d relevant=%d published=%d",
            run_id,
            totals["candidates_found"],
            totals["relevant_candidates"],
            totals["templates_published"],
        )
        return summary

    def _finish_failed(self, *, run_id: str, started_at: str, message: str) -> dict[str, Any]:
        finished_at = self._clock()
        summary = {
            "run_id": run_id,
            "status": RUN_FAILED,
            "started_at": started_at,
            "finished_at": finished_at,
            "recorded_at": finished_at,
            "jurisdictions_checked": [],
            "candidates_found": 0,
            "relevant_candidates": 0,
            "templates_published": 0,
            "cancelled": False,
            "error_message": message,
            "report": "Monitoring run failed - see error message",
            "jurisdictions": [],
        }
        self._write_terminal(summary)
        return summary

    def _write_terminal(self, summary: dict[str, Any]) -> None:
        try:
            self.run_summaries.append(summary=summary)
        except Exception:
            # The in_progress row, if any, stays dangling and shows up in alerting.
            logger.exception("could not persist terminal run summary run_id=%s", summary["run_id"])
