"""Review & publish state machine.

For every template a relevant verdict names, a ``pending`` review entry is
written first, then the catalog is asked for a new version, then the entry is
moved to ``approved`` or ``rejected``. The catalog and the review table share
no transaction: a crash or failed write between the publish and the approval
leaves a ``pending`` entry whose review id is already stamped on a catalog
version. ``reconciliation_report`` lists exactly those entries.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from compliance_monitor.errors import PublishConflict, TemplateNotFound
from compliance_monitor.models import (
    RELEVANCE_MEDIUM,
    REVIEW_APPROVED,
    REVIEW_PENDING,
    REVIEW_REJECTED,
    SYSTEM_ACTOR,
    ChangeCandidate,
    RelevanceVerdict,
    Template,
    is_at_least,
    priority_for,
    utcnow_iso,
)
from compliance_monitor.notifications import build_publish_event

logger = logging.getLogger(__name__)

OUTCOME_SKIPPED = "skipped"


class CatalogSnapshot:
    """Templates as seen at run start, advanced after each publish in this run."""

    def __init__(self, templates: Iterable[Template]) -> None:
        self._templates: dict[str, Template] = {t.id: t for t in templates}
        self._lock = threading.Lock()
        self._template_locks: dict[str, threading.Lock] = {}

    @classmethod
    def take(cls, catalog: Any) -> CatalogSnapshot:
        return cls(catalog.list_templates(active_only=True))

    def get(self, template_id: str) -> Template | None:
        with self._lock:
            return self._templates.get(template_id)

    def for_jurisdiction(self, jurisdiction_id: str) -> list[Template]:
        with self._lock:
            rows = [t for t in self._templates.values() if t.jurisdiction_id == jurisdiction_id]
        return sorted(rows, key=lambda t: t.id)

    def lock_for(self, template_id: str) -> threading.Lock:
        with self._lock:
            lock = self._template_locks.get(template_id)
            if lock is None:
                lock = threading.Lock()
                self._template_locks[template_id] = lock
            return lock

    def record_publish(self, template_id: str, version_number: int) -> None:
        with self._lock:
            template = self._templates.get(template_id)
            if template is not None:
                self._templates[template_id] = dataclasses.replace(template, version=version_number)

    def __len__(self) -> int:
        with self._lock:
            return len(self._templates)


@dataclass
class PublishOutcome:
    template_id: str
    status: str
    review_id: str = ""
    version_number: int | None = None
    published: bool = False
    error: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "template_id": self.template_id,
            "status": self.status,
            "review_id": self.review_id,
            "version_number": self.version_number,
            "published": self.published,
            "error": self.error,
        }


def version_notes_for(verdict: RelevanceVerdict, candidate: ChangeCandidate) -> str:
    changes = verdict.recommended_changes.strip()
    if changes:
        return changes
    return f"Updated for {candidate.reason_text()}"


class ReviewPublisher:
    def __init__(
        self,
        *,
        catalog: Any,
        reviews: Any,
        notifier: Any | None = None,
        auto_publish_min_level: str = RELEVANCE_MEDIUM,
        clock: Callable[[], str] = utcnow_iso,
    ) -> None:
        self.catalog = catalog
        self.reviews = reviews
        self.notifier = notifier
        self.auto_publish_min_level = auto_publish_min_level
        self._clock = clock

    def process(
        self,
        *,
        candidate: ChangeCandidate,
        verdict: RelevanceVerdict,
        change_record_id: str,
        snapshot: CatalogSnapshot,
        run_id: str = "",
    ) -> list[PublishOutcome]:
        if not verdict.requires_review:
            return []
        outcomes: list[PublishOutcome] = []
        for template_id in dict.fromkeys(verdict.affected_template_ids):
            outcomes.append(
                self._process_template(
                    template_id=template_id,
                    candidate=candidate,
                    verdict=verdict,
                    change_record_id=change_record_id,
                    snapshot=snapshot,
                    run_id=run_id,
                )
            )
        return outcomes

    def _new_entry(
        self,
        *,
        template: Template,
        candidate: ChangeCandidate,
        verdict: RelevanceVerdict,
        change_record_id: str,
        run_id: str,
    ) -> dict[str, Any]:
        now = self._clock()
        return {
            "review_id": f"rev_{uuid.uuid4().hex[:12]}",
            "template_id": template.id,
            "jurisdiction_id": template.jurisdiction_id,
            "change_record_id": change_record_id,
            "run_id": run_id,
            "source_kind": candidate.source,
            "external_id": candidate.external_id,
            "status": REVIEW_PENDING,
            "priority": priority_for(verdict.level),
            "relevance_level": verdict.level,
            "reason": candidate.reason_text(),
            "analysis": verdict.analysis,
            "recommended_changes": verdict.recommended_changes,
            "current_version": template.version,
            "auto_publish": is_at_least(verdict.level, self.auto_publish_min_level),
            "review_started_at": now,
            "review_completed_at": None,
            "approved_at": None,
            "rejected_at": None,
            "rejection_reason": None,
            "published_at": None,
            "published_by": None,
            "published_version": None,
            "approval_notes": None,
            "attorney_notes": None,
            "created_at": now,
            "updated_at": now,
        }

    def _process_template(
        self,
        *,
        template_id: str,
        candidate: ChangeCandidate,
        verdict: RelevanceVerdict,
        change_record_id: str,
        snapshot: CatalogSnapshot,
        run_id: str,
    ) -> PublishOutcome:
        template = snapshot.get(template_id)
        if template is None:
            logger.info(
                "template missing from catalog snapshot, skipping template_id=%s source=%s external_id=%s",
                template_id,
                candidate.source,
                candidate.external_id,
            )
            return PublishOutcome(template_id=template_id, status=OUTCOME_SKIPPED, error="template_not_in_snapshot")

        entry = self._new_entry(
            template=template,
            candidate=candidate,
            verdict=verdict,
            change_record_id=change_record_id,
            run_id=run_id,
        )
        review_id = entry["review_id"]
        try:
            self.reviews.create(entry=entry)
        except Exception as exc:
            # Without a durable pending entry nothing may be published.
            logger.warning(
                "review entry write failed, not publishing template_id=%s source=%s external_id=%s: %s",
                template_id,
                candidate.source,
                candidate.external_id,
                exc,
            )
            return PublishOutcome(template_id=template_id, status=OUTCOME_SKIPPED, error=f"review_write_failed: {exc}")

        if not entry["auto_publish"]:
            logger.info(
                "review entry awaiting sign-off review_id=%s template_id=%s level=%s",
                review_id,
                template_id,
                verdict.level,
            )
            return PublishOutcome(template_id=template_id, status=REVIEW_PENDING, review_id=review_id)

        notes = version_notes_for(verdict, candidate)
        with snapshot.lock_for(template_id):
            current = snapshot.get(template_id) or template
            try:
                version = self.catalog.create_version(
                    template_id,
                    notes=notes,
                    reason=entry["reason"],
                    actor=SYSTEM_ACTOR,
                    review_id=review_id,
                    expected_version=current.version,
                )
            except (PublishConflict, TemplateNotFound) as exc:
                return self._reject(review_id=review_id, template_id=template_id, reason=f"{exc.code}: {exc.message}")
            except Exception as exc:
                return self._reject(
                    review_id=review_id,
                    template_id=template_id,
                    reason=f"PUBLISH_FAILED: {type(exc).__name__}: {exc}",
                )
            snapshot.record_publish(template_id, version.version_number)

        outcome = self._approve(review_id=review_id, template_id=template_id, version=version, notes=notes)
        self._notify(version=version, jurisdiction_id=template.jurisdiction_id)
        return outcome

    def _reject(self, *, review_id: str, template_id: str, reason: str) -> PublishOutcome:
        logger.warning("publish rejected review_id=%s template_id=%s: %s", review_id, template_id, reason)
        now = self._clock()
        try:
            self.reviews.transition(
                review_id=review_id,
                status=REVIEW_REJECTED,
                changes={
                    "rejection_reason": reason,
                    "review_completed_at": now,
                    "rejected_at": now,
                    "updated_at": now,
                },
            )
        except Exception as exc:
            logger.error(
                "MANUAL ACTION REQUIRED: publish rejected but review entry left pending "
                "review_id=%s template_id=%s: %s",
                review_id,
                template_id,
                exc,
            )
            return PublishOutcome(
                template_id=template_id,
                status=REVIEW_PENDING,
                review_id=review_id,
                error=f"reject_write_failed: {reason}",
            )
        return PublishOutcome(template_id=template_id, status=REVIEW_REJECTED, review_id=review_id, error=reason)

    def _approve(self, *, review_id: str, template_id: str, version: Any, notes: str) -> PublishOutcome:
        now = self._clock()
        try:
            self.reviews.transition(
                review_id=review_id,
                status=REVIEW_APPROVED,
                changes={
                    "review_completed_at": now,
                    "approved_at": now,
                    "published_at": now,
                    "published_by": SYSTEM_ACTOR,
                    "published_version": version.version_number,
                    "approval_notes": "Auto-approved and published by compliance monitoring",
                    "approved_changes": notes,
                    "updated_at": now,
                },
            )
        except Exception as exc:
            logger.error(
                "MANUAL ACTION REQUIRED: template published but review entry left pending "
                "review_id=%s template_id=%s version=%s: %s",
                review_id,
                template_id,
                version.version_number,
                exc,
            )
            return PublishOutcome(
                template_id=template_id,
                status=REVIEW_PENDING,
                review_id=review_id,
                version_number=version.version_number,
                published=True,
                error=f"approval_write_failed: {exc}",
            )
        logger.info(
            "published template_id=%s version=%s review_id=%s",
            template_id,
            version.version_number,
            review_id,
        )
        return PublishOutcome(
            template_id=template_id,
            status=REVIEW_APPROVED,
            review_id=review_id,
            version_number=version.version_number,
            published=True,
        )

    def _notify(self, *, version: Any, jurisdiction_id: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.emit(build_publish_event(version=version, jurisdiction_id=jurisdiction_id))
        except Exception as exc:
            logger.warning(
                "notification failed template_id=%s version=%s: %s",
                version.template_id,
                version.version_number,
                exc,
            )


def reconciliation_report(*, reviews: Any, catalog: Any) -> list[dict[str, Any]]:
    """Pending review entries whose publish already reached the catalog."""
    items: list[dict[str, Any]] = []
    for entry in reviews.list_pending():
        version = catalog.find_version_for_review(str(entry.get("review_id", "")))
        if version is None:
            continue
        items.append(
            {
                "review_id": entry["review_id"],
                "template_id": entry.get("template_id"),
                "jurisdiction_id": entry.get("jurisdiction_id"),
                "change_record_id": entry.get("change_record_id"),
                "run_id": entry.get("run_id"),
                "published_version": version.version_number,
                "published_at": version.created_at,
                "review_created_at": entry.get("created_at"),
            }
        )
    return items
