"""Domain types shared by the monitoring pipeline.

Value objects handed between components (candidates, templates, verdicts,
versions) are frozen dataclasses. Rows the pipeline persists (ledger records,
change records, review entries, run summaries) travel as plain dicts through
the repositories, see ``compliance_monitor.repositories``.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

SOURCE_BILL = "bill"
SOURCE_CASE = "case"
SOURCE_KINDS: tuple[str, ...] = (SOURCE_BILL, SOURCE_CASE)

RELEVANCE_DISMISSED = "dismissed"
RELEVANCE_LOW = "low"
RELEVANCE_MEDIUM = "medium"
RELEVANCE_HIGH = "high"
# Ordered from least to most relevant.
RELEVANCE_LEVELS: tuple[str, ...] = (
    RELEVANCE_DISMISSED,
    RELEVANCE_LOW,
    RELEVANCE_MEDIUM,
    RELEVANCE_HIGH,
)

REVIEW_PENDING = "pending"
REVIEW_APPROVED = "approved"
REVIEW_REJECTED = "rejected"
REVIEW_TERMINAL_STATUSES = frozenset({REVIEW_APPROVED, REVIEW_REJECTED})

RUN_IN_PROGRESS = "in_progress"
RUN_SUCCESS = "success"
RUN_FAILED = "failed"
RUN_TERMINAL_STATUSES = frozenset({RUN_SUCCESS, RUN_FAILED})

COMPLIANCE_CATEGORIES: tuple[str, ...] = (
    "deposits",
    "disclosures",
    "evictions",
    "fair_housing",
    "rent_increases",
)

SYSTEM_ACTOR = "system"


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def relevance_rank(level: str) -> int:
    try:
        return RELEVANCE_LEVELS.index(level)
    except ValueError:
        raise ValueError(f"unknown relevance level: {level}") from None


def is_at_least(level: str, threshold: str) -> bool:
    return relevance_rank(level) >= relevance_rank(threshold)


def priority_for(level: str) -> int:
    if level == RELEVANCE_HIGH:
        return 10
    if level == RELEVANCE_MEDIUM:
        return 5
    return 0


@dataclass(frozen=True)
class Jurisdiction:
    id: str
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class ChangeCandidate:
    """One external legal change (bill or court opinion) awaiting classification."""

    source: str
    external_id: str
    jurisdiction_id: str
    title: str
    description: str
    full_text: str | None = None
    discovered_at: str = field(default_factory=utcnow_iso)
    identifier: str = ""
    url: str = ""
    status: str = ""
    last_action: str = ""
    last_action_date: str = ""
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if self.source not in SOURCE_KINDS:
            raise ValueError(f"unknown source kind: {self.source}")
        if not str(self.external_id).strip():
            raise ValueError("external_id must not be empty")

    @property
    def ledger_key(self) -> tuple[str, str]:
        return (self.source, self.external_id)

    @property
    def label(self) -> str:
        return self.identifier or self.external_id

    def reason_text(self) -> str:
        prefix = "Bill" if self.source == SOURCE_BILL else "Case"
        return f"{prefix} {self.label}: {self.title}"

    def replace(self, **changes: Any) -> ChangeCandidate:
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class Template:
    id: str
    jurisdiction_id: str
    title: str
    category: str
    is_active: bool = True
    version: int = 1


@dataclass(frozen=True)
class TemplateVersion:
    template_id: str
    version_number: int
    notes: str
    reason: str
    published_by: str
    created_at: str
    review_id: str = ""

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class RelevanceVerdict:
    level: str
    analysis: str
    affected_template_ids: tuple[str, ...] = ()
    recommended_changes: str = ""
    affected_compliance_categories: tuple[str, ...] = ()
    degraded: bool = False
    degrade_reason: str = ""
    model: str = ""

    def __post_init__(self) -> None:
        relevance_rank(self.level)

    @property
    def requires_review(self) -> bool:
        return self.level in {RELEVANCE_MEDIUM, RELEVANCE_HIGH}

    def as_dict(self) -> dict[str, Any]:
        return {
            "relevance_level": self.level,
            "analysis": self.analysis,
            "affected_template_ids": list(self.affected_template_ids),
            "recommended_changes": self.recommended_changes,
            "affected_compliance_categories": list(self.affected_compliance_categories),
            "degraded": self.degraded,
            "degrade_reason": self.degrade_reason,
            "model": self.model,
        }
