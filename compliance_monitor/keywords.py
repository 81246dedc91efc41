"""Keyword vocabulary for the source pre-filter and the heuristic classifier.

The heuristic is deterministic: the same candidate and template listing
always produce the same verdict. It is used whenever the AI classifier is
unavailable, over budget, or returns something that fails validation.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from compliance_monitor.models import (
    RELEVANCE_HIGH,
    RELEVANCE_LOW,
    RELEVANCE_MEDIUM,
    ChangeCandidate,
    RelevanceVerdict,
    Template,
)

# Matched as word prefixes, so "rent" covers "rental" and "renters" but not "current".
PREFILTER_TERMS: tuple[str, ...] = (
    "tenancy",
    "tenant",
    "landlord",
    "eviction",
    "evict",
    "deposit",
    "lease",
    "notice",
    "habitability",
    "rent",
    "residential",
    "housing",
    "occupancy",
)

HIGH_PRIORITY_PHRASES: tuple[str, ...] = (
    "eviction",
    "security deposit",
    "lease termination",
    "notice requirement",
    "habitability",
    "rent increase",
    "rent control",
    "rent cap",
    "rent limit",
    "rent stabilization",
    "tenant protection",
    "just cause eviction",
)

MEDIUM_PRIORITY_TERMS: tuple[str, ...] = (
    "landlord",
    "tenant",
    "rental",
    "lease",
    "housing",
)

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "rent_increases": (
        "rent increase",
        "rent control",
        "rent cap",
        "rent stabilization",
        "rent limit",
        "rental increase",
        "rent notice",
        "rent raise",
        "tenant protection act",
        "just cause",
        "rent regulation",
    ),
    "deposits": (
        "security deposit",
        "deposit return",
        "deposit limit",
        "deposit refund",
    ),
    "evictions": (
        "eviction",
        "unlawful detainer",
        "lease termination",
        "notice to quit",
        "eviction moratorium",
        "eviction protection",
    ),
    "disclosures": (
        "disclosure",
        "lead paint",
        "mold disclosure",
        "bed bug",
    ),
    "fair_housing": (
        "fair housing",
        "discrimination",
        "protected class",
        "source of income",
        "housing discrimination",
        "reasonable accommodation",
    ),
}

# Which template categories/titles a compliance category usually touches.
CATEGORY_TEMPLATE_HINTS: dict[str, tuple[str, ...]] = {
    "rent_increases": ("lease", "rent", "notice"),
    "deposits": ("lease", "deposit", "move"),
    "evictions": ("eviction", "notice", "lease"),
    "disclosures": ("lease", "disclosure", "addendum"),
    "fair_housing": ("application", "screening", "fair"),
}

_PREFILTER_RE = re.compile(r"\b(?:" + "|".join(re.escape(t) for t in PREFILTER_TERMS) + r")", re.IGNORECASE)


def _normalize(parts: Iterable[str | None]) -> str:
    return " ".join(str(p) for p in parts if p).lower()


def is_relevant_text(*parts: str | None) -> bool:
    return _PREFILTER_RE.search(_normalize(parts)) is not None


def matched_categories(text: str) -> list[str]:
    lowered = text.lower()
    return [
        category
        for category, keywords in CATEGORY_KEYWORDS.items()
        if any(k in lowered for k in keywords)
    ]


def _templates_for_categories(categories: Sequence[str], templates: Sequence[Template]) -> list[str]:
    hints = {h for c in categories for h in CATEGORY_TEMPLATE_HINTS.get(c, ())}
    if not hints:
        return []
    out: list[str] = []
    for template in templates:
        haystack = f"{template.category} {template.title}".lower()
        if any(h in haystack for h in hints):
            out.append(template.id)
    return out


def heuristic_verdict(
    candidate: ChangeCandidate,
    templates: Sequence[Template],
    *,
    degrade_reason: str = "",
) -> RelevanceVerdict:
    """Deterministic keyword verdict. Never raises."""
    text = _normalize([candidate.title, candidate.description])
    categories = matched_categories(text)
    has_high = any(k in text for k in HIGH_PRIORITY_PHRASES)
    has_medium = any(k in text for k in MEDIUM_PRIORITY_TERMS)

    if has_high:
        return RelevanceVerdict(
            level=RELEVANCE_HIGH,
            analysis=(
                "Keywords indicate this change directly affects landlord-tenant law. "
                "Manual review required."
            ),
            affected_template_ids=tuple(_templates_for_categories(categories, templates)),
            recommended_changes=f"Manual review needed to determine specific changes ({candidate.reason_text()}).",
            affected_compliance_categories=tuple(categories),
            degraded=True,
            degrade_reason=degrade_reason,
            model="keyword-heuristic",
        )
    if has_medium:
        return RelevanceVerdict(
            level=RELEVANCE_MEDIUM,
            analysis="This change may be related to landlord-tenant law. Review recommended.",
            affected_template_ids=tuple(_templates_for_categories(categories, templates)),
            recommended_changes=f"Review recommended ({candidate.reason_text()}).",
            affected_compliance_categories=tuple(categories),
            degraded=True,
            degrade_reason=degrade_reason,
            model="keyword-heuristic",
        )
    return RelevanceVerdict(
        level=RELEVANCE_LOW,
        analysis="This change does not appear to be directly related to landlord-tenant law.",
        degraded=True,
        degrade_reason=degrade_reason,
        model="keyword-heuristic",
    )
