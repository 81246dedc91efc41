"""AI relevance classification of change candidates.

Chain: model (primary -> fallback, see ``llm_provider``) -> keyword heuristic.
The model's JSON answer is validated against ``VERDICT_SCHEMA``; anything that
fails validation is discarded and the heuristic answers instead, so partial or
malformed model output never drives a publish.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

from jsonschema import ValidationError, validate

from compliance_monitor.errors import ClassificationDegraded
from compliance_monitor.http_client import retry_backoff_ms
from compliance_monitor.keywords import heuristic_verdict
from compliance_monitor.llm_provider import LLMUsage, RunTokenBudget
from compliance_monitor.models import (
    COMPLIANCE_CATEGORIES,
    RELEVANCE_LEVELS,
    SOURCE_BILL,
    ChangeCandidate,
    RelevanceVerdict,
    Template,
)

logger = logging.getLogger(__name__)

CompletionFn = Callable[[list[dict[str, str]]], tuple[str, LLMUsage | None]]

VERDICT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["relevanceLevel", "analysis", "affectedTemplateIds", "recommendedChanges"],
    "properties": {
        "relevanceLevel": {"type": "string", "enum": list(RELEVANCE_LEVELS)},
        "analysis": {"type": "string", "minLength": 1},
        "affectedTemplateIds": {"type": "array", "items": {"type": "string"}},
        "affectedComplianceCategories": {"type": "array", "items": {"type": "string"}},
        "recommendedChanges": {"type": "string"},
    },
}

MAX_TEMPLATE_LISTING = 60

_SYSTEM_PROMPT = (
    "You are a legal analyst specializing in landlord-tenant law. You identify which "
    "legislation and court decisions affect rental property document templates. "
    "Respond with a single JSON object and nothing else."
)

_USER_TEMPLATE = """Analyze the following {kind_label} and determine:

1. How relevant is it to landlord-tenant law and rental property management?
2. Which of the listed templates would need to be updated?
3. Which compliance categories are affected?
4. What specific changes would the affected templates need?

{kind_header}:
Title: {title}
Identifier: {identifier}
Description: {description}
{full_text_block}
AVAILABLE TEMPLATES FOR {jurisdiction}:
{template_listing}

COMPLIANCE CATEGORIES:
- deposits: security deposit limits, return timelines, deduction rules
- disclosures: required landlord disclosures to tenants
- evictions: eviction procedures, notice requirements, just cause
- fair_housing: anti-discrimination, protected classes, accommodations
- rent_increases: rent increase notice periods, rent control, caps

Respond in JSON:
{{
  "relevanceLevel": "high" | "medium" | "low" | "dismissed",
  "analysis": "why this matters or does not matter to landlords",
  "affectedTemplateIds": ["<template id from the list above>"],
  "affectedComplianceCategories": ["deposits"],
  "recommendedChanges": "specific changes for the affected templates, or empty string"
}}

Relevance guidelines:
- high: directly changes landlord-tenant law; templates need updates
- medium: related to rental housing; templates may be affected
- low: tangentially related to housing; templates unlikely to change
- dismissed: unrelated to landlord-tenant law

Only use template ids from the list above. A missed compliance change is far worse than an extra
review: when unsure between two levels choose the higher one, and list every template that could
plausibly be affected."""


def build_messages(
    candidate: ChangeCandidate,
    templates: Sequence[Template],
    *,
    full_text_max_chars: int,
) -> list[dict[str, str]]:
    is_bill = candidate.source == SOURCE_BILL
    full_text = candidate.full_text or ""
    if full_text and full_text_max_chars > 0:
        full_text = full_text[:full_text_max_chars]
    if full_text:
        label = "Full Bill Text" if is_bill else "Case Opinion (excerpt)"
        full_text_block = f"\n{label}:\n{full_text}\n"
    else:
        full_text_block = ""
    listing = "\n".join(
        f"- {t.id}: {t.title} ({t.category})" for t in list(templates)[:MAX_TEMPLATE_LISTING]
    ) or "(no active templates)"
    user_msg = _USER_TEMPLATE.format(
        kind_label="proposed legislation" if is_bill else "court decision",
        kind_header="BILL INFORMATION" if is_bill else "CASE INFORMATION",
        title=candidate.title or "(untitled)",
        identifier=candidate.label,
        description=candidate.description or "(none)",
        full_text_block=full_text_block,
        jurisdiction=candidate.jurisdiction_id,
        template_listing=listing,
    )
    return [
        {"role": "system", "content": _SYSTEM_PROMPT},
        {"role": "user", "content": user_msg},
    ]


def parse_verdict_payload(content: str) -> dict[str, Any]:
    """Decode and schema-check a model answer; raises ValueError on any violation."""
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ValueError(f"response is not JSON: {exc.msg}") from exc
    try:
        validate(instance=payload, schema=VERDICT_SCHEMA)
    except ValidationError as exc:
        raise ValueError(f"response violates verdict schema: {exc.message}") from exc
    return payload


class RelevanceClassifier:
    def __init__(
        self,
        *,
        completion_fn: CompletionFn | None = None,
        budget: RunTokenBudget | None = None,
        min_interval_ms: int = 0,
        retry_max: int = 1,
        backoff_base_ms: int = 500,
        backoff_max_ms: int = 8000,
        bill_text_max_chars: int = 10000,
        case_text_max_chars: int = 8000,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.completion_fn = completion_fn
        self.budget = budget
        self.min_interval_ms = max(0, int(min_interval_ms))
        self.retry_max = max(0, int(retry_max))
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.bill_text_max_chars = bill_text_max_chars
        self.case_text_max_chars = case_text_max_chars
        self._sleep = sleep
        self._clock = clock
        self._throttle_lock = threading.Lock()
        self._last_call_at: float | None = None

    def classify(self, candidate: ChangeCandidate, jurisdiction_templates: Sequence[Template]) -> RelevanceVerdict:
        listing = [
            t for t in jurisdiction_templates if t.is_active and t.jurisdiction_id == candidate.jurisdiction_id
        ]
        if self.completion_fn is None:
            return heuristic_verdict(candidate, listing, degrade_reason="ai_unavailable")
        if self.budget is not None and self.budget.exhausted:
            logger.warning(
                "classifier budget exhausted, using heuristic source=%s external_id=%s jurisdiction=%s",
                candidate.source,
                candidate.external_id,
                candidate.jurisdiction_id,
            )
            return heuristic_verdict(candidate, listing, degrade_reason="budget_exhausted")

        try:
            return self._classify_with_model(candidate, listing)
        except ClassificationDegraded as exc:
            logger.warning(
                "classification degraded source=%s external_id=%s jurisdiction=%s: %s",
                candidate.source,
                candidate.external_id,
                candidate.jurisdiction_id,
                exc.message,
            )
            return heuristic_verdict(candidate, listing, degrade_reason=exc.message)

    def _classify_with_model(self, candidate: ChangeCandidate, listing: list[Template]) -> RelevanceVerdict:
        max_chars = self.bill_text_max_chars if candidate.source == SOURCE_BILL else self.case_text_max_chars
        messages = build_messages(candidate, listing, full_text_max_chars=max_chars)
        content, usage = self._complete(messages, key=f"{candidate.source}:{candidate.external_id}")
        try:
            payload = parse_verdict_payload(content)
        except ValueError as exc:
            raise ClassificationDegraded(str(exc), retryable=False) from exc

        known_ids = {t.id for t in listing}
        affected: list[str] = []
        for template_id in payload["affectedTemplateIds"]:
            if template_id in known_ids and template_id not in affected:
                affected.append(template_id)
            elif template_id not in known_ids:
                logger.info(
                    "dropping unknown template id %s from verdict source=%s external_id=%s",
                    template_id,
                    candidate.source,
                    candidate.external_id,
                )
        categories = [
            c for c in payload.get("affectedComplianceCategories") or [] if c in COMPLIANCE_CATEGORIES
        ]
        return RelevanceVerdict(
            level=payload["relevanceLevel"],
            analysis=payload["analysis"],
            affected_template_ids=tuple(affected),
            recommended_changes=payload["recommendedChanges"],
            affected_compliance_categories=tuple(dict.fromkeys(categories)),
            degraded=bool(usage.degraded) if usage else False,
            degrade_reason=usage.degrade_reason if usage else "",
            model=usage.model if usage else "",
        )

    def _complete(self, messages: list[dict[str, str]], *, key: str) -> tuple[str, LLMUsage | None]:
        attempt = 0
        while True:
            attempt += 1
            self._throttle()
            try:
                content, usage = self.completion_fn(messages)  # type: ignore[misc]
            except Exception as exc:
                if attempt > self.retry_max:
                    raise ClassificationDegraded(f"model call failed: {type(exc).__name__}: {exc}") from exc
                delay_ms = retry_backoff_ms(
                    key=key,
                    attempt=attempt,
                    base_ms=self.backoff_base_ms,
                    max_ms=self.backoff_max_ms,
                )
                logger.warning("model call failed (%s), retry in %dms", type(exc).__name__, delay_ms)
                self._sleep(delay_ms / 1000.0)
                continue
            if self.budget is not None:
                self.budget.record_usage(usage)
            return content, usage

    def _throttle(self) -> None:
        if self.min_interval_ms <= 0:
            return
        with self._throttle_lock:
            now = self._clock()
            if self._last_call_at is not None:
                wait_s = self.min_interval_ms / 1000.0 - (now - self._last_call_at)
                if wait_s > 0:
                    self._sleep(wait_s)
                    now = self._clock()
            self._last_call_at = now
