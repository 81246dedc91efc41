from __future__ import annotations

import json

import pytest
from conftest import ScriptedCompletion, bill, case

from compliance_monitor.classifier import RelevanceClassifier, build_messages, parse_verdict_payload
from compliance_monitor.llm_provider import LLMUsage, RunTokenBudget


def _templates(templates):
    return [t for t in templates if t.jurisdiction_id == "UT"]


def test_model_verdict_is_validated_and_filtered(templates):
    completion = ScriptedCompletion(
        default={
            "relevanceLevel": "high",
            "analysis": "Deposit deadline moves to 45 days.",
            "affectedTemplateIds": ["ut-lease-v3", "ut-lease-v3", "invented-id", "ut-retired-addendum"],
            "affectedComplianceCategories": ["deposits", "zoning"],
            "recommendedChanges": "Update deposit clause.",
        }
    )
    classifier = RelevanceClassifier(completion_fn=completion)
    verdict = classifier.classify(bill("1", "Security Deposit Return"), _templates(templates))

    assert verdict.level == "high"
    assert verdict.affected_template_ids == ("ut-lease-v3",)
    assert verdict.affected_compliance_categories == ("deposits",)
    assert verdict.model == "fake-model"
    assert verdict.degraded is False


def test_schema_violation_falls_back_to_heuristic(templates):
    completion = ScriptedCompletion(default={"relevanceLevel": "urgent", "analysis": "x"})
    classifier = RelevanceClassifier(completion_fn=completion, retry_max=3)
    verdict = classifier.classify(bill("1", "Eviction Notice Reform"), _templates(templates))

    assert len(completion.calls) == 1
    assert verdict.model == "keyword-heuristic"
    assert verdict.level == "high"
    assert "violates verdict schema" in verdict.degrade_reason


def test_non_json_answer_falls_back(templates):
    completion = ScriptedCompletion(default="Sure! Here is my analysis: it is relevant.")
    verdict = RelevanceClassifier(completion_fn=completion).classify(
        bill("1", "Residential Tenant Screening"),
        _templates(templates),
    )
    assert verdict.model == "keyword-heuristic"
    assert verdict.level == "medium"
    assert "not JSON" in verdict.degrade_reason


def test_transient_model_errors_are_retried():
    sleeps: list[float] = []
    attempts = {"n": 0}

    def flaky(messages):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise ConnectionError("reset")
        payload = {"relevanceLevel": "low", "analysis": "minor", "affectedTemplateIds": [], "recommendedChanges": ""}
        return json.dumps(payload), LLMUsage(total_tokens=10, model="m")

    classifier = RelevanceClassifier(completion_fn=flaky, retry_max=1, sleep=sleeps.append)
    verdict = classifier.classify(bill("1", "Housing study"), [])
    assert verdict.level == "low"
    assert attempts["n"] == 2
    assert len(sleeps) == 1


def test_model_failure_with_eviction_keywords_is_high(templates):
    completion = ScriptedCompletion(default=RuntimeError("provider down"))
    verdict = RelevanceClassifier(completion_fn=completion, retry_max=0).classify(
        bill("1", "Just Cause Eviction Protections"),
        _templates(templates),
    )
    assert verdict.level == "high"
    assert verdict.degraded is True
    assert set(verdict.affected_template_ids) == {"ut-lease-v3", "ut-eviction-notice"}
    assert "evictions" in verdict.affected_compliance_categories


def test_without_model_heuristic_answers(templates):
    verdict = RelevanceClassifier().classify(bill("1", "Parking fees at state parks"), _templates(templates))
    assert verdict.level == "low"
    assert verdict.degrade_reason == "ai_unavailable"
    assert verdict.affected_template_ids == ()


def test_exhausted_budget_skips_model(templates):
    completion = ScriptedCompletion()
    budget = RunTokenBudget(run_id="run_1", max_tokens_budget=100)
    classifier = RelevanceClassifier(completion_fn=completion, budget=budget)

    classifier.classify(bill("1", "Tenant rights"), _templates(templates))
    assert budget.exhausted
    verdict = classifier.classify(bill("2", "Tenant rights again"), _templates(templates))

    assert len(completion.calls) == 1
    assert verdict.degrade_reason == "budget_exhausted"


def test_throttle_spaces_model_calls():
    sleeps: list[float] = []
    now = {"t": 100.0}
    completion = ScriptedCompletion()
    classifier = RelevanceClassifier(
        completion_fn=completion,
        min_interval_ms=1000,
        sleep=sleeps.append,
        clock=lambda: now["t"],
    )
    classifier.classify(bill("1", "Tenant rights"), [])
    now["t"] += 0.25
    classifier.classify(bill("2", "Tenant rights"), [])
    assert sleeps == [pytest.approx(0.75)]


def test_prompt_lists_only_jurisdiction_templates_and_truncates_text(templates):
    candidate = case("501", "Smith v. Jones", full_text="x" * 50)
    messages = build_messages(candidate, _templates(templates), full_text_max_chars=10)
    prompt = messages[-1]["content"]

    assert "court decision" in prompt
    assert "- ut-lease-v3: Utah Residential Lease (lease)" in prompt
    assert "tx-lease" not in prompt
    assert "x" * 10 in prompt
    assert "x" * 11 not in prompt


def test_parse_verdict_payload_rejects_missing_fields():
    with pytest.raises(ValueError, match="violates verdict schema"):
        parse_verdict_payload(json.dumps({"relevanceLevel": "high"}))
