from __future__ import annotations

from conftest import bill

from compliance_monitor.keywords import heuristic_verdict, is_relevant_text, matched_categories


def test_prefilter_matches_word_prefixes_only():
    assert is_relevant_text("Rental Assistance Program")
    assert is_relevant_text("An act relating to", "residential TENANCY disputes")
    assert not is_relevant_text("Current Fiscal Year Appropriations")
    assert not is_relevant_text("Highway speed limits", None, "")


def test_matched_categories():
    text = "Caps the security deposit and adds lead paint disclosure before a rent increase"
    assert matched_categories(text) == ["rent_increases", "deposits", "disclosures"]
    assert matched_categories("nothing here") == []


def test_heuristic_is_deterministic(templates):
    candidate = bill("1", "Security Deposit Return Timeline Extension")
    ut_templates = [t for t in templates if t.jurisdiction_id == "UT"]
    first = heuristic_verdict(candidate, ut_templates, degrade_reason="ai_unavailable")
    second = heuristic_verdict(candidate, ut_templates, degrade_reason="ai_unavailable")

    assert first == second
    assert first.level == "high"
    assert first.affected_template_ids == ("ut-lease-v3",)
    assert first.affected_compliance_categories == ("deposits",)
    assert "Bill HB1: Security Deposit Return Timeline Extension" in first.recommended_changes


def test_heuristic_levels(templates):
    assert heuristic_verdict(bill("2", "Landlord registration fees"), templates).level == "medium"
    low = heuristic_verdict(bill("3", "Agricultural water rights"), templates)
    assert low.level == "low"
    assert low.affected_template_ids == ()
    assert low.degraded is True
