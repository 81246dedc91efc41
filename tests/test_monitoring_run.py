from __future__ import annotations

import logging
import threading

from conftest import ScriptedCompletion, bill, case

from compliance_monitor.errors import LedgerWriteFailure, PublishConflict, SourceUnavailable
from compliance_monitor.publisher import reconciliation_report

DEPOSIT_TITLE = "Security Deposit Return Timeline Extension"
DEPOSIT_DESCRIPTION = (
    "Extends the deadline for landlords to return a tenant's security deposit to 45 days "
    "and requires the itemized statement to be sent by certified mail."
)
DEPOSIT_VERDICT = {
    "relevanceLevel": "high",
    "analysis": "Changes the statutory security deposit return deadline for residential leases.",
    "affectedTemplateIds": ["ut-lease-v3"],
    "affectedComplianceCategories": ["deposits"],
    "recommendedChanges": "Update the security deposit clause: return within 45 days, statement by certified mail.",
}


def _deposit_sources(make_source):
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={"UT": [bill("1001", DEPOSIT_TITLE, DEPOSIT_DESCRIPTION)]},
    )
    cases = make_source(kind="case", name="courtlistener")
    return bills, cases


def test_high_relevance_bill_is_published_and_approved(store, notifier, make_source, make_run):
    bills, cases = _deposit_sources(make_source)
    completion = ScriptedCompletion(rules=[(DEPOSIT_TITLE, DEPOSIT_VERDICT)])
    summary = make_run(sources=[bills, cases], completion=completion).execute()

    assert summary["status"] == "success"
    assert summary["jurisdictions_checked"] == ["TX", "UT"]
    assert summary["candidates_found"] == 1
    assert summary["relevant_candidates"] == 1
    assert summary["templates_published"] == 1

    reviews = store.reviews.list()
    assert len(reviews) == 1
    entry = reviews[0]
    assert entry["status"] == "approved"
    assert entry["template_id"] == "ut-lease-v3"
    assert entry["priority"] == 10
    assert entry["current_version"] == 3
    assert entry["published_version"] == 4
    assert entry["published_by"] == "system"
    assert entry["approved_at"] and entry["published_at"] and entry["review_completed_at"]
    assert entry["reason"] == f"Bill HB1001: {DEPOSIT_TITLE}"

    versions = store.catalog.list_versions("ut-lease-v3")
    assert len(versions) == 1
    assert versions[0].version_number == 4
    assert "45 days" in versions[0].notes
    assert versions[0].review_id == entry["review_id"]
    assert store.catalog.get_template("ut-lease-v3").version == 4

    ledger_rows = store.ledger.list_records()
    assert [(r["source_kind"], r["external_id"]) for r in ledger_rows] == [("bill", "1001")]
    record = store.change_records.get(record_id=entry["change_record_id"])
    assert record is not None
    assert record["relevance_level"] == "high"
    assert record["affected_compliance_categories"] == ["deposits"]

    events = notifier.list_events()
    assert len(events) == 1
    assert events[0]["payload"]["template_id"] == "ut-lease-v3"
    assert events[0]["payload"]["version_number"] == 4
    assert events[0]["payload"]["reason"] == f"Bill HB1001: {DEPOSIT_TITLE}"

    rows = store.run_summaries.list_for_run(run_id=summary["run_id"])
    assert [r["status"] for r in rows] == ["in_progress", "success"]
    assert store.run_summaries.list_dangling() == []
    assert "## UT - Utah" in summary["report"]
    assert DEPOSIT_TITLE in summary["report"]
    assert "Templates Published: 1" in summary["report"]
    assert reconciliation_report(reviews=store.reviews, catalog=store.catalog) == []


def test_second_run_over_same_source_creates_nothing(store, notifier, make_source, make_run):
    bills, cases = _deposit_sources(make_source)
    completion = ScriptedCompletion(rules=[(DEPOSIT_TITLE, DEPOSIT_VERDICT)])
    make_run(sources=[bills, cases], completion=completion).execute()
    calls_after_first = len(completion.calls)

    second = make_run(sources=[bills, cases], completion=completion).execute()

    assert second["status"] == "success"
    assert second["templates_published"] == 0
    assert second["relevant_candidates"] == 0
    assert len(completion.calls) == calls_after_first
    assert store.ledger.count() == 1
    assert len(store.reviews.list()) == 1
    assert len(store.catalog.list_versions("ut-lease-v3")) == 1
    assert len(store.change_records.list()) == 1
    assert len(notifier.list_events()) == 1
    assert bills.hydrated == ["1001"]


def test_low_and_dismissed_verdicts_never_create_reviews(store, make_source, make_run):
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={
            "UT": [
                bill("2001", "Residential Housing Study Committee"),
                bill("2002", "Tenant Parking Permits For Golf Courses"),
            ]
        },
    )
    completion = ScriptedCompletion(
        rules=[
            (
                "Housing Study",
                {
                    "relevanceLevel": "low",
                    "analysis": "Study only.",
                    "affectedTemplateIds": ["ut-lease-v3"],
                    "recommendedChanges": "",
                },
            ),
        ],
    )
    summary = make_run(sources=[bills], completion=completion).execute()

    assert summary["status"] == "success"
    assert summary["relevant_candidates"] == 0
    assert store.reviews.list() == []
    assert store.catalog.list_versions("ut-lease-v3") == []
    records = {r["external_id"]: r for r in store.change_records.list()}
    assert sorted(records) == ["2001", "2002"]
    assert records["2001"]["relevance_level"] == "low"
    assert records["2002"]["relevance_level"] == "dismissed"
    assert records["2002"]["is_reviewed"] is False
    assert store.ledger.count() == 2
    by_id = {j["jurisdiction_id"]: j for j in summary["jurisdictions"]}
    assert by_id["UT"]["dismissed"] == 1
    assert by_id["UT"]["recorded"] == 2


def test_prefilter_rejects_unrelated_candidates_without_marking(store, make_source, make_run):
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={"UT": [bill("3001", "Highway Speed Limits", "Raises the speed limit on interstates.")]},
    )
    completion = ScriptedCompletion()
    summary = make_run(sources=[bills], completion=completion).execute()

    assert summary["candidates_found"] == 1
    assert completion.calls == []
    assert store.ledger.count() == 0
    assert summary["jurisdictions"][1]["filtered_out"] == 1


def test_unknown_and_foreign_template_ids_are_dropped(store, make_source, make_run):
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={"UT": [bill("4001", "Lease Termination Notice Changes")]},
    )
    completion = ScriptedCompletion(
        default={
            "relevanceLevel": "high",
            "analysis": "Changes lease termination notice.",
            "affectedTemplateIds": ["ut-lease-v3", "ut-made-up", "tx-lease", "ut-retired-addendum"],
            "recommendedChanges": "Extend the termination notice to 30 days.",
        }
    )
    make_run(sources=[bills], completion=completion).execute()

    reviews = store.reviews.list()
    assert [r["template_id"] for r in reviews] == ["ut-lease-v3"]
    record = store.change_records.get(record_id=reviews[0]["change_record_id"])
    assert record["affected_template_ids"] == ["ut-lease-v3"]
    assert store.catalog.list_versions("tx-lease") == []


def test_classifier_failure_falls_back_to_heuristic_and_publishes(store, make_source, make_run):
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={"UT": [bill("5001", "Eviction Procedure Reform", "Shortens eviction timelines.")]},
    )
    completion = ScriptedCompletion(default=RuntimeError("model offline"))
    summary = make_run(sources=[bills], completion=completion).execute()

    assert summary["status"] == "success"
    assert len(completion.calls) == 1
    reviews = store.reviews.list()
    assert sorted(r["template_id"] for r in reviews) == ["ut-eviction-notice", "ut-lease-v3"]
    assert {r["status"] for r in reviews} == {"approved"}
    assert {r["relevance_level"] for r in reviews} == {"high"}
    record = store.change_records.get(record_id=reviews[0]["change_record_id"])
    assert record["model"] == "keyword-heuristic"
    assert record["degraded"] is True
    assert "keyword fallback" in summary["report"]


def test_publish_failure_on_one_template_does_not_block_the_other(store, make_source, make_run, monkeypatch):
    original = store.catalog.create_version

    def _create_version(template_id, **kwargs):
        if template_id == "ut-eviction-notice":
            raise PublishConflict("concurrent version write")
        return original(template_id, **kwargs)

    monkeypatch.setattr(store.catalog, "create_version", _create_version)
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={"UT": [bill("6001", "Eviction Notice Requirements")]},
    )
    completion = ScriptedCompletion(
        default={
            "relevanceLevel": "high",
            "analysis": "New eviction notice requirements.",
            "affectedTemplateIds": ["ut-eviction-notice", "ut-lease-v3"],
            "recommendedChanges": "Add the new 10-day notice language.",
        }
    )
    summary = make_run(sources=[bills], completion=completion).execute()

    by_template = {r["template_id"]: r for r in store.reviews.list()}
    assert by_template["ut-eviction-notice"]["status"] == "rejected"
    assert "PUBLISH_CONFLICT" in by_template["ut-eviction-notice"]["rejection_reason"]
    assert by_template["ut-eviction-notice"]["rejected_at"]
    assert by_template["ut-lease-v3"]["status"] == "approved"
    assert summary["templates_published"] == 1
    assert summary["reviews_rejected"] == 1
    assert store.reviews.list_pending() == []


def test_source_failure_is_isolated_to_its_jurisdiction_and_phase(store, make_source, make_run):
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={"TX": [bill("7001", "Security Deposit Limits", jurisdiction_id="TX")]},
        errors={"UT": SourceUnavailable("legiscan timed out")},
    )
    cases = make_source(
        kind="case",
        name="courtlistener",
        candidates={"UT": [case("88001", "Smith v. Jones landlord habitability dispute")]},
    )
    completion = ScriptedCompletion(
        rules=[
            (
                "Security Deposit Limits",
                {
                    "relevanceLevel": "medium",
                    "analysis": "Deposit caps.",
                    "affectedTemplateIds": ["tx-lease"],
                    "recommendedChanges": "Cap deposits at one month's rent.",
                },
            )
        ]
    )
    summary = make_run(sources=[bills, cases], completion=completion).execute()

    assert summary["status"] == "success"
    assert summary["source_errors"] == 1
    assert cases.search_calls == ["TX", "UT"]
    assert store.ledger.has_processed(source_kind="case", external_id="88001")
    assert store.catalog.get_template("tx-lease").version == 3
    assert "Source unavailable: legiscan: legiscan timed out" in summary["report"]


def test_unexpected_candidate_error_does_not_abort_run(store, make_source, make_run, monkeypatch):
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={"UT": [bill("7101", "Tenant Screening Rules"), bill("7102", "Eviction Sealing Act")]},
    )

    def _hydrate(candidate):
        if candidate.external_id == "7101":
            raise KeyError("broken payload")
        return candidate

    monkeypatch.setattr(bills, "hydrate", _hydrate)
    summary = make_run(sources=[bills], completion=None).execute()

    assert summary["status"] == "success"
    assert summary["candidate_errors"] == 1
    assert store.ledger.has_processed(source_kind="bill", external_id="7102")


def test_failure_before_first_jurisdiction_produces_failed_summary(store, make_source, make_run, monkeypatch):
    def _boom(**kwargs):
        raise RuntimeError("catalog unreachable")

    monkeypatch.setattr(store.catalog, "list_jurisdictions", _boom)
    bills, cases = _deposit_sources(make_source)
    summary = make_run(sources=[bills, cases], completion=None).execute()

    assert summary["status"] == "failed"
    assert "catalog unreachable" in summary["error_message"]
    rows = store.run_summaries.list_for_run(run_id=summary["run_id"])
    assert [r["status"] for r in rows] == ["failed"]
    assert bills.search_calls == []


def test_unknown_jurisdiction_filter_is_fatal(store, make_source, make_run):
    bills, cases = _deposit_sources(make_source)
    summary = make_run(sources=[bills, cases]).execute(jurisdiction_ids=["ZZ"])
    assert summary["status"] == "failed"
    assert "ZZ" in summary["error_message"]


def test_single_jurisdiction_run(store, make_source, make_run):
    bills, cases = _deposit_sources(make_source)
    summary = make_run(sources=[bills, cases]).execute(jurisdiction_ids=["ut"])
    assert summary["jurisdictions_checked"] == ["UT"]
    assert bills.search_calls == ["UT"]


def test_candidates_beyond_cap_are_deferred_unmarked(store, make_source, make_run):
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={
            "UT": [
                bill("8001", "Tenant Notice Act One"),
                bill("8002", "Tenant Notice Act Two"),
                bill("8003", "Tenant Notice Act Three"),
            ]
        },
    )
    first = make_run(sources=[bills], max_candidates_per_source=2).execute()
    assert first["candidates_deferred"] == 1
    assert store.ledger.has_processed(source_kind="bill", external_id="8001")
    assert store.ledger.has_processed(source_kind="bill", external_id="8002")
    assert not store.ledger.has_processed(source_kind="bill", external_id="8003")

    second = make_run(sources=[bills], max_candidates_per_source=2).execute()
    assert second["candidates_deferred"] == 0
    assert store.ledger.has_processed(source_kind="bill", external_id="8003")


def test_ledger_write_failure_skips_candidate_for_this_run(store, make_source, make_run, monkeypatch):
    def _fail(**kwargs):
        raise LedgerWriteFailure("database unavailable")

    monkeypatch.setattr(store.ledger, "mark_processed", _fail)
    bills, cases = _deposit_sources(make_source)
    completion = ScriptedCompletion(rules=[(DEPOSIT_TITLE, DEPOSIT_VERDICT)])
    summary = make_run(sources=[bills, cases], completion=completion).execute()

    assert summary["status"] == "success"
    assert completion.calls == []
    assert store.reviews.list() == []
    assert summary["jurisdictions"][1]["ledger_failures"] == 1


def test_approval_write_failure_is_reported_for_reconciliation(store, make_source, make_run, monkeypatch, caplog):
    original = store.reviews.transition

    def _transition(*, review_id, status, changes):
        if status == "approved":
            raise RuntimeError("review table unavailable")
        return original(review_id=review_id, status=status, changes=changes)

    monkeypatch.setattr(store.reviews, "transition", _transition)
    bills, cases = _deposit_sources(make_source)
    completion = ScriptedCompletion(rules=[(DEPOSIT_TITLE, DEPOSIT_VERDICT)])
    with caplog.at_level(logging.ERROR):
        summary = make_run(sources=[bills, cases], completion=completion).execute()

    assert summary["templates_published"] == 1
    assert summary["reviews_pending"] == 1
    assert "MANUAL ACTION REQUIRED" in caplog.text
    pending = store.reviews.list_pending()
    assert len(pending) == 1
    report = reconciliation_report(reviews=store.reviews, catalog=store.catalog)
    assert len(report) == 1
    assert report[0]["review_id"] == pending[0]["review_id"]
    assert report[0]["published_version"] == 4


def test_medium_verdict_waits_for_sign_off_when_threshold_is_high(store, make_source, make_run):
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={"UT": [bill("9001", "Rental Registry Program")]},
    )
    completion = ScriptedCompletion(
        default={
            "relevanceLevel": "medium",
            "analysis": "Registry may need a lease disclosure.",
            "affectedTemplateIds": ["ut-lease-v3"],
            "recommendedChanges": "Add registry number to the lease.",
        }
    )
    summary = make_run(sources=[bills], completion=completion, auto_publish_min_level="high").execute()

    pending = store.reviews.list_pending()
    assert len(pending) == 1
    assert pending[0]["priority"] == 5
    assert pending[0]["auto_publish"] is False
    assert store.catalog.list_versions("ut-lease-v3") == []
    assert summary["templates_published"] == 0
    assert reconciliation_report(reviews=store.reviews, catalog=store.catalog) == []


def test_cancellation_between_jurisdictions(store, make_source, make_run):
    cancel_event = threading.Event()

    class CancellingSource(make_source):
        def _search(self, jurisdiction, *, since_year):
            cancel_event.set()
            return super()._search(jurisdiction, since_year=since_year)

    bills = CancellingSource(kind="bill", name="legiscan")
    summary = make_run(sources=[bills], cancel_event=cancel_event).execute()

    assert summary["status"] == "success"
    assert summary["cancelled"] is True
    assert summary["jurisdictions_checked"] == ["TX"]
    assert bills.search_calls == ["TX"]
    assert [r["status"] for r in store.run_summaries.list_for_run(run_id=summary["run_id"])] == [
        "in_progress",
        "success",
    ]


def test_concurrent_jurisdictions_process_shared_case_once(store, make_source, make_run):
    shared = "Tenant eviction appeal in federal circuit"
    cases = make_source(
        kind="case",
        name="courtlistener",
        candidates={
            "UT": [case("99001", shared, jurisdiction_id="UT")],
            "TX": [case("99001", shared, jurisdiction_id="TX")],
        },
    )
    bills = make_source(
        kind="bill",
        name="legiscan",
        candidates={
            "UT": [bill("9101", DEPOSIT_TITLE, DEPOSIT_DESCRIPTION)],
            "TX": [bill("9102", "Texas Security Deposit Update", jurisdiction_id="TX")],
        },
    )
    completion = ScriptedCompletion(
        rules=[
            (DEPOSIT_TITLE, DEPOSIT_VERDICT),
            (
                "Texas Security Deposit Update",
                {
                    "relevanceLevel": "high",
                    "analysis": "Texas deposit change.",
                    "affectedTemplateIds": ["tx-lease"],
                    "recommendedChanges": "Return deposits within 30 days.",
                },
            ),
        ]
    )
    summary = make_run(sources=[bills, cases], completion=completion, jurisdiction_workers=2).execute()

    assert summary["status"] == "success"
    assert sorted(summary["jurisdictions_checked"]) == ["TX", "UT"]
    assert summary["templates_published"] == 2
    assert store.ledger.count() == 3
    shared_prompts = [c for c in completion.calls if shared in c[-1]["content"]]
    assert len(shared_prompts) == 1
    assert store.catalog.get_template("tx-lease").version == 3
    assert store.catalog.get_template("ut-lease-v3").version == 4
