import json
import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from compliance_monitor.classifier import RelevanceClassifier
from compliance_monitor.config import MonitorSettings
from compliance_monitor.llm_provider import LLMUsage, reset_usage_log
from compliance_monitor.models import SOURCE_BILL, SOURCE_CASE, ChangeCandidate, Jurisdiction, Template
from compliance_monitor.notifications import InMemoryNotificationSink
from compliance_monitor.orchestrator import MonitoringRun
from compliance_monitor.publisher import ReviewPublisher
from compliance_monitor.runtime import MonitorRuntime
from compliance_monitor.sources.base import ChangeSource
from compliance_monitor.store import create_memory_store


class FakeSource(ChangeSource):
    def __init__(
        self,
        *,
        kind: str,
        name: str,
        candidates: dict[str, list[ChangeCandidate]] | None = None,
        errors: dict[str, Exception] | None = None,
        full_texts: dict[str, str] | None = None,
        api_key: str = "test-key",
    ):
        super().__init__(api_key=api_key, http=object())
        self.kind = kind
        self.name = name
        self.candidates = candidates or {}
        self.errors = errors or {}
        self.full_texts = full_texts or {}
        self.search_calls: list[str] = []
        self.hydrated: list[str] = []

    def _search(self, jurisdiction, *, since_year):
        self.search_calls.append(jurisdiction.id)
        if jurisdiction.id in self.errors:
            raise self.errors[jurisdiction.id]
        return list(self.candidates.get(jurisdiction.id, []))

    def _load_details(self, candidate):
        self.hydrated.append(candidate.external_id)
        text = self.full_texts.get(candidate.external_id)
        return candidate.replace(full_text=text) if text else candidate


class ScriptedCompletion:
    """Chat completion double: the first rule whose key appears in the prompt answers."""

    def __init__(self, rules: list[tuple[str, object]] | None = None, default: object = None):
        self.rules = list(rules or [])
        self.default = default
        self.calls: list[list[dict[str, str]]] = []

    def __call__(self, messages):
        self.calls.append(messages)
        prompt = messages[-1]["content"]
        answer = self.default
        for key, value in self.rules:
            if key in prompt:
                answer = value
                break
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            answer = {
                "relevanceLevel": "dismissed",
                "analysis": "Not related to landlord-tenant law.",
                "affectedTemplateIds": [],
                "recommendedChanges": "",
            }
        content = answer if isinstance(answer, str) else json.dumps(answer)
        return content, LLMUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150, model="fake-model")


def bill(external_id: str, title: str, description: str = "", jurisdiction_id: str = "UT", **kwargs):
    return ChangeCandidate(
        source=SOURCE_BILL,
        external_id=external_id,
        jurisdiction_id=jurisdiction_id,
        title=title,
        description=description or title,
        identifier=kwargs.pop("identifier", f"HB{external_id}"),
        **kwargs,
    )


def case(external_id: str, title: str, description: str = "", jurisdiction_id: str = "UT", **kwargs):
    return ChangeCandidate(
        source=SOURCE_CASE,
        external_id=external_id,
        jurisdiction_id=jurisdiction_id,
        title=title,
        description=description or title,
        **kwargs,
    )


@pytest.fixture(autouse=True)
def reset_llm_usage():
    reset_usage_log()
    yield
    reset_usage_log()


@pytest.fixture()
def jurisdictions():
    return [
        Jurisdiction(id="UT", name="Utah"),
        Jurisdiction(id="TX", name="Texas"),
        Jurisdiction(id="ND", name="North Dakota", is_active=False),
    ]


@pytest.fixture()
def templates():
    return [
        Template(id="ut-lease-v3", jurisdiction_id="UT", title="Utah Residential Lease", category="lease", version=3),
        Template(
            id="ut-eviction-notice",
            jurisdiction_id="UT",
            title="Utah 3-Day Pay or Quit Notice",
            category="eviction_notice",
        ),
        Template(
            id="ut-retired-addendum",
            jurisdiction_id="UT",
            title="Utah Pet Addendum",
            category="addendum",
            is_active=False,
        ),
        Template(id="tx-lease", jurisdiction_id="TX", title="Texas Residential Lease", category="lease", version=2),
    ]


@pytest.fixture()
def notifier():
    return InMemoryNotificationSink()


@pytest.fixture()
def store(jurisdictions, templates, notifier):
    return create_memory_store(jurisdictions=jurisdictions, templates=templates, notifier=notifier)


@pytest.fixture()
def make_source():
    return FakeSource


@pytest.fixture()
def make_run(store):
    def _make(
        *,
        sources,
        completion=None,
        max_candidates_per_source=10,
        jurisdiction_workers=1,
        auto_publish_min_level="medium",
        **kwargs,
    ):
        classifier = RelevanceClassifier(completion_fn=completion, min_interval_ms=0, retry_max=0)
        publisher = ReviewPublisher(
            catalog=store.catalog,
            reviews=store.reviews,
            notifier=store.notifier,
            auto_publish_min_level=auto_publish_min_level,
        )
        return MonitoringRun(
            catalog=store.catalog,
            sources=sources,
            classifier=classifier,
            ledger=store.ledger,
            change_records=store.change_records,
            run_summaries=store.run_summaries,
            publisher=publisher,
            max_candidates_per_source=max_candidates_per_source,
            since_year=2025,
            jurisdiction_workers=jurisdiction_workers,
            **kwargs,
        )

    return _make


@pytest.fixture()
def make_runtime(store):
    def _make(*, sources, completion=None, **settings_overrides):
        options = {
            "jurisdictions": (),
            "classifier_delay_ms": 0,
            "classifier_retry_max": 0,
            "since_year": 2025,
        }
        options.update(settings_overrides)
        settings = MonitorSettings(**options)
        return MonitorRuntime(settings=settings, store=store, sources=sources, completion_fn=completion)

    return _make
