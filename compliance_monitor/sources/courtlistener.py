"""CourtListener adapter for court opinions.

API documentation: https://www.courtlistener.com/help/api/rest/
"""

from __future__ import annotations

import logging
from typing import Any

from compliance_monitor.http_client import JsonHttpClient
from compliance_monitor.keywords import is_relevant_text
from compliance_monitor.models import SOURCE_CASE, ChangeCandidate, Jurisdiction
from compliance_monitor.sources.base import ChangeSource, html_to_text

logger = logging.getLogger(__name__)

COURTLISTENER_API_BASE = "https://www.courtlistener.com/api/rest/v4"
COURTLISTENER_SITE = "https://www.courtlistener.com"

SEARCH_TERMS: tuple[str, ...] = (
    '"landlord tenant"',
    "eviction",
    "lease",
    "rental",
    '"security deposit"',
)

# State supreme court, state appellate court, federal circuit.
STATE_COURTS: dict[str, tuple[str, ...]] = {
    "UT": ("utah", "utahctapp", "ca10"),
    "TX": ("tex", "texapp", "texcrimapp", "ca5"),
    "ND": ("nd", "ndctapp", "ca8"),
    "SD": ("sd", "ca8"),
}


def format_citation(result: dict[str, Any]) -> str:
    citations = result.get("citation") or result.get("citations") or []
    if isinstance(citations, list) and citations:
        first = citations[0]
        if isinstance(first, dict):
            parts = [str(first.get(k) or "") for k in ("volume", "reporter", "page")]
            if all(parts):
                return " ".join(parts)
        elif str(first).strip():
            return str(first).strip()
    docket = str(result.get("docketNumber") or result.get("case_number") or "").strip()
    if docket:
        return docket
    return f"Cluster ID: {result.get('cluster_id') or result.get('id')}"


class CaseLawSource(ChangeSource):
    kind = SOURCE_CASE
    name = "courtlistener"

    def __init__(
        self,
        *,
        api_key: str,
        http: JsonHttpClient | None = None,
        fetch_full_text: bool = True,
        full_text_max_chars: int = 8000,
        api_base: str = COURTLISTENER_API_BASE,
        page_size: int = 20,
        courts: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        super().__init__(
            api_key=api_key,
            http=http,
            fetch_full_text=fetch_full_text,
            full_text_max_chars=full_text_max_chars,
        )
        self.api_base = api_base.rstrip("/")
        self.page_size = max(1, int(page_size))
        self.courts = dict(STATE_COURTS if courts is None else courts)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.api_key}", "Accept": "application/json"}

    def _search(self, jurisdiction: Jurisdiction, *, since_year: int) -> list[ChangeCandidate]:
        params: dict[str, Any] = {
            "q": " OR ".join(SEARCH_TERMS),
            "type": "o",
            "order_by": "dateFiled desc",
            "filed_after": f"{since_year}-01-01",
            "page_size": self.page_size,
        }
        courts = self.courts.get(jurisdiction.id)
        if courts:
            params["court"] = " ".join(courts)
        data = self.http.get_json(
            f"{self.api_base}/search/",
            params=params,
            headers=self._headers(),
            source=self.name,
        )
        results = data.get("results") if isinstance(data, dict) else None
        candidates: list[ChangeCandidate] = []
        for result in results or []:
            if not isinstance(result, dict):
                continue
            cluster_id = result.get("cluster_id") or result.get("id")
            if cluster_id in (None, ""):
                continue
            opinions = result.get("opinions") or []
            opinion_id = None
            snippet = ""
            if isinstance(opinions, list) and opinions and isinstance(opinions[0], dict):
                opinion_id = opinions[0].get("id")
                snippet = str(opinions[0].get("snippet") or "")
            case_name = str(result.get("caseName") or result.get("case_name") or "")
            case_name_full = str(result.get("caseNameFull") or result.get("case_name_full") or "")
            absolute_url = str(result.get("absolute_url") or "")
            candidates.append(
                ChangeCandidate(
                    source=SOURCE_CASE,
                    external_id=str(cluster_id),
                    jurisdiction_id=jurisdiction.id,
                    title=case_name or case_name_full,
                    description=" ".join(x for x in (case_name_full, snippet) if x).strip() or case_name,
                    identifier=format_citation(result),
                    url=f"{COURTLISTENER_SITE}{absolute_url}" if absolute_url.startswith("/") else absolute_url,
                    status=str(result.get("status") or result.get("precedential_status") or ""),
                    last_action="Opinion filed",
                    last_action_date=str(result.get("dateFiled") or ""),
                    metadata={
                        "opinion_id": opinion_id,
                        "court": result.get("court_id") or result.get("court"),
                        "nature_of_suit": result.get("suitNature") or result.get("nature_of_suit") or "",
                    },
                )
            )
        logger.info("courtlistener found %d opinions for %s since %d", len(candidates), jurisdiction.id, since_year)
        return candidates

    def is_relevant_candidate(self, candidate: ChangeCandidate) -> bool:
        return is_relevant_text(
            candidate.title,
            candidate.description,
            str(candidate.metadata.get("nature_of_suit") or ""),
        )

    def _load_details(self, candidate: ChangeCandidate) -> ChangeCandidate:
        opinion_id = candidate.metadata.get("opinion_id")
        if not self.fetch_full_text or opinion_id in (None, ""):
            return candidate
        opinion = self.http.get_json(
            f"{self.api_base}/opinions/{opinion_id}/",
            headers=self._headers(),
            source=self.name,
        )
        if not isinstance(opinion, dict):
            return candidate
        body = str(opinion.get("plain_text") or "")
        if not body.strip():
            html = str(opinion.get("html_with_citations") or opinion.get("html") or "")
            body = html_to_text(html) if html else ""
        return candidate.replace(full_text=self._truncate(body))
