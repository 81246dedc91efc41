"""LegiScan adapter for state legislative bills.

API documentation: https://legiscan.com/legiscan
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

from compliance_monitor.errors import SourceUnavailable
from compliance_monitor.http_client import JsonHttpClient
from compliance_monitor.models import SOURCE_BILL, ChangeCandidate, Jurisdiction
from compliance_monitor.sources.base import ChangeSource, html_to_text

logger = logging.getLogger(__name__)

LEGISCAN_API_BASE = "https://api.legiscan.com/"

SEARCH_TERMS: tuple[str, ...] = (
    "landlord",
    "tenant",
    "rental",
    "eviction",
    "lease",
    "housing",
    "residential tenancy",
)

# LegiScan progress codes.
_STATUS_MAP = {
    1: "introduced",
    2: "passed_chamber",
    3: "passed_both",
    4: "passed_both",
    5: "vetoed",
    6: "dead",
    7: "signed",
}


def map_bill_status(code: Any) -> str:
    try:
        return _STATUS_MAP.get(int(code), "introduced")
    except (TypeError, ValueError):
        return "introduced"


def last_action(bill: dict[str, Any]) -> tuple[str, str]:
    history = bill.get("history") or []
    if isinstance(history, list) and history:
        latest = history[-1] or {}
        return str(latest.get("action") or "Unknown"), str(latest.get("date") or "")
    return "Unknown", ""


def decode_bill_text(doc: str, mime: str = "") -> str | None:
    try:
        raw = base64.b64decode(doc, validate=False)
    except (binascii.Error, ValueError):
        return None
    lowered = mime.lower()
    if lowered and "html" not in lowered and "text" not in lowered:
        # PDFs and word documents are not decoded here.
        return None
    text = raw.decode("utf-8", errors="replace")
    if "html" in lowered or "<html" in text[:500].lower():
        text = html_to_text(text)
    return text


class BillSource(ChangeSource):
    kind = SOURCE_BILL
    name = "legiscan"

    def __init__(
        self,
        *,
        api_key: str,
        http: JsonHttpClient | None = None,
        fetch_full_text: bool = True,
        full_text_max_chars: int = 10000,
        api_base: str = LEGISCAN_API_BASE,
    ) -> None:
        super().__init__(
            api_key=api_key,
            http=http,
            fetch_full_text=fetch_full_text,
            full_text_max_chars=full_text_max_chars,
        )
        self.api_base = api_base

    def _call(self, op: str, **params: Any) -> dict[str, Any]:
        data = self.http.get_json(
            self.api_base,
            params={"key": self.api_key, "op": op, **params},
            source=self.name,
        )
        if not isinstance(data, dict) or str(data.get("status", "")).upper() != "OK":
            alert = data.get("alert") if isinstance(data, dict) else None
            message = (alert or {}).get("message") if isinstance(alert, dict) else None
            raise SourceUnavailable(f"legiscan {op} error: {message or 'status not OK'}", retryable=False)
        return data

    def _search(self, jurisdiction: Jurisdiction, *, since_year: int) -> list[ChangeCandidate]:
        data = self._call(
            "getSearch",
            state=jurisdiction.id,
            query=" OR ".join(SEARCH_TERMS),
            year=since_year,
        )
        result = data.get("searchresult") or {}
        hits = [v for k, v in result.items() if k != "summary" and isinstance(v, dict)]
        hits.sort(key=lambda h: int(h.get("relevance") or 0), reverse=True)

        candidates: list[ChangeCandidate] = []
        for hit in hits:
            bill_id = hit.get("bill_id")
            if bill_id in (None, ""):
                continue
            title = str(hit.get("title") or "")
            candidates.append(
                ChangeCandidate(
                    source=SOURCE_BILL,
                    external_id=str(bill_id),
                    jurisdiction_id=jurisdiction.id,
                    title=title,
                    description=title,
                    identifier=str(hit.get("bill_number") or ""),
                    url=str(hit.get("url") or hit.get("text_url") or ""),
                    last_action=str(hit.get("last_action") or ""),
                    last_action_date=str(hit.get("last_action_date") or ""),
                    metadata={"change_hash": hit.get("change_hash"), "relevance": hit.get("relevance")},
                )
            )
        logger.info("legiscan found %d bills for %s (%d)", len(candidates), jurisdiction.id, since_year)
        return candidates

    def _load_details(self, candidate: ChangeCandidate) -> ChangeCandidate:
        bill = self._call("getBill", id=candidate.external_id).get("bill") or {}
        action, action_date = last_action(bill)
        updated = candidate.replace(
            title=str(bill.get("title") or candidate.title),
            description=str(bill.get("description") or candidate.description),
            status=map_bill_status(bill.get("status")),
            last_action=action if action != "Unknown" else candidate.last_action or action,
            last_action_date=action_date or candidate.last_action_date,
            url=str(bill.get("url") or candidate.url),
            identifier=str(bill.get("bill_number") or candidate.identifier),
        )
        if not self.fetch_full_text:
            return updated

        texts = bill.get("texts") or []
        if not isinstance(texts, list) or not texts:
            return updated
        doc_id = (texts[-1] or {}).get("doc_id")
        if doc_id in (None, ""):
            return updated
        try:
            text_payload = self._call("getBillText", id=doc_id).get("text") or {}
        except SourceUnavailable as exc:
            logger.warning(
                "legiscan text fetch failed source=bill external_id=%s jurisdiction=%s: %s",
                candidate.external_id,
                candidate.jurisdiction_id,
                exc.message,
            )
            return updated
        doc = text_payload.get("doc")
        if not doc:
            return updated
        full_text = decode_bill_text(str(doc), str(text_payload.get("mime") or ""))
        return updated.replace(full_text=self._truncate(full_text))
