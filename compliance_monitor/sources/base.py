from __future__ import annotations

import logging
import re
from html import unescape

from compliance_monitor.errors import SourceUnavailable
from compliance_monitor.http_client import JsonHttpClient
from compliance_monitor.keywords import is_relevant_text
from compliance_monitor.models import ChangeCandidate, Jurisdiction

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"[ \t\r\f\v]+")


def html_to_text(raw: str) -> str:
    text = unescape(_TAG_RE.sub(" ", raw))
    lines = [_WS_RE.sub(" ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


class ChangeSource:
    """Base for external change feeds.

    Subclasses implement ``_search`` (one paginated search round-trip that
    yields lightweight candidates) and may override ``_load_details`` for the
    optional per-candidate round-trip that fills in description/full text.
    """

    kind = ""
    name = ""

    def __init__(
        self,
        *,
        api_key: str,
        http: JsonHttpClient | None = None,
        fetch_full_text: bool = True,
        full_text_max_chars: int = 10000,
    ) -> None:
        self.api_key = api_key.strip()
        self.http = http or JsonHttpClient()
        self.fetch_full_text = fetch_full_text
        self.full_text_max_chars = max(0, int(full_text_max_chars))
        self._disabled_warned = False

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def fetch_candidates(self, jurisdiction: Jurisdiction, *, since_year: int) -> list[ChangeCandidate]:
        """Return candidates for one jurisdiction, or raise ``SourceUnavailable``.

        A source without a credential is disabled and yields nothing.
        """
        if not self.enabled:
            if not self._disabled_warned:
                logger.warning("%s disabled: no API credential configured", self.name)
                self._disabled_warned = True
            return []
        return self._search(jurisdiction, since_year=since_year)

    def is_relevant_candidate(self, candidate: ChangeCandidate) -> bool:
        return is_relevant_text(candidate.title, candidate.description)

    def hydrate(self, candidate: ChangeCandidate) -> ChangeCandidate:
        """Best-effort detail fetch; returns the candidate unchanged on failure."""
        if not self.enabled:
            return candidate
        try:
            return self._load_details(candidate)
        except SourceUnavailable as exc:
            logger.warning(
                "%s detail fetch failed source=%s external_id=%s jurisdiction=%s: %s",
                self.name,
                candidate.source,
                candidate.external_id,
                candidate.jurisdiction_id,
                exc.message,
            )
            return candidate
        except Exception:
            logger.exception(
                "%s detail payload unusable source=%s external_id=%s jurisdiction=%s",
                self.name,
                candidate.source,
                candidate.external_id,
                candidate.jurisdiction_id,
            )
            return candidate

    def _truncate(self, text: str | None) -> str | None:
        if not text:
            return None
        text = text.strip()
        if not text:
            return None
        if self.full_text_max_chars and len(text) > self.full_text_max_chars:
            return text[: self.full_text_max_chars]
        return text

    def _search(self, jurisdiction: Jurisdiction, *, since_year: int) -> list[ChangeCandidate]:
        raise NotImplementedError

    def _load_details(self, candidate: ChangeCandidate) -> ChangeCandidate:
        return candidate
