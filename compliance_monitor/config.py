from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from compliance_monitor.models import (
    RELEVANCE_HIGH,
    RELEVANCE_MEDIUM,
    Jurisdiction,
)

DEFAULT_JURISDICTIONS = "UT:Utah,TX:Texas,ND:North Dakota,SD:South Dakota"


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def parse_jurisdictions(raw: str) -> list[Jurisdiction]:
    """Parse ``ID:Name[:inactive]`` entries separated by commas."""
    out: list[Jurisdiction] = []
    seen: set[str] = set()
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        parts = [p.strip() for p in chunk.split(":")]
        jurisdiction_id = parts[0].upper()
        if not jurisdiction_id or jurisdiction_id in seen:
            continue
        name = parts[1] if len(parts) > 1 and parts[1] else jurisdiction_id
        is_active = not (len(parts) > 2 and parts[2].lower() == "inactive")
        out.append(Jurisdiction(id=jurisdiction_id, name=name, is_active=is_active))
        seen.add(jurisdiction_id)
    return out


@dataclass(frozen=True)
class MonitorSettings:
    store_backend: str = "memory"
    postgres_dsn: str = ""
    postgres_statement_timeout_ms: int = 15000
    jurisdictions: tuple[Jurisdiction, ...] = ()
    max_candidates_per_source: int = 10
    since_year: int | None = None
    source_timeout_s: float = 20.0
    source_retry_max: int = 2
    retry_backoff_base_ms: int = 500
    retry_backoff_max_ms: int = 8000
    classifier_delay_ms: int = 1000
    classifier_retry_max: int = 1
    fetch_full_text: bool = True
    bill_text_max_chars: int = 10000
    case_text_max_chars: int = 8000
    run_token_budget: int = 200000
    jurisdiction_workers: int = 1
    auto_publish_min_level: str = RELEVANCE_MEDIUM
    legiscan_api_key: str = ""
    courtlistener_api_key: str = ""
    cron_secret: str = ""
    templates_file: str = ""
    schedule_day_of_month: int = 1
    schedule_hour_utc: int = 6

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> MonitorSettings:
        env = os.environ if environ is None else environ
        since_year_raw = str(env.get("MONITOR_SINCE_YEAR", "")).strip()
        since_year = int(since_year_raw) if since_year_raw.isdigit() else None
        min_level = str(env.get("MONITOR_AUTO_PUBLISH_MIN_LEVEL", RELEVANCE_MEDIUM)).strip().lower()
        if min_level not in {RELEVANCE_MEDIUM, RELEVANCE_HIGH}:
            min_level = RELEVANCE_MEDIUM
        return cls(
            store_backend=str(env.get("MONITOR_STORE_BACKEND", "memory")).strip().lower() or "memory",
            postgres_dsn=str(env.get("POSTGRES_DSN", "")).strip(),
            postgres_statement_timeout_ms=_env_int(
                env, "POSTGRES_STATEMENT_TIMEOUT_MS", default=15000, minimum=0
            ),
            jurisdictions=tuple(parse_jurisdictions(str(env.get("MONITOR_JURISDICTIONS", DEFAULT_JURISDICTIONS)))),
            max_candidates_per_source=_env_int(env, "MONITOR_MAX_CANDIDATES_PER_SOURCE", default=10, minimum=1),
            since_year=since_year,
            source_timeout_s=_env_float(env, "MONITOR_SOURCE_TIMEOUT_S", default=20.0, minimum=0.1),
            source_retry_max=_env_int(env, "MONITOR_SOURCE_RETRY_MAX", default=2),
            retry_backoff_base_ms=_env_int(env, "MONITOR_RETRY_BACKOFF_BASE_MS", default=500),
            retry_backoff_max_ms=_env_int(env, "MONITOR_RETRY_BACKOFF_MAX_MS", default=8000),
            classifier_delay_ms=_env_int(env, "MONITOR_CLASSIFIER_DELAY_MS", default=1000),
            classifier_retry_max=_env_int(env, "MONITOR_CLASSIFIER_RETRY_MAX", default=1),
            fetch_full_text=_env_bool(env, "MONITOR_FETCH_FULL_TEXT", default=True),
            bill_text_max_chars=_env_int(env, "MONITOR_BILL_TEXT_MAX_CHARS", default=10000, minimum=0),
            case_text_max_chars=_env_int(env, "MONITOR_CASE_TEXT_MAX_CHARS", default=8000, minimum=0),
            run_token_budget=_env_int(env, "MONITOR_RUN_TOKEN_BUDGET", default=200000),
            jurisdiction_workers=_env_int(env, "MONITOR_JURISDICTION_WORKERS", default=1, minimum=1),
            auto_publish_min_level=min_level,
            legiscan_api_key=str(env.get("LEGISCAN_API_KEY", "")).strip(),
            courtlistener_api_key=str(env.get("COURTLISTENER_API_KEY", "")).strip(),
            cron_secret=str(env.get("MONITOR_CRON_SECRET", "")).strip(),
            templates_file=str(env.get("MONITOR_TEMPLATES_FILE", "")).strip(),
            schedule_day_of_month=min(28, _env_int(env, "MONITOR_SCHEDULE_DAY", default=1, minimum=1)),
            schedule_hour_utc=min(23, _env_int(env, "MONITOR_SCHEDULE_HOUR_UTC", default=6)),
        )

    def effective_since_year(self) -> int:
        if self.since_year is not None:
            return self.since_year
        return datetime.now(UTC).year
