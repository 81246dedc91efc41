"""Template catalog: jurisdictions, templates and their numbered versions.

The monitoring pipeline only reads templates and asks the catalog for new
versions. ``create_version`` is the single write path and the only place the
per-template version counter moves.
"""

from __future__ import annotations

import dataclasses
import json
import pathlib
import threading
from collections.abc import Iterable
from typing import Any

from compliance_monitor.db.postgres import PostgresTxRunner, validate_identifier
from compliance_monitor.errors import PublishConflict, TemplateNotFound
from compliance_monitor.models import Jurisdiction, Template, TemplateVersion, utcnow_iso

_UNIQUE_VIOLATION = "23505"


def load_templates_file(path: str | pathlib.Path) -> list[Template]:
    raw = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"template seed file must hold a JSON list: {path}")
    out: list[Template] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        out.append(
            Template(
                id=str(item["id"]),
                jurisdiction_id=str(item["jurisdiction_id"]).upper(),
                title=str(item.get("title") or item["id"]),
                category=str(item.get("category") or "general"),
                is_active=bool(item.get("is_active", True)),
                version=int(item.get("version", 1)),
            )
        )
    return out


class InMemoryCatalogStore:
    def __init__(
        self,
        *,
        jurisdictions: Iterable[Jurisdiction] = (),
        templates: Iterable[Template] = (),
    ) -> None:
        self._jurisdictions: dict[str, Jurisdiction] = {j.id: j for j in jurisdictions}
        self._templates: dict[str, Template] = {t.id: t for t in templates}
        self._versions: dict[str, list[TemplateVersion]] = {}
        self._lock = threading.Lock()

    def upsert_jurisdiction(self, jurisdiction: Jurisdiction) -> None:
        with self._lock:
            self._jurisdictions[jurisdiction.id] = jurisdiction

    def upsert_template(self, template: Template) -> None:
        with self._lock:
            self._templates[template.id] = template

    def list_jurisdictions(self, *, active_only: bool = True) -> list[Jurisdiction]:
        with self._lock:
            rows = list(self._jurisdictions.values())
        if active_only:
            rows = [j for j in rows if j.is_active]
        return sorted(rows, key=lambda j: j.id)

    def list_templates(self, *, jurisdiction_id: str | None = None, active_only: bool = True) -> list[Template]:
        with self._lock:
            rows = list(self._templates.values())
        if jurisdiction_id:
            rows = [t for t in rows if t.jurisdiction_id == jurisdiction_id]
        if active_only:
            rows = [t for t in rows if t.is_active]
        return sorted(rows, key=lambda t: t.id)

    def get_template(self, template_id: str) -> Template | None:
        with self._lock:
            return self._templates.get(template_id)

    def create_version(
        self,
        template_id: str,
        *,
        notes: str,
        reason: str,
        actor: str,
        review_id: str = "",
        expected_version: int | None = None,
    ) -> TemplateVersion:
        with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                raise TemplateNotFound(f"template not found: {template_id}")
            if expected_version is not None and template.version != expected_version:
                raise PublishConflict(
                    f"template {template_id} is at version {template.version}, expected {expected_version}"
                )
            version = TemplateVersion(
                template_id=template_id,
                version_number=template.version + 1,
                notes=notes,
                reason=reason,
                published_by=actor,
                created_at=utcnow_iso(),
                review_id=review_id,
            )
            self._versions.setdefault(template_id, []).append(version)
            self._templates[template_id] = dataclasses.replace(template, version=version.version_number)
        return version

    def list_versions(self, template_id: str) -> list[TemplateVersion]:
        with self._lock:
            return list(self._versions.get(template_id, []))

    def find_version_for_review(self, review_id: str) -> TemplateVersion | None:
        if not review_id:
            return None
        with self._lock:
            for versions in self._versions.values():
                for version in versions:
                    if version.review_id == review_id:
                        return version
        return None


def _template_from_row(row: Any) -> Template:
    return Template(
        id=str(row[0]),
        jurisdiction_id=str(row[1]),
        title=str(row[2]),
        category=str(row[3]),
        is_active=bool(row[4]),
        version=int(row[5]),
    )


def _version_from_row(row: Any) -> TemplateVersion:
    return TemplateVersion(
        template_id=str(row[0]),
        version_number=int(row[1]),
        notes=str(row[2]),
        reason=str(row[3]),
        published_by=str(row[4]),
        review_id=str(row[5] or ""),
        created_at=str(row[6]),
    )


class PostgresCatalogStore:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        jurisdictions_table: str = "jurisdictions",
        templates_table: str = "templates",
        versions_table: str = "template_versions",
    ) -> None:
        self._tx_runner = tx_runner
        self._jurisdictions_table = validate_identifier(jurisdictions_table)
        self._templates_table = validate_identifier(templates_table)
        self._versions_table = validate_identifier(versions_table)

    def upsert_jurisdiction(self, jurisdiction: Jurisdiction) -> None:
        sql = f"""
            INSERT INTO {self._jurisdictions_table} (jurisdiction_id, name, is_active)
            VALUES (%s, %s, %s)
            ON CONFLICT (jurisdiction_id) DO UPDATE SET name = EXCLUDED.name, is_active = EXCLUDED.is_active
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (jurisdiction.id, jurisdiction.name, jurisdiction.is_active))

        self._tx_runner.run_in_tx(fn=_op)

    def upsert_template(self, template: Template) -> None:
        # Existing version counters are left alone; only metadata is refreshed.
        sql = f"""
            INSERT INTO {self._templates_table} (template_id, jurisdiction_id, title, category, is_active, version)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (template_id) DO UPDATE
            SET jurisdiction_id = EXCLUDED.jurisdiction_id,
                title = EXCLUDED.title,
                category = EXCLUDED.category,
                is_active = EXCLUDED.is_active
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        template.id,
                        template.jurisdiction_id,
                        template.title,
                        template.category,
                        template.is_active,
                        template.version,
                    ),
                )

        self._tx_runner.run_in_tx(fn=_op)

    def list_jurisdictions(self, *, active_only: bool = True) -> list[Jurisdiction]:
        where = "WHERE is_active = TRUE" if active_only else ""
        sql = f"""
            SELECT jurisdiction_id, name, is_active
            FROM {self._jurisdictions_table}
            {where}
            ORDER BY jurisdiction_id ASC
        """

        def _op(conn: Any) -> list[Jurisdiction]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return [Jurisdiction(id=str(r[0]), name=str(r[1]), is_active=bool(r[2])) for r in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_templates(self, *, jurisdiction_id: str | None = None, active_only: bool = True) -> list[Template]:
        clauses: list[str] = []
        params: list[Any] = []
        if jurisdiction_id:
            clauses.append("jurisdiction_id = %s")
            params.append(jurisdiction_id)
        if active_only:
            clauses.append("is_active = TRUE")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT template_id, jurisdiction_id, title, category, is_active, version
            FROM {self._templates_table}
            {where}
            ORDER BY template_id ASC
        """

        def _op(conn: Any) -> list[Template]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [_template_from_row(r) for r in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def get_template(self, template_id: str) -> Template | None:
        sql = f"""
            SELECT template_id, jurisdiction_id, title, category, is_active, version
            FROM {self._templates_table}
            WHERE template_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> Template | None:
            with conn.cursor() as cur:
                cur.execute(sql, (template_id,))
                row = cur.fetchone()
            return _template_from_row(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def create_version(
        self,
        template_id: str,
        *,
        notes: str,
        reason: str,
        actor: str,
        review_id: str = "",
        expected_version: int | None = None,
    ) -> TemplateVersion:
        lock_sql = f"SELECT version FROM {self._templates_table} WHERE template_id = %s FOR UPDATE"
        insert_sql = f"""
            INSERT INTO {self._versions_table} (
                template_id, version_number, notes, reason, published_by, review_id, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        update_sql = f"""
            UPDATE {self._templates_table}
            SET version = %s, version_notes = %s, last_update_reason = %s, updated_at = %s
            WHERE template_id = %s
        """

        def _op(conn: Any) -> TemplateVersion:
            with conn.cursor() as cur:
                cur.execute(lock_sql, (template_id,))
                row = cur.fetchone()
                if row is None:
                    raise TemplateNotFound(f"template not found: {template_id}")
                current = int(row[0])
                if expected_version is not None and current != expected_version:
                    raise PublishConflict(
                        f"template {template_id} is at version {current}, expected {expected_version}"
                    )
                version = TemplateVersion(
                    template_id=template_id,
                    version_number=current + 1,
                    notes=notes,
                    reason=reason,
                    published_by=actor,
                    created_at=utcnow_iso(),
                    review_id=review_id,
                )
                cur.execute(
                    insert_sql,
                    (
                        template_id,
                        version.version_number,
                        notes,
                        reason,
                        actor,
                        review_id or None,
                        version.created_at,
                    ),
                )
                cur.execute(
                    update_sql,
                    (version.version_number, notes, reason, version.created_at, template_id),
                )
            return version

        try:
            return self._tx_runner.run_in_tx(fn=_op)
        except (TemplateNotFound, PublishConflict):
            raise
        except Exception as exc:
            if getattr(exc, "sqlstate", None) == _UNIQUE_VIOLATION:
                raise PublishConflict(f"concurrent version write on template {template_id}") from exc
            raise

    def list_versions(self, template_id: str) -> list[TemplateVersion]:
        sql = f"""
            SELECT template_id, version_number, notes, reason, published_by, review_id, created_at
            FROM {self._versions_table}
            WHERE template_id = %s
            ORDER BY version_number ASC
        """

        def _op(conn: Any) -> list[TemplateVersion]:
            with conn.cursor() as cur:
                cur.execute(sql, (template_id,))
                rows = cur.fetchall() or []
            return [_version_from_row(r) for r in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def find_version_for_review(self, review_id: str) -> TemplateVersion | None:
        if not review_id:
            return None
        sql = f"""
            SELECT template_id, version_number, notes, reason, published_by, review_id, created_at
            FROM {self._versions_table}
            WHERE review_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> TemplateVersion | None:
            with conn.cursor() as cur:
                cur.execute(sql, (review_id,))
                row = cur.fetchone()
            return _version_from_row(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)
