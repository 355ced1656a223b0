from __future__ import annotations

import logging
from typing import Any

from .config import Config
from .errors import PipelineError, TransientUpstream, ValidationError
from .legacy import LEGACY_TABLES, count_legacy_rows, has_legacy_table, list_legacy_rows, write_legacy_rows
from .models import MigrationRecord, WriteResult
from .storage import insert_generated_content, list_generated_content
from .utils import log_event, new_id, utc_now_iso

MIGRATION_VERSION = "2.0"


class DualWriter:
    """Persists parsed artifacts to the legacy tables and the unified table.

    Both writes share one transaction: either every row of the artifact
    commits or none does. With the mode off only the legacy rows are
    written; categories without a legacy table always go to the unified
    table.
    """

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = bool(enabled)
        self.logger = logging.getLogger("edenflow.dualwrite")

    @classmethod
    def from_config(cls, config: Config) -> "DualWriter":
        return cls(enabled=config.dual_write.enabled)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_mode(self, enabled: bool) -> None:
        self._enabled = bool(enabled)
        log_event(self.logger, logging.INFO, "dual_write_mode", enabled=self._enabled)

    def write(
        self,
        conn: Any,
        account_id: str,
        generated_article_id: str | None,
        category: str,
        items: list[dict[str, Any]],
        metadata: dict[str, Any] | None = None,
    ) -> WriteResult:
        try:
            with conn.transaction():
                legacy_ids = write_legacy_rows(
                    conn, account_id, generated_article_id, category, items
                )
                content_id = None
                if self._enabled or not has_legacy_table(category):
                    content_metadata = dict(metadata or {})
                    content_metadata["source"] = "dual_write"
                    content_metadata["legacy_ids"] = list(legacy_ids)
                    content_id = insert_generated_content(
                        conn,
                        account_id,
                        generated_article_id,
                        category,
                        list(items),
                        content_metadata,
                    )
                    for legacy_id in legacy_ids:
                        record_migration(conn, account_id, category, legacy_id, content_id)
        except PipelineError:
            raise
        except Exception as exc:  # noqa: BLE001
            if conn.is_integrity_error(exc):
                log_event(
                    self.logger,
                    logging.ERROR,
                    "dual_write_rejected",
                    account_id=account_id,
                    category=category,
                    error=str(exc),
                )
                raise ValidationError("dual_write_constraint_violation") from exc
            log_event(
                self.logger,
                logging.WARNING,
                "dual_write_failed",
                account_id=account_id,
                category=category,
                error=type(exc).__name__,
            )
            raise TransientUpstream("dual_write_failed") from exc
        log_event(
            self.logger,
            logging.INFO,
            "dual_write",
            account_id=account_id,
            category=category,
            content_id=content_id,
            legacy_count=len(legacy_ids),
        )
        return WriteResult(content_id=content_id, legacy_ids=legacy_ids, category=category)

    def list_content_for_article(
        self, conn: Any, account_id: str, generated_article_id: str
    ) -> list[dict[str, Any]]:
        """Artifacts for one generated article, unified rows first.

        With the mode off, categories backed by a legacy table are read from
        that table instead.
        """
        unified = list_generated_content(conn, account_id, [generated_article_id])
        if self._enabled:
            return [_content_view(row) for row in unified]
        results = [_content_view(row) for row in unified if not has_legacy_table(row.prompt_category)]
        for category in LEGACY_TABLES:
            rows = list_legacy_rows(conn, account_id, category, generated_article_id)
            if not rows:
                continue
            if category == "blog_post" and not rows[0]["has_payload"] and not rows[0]["item"].get("text"):
                continue
            results.append(
                {
                    "id": None,
                    "category": category,
                    "content_data": [row["item"] for row in rows],
                    "metadata": {"source": "legacy", "legacy_ids": [row["id"] for row in rows]},
                    "status": rows[0]["status"],
                    "created_at": rows[0]["created_at"],
                    "view": "legacy",
                }
            )
        return results

    def stats(self, conn: Any, account_id: str) -> dict[str, Any]:
        categories: dict[str, dict[str, int]] = {}
        cursor = conn.execute(
            """
            SELECT prompt_category, COUNT(*) FROM generated_content
            WHERE account_id = ?
            GROUP BY prompt_category
            """,
            (account_id,),
        )
        for category, count in cursor.fetchall():
            categories.setdefault(category, {"unified": 0, "legacy": 0})["unified"] = int(count)
        for category in LEGACY_TABLES:
            legacy = count_legacy_rows(conn, account_id, category)
            if legacy or category in categories:
                categories.setdefault(category, {"unified": 0, "legacy": 0})["legacy"] = legacy
        return {
            "dual_write_enabled": self._enabled,
            "categories": categories,
            "total_unified": sum(entry["unified"] for entry in categories.values()),
            "total_legacy": sum(entry["legacy"] for entry in categories.values()),
        }


def record_migration(
    conn: Any,
    account_id: str,
    content_type: str,
    legacy_id: str,
    modern_content_id: str,
    version: str = MIGRATION_VERSION,
) -> str:
    """Map a legacy row to its unified row.

    A legacy row written again (a blog post rewritten by a later template of
    the same chain) is repointed at the newest unified row.
    """
    existing = get_migration_record(conn, account_id, content_type, legacy_id)
    if existing is not None:
        conn.execute(
            """
            UPDATE content_migration_log
            SET modern_content_id = ?, migration_version = ?, migration_date = ?
            WHERE account_id = ? AND id = ?
            """,
            (modern_content_id, version, utc_now_iso(), account_id, existing.id),
        )
        conn.commit()
        return existing.id
    record_id = new_id("migr")
    conn.execute(
        """
        INSERT INTO content_migration_log
            (id, account_id, content_type, legacy_id, modern_content_id,
             migration_version, migration_date)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (record_id, account_id, content_type, legacy_id, modern_content_id, version, utc_now_iso()),
    )
    conn.commit()
    return record_id


def get_migration_record(
    conn: Any, account_id: str, content_type: str, legacy_id: str
) -> MigrationRecord | None:
    row = conn.execute(
        """
        SELECT id, account_id, content_type, legacy_id, modern_content_id,
               migration_version, migration_date
        FROM content_migration_log
        WHERE account_id = ? AND content_type = ? AND legacy_id = ?
        """,
        (account_id, content_type, legacy_id),
    ).fetchone()
    if not row:
        return None
    return MigrationRecord(*row)


def list_migration_records_for_content(
    conn: Any, account_id: str, modern_content_id: str
) -> list[MigrationRecord]:
    cursor = conn.execute(
        """
        SELECT id, account_id, content_type, legacy_id, modern_content_id,
               migration_version, migration_date
        FROM content_migration_log
        WHERE account_id = ? AND modern_content_id = ?
        ORDER BY legacy_id
        """,
        (account_id, modern_content_id),
    )
    return [MigrationRecord(*row) for row in cursor.fetchall()]


def delete_migration_record(conn: Any, account_id: str, record_id: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM content_migration_log WHERE account_id = ? AND id = ?",
        (account_id, record_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def _content_view(row: Any) -> dict[str, Any]:
    return {
        "id": row.id,
        "category": row.prompt_category,
        "content_data": row.content_data,
        "metadata": row.metadata,
        "status": row.status,
        "created_at": row.created_at,
        "view": "unified",
    }
