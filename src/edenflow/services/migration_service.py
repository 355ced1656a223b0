from __future__ import annotations

import logging
from typing import Any

from ..config import Config
from ..dualwrite import (
    MIGRATION_VERSION,
    delete_migration_record,
    get_migration_record,
    list_migration_records_for_content,
    record_migration,
)
from ..errors import ValidationError
from ..legacy import LEGACY_TABLES, MIGRATABLE_CATEGORIES, count_legacy_rows, list_legacy_rows
from ..storage import delete_generated_content, insert_generated_content
from ..utils import log_event, utc_now_iso


class MigrationService:
    """Backfills the unified content table from legacy artifact rows.

    Rows are visited in ``(created_at, id)`` order in batches of
    ``batch_size``. A row that already has a migration record is skipped, so
    replays never duplicate content. With ``dry_run`` every read happens and
    intended writes are logged, but storage is left untouched.
    """

    def __init__(self, conn: Any, batch_size: int = 100, dry_run: bool = False) -> None:
        if batch_size < 1:
            raise ValidationError("batch_size must be positive")
        self.conn = conn
        self.batch_size = int(batch_size)
        self.dry_run = bool(dry_run)
        self.logger = logging.getLogger("edenflow.migration")

    @classmethod
    def from_config(cls, conn: Any, config: Config) -> "MigrationService":
        return cls(conn, batch_size=config.migration.batch_size, dry_run=config.migration.dry_run)

    def migrate_all(self, account_id: str | None = None) -> dict[str, Any]:
        results = {
            content_type: self.migrate_type(content_type, account_id)
            for content_type in MIGRATABLE_CATEGORIES
        }
        return {
            "results": results,
            "migrated": sum(result["migrated"] for result in results.values()),
            "skipped": sum(result["skipped"] for result in results.values()),
            "failed": sum(result["failed"] for result in results.values()),
            "dry_run": self.dry_run,
        }

    def migrate_type(self, content_type: str, account_id: str | None = None) -> dict[str, Any]:
        if content_type not in MIGRATABLE_CATEGORIES:
            raise ValidationError(f"unsupported content type {content_type}")
        summary = {"migrated": 0, "skipped": 0, "failed": 0, "batches": 0}
        offset = 0
        while True:
            rows = list_legacy_rows(
                self.conn, account_id, content_type, limit=self.batch_size, offset=offset
            )
            if not rows:
                break
            summary["batches"] += 1
            batch = {"migrated": 0, "skipped": 0, "failed": 0}
            for row in rows:
                outcome = self._migrate_row(content_type, row)
                batch[outcome] += 1
            for key, value in batch.items():
                summary[key] += value
            log_event(
                self.logger,
                logging.INFO,
                "migration_batch",
                content_type=content_type,
                offset=offset,
                size=len(rows),
                dry_run=self.dry_run,
                **batch,
            )
            if len(rows) < self.batch_size:
                break
            offset += self.batch_size
        return summary

    def rollback(self, account_id: str, content_type: str, legacy_id: str) -> dict[str, Any]:
        """Remove the unified row produced for one legacy id.

        Every migration record pointing at that unified row is removed with
        it, so no record is left referencing deleted content.
        """
        if content_type not in LEGACY_TABLES:
            raise ValidationError(f"unsupported content type {content_type}")
        record = get_migration_record(self.conn, account_id, content_type, legacy_id)
        if record is None:
            return {"rolled_back": False, "content_id": None, "dry_run": self.dry_run}
        if self.dry_run:
            log_event(
                self.logger,
                logging.INFO,
                "migration_dry_run_rollback",
                account_id=account_id,
                content_type=content_type,
                legacy_id=legacy_id,
                content_id=record.modern_content_id,
            )
            return {
                "rolled_back": False,
                "content_id": record.modern_content_id,
                "dry_run": True,
            }
        with self.conn.transaction():
            delete_generated_content(self.conn, account_id, record.modern_content_id)
            linked = list_migration_records_for_content(
                self.conn, account_id, record.modern_content_id
            )
            for entry in linked:
                delete_migration_record(self.conn, account_id, entry.id)
        log_event(
            self.logger,
            logging.INFO,
            "migration_rolled_back",
            account_id=account_id,
            content_type=content_type,
            legacy_id=legacy_id,
            content_id=record.modern_content_id,
        )
        return {"rolled_back": True, "content_id": record.modern_content_id, "dry_run": False}

    def stats(self, account_id: str) -> dict[str, Any]:
        types: dict[str, dict[str, Any]] = {}
        for content_type in MIGRATABLE_CATEGORIES:
            legacy = count_legacy_rows(self.conn, account_id, content_type)
            migrated = self._count_migrated(account_id, content_type)
            types[content_type] = {
                "legacy_count": legacy,
                "migrated_count": migrated,
                "progress": _progress(migrated, legacy),
            }
        legacy_total = sum(entry["legacy_count"] for entry in types.values())
        migrated_total = sum(entry["migrated_count"] for entry in types.values())
        row = self.conn.execute(
            "SELECT COUNT(*) FROM generated_content WHERE account_id = ?", (account_id,)
        ).fetchone()
        return {
            "types": types,
            "legacy_total": legacy_total,
            "migrated_total": migrated_total,
            "unified_total": int(row[0]) if row else 0,
            "progress": _progress(migrated_total, legacy_total),
            "dry_run_mode": self.dry_run,
            "migration_version": MIGRATION_VERSION,
        }

    def _migrate_row(self, content_type: str, row: dict[str, Any]) -> str:
        account_id = row["account_id"]
        if get_migration_record(self.conn, account_id, content_type, row["id"]) is not None:
            return "skipped"
        metadata = _migration_metadata(content_type, row)
        if self.dry_run:
            log_event(
                self.logger,
                logging.INFO,
                "migration_dry_run_write",
                account_id=account_id,
                content_type=content_type,
                legacy_id=row["id"],
            )
            return "migrated"
        try:
            with self.conn.transaction():
                content_id = insert_generated_content(
                    self.conn,
                    account_id,
                    row["generated_article_id"],
                    content_type,
                    [row["item"]],
                    metadata,
                    status=row["status"],
                    created_at=row["created_at"],
                )
                record_migration(self.conn, account_id, content_type, row["id"], content_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.WARNING,
                "migration_row_failed",
                account_id=account_id,
                content_type=content_type,
                legacy_id=row["id"],
                error=type(exc).__name__,
            )
            return "failed"
        return "migrated"

    def _count_migrated(self, account_id: str, content_type: str) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) FROM content_migration_log
            WHERE account_id = ? AND content_type = ?
            """,
            (account_id, content_type),
        ).fetchone()
        return int(row[0]) if row else 0


def _migration_metadata(content_type: str, row: dict[str, Any]) -> dict[str, Any]:
    item = row["item"]
    metadata: dict[str, Any] = {
        "source": "legacy_migration",
        "legacy_ids": [row["id"]],
        "legacy_table": LEGACY_TABLES[content_type],
        "migrated_at": utc_now_iso(),
        "original_created_at": row["created_at"],
        "migration_version": MIGRATION_VERSION,
    }
    if content_type == "social_media":
        metadata["platform"] = item.get("platform")
    elif content_type == "video_script":
        metadata["title"] = item.get("title")
        metadata["duration_seconds"] = item.get("duration_seconds")
    elif content_type == "prayer_points":
        metadata["theme"] = item.get("theme")
    return metadata


def _progress(migrated: int, legacy: int) -> int:
    if legacy <= 0:
        return 0
    return min(100, round(migrated / legacy * 100))
