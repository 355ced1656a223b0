from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations(conn: Any) -> list[str]:
    logger = logging.getLogger("edenflow.migrations")
    applied_now: list[str] = []
    with conn.transaction():
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            applied_now.append(version)
            logger.info("migration_applied version=%s", version)
    return applied_now


def get_schema_version(conn: Any) -> str | None:
    row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    return row[0] if row else None


def _migration_tenancy(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS organizations (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            settings_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            organization_id TEXT NOT NULL REFERENCES organizations(id),
            name TEXT NOT NULL,
            slug TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            settings_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(organization_id, slug)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT NULL,
            created_at TEXT NOT NULL,
            last_seen_at TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_accounts (
            user_id TEXT NOT NULL,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            role TEXT NOT NULL,
            assigned_at TEXT NOT NULL,
            assigned_by TEXT NULL,
            last_access TEXT NULL,
            PRIMARY KEY (user_id, account_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_organizations (
            user_id TEXT NOT NULL,
            organization_id TEXT NOT NULL REFERENCES organizations(id),
            role TEXT NOT NULL,
            assigned_at TEXT NOT NULL,
            PRIMARY KEY (user_id, organization_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS global_user_roles (
            user_id TEXT NOT NULL,
            role TEXT NOT NULL,
            granted_at TEXT NOT NULL,
            PRIMARY KEY (user_id, role)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS account_invitations (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            invited_email TEXT NOT NULL,
            role TEXT NOT NULL,
            invited_by TEXT NULL,
            token TEXT NOT NULL UNIQUE,
            expires_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL,
            accepted_at TEXT NULL,
            accepted_by TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS account_settings (
            account_id TEXT NOT NULL REFERENCES accounts(id),
            setting_type TEXT NOT NULL,
            settings_json TEXT NOT NULL,
            updated_by TEXT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (account_id, setting_type)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS provider_secrets (
            account_id TEXT PRIMARY KEY REFERENCES accounts(id),
            key_id TEXT NOT NULL,
            ciphertext TEXT NOT NULL,
            last4 TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_accounts_org ON accounts(organization_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_user_accounts_account ON user_accounts(account_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_invitations_account ON account_invitations(account_id, status)"
    )


def _migration_content(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            rss_url TEXT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            last_checked TEXT NULL,
            last_error TEXT NULL,
            success_rate REAL NOT NULL DEFAULT 0,
            refresh_count INTEGER NOT NULL DEFAULT 0,
            success_count INTEGER NOT NULL DEFAULT 0,
            articles_last_24h INTEGER NOT NULL DEFAULT 0,
            total_articles INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scraped_articles (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            source_id TEXT NULL REFERENCES sources(id),
            title TEXT NOT NULL,
            url TEXT NOT NULL,
            full_text TEXT NULL,
            summary TEXT NULL,
            keywords_json TEXT NULL,
            publication_date TEXT NULL,
            relevance_score REAL NULL,
            status TEXT NOT NULL DEFAULT 'scraped',
            content_quality_score REAL NULL,
            content_quality_tier TEXT NULL,
            content_generation_eligible INTEGER NOT NULL DEFAULT 1,
            content_issues_json TEXT NULL,
            scraped_at TEXT NOT NULL,
            analyzed_at TEXT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(account_id, source_id, url)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS generated_articles (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            based_on_scraped_article_id TEXT NULL REFERENCES scraped_articles(id),
            job_id TEXT NULL,
            title TEXT NOT NULL,
            body_draft TEXT NOT NULL DEFAULT '',
            body_final TEXT NULL,
            meta_description TEXT NULL,
            tags_json TEXT NULL,
            word_count INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'draft',
            quality_json TEXT NULL,
            template_version_ids_json TEXT NULL,
            payload_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS generated_content (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            based_on_gen_article_id TEXT NULL,
            prompt_category TEXT NOT NULL,
            content_data_json TEXT NOT NULL,
            metadata_json TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS social_posts (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            based_on_gen_article_id TEXT NULL,
            platform TEXT NOT NULL,
            text_draft TEXT NOT NULL,
            text_final TEXT NULL,
            hashtags_json TEXT NULL,
            emotional_hook_present_ai_check INTEGER NOT NULL DEFAULT 0,
            order_number INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'draft',
            payload_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS video_scripts (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            based_on_gen_article_id TEXT NULL,
            title TEXT NOT NULL,
            script_draft TEXT NOT NULL,
            script_final TEXT NULL,
            duration_seconds INTEGER NOT NULL DEFAULT 60,
            video_type TEXT NOT NULL DEFAULT 'short-form',
            visual_suggestions_json TEXT NULL,
            order_number INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'draft',
            payload_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS prayer_points (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            based_on_gen_article_id TEXT NULL,
            order_number INTEGER NOT NULL DEFAULT 1,
            prayer_text TEXT NOT NULL,
            theme TEXT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            payload_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    for table in (
        "sources",
        "scraped_articles",
        "generated_articles",
        "generated_content",
        "social_posts",
        "video_scripts",
        "prayer_points",
    ):
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_account ON {table}(account_id)")
    for table in ("scraped_articles", "generated_articles", "generated_content"):
        conn.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_account_status ON {table}(account_id, status)"
        )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_generated_content_article "
        "ON generated_content(based_on_gen_article_id)"
    )


def _migration_templates(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS prompt_templates (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            name TEXT NOT NULL,
            description TEXT NULL,
            category TEXT NOT NULL,
            media_type TEXT NOT NULL DEFAULT 'text',
            parsing_method TEXT NOT NULL DEFAULT 'generic',
            on_parse_error TEXT NOT NULL DEFAULT 'abort',
            current_version_id TEXT NULL,
            execution_order INTEGER NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_by TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS prompt_template_versions (
            id TEXT PRIMARY KEY,
            template_id TEXT NOT NULL REFERENCES prompt_templates(id),
            account_id TEXT NOT NULL REFERENCES accounts(id),
            version_number INTEGER NOT NULL,
            prompt_content TEXT NOT NULL,
            system_message TEXT NULL,
            parameters_json TEXT NULL,
            notes TEXT NULL,
            created_by TEXT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(template_id, version_number)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ai_response_logs (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            generated_article_id TEXT NULL,
            job_id TEXT NULL,
            template_id TEXT NULL,
            template_version_id TEXT NULL,
            prompt_category TEXT NOT NULL,
            prompt_text TEXT NOT NULL,
            response_text TEXT NULL,
            max_output_tokens INTEGER NULL,
            tokens_used_input INTEGER NULL,
            tokens_used_output INTEGER NULL,
            stop_reason TEXT NOT NULL,
            is_truncated INTEGER NOT NULL DEFAULT 0,
            parse_error TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_prompt_templates_order "
        "ON prompt_templates(account_id, is_active, execution_order)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_prompt_template_versions_account "
        "ON prompt_template_versions(account_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_ai_response_logs_account "
        "ON ai_response_logs(account_id, created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_ai_response_logs_version "
        "ON ai_response_logs(template_version_id)"
    )


def _migration_jobs(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            job_type TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'queued',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL,
            lease_expires_at TEXT NULL,
            locked_by TEXT NULL,
            cancel_requested INTEGER NOT NULL DEFAULT 0,
            not_before TEXT NULL,
            created_by TEXT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            last_error_json TEXT NULL,
            result_refs_json TEXT NULL,
            result_json TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS content_migration_log (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL REFERENCES accounts(id),
            content_type TEXT NOT NULL,
            legacy_id TEXT NOT NULL,
            modern_content_id TEXT NOT NULL,
            migration_version TEXT NOT NULL,
            migration_date TEXT NOT NULL,
            UNIQUE(content_type, legacy_id, account_id)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_account ON jobs(account_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_account_status ON jobs(account_id, status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_lease ON jobs(status, lease_expires_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_content_migration_log_account "
        "ON content_migration_log(account_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_content_migration_log_modern "
        "ON content_migration_log(modern_content_id)"
    )


def _migration_jobs_queued_at(conn: Any) -> None:
    if "queued_at" in _table_columns(conn, "jobs"):
        return
    conn.execute("ALTER TABLE jobs ADD COLUMN queued_at TEXT NULL")
    conn.execute("UPDATE jobs SET queued_at = created_at WHERE queued_at IS NULL")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_queued ON jobs(queued_at)")


def _table_columns(conn: Any, table: str) -> set[str]:
    if conn.backend == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_name = ?",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_tenancy", _migration_tenancy),
        ("002_content", _migration_content),
        ("003_prompt_templates", _migration_templates),
        ("004_jobs_and_migration_log", _migration_jobs),
        ("005_jobs_queued_at", _migration_jobs_queued_at),
    ]
