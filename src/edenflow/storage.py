from __future__ import annotations

from typing import Any, Iterable

from .db import placeholders
from .errors import ValidationError
from .models import (
    Account,
    GeneratedArticle,
    GeneratedContent,
    Organization,
    ScrapedArticle,
)
from .utils import count_words, json_dumps, json_loads, new_id, slugify, utc_now_iso


# Tenancy


def create_organization(
    conn: Any,
    name: str,
    settings: dict[str, Any] | None = None,
    organization_id: str | None = None,
) -> str:
    if not name or not name.strip():
        raise ValidationError("name is required")
    organization_id = organization_id or new_id("org")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO organizations (id, name, is_active, settings_json, created_at, updated_at)
        VALUES (?, ?, 1, ?, ?, ?)
        """,
        (organization_id, name.strip(), json_dumps(settings or {}), now, now),
    )
    conn.commit()
    return organization_id


def get_organization(conn: Any, organization_id: str) -> Organization | None:
    row = conn.execute(
        "SELECT id, name, is_active, settings_json FROM organizations WHERE id = ?",
        (organization_id,),
    ).fetchone()
    if not row:
        return None
    return Organization(
        id=row[0],
        name=row[1],
        is_active=bool(row[2]),
        settings=json_loads(row[3], {}),
    )


def set_organization_active(conn: Any, organization_id: str, active: bool) -> bool:
    cursor = conn.execute(
        "UPDATE organizations SET is_active = ?, updated_at = ? WHERE id = ?",
        (1 if active else 0, utc_now_iso(), organization_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def create_account(
    conn: Any,
    organization_id: str,
    name: str,
    slug: str | None = None,
    settings: dict[str, Any] | None = None,
    account_id: str | None = None,
) -> str:
    if not name or not name.strip():
        raise ValidationError("name is required")
    if get_organization(conn, organization_id) is None:
        raise ValidationError("organization_not_found")
    account_id = account_id or new_id("acct")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO accounts
            (id, organization_id, name, slug, is_active, settings_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, 1, ?, ?, ?)
        """,
        (
            account_id,
            organization_id,
            name.strip(),
            slug or slugify(name),
            json_dumps(settings or {}),
            now,
            now,
        ),
    )
    conn.commit()
    return account_id


def get_account(conn: Any, account_id: str) -> Account | None:
    row = conn.execute(
        """
        SELECT id, organization_id, name, slug, is_active, settings_json
        FROM accounts WHERE id = ?
        """,
        (account_id,),
    ).fetchone()
    if not row:
        return None
    return Account(
        id=row[0],
        organization_id=row[1],
        name=row[2],
        slug=row[3],
        is_active=bool(row[4]),
        settings=json_loads(row[5], {}),
    )


def set_account_active(conn: Any, account_id: str, active: bool) -> bool:
    cursor = conn.execute(
        "UPDATE accounts SET is_active = ?, updated_at = ? WHERE id = ?",
        (1 if active else 0, utc_now_iso(), account_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def is_account_active(conn: Any, account_id: str) -> bool:
    row = conn.execute(
        """
        SELECT a.is_active, o.is_active
        FROM accounts a JOIN organizations o ON o.id = a.organization_id
        WHERE a.id = ?
        """,
        (account_id,),
    ).fetchone()
    return bool(row and row[0] and row[1])


def upsert_user(conn: Any, user_id: str, email: str | None = None) -> None:
    now = utc_now_iso()
    conn.execute(
        "INSERT OR IGNORE INTO users (id, email, created_at, last_seen_at) VALUES (?, ?, ?, ?)",
        (user_id, email, now, now),
    )
    if email:
        conn.execute(
            "UPDATE users SET email = ?, last_seen_at = ? WHERE id = ?",
            (email, now, user_id),
        )
    conn.commit()


def assign_account_role(
    conn: Any,
    account_id: str,
    user_id: str,
    role: str,
    assigned_by: str | None = None,
) -> None:
    now = utc_now_iso()
    cursor = conn.execute(
        "UPDATE user_accounts SET role = ?, assigned_by = ? WHERE account_id = ? AND user_id = ?",
        (role, assigned_by, account_id, user_id),
    )
    if cursor.rowcount == 0:
        conn.execute(
            """
            INSERT INTO user_accounts (user_id, account_id, role, assigned_at, assigned_by)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, account_id, role, now, assigned_by),
        )
    conn.commit()


def remove_account_role(conn: Any, account_id: str, user_id: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM user_accounts WHERE account_id = ? AND user_id = ?",
        (account_id, user_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_account_role(conn: Any, account_id: str, user_id: str) -> str | None:
    row = conn.execute(
        "SELECT role FROM user_accounts WHERE account_id = ? AND user_id = ?",
        (account_id, user_id),
    ).fetchone()
    return row[0] if row else None


def touch_account_access(conn: Any, account_id: str, user_id: str) -> None:
    conn.execute(
        "UPDATE user_accounts SET last_access = ? WHERE account_id = ? AND user_id = ?",
        (utc_now_iso(), account_id, user_id),
    )
    conn.commit()


def list_account_users(conn: Any, account_id: str) -> list[dict[str, Any]]:
    cursor = conn.execute(
        """
        SELECT ua.user_id, u.email, ua.role, ua.assigned_at, ua.assigned_by, ua.last_access
        FROM user_accounts ua
        LEFT JOIN users u ON u.id = ua.user_id
        WHERE ua.account_id = ?
        ORDER BY ua.assigned_at, ua.user_id
        """,
        (account_id,),
    )
    rows = []
    for user_id, email, role, assigned_at, assigned_by, last_access in cursor.fetchall():
        rows.append(
            {
                "user_id": user_id,
                "email": email,
                "role": role,
                "assigned_at": assigned_at,
                "assigned_by": assigned_by,
                "last_access": last_access,
            }
        )
    return rows


def assign_organization_role(conn: Any, organization_id: str, user_id: str, role: str) -> None:
    cursor = conn.execute(
        "UPDATE user_organizations SET role = ? WHERE organization_id = ? AND user_id = ?",
        (role, organization_id, user_id),
    )
    if cursor.rowcount == 0:
        conn.execute(
            """
            INSERT INTO user_organizations (user_id, organization_id, role, assigned_at)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, organization_id, role, utc_now_iso()),
        )
    conn.commit()


def get_organization_role(conn: Any, organization_id: str, user_id: str) -> str | None:
    row = conn.execute(
        "SELECT role FROM user_organizations WHERE organization_id = ? AND user_id = ?",
        (organization_id, user_id),
    ).fetchone()
    return row[0] if row else None


def grant_global_role(conn: Any, user_id: str, role: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO global_user_roles (user_id, role, granted_at) VALUES (?, ?, ?)",
        (user_id, role, utc_now_iso()),
    )
    conn.commit()


def list_global_roles(conn: Any, user_id: str) -> list[str]:
    cursor = conn.execute(
        "SELECT role FROM global_user_roles WHERE user_id = ? ORDER BY role",
        (user_id,),
    )
    return [row[0] for row in cursor.fetchall()]


# Account settings


def get_account_setting(conn: Any, account_id: str, setting_type: str) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT settings_json FROM account_settings WHERE account_id = ? AND setting_type = ?",
        (account_id, setting_type),
    ).fetchone()
    if not row:
        return None
    return json_loads(row[0], {})


def get_account_setting_stamp(conn: Any, account_id: str, setting_type: str) -> str | None:
    row = conn.execute(
        "SELECT updated_at FROM account_settings WHERE account_id = ? AND setting_type = ?",
        (account_id, setting_type),
    ).fetchone()
    return row[0] if row else None


def set_account_setting(
    conn: Any,
    account_id: str,
    setting_type: str,
    value: dict[str, Any],
    updated_by: str | None = None,
) -> None:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE account_settings SET settings_json = ?, updated_by = ?, updated_at = ?
        WHERE account_id = ? AND setting_type = ?
        """,
        (json_dumps(value), updated_by, now, account_id, setting_type),
    )
    if cursor.rowcount == 0:
        conn.execute(
            """
            INSERT INTO account_settings
                (account_id, setting_type, settings_json, updated_by, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (account_id, setting_type, json_dumps(value), updated_by, now),
        )
    conn.commit()


# Scraped articles

_ARTICLE_COLUMNS = """
    id, account_id, source_id, title, url, full_text, summary, keywords_json,
    publication_date, relevance_score, status, content_quality_score,
    content_quality_tier, content_generation_eligible, content_issues_json, scraped_at
"""


def insert_scraped_article(
    conn: Any,
    account_id: str,
    source_id: str | None,
    title: str,
    url: str,
    full_text: str | None = None,
    summary: str | None = None,
    publication_date: str | None = None,
    article_id: str | None = None,
) -> str | None:
    """Insert an article unless its url is already known for the source.

    Returns the new id, or ``None`` for a duplicate.
    """
    if not title or not url:
        raise ValidationError("title and url are required")
    if source_id is None:
        existing = conn.execute(
            "SELECT id FROM scraped_articles WHERE account_id = ? AND url = ? AND source_id IS NULL",
            (account_id, url),
        ).fetchone()
    else:
        existing = conn.execute(
            "SELECT id FROM scraped_articles WHERE account_id = ? AND url = ? AND source_id = ?",
            (account_id, url, source_id),
        ).fetchone()
    if existing:
        return None
    article_id = article_id or new_id("art")
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO scraped_articles
            (id, account_id, source_id, title, url, full_text, summary, publication_date,
             status, content_generation_eligible, scraped_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'scraped', 1, ?, ?)
        """,
        (article_id, account_id, source_id, title, url, full_text, summary, publication_date, now, now),
    )
    conn.commit()
    return article_id if cursor.rowcount == 1 else None


def get_scraped_article(conn: Any, account_id: str, article_id: str) -> ScrapedArticle | None:
    row = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM scraped_articles WHERE account_id = ? AND id = ?",
        (account_id, article_id),
    ).fetchone()
    return _row_to_article(row) if row else None


def list_articles_pending_analysis(conn: Any, account_id: str, limit: int) -> list[ScrapedArticle]:
    cursor = conn.execute(
        f"""
        SELECT {_ARTICLE_COLUMNS} FROM scraped_articles
        WHERE account_id = ? AND status = 'scraped'
        ORDER BY scraped_at ASC, id
        LIMIT ?
        """,
        (account_id, int(limit)),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def list_generation_candidates(
    conn: Any, account_id: str, min_relevance: float, limit: int
) -> list[ScrapedArticle]:
    cursor = conn.execute(
        f"""
        SELECT {_ARTICLE_COLUMNS} FROM scraped_articles
        WHERE account_id = ? AND status = 'analyzed'
          AND content_generation_eligible = 1
          AND COALESCE(relevance_score, 0) >= ?
        ORDER BY relevance_score DESC, scraped_at ASC, id
        LIMIT ?
        """,
        (account_id, float(min_relevance), int(limit)),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def update_article_analysis(
    conn: Any,
    account_id: str,
    article_id: str,
    summary: str,
    keywords: list[str],
    relevance_score: float,
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE scraped_articles
        SET summary = ?, keywords_json = ?, relevance_score = ?, status = 'analyzed',
            analyzed_at = ?, updated_at = ?
        WHERE account_id = ? AND id = ? AND status = 'scraped'
        """,
        (summary, json_dumps(keywords), relevance_score, now, now, account_id, article_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def update_article_quality(
    conn: Any, account_id: str, article_id: str, assessment: dict[str, Any]
) -> bool:
    cursor = conn.execute(
        """
        UPDATE scraped_articles
        SET content_quality_score = ?, content_quality_tier = ?,
            content_generation_eligible = ?, content_issues_json = ?, updated_at = ?
        WHERE account_id = ? AND id = ?
        """,
        (
            assessment["score"],
            assessment["tier"],
            1 if assessment["eligible"] else 0,
            json_dumps(sorted(assessment["issues"])),
            utc_now_iso(),
            account_id,
            article_id,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_article_status(conn: Any, account_id: str, article_id: str, status: str) -> bool:
    cursor = conn.execute(
        "UPDATE scraped_articles SET status = ?, updated_at = ? WHERE account_id = ? AND id = ?",
        (status, utc_now_iso(), account_id, article_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def count_articles_since(conn: Any, account_id: str, source_id: str, since_iso: str) -> int:
    row = conn.execute(
        """
        SELECT COUNT(*) FROM scraped_articles
        WHERE account_id = ? AND source_id = ? AND scraped_at >= ?
        """,
        (account_id, source_id, since_iso),
    ).fetchone()
    return int(row[0]) if row else 0


def count_articles_for_source(conn: Any, account_id: str, source_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM scraped_articles WHERE account_id = ? AND source_id = ?",
        (account_id, source_id),
    ).fetchone()
    return int(row[0]) if row else 0


def _row_to_article(row: tuple) -> ScrapedArticle:
    (
        article_id,
        account_id,
        source_id,
        title,
        url,
        full_text,
        summary,
        keywords_json,
        publication_date,
        relevance_score,
        status,
        quality_score,
        quality_tier,
        eligible,
        issues_json,
        scraped_at,
    ) = row
    return ScrapedArticle(
        id=article_id,
        account_id=account_id,
        source_id=source_id,
        title=title,
        url=url,
        full_text=full_text,
        summary=summary,
        keywords=list(json_loads(keywords_json, []) or []),
        publication_date=publication_date,
        relevance_score=float(relevance_score) if relevance_score is not None else None,
        status=status,
        content_quality_score=float(quality_score) if quality_score is not None else None,
        content_quality_tier=quality_tier,
        content_generation_eligible=bool(eligible),
        content_issues=list(json_loads(issues_json, []) or []),
        scraped_at=scraped_at,
    )


# Generated articles

_GEN_ARTICLE_COLUMNS = """
    id, account_id, based_on_scraped_article_id, title, body_draft, body_final,
    meta_description, tags_json, word_count, status, quality_json, created_at, updated_at
"""


def create_generated_article(
    conn: Any,
    account_id: str,
    scraped_article_id: str | None,
    title: str,
    job_id: str | None = None,
    status: str = "draft",
    template_version_ids: list[str] | None = None,
) -> str:
    article_id = new_id("gen")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO generated_articles
            (id, account_id, based_on_scraped_article_id, job_id, title, body_draft,
             word_count, status, template_version_ids_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, '', 0, ?, ?, ?, ?)
        """,
        (
            article_id,
            account_id,
            scraped_article_id,
            job_id,
            title,
            status,
            json_dumps(template_version_ids or []),
            now,
            now,
        ),
    )
    conn.commit()
    return article_id


def get_generated_article(conn: Any, account_id: str, article_id: str) -> GeneratedArticle | None:
    row = conn.execute(
        f"SELECT {_GEN_ARTICLE_COLUMNS} FROM generated_articles WHERE account_id = ? AND id = ?",
        (account_id, article_id),
    ).fetchone()
    return _row_to_generated_article(row) if row else None


def list_generated_articles_for_story(
    conn: Any, account_id: str, scraped_article_id: str, job_id: str | None = None
) -> list[GeneratedArticle]:
    params: list[Any] = [account_id, scraped_article_id]
    clause = ""
    if job_id is not None:
        clause = " AND job_id = ?"
        params.append(job_id)
    cursor = conn.execute(
        f"""
        SELECT {_GEN_ARTICLE_COLUMNS} FROM generated_articles
        WHERE account_id = ? AND based_on_scraped_article_id = ?{clause}
        ORDER BY created_at, id
        """,
        tuple(params),
    )
    return [_row_to_generated_article(row) for row in cursor.fetchall()]


def list_generated_articles(
    conn: Any,
    account_id: str,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[GeneratedArticle], int]:
    params: list[Any] = [account_id]
    status_clause = ""
    if status:
        status_clause = " AND status = ?"
        params.append(status)
    total_row = conn.execute(
        f"SELECT COUNT(*) FROM generated_articles WHERE account_id = ?{status_clause}",
        tuple(params),
    ).fetchone()
    cursor = conn.execute(
        f"""
        SELECT {_GEN_ARTICLE_COLUMNS} FROM generated_articles
        WHERE account_id = ?{status_clause}
        ORDER BY created_at DESC, id
        LIMIT ? OFFSET ?
        """,
        tuple(params + [int(limit), int(offset)]),
    )
    rows = [_row_to_generated_article(row) for row in cursor.fetchall()]
    return rows, int(total_row[0]) if total_row else 0


def update_generated_article_body(
    conn: Any,
    account_id: str,
    article_id: str,
    body: str,
    title: str | None = None,
    meta_description: str | None = None,
    tags: list[str] | None = None,
    payload: dict[str, Any] | None = None,
) -> bool:
    current = get_generated_article(conn, account_id, article_id)
    if current is None:
        return False
    cursor = conn.execute(
        """
        UPDATE generated_articles
        SET body_draft = ?, word_count = ?, title = ?, meta_description = ?, tags_json = ?,
            payload_json = ?, updated_at = ?
        WHERE account_id = ? AND id = ?
        """,
        (
            body,
            count_words(body),
            title or current.title,
            meta_description if meta_description is not None else current.meta_description,
            json_dumps(tags if tags is not None else current.tags),
            json_dumps(payload) if payload is not None else None,
            utc_now_iso(),
            account_id,
            article_id,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_generated_article_quality(
    conn: Any, account_id: str, article_id: str, quality: dict[str, Any]
) -> bool:
    cursor = conn.execute(
        """
        UPDATE generated_articles SET quality_json = ?, updated_at = ?
        WHERE account_id = ? AND id = ?
        """,
        (json_dumps(quality), utc_now_iso(), account_id, article_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_generated_article_status(
    conn: Any, account_id: str, article_id: str, status: str, expected: str | None = None
) -> bool:
    params: list[Any] = [status, utc_now_iso(), account_id, article_id]
    expected_clause = ""
    if expected is not None:
        expected_clause = " AND status = ?"
        params.append(expected)
    cursor = conn.execute(
        f"""
        UPDATE generated_articles SET status = ?, updated_at = ?
        WHERE account_id = ? AND id = ?{expected_clause}
        """,
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def count_generated_articles_since(conn: Any, account_id: str, since_iso: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM generated_articles WHERE account_id = ? AND created_at >= ?",
        (account_id, since_iso),
    ).fetchone()
    return int(row[0]) if row else 0


def _row_to_generated_article(row: tuple) -> GeneratedArticle:
    (
        article_id,
        account_id,
        scraped_id,
        title,
        body_draft,
        body_final,
        meta_description,
        tags_json,
        word_count,
        status,
        quality_json,
        created_at,
        updated_at,
    ) = row
    return GeneratedArticle(
        id=article_id,
        account_id=account_id,
        based_on_scraped_article_id=scraped_id,
        title=title,
        body_draft=body_draft or "",
        body_final=body_final,
        meta_description=meta_description,
        tags=list(json_loads(tags_json, []) or []),
        word_count=int(word_count or 0),
        status=status,
        quality=json_loads(quality_json, None),
        created_at=created_at,
        updated_at=updated_at,
    )


# Unified generated content

_CONTENT_COLUMNS = """
    id, account_id, based_on_gen_article_id, prompt_category, content_data_json,
    metadata_json, status, created_at, updated_at
"""


def insert_generated_content(
    conn: Any,
    account_id: str,
    gen_article_id: str | None,
    prompt_category: str,
    content_data: list[Any],
    metadata: dict[str, Any],
    status: str = "draft",
    content_id: str | None = None,
    created_at: str | None = None,
) -> str:
    content_id = content_id or new_id("content")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO generated_content
            (id, account_id, based_on_gen_article_id, prompt_category, content_data_json,
             metadata_json, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            content_id,
            account_id,
            gen_article_id,
            prompt_category,
            json_dumps(content_data),
            json_dumps(metadata),
            status,
            created_at or now,
            now,
        ),
    )
    conn.commit()
    return content_id


def get_generated_content(conn: Any, account_id: str, content_id: str) -> GeneratedContent | None:
    row = conn.execute(
        f"SELECT {_CONTENT_COLUMNS} FROM generated_content WHERE account_id = ? AND id = ?",
        (account_id, content_id),
    ).fetchone()
    return _row_to_content(row) if row else None


def list_generated_content(
    conn: Any,
    account_id: str,
    gen_article_ids: Iterable[str] | None = None,
    status: str | None = None,
    category: str | None = None,
) -> list[GeneratedContent]:
    params: list[Any] = [account_id]
    clauses = ""
    if gen_article_ids is not None:
        ids = list(gen_article_ids)
        if not ids:
            return []
        clauses += f" AND based_on_gen_article_id IN ({placeholders(len(ids))})"
        params.extend(ids)
    if status:
        clauses += " AND status = ?"
        params.append(status)
    if category:
        clauses += " AND prompt_category = ?"
        params.append(category)
    cursor = conn.execute(
        f"""
        SELECT {_CONTENT_COLUMNS} FROM generated_content
        WHERE account_id = ?{clauses}
        ORDER BY created_at, id
        """,
        tuple(params),
    )
    return [_row_to_content(row) for row in cursor.fetchall()]


def set_generated_content_status(
    conn: Any, account_id: str, content_id: str, status: str, expected: str | None = None
) -> bool:
    params: list[Any] = [status, utc_now_iso(), account_id, content_id]
    expected_clause = ""
    if expected is not None:
        expected_clause = " AND status = ?"
        params.append(expected)
    cursor = conn.execute(
        f"""
        UPDATE generated_content SET status = ?, updated_at = ?
        WHERE account_id = ? AND id = ?{expected_clause}
        """,
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def delete_generated_content(conn: Any, account_id: str, content_id: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM generated_content WHERE account_id = ? AND id = ?",
        (account_id, content_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def _row_to_content(row: tuple) -> GeneratedContent:
    (
        content_id,
        account_id,
        gen_article_id,
        category,
        content_data_json,
        metadata_json,
        status,
        created_at,
        updated_at,
    ) = row
    return GeneratedContent(
        id=content_id,
        account_id=account_id,
        based_on_gen_article_id=gen_article_id,
        prompt_category=category,
        content_data=list(json_loads(content_data_json, []) or []),
        metadata=dict(json_loads(metadata_json, {}) or {}),
        status=status,
        created_at=created_at,
        updated_at=updated_at,
    )


# AI response logs


def insert_ai_response_log(
    conn: Any,
    account_id: str,
    prompt_category: str,
    prompt_text: str,
    response_text: str | None,
    stop_reason: str,
    is_truncated: bool,
    max_output_tokens: int | None = None,
    tokens_used_input: int | None = None,
    tokens_used_output: int | None = None,
    generated_article_id: str | None = None,
    job_id: str | None = None,
    template_id: str | None = None,
    template_version_id: str | None = None,
    parse_error: str | None = None,
) -> str:
    log_id = new_id("ailog")
    conn.execute(
        """
        INSERT INTO ai_response_logs
            (id, account_id, generated_article_id, job_id, template_id, template_version_id,
             prompt_category, prompt_text, response_text, max_output_tokens,
             tokens_used_input, tokens_used_output, stop_reason, is_truncated,
             parse_error, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            log_id,
            account_id,
            generated_article_id,
            job_id,
            template_id,
            template_version_id,
            prompt_category,
            prompt_text,
            response_text,
            max_output_tokens,
            tokens_used_input,
            tokens_used_output,
            stop_reason,
            1 if is_truncated else 0,
            parse_error,
            utc_now_iso(),
        ),
    )
    conn.commit()
    return log_id


def mark_ai_response_parse_error(conn: Any, account_id: str, log_id: str, error: str, is_truncated: bool) -> None:
    conn.execute(
        """
        UPDATE ai_response_logs SET parse_error = ?, is_truncated = ?
        WHERE account_id = ? AND id = ?
        """,
        (error, 1 if is_truncated else 0, account_id, log_id),
    )
    conn.commit()


def list_ai_response_logs(
    conn: Any,
    account_id: str,
    limit: int = 50,
    generated_article_id: str | None = None,
) -> list[dict[str, Any]]:
    params: list[Any] = [account_id]
    clause = ""
    if generated_article_id:
        clause = " AND generated_article_id = ?"
        params.append(generated_article_id)
    params.append(int(limit))
    cursor = conn.execute(
        f"""
        SELECT id, generated_article_id, job_id, template_id, template_version_id,
               prompt_category, prompt_text, response_text, max_output_tokens,
               tokens_used_input, tokens_used_output, stop_reason, is_truncated,
               parse_error, created_at
        FROM ai_response_logs
        WHERE account_id = ?{clause}
        ORDER BY created_at DESC, id
        LIMIT ?
        """,
        tuple(params),
    )
    keys = [
        "id",
        "generated_article_id",
        "job_id",
        "template_id",
        "template_version_id",
        "prompt_category",
        "prompt_text",
        "response_text",
        "max_output_tokens",
        "tokens_used_input",
        "tokens_used_output",
        "stop_reason",
        "is_truncated",
        "parse_error",
        "created_at",
    ]
    rows = []
    for row in cursor.fetchall():
        data = dict(zip(keys, row))
        data["is_truncated"] = bool(data["is_truncated"])
        rows.append(data)
    return rows
