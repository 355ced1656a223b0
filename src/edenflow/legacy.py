from __future__ import annotations

import re
from typing import Any

from .storage import get_generated_article, update_generated_article_body
from .utils import json_dumps, json_loads, new_id, utc_now_iso

# Category -> legacy table. The blog_post legacy row is the generated article itself.
LEGACY_TABLES = {
    "blog_post": "generated_articles",
    "social_media": "social_posts",
    "video_script": "video_scripts",
    "prayer_points": "prayer_points",
}
MIGRATABLE_CATEGORIES = ("social_media", "video_script", "prayer_points")

_HASHTAG_RE = re.compile(r"#\w+")


def has_legacy_table(category: str) -> bool:
    return category in LEGACY_TABLES


def extract_hashtags(text: str | None) -> list[str]:
    return _HASHTAG_RE.findall(text or "")


def write_legacy_rows(
    conn: Any,
    account_id: str,
    generated_article_id: str | None,
    category: str,
    items: list[dict[str, Any]],
) -> list[str]:
    if category == "blog_post":
        return _write_blog_post(conn, account_id, generated_article_id, items)
    writer = _WRITERS.get(category)
    if writer is None:
        return []
    now = utc_now_iso()
    return [
        writer(conn, account_id, generated_article_id, index, item, now)
        for index, item in enumerate(items, start=1)
    ]


def list_legacy_rows(
    conn: Any,
    account_id: str | None,
    category: str,
    generated_article_id: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """Legacy rows of one category with their canonical item, oldest first.

    ``account_id=None`` spans every account and is only used by the offline
    migrator.
    """
    table = LEGACY_TABLES[category]
    columns = _READ_COLUMNS[category]
    clauses = []
    params: list[Any] = []
    if account_id is not None:
        clauses.append("account_id = ?")
        params.append(account_id)
    if generated_article_id is not None:
        article_column = "id" if category == "blog_post" else "based_on_gen_article_id"
        clauses.append(f"{article_column} = ?")
        params.append(generated_article_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    paging = ""
    if limit is not None:
        paging = " LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
    cursor = conn.execute(
        f"SELECT {columns} FROM {table} {where} ORDER BY created_at ASC, id ASC{paging}",
        tuple(params),
    )
    return [_READERS[category](row) for row in cursor.fetchall()]


def count_legacy_rows(conn: Any, account_id: str | None, category: str) -> int:
    table = LEGACY_TABLES[category]
    if account_id is None:
        row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    else:
        row = conn.execute(
            f"SELECT COUNT(*) FROM {table} WHERE account_id = ?", (account_id,)
        ).fetchone()
    return int(row[0]) if row else 0


def set_legacy_status(
    conn: Any, account_id: str, category: str, legacy_id: str, status: str
) -> bool:
    table = LEGACY_TABLES[category]
    cursor = conn.execute(
        f"UPDATE {table} SET status = ?, updated_at = ? WHERE account_id = ? AND id = ?",
        (status, utc_now_iso(), account_id, legacy_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_legacy_status(conn: Any, account_id: str, category: str, legacy_id: str) -> str | None:
    table = LEGACY_TABLES[category]
    row = conn.execute(
        f"SELECT status FROM {table} WHERE account_id = ? AND id = ?",
        (account_id, legacy_id),
    ).fetchone()
    return row[0] if row else None


def blog_body(item: dict[str, Any]) -> str:
    for key in ("body", "body_draft", "content", "text"):
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return json_dumps(item)


def social_text_draft(item: dict[str, Any]) -> str:
    text = str(item.get("text") or "")
    hashtags = [str(tag) for tag in item.get("hashtags") or []]
    if not hashtags:
        return text
    return text + "\n\n" + " ".join(hashtags)


def _write_blog_post(
    conn: Any,
    account_id: str,
    generated_article_id: str | None,
    items: list[dict[str, Any]],
) -> list[str]:
    if not generated_article_id or not items:
        return []
    item = items[0]
    tags = item.get("tags")
    update_generated_article_body(
        conn,
        account_id,
        generated_article_id,
        blog_body(item),
        title=item.get("title") if isinstance(item.get("title"), str) else None,
        meta_description=item.get("meta_description"),
        tags=[str(tag) for tag in tags] if isinstance(tags, list) else None,
        payload=item,
    )
    return [generated_article_id]


def _write_social_post(
    conn: Any,
    account_id: str,
    generated_article_id: str | None,
    order: int,
    item: dict[str, Any],
    now: str,
) -> str:
    legacy_id = new_id("social")
    platform = str(item.get("platform") or "general")
    conn.execute(
        """
        INSERT INTO social_posts
            (id, account_id, based_on_gen_article_id, platform, text_draft, hashtags_json,
             emotional_hook_present_ai_check, order_number, status, payload_json,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?)
        """,
        (
            legacy_id,
            account_id,
            generated_article_id,
            platform,
            social_text_draft(item),
            json_dumps(list(item.get("hashtags") or [])),
            0 if platform == "linkedin" else 1,
            order,
            json_dumps(item),
            now,
            now,
        ),
    )
    return legacy_id


def _write_video_script(
    conn: Any,
    account_id: str,
    generated_article_id: str | None,
    order: int,
    item: dict[str, Any],
    now: str,
) -> str:
    legacy_id = new_id("video")
    duration = int(item.get("duration_seconds") or 60)
    conn.execute(
        """
        INSERT INTO video_scripts
            (id, account_id, based_on_gen_article_id, title, script_draft, duration_seconds,
             video_type, visual_suggestions_json, order_number, status, payload_json,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?)
        """,
        (
            legacy_id,
            account_id,
            generated_article_id,
            str(item.get("title") or "Video Script"),
            str(item.get("script") or item.get("text") or ""),
            duration,
            item.get("type") or ("short-form" if duration <= 60 else "long-form"),
            json_dumps(list(item.get("visual_suggestions") or [])),
            order,
            json_dumps(item),
            now,
            now,
        ),
    )
    return legacy_id


def _write_prayer_point(
    conn: Any,
    account_id: str,
    generated_article_id: str | None,
    order: int,
    item: dict[str, Any],
    now: str,
) -> str:
    legacy_id = new_id("prayer")
    conn.execute(
        """
        INSERT INTO prayer_points
            (id, account_id, based_on_gen_article_id, order_number, prayer_text, theme,
             status, payload_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?)
        """,
        (
            legacy_id,
            account_id,
            generated_article_id,
            int(item.get("order") or order),
            str(item.get("text") or ""),
            item.get("theme"),
            json_dumps(item),
            now,
            now,
        ),
    )
    return legacy_id


def _read_blog_post(row: tuple) -> dict[str, Any]:
    (legacy_id, account_id, title, body_draft, status, payload_json, created_at) = row
    item = json_loads(payload_json, None)
    if not isinstance(item, dict):
        item = {"text": body_draft or "", "title": title}
    return _legacy_row(legacy_id, account_id, legacy_id, item, status, created_at, bool(payload_json))


def _read_social_post(row: tuple) -> dict[str, Any]:
    (
        legacy_id,
        account_id,
        article_id,
        platform,
        text_draft,
        hashtags_json,
        status,
        payload_json,
        created_at,
    ) = row
    item = json_loads(payload_json, None)
    if not isinstance(item, dict):
        hashtags = json_loads(hashtags_json, None) or extract_hashtags(text_draft)
        item = {"platform": platform, "text": text_draft or "", "hashtags": list(hashtags)}
    return _legacy_row(legacy_id, account_id, article_id, item, status, created_at, bool(payload_json))


def _read_video_script(row: tuple) -> dict[str, Any]:
    (
        legacy_id,
        account_id,
        article_id,
        title,
        script_draft,
        duration,
        video_type,
        suggestions_json,
        status,
        payload_json,
        created_at,
    ) = row
    item = json_loads(payload_json, None)
    if not isinstance(item, dict):
        duration = int(duration or 60)
        item = {
            "title": title,
            "script": script_draft or "",
            "duration_seconds": duration,
            "type": video_type or ("short-form" if duration <= 60 else "long-form"),
            "visual_suggestions": list(json_loads(suggestions_json, []) or []),
        }
    return _legacy_row(legacy_id, account_id, article_id, item, status, created_at, bool(payload_json))


def _read_prayer_point(row: tuple) -> dict[str, Any]:
    (
        legacy_id,
        account_id,
        article_id,
        order_number,
        prayer_text,
        theme,
        status,
        payload_json,
        created_at,
    ) = row
    item = json_loads(payload_json, None)
    if not isinstance(item, dict):
        item = {"order": int(order_number or 1), "text": prayer_text or "", "theme": theme}
    return _legacy_row(legacy_id, account_id, article_id, item, status, created_at, bool(payload_json))


def _legacy_row(
    legacy_id: str,
    account_id: str,
    article_id: str | None,
    item: dict[str, Any],
    status: str,
    created_at: str,
    has_payload: bool,
) -> dict[str, Any]:
    return {
        "id": legacy_id,
        "account_id": account_id,
        "generated_article_id": article_id,
        "item": item,
        "status": status,
        "created_at": created_at,
        "has_payload": has_payload,
    }


def load_blog_item(conn: Any, account_id: str, article_id: str) -> dict[str, Any] | None:
    article = get_generated_article(conn, account_id, article_id)
    if article is None:
        return None
    row = conn.execute(
        "SELECT payload_json FROM generated_articles WHERE account_id = ? AND id = ?",
        (account_id, article_id),
    ).fetchone()
    item = json_loads(row[0] if row else None, None)
    if isinstance(item, dict):
        return item
    return {"text": article.body_draft, "title": article.title}


_WRITERS = {
    "social_media": _write_social_post,
    "video_script": _write_video_script,
    "prayer_points": _write_prayer_point,
}

_READ_COLUMNS = {
    "blog_post": "id, account_id, title, body_draft, status, payload_json, created_at",
    "social_media": (
        "id, account_id, based_on_gen_article_id, platform, text_draft, hashtags_json, "
        "status, payload_json, created_at"
    ),
    "video_script": (
        "id, account_id, based_on_gen_article_id, title, script_draft, duration_seconds, "
        "video_type, visual_suggestions_json, status, payload_json, created_at"
    ),
    "prayer_points": (
        "id, account_id, based_on_gen_article_id, order_number, prayer_text, theme, "
        "status, payload_json, created_at"
    ),
}

_READERS = {
    "blog_post": _read_blog_post,
    "social_media": _read_social_post,
    "video_script": _read_video_script,
    "prayer_points": _read_prayer_point,
}
