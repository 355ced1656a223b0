from __future__ import annotations

from typing import Any

from ..errors import NotFound, ValidationError
from ..models import Source
from ..storage import count_articles_for_source, count_articles_since
from ..utils import new_id, normalize_url, utc_now_iso, utc_now_iso_offset

_SOURCE_COLUMNS = """
    id, account_id, name, url, rss_url, is_active, last_checked, last_error,
    success_rate, articles_last_24h, total_articles
"""


def create_source(conn: Any, account_id: str, payload: dict[str, Any]) -> Source:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")
    url = str(payload.get("url") or "").strip()
    if not url:
        raise ValidationError("url is required")
    if not url.startswith(("http://", "https://")):
        raise ValidationError("url must be http(s)")
    rss_url = str(payload.get("rss_url") or payload.get("rssUrl") or "").strip() or None
    if rss_url and not rss_url.startswith(("http://", "https://")):
        raise ValidationError("rss_url must be http(s)")
    url = normalize_url(url, strip_tracking_params=False)
    duplicate = conn.execute(
        "SELECT id FROM sources WHERE account_id = ? AND url = ?",
        (account_id, url),
    ).fetchone()
    if duplicate:
        raise ValidationError("source already exists")

    source_id = new_id("src")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, account_id, name, url, rss_url, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source_id,
            account_id,
            name,
            url,
            rss_url,
            0 if payload.get("is_active", payload.get("isActive", True)) is False else 1,
            now,
            now,
        ),
    )
    conn.commit()
    return require_source(conn, account_id, source_id)


def get_source(conn: Any, account_id: str, source_id: str) -> Source | None:
    row = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE account_id = ? AND id = ?",
        (account_id, source_id),
    ).fetchone()
    return _row_to_source(row) if row else None


def require_source(conn: Any, account_id: str, source_id: str) -> Source:
    source = get_source(conn, account_id, source_id)
    if source is None:
        raise NotFound("source_not_found")
    return source


def list_sources(conn: Any, account_id: str, active_only: bool = False) -> list[Source]:
    clause = " AND is_active = 1" if active_only else ""
    cursor = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE account_id = ?{clause} ORDER BY name, id",
        (account_id,),
    )
    return [_row_to_source(row) for row in cursor.fetchall()]


def list_sources_status(conn: Any, account_id: str) -> list[dict[str, Any]]:
    since = utc_now_iso_offset(seconds=-86400)
    rows = []
    for source in list_sources(conn, account_id):
        data = source_to_dict(source)
        data["articlesLast24h"] = count_articles_since(conn, account_id, source.id, since)
        data["totalArticles"] = count_articles_for_source(conn, account_id, source.id)
        rows.append(data)
    return rows


def set_source_active(conn: Any, account_id: str, source_id: str, active: bool) -> Source:
    cursor = conn.execute(
        "UPDATE sources SET is_active = ?, updated_at = ? WHERE account_id = ? AND id = ?",
        (1 if active else 0, utc_now_iso(), account_id, source_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        raise NotFound("source_not_found")
    return require_source(conn, account_id, source_id)


def record_refresh(
    conn: Any, account_id: str, source_id: str, error: str | None = None
) -> Source:
    """Update refresh counters and article totals after one refresh attempt."""
    now = utc_now_iso()
    since = utc_now_iso_offset(seconds=-86400)
    row = conn.execute(
        "SELECT refresh_count, success_count FROM sources WHERE account_id = ? AND id = ?",
        (account_id, source_id),
    ).fetchone()
    if not row:
        raise NotFound("source_not_found")
    refresh_count = int(row[0] or 0) + 1
    success_count = int(row[1] or 0) + (0 if error else 1)
    conn.execute(
        """
        UPDATE sources
        SET refresh_count = ?, success_count = ?, success_rate = ?, last_checked = ?,
            last_error = ?, articles_last_24h = ?, total_articles = ?, updated_at = ?
        WHERE account_id = ? AND id = ?
        """,
        (
            refresh_count,
            success_count,
            round(success_count / refresh_count, 4),
            now,
            error[:500] if error else None,
            count_articles_since(conn, account_id, source_id, since),
            count_articles_for_source(conn, account_id, source_id),
            now,
            account_id,
            source_id,
        ),
    )
    conn.commit()
    return require_source(conn, account_id, source_id)


def source_to_dict(source: Source) -> dict[str, Any]:
    return {
        "id": source.id,
        "name": source.name,
        "url": source.url,
        "rssUrl": source.rss_url,
        "isActive": source.is_active,
        "lastChecked": source.last_checked,
        "lastError": source.last_error,
        "successRate": source.success_rate,
        "articlesLast24h": source.articles_last_24h,
        "totalArticles": source.total_articles,
    }


def _row_to_source(row: tuple) -> Source:
    (
        source_id,
        account_id,
        name,
        url,
        rss_url,
        is_active,
        last_checked,
        last_error,
        success_rate,
        articles_last_24h,
        total_articles,
    ) = row
    return Source(
        id=source_id,
        account_id=account_id,
        name=name,
        url=url,
        rss_url=rss_url,
        is_active=bool(is_active),
        last_checked=last_checked,
        last_error=last_error,
        success_rate=float(success_rate or 0.0),
        articles_last_24h=int(articles_last_24h or 0),
        total_articles=int(total_articles or 0),
    )
