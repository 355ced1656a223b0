from __future__ import annotations

import logging
from typing import Any

from ..dualwrite import DualWriter, get_migration_record, list_migration_records_for_content
from ..errors import Conflict, NotFound, ValidationError
from ..legacy import get_legacy_status, set_legacy_status
from ..models import CONTENT_STATUSES, GeneratedArticle
from ..storage import (
    get_generated_article,
    get_generated_content,
    list_generated_articles,
    list_generated_articles_for_story,
    list_generated_content,
    set_generated_article_status,
    set_generated_content_status,
)
from ..utils import log_event

# Review type in URLs -> legacy category; "article" and "content" are the two main tables.
CONTENT_TYPES = {
    "article": "blog_post",
    "content": None,
    "social": "social_media",
    "video": "video_script",
    "prayer": "prayer_points",
}

STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "draft": ("review_pending", "approved", "rejected", "archived"),
    "review_pending": ("approved", "rejected", "archived", "draft"),
    "approved": ("published", "rejected", "review_pending", "archived"),
    "rejected": ("review_pending", "archived"),
    "published": (),
    "archived": (),
}

logger = logging.getLogger("edenflow.content")


def can_transition(current: str, new: str) -> bool:
    return new in STATUS_TRANSITIONS.get(current, ())


def check_transition(current: str, new: str) -> None:
    if new not in CONTENT_STATUSES:
        raise ValidationError(f"invalid status {new}")
    if not can_transition(current, new):
        raise ValidationError(f"invalid status transition {current} -> {new}")


def update_status(
    conn: Any, account_id: str, content_type: str, item_id: str, status: str
) -> dict[str, Any]:
    """Move one review item to ``status`` and mirror it onto linked rows.

    The update is a compare-and-set on the current status; losing the race
    to another writer raises ``Conflict``.
    """
    if content_type not in CONTENT_TYPES:
        raise ValidationError(f"invalid content type {content_type}")
    with conn.transaction():
        if content_type == "article":
            article = get_generated_article(conn, account_id, item_id)
            if article is None:
                raise NotFound("article_not_found")
            previous = article.status
            check_transition(previous, status)
            if not set_generated_article_status(conn, account_id, item_id, status, expected=previous):
                raise Conflict("status_changed")
            _mirror_legacy_to_unified(conn, account_id, "blog_post", item_id, status)
        elif content_type == "content":
            content = get_generated_content(conn, account_id, item_id)
            if content is None:
                raise NotFound("content_not_found")
            previous = content.status
            check_transition(previous, status)
            if not set_generated_content_status(conn, account_id, item_id, status, expected=previous):
                raise Conflict("status_changed")
            _mirror_unified_to_legacy(conn, account_id, item_id, status)
        else:
            category = CONTENT_TYPES[content_type]
            current = get_legacy_status(conn, account_id, category, item_id)
            if current is None:
                raise NotFound("content_not_found")
            previous = current
            check_transition(previous, status)
            set_legacy_status(conn, account_id, category, item_id, status)
            _mirror_legacy_to_unified(conn, account_id, category, item_id, status)
    log_event(
        logger,
        logging.INFO,
        "content_status_changed",
        account_id=account_id,
        content_type=content_type,
        id=item_id,
        previous=previous,
        status=status,
    )
    return {"id": item_id, "type": content_type, "status": status, "previous_status": previous}


def list_for_review(
    conn: Any,
    account_id: str,
    writer: DualWriter,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> dict[str, Any]:
    if status and status not in CONTENT_STATUSES:
        raise ValidationError(f"invalid status {status}")
    limit = max(1, min(int(limit), 200))
    articles, total = list_generated_articles(conn, account_id, status=status, limit=limit, offset=max(0, int(offset)))
    items = []
    for article in articles:
        data = article_to_dict(article)
        data["content"] = [
            _view_to_dict(view)
            for view in writer.list_content_for_article(conn, account_id, article.id)
        ]
        items.append(data)
    return {"items": items, "total_count": total, "limit": limit, "offset": offset}


def archive_prior_articles(
    conn: Any, account_id: str, scraped_article_id: str, job_id: str | None = None
) -> list[str]:
    """Archive every non-terminal generated article of a story before regenerating it.

    With ``job_id`` only the articles left behind by earlier attempts of that
    job are archived.
    """
    archived = []
    with conn.transaction():
        for article in list_generated_articles_for_story(conn, account_id, scraped_article_id, job_id):
            if article.status in ("published", "archived"):
                continue
            if not set_generated_article_status(
                conn, account_id, article.id, "archived", expected=article.status
            ):
                raise Conflict("status_changed")
            for content in list_generated_content(conn, account_id, [article.id]):
                if content.status not in ("published", "archived"):
                    set_generated_content_status(conn, account_id, content.id, "archived")
            archived.append(article.id)
    if archived:
        log_event(
            logger,
            logging.INFO,
            "articles_archived",
            account_id=account_id,
            story_id=scraped_article_id,
            job_id=job_id,
            count=len(archived),
        )
    return archived


def content_stats(conn: Any, account_id: str) -> dict[str, Any]:
    articles = {status: 0 for status in CONTENT_STATUSES}
    cursor = conn.execute(
        "SELECT status, COUNT(*) FROM generated_articles WHERE account_id = ? GROUP BY status",
        (account_id,),
    )
    for status, count in cursor.fetchall():
        articles[status] = int(count)
    categories: dict[str, dict[str, int]] = {}
    cursor = conn.execute(
        """
        SELECT prompt_category, status, COUNT(*) FROM generated_content
        WHERE account_id = ?
        GROUP BY prompt_category, status
        """,
        (account_id,),
    )
    for category, status, count in cursor.fetchall():
        categories.setdefault(category, {})[status] = int(count)
    return {
        "articles": articles,
        "article_total": sum(articles.values()),
        "content_by_category": categories,
        "content_total": sum(sum(entry.values()) for entry in categories.values()),
    }


def article_to_dict(article: GeneratedArticle) -> dict[str, Any]:
    return {
        "id": article.id,
        "basedOnScrapedArticleId": article.based_on_scraped_article_id,
        "title": article.title,
        "bodyDraft": article.body_draft,
        "bodyFinal": article.body_final,
        "metaDescription": article.meta_description,
        "tags": article.tags,
        "wordCount": article.word_count,
        "status": article.status,
        "quality": article.quality,
        "createdAt": article.created_at,
        "updatedAt": article.updated_at,
    }


def _view_to_dict(view: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": view["id"],
        "promptCategory": view["category"],
        "contentData": view["content_data"],
        "metadata": view["metadata"],
        "status": view["status"],
        "createdAt": view["created_at"],
        "view": view["view"],
    }


def _mirror_unified_to_legacy(conn: Any, account_id: str, content_id: str, status: str) -> None:
    for record in list_migration_records_for_content(conn, account_id, content_id):
        if record.content_type == "blog_post":
            article = get_generated_article(conn, account_id, record.legacy_id)
            if article is not None and can_transition(article.status, status):
                set_generated_article_status(conn, account_id, article.id, status)
            continue
        current = get_legacy_status(conn, account_id, record.content_type, record.legacy_id)
        if current is not None and can_transition(current, status):
            set_legacy_status(conn, account_id, record.content_type, record.legacy_id, status)


def _mirror_legacy_to_unified(
    conn: Any, account_id: str, category: str, legacy_id: str, status: str
) -> None:
    record = get_migration_record(conn, account_id, category, legacy_id)
    if record is None:
        return
    # Only a unified row that mirrors this legacy row alone follows its status.
    if len(list_migration_records_for_content(conn, account_id, record.modern_content_id)) != 1:
        return
    content = get_generated_content(conn, account_id, record.modern_content_id)
    if content is not None and can_transition(content.status, status):
        set_generated_content_status(conn, account_id, content.id, status)
