import pytest

from edenflow.dualwrite import DualWriter
from edenflow.errors import NotFound, ValidationError
from edenflow.legacy import get_legacy_status
from edenflow.services.content_service import (
    archive_prior_articles,
    can_transition,
    content_stats,
    list_for_review,
    update_status,
)
from edenflow.storage import (
    create_generated_article,
    get_generated_article,
    get_generated_content,
    insert_scraped_article,
    set_generated_article_status,
)


@pytest.fixture
def writer():
    return DualWriter(enabled=True)


@pytest.fixture
def article_id(conn, tenants):
    return create_generated_article(conn, tenants.a, None, "Hope Rising")


def test_transition_table():
    assert can_transition("draft", "approved")
    assert can_transition("approved", "published")
    assert not can_transition("published", "draft")
    assert not can_transition("archived", "review_pending")


def test_article_status_mirrors_onto_unified_blog_post(conn, tenants, writer, article_id):
    result = writer.write(conn, tenants.a, article_id, "blog_post", [{"text": "Body"}])

    update_status(conn, tenants.a, "article", article_id, "approved")

    assert get_generated_article(conn, tenants.a, article_id).status == "approved"
    assert get_generated_content(conn, tenants.a, result.content_id).status == "approved"


def test_unified_status_mirrors_onto_every_legacy_row(conn, tenants, writer, article_id):
    posts = [
        {"platform": "facebook", "text": "One", "hashtags": []},
        {"platform": "twitter", "text": "Two", "hashtags": []},
    ]
    result = writer.write(conn, tenants.a, article_id, "social_media", posts)

    changed = update_status(conn, tenants.a, "content", result.content_id, "review_pending")

    assert changed["previous_status"] == "draft"
    for legacy_id in result.legacy_ids:
        assert get_legacy_status(conn, tenants.a, "social_media", legacy_id) == "review_pending"


def test_legacy_status_mirrors_only_single_row_artifacts(conn, tenants, writer, article_id):
    single = writer.write(conn, tenants.a, article_id, "prayer_points", [{"order": 1, "text": "Peace", "theme": "peace"}])
    multi = writer.write(
        conn,
        tenants.a,
        article_id,
        "social_media",
        [
            {"platform": "facebook", "text": "One", "hashtags": []},
            {"platform": "twitter", "text": "Two", "hashtags": []},
        ],
    )

    update_status(conn, tenants.a, "prayer", single.legacy_ids[0], "approved")
    update_status(conn, tenants.a, "social", multi.legacy_ids[0], "approved")

    assert get_generated_content(conn, tenants.a, single.content_id).status == "approved"
    assert get_generated_content(conn, tenants.a, multi.content_id).status == "draft"


def test_terminal_statuses_cannot_move(conn, tenants, article_id):
    update_status(conn, tenants.a, "article", article_id, "approved")
    update_status(conn, tenants.a, "article", article_id, "published")

    with pytest.raises(ValidationError, match="invalid status transition"):
        update_status(conn, tenants.a, "article", article_id, "draft")


def test_status_updates_validate_input_and_scope(conn, tenants, article_id):
    with pytest.raises(ValidationError, match="invalid content type"):
        update_status(conn, tenants.a, "podcast", article_id, "approved")
    with pytest.raises(ValidationError, match="invalid status"):
        update_status(conn, tenants.a, "article", article_id, "shipped")
    with pytest.raises(NotFound):
        update_status(conn, tenants.b, "article", article_id, "approved")


def test_archive_prior_articles_skips_terminal_ones(conn, tenants, writer):
    story_id = insert_scraped_article(conn, tenants.a, None, "Hope", "https://news.example.com/hope")
    published = create_generated_article(conn, tenants.a, story_id, "Hope v1")
    set_generated_article_status(conn, tenants.a, published, "published")
    draft = create_generated_article(conn, tenants.a, story_id, "Hope v2")
    result = writer.write(conn, tenants.a, draft, "fact_sheet", [{"facts": []}])

    archived = archive_prior_articles(conn, tenants.a, story_id)

    assert archived == [draft]
    assert get_generated_article(conn, tenants.a, published).status == "published"
    assert get_generated_article(conn, tenants.a, draft).status == "archived"
    assert get_generated_content(conn, tenants.a, result.content_id).status == "archived"


def test_review_listing_embeds_content(conn, tenants, writer, article_id):
    writer.write(conn, tenants.a, article_id, "social_media", [{"platform": "facebook", "text": "One", "hashtags": []}])

    listing = list_for_review(conn, tenants.a, writer, status="draft")

    assert listing["total_count"] == 1
    item = listing["items"][0]
    assert item["id"] == article_id
    assert [content["promptCategory"] for content in item["content"]] == ["social_media"]
    assert list_for_review(conn, tenants.b, writer)["items"] == []


def test_content_stats(conn, tenants, writer, article_id):
    writer.write(conn, tenants.a, article_id, "social_media", [{"platform": "facebook", "text": "One", "hashtags": []}])

    stats = content_stats(conn, tenants.a)

    assert stats["articles"]["draft"] == 1
    assert stats["article_total"] == 1
    assert stats["content_by_category"] == {"social_media": {"draft": 1}}
    assert stats["content_total"] == 1
