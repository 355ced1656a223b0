import pytest

from conftest import llm_response

from edenflow.dualwrite import DualWriter
from edenflow.errors import JobCancelled, NotFound
from edenflow.prompts.chain import ChainRunner, dry_run_template_version
from edenflow.prompts.repository import create_template, create_version, load_chain
from edenflow.storage import (
    get_account,
    get_generated_article,
    get_scraped_article,
    insert_scraped_article,
    list_ai_response_logs,
    list_generated_content,
)


class FakeImages:
    def __init__(self, hits=True):
        self.hits = hits
        self.queries = []

    def find_image(self, query):
        self.queries.append(query)
        if not self.hits:
            return None
        return {"source_url": f"https://photos.example.com/{query}.jpg", "meta": {"alt": f"Photo of {query}"}}

    def publish(self, source_url, alt_text):
        return {"cdn_url": source_url.replace("photos", "cdn"), "alt_text": alt_text}


def _story(conn, account_id):
    story_id = insert_scraped_article(
        conn,
        account_id,
        None,
        "Hope",
        "https://news.example.com/hope",
        full_text="Hope is rising across the region.",
    )
    return get_scraped_article(conn, account_id, story_id)


def test_runner_passes_system_message_and_token_limit(conn, tenants, gateway):
    create_template(
        conn,
        tenants.a,
        "Blog",
        "blog_post",
        "Write about {{article.title}}",
        system_message="You write for {{account.name}}",
        parameters={"max_tokens": 321},
    )
    create_template(conn, tenants.a, "Summary", "summary", "Summarize {{prior.blog_post.text}}")
    runner = ChainRunner(gateway, DualWriter())
    gateway.responses = ["Body text", "Short"]

    outcome = runner.run(conn, get_account(conn, tenants.a), _story(conn, tenants.a), load_chain(conn, tenants.a))

    assert gateway.calls[0]["system_message"] == "You write for Account A"
    assert gateway.calls[0]["max_output_tokens"] == 321
    assert gateway.calls[1]["max_output_tokens"] == 2000
    assert gateway.calls[1]["prompt"] == "Summarize Body text"
    assert len(outcome.content_refs) == 2
    logs = list_ai_response_logs(conn, tenants.a)
    assert {log["prompt_category"] for log in logs} == {"blog_post", "summary"}


def test_runner_records_quality_on_generated_article(conn, tenants, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    runner = ChainRunner(gateway, DualWriter(), scorer=lambda title, content, settings: 0.9)
    gateway.responses = ["word " * 300]

    outcome = runner.run(conn, get_account(conn, tenants.a), _story(conn, tenants.a), load_chain(conn, tenants.a))

    article = get_generated_article(conn, tenants.a, outcome.generated_article_id)
    assert article.quality["tier"] == "good"
    assert article.quality["needs_manual_review"] is False
    assert outcome.quality["eligible"] is True


def test_image_templates_attach_cdn_urls(conn, tenants, gateway):
    create_template(conn, tenants.a, "Images", "images", "Image ideas for {{article.title}}", media_type="image", parsing_method="json")
    images = FakeImages()
    runner = ChainRunner(gateway, DualWriter(), images=images)
    gateway.responses = ['[{"query": "sunrise"}]']

    outcome = runner.run(conn, get_account(conn, tenants.a), _story(conn, tenants.a), load_chain(conn, tenants.a))

    (content,) = list_generated_content(conn, tenants.a, [outcome.generated_article_id])
    assert content.content_data == [
        {
            "query": "sunrise",
            "source_url": "https://photos.example.com/sunrise.jpg",
            "cdn_url": "https://cdn.example.com/sunrise.jpg",
            "alt_text": "Photo of sunrise",
        }
    ]


def test_image_search_without_hits_keeps_query(conn, tenants, gateway):
    create_template(conn, tenants.a, "Images", "images", "Image ideas", media_type="image", parsing_method="json")
    runner = ChainRunner(gateway, DualWriter(), images=FakeImages(hits=False))
    gateway.responses = ['{"query": "storm"}']

    outcome = runner.run(conn, get_account(conn, tenants.a), _story(conn, tenants.a), load_chain(conn, tenants.a))

    (content,) = list_generated_content(conn, tenants.a, [outcome.generated_article_id])
    assert content.content_data[0]["cdn_url"] is None
    assert content.content_data[0]["alt_text"] == "storm"


def test_checkpoint_abort_before_first_write(conn, tenants, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    calls = []

    def checkpoint():
        calls.append(len(calls))
        if len(gateway.calls) == 1:
            raise JobCancelled("cancel_requested")

    runner = ChainRunner(gateway, DualWriter())
    refs = []

    with pytest.raises(JobCancelled):
        runner.run(
            conn,
            get_account(conn, tenants.a),
            _story(conn, tenants.a),
            load_chain(conn, tenants.a),
            checkpoint=checkpoint,
            refs=refs,
        )

    assert refs == []
    assert list_generated_content(conn, tenants.a) == []
    assert len(calls) == 4


def test_dry_run_renders_with_test_variables(conn, tenants, gateway):
    template = create_template(conn, tenants.a, "Social", "social_media", "Tease {{article.title}}", parsing_method="social_media")
    version = create_version(conn, tenants.a, template.id, "Tease {{article.title}} for {{audience}}")
    gateway.responses = [llm_response('{"facebook": "Hello"}')]

    result = dry_run_template_version(
        conn, tenants.a, template.id, version.id, gateway, {"article.title": "Hope", "audience": "youth"}
    )

    assert result["prompt"] == "Tease Hope for youth"
    assert result["parsed"] == [{"platform": "facebook", "text": "Hello", "hashtags": []}]
    assert result["parse_error"] is None
    assert list_ai_response_logs(conn, tenants.a) == []


def test_dry_run_reports_parse_error(conn, tenants, gateway):
    template = create_template(conn, tenants.a, "Facts", "fact_sheet", "Facts", parsing_method="json")
    gateway.responses = ["nope"]

    result = dry_run_template_version(conn, tenants.a, template.id, template.current_version_id, gateway)

    assert result["parsed"] is None
    assert result["parse_error"].startswith("invalid_json")


def test_dry_run_is_scoped_to_account(conn, tenants, gateway):
    template = create_template(conn, tenants.a, "Blog", "blog_post", "Write")
    with pytest.raises(NotFound):
        dry_run_template_version(conn, tenants.b, template.id, template.current_version_id, gateway)
