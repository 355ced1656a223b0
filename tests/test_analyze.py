import pytest

from conftest import llm_response

from edenflow.errors import JobCancelled, ParseFailure, TransientUpstream
from edenflow.pipelines.analyze import analyze_articles, parse_analysis
from edenflow.storage import get_scraped_article, insert_scraped_article, list_ai_response_logs

LONG_TEXT = "Communities across the valley gathered to rebuild after the storm. " * 12


def _scraped(conn, account_id, title="Rebuild", full_text=LONG_TEXT):
    return insert_scraped_article(
        conn, account_id, None, title, f"https://news.example.com/{title.lower()}", full_text=full_text
    )


def test_analysis_updates_summary_keywords_and_quality(conn, tenants, gateway):
    article_id = _scraped(conn, tenants.a)
    gateway.responses = ['{"summary": "Valley rebuilds", "keywords": "storm, community", "relevance_score": 0.8}']

    result = analyze_articles(conn, tenants.a, gateway, scorer=lambda title, content, settings: 0.7)

    assert result == {"analyzed": 1, "fallbacks": 0, "article_ids": [article_id]}
    article = get_scraped_article(conn, tenants.a, article_id)
    assert article.status == "analyzed"
    assert article.summary == "Valley rebuilds"
    assert article.keywords == ["storm", "community"]
    assert article.relevance_score == 0.8
    assert article.content_quality_tier == "fair"
    assert article.content_generation_eligible is True
    assert "Respond with JSON only." in gateway.calls[0]["prompt"]


def test_unparseable_analysis_falls_back(conn, tenants, gateway):
    article_id = _scraped(conn, tenants.a)
    gateway.responses = ["I cannot help with that."]

    result = analyze_articles(conn, tenants.a, gateway)

    assert result["fallbacks"] == 1
    article = get_scraped_article(conn, tenants.a, article_id)
    assert article.status == "analyzed"
    assert article.relevance_score == 0.0
    assert article.summary == LONG_TEXT.strip()[:300]
    (log,) = list_ai_response_logs(conn, tenants.a)
    assert log["parse_error"].startswith("invalid_json")


def test_title_only_article_is_marked_ineligible(conn, tenants, gateway):
    article_id = _scraped(conn, tenants.a, title="Storm hits valley", full_text="Storm hits valley")
    gateway.responses = ['{"summary": "Storm", "keywords": [], "relevance_score": 0.9}']

    analyze_articles(conn, tenants.a, gateway)

    article = get_scraped_article(conn, tenants.a, article_id)
    assert article.content_generation_eligible is False
    assert article.content_issues == ["title_only"]


def test_transient_failure_propagates_and_is_logged(conn, tenants, gateway):
    article_id = _scraped(conn, tenants.a)
    gateway.responses = [TransientUpstream("llm_unavailable", stop_reason="error")]

    with pytest.raises(TransientUpstream):
        analyze_articles(conn, tenants.a, gateway)

    assert get_scraped_article(conn, tenants.a, article_id).status == "scraped"
    assert list_ai_response_logs(conn, tenants.a)[0]["stop_reason"] == "error"


def test_checkpoint_stops_analysis(conn, tenants, gateway):
    _scraped(conn, tenants.a)

    def cancelled():
        raise JobCancelled("cancel_requested")

    with pytest.raises(JobCancelled):
        analyze_articles(conn, tenants.a, gateway, checkpoint=cancelled)
    assert gateway.calls == []


def test_parse_analysis_clamps_and_rejects():
    assert parse_analysis('{"summary": "x", "relevance_score": 7}', "stop")["relevance_score"] == 1.0
    with pytest.raises(ParseFailure) as excinfo:
        parse_analysis('{"summary": "x"', "length")
    assert excinfo.value.is_truncated is True
    with pytest.raises(ParseFailure, match="analysis_missing_summary"):
        parse_analysis('{"keywords": []}', "stop")
    with pytest.raises(ParseFailure, match="analysis_invalid_score"):
        parse_analysis('{"summary": "x", "relevance_score": "high"}', "stop")


def test_analysis_only_touches_own_account(conn, tenants, gateway):
    _scraped(conn, tenants.b)
    gateway.responses = [llm_response('{"summary": "x", "relevance_score": 0.5}')]

    assert analyze_articles(conn, tenants.a, gateway)["analyzed"] == 0
    assert gateway.calls == []
