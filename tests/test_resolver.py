import pytest

from edenflow.errors import TemplateVariableUnresolved
from edenflow.models import Account, ScrapedArticle
from edenflow.prompts.resolver import (
    build_context,
    extract_variables,
    invalid_variable_names,
    render,
)


def _article():
    return ScrapedArticle(
        id="art_1",
        account_id="acct_1",
        source_id="src_1",
        title="Hope Rising",
        url="https://news.example.com/hope",
        full_text=None,
        summary="Communities gather.",
        keywords=["hope", "community"],
        publication_date="2026-10-01",
        relevance_score=0.82,
        status="analyzed",
        content_quality_score=None,
        content_quality_tier=None,
        content_generation_eligible=True,
        content_issues=[],
        scraped_at="2026-10-01T00:00:00+00:00",
    )


def _account():
    return Account(
        id="acct_1",
        organization_id="org_1",
        name="Account A",
        slug="account-a",
        is_active=True,
        settings={"tone": "warm"},
    )


def test_context_exposes_article_account_and_prior():
    context = build_context(
        _article(),
        _account(),
        blog_id="blog_1",
        prior={"blog_post": {"text": "Draft"}},
        source_name="Daily News",
    )

    assert context["article"]["content"] == "Communities gather."
    assert context["article"]["source"] == "Daily News"
    assert context["account"]["settings"] == {"tone": "warm"}
    assert context["blog"] == {"id": "blog_1"}
    assert context["prior"]["blog_post"]["text"] == "Draft"


def test_extra_values_assign_dotted_paths():
    context = build_context(extra={"custom.audience": "youth", "topic": "rain"})
    assert context["custom"] == {"audience": "youth"}
    assert context["topic"] == "rain"


def test_render_substitutes_nested_paths_and_lists():
    context = build_context(_article(), _account())

    text = render("{{ article.title }} / {{account.settings.tone}} / {{article.keywords.1}}", context)

    assert text == "Hope Rising / warm / community"


def test_render_serializes_non_string_values():
    context = {"prior": {"social_media": {"items": [{"platform": "x"}]}}}
    assert render("{{prior.social_media.items}}", context) == '[\n  {\n    "platform": "x"\n  }\n]'


def test_render_lists_every_missing_path():
    context = build_context(_article())

    with pytest.raises(TemplateVariableUnresolved) as excinfo:
        render("{{article.title}} {{account.name}} {{prior.blog_post.text}} {{account.name}}", context)

    assert excinfo.value.missing == ["account.name", "prior.blog_post.text"]


def test_none_values_count_as_missing_unless_optional():
    context = {"article": {"relevance_score": None}}
    with pytest.raises(TemplateVariableUnresolved):
        render("{{article.relevance_score}}", context)
    assert render("score={{article.relevance_score}}", context, optional=["article.relevance_score"]) == "score="


def test_extract_and_validate_variable_names():
    text = "{{article.title}} {{ prior.blog_post.text }} {{article.title}} {{bad..name}} {{9lives}}"

    assert extract_variables(text, None) == [
        "article.title",
        "prior.blog_post.text",
        "bad..name",
        "9lives",
    ]
    assert invalid_variable_names(text) == ["bad..name", "9lives"]
