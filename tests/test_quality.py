from edenflow.quality import (
    assess,
    default_scorer,
    levenshtein,
    needs_manual_review,
    quality_tier,
    string_similarity,
)
from edenflow.quality import DEFAULT_THRESHOLDS


def _fixed(score):
    return lambda title, content, settings: score


def test_no_content_is_blocked():
    result = assess("Hope Rising", "   ")

    assert result == {"score": 0.0, "tier": "poor", "eligible": False, "issues": ["no_content"], "length": 0}


def test_title_only_content_is_blocked():
    result = assess("Hope rising in the valley", "Hope rising in the valley.")

    assert result["issues"] == ["title_only"]
    assert result["eligible"] is False
    assert result["tier"] == "poor"


def test_title_only_can_be_allowed_but_still_short():
    settings = {"generation_rules": {"block_title_only": False}}
    result = assess("Hope rising", "Hope rising!", settings)
    assert result["issues"] == ["title_only"]
    assert result["eligible"] is False


def test_tiers_follow_score_and_length():
    body = "word " * 500

    assert assess("Title", body * 1, scorer=_fixed(0.9))["tier"] == "excellent"
    assert assess("Title", body[:1200], scorer=_fixed(0.9))["tier"] == "good"
    assert assess("Title", body[:600], scorer=_fixed(0.5))["tier"] == "fair"
    assert assess("Title", body[:600], scorer=_fixed(0.2))["tier"] == "poor"


def test_short_content_is_below_threshold():
    result = assess("Title", "x" * 300, scorer=_fixed(0.9))

    assert result["issues"] == ["below_threshold"]
    assert result["eligible"] is False
    assert result["tier"] == "poor"


def test_low_score_is_below_threshold():
    result = assess("Title", "x" * 800, scorer=_fixed(0.1))
    assert result["issues"] == ["below_threshold"]
    assert result["eligible"] is False


def test_account_thresholds_override_defaults():
    settings = {"thresholds": {"min_content_length": 100}}

    result = assess("Title", "x" * 300, settings, scorer=_fixed(0.4))

    assert result["eligible"] is True
    assert result["issues"] == []
    assert result["tier"] == "fair"


def test_manual_review_below_configured_score():
    assert needs_manual_review({"score": 0.45}) is True
    assert needs_manual_review({"score": 0.7}) is False
    assert needs_manual_review({"score": 0.45}, {"generation_rules": {"require_manual_review_below_score": 0.4}}) is False


def test_quality_tier_boundaries():
    assert quality_tier(0.8, 2000, DEFAULT_THRESHOLDS) == "excellent"
    assert quality_tier(0.79, 2000, DEFAULT_THRESHOLDS) == "good"
    assert quality_tier(0.3, 500, DEFAULT_THRESHOLDS) == "fair"
    assert quality_tier(0.3, 499, DEFAULT_THRESHOLDS) == "poor"


def test_default_scorer_rewards_longer_structured_text():
    paragraph = (
        "Families across the valley gathered on Sunday to rebuild the community hall. "
        "Volunteers arrived early with tools, food and music for everyone present. "
        "Local leaders said the effort showed what neighbours can achieve together.\n\n"
    )
    short = default_scorer("Hall", paragraph, {})
    long = default_scorer("Hall", paragraph * 10, {})

    assert 0.0 < short < long <= 1.0


def test_string_distance_helpers():
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert string_similarity("", "abc") == 0.0
    assert string_similarity("abcd", "abcd") == 1.0
