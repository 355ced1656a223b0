from __future__ import annotations

import re
from typing import Any, Callable

QUALITY_TIERS = ("excellent", "good", "fair", "poor")
ISSUE_CODES = ("no_content", "title_only", "below_threshold")

DEFAULT_THRESHOLDS = {
    "min_content_length": 500,
    "good_content_length": 1000,
    "excellent_content_length": 2000,
    "title_only_threshold": 150,
    "min_quality_score": 0.3,
}
DEFAULT_SCORING = {
    "content_length_weight": 0.7,
    "structure_weight": 0.2,
    "uniqueness_weight": 0.1,
}
DEFAULT_GENERATION_RULES = {
    "block_title_only": True,
    "block_no_content": True,
    "warn_short_content": True,
    "require_manual_review_below_score": 0.5,
}

# (tier, minimum score, threshold key for minimum length)
_TIER_RULES = (
    ("excellent", 0.8, "excellent_content_length"),
    ("good", 0.6, "good_content_length"),
    ("fair", 0.3, "min_content_length"),
)

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")

Scorer = Callable[[str, str, dict[str, Any]], float]


def default_scorer(title: str, content: str, settings: dict[str, Any]) -> float:
    thresholds = _section(settings, "thresholds", DEFAULT_THRESHOLDS)
    weights = _section(settings, "scoring", DEFAULT_SCORING)
    score = (
        length_score(len(content), thresholds) * float(weights["content_length_weight"])
        + structure_score(content) * float(weights["structure_weight"])
        + uniqueness_score(title, content) * float(weights["uniqueness_weight"])
    )
    return round(score, 2)


def assess(
    title: str | None,
    content: str | None,
    settings: dict[str, Any] | None = None,
    scorer: Scorer = default_scorer,
) -> dict[str, Any]:
    """Score a piece of content against the account's quality settings.

    ``settings`` is the account's ``content_quality`` setting; missing keys
    fall back to the defaults above. The scorer decides the numeric score
    while tiers and eligibility always use the configured thresholds.
    """
    settings = settings or {}
    thresholds = _section(settings, "thresholds", DEFAULT_THRESHOLDS)
    rules = _section(settings, "generation_rules", DEFAULT_GENERATION_RULES)
    title = (title or "").strip()
    content = (content or "").strip()
    length = len(content)
    issues: list[str] = []

    if length == 0:
        issues.append("no_content")
    elif is_title_only(title, content, int(thresholds["title_only_threshold"])):
        issues.append("title_only")

    if issues:
        return {
            "score": 0.0,
            "tier": "poor",
            "eligible": _eligible(issues, 0.0, length, thresholds, rules),
            "issues": issues,
            "length": length,
        }

    score = float(scorer(title, content, settings))
    tier = quality_tier(score, length, thresholds)
    if length < int(thresholds["min_content_length"]) or score < float(
        thresholds["min_quality_score"]
    ):
        issues.append("below_threshold")
    return {
        "score": score,
        "tier": tier,
        "eligible": _eligible(issues, score, length, thresholds, rules),
        "issues": issues,
        "length": length,
    }


def quality_tier(score: float, length: int, thresholds: dict[str, Any]) -> str:
    for tier, min_score, length_key in _TIER_RULES:
        if score >= min_score and length >= int(thresholds[length_key]):
            return tier
    return "poor"


def needs_manual_review(assessment: dict[str, Any], settings: dict[str, Any] | None = None) -> bool:
    rules = _section(settings or {}, "generation_rules", DEFAULT_GENERATION_RULES)
    return float(assessment.get("score") or 0.0) < float(
        rules["require_manual_review_below_score"]
    )


def length_score(length: int, thresholds: dict[str, Any]) -> float:
    minimum = int(thresholds["min_content_length"])
    excellent = int(thresholds["excellent_content_length"])
    if length <= 0:
        return 0.0
    if length < minimum:
        return 0.1
    if length >= excellent:
        return 1.0
    return 0.3 + ((length - minimum) / (excellent - minimum)) * 0.7


def structure_score(content: str) -> float:
    if not content:
        return 0.0
    score = 0.3
    paragraphs = [item for item in _PARAGRAPH_SPLIT.split(content) if len(item.strip()) > 50]
    if len(paragraphs) >= 2:
        score += 0.2
    if len(paragraphs) >= 4:
        score += 0.2
    sentences = [item for item in _SENTENCE_SPLIT.split(content) if len(item.strip()) > 10]
    if len(sentences) >= 3:
        score += 0.1
    if len(sentences) >= 6:
        score += 0.1
    if "-" in content or "•" in content or '"' in content:
        score += 0.1
    return min(score, 1.0)


def uniqueness_score(title: str, content: str) -> float:
    if not content:
        return 0.0
    score = 0.5
    title_words = title.lower().split()
    content_words = content.lower().split()
    if title_words and content_words:
        content_set = set(content_words)
        repeated = [word for word in title_words if len(word) > 3 and word in content_set]
        ratio = len(repeated) / len(title_words)
        if ratio > 0.8:
            score -= 0.3
        elif ratio > 0.5:
            score -= 0.1
    if content_words:
        diversity = len({word for word in content_words if len(word) > 3}) / len(content_words)
        if diversity > 0.5:
            score += 0.2
        if diversity > 0.7:
            score += 0.3
    return max(min(score, 1.0), 0.0)


def is_title_only(title: str, content: str, threshold: int) -> bool:
    if len(content) > threshold:
        return False
    return string_similarity(title, content) > 0.8


def string_similarity(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    longer, shorter = (left, right) if len(left) > len(right) else (right, left)
    return (len(longer) - levenshtein(longer, shorter)) / len(longer)


def levenshtein(left: str, right: str) -> int:
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            if left_char == right_char:
                current.append(previous[j - 1])
            else:
                current.append(min(previous[j - 1], previous[j], current[j - 1]) + 1)
        previous = current
    return previous[-1]


def _eligible(
    issues: list[str],
    score: float,
    length: int,
    thresholds: dict[str, Any],
    rules: dict[str, Any],
) -> bool:
    if "title_only" in issues and rules.get("block_title_only", True):
        return False
    if "no_content" in issues and rules.get("block_no_content", True):
        return False
    if score < float(thresholds["min_quality_score"]):
        return False
    return length >= int(thresholds["min_content_length"])


def _section(settings: dict[str, Any], key: str, defaults: dict[str, Any]) -> dict[str, Any]:
    merged = dict(defaults)
    value = settings.get(key)
    if isinstance(value, dict):
        merged.update(value)
    return merged
