import pytest

from edenflow.errors import ParseFailure
from edenflow.prompts.parsers import parse_output, prayer_theme, strip_code_fences


def test_generic_wraps_trimmed_text():
    assert parse_output("generic", "  A short post.\n") == [{"text": "A short post."}]


def test_empty_response_is_a_parse_failure():
    with pytest.raises(ParseFailure, match="empty_response"):
        parse_output("generic", "   ")


def test_unknown_method_is_rejected():
    with pytest.raises(ParseFailure, match="unknown_parsing_method"):
        parse_output("freeform", "text")


def test_structured_collects_declared_sections():
    text = "## Title\nHope Rising\n\n## Body\nCommunities gather.\nMore lines.\n"

    items = parse_output("structured", text, parameters={"sections": ["Title", "Body"]})

    assert items == [{"title": "Hope Rising", "body": "Communities gather.\nMore lines."}]


def test_structured_reports_missing_sections():
    with pytest.raises(ParseFailure, match="missing_sections: Summary"):
        parse_output("structured", "## Title\nHope\n", parameters={"sections": ["Title", "Summary"]})


def test_structured_without_headings_fails():
    with pytest.raises(ParseFailure, match="no_sections_found"):
        parse_output("structured", "just prose with no headings")


def test_json_accepts_fenced_object_and_array():
    assert parse_output("json", '```json\n{"facts": [1, 2]}\n```') == [{"facts": [1, 2]}]
    assert parse_output("json", '[{"a": 1}, 2]') == [{"a": 1}, {"value": 2}]


def test_truncated_json_is_flagged():
    with pytest.raises(ParseFailure) as excinfo:
        parse_output("json", '{"facts": ["one", "tw', stop_reason="length")
    assert excinfo.value.is_truncated is True


def test_invalid_json_is_not_truncated():
    with pytest.raises(ParseFailure) as excinfo:
        parse_output("json", "{not json}")
    assert excinfo.value.is_truncated is False
    assert "invalid_json" in excinfo.value.message


def test_social_media_from_platform_mapping():
    text = '{"twitter": "Short #hope", "facebook": {"text": "Long", "hashtags": "#hope #faith"}}'

    posts = parse_output("social_media", text)

    assert posts == [
        {"platform": "facebook", "text": "Long", "hashtags": ["#hope", "#faith"]},
        {"platform": "twitter", "text": "Short #hope", "hashtags": []},
    ]


def test_social_media_from_posts_array():
    text = '{"posts": [{"platform": "LinkedIn", "content": "Update", "hashtags": ["#news"]}]}'
    assert parse_output("social_media", text) == [
        {"platform": "linkedin", "text": "Update", "hashtags": ["#news"]}
    ]


def test_social_media_post_without_text_fails_validation():
    with pytest.raises(ParseFailure, match="item 0 invalid"):
        parse_output("social_media", '{"facebook": {"hashtags": []}}')


def test_video_script_classifies_duration():
    text = (
        '{"scripts": ['
        '{"title": "Clip", "script": "Open on the crowd.", "duration": 45},'
        '{"script": "Long walk.", "durationSeconds": 180, "visualSuggestions": "drone shot"}'
        "]}"
    )

    scripts = parse_output("video_script", text)

    assert [item["type"] for item in scripts] == ["short-form", "long-form"]
    assert scripts[0]["duration_seconds"] == 45
    assert scripts[1]["title"] == "Video Script"
    assert scripts[1]["visual_suggestions"] == ["drone shot"]


def test_video_script_defaults_duration_from_parameters():
    scripts = parse_output("video_script", '{"script": "Hello"}', parameters={"duration_seconds": 90})
    assert scripts[0]["duration_seconds"] == 90
    assert scripts[0]["type"] == "long-form"


def test_prayer_points_from_numbered_list():
    items = parse_output("prayer_points", "1. Pray for healing of the sick\n2. Pray for wisdom\n3. Give thanks")

    assert [item["order"] for item in items] == [1, 2, 3]
    assert [item["theme"] for item in items] == ["healing", "guidance", "general"]
    assert items[0]["text"] == "Pray for healing of the sick"


def test_prayer_points_from_json_keep_given_theme():
    items = parse_output("prayer_points", '{"prayer_points": [{"prayer_text": "Stand firm", "theme": "courage"}]}')
    assert items == [{"order": 1, "text": "Stand firm", "theme": "courage"}]


def test_prayer_theme_falls_back_to_general():
    assert prayer_theme("Lord, keep them safe") == "protection"
    assert prayer_theme("Amen") == "general"


def test_strip_code_fences_leaves_plain_text():
    assert strip_code_fences("plain") == "plain"
    assert strip_code_fences("```\n[1]\n```") == "[1]"
