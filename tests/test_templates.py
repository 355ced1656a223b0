import pytest

from edenflow.errors import NotFound, ValidationError
from edenflow.prompts.repository import (
    TemplateCache,
    activate_template,
    check_template_ids,
    create_template,
    create_version,
    deactivate_template,
    import_templates,
    list_templates,
    list_versions,
    load_chain,
    reorder_templates,
    set_current_version,
    update_template,
    usage_stats,
)

YAML_LIST = """
templates:
  - name: Blog Post
    category: blog_post
    prompt: "Write about {{article.title}}"
  - name: Prayers
    category: prayer_points
    parsing_method: prayer_points
    prompt: "Pray about {{prior.blog_post.text}}"
    parameters:
      max_output_tokens: 400
"""

YAML_SINGLE = """
metadata:
  name: Social Teaser
  category: social_media
  parsing_method: social_media
prompts:
  system: "You write for {{account.name}}"
  user: "Tease {{article.title}} {{article.summary}}"
template_variables:
  - name: article.title
    required: true
  - name: article.summary
    required: false
"""


def _orders(conn, account_id):
    return [(item.name, item.execution_order) for item in list_templates(conn, account_id)]


def test_create_appends_to_chain_with_initial_version(conn, tenants):
    first = create_template(conn, tenants.a, "Blog", "blog_post", "Write {{article.title}}")
    second = create_template(conn, tenants.a, "Social", "social_media", "Tease", parsing_method="social_media")

    assert (first.execution_order, second.execution_order) == (1, 2)
    versions = list_versions(conn, tenants.a, first.id)
    assert [version.version_number for version in versions] == [1]
    assert versions[0].id == first.current_version_id
    assert versions[0].notes == "Initial version"


def test_create_rejects_bad_choices_and_variable_names(conn, tenants):
    with pytest.raises(ValidationError, match="parsing_method"):
        create_template(conn, tenants.a, "Blog", "blog_post", "Write", parsing_method="xml")
    with pytest.raises(ValidationError, match="invalid variable names"):
        create_template(conn, tenants.a, "Blog", "blog_post", "Write {{article..title}}")
    with pytest.raises(ValidationError, match="prompt_content"):
        create_template(conn, tenants.a, "Blog", "blog_post", "   ")
    assert list_templates(conn, tenants.a) == []


def test_new_version_is_not_current_until_selected(conn, tenants):
    template = create_template(conn, tenants.a, "Blog", "blog_post", "v1 {{article.title}}")

    version = create_version(conn, tenants.a, template.id, "v2 {{article.title}}", notes="tighter")

    assert version.version_number == 2
    assert load_chain(conn, tenants.a)[0].version.prompt_content == "v1 {{article.title}}"

    set_current_version(conn, tenants.a, template.id, version.id)

    assert load_chain(conn, tenants.a)[0].version.id == version.id


def test_set_current_version_requires_matching_template(conn, tenants):
    one = create_template(conn, tenants.a, "Blog", "blog_post", "one")
    two = create_template(conn, tenants.a, "Other", "summary", "two")
    with pytest.raises(NotFound, match="version_not_found"):
        set_current_version(conn, tenants.a, one.id, two.current_version_id)


def test_templates_are_invisible_across_accounts(conn, tenants):
    template = create_template(conn, tenants.a, "Blog", "blog_post", "one")
    with pytest.raises(NotFound):
        list_versions(conn, tenants.b, template.id)
    with pytest.raises(ValidationError):
        check_template_ids(conn, tenants.b, [template.id])
    check_template_ids(conn, tenants.a, [template.id])


def test_reorder_requires_exact_permutation(conn, tenants):
    blog = create_template(conn, tenants.a, "Blog", "blog_post", "one")
    social = create_template(conn, tenants.a, "Social", "social_media", "two")
    prayer = create_template(conn, tenants.a, "Prayer", "prayer_points", "three")

    with pytest.raises(ValidationError, match="permutation"):
        reorder_templates(conn, tenants.a, [blog.id, social.id])
    with pytest.raises(ValidationError, match="permutation"):
        reorder_templates(conn, tenants.a, [blog.id, social.id, social.id])

    reorder_templates(conn, tenants.a, [prayer.id, blog.id, social.id])

    assert _orders(conn, tenants.a) == [("Prayer", 1), ("Blog", 2), ("Social", 3)]


def test_deactivate_closes_gap_and_activate_appends(conn, tenants):
    blog = create_template(conn, tenants.a, "Blog", "blog_post", "one")
    create_template(conn, tenants.a, "Social", "social_media", "two")
    create_template(conn, tenants.a, "Prayer", "prayer_points", "three")

    deactivate_template(conn, tenants.a, blog.id)

    assert _orders(conn, tenants.a) == [("Social", 1), ("Prayer", 2)]
    assert [step.template.name for step in load_chain(conn, tenants.a)] == ["Social", "Prayer"]

    restored = activate_template(conn, tenants.a, blog.id)

    assert restored.is_active is True
    assert restored.execution_order == 3


def test_update_template_changes_metadata(conn, tenants):
    template = create_template(conn, tenants.a, "Blog", "blog_post", "one")

    updated = update_template(conn, tenants.a, template.id, {"name": "Long Blog", "on_parse_error": "skip"})

    assert updated.name == "Long Blog"
    assert updated.on_parse_error == "skip"
    with pytest.raises(ValidationError, match="unknown fields"):
        update_template(conn, tenants.a, template.id, {"execution_order": 9})


def test_load_chain_narrows_to_requested_ids(conn, tenants):
    blog = create_template(conn, tenants.a, "Blog", "blog_post", "one")
    social = create_template(conn, tenants.a, "Social", "social_media", "two")

    chain = load_chain(conn, tenants.a, [social.id, blog.id])

    assert [step.template.id for step in chain] == [blog.id, social.id]
    with pytest.raises(ValidationError, match="unknown templates"):
        load_chain(conn, tenants.a, ["tpl_missing"])


def test_cache_is_invalidated_by_writes(conn, tenants):
    cache = TemplateCache()
    blog = create_template(conn, tenants.a, "Blog", "blog_post", "one", cache=cache)
    assert len(load_chain(conn, tenants.a, cache=cache)) == 1
    assert cache.get(tenants.a) is not None

    create_template(conn, tenants.a, "Social", "social_media", "two", cache=cache)
    assert cache.get(tenants.a) is None
    assert len(load_chain(conn, tenants.a, cache=cache)) == 2

    deactivate_template(conn, tenants.a, blog.id, cache=cache)
    assert [step.template.name for step in load_chain(conn, tenants.a, cache=cache)] == ["Social"]


def test_import_template_list(conn, tenants):
    created = import_templates(conn, tenants.a, YAML_LIST, created_by=tenants.admin)

    assert [item.name for item in created] == ["Blog Post", "Prayers"]
    chain = load_chain(conn, tenants.a)
    assert chain[1].template.parsing_method == "prayer_points"
    assert chain[1].version.parameters == {"max_output_tokens": 400}
    assert chain[1].version.created_by == tenants.admin


def test_import_single_sectioned_template(conn, tenants):
    (template,) = import_templates(conn, tenants.a, YAML_SINGLE)

    step = load_chain(conn, tenants.a)[0]
    assert template.category == "social_media"
    assert step.version.system_message == "You write for {{account.name}}"
    assert step.version.parameters == {"optional_variables": ["article.summary"]}


def test_import_is_all_or_nothing(conn, tenants):
    document = """
templates:
  - name: Good
    category: blog_post
    prompt: "fine"
  - name: Bad
    category: blog_post
    parsing_method: csv
    prompt: "broken"
"""
    with pytest.raises(ValidationError):
        import_templates(conn, tenants.a, document)
    assert list_templates(conn, tenants.a) == []


def test_import_rejects_malformed_yaml(conn, tenants):
    with pytest.raises(ValidationError, match="invalid_yaml"):
        import_templates(conn, tenants.a, "templates: [unclosed")
    with pytest.raises(ValidationError):
        import_templates(conn, tenants.a, "- just\n- a list\n")


def test_usage_stats_without_logs(conn, tenants):
    template = create_template(conn, tenants.a, "Blog", "blog_post", "one")

    stats = usage_stats(conn, tenants.a, template.id)

    assert stats == [
        {
            "version_id": template.current_version_id,
            "version_number": 1,
            "version_created": stats[0]["version_created"],
            "total_uses": 0,
            "successful_uses": 0,
            "truncated_uses": 0,
            "avg_tokens_used": None,
        }
    ]
