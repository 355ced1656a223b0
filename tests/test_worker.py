import dataclasses
import threading
import time

from conftest import llm_response

from edenflow.config import WorkerConfig
from edenflow.dualwrite import get_migration_record
from edenflow.errors import TransientUpstream
from edenflow.jobs import cancel_job, enqueue_job, get_job
from edenflow.legacy import list_legacy_rows
from edenflow.prompts.repository import TemplateCache, create_template, create_version, set_current_version
from edenflow.services.settings_service import update_settings
from edenflow.storage import (
    get_generated_article,
    get_scraped_article,
    insert_scraped_article,
    list_ai_response_logs,
    list_generated_articles_for_story,
    list_generated_content,
    set_account_active,
)
from edenflow.worker import WorkerContext, _parse_only_types, build_parser, run_once, start_background_worker


def _story(conn, account_id, title="Hope"):
    return insert_scraped_article(
        conn,
        account_id,
        None,
        title,
        f"https://news.example.com/{title.lower()}",
        full_text=f"{title} is rising across the region as communities gather.",
    )


def _generate(conn, account_id, story_id, **extra):
    payload = {"specificStoryId": story_id}
    payload.update(extra)
    return enqueue_job(conn, account_id, "content_generation", payload)


def test_simple_generation(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    story_id = _story(conn, tenants.a)
    job_id = _generate(conn, tenants.a, story_id)
    gateway.responses = ["About Hope"]

    assert run_once(worker_context, "worker-1") == 0

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "completed"
    assert gateway.calls[0]["prompt"] == "Write about Hope"
    generated_id = job.result["generated_article_ids"][0]
    article = get_generated_article(conn, tenants.a, generated_id)
    assert article.body_draft == "About Hope"
    assert article.status == "draft"
    assert article.based_on_scraped_article_id == story_id
    contents = list_generated_content(conn, tenants.a, [generated_id])
    assert len(contents) == 1
    assert contents[0].prompt_category == "blog_post"
    assert contents[0].content_data == [{"text": "About Hope"}]
    assert job.result_refs == [contents[0].id]
    assert get_scraped_article(conn, tenants.a, story_id).status == "processed"


def test_ordered_chain_feeds_prior_outputs(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    create_template(
        conn,
        tenants.a,
        "Teaser",
        "social_media",
        "Tease: {{prior.blog_post.text}}",
        parsing_method="social_media",
    )
    story_id = _story(conn, tenants.a)
    job_id = _generate(conn, tenants.a, story_id)
    gateway.responses = [
        "About Hope",
        '[{"platform": "facebook", "text": "Tease: About Hope", "hashtags": []}]',
    ]

    run_once(worker_context, "worker-1")

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "completed"
    assert [call["prompt"] for call in gateway.calls] == ["Write about Hope", "Tease: About Hope"]
    generated_id = job.result["generated_article_ids"][0]
    contents = {row.prompt_category: row for row in list_generated_content(conn, tenants.a, [generated_id])}
    assert set(contents) == {"blog_post", "social_media"}
    social = contents["social_media"]
    assert social.content_data == [{"platform": "facebook", "text": "Tease: About Hope", "hashtags": []}]

    legacy = list_legacy_rows(conn, tenants.a, "social_media", generated_id)
    assert len(legacy) == len(social.content_data)
    assert [row["item"] for row in legacy] == social.content_data
    assert social.metadata["legacy_ids"] == [row["id"] for row in legacy]
    record = get_migration_record(conn, tenants.a, "social_media", legacy[0]["id"])
    assert record.modern_content_id == social.id


def test_partial_failure_keeps_earlier_artifacts(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    create_template(
        conn,
        tenants.a,
        "Prayer",
        "prayer_points",
        "Prayers for {{article.title}}",
        parsing_method="prayer_points",
    )
    create_template(
        conn,
        tenants.a,
        "Facts",
        "fact_sheet",
        "Facts about {{article.title}} as JSON",
        parsing_method="json",
    )
    story_id = _story(conn, tenants.a)
    job_id = _generate(conn, tenants.a, story_id)
    gateway.responses = [
        "About Hope",
        "1. Pray for peace\n2. Pray for healing",
        llm_response('{"facts": ["one", "tw', stop_reason="length"),
    ]

    assert run_once(worker_context, "worker-1") == 1

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "failed"
    assert job.last_error["kind"] == "ParseFailure"
    assert job.attempts == job.max_attempts
    contents = list_generated_content(conn, tenants.a)
    assert {row.prompt_category for row in contents} == {"blog_post", "prayer_points"}
    assert sorted(job.result_refs) == sorted(row.id for row in contents)
    prayers = next(row for row in contents if row.prompt_category == "prayer_points")
    assert [item["theme"] for item in prayers.content_data] == ["peace", "healing"]

    truncated = [log for log in list_ai_response_logs(conn, tenants.a) if log["prompt_category"] == "fact_sheet"]
    assert len(truncated) == 1
    assert truncated[0]["is_truncated"] is True
    assert truncated[0]["parse_error"] == "response_truncated"


def test_skip_policy_continues_chain(conn, tenants, worker_context, gateway):
    create_template(
        conn,
        tenants.a,
        "Facts",
        "fact_sheet",
        "Facts about {{article.title}}",
        parsing_method="json",
        on_parse_error="skip",
    )
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    story_id = _story(conn, tenants.a)
    job_id = _generate(conn, tenants.a, story_id)
    gateway.responses = ["not json at all", "About Hope"]

    run_once(worker_context, "worker-1")

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "completed"
    assert job.result["skipped_templates"][0]["category"] == "fact_sheet"
    assert [row.prompt_category for row in list_generated_content(conn, tenants.a)] == ["blog_post"]


def test_cancellation_stops_at_next_checkpoint(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    create_template(
        conn,
        tenants.a,
        "Teaser",
        "social_media",
        "Tease: {{prior.blog_post.text}}",
        parsing_method="social_media",
    )
    story_id = _story(conn, tenants.a)
    job_id = _generate(conn, tenants.a, story_id)

    def cancel_mid_chain(prompt):
        cancel_job(conn, tenants.a, job_id)
        return '{"facebook": "Tease"}'

    gateway.responses = ["About Hope", cancel_mid_chain]

    assert run_once(worker_context, "worker-1") == 0

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "cancelled"
    contents = list_generated_content(conn, tenants.a)
    assert [row.prompt_category for row in contents] == ["blog_post"]
    assert job.result_refs == [contents[0].id]
    assert list_legacy_rows(conn, tenants.a, "social_media") == []


def test_foreign_template_id_fails_without_running(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    foreign = create_template(conn, tenants.b, "Blog", "blog_post", "Write about {{article.title}}")
    story_id = _story(conn, tenants.a)
    job_id = _generate(conn, tenants.a, story_id, templateIds=[foreign.id])

    run_once(worker_context, "worker-1")

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "failed"
    assert job.last_error["kind"] == "ValidationError"
    assert gateway.calls == []
    assert list_generated_content(conn, tenants.a) == []


def test_unresolved_variable_is_deterministic_failure(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write for {{account.settings.audience}}")
    story_id = _story(conn, tenants.a)
    job_id = _generate(conn, tenants.a, story_id)

    run_once(worker_context, "worker-1")

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "failed"
    assert job.last_error["kind"] == "TemplateVariableUnresolved"
    assert gateway.calls == []


def test_transient_error_requeues_with_backoff(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    story_id = _story(conn, tenants.a)
    job_id = _generate(conn, tenants.a, story_id)
    gateway.responses = [TransientUpstream("llm_timeout", stop_reason="timeout")]

    run_once(worker_context, "worker-1")

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "queued"
    assert job.attempts == 1
    assert job.not_before is not None
    assert job.last_error == {"kind": "TransientUpstream", "message": "llm_timeout"}
    logs = list_ai_response_logs(conn, tenants.a)
    assert logs[0]["stop_reason"] == "timeout"
    assert logs[0]["is_truncated"] is False

    # Backoff keeps the job out of reach until not_before passes.
    assert run_once(worker_context, "worker-1") == 0
    assert get_job(conn, tenants.a, job_id).attempts == 1


def test_retry_archives_what_the_failed_attempt_left(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    create_template(conn, tenants.a, "Summary", "summary", "Summarise {{prior.blog_post.text}}")
    story_id = _story(conn, tenants.a)
    job_id = _generate(conn, tenants.a, story_id)
    gateway.responses = ["About Hope", TransientUpstream("llm_timeout", stop_reason="timeout")]

    run_once(worker_context, "worker-1")
    assert get_job(conn, tenants.a, job_id).status == "queued"
    conn.execute("UPDATE jobs SET not_before = NULL WHERE id = ?", (job_id,))
    conn.commit()
    gateway.responses = ["About Hope again", "Hope, briefly"]

    run_once(worker_context, "worker-1")

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "completed"
    articles = list_generated_articles_for_story(conn, tenants.a, story_id)
    assert [article.status for article in articles] == ["archived", "draft"]
    assert articles[1].id == job.result["generated_article_ids"][0]
    drafts = [row for row in list_generated_content(conn, tenants.a) if row.status == "draft"]
    assert sorted(row.prompt_category for row in drafts) == ["blog_post", "summary"]
    assert all(row.based_on_gen_article_id == articles[1].id for row in drafts)


def test_repeated_category_rewrites_the_blog_post(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    create_template(conn, tenants.a, "Blog v2", "blog_post", "Improve: {{prior.blog_post.text}}")
    job_id = _generate(conn, tenants.a, _story(conn, tenants.a))
    gateway.responses = ["About Hope", "Better Hope"]

    assert run_once(worker_context, "worker-1") == 0

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "completed"
    assert gateway.calls[1]["prompt"] == "Improve: About Hope"
    generated_id = job.result["generated_article_ids"][0]
    assert get_generated_article(conn, tenants.a, generated_id).body_draft == "Better Hope"
    contents = list_generated_content(conn, tenants.a, [generated_id])
    assert [row.content_data for row in contents] == [[{"text": "About Hope"}], [{"text": "Better Hope"}]]
    record = get_migration_record(conn, tenants.a, "blog_post", generated_id)
    assert record.modern_content_id == contents[1].id


def test_version_switch_mid_job_keeps_the_pinned_body(conn, tenants, worker_context, gateway):
    blog = create_template(conn, tenants.a, "Blog", "blog_post", "V1 blog {{article.title}}")
    teaser = create_template(conn, tenants.a, "Teaser", "summary", "V1 teaser {{article.title}}")
    job_id = _generate(conn, tenants.a, _story(conn, tenants.a))

    def switch_version(prompt):
        version = create_version(conn, tenants.a, teaser.id, "V2 teaser {{article.title}}")
        set_current_version(conn, tenants.a, teaser.id, version.id)
        return "About Hope"

    gateway.responses = [switch_version, "Hope, briefly"]

    run_once(worker_context, "worker-1")

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "completed"
    assert [call["prompt"] for call in gateway.calls] == ["V1 blog Hope", "V1 teaser Hope"]
    assert job.result["template_version_ids"] == [blog.current_version_id, teaser.current_version_id]

    _generate(conn, tenants.a, _story(conn, tenants.a, "Joy"))
    run_once(worker_context, "worker-1")
    assert gateway.calls[-1]["prompt"] == "V2 teaser Joy"


def test_worker_picks_up_template_changes_from_another_process(conn, tenants, worker_context, gateway):
    blog = create_template(conn, tenants.a, "Blog", "blog_post", "V1 {{article.title}}")
    _generate(conn, tenants.a, _story(conn, tenants.a, "Hope"))
    run_once(worker_context, "worker-1")

    elsewhere = TemplateCache()
    version = create_version(conn, tenants.a, blog.id, "V2 {{article.title}}", cache=elsewhere)
    set_current_version(conn, tenants.a, blog.id, version.id, cache=elsewhere)
    _generate(conn, tenants.a, _story(conn, tenants.a, "Joy"))
    run_once(worker_context, "worker-1")

    assert [call["prompt"] for call in gateway.calls] == ["V1 Hope", "V2 Joy"]


def test_worker_picks_up_settings_changes_from_another_process(conn, tenants, worker_context, gateway):
    create_template(conn, tenants.a, "Blog", "blog_post", "Write about {{article.title}}")
    _generate(conn, tenants.a, _story(conn, tenants.a, "Hope"))
    run_once(worker_context, "worker-1")

    update_settings(conn, tenants.a, "prompt_templates", {"generation_limits": {"daily_generation_limit": 1}})
    job_id = _generate(conn, tenants.a, _story(conn, tenants.a, "Joy"))
    run_once(worker_context, "worker-1")

    job = get_job(conn, tenants.a, job_id)
    assert job.status == "failed"
    assert job.last_error["kind"] == "QuotaExceeded"


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def test_background_pool_runs_accounts_in_parallel(conn, config, tenants, gateway):
    for account_id in (tenants.a, tenants.b):
        create_template(conn, account_id, "Blog", "blog_post", "Write about {{article.title}}")
    jobs = {
        tenants.a: _generate(conn, tenants.a, _story(conn, tenants.a, "Hope")),
        tenants.b: _generate(conn, tenants.b, _story(conn, tenants.b, "Joy")),
    }
    both_in_flight = threading.Barrier(2)

    def meet(prompt):
        both_in_flight.wait(timeout=10)
        return prompt.replace("Write about", "About")

    gateway.responses = [meet, meet]
    pool_config = dataclasses.replace(config, worker=WorkerConfig(concurrency=2))
    context = WorkerContext.from_config(pool_config, gateway_factory=lambda conn, account_id: gateway)

    thread, stop = start_background_worker(context, worker_id="pool")
    try:
        finished = _wait_for(
            lambda: all(
                get_job(conn, account_id, job_id).status == "completed"
                for account_id, job_id in jobs.items()
            )
        )
    finally:
        stop.set()
        thread.join(timeout=15)

    assert finished
    assert not thread.is_alive()
    assert sorted(call["prompt"] for call in gateway.calls) == ["Write about Hope", "Write about Joy"]


def test_inactive_account_job_fails(conn, tenants, worker_context, gateway):
    job_id = enqueue_job(conn, tenants.b, "analyze_articles", {})
    set_account_active(conn, tenants.b, False)

    run_once(worker_context, "worker-1")

    job = get_job(conn, tenants.b, job_id)
    assert job.status == "failed"
    assert job.last_error["kind"] == "ScopeInvalid"


def test_worker_parser_defaults():
    args = build_parser().parse_args(["--once", "--only-job-types", "analyze_articles, source_refresh"])
    assert args.once is True
    assert _parse_only_types(args.only_job_types) == ["analyze_articles", "source_refresh"]
    assert _parse_only_types("") is None
