from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Callable, Iterator

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import Config, load_config
from .db import connect
from .dualwrite import DualWriter
from .errors import Forbidden, NotFound, PipelineError, ValidationError, error_payload
from .jobs import (
    cancel_job,
    enqueue_job,
    get_job,
    job_stats,
    job_to_dict,
    list_jobs_by_status,
    list_recent_jobs,
    retry_job,
)
from .llm import LlmGateway
from .models import Scope, ScrapedArticle
from .pipelines.generation import check_generation_quota, top_stories, validate_generation_payload
from .prompts.chain import dry_run_template_version
from .prompts.repository import (
    create_template,
    create_version,
    deactivate_template,
    generation_history,
    import_templates,
    list_templates,
    list_versions,
    reorder_templates,
    require_template,
    set_current_version,
    template_to_dict,
    update_template,
    usage_stats,
    version_to_dict,
)
from .scope import build_scope, require_role, resolve_account_id
from .services.ai_service import (
    clear_provider_secret,
    gateway_for_account,
    provider_secret_status,
    recent_logs,
    set_provider_secret,
)
from .services.content_service import content_stats, list_for_review, update_status
from .services.migration_service import MigrationService
from .services.settings_service import get_all_settings, update_settings
from .services.sources_service import (
    create_source,
    list_sources_status,
    require_source,
    set_source_active,
    source_to_dict,
)
from .services.users_service import (
    accept_invitation,
    assign_role,
    cancel_invitation,
    create_invitation,
    invitation_to_dict,
    list_invitations,
    list_users,
    permission_summary,
    remove_user,
)
from .storage import upsert_user
from .utils import configure_logging, log_event
from .worker import WorkerContext, start_background_worker

SESSION_ACCOUNT_COOKIE = "edenflow_account"

logger = logging.getLogger("edenflow.api")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobRequest(CamelModel):
    job_type: str = Field(alias="type")
    payload: dict[str, Any] = Field(default_factory=dict)


class GenerateRequest(CamelModel):
    specific_story_id: str | None = None
    story_id: str | None = None
    limit: int | None = None
    template_ids: list[str] | None = None
    regenerate: bool = False


class FullCycleRequest(CamelModel):
    limit: int | None = None


class TemplateRequest(CamelModel):
    name: str
    category: str
    prompt_content: str
    description: str | None = None
    media_type: str = "text"
    parsing_method: str = "generic"
    on_parse_error: str = "abort"
    system_message: str | None = None
    parameters: dict[str, Any] | None = None


class TemplateUpdateRequest(CamelModel):
    name: str | None = None
    description: str | None = None
    category: str | None = None
    media_type: str | None = None
    parsing_method: str | None = None
    on_parse_error: str | None = None


class VersionRequest(CamelModel):
    prompt_content: str
    system_message: str | None = None
    parameters: dict[str, Any] | None = None
    notes: str | None = None
    set_current: bool = False


class ReorderRequest(CamelModel):
    order: list[str]


class ImportRequest(CamelModel):
    document: str


class TestVersionRequest(CamelModel):
    test_variables: dict[str, Any] = Field(default_factory=dict)


class StatusRequest(CamelModel):
    status: str


class DualWriteRequest(CamelModel):
    enabled: bool


class SourceRequest(CamelModel):
    name: str
    url: str
    rss_url: str | None = None
    is_active: bool = True


class SourceStatusRequest(CamelModel):
    is_active: bool


class RoleRequest(CamelModel):
    role: str
    email: str | None = None


class InvitationRequest(CamelModel):
    email: str
    role: str
    expires_in_hours: int = 168


class AcceptInvitationRequest(CamelModel):
    token: str


class ProviderSecretRequest(CamelModel):
    api_key: str


def get_conn(request: Request) -> Iterator[Any]:
    conn = connect(request.app.state.config)
    try:
        yield conn
    finally:
        conn.close()


async def scope_account_id(request: Request) -> str:
    body_value = None
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            body_value = body.get("accountId")
    return resolve_account_id(
        request.headers.get("x-account-id"),
        request.query_params.get("accountId"),
        request.cookies.get(SESSION_ACCOUNT_COOKIE),
        body_value,
    )


def get_scope(
    account_id: str = Depends(scope_account_id),
    conn: Any = Depends(get_conn),
    x_user_id: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> Scope:
    return build_scope(conn, account_id, x_user_id, x_user_email)


def role_gate(minimum: str) -> Callable[..., Scope]:
    def dependency(scope: Scope = Depends(get_scope)) -> Scope:
        return require_role(scope, minimum)

    return dependency


viewer = role_gate("viewer")
editor = role_gate("editor")
admin = role_gate("admin")

router = APIRouter()
jobs_router = APIRouter(prefix="/jobs")
prompts_router = APIRouter(prefix="/prompts/templates")
content_router = APIRouter(prefix="/content")
news_router = APIRouter(prefix="/news")
users_router = APIRouter(prefix="/user-management")


@router.get("/health")
def health() -> dict[str, Any]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


# Jobs


@jobs_router.post("")
def jobs_enqueue(
    request: Request,
    payload: JobRequest,
    scope: Scope = Depends(editor),
    conn: Any = Depends(get_conn),
) -> dict[str, str]:
    job_id = _enqueue(request, conn, scope, payload.job_type, payload.payload)
    return {"jobId": job_id}


@jobs_router.get("/recent")
def jobs_recent(
    limit: int = Query(default=20, ge=1, le=200),
    scope: Scope = Depends(viewer),
    conn: Any = Depends(get_conn),
) -> list[dict[str, Any]]:
    return [job_to_dict(job) for job in list_recent_jobs(conn, scope.account_id, limit)]


@jobs_router.get("/status/{status}")
def jobs_by_status(
    status: str,
    limit: int = Query(default=20, ge=1, le=200),
    scope: Scope = Depends(viewer),
    conn: Any = Depends(get_conn),
) -> list[dict[str, Any]]:
    return [job_to_dict(job) for job in list_jobs_by_status(conn, scope.account_id, status, limit)]


@jobs_router.get("/stats")
def jobs_stats(scope: Scope = Depends(viewer), conn: Any = Depends(get_conn)) -> dict[str, int]:
    return job_stats(conn, scope.account_id)


@jobs_router.post("/worker/start")
def jobs_worker_start(request: Request, scope: Scope = Depends(admin)) -> dict[str, Any]:
    state = request.app.state
    with state.worker_lock:
        thread = state.worker_thread
        if thread is not None and thread.is_alive():
            return {"started": False, "running": True}
        thread, stop_event = start_background_worker(state.worker_context)
        state.worker_thread = thread
        state.worker_stop = stop_event
    log_event(logger, logging.INFO, "worker_start_requested", account_id=scope.account_id)
    return {"started": True, "running": True}


@jobs_router.get("/{job_id}")
def jobs_get(job_id: str, scope: Scope = Depends(viewer), conn: Any = Depends(get_conn)) -> dict[str, Any]:
    job = get_job(conn, scope.account_id, job_id)
    if job is None:
        raise NotFound("job_not_found")
    return job_to_dict(job)


@jobs_router.post("/{job_id}/cancel")
def jobs_cancel(job_id: str, scope: Scope = Depends(editor), conn: Any = Depends(get_conn)) -> dict[str, Any]:
    job = cancel_job(conn, scope.account_id, job_id)
    log_event(logger, logging.INFO, "job_cancel_requested", job_id=job_id, status=job.status)
    return job_to_dict(job)


@jobs_router.post("/{job_id}/retry")
def jobs_retry(job_id: str, scope: Scope = Depends(editor), conn: Any = Depends(get_conn)) -> dict[str, Any]:
    job = retry_job(conn, scope.account_id, job_id)
    log_event(logger, logging.INFO, "job_retried", job_id=job_id)
    return job_to_dict(job)


# Prompt templates


@prompts_router.get("")
def templates_list(
    include_inactive: bool = Query(default=False, alias="includeInactive"),
    scope: Scope = Depends(viewer),
    conn: Any = Depends(get_conn),
) -> list[dict[str, Any]]:
    return [template_to_dict(item) for item in list_templates(conn, scope.account_id, include_inactive)]


@prompts_router.post("")
def templates_create(
    request: Request,
    payload: TemplateRequest,
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    data = payload.model_dump()
    template = create_template(
        conn,
        scope.account_id,
        data.pop("name"),
        data.pop("category"),
        data.pop("prompt_content"),
        created_by=scope.user_id,
        cache=request.app.state.template_cache,
        **data,
    )
    return template_to_dict(template)


@prompts_router.put("/reorder")
def templates_reorder(
    request: Request,
    payload: ReorderRequest,
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> list[dict[str, Any]]:
    templates = reorder_templates(
        conn, scope.account_id, payload.order, cache=request.app.state.template_cache
    )
    return [template_to_dict(item) for item in templates]


@prompts_router.post("/import")
def templates_import(
    request: Request,
    payload: ImportRequest,
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> list[dict[str, Any]]:
    created = import_templates(
        conn,
        scope.account_id,
        payload.document,
        created_by=scope.user_id,
        cache=request.app.state.template_cache,
    )
    return [template_to_dict(item) for item in created]


@prompts_router.get("/{template_id}")
def templates_get(
    template_id: str, scope: Scope = Depends(viewer), conn: Any = Depends(get_conn)
) -> dict[str, Any]:
    return template_to_dict(require_template(conn, scope.account_id, template_id))


@prompts_router.put("/{template_id}")
def templates_update(
    request: Request,
    template_id: str,
    payload: TemplateUpdateRequest,
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    template = update_template(
        conn,
        scope.account_id,
        template_id,
        payload.model_dump(exclude_unset=True),
        cache=request.app.state.template_cache,
    )
    return template_to_dict(template)


@prompts_router.delete("/{template_id}")
def templates_deactivate(
    request: Request,
    template_id: str,
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    template = deactivate_template(
        conn, scope.account_id, template_id, cache=request.app.state.template_cache
    )
    return template_to_dict(template)


@prompts_router.get("/{template_id}/versions")
def versions_list(
    template_id: str, scope: Scope = Depends(viewer), conn: Any = Depends(get_conn)
) -> list[dict[str, Any]]:
    return [version_to_dict(item) for item in list_versions(conn, scope.account_id, template_id)]


@prompts_router.post("/{template_id}/versions")
def versions_create(
    request: Request,
    template_id: str,
    payload: VersionRequest,
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    version = create_version(
        conn,
        scope.account_id,
        template_id,
        payload.prompt_content,
        system_message=payload.system_message,
        parameters=payload.parameters,
        notes=payload.notes,
        created_by=scope.user_id,
        set_current=payload.set_current,
        cache=request.app.state.template_cache,
    )
    return version_to_dict(version)


@prompts_router.put("/{template_id}/versions/{version_id}/current")
def versions_set_current(
    request: Request,
    template_id: str,
    version_id: str,
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    template = set_current_version(
        conn, scope.account_id, template_id, version_id, cache=request.app.state.template_cache
    )
    return template_to_dict(template)


@prompts_router.post("/{template_id}/versions/{version_id}/test")
def versions_test(
    request: Request,
    template_id: str,
    version_id: str,
    payload: TestVersionRequest,
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    gateway = request.app.state.gateway_factory(conn, scope.account_id)
    result = dry_run_template_version(
        conn, scope.account_id, template_id, version_id, gateway, payload.test_variables
    )
    data = _camel(result)
    data["response"] = _camel(result["response"])
    return data


@prompts_router.get("/{template_id}/history")
def templates_history(
    template_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    scope: Scope = Depends(viewer),
    conn: Any = Depends(get_conn),
) -> list[dict[str, Any]]:
    return [_camel(item) for item in generation_history(conn, scope.account_id, template_id, limit)]


@prompts_router.get("/{template_id}/stats")
def templates_stats(
    template_id: str, scope: Scope = Depends(viewer), conn: Any = Depends(get_conn)
) -> list[dict[str, Any]]:
    return [_camel(item) for item in usage_stats(conn, scope.account_id, template_id)]


# Content review


@content_router.get("/review")
def content_review(
    request: Request,
    status: str | None = None,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    scope: Scope = Depends(viewer),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    return _camel(
        list_for_review(conn, scope.account_id, request.app.state.writer, status, limit, offset)
    )


@content_router.get("/stats")
def content_stats_view(
    request: Request, scope: Scope = Depends(viewer), conn: Any = Depends(get_conn)
) -> dict[str, Any]:
    data = _camel(content_stats(conn, scope.account_id))
    data["dualWrite"] = _camel(request.app.state.writer.stats(conn, scope.account_id))
    return data


@content_router.get("/migration/stats")
def content_migration_stats(
    request: Request, scope: Scope = Depends(viewer), conn: Any = Depends(get_conn)
) -> dict[str, Any]:
    service = MigrationService.from_config(conn, request.app.state.config)
    stats = service.stats(scope.account_id)
    data = _camel(stats)
    data["types"] = {name: _camel(entry) for name, entry in stats["types"].items()}
    return data


@content_router.put("/dual-write")
def content_dual_write_mode(
    request: Request, payload: DualWriteRequest, scope: Scope = Depends(admin)
) -> dict[str, bool]:
    # The mode is process-wide, so only a platform operator may flip it.
    if "super_admin" not in scope.global_roles:
        raise Forbidden("insufficient_role")
    request.app.state.writer.set_mode(payload.enabled)
    return {"enabled": request.app.state.writer.enabled}


@content_router.post("/generate")
def content_generate(
    request: Request,
    payload: GenerateRequest,
    scope: Scope = Depends(editor),
    conn: Any = Depends(get_conn),
) -> dict[str, str]:
    job_payload = payload.model_dump(by_alias=True, exclude_none=True)
    if not job_payload.get("regenerate"):
        job_payload.pop("regenerate", None)
    job_id = _enqueue(request, conn, scope, "content_generation", job_payload)
    return {"jobId": job_id}


@content_router.put("/{content_type}/{item_id}/status")
def content_update_status(
    content_type: str,
    item_id: str,
    payload: StatusRequest,
    scope: Scope = Depends(editor),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    return _camel(update_status(conn, scope.account_id, content_type, item_id, payload.status))


@router.post("/automate/full-cycle")
def automate_full_cycle(
    request: Request,
    payload: FullCycleRequest | None = None,
    scope: Scope = Depends(editor),
    conn: Any = Depends(get_conn),
) -> dict[str, str]:
    job_payload = {}
    if payload is not None and payload.limit is not None:
        job_payload["limit"] = payload.limit
    job_id = _enqueue(request, conn, scope, "full_cycle", job_payload)
    return {"jobId": job_id}


# Sources and stories


@news_router.get("/sources/status")
def sources_status(scope: Scope = Depends(viewer), conn: Any = Depends(get_conn)) -> list[dict[str, Any]]:
    return list_sources_status(conn, scope.account_id)


@news_router.post("/sources")
def sources_create(
    payload: SourceRequest, scope: Scope = Depends(editor), conn: Any = Depends(get_conn)
) -> dict[str, Any]:
    return source_to_dict(create_source(conn, scope.account_id, payload.model_dump()))


@news_router.put("/sources/{source_id}/status")
def sources_set_status(
    source_id: str,
    payload: SourceStatusRequest,
    scope: Scope = Depends(editor),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    return source_to_dict(set_source_active(conn, scope.account_id, source_id, payload.is_active))


@news_router.post("/sources/{source_id}/refresh")
def sources_refresh(
    request: Request,
    source_id: str,
    scope: Scope = Depends(editor),
    conn: Any = Depends(get_conn),
) -> dict[str, str]:
    require_source(conn, scope.account_id, source_id)
    job_id = _enqueue(request, conn, scope, "source_refresh", {"sourceId": source_id})
    return {"jobId": job_id}


@news_router.get("/top-stories")
def news_top_stories(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    min_score: float | None = Query(default=None, alias="minScore", ge=0.0, le=1.0),
    scope: Scope = Depends(viewer),
    conn: Any = Depends(get_conn),
) -> list[dict[str, Any]]:
    if min_score is None:
        min_score = request.app.state.config.analysis.min_relevance_score
    return [_story_to_dict(item) for item in top_stories(conn, scope.account_id, min_score, limit)]


@router.get("/ai/logs")
def ai_logs(
    limit: int = Query(default=50, ge=1, le=500),
    generated_article_id: str | None = Query(default=None, alias="generatedArticleId"),
    scope: Scope = Depends(viewer),
    conn: Any = Depends(get_conn),
) -> list[dict[str, Any]]:
    return recent_logs(conn, scope.account_id, limit, generated_article_id)


@router.get("/ai/provider-secret")
def ai_secret_status(scope: Scope = Depends(admin), conn: Any = Depends(get_conn)) -> dict[str, Any]:
    return _camel(provider_secret_status(conn, scope.account_id))


@router.put("/ai/provider-secret")
def ai_secret_set(
    payload: ProviderSecretRequest, scope: Scope = Depends(admin), conn: Any = Depends(get_conn)
) -> dict[str, Any]:
    status = set_provider_secret(conn, scope.account_id, payload.api_key)
    log_event(logger, logging.INFO, "provider_secret_set", account_id=scope.account_id)
    return _camel(status)


@router.delete("/ai/provider-secret")
def ai_secret_clear(scope: Scope = Depends(admin), conn: Any = Depends(get_conn)) -> dict[str, Any]:
    clear_provider_secret(conn, scope.account_id)
    log_event(logger, logging.INFO, "provider_secret_cleared", account_id=scope.account_id)
    return _camel(provider_secret_status(conn, scope.account_id))


# Settings


@router.get("/settings")
def settings_get(
    request: Request, scope: Scope = Depends(viewer), conn: Any = Depends(get_conn)
) -> dict[str, Any]:
    return get_all_settings(conn, scope.account_id, request.app.state.settings_cache)


@router.put("/settings/{setting_type}")
def settings_update(
    request: Request,
    setting_type: str,
    payload: dict[str, Any] = Body(...),
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    return update_settings(
        conn,
        scope.account_id,
        setting_type,
        payload,
        updated_by=scope.user_id,
        cache=request.app.state.settings_cache,
    )


# User management


@users_router.get("/users")
def users_list(scope: Scope = Depends(admin), conn: Any = Depends(get_conn)) -> list[dict[str, Any]]:
    return [_camel(item) for item in list_users(conn, scope.account_id)]


@users_router.put("/users/{user_id}/role")
def users_assign_role(
    user_id: str,
    payload: RoleRequest,
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> dict[str, Any]:
    return _camel(assign_role(conn, scope, user_id, payload.role, payload.email))


@users_router.delete("/users/{user_id}")
def users_remove(
    user_id: str, scope: Scope = Depends(admin), conn: Any = Depends(get_conn)
) -> dict[str, str]:
    remove_user(conn, scope, user_id)
    return {"status": "removed"}


@users_router.get("/permissions")
def users_permissions(scope: Scope = Depends(get_scope)) -> dict[str, Any]:
    return _camel(permission_summary(scope))


@users_router.post("/invitations")
def invitations_create(
    payload: InvitationRequest, scope: Scope = Depends(admin), conn: Any = Depends(get_conn)
) -> dict[str, Any]:
    invitation = create_invitation(
        conn, scope, payload.email, payload.role, payload.expires_in_hours
    )
    return invitation_to_dict(invitation, include_token=True)


@users_router.get("/invitations")
def invitations_list(
    status: str | None = "pending",
    scope: Scope = Depends(admin),
    conn: Any = Depends(get_conn),
) -> list[dict[str, Any]]:
    return [invitation_to_dict(item) for item in list_invitations(conn, scope.account_id, status)]


@users_router.post("/invitations/accept")
def invitations_accept(
    payload: AcceptInvitationRequest,
    conn: Any = Depends(get_conn),
    x_user_id: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> dict[str, Any]:
    if not x_user_id:
        raise ValidationError("user identity required")
    upsert_user(conn, x_user_id, x_user_email)
    return _camel(accept_invitation(conn, payload.token, x_user_id, x_user_email))


@users_router.delete("/invitations/{invitation_id}")
def invitations_cancel(
    invitation_id: str, scope: Scope = Depends(admin), conn: Any = Depends(get_conn)
) -> dict[str, str]:
    cancel_invitation(conn, scope.account_id, invitation_id)
    return {"status": "cancelled"}


async def _pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    return JSONResponse(error_payload(exc), status_code=exc.status_code)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in error.get("loc", ())[1:]) for error in exc.errors()]
    error = ValidationError("invalid_request: " + ", ".join(item for item in fields if item))
    return JSONResponse(error_payload(error), status_code=error.status_code)


def create_app(
    config: Config | None = None,
    gateway_factory: Callable[[Any, str], LlmGateway] | None = None,
    worker_context: WorkerContext | None = None,
) -> FastAPI:
    configure_logging("edenflow.api")
    config = config or load_config()
    if gateway_factory is None:

        def gateway_factory(conn: Any, account_id: str) -> LlmGateway:
            return gateway_for_account(conn, config, account_id)

    writer = worker_context.writer if worker_context is not None else DualWriter.from_config(config)
    if worker_context is None:
        worker_context = WorkerContext.from_config(
            config, gateway_factory=gateway_factory, writer=writer
        )

    app = FastAPI(title="edenflow API")
    app.state.config = config
    app.state.writer = writer
    app.state.gateway_factory = gateway_factory
    app.state.template_cache = worker_context.template_cache
    app.state.settings_cache = worker_context.settings_cache
    app.state.worker_context = worker_context
    app.state.worker_lock = threading.Lock()
    app.state.worker_thread = None
    app.state.worker_stop = None

    app.add_exception_handler(PipelineError, _pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    for item in (router, jobs_router, prompts_router, content_router, news_router, users_router):
        app.include_router(item)
    return app


def _enqueue(
    request: Request, conn: Any, scope: Scope, job_type: str, payload: dict[str, Any]
) -> str:
    state = request.app.state
    config: Config = state.config
    if job_type == "content_generation":
        validate_generation_payload(
            conn, scope.account_id, payload, config.jobs.default_generation_limit
        )
        check_generation_quota(conn, scope.account_id, 1, state.settings_cache)
    job_id = enqueue_job(
        conn,
        scope.account_id,
        job_type,
        payload,
        max_attempts=config.jobs.max_attempts,
        max_payload_bytes=config.jobs.max_payload_bytes,
        created_by=scope.user_id,
    )
    log_event(
        logger,
        logging.INFO,
        "job_enqueued",
        job_id=job_id,
        job_type=job_type,
        account_id=scope.account_id,
    )
    return job_id


def _camel(data: dict[str, Any]) -> dict[str, Any]:
    return {to_camel(key): value for key, value in data.items()}


def _story_to_dict(article: ScrapedArticle) -> dict[str, Any]:
    return {
        "id": article.id,
        "sourceId": article.source_id,
        "title": article.title,
        "url": article.url,
        "summary": article.summary,
        "keywords": article.keywords,
        "publicationDate": article.publication_date,
        "relevanceScore": article.relevance_score,
        "status": article.status,
        "contentQualityScore": article.content_quality_score,
        "contentQualityTier": article.content_quality_tier,
        "contentGenerationEligible": article.content_generation_eligible,
        "contentIssues": article.content_issues,
        "scrapedAt": article.scraped_at,
    }


def _get_version() -> str:
    try:
        return version("edenflow")
    except PackageNotFoundError:
        return "unknown"
