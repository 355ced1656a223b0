from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from .config import Config, ConfigError, load_config
from .db import connect
from .errors import PipelineError
from .jobs import cancel_job, cleanup_old_jobs, enqueue_job, list_jobs_by_status, list_recent_jobs, retry_job
from .migrations import apply_migrations, get_schema_version
from .models import JOB_TYPES
from .prompts.repository import import_templates
from .services.migration_service import MigrationService
from .storage import assign_account_role, create_account, create_organization, upsert_user
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("edenflow.cli")


def _load(args: argparse.Namespace, logger: logging.Logger) -> Config | None:
    try:
        return load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect(config)
    try:
        applied = apply_migrations(conn)
        log_event(
            logger,
            logging.INFO,
            "db_migrated",
            applied=",".join(applied) or "none",
            version=get_schema_version(conn),
        )
    finally:
        conn.close()
    return 0


def _cmd_accounts_create(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect(config)
    try:
        organization_id = args.organization_id or create_organization(conn, args.org_name or args.name)
        account_id = create_account(conn, organization_id, args.name, slug=args.slug)
        if args.owner_user_id:
            upsert_user(conn, args.owner_user_id, args.owner_email)
            assign_account_role(conn, account_id, args.owner_user_id, "owner")
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "account_created",
        organization_id=organization_id,
        account_id=account_id,
        owner=args.owner_user_id,
    )
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as exc:
        log_event(logger, logging.ERROR, "invalid_payload", error=exc.msg)
        return 2
    conn = connect(config)
    try:
        job_id = enqueue_job(
            conn,
            args.account_id,
            args.job_type,
            payload,
            max_attempts=config.jobs.max_attempts,
            max_payload_bytes=config.jobs.max_payload_bytes,
        )
    except PipelineError as exc:
        log_event(logger, logging.ERROR, "job_enqueue_failed", kind=exc.kind, error=exc.message)
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=args.job_type)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect(config)
    try:
        if args.status:
            jobs = list_jobs_by_status(conn, args.account_id, args.status, args.limit)
        else:
            jobs = list_recent_jobs(conn, args.account_id, args.limit)
    finally:
        conn.close()
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            attempts=job.attempts,
            created_at=job.created_at,
            finished_at=job.finished_at,
            error=(job.last_error or {}).get("kind"),
        )
    return 0


def _cmd_jobs_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    return _job_action(args, logger, cancel_job, "job_cancel_requested")


def _cmd_jobs_retry(args: argparse.Namespace, logger: logging.Logger) -> int:
    return _job_action(args, logger, retry_job, "job_retried")


def _job_action(args: argparse.Namespace, logger: logging.Logger, action, event: str) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect(config)
    try:
        job = action(conn, args.account_id, args.job_id)
    except PipelineError as exc:
        log_event(logger, logging.ERROR, f"{event}_failed", kind=exc.kind, error=exc.message)
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, event, job_id=job.id, status=job.status)
    return 0


def _cmd_jobs_cleanup(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect(config)
    try:
        removed = cleanup_old_jobs(conn, args.days or config.jobs.cleanup_days)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "jobs_cleaned", count=removed)
    return 0


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    from .worker import main as worker_main

    argv = []
    if args.config:
        argv += ["--config", args.config]
    if args.once:
        argv.append("--once")
    if args.concurrency is not None:
        argv += ["--concurrency", str(args.concurrency)]
    return worker_main(argv)


def _migration_service(args: argparse.Namespace, config: Config, conn) -> MigrationService:
    return MigrationService(
        conn,
        batch_size=args.batch_size or config.migration.batch_size,
        dry_run=args.dry_run or config.migration.dry_run,
    )


def _cmd_migrate_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect(config)
    try:
        service = _migration_service(args, config, conn)
        if args.content_type:
            result = service.migrate_type(args.content_type, args.account_id)
        else:
            result = service.migrate_all(args.account_id)
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "migration_complete",
        migrated=result["migrated"],
        skipped=result["skipped"],
        failed=result["failed"],
        dry_run=service.dry_run,
    )
    return 0 if not result["failed"] else 1


def _cmd_migrate_rollback(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect(config)
    try:
        service = _migration_service(args, config, conn)
        result = service.rollback(args.account_id, args.content_type, args.legacy_id)
    except PipelineError as exc:
        log_event(logger, logging.ERROR, "migration_rollback_failed", kind=exc.kind, error=exc.message)
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "migration_rollback", **result)
    return 0


def _cmd_migrate_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect(config)
    try:
        stats = MigrationService.from_config(conn, config).stats(args.account_id)
    finally:
        conn.close()
    for content_type, entry in stats["types"].items():
        log_event(logger, logging.INFO, "migration_stats", content_type=content_type, **entry)
    log_event(
        logger,
        logging.INFO,
        "migration_stats_total",
        legacy=stats["legacy_total"],
        migrated=stats["migrated_total"],
        progress=stats["progress"],
    )
    return 0


def _cmd_templates_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    document = Path(args.path).read_text(encoding="utf-8")
    conn = connect(config)
    try:
        created = import_templates(conn, args.account_id, document, created_by=args.created_by)
    except PipelineError as exc:
        log_event(logger, logging.ERROR, "templates_import_failed", kind=exc.kind, error=exc.message)
        return 1
    finally:
        conn.close()
    for template in created:
        log_event(
            logger,
            logging.INFO,
            "template_imported",
            template_id=template.id,
            name=template.name,
            execution_order=template.execution_order,
        )
    return 0


def _cmd_api(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    from .api import create_app

    config = _load(args, logger)
    if config is None:
        return 1
    uvicorn.run(create_app(config), host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="edenflow", description="edenflow CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to EDENFLOW_CONFIG_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    accounts_parser = subparsers.add_parser("accounts", help="Tenant bootstrap")
    accounts_subparsers = accounts_parser.add_subparsers(dest="accounts_command", required=True)
    accounts_create = accounts_subparsers.add_parser("create", help="Create an account")
    accounts_create.add_argument("name", help="Account name")
    accounts_create.add_argument("--slug", default=None)
    accounts_create.add_argument("--organization-id", default=None, help="Existing organization")
    accounts_create.add_argument("--org-name", default=None, help="Name for a new organization")
    accounts_create.add_argument("--owner-user-id", default=None)
    accounts_create.add_argument("--owner-email", default=None)
    accounts_create.set_defaults(func=_cmd_accounts_create)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("account_id", help="Account scope")
    jobs_enqueue.add_argument("job_type", choices=list(JOB_TYPES), help="Job type to enqueue")
    jobs_enqueue.add_argument("--payload", default=None, help="JSON payload")
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("account_id", help="Account scope")
    jobs_list.add_argument("--status", default=None, help="Only jobs in this status")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    for name, func, help_text in (
        ("cancel", _cmd_jobs_cancel, "Cancel a queued or running job"),
        ("retry", _cmd_jobs_retry, "Requeue a failed or cancelled job"),
    ):
        action = jobs_subparsers.add_parser(name, help=help_text)
        action.add_argument("account_id", help="Account scope")
        action.add_argument("job_id", help="Job id")
        action.set_defaults(func=func)

    jobs_cleanup = jobs_subparsers.add_parser("cleanup", help="Delete old finished jobs")
    jobs_cleanup.add_argument("--days", type=int, default=None)
    jobs_cleanup.set_defaults(func=_cmd_jobs_cleanup)

    worker_parser = subparsers.add_parser("worker", help="Run the job worker")
    worker_parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    worker_parser.add_argument("--concurrency", type=int, default=None)
    worker_parser.set_defaults(func=_cmd_worker)

    migrate_parser = subparsers.add_parser("migrate", help="Legacy content migration")
    migrate_subparsers = migrate_parser.add_subparsers(dest="migrate_command", required=True)

    migrate_run = migrate_subparsers.add_parser("run", help="Backfill unified content")
    migrate_run.add_argument("--account-id", default=None, help="Limit to one account")
    migrate_run.add_argument("--type", dest="content_type", default=None, help="Limit to one type")
    migrate_run.add_argument("--batch-size", type=int, default=None)
    migrate_run.add_argument("--dry-run", action="store_true", help="Log writes without applying them")
    migrate_run.set_defaults(func=_cmd_migrate_run)

    migrate_rollback = migrate_subparsers.add_parser("rollback", help="Undo one migrated row")
    migrate_rollback.add_argument("account_id")
    migrate_rollback.add_argument("content_type")
    migrate_rollback.add_argument("legacy_id")
    migrate_rollback.add_argument("--batch-size", type=int, default=None)
    migrate_rollback.add_argument("--dry-run", action="store_true")
    migrate_rollback.set_defaults(func=_cmd_migrate_rollback)

    migrate_stats = migrate_subparsers.add_parser("stats", help="Migration progress")
    migrate_stats.add_argument("account_id")
    migrate_stats.set_defaults(func=_cmd_migrate_stats)

    templates_parser = subparsers.add_parser("templates", help="Prompt templates")
    templates_subparsers = templates_parser.add_subparsers(dest="templates_command", required=True)
    templates_import = templates_subparsers.add_parser("import", help="Import templates from YAML")
    templates_import.add_argument("account_id")
    templates_import.add_argument("path", help="Path to template YAML file")
    templates_import.add_argument("--created-by", default=None)
    templates_import.set_defaults(func=_cmd_templates_import)

    api_parser = subparsers.add_parser("api", help="Serve the HTTP API")
    api_parser.add_argument("--host", default="127.0.0.1")
    api_parser.add_argument("--port", type=int, default=8000)
    api_parser.set_defaults(func=_cmd_api)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
