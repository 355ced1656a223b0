from __future__ import annotations

import argparse
import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import Config, ConfigError, load_config
from .db import connect
from .dualwrite import DualWriter
from .errors import (
    Conflict,
    JobCancelled,
    PipelineError,
    ScopeInvalid,
    ValidationError,
    error_kind,
    is_transient,
)
from .images import HttpImageProvider, ImageProvider
from .ingest import FeedIngestor
from .jobs import (
    backoff_seconds,
    claim_next_job,
    cleanup_old_jobs,
    complete_job,
    fail_job,
    heartbeat,
    is_cancel_requested,
    mark_cancelled,
    reap_expired_leases,
    requeue_job,
)
from .llm import LlmGateway
from .models import JOB_TYPES, Job
from .pipelines.analyze import analyze_articles
from .pipelines.generation import run_content_generation, run_full_cycle
from .pipelines.refresh import run_source_refresh
from .prompts.chain import ChainRunner
from .prompts.repository import TemplateCache
from .services.ai_service import gateway_for_account
from .services.settings_service import SettingsCache
from .storage import is_account_active
from .utils import configure_logging, log_event, utc_now_iso_offset

WORKER_JOB_TYPES = list(JOB_TYPES)
CLEANUP_INTERVAL_SECONDS = 3600

GatewayFactory = Callable[[Any, str], LlmGateway]


def _setup_logging() -> logging.Logger:
    return configure_logging("edenflow.worker")


@dataclass
class WorkerContext:
    """Everything a worker needs to run jobs, built once per process."""

    config: Config
    writer: DualWriter
    gateway_factory: GatewayFactory
    ingestor: FeedIngestor
    images: ImageProvider | None = None
    template_cache: TemplateCache = field(default_factory=TemplateCache)
    settings_cache: SettingsCache = field(default_factory=SettingsCache)
    last_cleanup: float = 0.0

    @classmethod
    def from_config(
        cls,
        config: Config,
        gateway_factory: GatewayFactory | None = None,
        writer: DualWriter | None = None,
        images: ImageProvider | None = None,
        ingestor: FeedIngestor | None = None,
    ) -> "WorkerContext":
        if gateway_factory is None:

            def gateway_factory(conn: Any, account_id: str) -> LlmGateway:
                return gateway_for_account(conn, config, account_id)

        if images is None and config.images.enabled:
            images = HttpImageProvider(config.images)
        return cls(
            config=config,
            writer=writer or DualWriter.from_config(config),
            gateway_factory=gateway_factory,
            ingestor=ingestor or FeedIngestor(config.ingest),
            images=images,
        )

    def connect(self) -> Any:
        return connect(self.config)

    def chain_runner(self, gateway: LlmGateway) -> ChainRunner:
        return ChainRunner(
            gateway,
            self.writer,
            images=self.images,
            settings_cache=self.settings_cache,
        )


class JobHandle:
    """Cooperative checkpoint for one leased job.

    ``checkpoint`` raises ``JobCancelled`` once a cancel was requested and
    ``Conflict`` when the lease was taken over; otherwise it extends the
    lease. ``refs`` collects artifact ids as they are committed.
    """

    def __init__(self, conn: Any, job: Job, worker_id: str, lease_seconds: int) -> None:
        self.conn = conn
        self.job = job
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.refs: list[str] = []

    def checkpoint(self) -> None:
        if is_cancel_requested(self.conn, self.job.id):
            raise JobCancelled("cancel_requested")
        if not heartbeat(self.conn, self.job.id, self.worker_id, self.lease_seconds):
            raise Conflict("lease_lost")


def run_once(
    context: WorkerContext, worker_id: str, allowed_types: list[str] | None = None
) -> int:
    logger = _setup_logging()
    conn = context.connect()
    try:
        _maybe_reap(conn, logger)
        _maybe_cleanup(conn, context, logger)
        job = claim_next_job(
            conn,
            worker_id,
            context.config.jobs.lease_seconds,
            job_types=allowed_types or WORKER_JOB_TYPES,
        )
        if not job:
            return 0
        return _process_claimed_job(conn, context, job, worker_id, logger)
    finally:
        conn.close()


def _process_claimed_job(
    conn: Any, context: WorkerContext, job: Job, worker_id: str, logger: logging.Logger
) -> int:
    log_event(
        logger,
        logging.INFO,
        "job_claimed",
        job_id=job.id,
        job_type=job.job_type,
        account_id=job.account_id,
        attempt=job.attempts,
    )
    handle = JobHandle(conn, job, worker_id, context.config.jobs.lease_seconds)
    try:
        handle.checkpoint()
        result = run_claimed_job(conn, context, job, handle)
    except JobCancelled:
        return _finish_cancelled(conn, job, worker_id, handle, logger)
    except Exception as exc:  # noqa: BLE001
        if is_cancel_requested(conn, job.id):
            return _finish_cancelled(conn, job, worker_id, handle, logger)
        return _handle_failure(conn, context, job, worker_id, handle, exc, logger)

    if complete_job(conn, job.id, worker_id, result=result, result_refs=handle.refs):
        log_event(
            logger,
            logging.INFO,
            "job_succeeded",
            job_id=job.id,
            job_type=job.job_type,
            account_id=job.account_id,
            refs=len(handle.refs),
        )
        return 0
    log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id, reason="lease_lost")
    return 1


def _finish_cancelled(
    conn: Any, job: Job, worker_id: str, handle: JobHandle, logger: logging.Logger
) -> int:
    mark_cancelled(conn, job.id, worker_id, result_refs=handle.refs)
    log_event(
        logger,
        logging.INFO,
        "job_cancelled",
        job_id=job.id,
        account_id=job.account_id,
        refs=len(handle.refs),
    )
    return 0


def _handle_failure(
    conn: Any,
    context: WorkerContext,
    job: Job,
    worker_id: str,
    handle: JobHandle,
    exc: Exception,
    logger: logging.Logger,
) -> int:
    error = {"kind": error_kind(exc), "message": _error_message(exc)}
    transient = is_transient(exc)
    if transient and job.attempts < job.max_attempts:
        delay = backoff_seconds(
            job.attempts,
            context.config.jobs.backoff_base_seconds,
            context.config.jobs.backoff_max_seconds,
        )
        requeued = requeue_job(
            conn,
            job.id,
            worker_id,
            error,
            utc_now_iso_offset(seconds=delay),
            result_refs=handle.refs,
        )
        log_event(
            logger,
            logging.WARNING,
            "job_requeued" if requeued else "job_requeue_lost",
            job_id=job.id,
            kind=error["kind"],
            error=error["message"],
            attempt=job.attempts,
            delay_seconds=delay,
        )
        return 0

    fail_job(
        conn,
        job.id,
        worker_id,
        error,
        result_refs=handle.refs,
        exhaust_attempts=not transient,
    )
    log_event(
        logger,
        logging.ERROR,
        "job_failed",
        job_id=job.id,
        job_type=job.job_type,
        account_id=job.account_id,
        kind=error["kind"],
        error=error["message"],
        refs=len(handle.refs),
    )
    return 1


def _error_message(exc: Exception) -> str:
    if isinstance(exc, PipelineError):
        return exc.message
    return str(exc) or type(exc).__name__


def _process_claimed_job_thread(context: WorkerContext, worker_id: str, job: Job) -> int:
    logger = _setup_logging()
    conn = context.connect()
    try:
        return _process_claimed_job(conn, context, job, worker_id, logger)
    finally:
        conn.close()


def run_loop(
    context: WorkerContext,
    worker_id: str,
    sleep_seconds: float,
    allowed_types: list[str] | None = None,
    concurrency: int = 1,
    stop_event: threading.Event | None = None,
) -> int:
    stop_event = stop_event or threading.Event()
    if concurrency <= 1:
        while not stop_event.is_set():
            run_once(context, worker_id, allowed_types)
            stop_event.wait(sleep_seconds)
        return 0

    logger = _setup_logging()
    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while not stop_event.is_set():
            while len(futures) < max_workers:
                conn = context.connect()
                try:
                    _maybe_reap(conn, logger)
                    _maybe_cleanup(conn, context, logger)
                    job = claim_next_job(
                        conn,
                        worker_id,
                        context.config.jobs.lease_seconds,
                        job_types=allowed_types or WORKER_JOB_TYPES,
                    )
                finally:
                    conn.close()
                if not job:
                    break
                futures.add(executor.submit(_process_claimed_job_thread, context, worker_id, job))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                stop_event.wait(sleep_seconds)
        if futures:
            wait(futures)
    return 0


def start_background_worker(
    context: WorkerContext,
    worker_id: str | None = None,
    stop_event: threading.Event | None = None,
) -> tuple[threading.Thread, threading.Event]:
    """Run the worker loop on a daemon thread inside the current process."""
    stop_event = stop_event or threading.Event()
    worker_id = worker_id or f"inproc-{uuid.uuid4().hex[:8]}"
    thread = threading.Thread(
        target=run_loop,
        args=(
            context,
            worker_id,
            context.config.jobs.poll_seconds,
            None,
            context.config.worker.concurrency,
            stop_event,
        ),
        name=f"edenflow-worker-{worker_id}",
        daemon=True,
    )
    thread.start()
    log_event(_setup_logging(), logging.INFO, "worker_started", worker_id=worker_id)
    return thread, stop_event


def run_claimed_job(
    conn: Any, context: WorkerContext, job: Job, handle: JobHandle
) -> dict[str, Any]:
    if not is_account_active(conn, job.account_id):
        raise ScopeInvalid("account_not_active")
    jobs_config = context.config.jobs
    if job.job_type == "content_generation":
        gateway = context.gateway_factory(conn, job.account_id)
        return run_content_generation(
            conn,
            job.account_id,
            job.payload,
            context.chain_runner(gateway),
            job_id=job.id,
            checkpoint=handle.checkpoint,
            refs=handle.refs,
            template_cache=context.template_cache,
            settings_cache=context.settings_cache,
            default_limit=jobs_config.default_generation_limit,
            min_relevance=context.config.analysis.min_relevance_score,
        )
    if job.job_type == "full_cycle":
        gateway = context.gateway_factory(conn, job.account_id)
        return run_full_cycle(
            conn,
            job.account_id,
            job.payload,
            gateway,
            context.chain_runner(gateway),
            job_id=job.id,
            checkpoint=handle.checkpoint,
            refs=handle.refs,
            template_cache=context.template_cache,
            settings_cache=context.settings_cache,
            analyze_limit=jobs_config.default_analyze_limit,
            default_limit=jobs_config.default_generation_limit,
            min_relevance=context.config.analysis.min_relevance_score,
        )
    if job.job_type == "analyze_articles":
        limit = job.payload.get("limit", jobs_config.default_analyze_limit)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer")
        return analyze_articles(
            conn,
            job.account_id,
            context.gateway_factory(conn, job.account_id),
            limit,
            job_id=job.id,
            checkpoint=handle.checkpoint,
            settings_cache=context.settings_cache,
        )
    if job.job_type == "source_refresh":
        return run_source_refresh(conn, job.account_id, job.payload, context.ingestor)
    raise ValidationError(f"unsupported job type {job.job_type}")


def _maybe_reap(conn: Any, logger: logging.Logger) -> None:
    reaped = reap_expired_leases(conn)
    if reaped:
        log_event(logger, logging.WARNING, "lease_reaped", count=reaped)


def _maybe_cleanup(conn: Any, context: WorkerContext, logger: logging.Logger) -> None:
    now = time.monotonic()
    if context.last_cleanup and now - context.last_cleanup < CLEANUP_INTERVAL_SECONDS:
        return
    context.last_cleanup = now
    removed = cleanup_old_jobs(conn, context.config.jobs.cleanup_days)
    if removed:
        log_event(logger, logging.INFO, "jobs_cleaned", count=removed)


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="edenflow-worker")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=float, default=None, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("EDENFLOW_WORKER_ONLY_TYPES", ""))
    parser.add_argument("--concurrency", type=int, default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    context = WorkerContext.from_config(config)
    allowed_types = _parse_only_types(args.only_job_types)
    if args.once:
        return run_once(context, args.worker_id, allowed_types)
    sleep_seconds = args.sleep if args.sleep is not None else config.jobs.poll_seconds
    concurrency = args.concurrency if args.concurrency is not None else config.worker.concurrency
    return run_loop(context, args.worker_id, sleep_seconds, allowed_types, concurrency)


if __name__ == "__main__":
    raise SystemExit(main())
