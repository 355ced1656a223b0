from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Callable, Mapping
from urllib.parse import quote

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class DatabaseConfig:
    path: str
    url: str
    host: str
    port: int
    user: str
    password: str
    name: str

    def resolved_url(self) -> str | None:
        if self.url:
            return self.url
        if not self.host:
            return None
        auth = ""
        if self.user:
            auth = quote(self.user, safe="")
            if self.password:
                auth += ":" + quote(self.password, safe="")
            auth += "@"
        return f"postgresql://{auth}{self.host}:{self.port}/{self.name}"


@dataclass(frozen=True)
class JobsConfig:
    lease_seconds: int
    max_attempts: int
    max_payload_bytes: int
    backoff_base_seconds: int
    backoff_max_seconds: int
    poll_seconds: int
    cleanup_days: int
    default_generation_limit: int
    default_analyze_limit: int


@dataclass(frozen=True)
class WorkerConfig:
    concurrency: int


@dataclass(frozen=True)
class LlmConfig:
    provider_type: str
    base_url: str
    model: str
    api_key: str
    timeout_seconds: int
    default_max_tokens: int
    temperature: float


@dataclass(frozen=True)
class ImageConfig:
    api_key: str
    search_url: str
    cdn_client_id: str
    cdn_client_secret: str
    cdn_public_url: str
    timeout_seconds: int

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class DualWriteConfig:
    enabled: bool


@dataclass(frozen=True)
class MigrationConfig:
    batch_size: int
    dry_run: bool


@dataclass(frozen=True)
class IngestConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int
    strip_tracking_params: bool
    tracking_params: list[str]


@dataclass(frozen=True)
class AnalysisConfig:
    min_relevance_score: float


@dataclass(frozen=True)
class Config:
    app: AppConfig
    database: DatabaseConfig
    jobs: JobsConfig
    worker: WorkerConfig
    llm: LlmConfig
    images: ImageConfig
    dual_write: DualWriteConfig
    migration: MigrationConfig
    ingest: IngestConfig
    analysis: AnalysisConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "edenflow",
        "timezone": "UTC",
    },
    "database": {
        "path": "./data/edenflow.sqlite3",
        "url": "",
        "host": "",
        "port": 5432,
        "user": "",
        "password": "",
        "name": "edenflow",
    },
    "jobs": {
        "lease_seconds": 300,
        "max_attempts": 3,
        "max_payload_bytes": 65536,
        "backoff_base_seconds": 30,
        "backoff_max_seconds": 1800,
        "poll_seconds": 5,
        "cleanup_days": 7,
        "default_generation_limit": 5,
        "default_analyze_limit": 20,
    },
    "worker": {
        "concurrency": 1,
    },
    "llm": {
        "provider_type": "openai_compatible",
        "base_url": "",
        "model": "gpt-4o-mini",
        "api_key": "",
        "timeout_seconds": 60,
        "default_max_tokens": 2000,
        "temperature": 0.7,
    },
    "images": {
        "api_key": "",
        "search_url": "https://api.pexels.com/v1/search",
        "cdn_client_id": "",
        "cdn_client_secret": "",
        "cdn_public_url": "",
        "timeout_seconds": 20,
    },
    "dual_write": {
        "enabled": True,
    },
    "migration": {
        "batch_size": 100,
        "dry_run": False,
    },
    "ingest": {
        "timeout_seconds": 20,
        "user_agent": "edenflow/0.1",
        "max_retries": 2,
        "backoff_seconds": 2,
        "strip_tracking_params": True,
        "tracking_params": [
            "utm_source",
            "utm_medium",
            "utm_campaign",
            "utm_term",
            "utm_content",
        ],
    },
    "analysis": {
        "min_relevance_score": 0.6,
    },
}

CONFIG_PATH_ENV = "EDENFLOW_CONFIG_PATH"


def _env_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"invalid boolean value {value!r}")


def _env_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ConfigError(f"invalid integer value {value!r}") from exc


ENV_OVERRIDES: list[tuple[str, tuple[str, str], Callable[[str], Any]]] = [
    ("DB_PATH", ("database", "path"), str),
    ("DB_URL", ("database", "url"), str),
    ("DB_HOST", ("database", "host"), str),
    ("DB_PORT", ("database", "port"), _env_int),
    ("DB_USER", ("database", "user"), str),
    ("DB_PASSWORD", ("database", "password"), str),
    ("DB_NAME", ("database", "name"), str),
    ("LLM_PROVIDER_KEY", ("llm", "api_key"), str),
    ("LLM_PROVIDER_TYPE", ("llm", "provider_type"), str),
    ("LLM_BASE_URL", ("llm", "base_url"), str),
    ("LLM_MODEL", ("llm", "model"), str),
    ("LLM_TIMEOUT_SECONDS", ("llm", "timeout_seconds"), _env_int),
    ("IMAGE_API_KEY", ("images", "api_key"), str),
    ("IMAGE_CDN_CLIENT_ID", ("images", "cdn_client_id"), str),
    ("IMAGE_CDN_CLIENT_SECRET", ("images", "cdn_client_secret"), str),
    ("IMAGE_CDN_PUBLIC_URL", ("images", "cdn_public_url"), str),
    ("WORKER_CONCURRENCY", ("worker", "concurrency"), _env_int),
    ("JOB_LEASE_SECONDS", ("jobs", "lease_seconds"), _env_int),
    ("JOB_MAX_ATTEMPTS", ("jobs", "max_attempts"), _env_int),
    ("DUAL_WRITE_ENABLED", ("dual_write", "enabled"), _env_bool),
    ("MIGRATION_BATCH_SIZE", ("migration", "batch_size"), _env_int),
    ("MIGRATION_DRY_RUN", ("migration", "dry_run"), _env_bool),
]


def load_config(
    path: str | None = None, environ: Mapping[str, str] | None = None
) -> Config:
    environ = os.environ if environ is None else environ
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = path or environ.get(CONFIG_PATH_ENV) or None
    if path:
        cfg = _deep_merge(cfg, _read_yaml(path))
    _apply_env_overrides(cfg, environ)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping")
    return data


def _apply_env_overrides(cfg: dict[str, Any], environ: Mapping[str, str]) -> None:
    for env_name, (section, key), convert in ENV_OVERRIDES:
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        cfg.setdefault(section, {})[key] = convert(raw)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if not errors:
        if cfg["worker"]["concurrency"] < 1:
            errors.append("config.worker.concurrency must be >= 1")
        if cfg["jobs"]["max_attempts"] < 1:
            errors.append("config.jobs.max_attempts must be >= 1")
        if cfg["jobs"]["lease_seconds"] < 1:
            errors.append("config.jobs.lease_seconds must be >= 1")
        if cfg["migration"]["batch_size"] < 1:
            errors.append("config.migration.batch_size must be >= 1")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    db_cfg = cfg["database"]
    jobs_cfg = cfg["jobs"]
    llm_cfg = cfg["llm"]
    images_cfg = cfg["images"]
    ingest_cfg = cfg["ingest"]
    return Config(
        app=AppConfig(name=str(cfg["app"]["name"]), timezone=str(cfg["app"]["timezone"])),
        database=DatabaseConfig(
            path=str(db_cfg["path"]),
            url=str(db_cfg["url"]),
            host=str(db_cfg["host"]),
            port=int(db_cfg["port"]),
            user=str(db_cfg["user"]),
            password=str(db_cfg["password"]),
            name=str(db_cfg["name"]),
        ),
        jobs=JobsConfig(
            lease_seconds=int(jobs_cfg["lease_seconds"]),
            max_attempts=int(jobs_cfg["max_attempts"]),
            max_payload_bytes=int(jobs_cfg["max_payload_bytes"]),
            backoff_base_seconds=int(jobs_cfg["backoff_base_seconds"]),
            backoff_max_seconds=int(jobs_cfg["backoff_max_seconds"]),
            poll_seconds=int(jobs_cfg["poll_seconds"]),
            cleanup_days=int(jobs_cfg["cleanup_days"]),
            default_generation_limit=int(jobs_cfg["default_generation_limit"]),
            default_analyze_limit=int(jobs_cfg["default_analyze_limit"]),
        ),
        worker=WorkerConfig(concurrency=int(cfg["worker"]["concurrency"])),
        llm=LlmConfig(
            provider_type=str(llm_cfg["provider_type"]),
            base_url=str(llm_cfg["base_url"]),
            model=str(llm_cfg["model"]),
            api_key=str(llm_cfg["api_key"]),
            timeout_seconds=int(llm_cfg["timeout_seconds"]),
            default_max_tokens=int(llm_cfg["default_max_tokens"]),
            temperature=float(llm_cfg["temperature"]),
        ),
        images=ImageConfig(
            api_key=str(images_cfg["api_key"]),
            search_url=str(images_cfg["search_url"]),
            cdn_client_id=str(images_cfg["cdn_client_id"]),
            cdn_client_secret=str(images_cfg["cdn_client_secret"]),
            cdn_public_url=str(images_cfg["cdn_public_url"]),
            timeout_seconds=int(images_cfg["timeout_seconds"]),
        ),
        dual_write=DualWriteConfig(enabled=bool(cfg["dual_write"]["enabled"])),
        migration=MigrationConfig(
            batch_size=int(cfg["migration"]["batch_size"]),
            dry_run=bool(cfg["migration"]["dry_run"]),
        ),
        ingest=IngestConfig(
            timeout_seconds=int(ingest_cfg["timeout_seconds"]),
            user_agent=str(ingest_cfg["user_agent"]),
            max_retries=int(ingest_cfg["max_retries"]),
            backoff_seconds=int(ingest_cfg["backoff_seconds"]),
            strip_tracking_params=bool(ingest_cfg["strip_tracking_params"]),
            tracking_params=list(ingest_cfg["tracking_params"]),
        ),
        analysis=AnalysisConfig(
            min_relevance_score=float(cfg["analysis"]["min_relevance_score"]),
        ),
    )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
