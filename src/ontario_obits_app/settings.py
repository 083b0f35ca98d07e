#!src/ontario_obits_app/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from ontario_obits_app.utils.logger import get_logger
from ontario_obits_app.utils.project_paths import ProjectPaths

logger = get_logger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (compatible; OntarioObituariesBot/3.0; +https://monacomonuments.ca)"
)

DEFAULT_ARTIFACT_PHRASES: tuple[str, ...] = (
    "as an ai",
    "i cannot",
    "i'm sorry",
    "language model",
    "here is",
    "here's the rewritten",
    "certainly!",
    "sure!",
    "of course!",
    "i'd be happy",
    "i am an",
    "note:",
    "disclaimer:",
)


class SettingsError(RuntimeError):
    """Failure loading or validating settings."""


class PathsConfig(BaseModel):
    """Filesystem locations, relative to the project root."""

    db: str = "data/ontario_obits.db"
    sources: str = "configs/sources.yaml"
    prompts_dir: str = "configs/prompts"
    data_root: str = "data"

    model_config = {"extra": "allow"}


class HttpConfig(BaseModel):
    """Outbound HTTP settings for source fetches."""

    user_agent: str = DEFAULT_USER_AGENT
    accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    accept_language: str = "en-CA,en;q=0.9"
    timeout_seconds: float = 30.0
    max_retries: int = 2
    backoff_base_seconds: float = 0.5

    model_config = {"extra": "allow"}


class CollectorConfig(BaseModel):
    """Collection pass settings."""

    default_max_pages: int = 5
    min_request_interval: float = 2.0
    max_age_days: int = 7
    fetch_details: bool = False
    adaptive_selectors: bool = True
    lock_ttl_seconds: int = 900

    model_config = {"extra": "allow"}


class CircuitBreakerConfig(BaseModel):
    """Per-source consecutive failure breaker."""

    failure_threshold: int = 10
    open_hours: int = 24

    model_config = {"extra": "allow"}


class RateLimiterConfig(BaseModel):
    """Shared token budget split across consumer pools."""

    tpm_budget: int = 5500
    min_tpm_budget: int = 500
    cron_fraction: float = 0.80
    window_seconds: int = 60
    max_cas_retries: int = 3

    model_config = {"extra": "allow"}


class RewriterConfig(BaseModel):
    """Rewrite batch settings."""

    model: str = "llama-3.1-8b-instant"
    fallback_model: str = "llama-3.3-70b-versatile"
    batch_size: int = 1
    request_delay_seconds: float = 12.0
    fallback_delay_seconds: float = 2.0
    max_runtime_seconds: float = 240.0
    lock_ttl_seconds: int = 270
    estimated_tokens: int = 1100
    temperature: float = 0.1
    max_tokens: int = 1500
    top_p: float = 0.95
    timeout_seconds: int = 60

    model_config = {"extra": "allow"}


class AuditorConfig(BaseModel):
    """Audit batch settings."""

    model: str = "llama-3.3-70b-versatile"
    batch_size: int = 10
    recheck_fraction: float = 0.2
    request_delay_seconds: float = 6.0
    max_runtime_seconds: float = 240.0
    lock_ttl_seconds: int = 270
    estimated_tokens: int = 900
    temperature: float = 0.2
    max_tokens: int = 512
    top_p: float = 0.9
    timeout_seconds: int = 45
    min_correction_confidence: float = 0.9

    model_config = {"extra": "allow"}


class ValidationConfig(BaseModel):
    """Fact preservation rules applied before publication."""

    min_length: int = 50
    max_length: int = 5000
    min_name_length: int = 3
    artifact_phrases: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ARTIFACT_PHRASES)
    )

    model_config = {"extra": "allow"}


class TelemetryConfig(BaseModel):
    """Structured event sink and health counter limits."""

    dedupe_seconds: int = 300
    counter_ttl_seconds: int = 86400
    max_counter_codes: int = 100
    counter_cap: int = 9999
    max_body_chars: int = 500
    healthy_within_seconds: int = 7200

    model_config = {"extra": "allow"}


class AppConfig(BaseModel):
    """Main config."""

    paths: PathsConfig = PathsConfig()
    http: HttpConfig = HttpConfig()
    collector: CollectorConfig = CollectorConfig()
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig()
    rate_limiter: RateLimiterConfig = RateLimiterConfig()
    rewriter: RewriterConfig = RewriterConfig()
    auditor: AuditorConfig = AuditorConfig()
    validation: ValidationConfig = ValidationConfig()
    telemetry: TelemetryConfig = TelemetryConfig()
    app_env: str = "production"

    model_config = {"extra": "allow"}


@dataclass(frozen=True, slots=True)
class Settings:
    """Unified settings.

    Attributes:
        app: Validated application config, with paths made absolute.
        paths: Project paths.
    """

    app: AppConfig
    paths: ProjectPaths

    @property
    def db_path(self) -> Path:
        """Database file path."""
        return Path(self.app.paths.db)


def load_app_config(paths: Optional[ProjectPaths] = None) -> AppConfig:
    """Load, merge and validate the application config.

    `configs/default.yaml` is required. `configs/config.<APP_ENV>.yaml` is
    deep-merged over it when present.

    Args:
        paths: Resolved project paths.

    Returns:
        AppConfig: Validated config with absolute paths.

    Raises:
        SettingsError: When a file is missing, malformed or fails validation.
    """
    load_dotenv(override=False)

    resolved_paths = paths or ProjectPaths.discover()
    env_name = str(os.getenv("APP_ENV", "production") or "production").strip()

    default_path = (resolved_paths.configs_dir / "default.yaml").resolve()
    profile_path = (resolved_paths.configs_dir / f"config.{env_name}.yaml").resolve()

    base = _read_yaml_mapping(default_path, required=True)
    overlay = _read_yaml_mapping(profile_path, required=False)

    merged = _deep_merge(base, overlay)
    merged["app_env"] = env_name
    merged["paths"] = _normalize_path_map(merged.get("paths", {}), resolved_paths)

    try:
        model = AppConfig.model_validate(merged)
    except ValidationError as e:
        raise SettingsError(f"Config validation failed: {e}") from e

    logger.info(
        f"Loaded app config, env={env_name}, default={default_path}, profile_exists={profile_path.exists()}"
    )
    return model


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings."""
    paths = ProjectPaths.discover()
    return Settings(app=load_app_config(paths), paths=paths)


def reload_settings() -> Settings:
    """Drop the cache and load settings again."""
    get_settings.cache_clear()
    return get_settings()


def _read_yaml_mapping(path: Path, required: bool) -> Dict[str, Any]:
    if not path.exists():
        if required:
            raise SettingsError(f"Missing config file: {path}")
        return {}

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf8"))
    except (OSError, yaml.YAMLError) as e:
        raise SettingsError(f"Invalid YAML at {path}: {e}") from e

    if raw is None:
        return {}

    if not isinstance(raw, dict):
        raise SettingsError(f"Top level YAML must be a mapping at {path}")

    return raw


def _deep_merge(a: Mapping[str, Any], b: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {k: v for k, v in a.items()}
    for k, v in b.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _normalize_path_map(raw: object, paths: ProjectPaths) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in raw.items():
        out[str(k)] = str(paths.resolve_relative(str(v)))
    return out
