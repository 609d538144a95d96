from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "CORS_ORIGINS": "server.cors_origins",
    "LOG_LEVEL": "logging.level",
    "DATABASE_PATH": "database.path",
    "OLLAMA_BASE_URL": "ollama.base_url",
    "OLLAMA_MODEL": "ollama.model",
    "OLLAMA_TIMEOUT_SECONDS": "ollama.timeout_seconds",
    "JWT_SECRET": "auth.jwt_secret",
    "JWT_TTL_HOURS": "auth.token_ttl_hours",
    "PASSWORD_HASH_ITERATIONS": "auth.password_iterations",
    "CONTENT_USER_EMAILS": "auth.content_emails",
    "AWS_ACCESS_KEY_ID": "aws.access_key_id",
    "AWS_SECRET_ACCESS_KEY": "aws.secret_access_key",
    "AWS_REGION": "aws.region",
    "AWS_S3_BUCKET_NAME": "aws.s3_bucket_name",
    "AWS_POLLY_VOICE_ID": "aws.polly_voice_id",
    "AWS_POLLY_ENGINE": "aws.polly_engine",
    "STORAGE_CLEANUP_ON_DELETE": "storage.cleanup_on_delete",
}

_TRUTHY = {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _cast(raw: str, default: Any) -> Any:
    """Cast an environment string to the type of the configured default."""
    if isinstance(default, bool):
        return raw.strip().lower() in _TRUTHY
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, (list, tuple)) or OmegaConf.is_list(default):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def collect_env_overrides(environ: Dict[str, str] | None = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    defaults = _load_default_config()
    overrides: Dict[str, Any] = {}
    for env_name, key in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        default = OmegaConf.select(defaults, key)
        try:
            overrides[key] = _cast(raw, default)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from exc
    return overrides


def make_runtime_config(overrides: Dict[str, Any]) -> DictConfig:
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    for key, value in overrides.items():
        OmegaConf.update(base, key, value, merge=False)
    OmegaConf.set_struct(base, True)
    return base


@lru_cache(maxsize=1)
def get_settings() -> DictConfig:
    """
    Build the runtime configuration.

    Packaged defaults from config.yaml, overridden by environment variables
    (after loading a local .env file). The result is cached for the life of
    the process; call clear_settings_cache() to rebuild it.
    """
    load_dotenv()
    overrides = collect_env_overrides()
    if overrides:
        logger.info(f"Applying config overrides from environment: {sorted(overrides)}")
    return make_runtime_config(overrides)


def clear_settings_cache() -> None:
    get_settings.cache_clear()


def settings_summary(config: DictConfig) -> Dict[str, Any]:
    """Config as a plain dict with secrets masked, for logging."""
    container: Dict[str, Any] = OmegaConf.to_container(config, resolve=True)  # type: ignore[assignment]
    for section, key in (("auth", "jwt_secret"), ("aws", "secret_access_key"), ("aws", "access_key_id")):
        if container.get(section, {}).get(key):
            container[section][key] = "***"
    return container


def cors_origins(config: DictConfig) -> List[str]:
    return list(config.server.cors_origins)
