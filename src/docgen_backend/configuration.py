"""
Configuration loading for the document generation worker.

Settings are layered, later layers winning:

1. Typed defaults declared by the dataclasses below
2. ``config/config.yaml`` if one is found next to the project (or ``DOCGEN_CONFIG_PATH``)
3. ``DOCGEN_*`` environment variables (a ``.env`` file is loaded first)
4. Explicit overrides passed by the caller

The merged result is validated against the dataclass schema by OmegaConf and
returned as an ``AppConfig`` instance.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .errors import ConfigurationError

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]


@dataclass
class PollerConfig:
    enabled: bool = False
    interval_ms: int = 15_000
    idle_interval_ms: int = 60_000
    batch_size: int = 20
    lock_ttl_ms: int = 120_000
    max_attempts: int = 3


@dataclass
class ConversionConfig:
    timeout_seconds: float = 60.0
    workdir: str = "/tmp"
    max_concurrent: int = 8
    command: List[str] = field(default_factory=lambda: ["soffice"])


@dataclass
class CacheConfig:
    max_size_bytes: int = 500 * 1024 * 1024


@dataclass
class StorageConfig:
    database_path: str = "data/docgen.db"
    s3_bucket: str = ""
    s3_prefix: str = "docgen/"
    content_dir: str = "data/content"


@dataclass
class MergeConfig:
    # None disables the check; an empty list rejects every external image URL.
    image_allowlist: Optional[List[str]] = None


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    poller: PollerConfig = field(default_factory=PollerConfig)
    conversion: ConversionConfig = field(default_factory=ConversionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Environment variable -> dotted config key
ENV_KEYS: Dict[str, str] = {
    "DOCGEN_POLLER_ENABLED": "poller.enabled",
    "DOCGEN_POLLER_INTERVAL_MS": "poller.interval_ms",
    "DOCGEN_POLLER_IDLE_INTERVAL_MS": "poller.idle_interval_ms",
    "DOCGEN_POLLER_BATCH_SIZE": "poller.batch_size",
    "DOCGEN_POLLER_LOCK_TTL_MS": "poller.lock_ttl_ms",
    "DOCGEN_POLLER_MAX_ATTEMPTS": "poller.max_attempts",
    "DOCGEN_CONVERSION_TIMEOUT_SECONDS": "conversion.timeout_seconds",
    "DOCGEN_CONVERSION_WORKDIR": "conversion.workdir",
    "DOCGEN_CONVERSION_MAX_CONCURRENT": "conversion.max_concurrent",
    "DOCGEN_CONVERSION_COMMAND": "conversion.command",
    "DOCGEN_CACHE_MAX_SIZE_BYTES": "cache.max_size_bytes",
    "DOCGEN_DATABASE_PATH": "storage.database_path",
    "DOCGEN_S3_BUCKET": "storage.s3_bucket",
    "DOCGEN_S3_PREFIX": "storage.s3_prefix",
    "DOCGEN_CONTENT_DIR": "storage.content_dir",
    "DOCGEN_IMAGE_ALLOWLIST": "merge.image_allowlist",
    "DOCGEN_LOG_LEVEL": "logging.level",
}

# Keys whose environment value is a list rather than a scalar
_LIST_KEYS = {
    "conversion.command": None,  # whitespace separated
    "merge.image_allowlist": ",",
}


def _find_config_file(environ: Mapping[str, str]) -> Optional[Path]:
    explicit = environ.get("DOCGEN_CONFIG_PATH")
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigurationError(f"Config file not found at {path}")
        return path
    return next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)


@lru_cache(maxsize=8)
def _load_file_config(path: Path) -> DictConfig:
    return OmegaConf.load(path)  # type: ignore[return-value]


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    dotlist: List[str] = []
    lists: Dict[str, List[str]] = {}
    for env_name, key in ENV_KEYS.items():
        raw = environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        if key in _LIST_KEYS:
            separator = _LIST_KEYS[key]
            lists[key] = [item.strip() for item in raw.split(separator) if item.strip()]
        else:
            dotlist.append(f"{key}={raw.strip()}")

    container: Dict[str, Any] = OmegaConf.to_container(OmegaConf.from_dotlist(dotlist))  # type: ignore[assignment]
    for key, values in lists.items():
        group, name = key.split(".", 1)
        container.setdefault(group, {})[name] = values
    return container


def load_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """
    Build the effective application configuration.

    Args:
        overrides: Nested dictionary applied last (e.g. ``{"poller": {"batch_size": 5}}``)
        environ: Environment mapping; defaults to ``os.environ`` after loading ``.env``

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigurationError: If a value does not match the schema
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    base = OmegaConf.structured(AppConfig)
    layers: List[Any] = [base]

    config_path = _find_config_file(environ)
    if config_path is not None:
        layers.append(_load_file_config(config_path))

    layers.append(OmegaConf.create(_env_overrides(environ)))
    if overrides:
        layers.append(OmegaConf.create(overrides))

    try:
        merged = OmegaConf.merge(*layers)
        config: AppConfig = OmegaConf.to_object(merged)  # type: ignore[assignment]
    except Exception as exc:  # omegaconf raises several validation error types
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    _validate(config)
    return config


def _validate(config: AppConfig) -> None:
    from .poller import MAX_RETRY_ATTEMPTS  # poller imports this module

    if config.poller.batch_size < 1:
        raise ConfigurationError("poller.batch_size must be at least 1")
    if config.poller.max_attempts < 0:
        raise ConfigurationError("poller.max_attempts must not be negative")
    if config.poller.max_attempts > MAX_RETRY_ATTEMPTS:
        raise ConfigurationError(
            f"poller.max_attempts must not exceed {MAX_RETRY_ATTEMPTS} (length of the backoff schedule)"
        )
    if config.conversion.max_concurrent < 1:
        raise ConfigurationError("conversion.max_concurrent must be at least 1")
    if not config.conversion.command:
        raise ConfigurationError("conversion.command must not be empty")
    if config.cache.max_size_bytes < 0:
        raise ConfigurationError("cache.max_size_bytes must not be negative")


def config_as_dict(config: AppConfig) -> Dict[str, Any]:
    return OmegaConf.to_container(OmegaConf.structured(config), resolve=True)  # type: ignore[return-value]
