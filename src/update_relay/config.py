# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Service configuration for Update Relay.

This module provides:
- ServiceConfig dataclass with rate-limit, cache, store and download settings
- load_config() to parse a YAML config file (``service:`` mapping)
- Environment overrides (UPDATE_RELAY_*) applied on top of the file

Limits are clamped to hard bounds that neither files nor environment
variables can exceed.
"""

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

logger = logging.getLogger(__name__)

# Hard limits; a config file cannot override these
RATE_LIMIT_BOUNDS = (1, 100_000)
RATE_WINDOW_BOUNDS = (1.0, 86_400.0)  # up to one day
CACHE_TTL_BOUNDS = (0.0, 604_800.0)  # up to one week; 0 disables caching
CACHE_SIZE_BOUNDS = (1, 1_000_000)
STORE_TIMEOUT_BOUNDS = (0.1, 120.0)

ENV_PREFIX = "UPDATE_RELAY_"
CONFIG_ENV_VAR = "UPDATE_RELAY_CONFIG"


@dataclass(frozen=True)
class ServiceConfig:
    """Configuration for the update service.

    Attributes:
        rate_limit: Requests allowed per caller per window
        rate_window_seconds: Rate-limit window length
        cache_ttl_seconds: Lifetime of cached read responses (0 disables)
        cache_max_size: Maximum cached responses before LRU eviction
        store_timeout_seconds: Timeout applied to every store call
        download_base_url: Prefix of package download URLs
        author: Default author shown on plugin info pages
        author_profile: Default author URL shown on plugin info pages
        api_version: Value of the X-API-Version response header
        catalog_path: Optional YAML catalog file
        licenses_path: Optional YAML license file
    """

    rate_limit: int = 60
    rate_window_seconds: float = 60.0
    cache_ttl_seconds: float = 3600.0
    cache_max_size: int = 1000
    store_timeout_seconds: float = 5.0
    download_base_url: str = "https://updates.example.com/downloads"
    author: str = ""
    author_profile: str = ""
    api_version: str = "1.0.0"
    catalog_path: Optional[str] = None
    licenses_path: Optional[str] = None


def _clamp(raw: Any, default: Union[int, float], bounds: tuple, cast: type) -> Any:
    """Coerce a raw value into bounds, falling back to the default on bad types."""
    if isinstance(raw, bool):
        return default
    if isinstance(raw, str):
        try:
            raw = float(raw.strip())
        except ValueError:
            return default
    if not isinstance(raw, (int, float)):
        return default
    low, high = bounds
    return cast(max(low, min(cast(raw), high)))


def _str_or(raw: Any, default: str) -> str:
    return raw.strip() if isinstance(raw, str) and raw.strip() else default


def config_from_mapping(
    data: Mapping[str, Any],
    base: Optional[ServiceConfig] = None,
    base_dir: Optional[Path] = None,
) -> ServiceConfig:
    """Build a ServiceConfig from a mapping, validating every value.

    Args:
        data: The ``service:`` mapping
        base: Config supplying defaults for absent keys
        base_dir: Directory that relative file paths resolve against

    Returns:
        ServiceConfig with clamped values
    """
    base = base or ServiceConfig()

    def _path(name: str) -> Optional[str]:
        raw = data.get(name)
        if not isinstance(raw, str) or not raw.strip():
            return getattr(base, name)
        path = Path(raw.strip()).expanduser()
        if base_dir is not None and not path.is_absolute():
            path = base_dir / path
        return str(path)

    return ServiceConfig(
        rate_limit=_clamp(data.get("rate_limit", base.rate_limit), base.rate_limit, RATE_LIMIT_BOUNDS, int),
        rate_window_seconds=_clamp(
            data.get("rate_window_seconds", base.rate_window_seconds),
            base.rate_window_seconds,
            RATE_WINDOW_BOUNDS,
            float,
        ),
        cache_ttl_seconds=_clamp(
            data.get("cache_ttl_seconds", base.cache_ttl_seconds),
            base.cache_ttl_seconds,
            CACHE_TTL_BOUNDS,
            float,
        ),
        cache_max_size=_clamp(
            data.get("cache_max_size", base.cache_max_size),
            base.cache_max_size,
            CACHE_SIZE_BOUNDS,
            int,
        ),
        store_timeout_seconds=_clamp(
            data.get("store_timeout_seconds", base.store_timeout_seconds),
            base.store_timeout_seconds,
            STORE_TIMEOUT_BOUNDS,
            float,
        ),
        download_base_url=_str_or(data.get("download_base_url"), base.download_base_url),
        author=_str_or(data.get("author"), base.author),
        author_profile=_str_or(data.get("author_profile"), base.author_profile),
        api_version=_str_or(data.get("api_version"), base.api_version),
        catalog_path=_path("catalog_path"),
        licenses_path=_path("licenses_path"),
    )


def apply_env_overrides(
    config: ServiceConfig, environ: Optional[Mapping[str, str]] = None
) -> ServiceConfig:
    """Apply UPDATE_RELAY_* environment variables on top of a config.

    Recognized: UPDATE_RELAY_RATE_LIMIT, UPDATE_RELAY_CACHE_TTL,
    UPDATE_RELAY_DOWNLOAD_BASE_URL.
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    if f"{ENV_PREFIX}RATE_LIMIT" in environ:
        overrides["rate_limit"] = _clamp(
            environ[f"{ENV_PREFIX}RATE_LIMIT"], config.rate_limit, RATE_LIMIT_BOUNDS, int
        )
    if f"{ENV_PREFIX}CACHE_TTL" in environ:
        overrides["cache_ttl_seconds"] = _clamp(
            environ[f"{ENV_PREFIX}CACHE_TTL"], config.cache_ttl_seconds, CACHE_TTL_BOUNDS, float
        )
    if f"{ENV_PREFIX}DOWNLOAD_BASE_URL" in environ:
        overrides["download_base_url"] = _str_or(
            environ[f"{ENV_PREFIX}DOWNLOAD_BASE_URL"], config.download_base_url
        )

    return replace(config, **overrides) if overrides else config


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServiceConfig:
    """Load service configuration.

    Args:
        path: YAML file; defaults to $UPDATE_RELAY_CONFIG when set
        environ: Environment mapping (defaults to os.environ)

    Returns:
        ServiceConfig from the file plus environment overrides, or defaults
        when the file is absent or unreadable
    """
    environ = os.environ if environ is None else environ
    if path is None:
        path = environ.get(CONFIG_ENV_VAR)

    config = ServiceConfig()
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (yaml.YAMLError, IOError) as e:
                logger.warning("Ignoring unreadable config %s: %s", config_path, e)
                data = {}

            service = data.get("service", {}) if isinstance(data, dict) else {}
            if isinstance(service, dict):
                config = config_from_mapping(service, base_dir=config_path.parent)
        else:
            logger.info("Config file %s not found, using defaults", config_path)

    return apply_env_overrides(config, environ)
