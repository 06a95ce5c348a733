"""Provides functions for loading and accessing configuration settings.

Supports loading from a YAML configuration file (~/.pacer/config.yaml),
.env files and environment variables, and builds the typed ClientSettings
consumed by the composition root.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv

from pacer.infrastructure.cache.caching_service import DEFAULT_MAX_ENTRIES, DEFAULT_TTL_SECONDS
from pacer.infrastructure.http.httpx_transport import DEFAULT_TIMEOUT_SECONDS
from pacer.infrastructure.persistence.fallback_store import DEFAULT_FALLBACK_DIR
from pacer.infrastructure.resilience import delay_controller as dc_defaults
from pacer.infrastructure.resilience.scheduler import DEFAULT_MAX_CONCURRENCY, DEFAULT_MAX_RETRY_AFTER_SECONDS

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
DEFAULT_CONFIG_DIR = Path.home() / ".pacer"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
ENV_FILE_NAME = ".env"
ENV_PREFIX = "PACER_"
DEFAULT_BASE_URL = "http://localhost:3000/api"
DEFAULT_CONSERVATIVE_WINDOW_SECONDS = 5 * 60

_config: Dict[str, Any] = {}
_test_config: Dict[str, Any] = {}
_loaded = False


def _flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Turns nested YAML mappings into dotted keys ('throttle.normal.baseline_ms')."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def env_var_name(key: str) -> str:
    return f"{ENV_PREFIX}{key.upper().replace('.', '_')}"


def _coerce(value: str) -> Any:
    if value.lower() == 'true':
        return True
    if value.lower() == 'false':
        return False
    try:
        if '.' in value:
            return float(value)
        return int(value)
    except (ValueError, TypeError):
        return value


def load_configuration(config_file: Path = DEFAULT_CONFIG_FILE, env_file: Optional[Path] = None) -> None:
    """Loads configuration from environment, .env file, and YAML file.

    Priority order (highest to lowest):
    1. Test overrides (set_config_for_testing)
    2. Environment Variables (PACER_<KEY>, dots as underscores)
    3. .env file
    4. YAML configuration file
    5. Default values passed to get_config

    Args:
        config_file: Path to the YAML configuration file.
        env_file: Path to the .env file (searches upwards from cwd if None).
    """
    global _config, _loaded
    if _loaded:
        logger.debug("Configuration already loaded.")
        return

    _config = {}

    if config_file.exists():
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f)
            if isinstance(yaml_config, dict):
                _config.update(_flatten(yaml_config))
                logger.info(f"Loaded configuration from YAML: {config_file}")
            elif yaml_config is not None:
                logger.warning(f"YAML config file {config_file} did not contain a mapping.")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load or parse YAML config {config_file}: {e}")
    else:
        logger.debug(f"YAML config file not found: {config_file}")

    dotenv_path = env_file or find_dotenv_path()
    if dotenv_path:
        # override=False: real environment variables take precedence
        if load_dotenv(dotenv_path=dotenv_path, override=False):
            logger.info(f"Loaded environment variables from: {dotenv_path}")
    else:
        logger.debug("No .env file found at or above the current directory.")

    _loaded = True
    logger.debug("Configuration loading process completed.")


def find_dotenv_path() -> Optional[Path]:
    """Searches for the .env file upwards from the current directory."""
    cwd = Path.cwd()
    for path in [cwd] + list(cwd.parents):
        env_path = path / ENV_FILE_NAME
        if env_path.is_file():
            return env_path
    return None


def get_config(key: str, default: Any = None) -> Any:
    """Get a configuration value by dotted key, see load_configuration for priority."""
    if key in _test_config:
        return _test_config[key]

    env_key = env_var_name(key)
    if env_key in os.environ:
        return _coerce(os.environ[env_key])

    if key in _config:
        return _config[key]

    return default


def set_config_for_testing(config_dict: Dict[str, Any]) -> None:
    """Overrides configuration values; they win over every other source."""
    _test_config.update(config_dict)
    logger.debug(f"Set testing configuration: {config_dict}")


def clear_test_config() -> None:
    """Clear all testing configuration values."""
    _test_config.clear()


def reset_configuration() -> None:
    """Test hook: forget everything loaded so load_configuration runs again."""
    global _loaded
    _config.clear()
    _test_config.clear()
    _loaded = False


# --- Typed settings ---

@dataclass
class ThrottleSettings:
    """Delay controller and scheduler knobs."""
    normal_baseline_ms: float = dc_defaults.DEFAULT_NORMAL_POLICY.baseline_ms
    normal_ceiling_ms: float = dc_defaults.DEFAULT_NORMAL_POLICY.ceiling_ms
    conservative_baseline_ms: float = dc_defaults.DEFAULT_CONSERVATIVE_POLICY.baseline_ms
    conservative_ceiling_ms: float = dc_defaults.DEFAULT_CONSERVATIVE_POLICY.ceiling_ms
    backoff_factor: float = dc_defaults.DEFAULT_BACKOFF_FACTOR
    min_backoff_ms: float = dc_defaults.DEFAULT_MIN_BACKOFF_MS
    decay_factor: float = dc_defaults.DEFAULT_DECAY_FACTOR
    decay_interval_s: float = dc_defaults.DEFAULT_DECAY_INTERVAL_SECONDS
    quiet_period_s: float = dc_defaults.DEFAULT_QUIET_PERIOD_SECONDS
    pressure_tiers: Tuple[Tuple[int, float], ...] = dc_defaults.DEFAULT_PRESSURE_TIERS
    quota_pressure_ratio: float = dc_defaults.DEFAULT_QUOTA_PRESSURE_RATIO
    quota_pressure_delay_ms: float = dc_defaults.DEFAULT_QUOTA_PRESSURE_DELAY_MS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_retry_after_s: float = DEFAULT_MAX_RETRY_AFTER_SECONDS
    conservative_window_s: float = DEFAULT_CONSERVATIVE_WINDOW_SECONDS


@dataclass
class ClientSettings:
    """Everything the composition root needs to build a RateLimitedClient."""
    base_url: str = DEFAULT_BASE_URL
    timeout_s: float = DEFAULT_TIMEOUT_SECONDS
    api_token: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    cache_ttl_s: float = DEFAULT_TTL_SECONDS
    cache_max_entries: int = DEFAULT_MAX_ENTRIES
    fallback_dir: Path = DEFAULT_FALLBACK_DIR
    fallback_enabled: bool = True
    throttle: ThrottleSettings = field(default_factory=ThrottleSettings)

    def request_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self.api_token:
            headers.setdefault("Authorization", f"Bearer {self.api_token}")
        return headers


def _parse_tiers(raw: Any) -> Tuple[Tuple[int, float], ...]:
    """Accepts [[25, 2000], ...] from YAML or '25:2000,20:1000' from the environment."""
    if isinstance(raw, str):
        pairs = [item.split(':') for item in raw.split(',') if item.strip()]
        return tuple((int(count), float(delay)) for count, delay in pairs)
    return tuple((int(count), float(delay)) for count, delay in raw)


def load_client_settings() -> ClientSettings:
    """Builds ClientSettings from the loaded configuration sources."""
    load_configuration()
    t = ThrottleSettings()
    throttle = ThrottleSettings(
        normal_baseline_ms=float(get_config('throttle.normal.baseline_ms', t.normal_baseline_ms)),
        normal_ceiling_ms=float(get_config('throttle.normal.ceiling_ms', t.normal_ceiling_ms)),
        conservative_baseline_ms=float(get_config('throttle.conservative.baseline_ms', t.conservative_baseline_ms)),
        conservative_ceiling_ms=float(get_config('throttle.conservative.ceiling_ms', t.conservative_ceiling_ms)),
        backoff_factor=float(get_config('throttle.backoff_factor', t.backoff_factor)),
        min_backoff_ms=float(get_config('throttle.min_backoff_ms', t.min_backoff_ms)),
        decay_factor=float(get_config('throttle.decay_factor', t.decay_factor)),
        decay_interval_s=float(get_config('throttle.decay_interval_s', t.decay_interval_s)),
        quiet_period_s=float(get_config('throttle.quiet_period_s', t.quiet_period_s)),
        pressure_tiers=_parse_tiers(get_config('throttle.pressure_tiers', t.pressure_tiers)),
        quota_pressure_ratio=float(get_config('throttle.quota_pressure_ratio', t.quota_pressure_ratio)),
        quota_pressure_delay_ms=float(get_config('throttle.quota_pressure_delay_ms', t.quota_pressure_delay_ms)),
        max_concurrency=int(get_config('throttle.max_concurrency', t.max_concurrency)),
        max_retry_after_s=float(get_config('throttle.max_retry_after_s', t.max_retry_after_s)),
        conservative_window_s=float(get_config('throttle.conservative_window_s', t.conservative_window_s)),
    )
    headers = get_config('client.headers', {}) or {}
    if not isinstance(headers, dict):
        logger.warning("client.headers must be a mapping; ignoring it.")
        headers = {}
    token = get_config('client.api_token')
    return ClientSettings(
        base_url=str(get_config('client.base_url', DEFAULT_BASE_URL)),
        timeout_s=float(get_config('client.timeout_s', DEFAULT_TIMEOUT_SECONDS)),
        api_token=str(token) if token else None,
        headers={str(k): str(v) for k, v in headers.items()},
        cache_ttl_s=float(get_config('cache.ttl_s', DEFAULT_TTL_SECONDS)),
        cache_max_entries=int(get_config('cache.max_entries', DEFAULT_MAX_ENTRIES)),
        fallback_dir=Path(get_config('fallback.dir', DEFAULT_FALLBACK_DIR)).expanduser(),
        fallback_enabled=bool(get_config('fallback.enabled', True)),
        throttle=throttle,
    )
