"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

DEFAULT_MODEL = "gemini-2.5-flash"


@dataclass(frozen=True)
class RetryConfig:
    """Timeout and backoff settings for generative-content calls."""
    max_retries: int = 3
    initial_delay_ms: int = 1000
    timeout_ms: int = 60000

    def __post_init__(self):
        """Validate retry values."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_ms < 0:
            raise ValueError("initial_delay_ms must be >= 0")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")


@dataclass(frozen=True)
class UsageConfig:
    """Soft daily request limit."""
    daily_limit: int = 50

    def __post_init__(self):
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")


@dataclass(frozen=True)
class SupabaseConfig:
    """Backend-as-a-service connection. Both fields empty means offline mode."""
    url: Optional[str] = None
    key: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.key)


@dataclass(frozen=True)
class BubbleConfig:
    """Complete application configuration."""
    model: str = DEFAULT_MODEL
    retry: RetryConfig = field(default_factory=RetryConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    db_path: str = ".bubble.db"
    api_key: Optional[str] = None


_SECTION_KEYS = {
    "retry": {"max_retries", "initial_delay_ms", "timeout_ms"},
    "usage": {"daily_limit"},
    "supabase": {"url", "key"},
    "storage": {"db_path"},
}


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> BubbleConfig:
    """Load and validate configuration from a YAML file and the environment.

    Strict validation: unknown keys and wrong types are errors rather than
    being silently ignored.

    Args:
        path: Path to YAML configuration file, or None for defaults only
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated BubbleConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config = BubbleConfig()
    if path is not None:
        config = _load_file(path)
    return apply_env_overrides(config, os.environ if environ is None else environ)


def _load_file(path: str) -> BubbleConfig:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {"model"} | set(_SECTION_KEYS)
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    model = raw_config.get("model", DEFAULT_MODEL)
    if not isinstance(model, str) or not model.strip():
        raise ValueError("'model' must be a non-empty string")

    retry = sections["retry"]
    usage = sections["usage"]
    supabase = sections["supabase"]
    storage = sections["storage"]

    db_path = storage.get("db_path", ".bubble.db")
    if not isinstance(db_path, str) or not db_path:
        raise ValueError("'storage.db_path' must be a non-empty string")

    return BubbleConfig(
        model=model.strip(),
        retry=RetryConfig(
            max_retries=_int(retry, "max_retries", 3, "retry"),
            initial_delay_ms=_int(retry, "initial_delay_ms", 1000, "retry"),
            timeout_ms=_int(retry, "timeout_ms", 60000, "retry"),
        ),
        usage=UsageConfig(daily_limit=_int(usage, "daily_limit", 50, "usage")),
        supabase=SupabaseConfig(
            url=_optional_str(supabase, "url", "supabase"),
            key=_optional_str(supabase, "key", "supabase"),
        ),
        db_path=db_path,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name, {}) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown = set(data.keys()) - _SECTION_KEYS[name]
    if unknown:
        raise ValueError(f"Unknown keys in {name}: {unknown}")
    return data


def _int(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _optional_str(data: Dict, key: str, path: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def apply_env_overrides(config: BubbleConfig, environ: Mapping[str, str]) -> BubbleConfig:
    """Environment wins over the file: GEMINI_API_KEY, SUPABASE_URL, SUPABASE_KEY, BUBBLE_DB_PATH."""
    supabase = config.supabase
    if environ.get("SUPABASE_URL") or environ.get("SUPABASE_KEY"):
        supabase = SupabaseConfig(
            url=environ.get("SUPABASE_URL") or supabase.url,
            key=environ.get("SUPABASE_KEY") or supabase.key,
        )
    return replace(
        config,
        supabase=supabase,
        db_path=environ.get("BUBBLE_DB_PATH") or config.db_path,
        api_key=environ.get("GEMINI_API_KEY") or config.api_key,
    )
