"""
Configuration management and loading.

Handles application settings from YAML and environment variables.
Secrets (API keys, webhook secret) are only ever read from the environment.
"""

import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


CONFIG_PATH_ENV = "RESEARCH_GUARD_CONFIG"


class LedgerBackend(Enum):
    """Where credit balances and usage events live."""
    LOCAL = "local"
    HTTP = "http"


@dataclass(frozen=True)
class LedgerSettings:
    """Ledger provider connection and retry settings."""
    backend: LedgerBackend = LedgerBackend.LOCAL
    base_url: str = "https://api.flexprice.com"
    api_key: str = field(default="", repr=False)
    webhook_secret: str = field(default="", repr=False)
    timeout_seconds: float = 10.0
    db_path: str = "research_guard.db"
    default_credit_limit: int = 100
    max_retries: int = 3
    initial_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 5.0

    def __post_init__(self):
        """Validate ledger settings."""
        if self.timeout_seconds <= 0:
            raise ValueError("ledger.timeout_seconds must be > 0")
        if self.default_credit_limit < 0:
            raise ValueError("ledger.default_credit_limit cannot be negative")
        if self.max_retries < 0:
            raise ValueError("ledger.max_retries cannot be negative")
        if self.initial_backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("ledger backoff values cannot be negative")
        if not self.base_url:
            raise ValueError("ledger.base_url cannot be empty")


@dataclass(frozen=True)
class PricingSettings:
    """Credits charged per billable action."""
    question_asked: int = 1
    report_generated: int = 3
    source_processed: int = 1
    image_ocr: int = 2
    live_data_refresh: int = 1
    corpus_summary: int = 2

    def __post_init__(self):
        """Validate every price is a positive integer."""
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"pricing.{f.name} must be a positive integer")


@dataclass(frozen=True)
class SearchSettings:
    """Full-text search provider settings."""
    endpoint: str = ""
    api_key: str = field(default="", repr=False)
    index_name: str = "research-documents"
    top_n: int = 5
    timeout_seconds: float = 10.0
    api_version: str = "2023-11-01"

    def __post_init__(self):
        """Validate search settings."""
        if self.top_n <= 0:
            raise ValueError("search.top_n must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("search.timeout_seconds must be > 0")


@dataclass(frozen=True)
class LLMSettings:
    """Language model provider settings."""
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_output_tokens: int = 2000
    max_tool_rounds: int = 5

    def __post_init__(self):
        """Validate model settings."""
        if not self.model or not self.model.strip():
            raise ValueError("llm.model cannot be empty")
        if not 0 <= self.temperature <= 2:
            raise ValueError("llm.temperature must be between 0 and 2")
        if self.max_output_tokens <= 0:
            raise ValueError("llm.max_output_tokens must be > 0")
        if self.max_tool_rounds <= 0:
            raise ValueError("llm.max_tool_rounds must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    pricing: PricingSettings = field(default_factory=PricingSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    llm: LLMSettings = field(default_factory=LLMSettings)


_SECTIONS = {
    "ledger": LedgerSettings,
    "pricing": PricingSettings,
    "search": SearchSettings,
    "llm": LLMSettings,
}

# Keys that may only come from the environment.
_SECRET_KEYS = {"api_key", "webhook_secret"}


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load and validate settings from YAML and environment variables.

    Strict validation ensures no silent misconfigurations that could
    lead to mis-billed actions or an unauthenticated ledger.

    Args:
        path: Path to YAML configuration file. Falls back to the
            RESEARCH_GUARD_CONFIG environment variable, then to defaults.
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    env = os.environ if environ is None else environ
    path = path or env.get(CONFIG_PATH_ENV)

    sections: Dict[str, Any] = {}
    if path:
        raw_config = _read_yaml(path)
        unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
        if unknown_keys:
            raise ValueError(f"Unknown configuration keys: {unknown_keys}")
        for name, section_cls in _SECTIONS.items():
            if name in raw_config:
                sections[name] = _parse_section(raw_config[name], name, section_cls)

    settings = Settings(**sections)
    return _apply_environment(settings, env)


def _read_yaml(path: str) -> Dict[str, Any]:
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
        raise ValueError("Configuration file must contain a mapping")
    return raw_config


def _parse_section(data: Any, name: str, section_cls):
    """Parse and validate one configuration section.

    Args:
        data: Raw section data from YAML
        name: Section name for error messages
        section_cls: Settings dataclass for the section

    Returns:
        Validated settings dataclass instance

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    allowed_keys = {f.name for f in fields(section_cls)} - _SECRET_KEYS
    secret_keys = set(data.keys()) & _SECRET_KEYS
    if secret_keys:
        raise ValueError(f"Secrets must come from the environment, not {name}: {secret_keys}")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    defaults = section_cls()
    values = {}
    for key, raw in data.items():
        default = getattr(defaults, key)
        values[key] = _coerce(raw, default, f"{name}.{key}")
    return section_cls(**values)


def _coerce(raw: Any, default: Any, path: str) -> Any:
    if isinstance(default, Enum):
        try:
            return type(default)(str(raw).lower())
        except ValueError:
            valid = [member.value for member in type(default)]
            raise ValueError(f"'{path}' must be one of: {valid}")
    if isinstance(default, bool):
        if not isinstance(raw, bool):
            raise ValueError(f"'{path}' must be a boolean")
        return raw
    if isinstance(default, int):
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValueError(f"'{path}' must be an integer")
        return raw
    if isinstance(default, float):
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ValueError(f"'{path}' must be a number")
        return float(raw)
    if not isinstance(raw, str):
        raise ValueError(f"'{path}' must be a string")
    return raw


def _apply_environment(settings: Settings, env: Mapping[str, str]) -> Settings:
    ledger_overrides: Dict[str, Any] = {
        "api_key": env.get("FLEXPRICE_API_KEY", ""),
        "webhook_secret": env.get("FLEXPRICE_WEBHOOK_SECRET", ""),
    }
    if env.get("FLEXPRICE_BASE_URL"):
        ledger_overrides["base_url"] = env["FLEXPRICE_BASE_URL"]
    if env.get("RESEARCH_GUARD_LEDGER_BACKEND"):
        ledger_overrides["backend"] = _coerce(
            env["RESEARCH_GUARD_LEDGER_BACKEND"], LedgerBackend.LOCAL, "RESEARCH_GUARD_LEDGER_BACKEND"
        )
    if env.get("RESEARCH_GUARD_DB_PATH"):
        ledger_overrides["db_path"] = env["RESEARCH_GUARD_DB_PATH"]

    search_overrides: Dict[str, Any] = {"api_key": env.get("AZURE_SEARCH_API_KEY", "")}
    if env.get("AZURE_SEARCH_ENDPOINT"):
        search_overrides["endpoint"] = env["AZURE_SEARCH_ENDPOINT"]
    if env.get("AZURE_SEARCH_INDEX"):
        search_overrides["index_name"] = env["AZURE_SEARCH_INDEX"]

    llm = settings.llm
    if env.get("RESEARCH_GUARD_MODEL"):
        llm = replace(llm, model=env["RESEARCH_GUARD_MODEL"])

    return replace(
        settings,
        ledger=replace(settings.ledger, **ledger_overrides),
        search=replace(settings.search, **search_overrides),
        llm=llm,
    )
