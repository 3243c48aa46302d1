"""
Configuration management and loading.

Handles quota limits, validation policy, retry policy and provider
endpoints. API keys are never stored in the file; each provider names the
environment variable that holds its key.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_orchestrator.core.pricing import PRICING_TABLE
from ai_orchestrator.core.retry import RetryPolicy
from ai_orchestrator.storage.db import DEFAULT_DB_PATH

PRIMARY_SEARCH = "primary_search"
SECONDARY_SEARCH = "secondary_search"
COMPLETION = "completion"
STYLING = "styling"

PROVIDER_IDS = (PRIMARY_SEARCH, SECONDARY_SEARCH, COMPLETION, STYLING)


@dataclass(frozen=True)
class QuotaConfig:
    """Dollar limits enforced before any provider call."""
    daily: Decimal = Decimal("50.0")
    monthly: Decimal = Decimal("1000.0")
    per_user_daily: Decimal = Decimal("5.0")
    max_cost_per_request: Decimal = Decimal("10.0")

    def __post_init__(self):
        """Validate quota values are positive."""
        for name in ("daily", "monthly", "per_user_daily", "max_cost_per_request"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} quota must be > 0")


@dataclass(frozen=True)
class ValidationConfig:
    """Acceptance threshold for the response validator."""
    threshold: int = 50

    def __post_init__(self):
        if not 0 <= self.threshold <= 100:
            raise ValueError("validation threshold must be between 0 and 100")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 1
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    jitter: float = 0.25

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            jitter=self.jitter,
        )


@dataclass(frozen=True)
class ProviderSettings:
    """Endpoint settings for one provider slot."""
    provider_id: str
    api_key_env: str
    base_url: Optional[str] = None
    model: Optional[str] = None

    def api_key(self) -> Optional[str]:
        """Read the API key from the environment (None when unset or blank)."""
        value = os.getenv(self.api_key_env)
        return value if value and value.strip() else None


def _default_providers() -> Dict[str, ProviderSettings]:
    return {
        PRIMARY_SEARCH: ProviderSettings(
            provider_id=PRIMARY_SEARCH,
            api_key_env="PERPLEXITY_API_KEY",
            base_url="https://api.perplexity.ai",
            model="llama-3.1-sonar-large-128k-online",
        ),
        SECONDARY_SEARCH: ProviderSettings(
            provider_id=SECONDARY_SEARCH,
            api_key_env="OPENAI_API_KEY",
            model="gpt-4o",
        ),
        COMPLETION: ProviderSettings(
            provider_id=COMPLETION,
            api_key_env="OPENAI_API_KEY",
        ),
        STYLING: ProviderSettings(
            provider_id=STYLING,
            api_key_env="ANTHROPIC_API_KEY",
            base_url="https://api.anthropic.com/v1/",
            model="claude-3-5-sonnet-20241022",
        ),
    }


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    providers: Dict[str, ProviderSettings] = field(default_factory=_default_providers)
    collaboration_delay_s: float = 2.0
    db_path: str = DEFAULT_DB_PATH

    def provider(self, provider_id: str) -> ProviderSettings:
        """Get settings for a provider slot.

        Raises:
            ValueError: If the slot is unknown
        """
        if provider_id not in self.providers:
            raise ValueError(f"Unknown provider: {provider_id}")
        return self.providers[provider_id]


def default_config() -> AppConfig:
    """Built-in configuration used when no file is given."""
    return AppConfig()


def load_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Unknown keys and out-of-range values are rejected so a typo cannot
    silently loosen a quota.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
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
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'quota', 'validation', 'retry', 'providers', 'collaboration', 'database'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    defaults = default_config()

    quota = _parse_quota(_section(raw_config, 'quota'), defaults.quota)
    validation = _parse_validation(_section(raw_config, 'validation'), defaults.validation)
    retry = _parse_retry(_section(raw_config, 'retry'), defaults.retry)
    providers = _parse_providers(_section(raw_config, 'providers'), defaults.providers)

    collaboration = _section(raw_config, 'collaboration')
    _reject_unknown(collaboration, {'delay_s'}, 'collaboration')
    delay = _number(collaboration.get('delay_s', defaults.collaboration_delay_s), 'collaboration.delay_s')
    if delay < 0:
        raise ValueError("'collaboration.delay_s' cannot be negative")

    database = _section(raw_config, 'database')
    _reject_unknown(database, {'path'}, 'database')
    db_path = database.get('path', defaults.db_path)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'database.path' must be a non-empty string")

    return AppConfig(
        quota=quota,
        validation=validation,
        retry=retry,
        providers=providers,
        collaboration_delay_s=float(delay),
        db_path=db_path,
    )


def _section(raw: Dict, name: str) -> Dict:
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return value


def _decimal(value: Any, path: str) -> Decimal:
    _number(value, path)
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if result <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return result


def _parse_quota(data: Dict, defaults: QuotaConfig) -> QuotaConfig:
    allowed = {'daily', 'monthly', 'per_user_daily', 'max_cost_per_request'}
    _reject_unknown(data, allowed, 'quota')
    values = {
        key: _decimal(data[key], f"quota.{key}") if key in data else getattr(defaults, key)
        for key in allowed
    }
    return QuotaConfig(**values)


def _parse_validation(data: Dict, defaults: ValidationConfig) -> ValidationConfig:
    _reject_unknown(data, {'threshold'}, 'validation')
    threshold = data.get('threshold', defaults.threshold)
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise ValueError("'validation.threshold' must be an integer")
    if not 0 <= threshold <= 100:
        raise ValueError("'validation.threshold' must be between 0 and 100")
    return ValidationConfig(threshold=threshold)


def _parse_retry(data: Dict, defaults: RetryConfig) -> RetryConfig:
    _reject_unknown(data, {'max_attempts', 'backoff_base', 'backoff_max', 'jitter'}, 'retry')

    max_attempts = data.get('max_attempts', defaults.max_attempts)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        raise ValueError("'retry.max_attempts' must be an integer >= 1")

    floats = {}
    for key in ('backoff_base', 'backoff_max', 'jitter'):
        value = _number(data.get(key, getattr(defaults, key)), f"retry.{key}")
        if value < 0:
            raise ValueError(f"'retry.{key}' cannot be negative")
        floats[key] = float(value)

    return RetryConfig(max_attempts=max_attempts, **floats)


def _parse_providers(data: Dict, defaults: Dict[str, ProviderSettings]) -> Dict[str, ProviderSettings]:
    _reject_unknown(data, set(PROVIDER_IDS), 'providers')

    providers = dict(defaults)
    for provider_id, provider_data in data.items():
        path = f"providers.{provider_id}"
        if not isinstance(provider_data, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _reject_unknown(provider_data, {'api_key_env', 'base_url', 'model'}, path)

        base = defaults[provider_id]
        api_key_env = provider_data.get('api_key_env', base.api_key_env)
        if not isinstance(api_key_env, str) or not api_key_env.strip():
            raise ValueError(f"'{path}.api_key_env' must be a non-empty string")

        base_url = provider_data.get('base_url', base.base_url)
        if base_url is not None and not isinstance(base_url, str):
            raise ValueError(f"'{path}.base_url' must be a string")

        model = provider_data.get('model', base.model)
        if model is not None:
            if not isinstance(model, str):
                raise ValueError(f"'{path}.model' must be a string")
            if not PRICING_TABLE.supports(model):
                raise ValueError(f"'{path}.model' has no pricing entry: {model}")

        providers[provider_id] = ProviderSettings(
            provider_id=provider_id,
            api_key_env=api_key_env,
            base_url=base_url,
            model=model,
        )

    return providers
