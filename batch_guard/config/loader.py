"""
Configuration management and loading.

Handles runner settings from a YAML file and API keys from environment variables.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

# Environment variable holding comma-separated API keys when the config
# file has no credentials section
API_KEYS_ENV = "API_KEYS"


class ProviderKind(Enum):
    """How a response schema is delivered to the provider."""
    JSON_SCHEMA = "json_schema"
    MARKDOWN = "markdown"


@dataclass(frozen=True)
class CredentialConfig:
    """One API credential bound to a provider."""
    id: str
    provider: str
    api_key: str = field(repr=False)

    def __post_init__(self):
        """Validate credential values are present."""
        if not self.id:
            raise ValueError("credential id cannot be empty")
        if not self.api_key:
            raise ValueError(f"credential '{self.id}' has an empty API key")


@dataclass(frozen=True)
class ProviderConfig:
    """Text-generation provider settings."""
    name: str = "gemini"
    kind: ProviderKind = ProviderKind.JSON_SCHEMA
    model: str = "gemini-2.0-flash-exp"
    base_url: Optional[str] = "https://generativelanguage.googleapis.com/v1beta/openai/"
    temperature: float = 0.3
    max_tokens: Optional[int] = None
    schema_name: str = "response"
    request_timeout: float = 120.0

    def __post_init__(self):
        """Validate provider values."""
        if not self.model:
            raise ValueError("provider model cannot be empty")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Token budget per credential per window."""
    tokens_per_window: int = 2_500_000
    window_length_ms: int = 60_000
    safety_fraction: float = 0.85

    def __post_init__(self):
        """Validate rate limit values."""
        if self.tokens_per_window <= 0:
            raise ValueError("tokens_per_window must be > 0")
        if self.window_length_ms <= 0:
            raise ValueError("window_length_ms must be > 0")
        if not 0 < self.safety_fraction <= 1:
            raise ValueError("safety_fraction must be in (0, 1]")

    @property
    def window_length(self) -> float:
        """Window length in seconds."""
        return self.window_length_ms / 1000


@dataclass(frozen=True)
class RetryConfig:
    """Retry and pacing delays for the call orchestrator."""
    max_retries: int = 5
    initial_backoff_ms: int = 2000
    rate_limit_delay_ms: int = 60_000
    quota_delay_ms: int = 5000
    request_delay_ms: int = 1000

    def __post_init__(self):
        """Validate retry values."""
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        for name in ("initial_backoff_ms", "rate_limit_delay_ms", "quota_delay_ms", "request_delay_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    def backoff(self, attempt: int) -> float:
        """Exponential backoff in seconds after the given 1-based attempt."""
        return self.initial_backoff_ms * (2 ** (attempt - 1)) / 1000


@dataclass(frozen=True)
class JobConfig:
    """Batch job driver settings."""
    chunk_size: int = 1000
    flush_every_n_units: int = 1
    tolerate_unit_failures: bool = True
    clear_on_success: bool = True
    checkpoint_path: str = "./report_progress.json"

    def __post_init__(self):
        """Validate job values."""
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if self.flush_every_n_units < 1:
            raise ValueError("flush_every_n_units must be >= 1")


@dataclass(frozen=True)
class RunnerConfig:
    """Complete runner configuration."""
    credentials: Tuple[CredentialConfig, ...]
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    job: JobConfig = field(default_factory=JobConfig)

    def provider_credentials(self) -> Tuple[CredentialConfig, ...]:
        """Credentials tagged for the configured provider."""
        return tuple(c for c in self.credentials if c.provider == self.provider.name)


_SECTION_TYPES = {
    "provider": ProviderConfig,
    "rate_limit": RateLimitConfig,
    "retry": RetryConfig,
    "job": JobConfig,
}


def load_runner_config(path: str, env: Optional[Mapping[str, str]] = None) -> RunnerConfig:
    """Load and validate runner configuration from a YAML file.

    Args:
        path: Path to YAML configuration file
        env: Environment used to resolve API keys (defaults to os.environ)

    Returns:
        Validated RunnerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    env = os.environ if env is None else env
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Runner config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'credentials'} | set(_SECTION_TYPES)
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(raw_config.get(name), section_type, name)
        for name, section_type in _SECTION_TYPES.items()
    }
    provider = sections["provider"]

    if 'credentials' in raw_config:
        credentials = _parse_credentials(raw_config['credentials'], provider.name, env)
    else:
        credentials = credentials_from_env(provider.name, env)

    return RunnerConfig(credentials=credentials, **sections)


def credentials_from_env(
    provider: str,
    env: Optional[Mapping[str, str]] = None,
    env_var: str = API_KEYS_ENV,
) -> Tuple[CredentialConfig, ...]:
    """Build credentials from a comma-separated list of keys in ``env_var``.

    Blank entries are ignored. An unset variable yields no credentials.
    """
    env = os.environ if env is None else env
    keys = [k.strip() for k in env.get(env_var, "").split(",") if k.strip()]
    return tuple(
        CredentialConfig(id=f"{provider}-{i}", provider=provider, api_key=key)
        for i, key in enumerate(keys, start=1)
    )


def _parse_section(data: Any, section_type: type, path: str):
    """Parse one optional flat section into its dataclass.

    Raises:
        ValueError: If the section is not a mapping or has unknown keys
    """
    if data is None:
        return section_type()
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = set(section_type.__dataclass_fields__)
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values: Dict[str, Any] = dict(data)
    if section_type is ProviderConfig and 'kind' in values:
        kind = values['kind']
        try:
            values['kind'] = ProviderKind(str(kind).lower())
        except ValueError:
            valid_kinds = [k.value for k in ProviderKind]
            raise ValueError(f"'kind' in {path} must be one of: {valid_kinds}")

    for key, value in values.items():
        default = section_type.__dataclass_fields__[key].default
        if isinstance(default, bool) and not isinstance(value, bool):
            raise ValueError(f"'{key}' in {path} must be true or false")
        if isinstance(default, (int, float)) and not isinstance(default, bool):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{key}' in {path} must be a number")

    return section_type(**values)


def _parse_credentials(
    data: Any,
    default_provider: str,
    env: Mapping[str, str],
) -> Tuple[CredentialConfig, ...]:
    """Parse the credentials list.

    Each entry needs an ``id`` and either ``api_key`` or ``api_key_env``.

    Raises:
        ValueError: If an entry is invalid or its environment variable is unset
    """
    if not isinstance(data, list):
        raise ValueError("'credentials' must be a list")

    allowed_keys = {'id', 'provider', 'api_key', 'api_key_env'}
    credentials = []
    seen_ids = set()
    for index, entry in enumerate(data):
        path = f"credentials[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"{path} must be a dictionary")
        unknown_keys = set(entry.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

        credential_id = str(entry.get('id') or f"{default_provider}-{index + 1}")
        if credential_id in seen_ids:
            raise ValueError(f"Duplicate credential id '{credential_id}'")
        seen_ids.add(credential_id)

        if 'api_key' in entry and 'api_key_env' in entry:
            raise ValueError(f"{path} must set only one of 'api_key' or 'api_key_env'")
        if 'api_key_env' in entry:
            env_var = entry['api_key_env']
            api_key = env.get(env_var, "")
            if not api_key:
                raise ValueError(
                    f"API key not found. Set the '{env_var}' environment variable "
                    f"for credential '{credential_id}'."
                )
        elif 'api_key' in entry:
            api_key = str(entry['api_key'])
        else:
            raise ValueError(f"Missing required 'api_key' or 'api_key_env' in {path}")

        credentials.append(CredentialConfig(
            id=credential_id,
            provider=str(entry.get('provider', default_provider)),
            api_key=api_key,
        ))
    return tuple(credentials)
