"""
Configuration management for SearchGate using Pydantic.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, ClassVar, Dict, Mapping, Optional, Type, cast

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

# Host options arrive in camelCase (``initialBackoffMs``); snake_case is accepted too.
_HOST_OPTION_STYLE = ConfigDict(alias_generator=to_camel, populate_by_name=True)

# --- Nested Configuration Models ---


class OperationLimit(BaseModel):
    """Request quota of one named operation (``search``, ``dictionary``, ...)."""

    model_config = _HOST_OPTION_STYLE

    max_requests: int = Field(ge=1, description="Requests allowed per window.")
    window_ms: int = Field(default=60000, ge=1, description="Length of the counting window.")
    delay_ms: int = Field(default=1000, ge=0, description="Minimum spacing between two calls.")
    retry_after_ms: int = Field(default=30000, ge=0, description="Lockout once the window is exhausted.")
    burst_allowance: int = Field(default=0, ge=0, description="Extra requests tolerated on top of max_requests.")

    @property
    def effective_limit(self) -> int:
        return self.max_requests + self.burst_allowance


def _default_operation_limits() -> Dict[str, OperationLimit]:
    return {
        "search": OperationLimit(
            max_requests=30, window_ms=60000, delay_ms=1000, retry_after_ms=30000, burst_allowance=5
        ),
        "instant_answer": OperationLimit(
            max_requests=100, window_ms=60000, delay_ms=500, retry_after_ms=15000, burst_allowance=10
        ),
        "dictionary": OperationLimit(
            max_requests=60, window_ms=60000, delay_ms=500, retry_after_ms=15000, burst_allowance=5
        ),
        "stocks": OperationLimit(
            max_requests=20, window_ms=60000, delay_ms=2000, retry_after_ms=60000, burst_allowance=3
        ),
        "currency": OperationLimit(
            max_requests=50, window_ms=60000, delay_ms=500, retry_after_ms=20000, burst_allowance=5
        ),
    }


class ReliabilityConfig(BaseModel):
    """Backoff, jitter, circuit breaker and retry settings of the shared gate."""

    model_config = _HOST_OPTION_STYLE

    empty_result_threshold: int = Field(
        default=3, ge=0, description="Consecutive empty results before backoff is applied."
    )
    initial_backoff_ms: int = Field(default=1000, ge=0, description="Initial backoff delay in milliseconds.")
    max_backoff_ms: int = Field(default=30000, ge=0, description="Upper bound of the backoff delay.")
    min_jitter_ms: int = Field(default=100, ge=0, description="Lower bound of the random jitter.")
    max_jitter_ms: int = Field(default=500, ge=0, description="Upper bound of the random jitter.")
    failure_threshold: int = Field(default=5, ge=1, description="Failures before the circuit opens.")
    circuit_reset_timeout_ms: int = Field(
        default=60000, ge=0, description="How long the circuit stays open before a trial call."
    )
    max_retries: int = Field(default=3, ge=0, description="Retries per call for retryable errors.")
    retry_delay_ms: int = Field(default=1000, ge=0, description="Base delay between retries, scaled by attempt.")
    operation_limits: Dict[str, OperationLimit] = Field(
        default_factory=_default_operation_limits,
        description="Per-operation request quotas keyed by operation name. Unlisted operations are unmetered.",
    )

    @model_validator(mode="after")
    def check_ranges(self) -> "ReliabilityConfig":
        if self.max_jitter_ms < self.min_jitter_ms:
            raise ValueError("maxJitterMs must be greater than or equal to minJitterMs")
        if self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError("maxBackoffMs must be greater than or equal to initialBackoffMs")
        return self


class PaginationOptions(BaseModel):
    """Per-call pagination limits. Also used as the configured default."""

    # Misspelled per-call options must not be dropped silently.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    max_results: int = Field(default=10, ge=1, le=50, description="Maximum number of results to return.")
    page_size: int = Field(default=10, ge=1, description="Expected number of results per full page.")
    max_pages: int = Field(default=10, ge=1, description="Maximum number of pages to request.")
    delay_between_requests_ms: int = Field(default=500, ge=0, description="Pause between page requests.")
    debug_mode: bool = Field(default=False, description="Attach technical details to surfaced errors.")
    jitter_between_requests: bool = Field(
        default=True, description="Add the gate's jitter range to the pause between pages."
    )


class CacheConfig(BaseModel):
    """Result cache and continuation-token cache settings."""

    model_config = _HOST_OPTION_STYLE

    result_ttl_seconds: float = Field(default=300.0, ge=0, description="Lifetime of cached search results.")
    token_cache_max_entries: int = Field(default=100, ge=1, description="Capacity of the token cache.")
    token_max_age_seconds: Optional[float] = Field(
        default=300.0,
        description="Age after which a continuation token is treated as expired. None disables the check.",
    )


class MonitoringConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: Optional[str] = Field(default=None, description="Path to log file. If None, logs to console.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---

_FLAT_SECTIONS: Dict[str, Type[BaseModel]] = {
    "reliability": ReliabilityConfig,
    "pagination": PaginationOptions,
    "cache": CacheConfig,
}


def _section_for_option(key: str) -> Optional[str]:
    for section, model in _FLAT_SECTIONS.items():
        for name in model.model_fields:
            if key == name or key == to_camel(name):
                return section
    return None


class Config(BaseSettings):
    project_name: str = "SearchGate"
    version: str = "0.1.0"
    reliability: ReliabilityConfig = Field(default_factory=ReliabilityConfig)
    pagination: PaginationOptions = Field(default_factory=PaginationOptions)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="SEARCHGATE_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> Config:
        """
        Build a configuration from host options.

        Accepts nested sections (``{"reliability": {...}}``) as well as the flat
        option names a workflow host passes verbatim, e.g. ``maxRetries`` or
        ``delayBetweenRequestsMs``.
        """
        data: Dict[str, Any] = {}
        for key, value in options.items():
            if key in cls.model_fields and isinstance(value, Mapping):
                data.setdefault(key, {}).update(value)
                continue
            section = _section_for_option(key)
            if section is None:
                log.warning("Ignoring unrecognized option: %s", key)
                continue
            data.setdefault(section, {})[key] = value
        return cls.model_validate(data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    paths_to_check = [
        current_dir / "searchgate.yaml",
        current_dir / "config.yaml",
        current_dir / "config.yml",
    ]
    for path in paths_to_check:
        if path.exists():
            return path
    return None


# --- Lazy Configuration Loader ---


class LazyConfig:
    """
    A proxy for the Config object that delays its loading and validation
    until an attribute is first accessed. This prevents configuration errors
    from crashing the application on import.
    """

    _config: ClassVar[Config | None] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        if self.__class__._config is None:
            with self.__class__._lock:
                if self.__class__._config is None:
                    self.__class__._config = self._load_config_with_fallback()
        return getattr(self.__class__._config, name)

    @classmethod
    def reset(cls) -> None:
        """Forget the loaded configuration so the next access reloads it."""
        with cls._lock:
            cls._config = None

    def _load_config_with_fallback(self) -> Config:
        """Load configuration from file or fall back to defaults."""
        config_path = find_config_file()
        if config_path:
            try:
                log.info("Lazy loading configuration from: %s", config_path)
                return Config.from_yaml(config_path)
            except (ValidationError, FileNotFoundError, yaml.YAMLError) as e:
                log.error(
                    "Failed to load or validate configuration from '%s': %s. "
                    "Falling back to default settings. Please check your config file.",
                    config_path,
                    e,
                    exc_info=log.getEffectiveLevel() <= logging.DEBUG,
                )
        else:
            log.info("No config file found. Using default settings for lazy load.")

        try:
            return Config()
        except ValidationError as e:
            log.critical("FATAL: Default configuration is invalid: %s", e, exc_info=True)
            raise RuntimeError(f"Default configuration is invalid, cannot start: {e}") from e


# --- Global Settings Instance ---
settings: "Config" = cast("Config", LazyConfig())
