"""
Vibler configuration classes.

Dataclass-based configuration loaded from YAML with environment variable
overrides. Resilience modules never read the environment themselves; they
receive policies built from this config.

Environment overrides:
    VIBLER_RETRY_MAX_ATTEMPTS, VIBLER_RETRY_BASE_DELAY, ...
    VIBLER_LLM_RETRY_MAX_ATTEMPTS, ...
    VIBLER_CIRCUIT_COOLDOWN_SECONDS, ...
    VIBLER_RATE_LIMIT_ENABLED, VIBLER_RATE_LIMIT_MAX_REQUESTS, ...
    VIBLER_LOG_LEVEL, VIBLER_LOG_DIR, VIBLER_JSON_LOGS
    VIBLER_HOST, VIBLER_PORT
    VIBLER_ENV
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from vibler.errors.exceptions import ConfigurationError
from vibler.resilience.circuit_breaker import (
    DEPENDENCY_CIRCUIT_CONFIGS,
    CircuitBreakerConfig,
)
from vibler.resilience.retry import RetryPolicy

DEFAULT_CONFIG_PATH = Path("config.yaml")

_TRUE_VALUES = ("true", "1", "yes", "on")


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _apply_env_overrides(section: Any, prefix: str) -> None:
    """Override numeric/bool fields of a section from {prefix}_{FIELD} env vars."""
    for f in fields(section):
        raw = os.getenv(f"{prefix}_{f.name.upper()}")
        if raw is None:
            continue
        current = getattr(section, f.name)
        try:
            if isinstance(current, bool):
                value: Any = _parse_bool(raw)
            elif isinstance(current, int):
                value = int(raw)
            elif isinstance(current, float):
                value = float(raw)
            else:
                value = raw
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {prefix}_{f.name.upper()}",
                {"value": raw},
            ) from e
        setattr(section, f.name, value)


@dataclass
class RetryConfig:
    """Retry backoff settings (seconds)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.2

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.backoff_multiplier = float(self.backoff_multiplier)
        self.jitter = _parse_bool(self.jitter)
        self.jitter_ratio = float(self.jitter_ratio)

    def to_policy(self) -> RetryPolicy:
        """Build the RetryPolicy (raises ConfigurationError if invalid)."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter,
            jitter_ratio=self.jitter_ratio,
        )


@dataclass
class CircuitConfig:
    """Circuit breaker settings shared by all dependencies."""

    failure_ratio_threshold: float = 0.5
    min_samples: int = 5
    window_seconds: float = 60.0
    window_max_samples: int = 100
    cooldown_seconds: float = 30.0

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        self.failure_ratio_threshold = float(self.failure_ratio_threshold)
        self.min_samples = int(self.min_samples)
        self.window_seconds = float(self.window_seconds)
        self.window_max_samples = int(self.window_max_samples)
        self.cooldown_seconds = float(self.cooldown_seconds)

    def to_breaker_config(self) -> CircuitBreakerConfig:
        """Build the CircuitBreakerConfig (raises ConfigurationError if invalid)."""
        return CircuitBreakerConfig(
            failure_ratio_threshold=self.failure_ratio_threshold,
            min_samples=self.min_samples,
            window_seconds=self.window_seconds,
            window_max_samples=self.window_max_samples,
            cooldown_seconds=self.cooldown_seconds,
        )

    @classmethod
    def from_breaker_config(cls, config: CircuitBreakerConfig) -> "CircuitConfig":
        return cls(**{f.name: getattr(config, f.name) for f in fields(cls)})


@dataclass
class RateLimitConfig:
    """Per-client fixed-window request limit for the HTTP API."""

    enabled: bool = False
    max_requests: int = 100
    window_seconds: float = 60.0

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        self.enabled = _parse_bool(self.enabled)
        self.max_requests = int(self.max_requests)
        self.window_seconds = float(self.window_seconds)


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    json_format: bool = True
    log_dir: str = "logs"
    log_to_file: bool = True

    def __post_init__(self):
        # Env overrides
        self.level = os.getenv("VIBLER_LOG_LEVEL", self.level).upper()
        self.log_dir = os.getenv("VIBLER_LOG_DIR", self.log_dir)
        self.json_format = _parse_bool(os.getenv("VIBLER_JSON_LOGS", self.json_format))
        self.log_to_file = _parse_bool(self.log_to_file)

    @property
    def level_value(self) -> int:
        return logging.getLevelName(self.level)


@dataclass
class ServerConfig:
    """HTTP server configuration."""

    # Default to localhost - use 0.0.0.0 only when external access needed
    host: str = "127.0.0.1"
    port: int = 8080

    def __post_init__(self):
        # Env overrides
        self.host = os.getenv("VIBLER_HOST", self.host)
        self.port = int(os.getenv("VIBLER_PORT", self.port))


@dataclass
class AppConfig:
    """
    Root configuration for the Vibler service.

    Loads from YAML file with environment variable overrides.
    """

    retry: RetryConfig = field(default_factory=RetryConfig)
    llm_retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_attempts=4, base_delay=2.0)
    )
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    # Per-dependency breaker settings, layered over the built-in presets
    circuits: Dict[str, CircuitConfig] = field(default_factory=dict)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    # Dependencies that use the llm_retry policy
    llm_dependencies: List[str] = field(default_factory=lambda: ["openai"])

    environment: str = "development"

    def __post_init__(self):
        # Env overrides
        _apply_env_overrides(self.retry, "VIBLER_RETRY")
        _apply_env_overrides(self.llm_retry, "VIBLER_LLM_RETRY")
        _apply_env_overrides(self.circuit, "VIBLER_CIRCUIT")
        _apply_env_overrides(self.rate_limit, "VIBLER_RATE_LIMIT")
        self.environment = os.getenv("VIBLER_ENV", self.environment)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def retry_policy(self) -> RetryPolicy:
        return self.retry.to_policy()

    def llm_retry_policy(self) -> RetryPolicy:
        return self.llm_retry.to_policy()

    def dependency_policies(self) -> Dict[str, RetryPolicy]:
        """Per-dependency retry policies (LLM dependencies only)."""
        policy = self.llm_retry_policy()
        return {name: policy for name in self.llm_dependencies}

    def circuit_config(self) -> CircuitBreakerConfig:
        return self.circuit.to_breaker_config()

    def dependency_circuit_configs(self) -> Dict[str, CircuitBreakerConfig]:
        """Breaker settings per dependency: built-in presets, then `circuits`."""
        configs = dict(DEPENDENCY_CIRCUIT_CONFIGS)
        for name, section in self.circuits.items():
            configs[name] = section.to_breaker_config()
        return configs

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        for name, build in (
            ("retry", self.retry_policy),
            ("llm_retry", self.llm_retry_policy),
            ("circuit", self.circuit_config),
        ):
            try:
                build()
            except ConfigurationError as e:
                errors.append(f"{name}: {e.message}")

        for name, section in self.circuits.items():
            try:
                section.to_breaker_config()
            except ConfigurationError as e:
                errors.append(f"circuits.{name}: {e.message}")

        if self.rate_limit.max_requests < 1:
            errors.append("rate_limit.max_requests must be >= 1")
        if self.rate_limit.window_seconds <= 0:
            errors.append("rate_limit.window_seconds must be positive")

        if not isinstance(self.logging.level_value, int):
            errors.append(f"logging.level is not a valid level: '{self.logging.level}'")
        if not 1 <= self.server.port <= 65535:
            errors.append("server.port must be between 1 and 65535")
        for name in self.llm_dependencies:
            if not name or not name.strip():
                errors.append("llm_dependencies contains empty value")

        return errors

    def is_valid(self) -> bool:
        """Check if configuration is valid."""
        return len(self.validate()) == 0


def _dependency_circuit(name: str, section: Dict[str, Any]) -> CircuitConfig:
    """Circuit section for one dependency; unset fields keep its preset."""
    preset = DEPENDENCY_CIRCUIT_CONFIGS.get(name)
    if preset is None:
        return CircuitConfig(**section)
    base = asdict(CircuitConfig.from_breaker_config(preset))
    return CircuitConfig(**_deep_merge(base, section))


def _dict_to_config(data: Dict[str, Any]) -> AppConfig:
    """Convert dict to AppConfig with nested dataclasses."""
    kwargs: Dict[str, Any] = {
        "retry": RetryConfig(**data.get("retry", {})),
        "circuit": CircuitConfig(**data.get("circuit", {})),
        "circuits": {
            name: _dependency_circuit(name, section or {})
            for name, section in (data.get("circuits") or {}).items()
        },
        "rate_limit": RateLimitConfig(**data.get("rate_limit", {})),
        "logging": LoggingConfig(**data.get("logging", {})),
        "server": ServerConfig(**data.get("server", {})),
        "environment": data.get("environment", "development"),
    }
    if "llm_retry" in data:
        llm_defaults = {"max_attempts": 4, "base_delay": 2.0}
        kwargs["llm_retry"] = RetryConfig(**_deep_merge(llm_defaults, data["llm_retry"]))
    if "llm_dependencies" in data:
        kwargs["llm_dependencies"] = list(data["llm_dependencies"])
    return AppConfig(**kwargs)


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> AppConfig:
    """
    Load configuration from YAML file with optional overrides.

    Args:
        config_path: Path to YAML config file (default: config.yaml in cwd)
        overrides: Dict of overrides to apply after loading

    Returns:
        AppConfig instance

    Raises:
        yaml.YAMLError: If config file is invalid YAML
    """
    config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    # Load base config from YAML
    if config_path.exists():
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Apply overrides
    if overrides:
        data = _deep_merge(data, overrides)

    return _dict_to_config(data)


def load_config_from_dict(data: Dict[str, Any]) -> AppConfig:
    """
    Load configuration from a dictionary.

    Useful for testing or programmatic config.
    """
    return _dict_to_config(data)
