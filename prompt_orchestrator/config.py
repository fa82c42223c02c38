"""
Configuration System

Manages engine configuration from multiple sources:
1. Default values
2. Configuration file (prompt_orchestrator.yaml)
3. Environment variables (highest priority)

Supports runtime updates and validation.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError
from .schema import BackoffStrategy, RetryPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "PROMPT_ORCHESTRATOR"
DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass
class GateConfig:
    """Gate evaluation configuration"""
    default_threshold: float = 0.7
    record_history: bool = True


@dataclass
class RetryConfig:
    """Default retry policy for workflows that do not declare one"""
    max_retries: int = 3
    backoff_strategy: str = "exponential"
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    jitter_factor: float = 0.0


@dataclass
class ExecutionConfig:
    """Workflow execution configuration"""
    default_step_timeout: Optional[float] = None  # seconds, None = no timeout
    max_rollbacks: int = 3
    retained_executions: int = 100  # finished runs kept for status polling
    default_runtime: str = "server"


@dataclass
class HistoryConfig:
    """Analytics history configuration"""
    max_entries: int = 1000


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = DEFAULT_LOG_FORMAT
    file: Optional[str] = None


@dataclass
class EngineConfig:
    """Complete engine configuration"""
    gates: GateConfig = field(default_factory=GateConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create configuration from dictionary"""
        config = cls()

        if "gates" in data:
            config.gates = GateConfig(**data["gates"])
        if "retry" in data:
            config.retry = RetryConfig(**data["retry"])
        if "execution" in data:
            config.execution = ExecutionConfig(**data["execution"])
        if "history" in data:
            config.history = HistoryConfig(**data["history"])
        if "logging" in data:
            config.logging = LoggingConfig(**data["logging"])

        return config

    def default_retry_policy(self) -> RetryPolicy:
        """
        RetryPolicy value built from the retry section

        Used for workflows and gates that declare no policy of their own.

        Raises:
            ConfigurationError: The retry section holds an unusable value
        """
        try:
            return RetryPolicy(
                max_retries=self.retry.max_retries,
                backoff_strategy=BackoffStrategy(self.retry.backoff_strategy),
                base_delay=self.retry.base_delay,
                max_delay=self.retry.max_delay,
            )
        except (ValueError, PydanticValidationError) as e:
            raise ConfigurationError(f"Invalid retry configuration: {e}") from e


class ConfigManager:
    """
    Configuration manager with multiple source support

    Load priority (highest to lowest):
    1. Environment variables
    2. Configuration file
    3. Defaults
    """

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else Path("prompt_orchestrator.yaml")
        self._config = self._load_config()

    @property
    def config(self) -> EngineConfig:
        return self._config

    def _load_config(self) -> EngineConfig:
        config = EngineConfig()

        if self.config_file.exists():
            try:
                with open(self.config_file, "r") as f:
                    file_data = yaml.safe_load(f)
                if file_data:
                    config = EngineConfig.from_dict(file_data)
            except (yaml.YAMLError, TypeError, OSError) as e:
                logger.warning(f"Failed to load config file {self.config_file}: {e}")

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: EngineConfig) -> EngineConfig:
        """
        Apply environment variable overrides

        Format: PROMPT_ORCHESTRATOR_<SECTION>_<KEY>
        Example: PROMPT_ORCHESTRATOR_GATES_DEFAULT_THRESHOLD=0.8
        """
        if threshold := os.getenv(f"{ENV_PREFIX}_GATES_DEFAULT_THRESHOLD"):
            config.gates.default_threshold = float(threshold)

        if max_retries := os.getenv(f"{ENV_PREFIX}_RETRY_MAX_RETRIES"):
            config.retry.max_retries = int(max_retries)
        if strategy := os.getenv(f"{ENV_PREFIX}_RETRY_BACKOFF_STRATEGY"):
            config.retry.backoff_strategy = strategy
        if base_delay := os.getenv(f"{ENV_PREFIX}_RETRY_BASE_DELAY"):
            config.retry.base_delay = float(base_delay)
        if max_delay := os.getenv(f"{ENV_PREFIX}_RETRY_MAX_DELAY"):
            config.retry.max_delay = float(max_delay)

        if step_timeout := os.getenv(f"{ENV_PREFIX}_EXECUTION_DEFAULT_STEP_TIMEOUT"):
            config.execution.default_step_timeout = float(step_timeout)
        if max_rollbacks := os.getenv(f"{ENV_PREFIX}_EXECUTION_MAX_ROLLBACKS"):
            config.execution.max_rollbacks = int(max_rollbacks)
        if runtime := os.getenv(f"{ENV_PREFIX}_EXECUTION_DEFAULT_RUNTIME"):
            config.execution.default_runtime = runtime

        if max_entries := os.getenv(f"{ENV_PREFIX}_HISTORY_MAX_ENTRIES"):
            config.history.max_entries = int(max_entries)

        if log_level := os.getenv(f"{ENV_PREFIX}_LOG_LEVEL"):
            config.logging.level = log_level
        if log_file := os.getenv(f"{ENV_PREFIX}_LOG_FILE"):
            config.logging.file = log_file

        return config

    def get(self, section: Optional[str] = None) -> Any:
        """Get a configuration section, or the whole config"""
        if section is None:
            return self._config
        return getattr(self._config, section, None)

    def update(self, section: str, key: str, value: Any) -> None:
        """Update configuration value at runtime"""
        section_obj = getattr(self._config, section, None)
        if section_obj is None:
            raise ValueError(f"Unknown configuration section: {section}")
        if not hasattr(section_obj, key):
            raise ValueError(f"Unknown configuration key: {section}.{key}")
        setattr(section_obj, key, value)

    def save(self, file_path: Optional[Path] = None) -> None:
        """Save configuration to file"""
        save_path = Path(file_path) if file_path else self.config_file
        save_path.parent.mkdir(parents=True, exist_ok=True)
        with open(save_path, "w") as f:
            yaml.dump(self._config.to_dict(), f, default_flow_style=False)

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration

        Returns:
            Tuple of (is_valid, errors)
        """
        errors = []
        cfg = self._config

        if not 0.0 <= cfg.gates.default_threshold <= 1.0:
            errors.append("Gate default threshold must be between 0 and 1")

        if cfg.retry.max_retries < 0:
            errors.append("Retry max retries must be non-negative")
        if cfg.retry.base_delay < 0:
            errors.append("Retry base delay must be non-negative")
        if cfg.retry.max_delay < cfg.retry.base_delay:
            errors.append("Retry max delay must be >= base delay")
        valid_strategies = [s.value for s in BackoffStrategy]
        if cfg.retry.backoff_strategy not in valid_strategies:
            errors.append(f"Retry backoff strategy must be one of: {', '.join(valid_strategies)}")

        if cfg.execution.default_step_timeout is not None and cfg.execution.default_step_timeout <= 0:
            errors.append("Default step timeout must be positive")
        if cfg.execution.max_rollbacks < 0:
            errors.append("Max rollbacks must be non-negative")
        if cfg.execution.retained_executions < 0:
            errors.append("Retained executions must be non-negative")

        if cfg.history.max_entries < 1:
            errors.append("History max entries must be at least 1")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if cfg.logging.level.upper() not in valid_levels:
            errors.append(f"Logging level must be one of: {', '.join(valid_levels)}")

        return len(errors) == 0, errors

    def reload(self) -> None:
        """Reload configuration from file"""
        self._config = self._load_config()


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Apply logging configuration to the root logger"""
    config = config or LoggingConfig()
    kwargs: Dict[str, Any] = {
        "level": getattr(logging, config.level.upper(), logging.INFO),
        "format": config.format,
        "datefmt": "%Y-%m-%d %H:%M:%S",
    }
    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        kwargs["filename"] = config.file
    logging.basicConfig(**kwargs)
