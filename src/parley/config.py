"""
Parley configuration - every tunable number in one record.

Loaded from YAML (project ``parley.yaml`` or ``~/.parley/config.yaml``,
overridable with PARLEY_CONFIG). Missing file means defaults.

Example::

    matching:
      fuzzy_threshold: 0.75
    timing:
      implicit_feedback_seconds: 3
"""

import os
import threading
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

from .errors import ConfigError


CONFIG_DIR = Path.home() / ".parley"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "config.yaml"
PROJECT_CONFIG_PATH = Path("parley.yaml")
ENV_CONFIG_PATH = "PARLEY_CONFIG"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _checked(name: str, value: Any, default: Any) -> Any:
    """Check a value from YAML against the type of the field's default."""
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{name} must be true or false, got {value!r}")
    elif isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigError(f"{name} must be an integer, got {value!r}")
    elif isinstance(default, float):
        if not _is_number(value):
            raise ConfigError(f"{name} must be a number, got {value!r}")
    elif isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigError(f"{name} must be a string, got {value!r}")
    elif default is None:
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"{name} must be a string, got {value!r}")
    return value


@dataclass
class MatchingConfig:
    fuzzy_threshold: float = 0.70    # normalized fuzz.ratio, inclusive
    max_command_words: int = 7


@dataclass
class PolicyConfig:
    execute_threshold: float = 0.70
    confirm_threshold: float = 0.50
    auto_learn_threshold: float = 0.90
    remove_learned_floor: float = 0.30


@dataclass
class AdjustmentConfig:
    """Confidence deltas applied by the learning loop."""
    implicit_positive: float = 0.02    # used, no correction
    explicit_positive: float = 0.10    # "yes" to a confirmation
    explicit_negative: float = -0.15   # "no" to a confirmation
    immediate_undo: float = -0.10
    correction_wrong: float = -0.20
    correction_right: float = 0.85     # initial confidence of a corrected mapping
    unused_decay: float = -0.05


@dataclass
class TimingConfig:
    implicit_feedback_seconds: float = 5.0
    confirmation_timeout_seconds: float = 10.0
    correction_timeout_seconds: float = 10.0
    stale_after_days: int = 30
    training_listening_seconds: float = 25.0
    training_collecting_seconds: float = 15.0
    training_confirming_seconds: float = 20.0
    training_warning_seconds: float = 10.0   # "Still there?" this long before a timeout


@dataclass
class ResolverConfig:
    enabled: bool = True
    cache_ttl_seconds: float = 300.0
    cache_max_size: int = 100
    model: str = "haiku"
    timeout_seconds: float = 8.0


@dataclass
class StorageConfig:
    data_dir: str = str(CONFIG_DIR)
    store_file: str = "personal_commands.json"
    seed_file: Optional[str] = None   # None = bundled default_commands.yaml

    @property
    def store_path(self) -> Path:
        return Path(self.data_dir).expanduser() / self.store_file


@dataclass
class ParleyConfig:
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    adjustments: AdjustmentConfig = field(default_factory=AdjustmentConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParleyConfig":
        config = cls()
        for section in fields(cls):
            raw = data.get(section.name)
            if raw is None:
                continue
            if not isinstance(raw, dict):
                raise ConfigError(f"Section '{section.name}' must be a mapping")
            target = getattr(config, section.name)
            known = {f.name: f for f in fields(target)}
            for key, value in raw.items():
                if key not in known:
                    logger.warning(f"[config] Ignoring unknown key: {section.name}.{key}")
                    continue
                setattr(target, key, _checked(f"{section.name}.{key}", value, getattr(target, key)))

        for key in data:
            if key not in {f.name for f in fields(cls)}:
                logger.warning(f"[config] Ignoring unknown section: {key}")

        config.validate()
        return config

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ParleyConfig":
        """Load config from YAML, falling back to defaults when absent."""
        path = find_config_path(path)
        if path is None:
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must be a mapping")

        logger.debug(f"[config] Loaded {path}")
        return cls.from_dict(data)

    def validate(self) -> None:
        """Raise ConfigError for values that would break the invariants."""
        unit_values = {
            "matching.fuzzy_threshold": self.matching.fuzzy_threshold,
            "policy.execute_threshold": self.policy.execute_threshold,
            "policy.confirm_threshold": self.policy.confirm_threshold,
            "policy.auto_learn_threshold": self.policy.auto_learn_threshold,
            "policy.remove_learned_floor": self.policy.remove_learned_floor,
            "adjustments.correction_right": self.adjustments.correction_right,
        }
        for name, value in unit_values.items():
            if not _is_number(value) or not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value!r}")

        for f in fields(self.adjustments):
            if not _is_number(getattr(self.adjustments, f.name)):
                raise ConfigError(f"adjustments.{f.name} must be a number")

        if self.policy.confirm_threshold > self.policy.execute_threshold:
            raise ConfigError("policy.confirm_threshold must not exceed policy.execute_threshold")

        for name in ("implicit_feedback_seconds", "confirmation_timeout_seconds",
                     "correction_timeout_seconds", "stale_after_days",
                     "training_listening_seconds", "training_collecting_seconds",
                     "training_confirming_seconds", "training_warning_seconds"):
            value = getattr(self.timing, name)
            if not _is_number(value) or value <= 0:
                raise ConfigError(f"timing.{name} must be positive")

        for name, value in (("matching.max_command_words", self.matching.max_command_words),
                            ("resolver.cache_max_size", self.resolver.cache_max_size)):
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be an integer of at least 1, got {value!r}")
        if not _is_number(self.resolver.cache_ttl_seconds) or self.resolver.cache_ttl_seconds < 0:
            raise ConfigError("resolver.cache_ttl_seconds must not be negative")
        if not _is_number(self.resolver.timeout_seconds) or self.resolver.timeout_seconds <= 0:
            raise ConfigError("resolver.timeout_seconds must be positive")


def find_config_path(path: Optional[Path] = None) -> Optional[Path]:
    """Find the config file in order of precedence, or None."""
    if path is not None:
        return Path(path) if Path(path).exists() else None

    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path) if Path(env_path).exists() else None

    if PROJECT_CONFIG_PATH.exists():
        return PROJECT_CONFIG_PATH
    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    return None


_config: Optional[ParleyConfig] = None
_config_lock = threading.Lock()


def get_config() -> ParleyConfig:
    """Process-wide config for the CLI. Library code takes it by argument."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = ParleyConfig.load()
    return _config


def reload_config() -> ParleyConfig:
    global _config
    with _config_lock:
        _config = None
    return get_config()
