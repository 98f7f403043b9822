"""
Configuration loading for the release operator.

Reads the rollout strategy and the managed services from a YAML file.
Environment variable references in the file are substituted before parsing,
so secrets such as API tokens do not have to live in the file itself.
"""

import os
import re
import yaml
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from release_operator.errors import ConfigurationError


SUPPORTED_PERCENTILES = (50.0, 95.0, 99.0)

DEFAULT_STEPS = [5, 20, 50, 80]
DEFAULT_HEALTH_CHECK_OFFSET = timedelta(minutes=30)
DEFAULT_TIME_BETWEEN_ROLLOUTS = timedelta(minutes=30)


class MetricsCheck(Enum):
    """Metric kinds a health criterion can check"""
    REQUEST_COUNT = "request-count"
    LATENCY = "latency"
    ERROR_RATE = "error-rate"


@dataclass(frozen=True)
class HealthCriterion:
    """A threshold rule against one metric"""
    metric: MetricsCheck
    threshold: float
    percentile: float = 0.0  # only meaningful for latency


@dataclass
class Strategy:
    """How a candidate moves from its first step to promotion"""
    steps: List[int] = field(default_factory=lambda: list(DEFAULT_STEPS))
    health_criteria: List[HealthCriterion] = field(default_factory=list)
    health_check_offset: timedelta = DEFAULT_HEALTH_CHECK_OFFSET
    time_between_rollouts: timedelta = DEFAULT_TIME_BETWEEN_ROLLOUTS

    def validate(self):
        """Raise ConfigurationError if the strategy cannot drive a rollout"""
        if not self.steps:
            raise ConfigurationError("steps must not be empty")
        previous = 0
        for step in self.steps:
            if isinstance(step, bool) or not isinstance(step, int):
                raise ConfigurationError(f"step {step!r} must be an integer")
            if step < 1 or step > 100:
                raise ConfigurationError(f"step {step} must be between 1 and 100")
            if step <= previous:
                raise ConfigurationError(f"steps must be strictly increasing, got {self.steps}")
            previous = step

        if not self.health_criteria:
            raise ConfigurationError("health criteria must be specified")
        for i, criterion in enumerate(self.health_criteria):
            if criterion.threshold < 0:
                raise ConfigurationError(
                    f"health criterion {i} ({criterion.metric.value}): threshold must not be negative"
                )
            if criterion.metric == MetricsCheck.LATENCY and criterion.percentile not in SUPPORTED_PERCENTILES:
                raise ConfigurationError(
                    f"health criterion {i} (latency): unsupported percentile {criterion.percentile}, "
                    f"expected one of {list(SUPPORTED_PERCENTILES)}"
                )

        if self.health_check_offset <= timedelta(0):
            raise ConfigurationError("health check offset must be positive")
        if self.time_between_rollouts < timedelta(0):
            raise ConfigurationError("time between rollouts must not be negative")


@dataclass
class Target:
    """Services managed in one project/region"""
    project: str
    region: str
    services: List[str]


@dataclass
class Config:
    """Top-level operator configuration"""
    strategy: Strategy
    targets: List[Target]
    prometheus_url: str = "http://localhost:9090"
    registry: str = "cloudrun"  # cloudrun | memory
    registry_url: Optional[str] = None
    registry_token: Optional[str] = None
    registry_path: Optional[str] = None  # services file seeding the memory registry
    interval: timedelta = timedelta(minutes=1)


def expand_env_vars(value: Any) -> Any:
    """
    Recursively expand environment variables in configuration values.

    Supports syntax: ${VAR_NAME} or ${VAR_NAME:-default_value}
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replacer(match):
            return os.getenv(match.group(1), match.group(2) or '')

        return re.sub(pattern, replacer, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    return value


_DURATION_UNITS = {'s': 1, 'm': 60, 'h': 3600}


def parse_duration(value: Any) -> timedelta:
    """
    Parse a duration such as 90, "90s", "30m" or "1h".

    Bare numbers are seconds.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=value)
    if isinstance(value, str):
        match = re.fullmatch(r'\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*', value)
        if match:
            unit = match.group(2) or 's'
            return timedelta(seconds=float(match.group(1)) * _DURATION_UNITS[unit])
    raise ConfigurationError(f"invalid duration: {value!r}")


def parse_health_criterion(data: Dict[str, Any]) -> HealthCriterion:
    if not isinstance(data, dict):
        raise ConfigurationError(f"health criterion must be a mapping, got {data!r}")
    try:
        metric = MetricsCheck(data.get('metric'))
    except ValueError:
        raise ConfigurationError(f"unsupported metric {data.get('metric')!r}") from None
    try:
        threshold = float(data['threshold'])
        percentile = float(data.get('percentile', 0.0))
    except KeyError:
        raise ConfigurationError(f"health criterion {metric.value} is missing a threshold") from None
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"health criterion {metric.value}: {e}") from e
    return HealthCriterion(metric=metric, threshold=threshold, percentile=percentile)


def parse_strategy(data: Dict[str, Any]) -> Strategy:
    strategy = Strategy(
        steps=list(data.get('steps', DEFAULT_STEPS)),
        health_criteria=[parse_health_criterion(c) for c in data.get('health_criteria', [])],
        health_check_offset=parse_duration(data.get('health_check_offset', DEFAULT_HEALTH_CHECK_OFFSET)),
        time_between_rollouts=parse_duration(data.get('time_between_rollouts', DEFAULT_TIME_BETWEEN_ROLLOUTS)),
    )
    strategy.validate()
    return strategy


def parse_config(data: Dict[str, Any]) -> Config:
    """Build a validated Config from an already-expanded mapping"""
    if not isinstance(data, dict):
        raise ConfigurationError("configuration must be a mapping")

    targets = []
    for entry in data.get('targets', []):
        try:
            targets.append(Target(
                project=str(entry['project']),
                region=str(entry['region']),
                services=[str(s) for s in entry.get('services', [])],
            ))
        except (KeyError, TypeError) as e:
            raise ConfigurationError(f"invalid target {entry!r}: missing {e}") from e
    if not targets:
        raise ConfigurationError("at least one target must be configured")

    metrics = data.get('metrics', {}) or {}
    registry = data.get('registry', {}) or {}
    registry_kind = registry.get('kind', 'cloudrun')
    if registry_kind not in ('cloudrun', 'memory'):
        raise ConfigurationError(f"unsupported registry kind {registry_kind!r}")
    if registry_kind == 'memory' and not registry.get('path'):
        raise ConfigurationError("registry kind 'memory' needs a services file in registry.path")

    return Config(
        strategy=parse_strategy(data.get('strategy', {}) or {}),
        targets=targets,
        prometheus_url=metrics.get('prometheus_url', "http://localhost:9090"),
        registry=registry_kind,
        registry_url=registry.get('url') or None,
        registry_token=registry.get('token') or None,
        registry_path=registry.get('path') or None,
        interval=parse_duration(data.get('interval', 60)),
    )


def load_config(config_path: str) -> Config:
    """
    Load YAML configuration file with environment variable expansion.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated Config

    Raises:
        FileNotFoundError: if the file does not exist
        ConfigurationError: if the file content is invalid
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in {config_path}: {e}") from e

    config = parse_config(expand_env_vars(data or {}))

    # A relative services file is read next to the configuration file.
    if config.registry_path and not Path(config.registry_path).is_absolute():
        config.registry_path = str(config_file.parent / config.registry_path)

    return config
