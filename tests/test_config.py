from datetime import timedelta

import pytest

from release_operator.config import (
    HealthCriterion,
    MetricsCheck,
    Strategy,
    expand_env_vars,
    load_config,
    parse_duration,
)
from release_operator.errors import ConfigurationError


CONFIG = """
targets:
  - project: my-project
    region: us-east1
    services: [checkout, cart]
metrics:
  prometheus_url: ${PROM_URL:-http://prometheus:9090}
registry:
  kind: cloudrun
  token: ${RUN_TOKEN}
interval: 2m
strategy:
  steps: [5, 30, 60]
  health_check_offset: 15m
  time_between_rollouts: 1h
  health_criteria:
    - metric: request-count
      threshold: 100
    - metric: latency
      percentile: 99
      threshold: 750
    - metric: error-rate
      threshold: 0.5
"""


def write_config(tmp_path, text=CONFIG):
    path = tmp_path / 'rollout.yaml'
    path.write_text(text)
    return str(path)


def test_load_config(tmp_path, monkeypatch):
    monkeypatch.setenv('RUN_TOKEN', 'secret-token')
    monkeypatch.delenv('PROM_URL', raising=False)
    config = load_config(write_config(tmp_path))

    assert config.targets[0].services == ['checkout', 'cart']
    assert config.prometheus_url == 'http://prometheus:9090'
    assert config.registry_token == 'secret-token'
    assert config.interval == timedelta(minutes=2)
    assert config.strategy.steps == [5, 30, 60]
    assert config.strategy.health_check_offset == timedelta(minutes=15)
    assert config.strategy.time_between_rollouts == timedelta(hours=1)
    assert config.strategy.health_criteria == [
        HealthCriterion(MetricsCheck.REQUEST_COUNT, 100.0),
        HealthCriterion(MetricsCheck.LATENCY, 750.0, 99.0),
        HealthCriterion(MetricsCheck.ERROR_RATE, 0.5),
    ]


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / 'nope.yaml'))


def test_invalid_metric_rejected(tmp_path):
    text = CONFIG.replace('metric: error-rate', 'metric: cpu')
    with pytest.raises(ConfigurationError):
        load_config(write_config(tmp_path, text))


def test_invalid_percentile_rejected(tmp_path):
    text = CONFIG.replace('percentile: 99', 'percentile: 90')
    with pytest.raises(ConfigurationError):
        load_config(write_config(tmp_path, text))


def test_missing_targets_rejected(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(write_config(tmp_path, "strategy: {}\n"))


def test_memory_registry_needs_services_file(tmp_path):
    text = CONFIG.replace('kind: cloudrun', 'kind: memory')
    with pytest.raises(ConfigurationError):
        load_config(write_config(tmp_path, text))


def test_memory_registry_path_is_relative_to_config(tmp_path):
    text = CONFIG.replace('kind: cloudrun', 'kind: memory\n  path: services.yaml')
    config = load_config(write_config(tmp_path, text))
    assert config.registry == 'memory'
    assert config.registry_path == str(tmp_path / 'services.yaml')


def test_unknown_registry_kind_rejected(tmp_path):
    text = CONFIG.replace('kind: cloudrun', 'kind: etcd')
    with pytest.raises(ConfigurationError):
        load_config(write_config(tmp_path, text))


@pytest.mark.parametrize('steps', [[], [5, 5, 50], [50, 20], [0, 10], [10, 101]])
def test_invalid_steps(steps):
    strategy = Strategy(steps=steps, health_criteria=[HealthCriterion(MetricsCheck.ERROR_RATE, 1.0)])
    with pytest.raises(ConfigurationError):
        strategy.validate()


def test_empty_criteria_rejected():
    with pytest.raises(ConfigurationError):
        Strategy().validate()


def test_parse_duration():
    assert parse_duration(90) == timedelta(seconds=90)
    assert parse_duration('45s') == timedelta(seconds=45)
    assert parse_duration('30m') == timedelta(minutes=30)
    assert parse_duration('1.5h') == timedelta(minutes=90)
    with pytest.raises(ConfigurationError):
        parse_duration('soon')


def test_expand_env_vars(monkeypatch):
    monkeypatch.setenv('REGION', 'europe-west1')
    monkeypatch.delenv('PROJECT', raising=False)
    data = {'targets': [{'region': '${REGION}', 'project': '${PROJECT:-fallback}'}], 'steps': [5, 10]}
    assert expand_env_vars(data) == {
        'targets': [{'region': 'europe-west1', 'project': 'fallback'}],
        'steps': [5, 10],
    }
