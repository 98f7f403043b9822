#!/usr/bin/env python3
"""
Release Operator command line

Runs one rollout step for every configured service, either once, in a loop,
or whenever the HTTP trigger is called.
"""

import argparse
import sys
import time
from typing import Callable, List, Optional

from tabulate import tabulate

from release_operator.clock import SystemClock
from release_operator.config import Config, load_config
from release_operator.errors import ConfigurationError, ReleaseOperatorError
from release_operator.log import FieldsAdapter, get_logger, setup_logging
from release_operator.metrics import MetricsProvider, PrometheusMetrics
from release_operator.rollout import Rollout, RolloutResult
from release_operator.service import CloudRunServiceRegistry, InMemoryServiceRegistry, ServiceRegistry
from release_operator.traffic import PlanAction

ProviderFactory = Callable[[str], MetricsProvider]


class ServiceRun:
    """Outcome of one service in a pass, successful or not"""

    def __init__(self, project: str, region: str, name: str,
                 result: Optional[RolloutResult] = None, error: Optional[str] = None):
        self.project = project
        self.region = region
        self.name = name
        self.result = result
        self.error = error

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        return {
            'project': self.project,
            'region': self.region,
            'service': self.name,
            'action': self.result.action.value if self.result else None,
            'changed': self.result.changed if self.result else False,
            'reason': self.result.reason if self.result else None,
            'error': self.error,
        }


def build_registry(config: Config) -> ServiceRegistry:
    if config.registry == 'memory':
        return InMemoryServiceRegistry.from_file(config.registry_path)
    return CloudRunServiceRegistry(token=config.registry_token, base_url=config.registry_url)


def prometheus_factory(config: Config) -> ProviderFactory:
    def factory(service_name: str) -> MetricsProvider:
        return PrometheusMetrics(config.prometheus_url, service_name)
    return factory


def run_once(
    config: Config,
    registry: ServiceRegistry,
    provider_factory: ProviderFactory,
    clock=None,
    logger: Optional[FieldsAdapter] = None
) -> List[ServiceRun]:
    """
    Run one rollout step for every configured service, one after the other.

    A failure is recorded against its service and does not stop the pass.
    """
    logger = logger or get_logger()
    clock = clock or SystemClock()
    runs = []
    for target in config.targets:
        for name in target.services:
            rollout = Rollout(provider_factory(name), registry, config.strategy, clock, logger)
            try:
                result = rollout.rollout(target.project, target.region, name)
                runs.append(ServiceRun(target.project, target.region, name, result=result))
            except ReleaseOperatorError as e:
                logger.with_fields(service=name).error(f"rollout failed: {e}")
                runs.append(ServiceRun(target.project, target.region, name, error=str(e)))
    return runs


def format_summary(runs: List[ServiceRun]) -> str:
    rows = []
    for run in runs:
        if run.failed:
            rows.append([run.project, run.region, run.name, 'error', run.error])
        else:
            action = run.result.action.value if run.result.action != PlanAction.HOLD else 'no change'
            rows.append([run.project, run.region, run.name, action, run.result.reason])
    return tabulate(rows, headers=['Project', 'Region', 'Service', 'Action', 'Details'], tablefmt='grid')


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Progressive rollout of candidate revisions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a single pass
  release-operator --config rollout.yaml --once

  # Run a pass every interval configured in the file
  release-operator --config rollout.yaml

  # Serve POST /rollout for an external scheduler
  release-operator --config rollout.yaml --http --port 8080
        """
    )
    parser.add_argument('--config', required=True, help='Path to the YAML configuration file')
    parser.add_argument('--once', action='store_true', help='Run a single pass and exit')
    parser.add_argument('--http', action='store_true', help='Serve the HTTP trigger instead of looping')
    parser.add_argument('--port', type=int, default=8080, help='Port for --http (default: 8080)')
    parser.add_argument('--verbosity', default='info', help='Log level (debug, info, warning, error)')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbosity)
    logger = get_logger()

    try:
        config = load_config(args.config)
        registry = build_registry(config)
    except (FileNotFoundError, ConfigurationError) as e:
        logger.error(f"invalid configuration: {e}")
        return 2

    factory = prometheus_factory(config)

    def run_pass() -> List[ServiceRun]:
        return run_once(config, registry, factory, logger=logger)

    if args.http:
        from release_operator.server import create_app
        create_app(run_pass).run(host='0.0.0.0', port=args.port)
        return 0

    while True:
        runs = run_pass()
        print(format_summary(runs))
        if args.once:
            return 1 if any(run.failed for run in runs) else 0
        time.sleep(config.interval.total_seconds())


if __name__ == '__main__':
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
