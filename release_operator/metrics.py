"""
Metrics readers for candidate health checks.

A MetricsProvider answers three questions about one revision of one service
over a trailing window: how many requests it served, how slow it was at a
given percentile and which fraction of its requests failed. PrometheusMetrics
answers them with PromQL instant queries.
"""

import math
import requests
from abc import ABC, abstractmethod
from datetime import timedelta
from enum import Enum
from typing import Dict, Optional

from release_operator.errors import ConfigurationError, MetricsError


class Aggregation(Enum):
    """Supported latency percentiles and their quantile"""
    P50 = 0.50
    P95 = 0.95
    P99 = 0.99


def percentile_to_aggregation(percentile: float) -> Aggregation:
    """Map a configured percentile (50, 95, 99) to an Aggregation"""
    for aggregation in Aggregation:
        if math.isclose(percentile, aggregation.value * 100):
            return aggregation
    raise ConfigurationError(f"unsupported percentile {percentile}, expected one of 50, 95, 99")


class MetricsProvider(ABC):
    """Reads metrics for the candidate revision of a service"""

    @abstractmethod
    def set_candidate_revision(self, revision_name: str):
        """Select the revision subsequent queries are about"""

    @abstractmethod
    def request_count(self, offset: timedelta) -> int:
        """Total requests over the window"""

    @abstractmethod
    def latency(self, offset: timedelta, aggregation: Aggregation) -> float:
        """Request latency in milliseconds at the given percentile"""

    @abstractmethod
    def error_rate(self, offset: timedelta) -> float:
        """Fraction (0..1) of requests that returned a server error"""


class PrometheusMetrics(MetricsProvider):
    """Query Prometheus for a revision's request metrics"""

    def __init__(
        self,
        prometheus_url: str,
        service_name: str,
        service_label: str = "service",
        revision_label: str = "revision",
        timeout: float = 10,
        session: Optional[requests.Session] = None
    ):
        self.prometheus_url = prometheus_url.rstrip('/')
        self.api_url = f"{self.prometheus_url}/api/v1"
        self.service_name = service_name
        self.service_label = service_label
        self.revision_label = revision_label
        self.timeout = timeout
        self.session = session or requests.Session()
        self.revision_name: Optional[str] = None

    def set_candidate_revision(self, revision_name: str):
        self.revision_name = revision_name

    def query(self, query: str) -> Dict:
        """Execute a Prometheus instant query and return its data block"""
        try:
            response = self.session.get(
                f"{self.api_url}/query",
                params={'query': query},
                timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise MetricsError(f"Prometheus query failed: {e}") from e

        if data.get('status') != 'success':
            raise MetricsError(f"Prometheus query failed: {data.get('error', data)}")

        return data['data']

    def get_metric_value(self, query: str) -> float:
        """Get a single value from a vector query, 0 when there is no sample"""
        data = self.query(query)

        if data.get('resultType') != 'vector':
            raise MetricsError(f"unexpected Prometheus result type {data.get('resultType')!r}")
        if not data.get('result'):
            return 0.0

        try:
            value = float(data['result'][0]['value'][1])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise MetricsError(f"malformed Prometheus sample: {e}") from e

        # NaN comes back when a ratio has no requests in its denominator.
        if math.isnan(value):
            return 0.0
        return value

    def request_count(self, offset: timedelta) -> int:
        query = f'sum(increase(http_requests_total{{{self._selector()}}}[{_window(offset)}]))'
        return int(round(self.get_metric_value(query)))

    def latency(self, offset: timedelta, aggregation: Aggregation) -> float:
        window = _window(offset)
        query = (
            f'histogram_quantile({aggregation.value}, '
            f'sum(rate(http_request_duration_seconds_bucket{{{self._selector()}}}[{window}])) by (le))'
        )
        # Histogram buckets are in seconds, health criteria are in milliseconds.
        return self.get_metric_value(query) * 1000

    def error_rate(self, offset: timedelta) -> float:
        window = _window(offset)
        selector = self._selector()
        query = (
            f'sum(rate(http_requests_total{{{selector},status=~"5.."}}[{window}])) / '
            f'sum(rate(http_requests_total{{{selector}}}[{window}]))'
        )
        return self.get_metric_value(query)

    def _selector(self) -> str:
        if not self.revision_name:
            raise MetricsError("candidate revision must be set before querying metrics")
        return f'{self.service_label}="{self.service_name}",{self.revision_label}="{self.revision_name}"'


def _window(offset: timedelta) -> str:
    return f"{max(int(offset.total_seconds()), 1)}s"
