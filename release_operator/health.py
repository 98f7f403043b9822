"""
Candidate health diagnosis.

Turns metric values into a verdict against the configured health criteria and
renders that verdict as the human-readable report stored on the service.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import List, Optional

from release_operator.config import HealthCriterion, MetricsCheck
from release_operator.errors import ConfigurationError, MetricsError
from release_operator.log import FieldsAdapter, ensure_logger
from release_operator.metrics import MetricsProvider, percentile_to_aggregation


class DiagnosisResult(Enum):
    """Possible outcomes of a diagnosis"""
    UNKNOWN = "unknown"
    INCONCLUSIVE = "inconclusive"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class CheckResult:
    """Outcome of checking one health criterion"""
    threshold: float
    actual_value: float
    is_criteria_met: bool = False


@dataclass(frozen=True)
class Diagnosis:
    """Overall verdict plus one check result per evaluated criterion"""
    overall_result: DiagnosisResult
    check_results: List[CheckResult] = field(default_factory=list)


def is_criteria_met(metric: MetricsCheck, threshold: float, actual_value: float) -> bool:
    # Request count is the only minimum bound; every other threshold is a maximum.
    if metric == MetricsCheck.REQUEST_COUNT:
        return actual_value >= threshold
    return actual_value <= threshold


def diagnose(
    health_criteria: List[HealthCriterion],
    actual_values: List[float],
    logger: Optional[FieldsAdapter] = None
) -> Diagnosis:
    """
    Determine the health of a revision from its metric values.

    The values are positionally paired with the criteria. An unmet request
    count means there was not enough traffic to judge anything, so the result
    is INCONCLUSIVE with no check results. Otherwise any unmet criterion makes
    the revision UNHEALTHY, and at least one met criterion other than request
    count is needed for HEALTHY.

    Raises:
        ConfigurationError: if the lists are empty or differ in length
    """
    logger = ensure_logger(logger)
    if len(health_criteria) != len(actual_values):
        raise ConfigurationError(
            f"got {len(actual_values)} metric values for {len(health_criteria)} health criteria"
        )
    if not health_criteria:
        raise ConfigurationError("health criteria must be specified")

    diagnosis = DiagnosisResult.UNKNOWN
    results: List[CheckResult] = []
    for criterion, value in zip(health_criteria, actual_values):
        check_logger = logger.with_fields(
            metric=criterion.metric.value,
            percentile=criterion.percentile,
            threshold=criterion.threshold,
            actual_value=value,
        )
        met = is_criteria_met(criterion.metric, criterion.threshold, value)

        if not met and criterion.metric == MetricsCheck.REQUEST_COUNT:
            check_logger.debug("unmet criterion")
            diagnosis = DiagnosisResult.INCONCLUSIVE
            results = []
            break

        if not met:
            check_logger.debug("unmet criterion")
            diagnosis = DiagnosisResult.UNHEALTHY
            results.append(CheckResult(criterion.threshold, value, False))
            continue

        if diagnosis == DiagnosisResult.UNKNOWN and criterion.metric != MetricsCheck.REQUEST_COUNT:
            diagnosis = DiagnosisResult.HEALTHY
        results.append(CheckResult(criterion.threshold, value, True))
        check_logger.debug("met criterion")

    return Diagnosis(diagnosis, results)


def collect_metrics(
    provider: MetricsProvider,
    offset: timedelta,
    health_criteria: List[HealthCriterion],
    logger: Optional[FieldsAdapter] = None
) -> List[float]:
    """
    Read one metric value per health criterion, in order.

    Collection stops at the first failure; no partial list is returned.

    Raises:
        ConfigurationError: empty criteria or an unsupported metric/percentile
        MetricsError: the provider failed, naming the metric kind
    """
    logger = ensure_logger(logger)
    if not health_criteria:
        raise ConfigurationError("health criteria must be specified")

    values = []
    for criterion in health_criteria:
        metric = criterion.metric
        try:
            if metric == MetricsCheck.REQUEST_COUNT:
                logger.debug("querying for request count metrics")
                value = float(provider.request_count(offset))
            elif metric == MetricsCheck.LATENCY:
                aggregation = percentile_to_aggregation(criterion.percentile)
                logger.with_fields(percentile=criterion.percentile).debug("querying for latency metrics")
                value = float(provider.latency(offset, aggregation))
            elif metric == MetricsCheck.ERROR_RATE:
                logger.debug("querying for error rate metrics")
                value = float(provider.error_rate(offset)) * 100
            else:
                raise ConfigurationError(f"unimplemented metrics {metric!r}")
        except ConfigurationError:
            raise
        except Exception as e:
            name = metric.value if isinstance(metric, MetricsCheck) else metric
            raise MetricsError(f"failed to obtain metrics {name!r}: {e}") from e

        logger.with_fields(metric=metric.value, value=value).debug("metrics value retrieved")
        values.append(value)

    return values


def string_report(health_criteria: List[HealthCriterion], diagnosis: Diagnosis) -> str:
    """Render a diagnosis as the text stored in the health report annotation"""
    lines = [f"status: {diagnosis.overall_result.value}"]
    for criterion, result in zip(health_criteria, diagnosis.check_results):
        name = criterion.metric.value
        if criterion.metric == MetricsCheck.LATENCY:
            lines.append(
                f"- {name}[p{criterion.percentile:.0f}]: {result.actual_value:.2f} (needs {criterion.threshold:.2f})"
            )
        elif criterion.metric == MetricsCheck.REQUEST_COUNT:
            lines.append(f"- {name}: {result.actual_value:.0f} (needs {criterion.threshold:.0f})")
        else:
            lines.append(f"- {name}: {result.actual_value:.2f} (needs {criterion.threshold:.2f})")
    return "\n".join(lines)
