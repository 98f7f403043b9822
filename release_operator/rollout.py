"""
Rollout orchestration.

Each run loads the rollout state of one service from its served traffic and
annotations, decides what to do next and persists the result in a single
replace call. Nothing is kept in memory between runs, so a run can be repeated
on any schedule: holds and too-early advances write nothing.

    load:    RolloutState.from_service(service)
    decide:  decide(state, diagnosis, strategy, now) -> TrafficPlan
    persist: apply_plan(service, state, plan, report, now) -> Service
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from release_operator.clock import SystemClock, format_timestamp, parse_timestamp
from release_operator.config import Strategy
from release_operator.errors import ConfigurationError, ReleaseOperatorError
from release_operator.health import Diagnosis, DiagnosisResult, collect_metrics, diagnose, string_report
from release_operator.log import FieldsAdapter, ensure_logger
from release_operator.metrics import MetricsProvider
from release_operator.service import (
    CANDIDATE_REVISION_ANNOTATION,
    LAST_FAILED_CANDIDATE_REVISION_ANNOTATION,
    LAST_HEALTH_REPORT_ANNOTATION,
    LAST_ROLLOUT_ANNOTATION,
    STABLE_REVISION_ANNOTATION,
    Service,
    ServiceRegistry,
    current_candidate_percent,
    detect_candidate_revision,
    detect_stable_revision,
)
from release_operator.traffic import (
    PlanAction,
    TrafficPlan,
    TrafficTarget,
    plan_roll_forward,
    plan_rollback,
)

NEW_CANDIDATE_REPORT = "new candidate, no health report available yet"


@dataclass
class RolloutState:
    """Rollout progress reconstructed from a service"""
    stable: str
    candidate: str
    candidate_percent: int = 0
    last_rollout: str = ""
    traffic: List[TrafficTarget] = field(default_factory=list)

    @property
    def is_new_candidate(self) -> bool:
        return self.candidate_percent == 0

    @classmethod
    def from_service(cls, service: Service) -> 'RolloutState':
        stable = detect_stable_revision(service)
        candidate = detect_candidate_revision(service, stable) if stable else ""
        return cls(
            stable=stable,
            candidate=candidate,
            candidate_percent=current_candidate_percent(service, candidate) if candidate else 0,
            last_rollout=service.annotations.get(LAST_ROLLOUT_ANNOTATION, ""),
            traffic=list(service.traffic),
        )


@dataclass
class RolloutResult:
    """What a run did to a service"""
    service_name: str
    action: PlanAction
    reason: str
    service: Optional[Service] = None

    @property
    def changed(self) -> bool:
        return self.service is not None


def has_enough_time_elapsed(last_rollout: str, time_between_rollouts: timedelta, now: datetime) -> bool:
    """
    Whether the minimum time between two advances has passed.

    Raises:
        ConfigurationError: if the last rollout timestamp is missing or invalid
    """
    if not last_rollout:
        raise ConfigurationError(f"{LAST_ROLLOUT_ANNOTATION} annotation is missing")
    try:
        last = parse_timestamp(last_rollout)
    except ValueError as e:
        raise ConfigurationError(f"failed to parse last rollout time {last_rollout!r}: {e}") from e
    return now - last >= time_between_rollouts


def plan_new_candidate(state: RolloutState, strategy: Strategy) -> TrafficPlan:
    """A candidate that never served traffic gets the first step right away"""
    return plan_roll_forward(state.traffic, state.stable, state.candidate, 0, strategy.steps)


def decide(state: RolloutState, diagnosis: DiagnosisResult, strategy: Strategy, now: datetime) -> TrafficPlan:
    """
    Next plan for a known candidate given its diagnosis.

    Advancing is gated by time_between_rollouts; rolling back is not.
    """
    if diagnosis == DiagnosisResult.INCONCLUSIVE:
        return TrafficPlan(PlanAction.HOLD, reason="health check inconclusive")

    if diagnosis == DiagnosisResult.HEALTHY:
        if not has_enough_time_elapsed(state.last_rollout, strategy.time_between_rollouts, now):
            return TrafficPlan(
                PlanAction.HOLD,
                reason=f"not enough time elapsed since last rollout at {state.last_rollout}"
            )
        return plan_roll_forward(
            state.traffic, state.stable, state.candidate, state.candidate_percent, strategy.steps
        )

    if diagnosis == DiagnosisResult.UNHEALTHY:
        return plan_rollback(state.traffic, state.stable, state.candidate)

    raise ConfigurationError(f"invalid candidate's health diagnosis {diagnosis!r}")


def apply_plan(service: Service, state: RolloutState, plan: TrafficPlan, report: str, now: datetime) -> Service:
    """Return a copy of the service carrying the planned traffic and rollout annotations"""
    if plan.action == PlanAction.HOLD:
        raise ValueError("a hold plan leaves the service unchanged")

    updated = copy.deepcopy(service)
    updated.traffic = copy.deepcopy(plan.traffic)
    annotations = updated.annotations
    timestamp = format_timestamp(now)

    annotations[LAST_ROLLOUT_ANNOTATION] = timestamp
    if plan.action == PlanAction.PROMOTE:
        annotations[STABLE_REVISION_ANNOTATION] = state.candidate
        annotations.pop(CANDIDATE_REVISION_ANNOTATION, None)
    else:
        annotations[STABLE_REVISION_ANNOTATION] = state.stable
        annotations[CANDIDATE_REVISION_ANNOTATION] = state.candidate
        if plan.action == PlanAction.ROLLBACK:
            annotations[LAST_FAILED_CANDIDATE_REVISION_ANNOTATION] = state.candidate

    annotations[LAST_HEALTH_REPORT_ANNOTATION] = f"{report}\nlastUpdate: {timestamp}"
    return updated


class Rollout:
    """Runs the rollout of services against one strategy"""

    def __init__(
        self,
        metrics_provider: MetricsProvider,
        registry: ServiceRegistry,
        strategy: Strategy,
        clock=None,
        logger: Optional[FieldsAdapter] = None
    ):
        strategy.validate()
        self.metrics_provider = metrics_provider
        self.registry = registry
        self.strategy = strategy
        self.clock = clock or SystemClock()
        self.logger = ensure_logger(logger)

    def rollout(self, project: str, region: str, name: str) -> RolloutResult:
        """Read the service fresh from the registry and run one rollout step"""
        logger = self.logger.with_fields(project=project, service=name, region=region)
        service = self.registry.get_service(project, region, name)
        try:
            return self.run(service, logger)
        except ReleaseOperatorError as e:
            logger.error("failed to perform rollout")
            # Same error class, so callers can still tell conflicts from metrics failures.
            raise type(e)(f"failed to perform rollout for service {name!r}: {e}") from e

    def update_service(self, service: Service) -> Optional[Service]:
        """Run one rollout step; returns the replaced service, or None if unchanged"""
        return self.run(service).service

    def run(self, service: Service, logger: Optional[FieldsAdapter] = None) -> RolloutResult:
        logger = logger or self.logger.with_fields(
            project=service.project, service=service.name, region=service.region
        )
        state = RolloutState.from_service(service)
        if not state.stable:
            logger.info("could not determine stable revision")
            return RolloutResult(service.name, PlanAction.HOLD, "could not determine stable revision")
        if not state.candidate:
            logger.info("could not determine candidate revision")
            return RolloutResult(service.name, PlanAction.HOLD, "could not determine candidate revision")
        logger = logger.with_fields(stable=state.stable, candidate=state.candidate)

        now = self.clock.now()
        if state.is_new_candidate:
            # No traffic means no metrics, so there is nothing to diagnose yet.
            logger.debug("new candidate, assign some traffic")
            plan = plan_new_candidate(state, self.strategy)
            report = NEW_CANDIDATE_REPORT
        else:
            diagnosis = self.diagnose_candidate(state.candidate, logger)
            plan = decide(state, diagnosis.overall_result, self.strategy, now)
            if plan.action == PlanAction.HOLD:
                logger.with_fields(last_rollout=state.last_rollout).debug(plan.reason)
                return RolloutResult(service.name, PlanAction.HOLD, plan.reason)
            report = string_report(self.strategy.health_criteria, diagnosis)

        self._log_plan(plan, logger)
        updated = apply_plan(service, state, plan, report, now)
        replaced = self.registry.replace_service(updated)
        return RolloutResult(service.name, plan.action, plan.reason, replaced)

    def diagnose_candidate(self, candidate: str, logger: Optional[FieldsAdapter] = None) -> Diagnosis:
        """Collect the candidate's metrics and diagnose its health"""
        logger = logger or self.logger
        logger.debug("collecting metrics")
        self.metrics_provider.set_candidate_revision(candidate)
        try:
            values = collect_metrics(
                self.metrics_provider,
                self.strategy.health_check_offset,
                self.strategy.health_criteria,
                logger
            )
            logger.debug("diagnosing candidate's health")
            diagnosis = diagnose(self.strategy.health_criteria, values, logger)
        except ReleaseOperatorError as e:
            logger.error(f"could not diagnose health for candidate {candidate}: {e}")
            raise
        logger.with_fields(diagnosis=diagnosis.overall_result.value).info("candidate diagnosed")
        return diagnosis

    def _log_plan(self, plan: TrafficPlan, logger: FieldsAdapter):
        if plan.action == PlanAction.PROMOTE:
            logger.info("will make candidate stable")
        elif plan.action == PlanAction.ROLLBACK:
            logger.warning("unhealthy candidate, rollback")
        else:
            logger.with_fields(
                stable_percent=100 - plan.candidate_percent,
                candidate_percent=plan.candidate_percent
            ).info("set traffic split")
