"""
Traffic planning.

Pure functions that compute the next traffic configuration of a service. They
decide what shape traffic should take; whether to advance, hold or revert is
decided by the rollout orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

# Tags managed by the operator. Any other tag belongs to the user.
STABLE_TAG = "stable"
CANDIDATE_TAG = "candidate"
LATEST_TAG = "latest"

MANAGED_TAGS = (STABLE_TAG, CANDIDATE_TAG, LATEST_TAG)


@dataclass
class TrafficTarget:
    """Share of traffic routed to a revision"""
    revision_name: str = ""
    percent: int = 0
    tag: str = ""
    latest_revision: bool = False

    def to_dict(self) -> dict:
        data = {}
        if self.latest_revision:
            data['latestRevision'] = True
        else:
            data['revisionName'] = self.revision_name
        data['percent'] = self.percent
        if self.tag:
            data['tag'] = self.tag
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'TrafficTarget':
        return cls(
            revision_name=data.get('revisionName', ''),
            percent=int(data.get('percent', 0) or 0),
            tag=data.get('tag', ''),
            latest_revision=bool(data.get('latestRevision', False)),
        )


class PlanAction(Enum):
    """What a rollout run does to the service"""
    HOLD = "hold"
    ADVANCE = "advance"
    PROMOTE = "promote"
    ROLLBACK = "rollback"


@dataclass
class TrafficPlan:
    """Outcome of planning: the action and, unless holding, the new traffic"""
    action: PlanAction
    traffic: List[TrafficTarget] = field(default_factory=list)
    candidate_percent: int = 0
    reason: str = ""


def latest_marker() -> TrafficTarget:
    """The 0% entry that always tags the latest revision"""
    return TrafficTarget(percent=0, tag=LATEST_TAG, latest_revision=True)


def user_defined_tags(traffic: List[TrafficTarget]) -> List[TrafficTarget]:
    """Targets carrying tags set by the user (e.g. console or CLI)"""
    return [
        target for target in traffic
        if target.tag and not target.latest_revision and target.tag not in MANAGED_TAGS
    ]


def inherit_revision_tags(traffic: List[TrafficTarget]) -> List[TrafficTarget]:
    """Targets every new configuration must keep: the latest marker and user tags"""
    return [latest_marker()] + [
        TrafficTarget(t.revision_name, t.percent, t.tag, t.latest_revision)
        for t in user_defined_tags(traffic)
    ]


def traffic_total(traffic: List[TrafficTarget]) -> int:
    """Sum of shares, excluding the latest marker"""
    return sum(t.percent for t in traffic if not t.latest_revision)


def next_candidate_percent(current: int, steps: List[int]) -> Tuple[int, bool]:
    """
    Next traffic share for the candidate.

    Returns the smallest step strictly greater than the current share, or 100
    when there is none. In the latter case the candidate has gone through
    every step and the second value (promote) is True.
    """
    for step in steps:
        if step > current:
            return step, False
    return 100, True


def plan_roll_forward(
    traffic: List[TrafficTarget],
    stable: str,
    candidate: str,
    current_percent: int,
    steps: List[int]
) -> TrafficPlan:
    """
    Increase the candidate's share, or promote it once all steps are done.

    On promotion the candidate is retagged stable with all the traffic and the
    old stable entry is dropped. Otherwise the stable revision gets the
    complement of the candidate's share.
    """
    percent, promote = next_candidate_percent(current_percent, steps)

    if promote:
        new_traffic = [TrafficTarget(candidate, 100, STABLE_TAG)]
        new_traffic += inherit_revision_tags(traffic)
        return TrafficPlan(
            PlanAction.PROMOTE,
            new_traffic,
            candidate_percent=100,
            reason=f"candidate {candidate} promoted to stable"
        )

    new_traffic = [
        TrafficTarget(stable, 100 - percent, STABLE_TAG),
        TrafficTarget(candidate, percent, CANDIDATE_TAG),
    ]
    new_traffic += inherit_revision_tags(traffic)
    return TrafficPlan(
        PlanAction.ADVANCE,
        new_traffic,
        candidate_percent=percent,
        reason=f"candidate {candidate} advanced to {percent}%"
    )


def plan_rollback(traffic: List[TrafficTarget], stable: str, candidate: str) -> TrafficPlan:
    """Send all traffic back to the stable revision"""
    new_traffic = [
        TrafficTarget(stable, 100, STABLE_TAG),
        TrafficTarget(candidate, 0, CANDIDATE_TAG),
    ]
    new_traffic += inherit_revision_tags(traffic)
    return TrafficPlan(
        PlanAction.ROLLBACK,
        new_traffic,
        candidate_percent=0,
        reason=f"candidate {candidate} rolled back"
    )
