from release_operator.traffic import (
    PlanAction,
    TrafficTarget,
    next_candidate_percent,
    plan_roll_forward,
    plan_rollback,
    traffic_total,
    user_defined_tags,
)

STEPS = [5, 20, 50, 80]


def current_traffic():
    return [
        TrafficTarget('svc-001', 70, 'stable'),
        TrafficTarget('svc-002', 30, 'candidate'),
        TrafficTarget(percent=0, tag='latest', latest_revision=True),
        TrafficTarget('svc-000', 0, 'legacy'),
    ]


def by_tag(traffic):
    return {t.tag: t for t in traffic}


def test_next_candidate_percent_walks_the_steps():
    assert next_candidate_percent(0, STEPS) == (5, False)
    assert next_candidate_percent(5, STEPS) == (20, False)
    assert next_candidate_percent(30, STEPS) == (50, False)
    assert next_candidate_percent(50, STEPS) == (80, False)


def test_next_candidate_percent_promotes_after_top_step():
    assert next_candidate_percent(80, STEPS) == (100, True)
    assert next_candidate_percent(100, STEPS) == (100, True)
    assert next_candidate_percent(100, [10, 100]) == (100, True)
    assert next_candidate_percent(50, [10, 100]) == (100, False)


def test_next_candidate_percent_terminates():
    for start in range(0, 100):
        current, applications, promote = start, 0, False
        while not promote:
            current, promote = next_candidate_percent(current, STEPS)
            applications += 1
        assert current == 100
        assert applications <= len(STEPS) + 1


def test_first_step_for_new_candidate():
    plan = plan_roll_forward([TrafficTarget('svc-001', 100)], 'svc-001', 'svc-002', 0, STEPS)
    assert plan.action == PlanAction.ADVANCE
    tags = by_tag(plan.traffic)
    assert tags['stable'] == TrafficTarget('svc-001', 95, 'stable')
    assert tags['candidate'] == TrafficTarget('svc-002', 5, 'candidate')
    assert tags['latest'] == TrafficTarget('', 0, 'latest', True)
    assert traffic_total(plan.traffic) == 100


def test_roll_forward_keeps_user_tags():
    plan = plan_roll_forward(current_traffic(), 'svc-001', 'svc-002', 30, STEPS)
    assert plan.candidate_percent == 50
    tags = by_tag(plan.traffic)
    assert tags['stable'].percent == 50
    assert tags['candidate'].percent == 50
    assert tags['legacy'] == TrafficTarget('svc-000', 0, 'legacy')
    assert len(plan.traffic) == 4


def test_promotion_drops_old_stable():
    plan = plan_roll_forward(current_traffic(), 'svc-001', 'svc-002', 80, STEPS)
    assert plan.action == PlanAction.PROMOTE
    assert [t for t in plan.traffic if t.revision_name == 'svc-001'] == []
    assert by_tag(plan.traffic)['stable'] == TrafficTarget('svc-002', 100, 'stable')
    assert 'candidate' not in by_tag(plan.traffic)
    assert traffic_total(plan.traffic) == 100


def test_rollback():
    plan = plan_rollback(current_traffic(), 'svc-001', 'svc-002')
    assert plan.action == PlanAction.ROLLBACK
    tags = by_tag(plan.traffic)
    assert tags['stable'] == TrafficTarget('svc-001', 100, 'stable')
    assert tags['candidate'] == TrafficTarget('svc-002', 0, 'candidate')
    assert tags['latest'].latest_revision
    assert 'legacy' in tags


def test_user_defined_tags_skip_managed_entries():
    traffic = current_traffic() + [TrafficTarget('svc-002', 0, '')]
    assert user_defined_tags(traffic) == [TrafficTarget('svc-000', 0, 'legacy')]


def test_traffic_target_dict_mapping():
    assert TrafficTarget('svc-001', 90, 'stable').to_dict() == {
        'revisionName': 'svc-001', 'percent': 90, 'tag': 'stable'
    }
    marker = TrafficTarget.from_dict({'latestRevision': True, 'tag': 'latest'})
    assert marker == TrafficTarget('', 0, 'latest', True)
