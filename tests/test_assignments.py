"""Tests for assignment functionality.

Main stuff: stickiness, split boundaries, distribution and the race / failure paths.
"""
from sqlalchemy.exc import OperationalError
from split_service.models import VisitorAssignment, ARM_CONTROL, ARM_VARIANT, ARMS
from split_service.services import assignment_service
from split_service.services.assignment_service import assign, resolve_visitor_id
from split_service.utils.assignment import (
    VISITOR_ID_COOKIE,
    arm_cookie_name,
    arm_for_draw,
    clean_arm,
    draw_bucket,
    new_visitor_id,
)


def test_assignment_stickiness(db, sample_experiment):
    """Same visitor always gets the same arm, and only one row is stored"""
    visitor_id = new_visitor_id()

    first = assign(db, sample_experiment, visitor_id)
    for _ in range(5):
        again = assign(db, sample_experiment, visitor_id)
        assert again.arm == first.arm, "Assignment should be sticky"

    count = db.query(VisitorAssignment).filter(
        VisitorAssignment.experiment_id == sample_experiment.id,
        VisitorAssignment.visitor_id == visitor_id
    ).count()
    assert count == 1, "Should only have one assignment per visitor per experiment"


def test_new_assignment_sets_cookie(db, sample_experiment):
    decision = assign(db, sample_experiment, new_visitor_id())

    assert decision.arm in ARMS
    assert decision.durable
    assert decision.cookies == {arm_cookie_name("pricing-page"): decision.arm}


def test_cookie_fast_path_skips_database(db, sample_experiment):
    visitor_id = new_visitor_id()
    cookies = {arm_cookie_name(sample_experiment.handle): ARM_VARIANT}

    decision = assign(db, sample_experiment, visitor_id, cookies)

    assert decision.arm == ARM_VARIANT
    assert decision.cookies == {}
    assert db.query(VisitorAssignment).count() == 0


def test_forged_cookie_is_ignored(db, sample_experiment):
    """Anything but an exact arm name is treated as no cookie at all"""
    visitor_id = new_visitor_id()
    cookies = {arm_cookie_name(sample_experiment.handle): "<script>variant</script>"}

    decision = assign(db, sample_experiment, visitor_id, cookies)

    assert decision.arm in ARMS
    stored = db.query(VisitorAssignment).filter(VisitorAssignment.visitor_id == visitor_id).one()
    assert stored.arm == decision.arm


def test_stored_row_reissues_cookie(db, sample_experiment):
    visitor_id = new_visitor_id()
    db.add(VisitorAssignment(experiment_id=sample_experiment.id, visitor_id=visitor_id, arm=ARM_CONTROL))
    db.commit()

    decision = assign(db, sample_experiment, visitor_id)

    assert decision.arm == ARM_CONTROL
    assert decision.cookies == {arm_cookie_name(sample_experiment.handle): ARM_CONTROL}


def test_split_zero_is_always_control(db, sample_experiment):
    sample_experiment.traffic_split = 0
    db.commit()

    arms = {assign(db, sample_experiment, new_visitor_id()).arm for _ in range(50)}
    assert arms == {ARM_CONTROL}


def test_split_hundred_is_always_variant(db, sample_experiment):
    sample_experiment.traffic_split = 100
    db.commit()

    arms = {assign(db, sample_experiment, new_visitor_id()).arm for _ in range(50)}
    assert arms == {ARM_VARIANT}


def test_arm_for_draw_boundaries():
    assert arm_for_draw(1, 0) == ARM_CONTROL
    assert arm_for_draw(100, 100) == ARM_VARIANT
    assert arm_for_draw(70, 70) == ARM_VARIANT
    assert arm_for_draw(71, 70) == ARM_CONTROL


def test_traffic_distribution_70_30():
    """Goodness of fit for a 70% split over 5000 draws (99.9% critical value, 1 df)"""
    n = 5000
    variant = sum(1 for _ in range(n) if arm_for_draw(draw_bucket(), 70) == ARM_VARIANT)
    control = n - variant

    expected_variant = n * 0.7
    expected_control = n * 0.3
    chi_squared = (
        (variant - expected_variant) ** 2 / expected_variant
        + (control - expected_control) ** 2 / expected_control
    )
    assert chi_squared < 10.83, f"Split looks off: {variant} variant / {control} control"


def test_concurrent_first_assignment_stored_row_wins(db, sample_experiment, monkeypatch):
    """Another request inserted the row between our lookup and our insert"""
    visitor_id = new_visitor_id()

    db.add(VisitorAssignment(experiment_id=sample_experiment.id, visitor_id=visitor_id, arm=ARM_VARIANT))
    db.commit()

    real_find = assignment_service.find_assignment
    calls = []

    def stale_find(session, experiment_id, vid):
        calls.append(vid)
        if len(calls) == 1:
            return None  # lookup happened before the other insert
        return real_find(session, experiment_id, vid)

    monkeypatch.setattr(assignment_service, "find_assignment", stale_find)
    sample_experiment.traffic_split = 0  # our own draw would say control
    db.commit()

    decision = assign(db, sample_experiment, visitor_id)

    assert decision.arm == ARM_VARIANT
    assert decision.cookies == {arm_cookie_name(sample_experiment.handle): ARM_VARIANT}
    assert db.query(VisitorAssignment).filter(VisitorAssignment.visitor_id == visitor_id).count() == 1


def test_storage_failure_still_serves_an_arm(db, sample_experiment, monkeypatch):
    def broken_commit():
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "commit", broken_commit)

    decision = assign(db, sample_experiment, new_visitor_id())

    assert decision.arm in ARMS
    assert decision.durable is False
    assert decision.cookies == {}


def test_resolve_visitor_id():
    valid = new_visitor_id()
    assert resolve_visitor_id({VISITOR_ID_COOKIE: valid}) == (valid, False)

    replaced, is_new = resolve_visitor_id({VISITOR_ID_COOKIE: "1' OR '1'='1"})
    assert is_new and replaced != "1' OR '1'='1"

    fresh, is_new = resolve_visitor_id({})
    assert is_new and fresh


def test_clean_arm():
    assert clean_arm("control") == "control"
    assert clean_arm("variant") == "variant"
    assert clean_arm("Variant") is None
    assert clean_arm(None) is None
