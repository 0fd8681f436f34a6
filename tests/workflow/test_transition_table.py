from datetime import datetime, timezone

import pytest

from roadwatch.core.types import Actor, Category, Report, ReportState, Role
from roadwatch.errors import Forbidden, InvalidTransition, Unauthenticated, ValidationError
from roadwatch.workflow import transitions
from roadwatch.workflow.transitions import (
    TRANSITIONS,
    EventKind,
    Trigger,
    allowed_triggers,
    apply_transition,
)


CITIZEN = Actor(id="c1", role=Role.CITIZEN)
ADMIN = Actor(id="a1", role=Role.ADMIN)
S2 = Actor(id="s2", role=Role.STAFF, specialization=Category.POTHOLE)
S3 = Actor(id="s3", role=Role.STAFF, specialization=Category.LIGHTING)
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _pending():
    return Report(id="r1", owner="c1", category=Category.POTHOLE)


def _actor_for(trigger):
    if trigger in {Trigger.ASSIGN, Trigger.APPROVE, Trigger.REJECT}:
        return ADMIN
    return S2


def _payload_for(trigger):
    return {
        Trigger.UPDATE_PROGRESS: {"progress": 40},
        Trigger.REJECT: {"reason": "not done"},
    }.get(trigger, {})


def _run(report, trigger, actor, payload=None, **kwargs):
    kwargs.setdefault("now", NOW)
    if trigger is Trigger.ASSIGN:
        kwargs.setdefault("assignee", S2)
    return apply_transition(report, trigger, actor, payload or {}, **kwargs)


def test_table_matches_documented_workflow():
    assert {(s.value, t.value): r.to_state.value for (s, t), r in TRANSITIONS.items()} == {
        ("Pending", "assign"): "Assigned",
        ("Assigned", "start_work"): "InProgress",
        ("InProgress", "update_progress"): "InProgress",
        ("InProgress", "submit_for_review"): "PendingReview",
        ("PendingReview", "approve"): "Resolved",
        ("PendingReview", "reject"): "NeedsRevision",
        ("NeedsRevision", "resume_work"): "InProgress",
    }
    assert allowed_triggers(ReportState.RESOLVED) == ()
    assert set(allowed_triggers(ReportState.PENDING_REVIEW)) == {Trigger.APPROVE, Trigger.REJECT}


INVALID_PAIRS = [
    (state, trigger) for state in ReportState for trigger in Trigger if (state, trigger) not in TRANSITIONS
]


def test_invalid_pairs_cover_the_rest_of_the_grid():
    assert len(INVALID_PAIRS) == len(ReportState) * len(Trigger) - len(TRANSITIONS)


@pytest.mark.parametrize("state,trigger", INVALID_PAIRS, ids=lambda value: value.value)
def test_pairs_outside_table_raise_invalid_transition(state, trigger):
    report = Report(id="r1", owner="c1", category=Category.POTHOLE, state=state, assignee="s2")
    with pytest.raises(InvalidTransition) as exc_info:
        _run(report, trigger, _actor_for(trigger), _payload_for(trigger))
    assert exc_info.value.status_code == 409


@pytest.mark.parametrize("trigger", list(Trigger))
@pytest.mark.parametrize("actor", [ADMIN, S2, CITIZEN])
def test_resolved_is_terminal_for_everyone(trigger, actor):
    report = Report(id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.RESOLVED, assignee="s2")
    with pytest.raises(InvalidTransition):
        _run(report, trigger, actor, _payload_for(trigger))


@pytest.mark.parametrize(
    "raw,stored",
    [(-20, 0), (0, 0), (37, 37), (100, 100), (150, 100), (10**9, 100)],
)
def test_progress_is_clamped(raw, stored):
    report = Report(id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.IN_PROGRESS, assignee="s2")
    updated, event = _run(report, Trigger.UPDATE_PROGRESS, S2, {"progress": raw})
    assert updated.progress == stored
    assert updated.state is ReportState.IN_PROGRESS
    assert event.details["progress"] == stored


@pytest.mark.parametrize("raw", ["50", 12.5, None, True])
def test_progress_must_be_an_integer(raw):
    report = Report(id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.IN_PROGRESS, assignee="s2")
    with pytest.raises(ValidationError) as exc_info:
        _run(report, Trigger.UPDATE_PROGRESS, S2, {"progress": raw})
    assert exc_info.value.error_code == "PROGRESS_INVALID"


def test_progress_notifies_owner_only_on_milestones():
    report = Report(
        id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.IN_PROGRESS, assignee="s2", progress=10
    )
    _, quiet = _run(report, Trigger.UPDATE_PROGRESS, S2, {"progress": 20})
    assert quiet.audience == ()
    assert quiet.details["milestone"] is None
    _, loud = _run(report, Trigger.UPDATE_PROGRESS, S2, {"progress": 60})
    assert loud.audience == ("owner",)
    assert loud.details["milestone"] == 50


def test_scenario_a_assignment_requires_matching_specialization():
    report = _pending()
    assert report.state is ReportState.PENDING

    assigned, event = _run(report, Trigger.ASSIGN, ADMIN, {"notes": "urgent"}, assignee=S2)
    assert assigned.state is ReportState.ASSIGNED
    assert assigned.assignee == "s2"
    assert assigned.assigned_by == "a1"
    assert assigned.assigned_at == NOW
    assert assigned.assignment_notes == "urgent"
    assert event.kind == EventKind.REPORT_ASSIGNED.value
    assert set(event.audience) == {"owner", "assignee"}

    with pytest.raises(ValidationError) as exc_info:
        _run(report, Trigger.ASSIGN, ADMIN, assignee=S3)
    assert exc_info.value.error_code == "NO_QUALIFIED_STAFF"
    assert report.state is ReportState.PENDING
    assert report.assignee is None


def test_assign_requires_an_assignee():
    with pytest.raises(ValidationError) as exc_info:
        apply_transition(_pending(), Trigger.ASSIGN, ADMIN, {}, assignee=None)
    assert exc_info.value.error_code == "ASSIGNEE_REQUIRED"


def test_scenario_b_work_then_submit_forces_full_progress():
    assigned, _ = _run(_pending(), Trigger.ASSIGN, ADMIN)
    working, event = _run(assigned, Trigger.START_WORK, S2)
    assert working.state is ReportState.IN_PROGRESS
    assert event.kind == EventKind.STATUS_UPDATE.value

    working, _ = _run(working, Trigger.UPDATE_PROGRESS, S2, {"progress": 150})
    assert working.progress == 100
    working, _ = _run(working, Trigger.UPDATE_PROGRESS, S2, {"progress": 30})

    review, event = _run(working, Trigger.SUBMIT_FOR_REVIEW, S2)
    assert review.state is ReportState.PENDING_REVIEW
    assert review.progress == 100
    assert review.staff_completed_at == NOW
    assert event.audience == ("admins",)
    assert [u.state for u in review.progress_updates] == [
        ReportState.ASSIGNED,
        ReportState.IN_PROGRESS,
        ReportState.IN_PROGRESS,
        ReportState.IN_PROGRESS,
        ReportState.PENDING_REVIEW,
    ]


def test_scenario_c_revision_loop_then_approval():
    report, _ = _run(_pending(), Trigger.ASSIGN, ADMIN)
    report, _ = _run(report, Trigger.START_WORK, S2)
    report, _ = _run(report, Trigger.SUBMIT_FOR_REVIEW, S2)

    report, event = _run(report, Trigger.REJECT, ADMIN, {"reason": "patch too thin"})
    assert report.state is ReportState.NEEDS_REVISION
    assert report.revision_count == 1
    assert report.review_outcome.approved is False
    assert report.review_outcome.reason == "patch too thin"
    assert report.rejected_by == "a1"
    assert event.audience == ("assignee",)

    report, _ = _run(report, Trigger.RESUME_WORK, S2)
    assert report.state is ReportState.IN_PROGRESS
    report, _ = _run(report, Trigger.SUBMIT_FOR_REVIEW, S2)
    assert report.state is ReportState.PENDING_REVIEW

    report, event = _run(report, Trigger.APPROVE, ADMIN, {"notes": "good"})
    assert report.state is ReportState.RESOLVED
    assert report.revision_count == 1
    assert report.review_outcome.approved is True
    assert report.approved_by == "a1"
    assert report.admin_notes == "good"
    assert event.kind == EventKind.REPORT_COMPLETED.value
    assert event.details["feedback_eligible"] is True


@pytest.mark.parametrize("reason", ["", "   ", None])
def test_reject_requires_reason(reason):
    report = Report(id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.PENDING_REVIEW, assignee="s2")
    with pytest.raises(ValidationError) as exc_info:
        _run(report, Trigger.REJECT, ADMIN, {"reason": reason})
    assert exc_info.value.error_code == "REASON_REQUIRED"


def test_reject_reason_length_is_bounded():
    report = Report(id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.PENDING_REVIEW, assignee="s2")
    with pytest.raises(ValidationError) as exc_info:
        _run(report, Trigger.REJECT, ADMIN, {"reason": "x" * 501})
    assert exc_info.value.error_code == "REASON_TOO_LONG"


def test_revision_cap_refuses_further_rejects():
    report = Report(
        id="r1",
        owner="c1",
        category=Category.POTHOLE,
        state=ReportState.PENDING_REVIEW,
        assignee="s2",
        revision_count=2,
    )
    with pytest.raises(ValidationError) as exc_info:
        _run(report, Trigger.REJECT, ADMIN, {"reason": "again"}, max_revisions=2)
    assert exc_info.value.error_code == "REVISION_LIMIT_REACHED"

    approved, _ = _run(report, Trigger.APPROVE, ADMIN, max_revisions=2)
    assert approved.state is ReportState.RESOLVED

    uncapped, _ = _run(report, Trigger.REJECT, ADMIN, {"reason": "again"}, max_revisions=0)
    assert uncapped.revision_count == 3


def test_guard_rejects_wrong_actor():
    report = Report(id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.ASSIGNED, assignee="s2")
    other = Actor(id="s9", role=Role.STAFF, specialization=Category.POTHOLE)
    with pytest.raises(Forbidden) as exc_info:
        _run(report, Trigger.START_WORK, other)
    assert exc_info.value.error_code == "ADVANCE_NOT_ASSIGNEE"

    with pytest.raises(Forbidden):
        _run(report, Trigger.START_WORK, ADMIN)

    review = Report(id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.PENDING_REVIEW, assignee="s2")
    with pytest.raises(Forbidden) as exc_info:
        _run(review, Trigger.APPROVE, S2)
    assert exc_info.value.error_code == "REVIEW_FORBIDDEN"

    with pytest.raises(Unauthenticated):
        _run(review, Trigger.APPROVE, None)


def test_failed_transition_leaves_report_untouched():
    report = Report(id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.PENDING_REVIEW, assignee="s2")
    with pytest.raises(ValidationError):
        _run(report, Trigger.REJECT, ADMIN, {"reason": ""})
    assert report.state is ReportState.PENDING_REVIEW
    assert report.revision_count == 0
    assert report.progress_updates == ()


def test_missing_actor_is_refused_even_when_guard_is_bypassed(monkeypatch):
    def table_only(report, trigger, actor):
        return TRANSITIONS[(report.state, Trigger(trigger))]

    monkeypatch.setattr(transitions, "check_transition", table_only)
    report = Report(id="r1", owner="c1", category=Category.POTHOLE, state=ReportState.ASSIGNED, assignee="s2")
    with pytest.raises(Unauthenticated):
        _run(report, Trigger.START_WORK, None)
