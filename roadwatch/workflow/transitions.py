from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from roadwatch.config import PROGRESS_MILESTONES, REASON_MAX
from roadwatch.core.types import (
    Action,
    Actor,
    ProgressUpdate,
    Report,
    ReportState,
    ReviewOutcome,
    TransitionEvent,
    utc_now,
)
from roadwatch.errors import Forbidden, InvalidTransition, Unauthenticated, ValidationError
from roadwatch.policy.evaluator import evaluate


class Trigger(str, Enum):
    ASSIGN = "assign"
    START_WORK = "start_work"
    UPDATE_PROGRESS = "update_progress"
    SUBMIT_FOR_REVIEW = "submit_for_review"
    APPROVE = "approve"
    REJECT = "reject"
    RESUME_WORK = "resume_work"


class EventKind(str, Enum):
    REPORT_ASSIGNED = "report_assigned"
    STATUS_UPDATE = "status_update"
    PROGRESS_UPDATE = "progress_update"
    REVIEW_REQUESTED = "review_requested"
    REPORT_COMPLETED = "report_completed"
    REVISION_REQUESTED = "revision_requested"


AUDIENCE_OWNER = "owner"
AUDIENCE_ASSIGNEE = "assignee"
AUDIENCE_ADMINS = "admins"


@dataclass(frozen=True)
class TransitionRule:
    from_state: ReportState
    trigger: Trigger
    action: Action
    to_state: ReportState
    kind: EventKind
    audience: Tuple[str, ...]


_RULES = (
    TransitionRule(ReportState.PENDING, Trigger.ASSIGN, Action.ASSIGN, ReportState.ASSIGNED,
                   EventKind.REPORT_ASSIGNED, (AUDIENCE_OWNER, AUDIENCE_ASSIGNEE)),
    TransitionRule(ReportState.ASSIGNED, Trigger.START_WORK, Action.ADVANCE, ReportState.IN_PROGRESS,
                   EventKind.STATUS_UPDATE, (AUDIENCE_OWNER,)),
    TransitionRule(ReportState.IN_PROGRESS, Trigger.UPDATE_PROGRESS, Action.ADVANCE, ReportState.IN_PROGRESS,
                   EventKind.PROGRESS_UPDATE, (AUDIENCE_OWNER,)),
    TransitionRule(ReportState.IN_PROGRESS, Trigger.SUBMIT_FOR_REVIEW, Action.ADVANCE, ReportState.PENDING_REVIEW,
                   EventKind.REVIEW_REQUESTED, (AUDIENCE_ADMINS,)),
    TransitionRule(ReportState.PENDING_REVIEW, Trigger.APPROVE, Action.REVIEW, ReportState.RESOLVED,
                   EventKind.REPORT_COMPLETED, (AUDIENCE_OWNER,)),
    TransitionRule(ReportState.PENDING_REVIEW, Trigger.REJECT, Action.REVIEW, ReportState.NEEDS_REVISION,
                   EventKind.REVISION_REQUESTED, (AUDIENCE_ASSIGNEE,)),
    TransitionRule(ReportState.NEEDS_REVISION, Trigger.RESUME_WORK, Action.ADVANCE, ReportState.IN_PROGRESS,
                   EventKind.STATUS_UPDATE, (AUDIENCE_OWNER,)),
)

TRANSITIONS: Dict[Tuple[ReportState, Trigger], TransitionRule] = {
    (rule.from_state, rule.trigger): rule for rule in _RULES
}

TERMINAL_STATES: FrozenSet[ReportState] = frozenset({ReportState.RESOLVED})

_untriggered = set(Trigger) - {rule.trigger for rule in _RULES}
_stranded = set(ReportState) - TERMINAL_STATES - {rule.from_state for rule in _RULES}
if _untriggered or _stranded:
    raise RuntimeError(
        f"workflow table incomplete: triggers={sorted(t.value for t in _untriggered)} "
        f"states={sorted(s.value for s in _stranded)}"
    )


def allowed_triggers(state: ReportState) -> Tuple[Trigger, ...]:
    return tuple(rule.trigger for rule in _RULES if rule.from_state is state)


def clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


def _crossed_milestone(previous: int, current: int) -> Optional[int]:
    crossed = [m for m in PROGRESS_MILESTONES if previous < m <= current]
    return crossed[-1] if crossed else None


def _text(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value.strip()


def _history(report: Report, entry: ProgressUpdate) -> Tuple[ProgressUpdate, ...]:
    return report.progress_updates + (entry,)


def _guard(rule: TransitionRule, report: Report, actor: Optional[Actor]) -> None:
    if actor is None:
        raise Unauthenticated("authentication required")
    decision = evaluate(actor, report, rule.action)
    if decision.allowed:
        return
    if decision.reason_code == "AUTH_REQUIRED":
        raise Unauthenticated(decision.reason)
    raise Forbidden(decision.reason, error_code=decision.reason_code)


def check_transition(report: Report, trigger: Trigger, actor: Optional[Actor]) -> TransitionRule:
    """Table lookup plus policy guard, without touching the payload."""
    trigger = Trigger(trigger)
    rule = TRANSITIONS.get((report.state, trigger))
    if rule is None:
        raise InvalidTransition(f"cannot {trigger.value} a report in state {report.state.value}")
    _guard(rule, report, actor)
    return rule


def apply_transition(
    report: Report,
    trigger: Trigger,
    actor: Optional[Actor],
    payload: Optional[Mapping[str, Any]] = None,
    *,
    assignee: Optional[Actor] = None,
    now: Optional[datetime] = None,
    max_revisions: int = 0,
) -> Tuple[Report, TransitionEvent]:
    """
    Validate and apply one workflow transition.

    Order of checks: the (state, trigger) pair must be in the table, then the
    actor must pass the policy guard for the rule's action, then the payload
    must validate. Any failure raises before anything is built, so the input
    report is never partially updated. Returns the new report and the event
    describing the change; persisting and dispatching are the caller's job.
    """
    trigger = Trigger(trigger)
    rule = check_transition(report, trigger, actor)
    if actor is None:
        raise Unauthenticated("authentication required")

    data: Mapping[str, Any] = payload or {}
    ts = now or utc_now()
    changes: Dict[str, Any] = {"state": rule.to_state, "updated_at": ts}
    details: Dict[str, Any] = {}
    audience = rule.audience
    description = ""

    if trigger is Trigger.ASSIGN:
        if assignee is None:
            raise ValidationError("assignee is required", error_code="ASSIGNEE_REQUIRED")
        decision = evaluate(actor, report, Action.ASSIGN, assignee=assignee)
        if not decision.allowed:
            raise ValidationError(decision.reason, error_code=decision.reason_code)
        notes = _text(data, "notes")
        changes.update(
            assignee=assignee.id,
            assigned_by=actor.id,
            assigned_at=ts,
            assignment_notes=notes,
        )
        details["assignee"] = assignee.id
        description = f"Assigned to {assignee.id}"

    elif trigger is Trigger.UPDATE_PROGRESS:
        raw = data.get("progress")
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValidationError("progress must be an integer", error_code="PROGRESS_INVALID")
        progress = clamp_progress(raw)
        milestone = _crossed_milestone(report.progress, progress)
        if milestone is None:
            audience = ()
        changes["progress"] = progress
        details.update(progress=progress, milestone=milestone)
        description = _text(data, "description") or f"Progress updated to {progress}%"

    elif trigger is Trigger.SUBMIT_FOR_REVIEW:
        # Review always starts from fully worked, whatever the caller sent.
        changes.update(progress=100, staff_completed_at=ts)
        details["progress"] = 100
        description = _text(data, "notes") or "Work submitted for review"

    elif trigger is Trigger.APPROVE:
        notes = _text(data, "notes")
        changes.update(
            review_outcome=ReviewOutcome(approved=True, reason=notes),
            approved_by=actor.id,
            approved_at=ts,
            admin_notes=notes,
        )
        details["feedback_eligible"] = True
        description = "Completion approved"

    elif trigger is Trigger.REJECT:
        reason = _text(data, "reason")
        if not reason:
            raise ValidationError("a rejection reason is required", error_code="REASON_REQUIRED")
        if len(reason) > REASON_MAX:
            raise ValidationError(f"reason cannot exceed {REASON_MAX} characters", error_code="REASON_TOO_LONG")
        if max_revisions > 0 and report.revision_count >= max_revisions:
            raise ValidationError(
                f"revision limit of {max_revisions} reached; the work must be approved",
                error_code="REVISION_LIMIT_REACHED",
            )
        changes.update(
            review_outcome=ReviewOutcome(approved=False, reason=reason),
            revision_count=report.revision_count + 1,
            rejected_by=actor.id,
            rejected_at=ts,
        )
        details.update(reason=reason, revision_count=report.revision_count + 1)
        description = f"Completion rejected: {reason}"

    elif trigger is Trigger.START_WORK:
        description = "Work started"

    elif trigger is Trigger.RESUME_WORK:
        description = "Work resumed after revision request"

    entry = ProgressUpdate(
        state=rule.to_state,
        description=description,
        percentage=int(changes.get("progress", report.progress)),
        updated_by=actor.id,
        timestamp=ts,
    )
    changes["progress_updates"] = _history(report, entry)
    updated = replace(report, **changes)
    event = TransitionEvent(
        report_id=report.id,
        from_state=report.state,
        to_state=rule.to_state,
        actor_id=actor.id,
        timestamp=ts,
        kind=rule.kind.value,
        audience=audience,
        details=details,
    )
    return updated, event
