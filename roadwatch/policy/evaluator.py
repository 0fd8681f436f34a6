from __future__ import annotations

from typing import Callable, Dict, FrozenSet, Optional

from roadwatch.core.types import Action, Actor, Decision, Report, ReportState, Role, Visibility


ADMIN_ACTIONS: FrozenSet[Action] = frozenset(
    {Action.VIEW, Action.EDIT, Action.DELETE, Action.ASSIGN, Action.REVIEW}
)
ADVANCEABLE_STATES: FrozenSet[ReportState] = frozenset(
    {ReportState.ASSIGNED, ReportState.IN_PROGRESS, ReportState.NEEDS_REVISION}
)

_AUTH_REQUIRED = Decision.deny("AUTH_REQUIRED", "authentication required")
_INSUFFICIENT = Decision.deny("INSUFFICIENT_PERMISSIONS", "insufficient permissions")


def is_qualified_assignee(candidate: Optional[Actor], report: Report) -> bool:
    if candidate is None or candidate.role is not Role.STAFF:
        return False
    return candidate.effective_specialization == report.category


def _view(actor: Optional[Actor], report: Optional[Report], **_: object) -> Decision:
    if report is None:
        return _INSUFFICIENT
    if report.visibility is Visibility.PUBLIC:
        return Decision.allow()
    if actor is None:
        return _AUTH_REQUIRED
    if actor.id == report.owner or (report.assignee is not None and actor.id == report.assignee):
        return Decision.allow()
    return Decision.deny("VIEW_FORBIDDEN", "not authorized to view")


def _create(actor: Optional[Actor], report: Optional[Report], **_: object) -> Decision:
    if actor is None:
        return _AUTH_REQUIRED
    if actor.role is Role.CITIZEN:
        return Decision.allow()
    return Decision.deny("CREATE_FORBIDDEN", "only citizens can submit reports")


def _edit(actor: Optional[Actor], report: Optional[Report], **_: object) -> Decision:
    if actor is None:
        return _AUTH_REQUIRED
    if report is None or actor.id != report.owner:
        return Decision.deny("EDIT_NOT_OWNER", "only the report owner can edit it")
    if report.state is not ReportState.PENDING:
        return Decision.deny("EDIT_WINDOW_CLOSED", "reports can only be edited before assignment")
    return Decision.allow()


def _delete(
    actor: Optional[Actor],
    report: Optional[Report],
    *,
    owner_delete_pending: bool = False,
    **_: object,
) -> Decision:
    if actor is None:
        return _AUTH_REQUIRED
    if (
        owner_delete_pending
        and report is not None
        and actor.id == report.owner
        and report.state is ReportState.PENDING
    ):
        return Decision.allow()
    return Decision.deny("DELETE_FORBIDDEN", "only administrators can delete reports")


def _assign(actor: Optional[Actor], report: Optional[Report], **_: object) -> Decision:
    # Reached only for non-admins; admins are decided by the role rule.
    if actor is None:
        return _AUTH_REQUIRED
    return Decision.deny("ASSIGN_FORBIDDEN", "only administrators can assign reports")


def _advance(actor: Optional[Actor], report: Optional[Report], **_: object) -> Decision:
    if actor is None:
        return _AUTH_REQUIRED
    if report is None or report.assignee is None or actor.id != report.assignee:
        return Decision.deny("ADVANCE_NOT_ASSIGNEE", "only the assigned staff member can work this report")
    if report.state not in ADVANCEABLE_STATES:
        return Decision.deny("ADVANCE_STATE", f"work cannot be advanced while report is {report.state.value}")
    return Decision.allow()


def _review(actor: Optional[Actor], report: Optional[Report], **_: object) -> Decision:
    if actor is None:
        return _AUTH_REQUIRED
    return Decision.deny("REVIEW_FORBIDDEN", "only administrators can review completed work")


_ACTION_RULES: Dict[Action, Callable[..., Decision]] = {
    Action.VIEW: _view,
    Action.CREATE: _create,
    Action.EDIT: _edit,
    Action.DELETE: _delete,
    Action.ASSIGN: _assign,
    Action.ADVANCE: _advance,
    Action.REVIEW: _review,
}

_missing_rules = set(Action) - set(_ACTION_RULES)
if _missing_rules:
    raise RuntimeError(f"policy rules missing for actions: {sorted(a.value for a in _missing_rules)}")


def _admin_decision(action: Action, report: Optional[Report], assignee: Optional[Actor]) -> Optional[Decision]:
    if action not in ADMIN_ACTIONS:
        return None
    if action is Action.ASSIGN and assignee is not None and report is not None:
        if not is_qualified_assignee(assignee, report):
            return Decision.deny(
                "NO_QUALIFIED_STAFF",
                f"no qualified staff: assignee must be staff specialized in {report.category.value}",
            )
    return Decision.allow()


def evaluate(
    actor: Optional[Actor],
    report: Optional[Report],
    action: Action,
    *,
    assignee: Optional[Actor] = None,
    owner_delete_pending: bool = False,
) -> Decision:
    """
    Decide whether ``actor`` may perform ``action`` on ``report``.

    Rules apply in precedence order and the first match wins: the admin role
    rule, then the per-action rule. ``assignee`` is the proposed target of an
    Assign and is only consulted for that action. The function is pure; it
    never mutates its arguments.
    """
    action = Action(action)
    if actor is not None and actor.role is Role.ADMIN:
        decided = _admin_decision(action, report, assignee)
        if decided is not None:
            return decided
    rule = _ACTION_RULES.get(action)
    if rule is None:
        return _INSUFFICIENT
    return rule(actor, report, owner_delete_pending=owner_delete_pending)
