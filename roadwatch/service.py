from __future__ import annotations

import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, TypeVar

from roadwatch.config import (
    DEFAULT_PAGE_LIMIT,
    DESCRIPTION_MAX,
    DESCRIPTION_MIN,
    MAX_PAGE_LIMIT,
    TITLE_MAX,
    TITLE_MIN,
    owner_delete_pending_enabled,
)
from roadwatch.core.types import (
    PRIORITY_TARGET_DAYS,
    Action,
    Actor,
    Category,
    Decision,
    ProgressUpdate,
    Report,
    ReportPage,
    ReportState,
    Role,
    Severity,
    Visibility,
    compute_priority,
    utc_now,
)
from roadwatch.errors import Forbidden, NotFound, Unauthenticated, ValidationError
from roadwatch.observability.internal_metrics import incr
from roadwatch.policy.evaluator import evaluate, is_qualified_assignee
from roadwatch.security.rate_limit import AdmissionGovernor
from roadwatch.storage.base import ReportStore
from roadwatch.workflow.dispatch import Dispatcher
from roadwatch.workflow.engine import LifecycleEngine
from roadwatch.workflow.transitions import Trigger


logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

EDITABLE_FIELDS = frozenset({"title", "description", "address", "severity", "visibility"})


def _enum_value(enum_cls: Type[E], raw: Any, field_name: str) -> E:
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        pass
    # Report states use CamelCase values.
    try:
        return enum_cls(str(raw).strip())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"invalid {field_name}: {raw!r} (expected one of {allowed})") from exc


def _bounded_text(raw: Any, field_name: str, minimum: int, maximum: int) -> str:
    if not isinstance(raw, str):
        raise ValidationError(f"{field_name} must be a string")
    value = raw.strip()
    if not minimum <= len(value) <= maximum:
        raise ValidationError(f"{field_name} must be between {minimum} and {maximum} characters")
    return value


def _matches_search(report: Report, needle: str) -> bool:
    return any(needle in (text or "").casefold() for text in (report.title, report.description, report.address))


class ReportService:
    """
    Entry point for every report action.

    Each call is admitted against the caller's role budget first, then
    checked by the policy evaluator; workflow transitions are delegated to
    the lifecycle engine, which re-checks the guard under the report lock.
    """

    def __init__(
        self,
        store: ReportStore,
        *,
        governor: Optional[AdmissionGovernor] = None,
        engine: Optional[LifecycleEngine] = None,
        dispatcher: Optional[Dispatcher] = None,
        owner_delete_pending: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.governor = governor or AdmissionGovernor()
        self.engine = engine or LifecycleEngine(store, dispatcher)
        self.owner_delete_pending = (
            owner_delete_pending_enabled() if owner_delete_pending is None else bool(owner_delete_pending)
        )
        self._clock = clock

    # -- admission and policy -------------------------------------------------

    def admit(self, actor: Optional[Actor]) -> None:
        self.governor.admit(actor.role if actor is not None else None, now=self._clock())
        incr("admission.allowed")

    def check(self, actor: Optional[Actor], report: Optional[Report], action: Action, **kwargs: Any) -> Decision:
        return evaluate(actor, report, action, owner_delete_pending=self.owner_delete_pending, **kwargs)

    def _authorize(self, actor: Optional[Actor], report: Optional[Report], action: Action) -> None:
        decision = self.check(actor, report, action)
        if decision.allowed:
            return
        incr("policy.denied")
        logger.info(
            "Policy denied: actor=%s action=%s report=%s reason_code=%s",
            actor.id if actor is not None else "anonymous",
            action.value,
            report.id if report is not None else "-",
            decision.reason_code,
            extra={
                "report_id": report.id if report is not None else None,
                "actor": actor.id if actor is not None else None,
                "role": actor.role if actor is not None else None,
                "action": action,
                "reason_code": decision.reason_code,
            },
        )
        if decision.reason_code == "AUTH_REQUIRED":
            raise Unauthenticated(decision.reason)
        raise Forbidden(decision.reason, error_code=decision.reason_code)

    def _load(self, report_id: str) -> Report:
        report = self.store.load_report(report_id)
        if report is None:
            raise NotFound(f"report {report_id} not found", error_code="REPORT_NOT_FOUND")
        return report

    # -- reads ----------------------------------------------------------------

    def get_report(self, actor: Optional[Actor], report_id: str) -> Report:
        self.admit(actor)
        report = self._load(report_id)
        self._authorize(actor, report, Action.VIEW)
        return report

    def list_reports(
        self,
        actor: Optional[Actor],
        *,
        state: Optional[Any] = None,
        category: Optional[Any] = None,
        severity: Optional[Any] = None,
        search: Optional[str] = None,
        mine: bool = False,
    ) -> List[Report]:
        self.admit(actor)
        return self._visible_reports(
            actor, state=state, category=category, severity=severity, search=search, mine=mine
        )

    def page_reports(
        self,
        actor: Optional[Actor],
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
        **filters: Any,
    ) -> ReportPage:
        """
        One page of the reports the caller may view, newest first.

        `total` counts every visible match, not just the returned page.
        Accepts the same filters as `list_reports`.
        """
        self.admit(actor)
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError("page must be a positive integer", error_code="PAGE_INVALID")
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}", error_code="LIMIT_INVALID")

        matches = self._visible_reports(actor, **filters)
        # Stores list oldest first.
        matches.reverse()
        start = (page - 1) * limit
        return ReportPage(items=tuple(matches[start:start + limit]), total=len(matches), page=page, limit=limit)

    def _visible_reports(
        self,
        actor: Optional[Actor],
        *,
        state: Optional[Any] = None,
        category: Optional[Any] = None,
        severity: Optional[Any] = None,
        search: Optional[str] = None,
        mine: bool = False,
    ) -> List[Report]:
        state_filter = _enum_value(ReportState, state, "state") if state is not None else None
        category_filter = _enum_value(Category, category, "category") if category is not None else None
        severity_filter = _enum_value(Severity, severity, "severity") if severity is not None else None
        needle = str(search or "").strip().casefold()
        if mine and actor is None:
            raise Unauthenticated("authentication required")

        visible: List[Report] = []
        for report in self.store.list_reports():
            if state_filter is not None and report.state is not state_filter:
                continue
            if category_filter is not None and report.category is not category_filter:
                continue
            if severity_filter is not None and report.severity is not severity_filter:
                continue
            if needle and not _matches_search(report, needle):
                continue
            if mine and actor is not None and actor.id not in {report.owner, report.assignee}:
                continue
            if self.check(actor, report, Action.VIEW).allowed:
                visible.append(report)
        return visible

    def report_stats(self, actor: Optional[Actor]) -> Dict[str, Any]:
        """Dashboard counts across every report; administrators only."""
        self.admit(actor)
        self._authorize(actor, None, Action.REVIEW)

        reports = self.store.list_reports()
        now = datetime.fromtimestamp(self._clock(), timezone.utc)
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = today - timedelta(days=today.weekday())
        month_start = today.replace(day=1)

        by_state = {state.value: 0 for state in ReportState}
        by_category = {category.value: 0 for category in Category}
        by_severity = {severity.value: 0 for severity in Severity}
        resolution_days: List[float] = []
        for report in reports:
            by_state[report.state.value] += 1
            by_category[report.category.value] += 1
            by_severity[report.severity.value] += 1
            if report.state is ReportState.RESOLVED and report.approved_at and report.created_at:
                resolution_days.append((report.approved_at - report.created_at).total_seconds() / 86400)

        created = [r.created_at for r in reports if r.created_at is not None]
        total = len(reports)
        resolved = by_state[ReportState.RESOLVED.value]
        return {
            "total": total,
            "by_state": by_state,
            "by_category": by_category,
            "by_severity": by_severity,
            "created_today": sum(1 for ts in created if ts >= today),
            "created_this_week": sum(1 for ts in created if ts >= week_start),
            "created_this_month": sum(1 for ts in created if ts >= month_start),
            "completion_rate": round(resolved / total * 100, 1) if total else 0.0,
            "avg_resolution_days": round(sum(resolution_days) / len(resolution_days), 1) if resolution_days else 0.0,
        }

    def pending_review(self, actor: Optional[Actor]) -> List[Report]:
        self.admit(actor)
        self._authorize(actor, None, Action.REVIEW)
        return [r for r in self.store.list_reports() if r.state is ReportState.PENDING_REVIEW]

    def qualified_staff(self, actor: Optional[Actor], report_id: str) -> List[Actor]:
        self.admit(actor)
        report = self._load(report_id)
        self._authorize(actor, report, Action.ASSIGN)
        return [staff for staff in self.store.list_actors(Role.STAFF) if is_qualified_assignee(staff, report)]

    def feedback_eligibility(self, actor: Optional[Actor], report_id: str) -> Dict[str, Any]:
        self.admit(actor)
        report = self._load(report_id)
        self._authorize(actor, report, Action.VIEW)
        approved = report.review_outcome is not None and report.review_outcome.approved
        is_owner = actor is not None and actor.id == report.owner
        eligible = is_owner and report.state is ReportState.RESOLVED and approved
        if eligible:
            reason = "report resolved and approved"
        elif not is_owner:
            reason = "only the report owner can leave feedback"
        else:
            reason = "feedback opens once the resolution is approved"
        return {"report_id": report.id, "eligible": eligible, "reason": reason}

    # -- mutations outside the workflow ---------------------------------------

    def create_report(
        self,
        actor: Optional[Actor],
        *,
        title: Any,
        description: Any,
        category: Any,
        address: str = "",
        severity: Any = Severity.MEDIUM,
        visibility: Any = Visibility.PUBLIC,
    ) -> Report:
        self.admit(actor)
        self._authorize(actor, None, Action.CREATE)
        if actor is None:
            raise Unauthenticated("authentication required")

        category_value = _enum_value(Category, category, "category")
        severity_value = _enum_value(Severity, severity, "severity")
        visibility_value = _enum_value(Visibility, visibility, "visibility")
        clean_title = _bounded_text(title, "title", TITLE_MIN, TITLE_MAX)
        clean_description = _bounded_text(description, "description", DESCRIPTION_MIN, DESCRIPTION_MAX)
        priority = compute_priority(severity_value, category_value)
        now = utc_now()

        report = Report(
            id=uuid.uuid4().hex,
            owner=actor.id,
            category=category_value,
            title=clean_title,
            description=clean_description,
            address=str(address or "").strip(),
            severity=severity_value,
            priority=priority,
            visibility=visibility_value,
            state=ReportState.PENDING,
            estimated_completion=now + timedelta(days=PRIORITY_TARGET_DAYS[priority]),
            progress_updates=(
                ProgressUpdate(
                    state=ReportState.PENDING,
                    description="Report submitted",
                    percentage=0,
                    updated_by=actor.id,
                    timestamp=now,
                ),
            ),
            created_at=now,
            updated_at=now,
        )
        saved = self.store.save_report(report)
        incr("report.created")
        logger.info(
            "Report created: report=%s owner=%s category=%s",
            saved.id,
            actor.id,
            category_value.value,
            extra={"report_id": saved.id, "actor": actor.id, "role": actor.role},
        )
        return saved

    def edit_report(self, actor: Optional[Actor], report_id: str, changes: Mapping[str, Any]) -> Report:
        self.admit(actor)
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"fields cannot be edited: {', '.join(unknown)}", error_code="FIELD_NOT_EDITABLE")

        with self.engine.lock_for(report_id):
            report = self._load(report_id)
            self._authorize(actor, report, Action.EDIT)
            updates: Dict[str, Any] = {}
            if "title" in changes:
                updates["title"] = _bounded_text(changes["title"], "title", TITLE_MIN, TITLE_MAX)
            if "description" in changes:
                updates["description"] = _bounded_text(
                    changes["description"], "description", DESCRIPTION_MIN, DESCRIPTION_MAX
                )
            if "address" in changes:
                updates["address"] = str(changes["address"] or "").strip()
            if "visibility" in changes:
                updates["visibility"] = _enum_value(Visibility, changes["visibility"], "visibility")
            if "severity" in changes:
                severity_value = _enum_value(Severity, changes["severity"], "severity")
                updates["severity"] = severity_value
                updates["priority"] = compute_priority(severity_value, report.category)
            if not updates:
                return report
            updates["updated_at"] = utc_now()
            saved = self.store.save_report(replace(report, **updates))

        logger.info(
            "Report edited: report=%s actor=%s fields=%s",
            report_id,
            actor.id if actor else "-",
            sorted(updates),
            extra={"report_id": report_id, "actor": actor.id if actor else None, "action": Action.EDIT},
        )
        return saved

    def delete_report(self, actor: Optional[Actor], report_id: str) -> None:
        self.admit(actor)
        with self.engine.lock_for(report_id):
            report = self._load(report_id)
            self._authorize(actor, report, Action.DELETE)
            self.store.delete_report(report_id)
        self.engine.forget(report_id)
        incr("report.deleted")
        logger.info(
            "Report deleted: report=%s actor=%s",
            report_id,
            actor.id if actor else "-",
            extra={"report_id": report_id, "actor": actor.id if actor else None, "action": Action.DELETE},
        )

    # -- workflow ---------------------------------------------------------------

    def transition(
        self,
        actor: Optional[Actor],
        report_id: str,
        trigger: Trigger,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Report:
        self.admit(actor)
        return self.engine.transition(report_id, Trigger(trigger), actor, payload)

    def assign(self, actor: Optional[Actor], report_id: str, staff_id: str, notes: str = "") -> Report:
        return self.transition(actor, report_id, Trigger.ASSIGN, {"staff_id": staff_id, "notes": notes})

    def start_work(self, actor: Optional[Actor], report_id: str) -> Report:
        return self.transition(actor, report_id, Trigger.START_WORK)

    def update_progress(self, actor: Optional[Actor], report_id: str, progress: int, description: str = "") -> Report:
        return self.transition(
            actor, report_id, Trigger.UPDATE_PROGRESS, {"progress": progress, "description": description}
        )

    def submit_for_review(self, actor: Optional[Actor], report_id: str, notes: str = "") -> Report:
        return self.transition(actor, report_id, Trigger.SUBMIT_FOR_REVIEW, {"notes": notes})

    def approve(self, actor: Optional[Actor], report_id: str, notes: str = "") -> Report:
        return self.transition(actor, report_id, Trigger.APPROVE, {"notes": notes})

    def reject(self, actor: Optional[Actor], report_id: str, reason: str) -> Report:
        return self.transition(actor, report_id, Trigger.REJECT, {"reason": reason})

    def resume_work(self, actor: Optional[Actor], report_id: str) -> Report:
        return self.transition(actor, report_id, Trigger.RESUME_WORK)
