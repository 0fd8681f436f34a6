from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class Role(str, Enum):
    CITIZEN = "citizen"
    STAFF = "staff"
    ADMIN = "admin"


class Category(str, Enum):
    POTHOLE = "pothole"
    DRAINAGE = "drainage"
    LIGHTING = "lighting"
    GARBAGE = "garbage"
    SIGNAGE = "signage"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ReportState(str, Enum):
    PENDING = "Pending"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "InProgress"
    PENDING_REVIEW = "PendingReview"
    RESOLVED = "Resolved"
    NEEDS_REVISION = "NeedsRevision"


class Action(str, Enum):
    VIEW = "View"
    CREATE = "Create"
    EDIT = "Edit"
    DELETE = "Delete"
    ASSIGN = "Assign"
    ADVANCE = "Advance"
    REVIEW = "Review"


SEVERITY_WEIGHTS: Dict[Severity, int] = {
    Severity.CRITICAL: 5,
    Severity.HIGH: 4,
    Severity.MEDIUM: 3,
    Severity.LOW: 2,
}

CATEGORY_WEIGHTS: Dict[Category, int] = {
    Category.POTHOLE: 5,
    Category.DRAINAGE: 4,
    Category.LIGHTING: 3,
    Category.GARBAGE: 2,
    Category.SIGNAGE: 2,
    Category.OTHER: 1,
}

# Days until estimated completion, keyed by priority.
PRIORITY_TARGET_DAYS: Dict[int, int] = {1: 30, 2: 14, 3: 7, 4: 3, 5: 1}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = f"{raw[:-1]}+00:00"
        dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def compute_priority(severity: Severity, category: Category) -> int:
    """Average of severity and category weights, halves rounded up."""
    total = SEVERITY_WEIGHTS[severity] + CATEGORY_WEIGHTS[category]
    return max(1, min(5, (total + 1) // 2))


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role
    specialization: Optional[Category] = None
    name: str = ""

    @property
    def effective_specialization(self) -> Optional[Category]:
        # A specialization only means something for staff.
        if self.role is Role.STAFF:
            return self.specialization
        return None


@dataclass(frozen=True)
class ReviewOutcome:
    approved: bool
    reason: str = ""


@dataclass(frozen=True)
class ProgressUpdate:
    state: ReportState
    description: str
    percentage: int
    updated_by: str
    timestamp: datetime


@dataclass(frozen=True)
class Report:
    id: str
    owner: str
    category: Category
    title: str = ""
    description: str = ""
    address: str = ""
    severity: Severity = Severity.MEDIUM
    priority: int = 3
    visibility: Visibility = Visibility.PUBLIC
    state: ReportState = ReportState.PENDING
    assignee: Optional[str] = None
    progress: int = 0
    review_outcome: Optional[ReviewOutcome] = None
    revision_count: int = 0
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None
    assignment_notes: str = ""
    staff_completed_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    admin_notes: str = ""
    estimated_completion: Optional[datetime] = None
    progress_updates: Tuple[ProgressUpdate, ...] = ()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""
    reason_code: str = "POLICY_ALLOWED"

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason_code: str, reason: str) -> "Decision":
        return cls(allowed=False, reason=reason, reason_code=reason_code)


@dataclass(frozen=True)
class ReportPage:
    items: Tuple[Report, ...]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


@dataclass(frozen=True)
class TransitionEvent:
    report_id: str
    from_state: ReportState
    to_state: ReportState
    actor_id: str
    timestamp: datetime
    kind: str
    audience: Tuple[str, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)


def actor_to_dict(value: Actor) -> Dict[str, Any]:
    return {
        "id": value.id,
        "role": value.role.value,
        "specialization": value.specialization.value if value.specialization else None,
        "name": value.name,
    }


def actor_from_dict(raw: Mapping[str, Any]) -> Actor:
    specialization = raw.get("specialization")
    return Actor(
        id=str(raw["id"]),
        role=Role(str(raw["role"]).strip().lower()),
        specialization=Category(str(specialization).strip().lower()) if specialization else None,
        name=str(raw.get("name") or ""),
    )


def progress_update_to_dict(value: ProgressUpdate) -> Dict[str, Any]:
    return {
        "state": value.state.value,
        "description": value.description,
        "percentage": value.percentage,
        "updated_by": value.updated_by,
        "timestamp": _iso(value.timestamp),
    }


def report_to_dict(value: Report) -> Dict[str, Any]:
    outcome = value.review_outcome
    return {
        "id": value.id,
        "owner": value.owner,
        "category": value.category.value,
        "title": value.title,
        "description": value.description,
        "address": value.address,
        "severity": value.severity.value,
        "priority": value.priority,
        "visibility": value.visibility.value,
        "state": value.state.value,
        "assignee": value.assignee,
        "progress": value.progress,
        "review_outcome": (
            {"approved": outcome.approved, "reason": outcome.reason} if outcome is not None else None
        ),
        "revision_count": value.revision_count,
        "assigned_by": value.assigned_by,
        "assigned_at": _iso(value.assigned_at),
        "assignment_notes": value.assignment_notes,
        "staff_completed_at": _iso(value.staff_completed_at),
        "approved_by": value.approved_by,
        "approved_at": _iso(value.approved_at),
        "rejected_by": value.rejected_by,
        "rejected_at": _iso(value.rejected_at),
        "admin_notes": value.admin_notes,
        "estimated_completion": _iso(value.estimated_completion),
        "progress_updates": [progress_update_to_dict(item) for item in value.progress_updates],
        "created_at": _iso(value.created_at),
        "updated_at": _iso(value.updated_at),
        "version": value.version,
    }


def report_from_dict(raw: Mapping[str, Any]) -> Report:
    outcome_raw = raw.get("review_outcome")
    outcome = None
    if isinstance(outcome_raw, Mapping):
        outcome = ReviewOutcome(
            approved=bool(outcome_raw.get("approved")),
            reason=str(outcome_raw.get("reason") or ""),
        )
    updates = tuple(
        ProgressUpdate(
            state=ReportState(str(item["state"])),
            description=str(item.get("description") or ""),
            percentage=int(item.get("percentage") or 0),
            updated_by=str(item.get("updated_by") or ""),
            timestamp=parse_iso_datetime(item.get("timestamp")) or utc_now(),
        )
        for item in (raw.get("progress_updates") or [])
        if isinstance(item, Mapping)
    )
    return Report(
        id=str(raw["id"]),
        owner=str(raw["owner"]),
        category=Category(str(raw["category"])),
        title=str(raw.get("title") or ""),
        description=str(raw.get("description") or ""),
        address=str(raw.get("address") or ""),
        severity=Severity(str(raw.get("severity") or Severity.MEDIUM.value)),
        priority=int(raw.get("priority") or 3),
        visibility=Visibility(str(raw.get("visibility") or Visibility.PUBLIC.value)),
        state=ReportState(str(raw.get("state") or ReportState.PENDING.value)),
        assignee=raw.get("assignee") or None,
        progress=int(raw.get("progress") or 0),
        review_outcome=outcome,
        revision_count=int(raw.get("revision_count") or 0),
        assigned_by=raw.get("assigned_by") or None,
        assigned_at=parse_iso_datetime(raw.get("assigned_at")),
        assignment_notes=str(raw.get("assignment_notes") or ""),
        staff_completed_at=parse_iso_datetime(raw.get("staff_completed_at")),
        approved_by=raw.get("approved_by") or None,
        approved_at=parse_iso_datetime(raw.get("approved_at")),
        rejected_by=raw.get("rejected_by") or None,
        rejected_at=parse_iso_datetime(raw.get("rejected_at")),
        admin_notes=str(raw.get("admin_notes") or ""),
        estimated_completion=parse_iso_datetime(raw.get("estimated_completion")),
        progress_updates=updates,
        created_at=parse_iso_datetime(raw.get("created_at")),
        updated_at=parse_iso_datetime(raw.get("updated_at")),
        version=int(raw.get("version") or 0),
    )


def decision_to_dict(value: Decision) -> Dict[str, Any]:
    return {
        "allowed": value.allowed,
        "reason": value.reason,
        "reason_code": value.reason_code,
    }


def event_to_dict(value: TransitionEvent) -> Dict[str, Any]:
    return {
        "report_id": value.report_id,
        "from_state": value.from_state.value,
        "to_state": value.to_state.value,
        "actor_id": value.actor_id,
        "timestamp": _iso(value.timestamp),
        "kind": value.kind,
        "audience": list(value.audience),
        "details": dict(value.details or {}),
    }
