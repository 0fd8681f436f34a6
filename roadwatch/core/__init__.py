from roadwatch.core.types import (
    Action,
    Actor,
    Category,
    Decision,
    ProgressUpdate,
    Report,
    ReportPage,
    ReportState,
    ReviewOutcome,
    Role,
    Severity,
    TransitionEvent,
    Visibility,
)

__all__ = [
    "Action",
    "Actor",
    "Category",
    "Decision",
    "ProgressUpdate",
    "Report",
    "ReportPage",
    "ReportState",
    "ReviewOutcome",
    "Role",
    "Severity",
    "TransitionEvent",
    "Visibility",
]
