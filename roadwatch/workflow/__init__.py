from roadwatch.workflow.dispatch import (
    DispatchError,
    Dispatcher,
    FanoutDispatcher,
    LoggingDispatcher,
    NullDispatcher,
    QueueDispatcher,
    WebhookDispatcher,
    build_default_dispatcher,
)
from roadwatch.workflow.engine import LifecycleEngine
from roadwatch.workflow.transitions import (
    TRANSITIONS,
    EventKind,
    TransitionRule,
    Trigger,
    allowed_triggers,
    apply_transition,
    check_transition,
    clamp_progress,
)

__all__ = [
    "DispatchError",
    "Dispatcher",
    "EventKind",
    "FanoutDispatcher",
    "LifecycleEngine",
    "LoggingDispatcher",
    "NullDispatcher",
    "QueueDispatcher",
    "TRANSITIONS",
    "TransitionRule",
    "Trigger",
    "WebhookDispatcher",
    "allowed_triggers",
    "apply_transition",
    "build_default_dispatcher",
    "check_transition",
    "clamp_progress",
]
