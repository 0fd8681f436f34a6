from __future__ import annotations

import logging
import threading
import weakref
from typing import Any, Mapping, Optional, Tuple

from roadwatch.config import get_max_revisions
from roadwatch.core.types import Actor, Report, TransitionEvent
from roadwatch.errors import ConcurrentUpdate, NotFound, ValidationError
from roadwatch.observability.internal_metrics import incr
from roadwatch.storage.base import ReportStore
from roadwatch.workflow.dispatch import Dispatcher, NullDispatcher
from roadwatch.workflow.transitions import Trigger, apply_transition, check_transition


logger = logging.getLogger(__name__)


class LifecycleEngine:
    """
    Applies workflow transitions against a store.

    Transitions on the same report are serialized by a per-report lock, and
    saves carry an optimistic version check so writers in other processes
    are detected too. The dispatcher is called after the lock is released
    and its failures never undo a committed transition.
    """

    def __init__(
        self,
        store: ReportStore,
        dispatcher: Optional[Dispatcher] = None,
        *,
        max_revisions: Optional[int] = None,
        max_attempts: int = 3,
    ):
        self.store = store
        self.dispatcher = dispatcher or NullDispatcher()
        self.max_revisions = get_max_revisions() if max_revisions is None else max(0, int(max_revisions))
        self.max_attempts = max(1, int(max_attempts))
        # Entries vanish once no caller holds the lock.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def lock_for(self, report_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(report_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[report_id] = lock
            return lock

    def forget(self, report_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(report_id, None)

    def lock_count(self) -> int:
        with self._locks_guard:
            return len(self._locks)

    def _load(self, report_id: str) -> Report:
        report = self.store.load_report(report_id)
        if report is None:
            raise NotFound(f"report {report_id} not found", error_code="REPORT_NOT_FOUND")
        return report

    def _load_assignee(self, payload: Mapping[str, Any], assignee_id: Optional[str]) -> Actor:
        staff_id = str(assignee_id or payload.get("staff_id") or "").strip()
        if not staff_id:
            raise ValidationError("staff_id is required", error_code="ASSIGNEE_REQUIRED")
        staff = self.store.load_actor(staff_id)
        if staff is None:
            raise NotFound(f"staff member {staff_id} not found", error_code="ASSIGNEE_NOT_FOUND")
        return staff

    def transition(
        self,
        report_id: str,
        trigger: Trigger,
        actor: Optional[Actor],
        payload: Optional[Mapping[str, Any]] = None,
        *,
        assignee_id: Optional[str] = None,
    ) -> Report:
        trigger = Trigger(trigger)
        data: Mapping[str, Any] = payload or {}

        attempt = 1
        while True:
            try:
                saved, event = self._commit(report_id, trigger, actor, data, assignee_id)
                break
            except ConcurrentUpdate:
                incr("transition.conflict")
                if attempt >= self.max_attempts:
                    raise
                logger.info(
                    "Version conflict on report %s (attempt %s/%s), reloading",
                    report_id,
                    attempt,
                    self.max_attempts,
                    extra={"report_id": report_id, "trigger": trigger.value},
                )
                attempt += 1

        incr("transition.committed")
        logger.info(
            "Transition committed: report=%s trigger=%s %s->%s actor=%s",
            report_id,
            trigger.value,
            event.from_state.value,
            event.to_state.value,
            event.actor_id,
            extra={"report_id": report_id, "actor": event.actor_id, "trigger": trigger.value},
        )
        self._emit(event)
        return saved

    def _commit(
        self,
        report_id: str,
        trigger: Trigger,
        actor: Optional[Actor],
        data: Mapping[str, Any],
        assignee_id: Optional[str],
    ) -> Tuple[Report, TransitionEvent]:
        with self.lock_for(report_id):
            report = self._load(report_id)
            check_transition(report, trigger, actor)
            assignee = self._load_assignee(data, assignee_id) if trigger is Trigger.ASSIGN else None
            updated, event = apply_transition(
                report,
                trigger,
                actor,
                data,
                assignee=assignee,
                max_revisions=self.max_revisions,
            )
            return self.store.save_report(updated), event

    def _emit(self, event: TransitionEvent) -> None:
        try:
            self.dispatcher.dispatch(event)
        except Exception:
            incr("dispatch.failed")
            logger.exception(
                "Dispatcher failed for report %s kind=%s",
                event.report_id,
                event.kind,
                extra={"report_id": event.report_id, "actor": event.actor_id},
            )
