from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, List, Optional

from roadwatch.core.types import Actor, Report, Role
from roadwatch.errors import ConcurrentUpdate
from roadwatch.storage.base import ReportStore


class InMemoryReportStore(ReportStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._actors: Dict[str, Actor] = {}
        self._reports: Dict[str, Report] = {}

    @property
    def name(self) -> str:
        return "memory"

    def load_actor(self, actor_id: str) -> Optional[Actor]:
        with self._lock:
            return self._actors.get(actor_id)

    def save_actor(self, actor: Actor) -> Actor:
        with self._lock:
            self._actors[actor.id] = actor
        return actor

    def list_actors(self, role: Optional[Role] = None) -> List[Actor]:
        with self._lock:
            actors = list(self._actors.values())
        if role is not None:
            actors = [actor for actor in actors if actor.role is role]
        return sorted(actors, key=lambda actor: actor.id)

    def load_report(self, report_id: str) -> Optional[Report]:
        with self._lock:
            return self._reports.get(report_id)

    def save_report(self, report: Report) -> Report:
        with self._lock:
            current = self._reports.get(report.id)
            stored_version = current.version if current is not None else 0
            if report.version != stored_version:
                raise ConcurrentUpdate(
                    f"report {report.id} changed concurrently "
                    f"(expected version {report.version}, found {stored_version})"
                )
            saved = replace(report, version=stored_version + 1)
            self._reports[report.id] = saved
            return saved

    def delete_report(self, report_id: str) -> bool:
        with self._lock:
            return self._reports.pop(report_id, None) is not None

    def list_reports(self) -> List[Report]:
        with self._lock:
            reports = list(self._reports.values())
        return sorted(reports, key=lambda report: (report.created_at is None, report.created_at, report.id))
