from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from roadwatch.core.types import Actor, Report, Role


class ReportStore(ABC):
    """
    Identity and report storage consumed by the workflow.

    ``save_report`` uses optimistic concurrency: ``report.version`` must equal
    the stored version (0 for a new report), and the saved copy is returned
    with the version incremented. A mismatch raises ``ConcurrentUpdate``.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def load_actor(self, actor_id: str) -> Optional[Actor]:
        raise NotImplementedError

    @abstractmethod
    def save_actor(self, actor: Actor) -> Actor:
        raise NotImplementedError

    @abstractmethod
    def list_actors(self, role: Optional[Role] = None) -> List[Actor]:
        raise NotImplementedError

    @abstractmethod
    def load_report(self, report_id: str) -> Optional[Report]:
        raise NotImplementedError

    @abstractmethod
    def save_report(self, report: Report) -> Report:
        raise NotImplementedError

    @abstractmethod
    def delete_report(self, report_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_reports(self) -> List[Report]:
        raise NotImplementedError
