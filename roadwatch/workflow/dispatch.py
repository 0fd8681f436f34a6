from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import requests

from roadwatch.config import get_notify_timeout_seconds, get_notify_webhook_url
from roadwatch.core.types import TransitionEvent, event_to_dict
from roadwatch.observability.internal_metrics import incr


logger = logging.getLogger(__name__)


class DispatchError(RuntimeError):
    """Raised by a sink that could not deliver an event."""


class Dispatcher(ABC):
    """Receives one event per committed transition."""

    @abstractmethod
    def dispatch(self, event: TransitionEvent) -> None:
        raise NotImplementedError


class NullDispatcher(Dispatcher):
    def dispatch(self, event: TransitionEvent) -> None:
        return None


class LoggingDispatcher(Dispatcher):
    def dispatch(self, event: TransitionEvent) -> None:
        logger.info(
            "Report event: report=%s kind=%s %s->%s actor=%s audience=%s",
            event.report_id,
            event.kind,
            event.from_state.value,
            event.to_state.value,
            event.actor_id,
            ",".join(event.audience),
        )


class FanoutDispatcher(Dispatcher):
    """Delivers to every sink; one failing sink does not stop the others."""

    def __init__(self, sinks: Sequence[Dispatcher]):
        self._sinks: List[Dispatcher] = list(sinks)

    def dispatch(self, event: TransitionEvent) -> None:
        failures = 0
        for sink in self._sinks:
            try:
                sink.dispatch(event)
            except Exception:
                failures += 1
                logger.exception("Dispatch sink %s failed for report %s", type(sink).__name__, event.report_id)
        if failures:
            raise DispatchError(f"{failures} of {len(self._sinks)} sinks failed")


class WebhookDispatcher(Dispatcher):
    """POSTs each event as JSON to the notification collaborator."""

    def __init__(self, url: Optional[str] = None, *, timeout_seconds: Optional[float] = None):
        self.url = (url if url is not None else get_notify_webhook_url()).strip()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else get_notify_timeout_seconds()

    def dispatch(self, event: TransitionEvent) -> None:
        if not self.url:
            raise DispatchError("notification webhook URL is not configured")
        try:
            resp = requests.post(
                self.url,
                json=event_to_dict(event),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise DispatchError(f"notification webhook timed out after {self.timeout_seconds}s") from exc
        except requests.RequestException as exc:
            raise DispatchError(f"notification webhook request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise DispatchError(f"notification webhook returned status {resp.status_code}")


class QueueDispatcher(Dispatcher):
    """
    Hands events to a background worker so slow or failing delivery never
    blocks the transition that produced them. Delivery failures are logged
    and counted, then dropped.
    """

    def __init__(self, sink: Dispatcher, *, maxsize: int = 0, name: str = "roadwatch-dispatch"):
        self._sink = sink
        self._queue: "queue.Queue[Optional[TransitionEvent]]" = queue.Queue(maxsize=maxsize)
        self._name = name
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            thread.start()
            self._thread = thread

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout=timeout)

    def flush(self) -> None:
        """Block until every queued event has been handled."""
        self._queue.join()

    def dispatch(self, event: TransitionEvent) -> None:
        self.start()
        try:
            self._queue.put_nowait(event)
        except queue.Full as exc:
            incr("dispatch.dropped")
            raise DispatchError("dispatch queue is full") from exc

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._sink.dispatch(event)
                incr("dispatch.delivered")
            except Exception:
                incr("dispatch.failed")
                logger.exception("Event delivery failed for report %s", event.report_id if event else "?")
            finally:
                self._queue.task_done()


def build_default_dispatcher() -> Dispatcher:
    sinks: List[Dispatcher] = [LoggingDispatcher()]
    if get_notify_webhook_url():
        sinks.append(WebhookDispatcher())
    return QueueDispatcher(FanoutDispatcher(sinks))
