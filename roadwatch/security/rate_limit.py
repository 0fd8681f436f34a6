from __future__ import annotations

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from roadwatch.config import DEFAULT_ROLE_BUDGETS, DEFAULT_WINDOW_MS
from roadwatch.core.types import Role
from roadwatch.errors import ThrottleExceeded
from roadwatch.observability.internal_metrics import incr


logger = logging.getLogger(__name__)

ANONYMOUS_KEY = "anonymous"


@dataclass(frozen=True)
class RoleBudget:
    window_ms: int
    max_requests: int


def _limit(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
        return parsed if parsed > 0 else default
    except ValueError:
        return default


def _budget_from_mapping(raw: Any, fallback: RoleBudget) -> RoleBudget:
    if not isinstance(raw, Mapping):
        return fallback
    window_ms = fallback.window_ms
    max_requests = fallback.max_requests
    try:
        if raw.get("window_ms") is not None:
            window_ms = max(1, int(raw["window_ms"]))
        if raw.get("max") is not None:
            max_requests = max(1, int(raw["max"]))
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed admission budget entry: %s", raw)
        return fallback
    return RoleBudget(window_ms=window_ms, max_requests=max_requests)


def load_role_budgets(config_path: Optional[str] = None) -> Dict[Role, RoleBudget]:
    """
    Resolve admission budgets: built-in defaults, then environment overrides,
    then an optional YAML file of the form ``{citizen: {window_ms, max}, ...}``.
    """
    budgets: Dict[Role, RoleBudget] = {}
    for role in Role:
        key = role.value.upper()
        budgets[role] = RoleBudget(
            window_ms=_limit(f"ROADWATCH_RATE_LIMIT_{key}_WINDOW_MS", DEFAULT_WINDOW_MS),
            max_requests=_limit(f"ROADWATCH_RATE_LIMIT_{key}", DEFAULT_ROLE_BUDGETS[role.value]),
        )

    path = config_path if config_path is not None else os.getenv("ROADWATCH_ADMISSION_CONFIG")
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError):
            logger.exception("Failed to load admission config %s", path)
            loaded = {}
        if isinstance(loaded, Mapping):
            for role in Role:
                budgets[role] = _budget_from_mapping(loaded.get(role.value), budgets[role])
    return budgets


class CounterStore(ABC):
    """
    Storage for per-key fixed-window counters.
    Implementations must make ``increment`` atomic.
    """

    @abstractmethod
    def increment(self, key: str, window_start_ms: int) -> int:
        """Count one call in the window starting at ``window_start_ms`` and return the new total."""
        raise NotImplementedError

    @abstractmethod
    def reset(self) -> None:
        raise NotImplementedError


class InMemoryCounterStore(CounterStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, int]] = {}

    def increment(self, key: str, window_start_ms: int) -> int:
        with self._lock:
            start, count = self._counters.get(key, (window_start_ms, 0))
            if window_start_ms > start:
                start, count = window_start_ms, 0
            count += 1
            self._counters[key] = (start, count)
            return count

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


class AdmissionGovernor:
    """Per-role request budgets, checked before any authorization work."""

    def __init__(
        self,
        budgets: Optional[Mapping[Role, RoleBudget]] = None,
        store: Optional[CounterStore] = None,
    ):
        self._budgets: Dict[Role, RoleBudget] = dict(budgets) if budgets is not None else load_role_budgets()
        self._store = store or InMemoryCounterStore()

    @property
    def budgets(self) -> Dict[Role, RoleBudget]:
        return dict(self._budgets)

    def budget_for(self, role: Optional[Role]) -> RoleBudget:
        # Anonymous callers share the citizen budget under their own counter.
        effective = role or Role.CITIZEN
        budget = self._budgets.get(effective)
        if budget is None:
            budget = RoleBudget(window_ms=DEFAULT_WINDOW_MS, max_requests=DEFAULT_ROLE_BUDGETS[effective.value])
        return budget

    @staticmethod
    def _counter_key(role: Optional[Role], budget: RoleBudget) -> str:
        name = role.value if role is not None else ANONYMOUS_KEY
        return f"role:{name}:w{budget.window_ms}"

    @staticmethod
    def _window_start(now: float, window_ms: int) -> int:
        now_ms = int(now * 1000)
        return now_ms - (now_ms % window_ms)

    def allow(self, role: Optional[Role], now: Optional[float] = None) -> bool:
        effective_now = time.time() if now is None else float(now)
        budget = self.budget_for(role)
        window_start = self._window_start(effective_now, budget.window_ms)
        # Rejected calls still count so retry storms cannot slip through.
        count = self._store.increment(self._counter_key(role, budget), window_start)
        return count <= budget.max_requests

    def retry_after(self, role: Optional[Role], now: Optional[float] = None) -> int:
        effective_now = time.time() if now is None else float(now)
        budget = self.budget_for(role)
        window_start = self._window_start(effective_now, budget.window_ms)
        remaining_ms = window_start + budget.window_ms - int(effective_now * 1000)
        return max(1, int(round(remaining_ms / 1000.0)))

    def admit(self, role: Optional[Role], now: Optional[float] = None) -> None:
        if self.allow(role, now):
            return
        name = role.value if role is not None else ANONYMOUS_KEY
        retry_after = self.retry_after(role, now)
        incr("admission.throttled")
        logger.warning("Admission budget exceeded: role=%s retry_after=%s", name, retry_after)
        raise ThrottleExceeded(
            f"Request budget exceeded for role {name}",
            retry_after=retry_after,
            role=name,
        )

    def reset(self) -> None:
        self._store.reset()
