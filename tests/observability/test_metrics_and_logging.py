import json
import logging

from roadwatch.core.types import Action, Actor, Category, Report, Role
from roadwatch.observability.internal_metrics import incr, reset, snapshot
from roadwatch.observability.log_format import JsonLogFormatter, configure_logging
from roadwatch.storage.memory import InMemoryReportStore
from roadwatch.workflow.engine import LifecycleEngine
from roadwatch.workflow.transitions import Trigger


def test_internal_metrics_accumulate_and_reset():
    reset()
    incr("transition.committed")
    incr("transition.committed", value=2)
    incr("admission.throttled")

    assert snapshot() == {"admission.throttled": 1, "transition.committed": 3}
    reset()
    assert snapshot() == {}


def test_json_formatter_emits_one_object_per_record():
    record = logging.LogRecord(
        name="roadwatch.workflow.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Transition committed: report=%s",
        args=("r1",),
        exc_info=None,
    )
    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["level"] == "INFO"
    assert payload["logger"] == "roadwatch.workflow.engine"
    assert payload["message"] == "Transition committed: report=r1"
    assert "timestamp" in payload


def test_configure_logging_honours_env(monkeypatch):
    root = logging.getLogger()
    previous_level = root.level
    previous_formatters = [h.formatter for h in root.handlers]
    monkeypatch.setenv("ROADWATCH_LOG_LEVEL", "warning")
    monkeypatch.setenv("ROADWATCH_LOG_FORMAT", "json")
    try:
        configure_logging()
        assert root.level == logging.WARNING
        assert all(isinstance(h.formatter, JsonLogFormatter) for h in root.handlers)
    finally:
        root.setLevel(previous_level)
        for handler, formatter in zip(root.handlers, previous_formatters):
            handler.setFormatter(formatter)


def test_json_formatter_carries_report_context():
    record = logging.LogRecord(
        name="roadwatch.service",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Policy denied",
        args=(),
        exc_info=None,
    )
    record.report_id = "r1"
    record.actor = "c2"
    record.role = Role.CITIZEN
    record.action = Action.VIEW
    record.reason_code = "VIEW_FORBIDDEN"
    record.trigger = None

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["service"] == "roadwatch"
    assert payload["report_id"] == "r1"
    assert payload["actor"] == "c2"
    assert payload["role"] == "citizen"
    assert payload["action"] == "View"
    assert payload["reason_code"] == "VIEW_FORBIDDEN"
    assert "trigger" not in payload


def test_engine_logs_commit_with_report_context(caplog):
    store = InMemoryReportStore()
    store.save_actor(Actor(id="s2", role=Role.STAFF, specialization=Category.POTHOLE))
    store.save_report(Report(id="r1", owner="c1", category=Category.POTHOLE))
    engine = LifecycleEngine(store, max_revisions=5)

    with caplog.at_level(logging.INFO, logger="roadwatch.workflow.engine"):
        engine.transition("r1", Trigger.ASSIGN, Actor(id="a1", role=Role.ADMIN), {"staff_id": "s2"})

    committed = [r for r in caplog.records if r.getMessage().startswith("Transition committed")]
    assert len(committed) == 1
    payload = json.loads(JsonLogFormatter().format(committed[0]))
    assert payload["report_id"] == "r1"
    assert payload["actor"] == "a1"
    assert payload["trigger"] == "assign"
