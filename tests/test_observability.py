import io
import logging

from jiraterm.core.log_setup import configure_logging
from jiraterm.core.metrics import Metrics
from jiraterm.core.telemetry import setup_telemetry


def test_setup_telemetry_disabled_without_endpoint(monkeypatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert setup_telemetry("jiraterm") is False


def test_configure_logging_is_idempotent():
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    stream = io.StringIO()
    try:
        configure_logging("DEBUG", stream=stream)
        configure_logging("WARNING", stream=stream)
        ours = [h for h in root.handlers if getattr(h, "_jiraterm", False)]
        assert len(ours) == 1
        assert ours[0].level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

        logging.getLogger("jiraterm.test").warning("[Cache] hello")
        assert "[Cache] hello" in stream.getvalue()
    finally:
        for h in list(root.handlers):
            if h not in before:
                root.removeHandler(h)
        root.setLevel(level)


def test_metrics_instances_do_not_collide():
    a, b = Metrics(), Metrics()
    a.cache_hits.labels("ticket").inc()
    assert a.registry.get_sample_value("jira_cache_hits_total", {"kind": "ticket"}) == 1
    assert b.registry.get_sample_value("jira_cache_hits_total", {"kind": "ticket"}) is None
    assert b"jira_cache_misses_total" in b.render()
