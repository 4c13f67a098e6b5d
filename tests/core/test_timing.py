"""Tests for attrspine.core.timing and attrspine.core.logging."""

import json

import pytest
import structlog
from structlog.testing import capture_logs

from attrspine.backends.storage import InMemoryStorageService
from attrspine.connectors import ConnectorState
from attrspine.core.context import ResolutionContext
from attrspine.core.errors import MappingError
from attrspine.core.logging import configure_logging, get_logger, log_context
from attrspine.core.settings import AttrSpineSettings
from attrspine.core.timing import StepTimer, log_step
from attrspine.factory import create_storage_connector


class TestStepTimer:
    def test_stop_is_idempotent(self):
        timer = StepTimer(step="s")
        timer.stop()
        ended = timer.ended_at
        timer.stop()
        assert timer.ended_at == ended
        assert timer.duration_ms >= 0

    def test_fields_after_connector_error(self):
        timer = StepTimer(step="s").add_metric("cache", "miss")
        timer.fail(MappingError("bad row"))
        data = timer.fields()
        assert data["status"] == "error"
        assert data["category"] == "MAPPING"
        assert data["cache"] == "miss"

    def test_fields_after_foreign_error(self):
        timer = StepTimer(step="s")
        timer.fail(KeyError("k"))
        assert timer.fields()["error_type"] == "KeyError"

    def test_no_parent_span_field_at_top_level(self):
        assert "parent_span_id" not in StepTimer(step="s").fields()


class TestLogStep:
    def test_logs_start_and_end(self):
        with capture_logs() as logs:
            with log_step("connector.retrieve", principal="alice") as timer:
                timer.add_metric("attributes", 2)
        events = [entry["event"] for entry in logs]
        assert events == ["connector.retrieve.start", "connector.retrieve.end"]
        end = logs[-1]
        assert end["attributes"] == 2
        assert end["principal"] == "alice"
        assert "duration_ms" in end
        assert end["span_id"] == timer.span_id

    def test_logs_error_and_reraises(self):
        with capture_logs() as logs:
            with pytest.raises(MappingError):
                with log_step("connector.retrieve", log_start=False):
                    raise MappingError("bad row")
        assert [entry["event"] for entry in logs] == ["connector.retrieve.error"]
        assert logs[0]["log_level"] == "warning"
        assert logs[0]["category"] == "MAPPING"

    def test_nested_spans_link_to_parent(self):
        with capture_logs() as logs:
            with log_step("outer") as outer:
                with log_step("inner"):
                    pass
        inner_end = next(entry for entry in logs if entry["event"] == "inner.end")
        assert inner_end["parent_span_id"] == outer.span_id

    def test_span_unbound_after_exit(self):
        with log_step("step", log_start=False):
            assert "span_id" in structlog.contextvars.get_contextvars()
        assert "span_id" not in structlog.contextvars.get_contextvars()


class TestConfigureLogging:
    def test_json_output_to_stderr(self, capsys):
        configure_logging(level="INFO", json_format=True, service="attrspine-test")
        get_logger("test").info("connector.initialized", connector_id="myLDAP")
        captured = capsys.readouterr()
        assert captured.out == ""
        line = json.loads(captured.err.strip().splitlines()[-1])
        assert line["event"] == "connector.initialized"
        assert line["connector_id"] == "myLDAP"
        assert line["service.name"] == "attrspine-test"
        assert line["log.level"] == "info"
        assert "@timestamp" in line

    def test_level_filters(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        get_logger("test").info("quiet")
        assert "quiet" not in capsys.readouterr().err

    def test_log_context_binds_and_unbinds(self, capsys):
        configure_logging(level="INFO", json_format=True)
        with log_context(request_id="r-42"):
            get_logger("test").info("inside")
        get_logger("test").info("outside")
        lines = [json.loads(line) for line in capsys.readouterr().err.strip().splitlines()]
        assert lines[0]["request_id"] == "r-42"
        assert "request_id" not in lines[1]

    def test_connector_lifecycle_under_configured_logging(self, capsys):
        configure_logging(level="INFO", json_format=True)
        service = InMemoryStorageService()
        service.create("attributes", "alice", json.dumps({"uid": "alice"}))
        connector = create_storage_connector(AttrSpineSettings(), service=service)
        connector.initialize()
        assert connector.state is ConnectorState.READY
        assert connector.retrieve_attributes(ResolutionContext(principal="alice")) == {"uid": ["alice"]}
        connector.destroy()
        lines = [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.startswith("{")]
        events = {line["event"]: line for line in lines}
        assert {"connector.initialized", "connector.retrieve.end", "connector.destroyed"} <= set(events)
        assert events["connector.initialized"]["logger"] == "attrspine.connectors.connector"
        assert events["connector.retrieve.end"]["connector_id"] == "storage"
