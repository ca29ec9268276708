from __future__ import annotations

import json
import logging

from solarcrm.logging import ConsoleLogFormatter, JsonLogFormatter, extract_fields


def _record(**extra: object) -> logging.LogRecord:
    record = logging.makeLogRecord(
        {"name": "solarcrm.timeline", "levelname": "INFO", "levelno": logging.INFO, "msg": "timeline.transition.applied"}
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_keeps_only_known_fields() -> None:
    record = _record(lead_id="lead-1", step_id="step-9", outcome="applied", correlation_id="corr-1", secret="x")

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["logger"] == "solarcrm.timeline"
    assert payload["msg"] == "timeline.transition.applied"
    assert payload["correlation_id"] == "corr-1"
    assert payload["fields"] == {"lead_id": "lead-1", "step_id": "step-9", "outcome": "applied"}


def test_errors_are_clipped() -> None:
    fields = extract_fields(_record(error="x" * 2000))
    assert len(fields["error"]) == 500


def test_console_formatter_renders_key_values() -> None:
    record = _record(lead_id="lead-1", action="complete", correlation_id="corr-console")
    line = ConsoleLogFormatter().format(record)

    assert "solarcrm.timeline timeline.transition.applied" in line
    assert "correlation_id=corr-console" in line
    assert line.endswith("lead_id=lead-1 action=complete")
