"""Tests for structured logging setup.

Tests verify:
- get_logger returns a logger that accepts key/value events
- The module name is carried on every event
- configure_logging renders JSON lines at the configured level
"""

import json

import pytest
from structlog.testing import capture_logs

from migration_control_plane.observability import configure_logging, get_logger


class TestGetLogger:
    """Tests for logger creation."""

    def test_logs_key_value_event(self) -> None:
        """A module logger accepts an event with keyword context."""
        logger = get_logger("migration_control_plane.tests")

        with capture_logs() as captured:
            logger.info("Policy updated", operation_id="checkout", version=3)

        assert captured == [
            {
                "event": "Policy updated",
                "log_level": "info",
                "logger_name": "migration_control_plane.tests",
                "operation_id": "checkout",
                "version": 3,
            }
        ]


class TestConfigureLogging:
    """Tests for processor configuration."""

    def test_json_lines_at_level(self, reset_structlog: None, capsys: pytest.CaptureFixture[str]) -> None:
        """JSON output carries level, timestamp and context; lower levels are filtered."""
        configure_logging("INFO", json_output=True)
        logger = get_logger("migration_control_plane.json")

        logger.debug("Hidden")
        logger.info("Rollback applied", operation_id="checkout", new_percentage=0)

        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["event"] == "Rollback applied"
        assert record["level"] == "info"
        assert record["logger_name"] == "migration_control_plane.json"
        assert record["new_percentage"] == 0
        assert "timestamp" in record

    def test_unknown_level_falls_back_to_info(
        self,
        reset_structlog: None,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """An unrecognised level name behaves like INFO."""
        configure_logging("CHATTY", json_output=True)
        logger = get_logger("migration_control_plane.fallback")

        logger.debug("Hidden")
        logger.info("Shown")

        assert [json.loads(line)["event"] for line in capsys.readouterr().out.strip().splitlines()] == ["Shown"]
