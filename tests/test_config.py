"""
Tests for configuration loading and structured logging
"""

import json
import logging

from plan_engine.config import PlanEngineConfig
from plan_engine.logging_config import JSONFormatter, setup_logging


class TestConfig:
    """Test environment-based configuration"""

    def test_defaults(self):
        config = PlanEngineConfig()
        assert config.api_port == 8095
        assert config.notifications_enabled
        assert config.reminder_lead_days == 0

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("PLAN_ENGINE_DATABASE_URL", "memory://")
        monkeypatch.setenv("PLAN_ENGINE_REMINDER_LEAD_DAYS", "3")
        monkeypatch.setenv("PLAN_ENGINE_NOTIFICATIONS_ENABLED", "false")

        config = PlanEngineConfig()

        assert config.database_url == "memory://"
        assert config.reminder_lead_days == 3
        assert not config.notifications_enabled


class TestLogging:
    """Test the JSON formatter"""

    def test_json_fields(self):
        record = logging.LogRecord("plan_engine.lifecycle", logging.INFO, __file__, 1,
                                   "Paused plan P1", (), None)
        record.action = "pause"
        record.resource = "P1"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Paused plan P1"
        assert entry["logger"] == "plan_engine.lifecycle"
        assert entry["action"] == "pause"
        assert entry["resource"] == "P1"
        assert "user_id" not in entry
        assert "error_kind" not in entry

    def test_error_kind_field(self):
        record = logging.LogRecord("plan_engine.engine", logging.WARNING, __file__, 1,
                                   "pause rejected", (), None)
        record.error_kind = "InvalidPlanState"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "WARNING"
        assert entry["error_kind"] == "InvalidPlanState"

    def test_setup_logging(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("DEBUG", logger_name="plan_engine_test", log_file=str(log_file))

        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()

        assert logger.level == logging.DEBUG
        assert json.loads(log_file.read_text().strip())["message"] == "hello"
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
