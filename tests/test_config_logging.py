"""
Tests for configuration and structured logging
"""

import json
import sys
import logging
import pytest

from bank_ledger.config import LedgerConfig, get_config, reload_config
from bank_ledger.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestLedgerConfig:

    def test_defaults(self, monkeypatch):
        for name in ("LEDGER_STORAGE_BACKEND", "LEDGER_DEFAULT_PAGE_SIZE", "LEDGER_MAX_PAGE_SIZE"):
            monkeypatch.delenv(name, raising=False)

        config = LedgerConfig(_env_file=None)
        assert config.storage_backend == "memory"
        assert config.default_page_size == 5
        assert config.max_page_size == 100
        assert config.amount_precision == 2
        assert config.max_conflict_retries == 3
        assert config.enable_audit_logging is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LEDGER_STORAGE_BACKEND", "sqlite")
        monkeypatch.setenv("LEDGER_LOCK_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("ledger_enable_audit_logging", "false")

        config = LedgerConfig(_env_file=None)
        assert config.storage_backend == "sqlite"
        assert config.lock_timeout_seconds == 2.5
        assert config.enable_audit_logging is False

    def test_reload_replaces_global(self, monkeypatch):
        monkeypatch.setenv("LEDGER_DEFAULT_PAGE_SIZE", "7")
        try:
            reloaded = reload_config()
            assert reloaded.default_page_size == 7
            assert get_config() is reloaded
        finally:
            monkeypatch.delenv("LEDGER_DEFAULT_PAGE_SIZE")
            reload_config()


class TestJSONFormatter:

    def test_structured_fields(self):
        record = logging.LogRecord("ledger.test", logging.INFO, __file__, 1, "hello", (), None)
        record.principal = "teller-1"
        record.action = "debit"
        record.extra = {"amount": "1.00"}

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "ledger.test"
        assert entry["principal"] == "teller-1"
        assert entry["action"] == "debit"
        assert entry["extra"] == {"amount": "1.00"}
        assert "correlation_id" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]


class TestSetupLogging:

    def test_json_file_output(self, tmp_path):
        path = tmp_path / "ledger.log"
        logger = setup_logging(level="DEBUG", logger_name="ledger_test_file", log_file=str(path))

        log_action(logger, "info", "Debit applied", principal="p1", action="debit",
                   resource="account:A", correlation_id="req-1", extra={"amount": "5.00"})
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(path.read_text().strip())
        assert entry["message"] == "Debit applied"
        assert entry["correlation_id"] == "req-1"
        assert entry["resource"] == "account:A"
        assert logger.propagate is False

    def test_repeated_setup_does_not_duplicate_handlers(self):
        setup_logging(logger_name="ledger_test_dupes")
        logger = setup_logging(logger_name="ledger_test_dupes", log_format="text")
        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_log_action_respects_level(self, caplog):
        logger = get_logger("ledger.level_check")
        with caplog.at_level(logging.WARNING, logger="ledger.level_check"):
            log_action(logger, "info", "quiet")
            log_action(logger, "warning", "loud", action="retry")

        assert [r.getMessage() for r in caplog.records if r.name == "ledger.level_check"] == ["loud"]

    def test_unknown_level_rejected(self):
        with pytest.raises(AttributeError):
            setup_logging(level="CHATTY", logger_name="ledger_test_bad_level")
