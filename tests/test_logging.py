"""Tests for logging module."""

import logging

from huddle.config import Config
from huddle.logging import reset_logging, setup_logging


class TestSetupLogging:
    """Test logging setup."""

    def test_setup_logging_returns_logger(self):
        """Setup returns the package logger."""
        logger = setup_logging(Config())

        assert isinstance(logger, logging.Logger)
        assert logger.name == "huddle"

    def test_setup_logging_creates_log_file(self, tmp_path):
        """Logging setup writes to the configured file."""
        log_file = tmp_path / "logs" / "huddle.log"
        logger = setup_logging(Config(log_file=str(log_file)))
        logger.info("test message")

        assert log_file.exists()
        assert "test message" in log_file.read_text()

    def test_log_format(self, tmp_path):
        """Lines carry the level in brackets."""
        log_file = tmp_path / "huddle.log"
        logger = setup_logging(Config(log_file=str(log_file)))
        logger.warning("formatted")

        assert "[WARNING] formatted" in log_file.read_text()

    def test_log_levels_respected(self, tmp_path):
        """Only logs at configured level and above."""
        log_file = tmp_path / "huddle.log"
        logger = setup_logging(Config(log_file=str(log_file), log_level="WARNING"))
        logger.info("quiet")
        logger.error("loud")

        content = log_file.read_text()
        assert "quiet" not in content
        assert "loud" in content

    def test_module_loggers_inherit(self, tmp_path):
        """Module loggers under huddle.* reach the configured handlers."""
        log_file = tmp_path / "huddle.log"
        setup_logging(Config(log_file=str(log_file)))
        logging.getLogger("huddle.codes").info("from module")

        assert "from module" in log_file.read_text()

    def test_setup_is_cached(self):
        """Second call returns the same logger without re-adding handlers."""
        first = setup_logging(Config())
        handlers = list(first.handlers)
        second = setup_logging(Config(log_level="DEBUG"))

        assert second is first
        assert second.handlers == handlers

    def test_reset_logging(self):
        """Reset clears handlers and restores propagation."""
        logger = setup_logging(Config())
        reset_logging()

        assert logger.handlers == []
        assert logger.propagate is True
