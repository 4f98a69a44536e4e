"""Unit tests for logging module."""

import logging

from utils.logging import NOISY_LIBRARIES, configure_logging, get_logger


def test_configure_logging_json_format() -> None:
    """Test logging configuration with JSON format."""
    logger = configure_logging(log_level="INFO", log_format="json")
    assert logger is not None
    logger.info("Test message")


def test_configure_logging_console_format() -> None:
    """Test logging configuration with console format."""
    logger = configure_logging(log_level="DEBUG", log_format="console")
    assert logger is not None
    logger.debug("Test message")


def test_configure_logging_with_correlation_id() -> None:
    """Test logging configuration with correlation ID."""
    logger = configure_logging(log_level="INFO", correlation_id="test-123")
    assert logger is not None
    logger.info("Test message")


def test_configure_logging_quiets_libraries() -> None:
    """Test AWS and HTTP libraries stay at WARNING."""
    configure_logging(log_level="DEBUG")
    for name in NOISY_LIBRARIES:
        assert logging.getLogger(name).level == logging.WARNING


def test_get_logger() -> None:
    """Test getting logger instance."""
    assert get_logger() is not None
    assert get_logger("archive_writer") is not None
