"""Tests for log-safe identifiers"""
import logging

from cartsync.logging import configure_logging, get_logger, sanitize_id_for_logging


class TestSanitizeIdForLogging:
    def test_truncates_tokens(self):
        assert sanitize_id_for_logging("abcdefghijklmnop") == "abcdefgh"

    def test_escapes_line_breaks(self):
        assert sanitize_id_for_logging("a\nINFO x") == "a\\nINFO "
        assert "\n" not in sanitize_id_for_logging("\r\n\t\x00")

    def test_empty(self):
        assert sanitize_id_for_logging(None) == "N/A"
        assert sanitize_id_for_logging("") == "N/A"


def test_get_logger_cached():
    assert get_logger("cartsync.test") is get_logger("cartsync.test")


def test_configure_logging_keeps_existing_handlers():
    root = logging.getLogger()
    handlers = list(root.handlers)

    configure_logging()

    assert root.handlers == handlers
