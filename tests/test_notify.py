"""Tests for fire-and-forget assignment notifications."""

import logging
from unittest.mock import MagicMock

import pytest

from signflow.notify import LoggingNotifier, NotificationDispatcher


@pytest.fixture
def dispatcher():
    notifier = MagicMock()
    d = NotificationDispatcher(notifier, max_workers=1)
    yield d
    d.shutdown()


class TestNotificationDispatcher:

    def test_delivers_off_thread(self, dispatcher):
        future = dispatcher.assigned("bob@example.com", "Alice", "NDA", "doc-1")
        future.result(timeout=5)
        dispatcher.notifier.notify_assigned.assert_called_once_with(
            "bob@example.com", "Alice", "NDA", "doc-1"
        )

    def test_failure_is_logged_not_raised(self, dispatcher, caplog):
        dispatcher.notifier.notify_assigned.side_effect = ConnectionError("smtp down")
        with caplog.at_level(logging.WARNING, logger="signflow.notify"):
            future = dispatcher.assigned("bob@example.com", "Alice", "NDA", "doc-1")
            with pytest.raises(ConnectionError):
                future.result(timeout=5)
            dispatcher.shutdown()
        assert "smtp down" in caplog.text

    def test_submit_after_shutdown(self, dispatcher):
        dispatcher.shutdown()
        with pytest.raises(RuntimeError):
            dispatcher.assigned("bob@example.com", "Alice", "NDA", "doc-1")


def test_logging_notifier(caplog):
    with caplog.at_level(logging.INFO, logger="signflow.notify"):
        LoggingNotifier().notify_assigned("bob@example.com", "Alice", "NDA", "0123456789")
    assert "bob@example.com" in caplog.text
    assert "01234567" in caplog.text
