"""Fire-and-forget notifications to signers.

Delivery (email templates, SMTP) lives outside SignFlow; this module
only defines the hook and dispatches it off the request path.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol

logger = logging.getLogger("signflow.notify")


class Notifier(Protocol):
    """Delivery collaborator."""

    def notify_assigned(
        self,
        signer_email: str,
        uploader_name: str,
        document_name: str,
        document_id: str,
    ) -> None: ...


class LoggingNotifier:
    """Default notifier: writes the notification to the log."""

    def notify_assigned(
        self,
        signer_email: str,
        uploader_name: str,
        document_name: str,
        document_id: str,
    ) -> None:
        logger.info(
            "New document to sign for %s: %s from %s (%s)",
            signer_email, document_name, uploader_name, document_id[:8],
        )


class NotificationDispatcher:
    """Runs notifier calls on a small thread pool.

    The caller gets a Future back but never has to wait on it; failures
    are logged by a done-callback.
    """

    def __init__(self, notifier: Notifier, max_workers: int = 2) -> None:
        self.notifier = notifier
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="signflow-notify"
        )

    def assigned(
        self,
        signer_email: str,
        uploader_name: str,
        document_name: str,
        document_id: str,
    ) -> Future:
        future = self._pool.submit(
            self.notifier.notify_assigned,
            signer_email,
            uploader_name,
            document_name,
            document_id,
        )
        future.add_done_callback(_log_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def _log_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Failed to send assignment notification: %s", exc)
