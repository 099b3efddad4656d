"""Best-effort audit recorder.

Lifecycle operations call ``append`` after their primary effect has been
committed. Whatever goes wrong while writing the entry is logged and
swallowed; an audit failure never undoes or blocks a transition.
"""

import logging
from typing import Optional

from .errors import AuditWriteError
from .models import AuditAction, AuditEntry
from .store import DocumentStore

logger = logging.getLogger("signflow.audit")


class AuditRecorder:
    """Append-only audit trail on top of a ``DocumentStore``."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def append(
        self,
        document_id: str,
        action: AuditAction,
        performed_by: str,
        details: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """Record an action. Returns the entry, or None if writing failed."""
        try:
            entry = AuditEntry(
                document_id=document_id,
                action=action,
                performed_by=performed_by,
                details=details,
            )
            self._write(entry)
        except Exception as exc:
            logger.error(
                "Failed to record audit %s for %s: %s",
                getattr(action, "value", action), document_id[:8], exc,
            )
            return None
        logger.info("Audit: %s by %s on %s", action.value, performed_by, document_id[:8])
        return entry

    def entries(self, document_id: str) -> list[AuditEntry]:
        """Entries for a document, oldest first."""
        return self._store.get_audit_trail(document_id)

    def _write(self, entry: AuditEntry) -> None:
        try:
            self._store.append_audit(entry)
        except OSError as exc:
            raise AuditWriteError(f"audit log unavailable: {exc}") from exc
