"""Filesystem-backed document records and audit logs for SignFlow.

Records live on disk as JSON under ``~/.signflow/``; no database
required. Artifacts themselves go through a ``StorageGateway`` and are
only referenced here by ``storage_key``.

Directory layout::

    ~/.signflow/
    ├── documents/          # One JSON record per document
    │   └── <doc-id>.json
    ├── audit/              # Append-only audit logs (JSONL)
    │   └── <doc-id>.jsonl
    └── artifacts/          # FilesystemStorage root (default backend)
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock, Timeout

from .errors import DocumentNotFoundError, StateConflictError
from .models import AuditEntry, Document, DocumentStatus

logger = logging.getLogger("signflow.store")


class DocumentStore:
    """CRUD for document records plus their audit logs.

    Status changes run under a per-document file lock
    (``documents/<id>.lock``), so ``transition`` is an atomic
    compare-and-set across every process sharing ``base_dir``. Callers that
    must read, act and then transition hold the same lock via ``locked``.
    Lock order is always the file lock first, then the in-process lock.

    Args:
        base_dir: Root directory for all signflow data.
        lock_timeout: Seconds to wait for a document lock.
    """

    def __init__(self, base_dir: Path, lock_timeout: float = 10.0) -> None:
        self.base = Path(base_dir)
        self.lock_timeout = lock_timeout
        self._documents_dir = self.base / "documents"
        self._audit_dir = self.base / "audit"
        self._lock = threading.RLock()

        for d in (self._documents_dir, self._audit_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def save_document(self, document: Document) -> Path:
        """Create or overwrite a document record.

        Returns:
            Path to the saved JSON file.
        """
        path = self._doc_path(document.document_id)
        with self._lock:
            _write_json(path, document.model_dump_json(indent=2))
        logger.info("Saved document %s (%s)", document.name, document.document_id[:8])
        return path

    def load_document(self, document_id: str) -> Document:
        """Load a document by ID.

        Raises:
            DocumentNotFoundError: If the document doesn't exist.
        """
        path = self._doc_path(document_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise DocumentNotFoundError("Document not found") from None
        return Document.model_validate(data)

    def list_documents(
        self,
        owner_id: Optional[str] = None,
        assignee: Optional[str] = None,
        status: Optional[DocumentStatus] = None,
        search: str = "",
    ) -> list[Document]:
        """List documents visible to an owner and/or an assignee.

        Args:
            owner_id: Include documents uploaded by this user.
            assignee: Include documents assigned to this email.
            status: Only this status (None = all).
            search: Case-insensitive substring of the name or file name.

        Returns:
            Documents sorted by creation date (newest first). With neither
            ``owner_id`` nor ``assignee`` every document is a candidate.
        """
        needle = search.strip().lower()
        documents = []
        for path in self._documents_dir.glob("*.json"):
            try:
                doc = Document.model_validate_json(path.read_text(encoding="utf-8"))
            except Exception as exc:
                logger.warning("Skipping invalid document %s: %s", path.name, exc)
                continue
            if owner_id is not None or assignee is not None:
                if not (doc.is_owned_by(owner_id) or doc.is_assigned_to(assignee)):
                    continue
            if status is not None and doc.status != status:
                continue
            if needle and needle not in doc.name.lower() \
                    and needle not in doc.original_file_name.lower():
                continue
            documents.append(doc)
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return documents

    def transition(
        self,
        document_id: str,
        expected: DocumentStatus,
        new_status: DocumentStatus,
        **changes: Any,
    ) -> Optional[Document]:
        """Set ``status = new_status`` where ``status = expected``.

        Args:
            document_id: Document to update.
            expected: Status the record must still have.
            new_status: Status to write.
            **changes: Other fields written in the same update.

        Returns:
            The updated Document, or None if the stored status no longer
            matched and nothing was written.

        Raises:
            DocumentNotFoundError: If the document doesn't exist.
            StateConflictError: If the document lock cannot be acquired.
        """
        with self.locked(document_id), self._lock:
            current = self.load_document(document_id)
            if current.status != expected:
                logger.info(
                    "Transition %s -> %s skipped for %s (status is %s)",
                    expected.value, new_status.value, document_id[:8],
                    current.status.value,
                )
                return None
            updated = current.model_copy(update={**changes, "status": new_status})
            _write_json(self._doc_path(document_id), updated.model_dump_json(indent=2))
        logger.info(
            "Document %s: %s -> %s", document_id[:8], expected.value, new_status.value
        )
        return updated

    def update_document(self, document_id: str, **changes: Any) -> Document:
        """Write fields other than ``status`` (e.g. a refreshed access URL)."""
        if "status" in changes:
            raise ValueError("Use transition() to change status")
        with self.locked(document_id), self._lock:
            updated = self.load_document(document_id).model_copy(update=changes)
            _write_json(self._doc_path(document_id), updated.model_dump_json(indent=2))
        return updated

    def delete_document(self, document_id: str) -> bool:
        """Delete a document record and its audit log.

        Returns:
            True if deleted, False if not found.
        """
        path = self._doc_path(document_id)
        with self.locked(document_id), self._lock:
            if not path.exists():
                return False
            path.unlink()
            (self._audit_dir / f"{document_id}.jsonl").unlink(missing_ok=True)
        self._lock_path(document_id).unlink(missing_ok=True)
        logger.info("Deleted document %s", document_id[:8])
        return True

    @contextmanager
    def locked(self, document_id: str) -> Iterator[None]:
        """Hold the document's cross-process lock. Reentrant per thread.

        Raises:
            StateConflictError: If another holder keeps the lock longer
                than ``lock_timeout``.
        """
        lock = FileLock(
            self._lock_path(document_id), timeout=self.lock_timeout, is_singleton=True
        )
        try:
            lock.acquire()
        except Timeout:
            logger.warning("Timed out waiting for lock on %s", document_id[:8])
            raise StateConflictError(
                "Document is being processed, please try again"
            ) from None
        try:
            yield
        finally:
            lock.release()

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry to the document's log (JSONL format)."""
        log_path = self._audit_dir / f"{entry.document_id}.jsonl"
        with self._lock:
            with open(log_path, "a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")

    def get_audit_trail(self, document_id: str) -> list[AuditEntry]:
        """Chronological audit entries for a document."""
        log_path = self._audit_dir / f"{document_id}.jsonl"
        if not log_path.exists():
            return []

        entries = []
        for line in log_path.read_text(encoding="utf-8").strip().splitlines():
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except Exception:
                logger.warning("Skipping corrupt audit line for %s", document_id[:8])
        return sorted(entries, key=lambda e: e.performed_at)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _doc_path(self, document_id: str) -> Path:
        if not document_id or "/" in document_id or "\\" in document_id \
                or document_id.startswith("."):
            raise DocumentNotFoundError("Document not found")
        return self._documents_dir / f"{document_id}.json"

    def _lock_path(self, document_id: str) -> Path:
        return self._doc_path(document_id).with_suffix(".lock")


def _write_json(path: Path, text: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
