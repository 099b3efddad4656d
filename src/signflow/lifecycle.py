"""Document lifecycle: the state machine behind upload, sign and review.

    PENDING ──sign──▶ SIGNED ──verify──▶ VERIFIED
                         └────reject──▶ REJECTED

Only the assigned signer may sign, only the uploader may verify or
reject, and every transition is a conditional update on the stored
status, so two concurrent attempts cannot both succeed. Signing holds
the document's file lock from load to transition, so a losing signer in
another process never overwrites the winner's artifact. The artifact is
replaced in storage before the status flips: a failed write leaves the
document PENDING. Audit entries are written afterwards and
never affect the outcome.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .audit import AuditRecorder
from .config import DEFAULT_ACCESS_URL_TTL, Settings
from .embedder import Content, PdfEmbedder
from .errors import (
    AuthorizationError,
    EmbedError,
    StateConflictError,
    StorageError,
    ValidationError,
)
from .models import (
    DEFAULT_REJECTION_REASON,
    Actor,
    AuditAction,
    AuditEntry,
    Document,
    DocumentStats,
    DocumentStatus,
    ScreenPosition,
)
from .notify import LoggingNotifier, NotificationDispatcher
from .storage import FilesystemStorage, S3Storage, StorageGateway
from .store import DocumentStore

logger = logging.getLogger("signflow.lifecycle")


class DocumentService:
    """Lifecycle operations over a document store and an artifact gateway.

    Args:
        store: Document records and audit logs.
        storage: Artifact gateway.
        audit: Audit recorder (defaults to one over ``store``).
        notifications: Dispatcher for assignment notifications.
        embedder: Embedder for server-side signing.
        access_url_ttl: Lifetime of issued access URLs, in seconds.
    """

    def __init__(
        self,
        store: DocumentStore,
        storage: StorageGateway,
        audit: Optional[AuditRecorder] = None,
        notifications: Optional[NotificationDispatcher] = None,
        embedder: Optional[PdfEmbedder] = None,
        access_url_ttl: int = DEFAULT_ACCESS_URL_TTL,
    ) -> None:
        self.store = store
        self.storage = storage
        self.audit = audit or AuditRecorder(store)
        self.notifications = notifications
        self.embedder = embedder or PdfEmbedder()
        self.access_url_ttl = access_url_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "DocumentService":
        """Wire a service from configuration."""
        base = Path(settings.data_dir)
        storage: StorageGateway
        if settings.storage_backend == "s3":
            if not settings.s3_bucket:
                raise ValidationError("SIGNFLOW_S3_BUCKET is required for the s3 backend")
            storage = S3Storage(settings.s3_bucket, region=settings.s3_region)
        else:
            storage = FilesystemStorage(
                base / "artifacts",
                secret=settings.url_signing_secret.get_secret_value(),
            )
        return cls(
            store=DocumentStore(base),
            storage=storage,
            notifications=NotificationDispatcher(
                LoggingNotifier(), max_workers=settings.notify_workers
            ),
            access_url_ttl=settings.access_url_ttl,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_document(
        self,
        actor: Actor,
        name: str,
        assigned_to: str,
        pdf_data: bytes,
        original_file_name: str = "document.pdf",
    ) -> Document:
        """Upload a PDF and assign it to a signer.

        Raises:
            AuthorizationError: If the actor has no user id.
            ValidationError: If name, assignee or PDF are missing.
            StorageError: If the artifact cannot be stored.
        """
        if not actor.user_id:
            raise AuthorizationError("Only registered uploaders can upload documents")
        if not pdf_data or not pdf_data.lstrip().startswith(b"%PDF"):
            raise ValidationError("Please upload a PDF file")
        if not name or not name.strip() or not assigned_to or not assigned_to.strip():
            raise ValidationError("Please provide document name and assignedTo email")

        doc = Document(
            name=name.strip(),
            original_file_name=original_file_name,
            uploader_id=actor.user_id,
            uploader_name=actor.display_name,
            assigned_to=assigned_to,
        )
        suffix = Path(original_file_name).suffix or ".pdf"
        doc.storage_key = self.storage.put(
            pdf_data, f"{doc.document_id}{suffix}", owner=actor.user_id
        )
        doc.access_url = self.storage.issue_access_url(doc.storage_key, self.access_url_ttl)

        try:
            self.store.save_document(doc)
        except OSError as exc:
            self.storage.delete(doc.storage_key)
            raise StorageError("Failed to save document record") from exc

        self.audit.append(
            doc.document_id,
            AuditAction.CREATED,
            doc.uploader_name,
            f"Document uploaded and assigned to {doc.assigned_to}",
        )
        self._notify_assigned(doc)
        return doc

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def sign_document(
        self,
        document_id: str,
        actor: Actor,
        signature_data: Optional[str],
        signed_pdf: Optional[bytes] = None,
    ) -> Document:
        """Sign a document as its assigned signer.

        With ``signed_pdf`` (a client-annotated artifact) the bytes are
        stored as given. Without it, ``signature_data`` must be a PNG or
        JPEG image (raw base64 or data URL) and is stamped on the last page.

        Args:
            document_id: Document to sign.
            actor: The signer; ``actor.email`` must match the assignee.
            signature_data: Signature payload recorded on the document.
            signed_pdf: Finalized artifact from an annotation session.

        Returns:
            The updated Document (status SIGNED).

        Raises:
            ValidationError: If no signature payload was given.
            AuthorizationError: If the actor is not the assignee.
            StateConflictError: If the document is not PENDING.
            EmbedError: If the image or PDF cannot be processed.
            StorageError: If the artifact cannot be replaced.
        """
        if not signature_data or not signature_data.strip():
            raise ValidationError("Please provide signature data")

        with self.store.locked(document_id):
            doc = self.store.load_document(document_id)
            if not doc.is_assigned_to(actor.email):
                raise AuthorizationError("You are not assigned to sign this document")
            if doc.status != DocumentStatus.PENDING:
                raise StateConflictError("Document has already been signed or processed")

            if signed_pdf is not None:
                if self.embedder.page_count(signed_pdf) < 1:
                    raise EmbedError("signed document has no pages")
                final = signed_pdf
            else:
                original = self.storage.get(doc.storage_key)
                final = self.embedder.embed_signature(original, signature_data)

            self.storage.replace(doc.storage_key, final)
            access_url = self._refresh_access_url(doc)

            updated = self.store.transition(
                document_id,
                DocumentStatus.PENDING,
                DocumentStatus.SIGNED,
                signature_data=signature_data,
                signed_at=datetime.now(timezone.utc),
                access_url=access_url,
            )
            if updated is None:
                raise StateConflictError("Document has already been signed or processed")

        logger.info("Document %s signed by %s", document_id[:8], actor.email)
        self.audit.append(
            document_id,
            AuditAction.SIGNED,
            actor.display_name,
            f"Document signed by {actor.email}",
        )
        return updated

    def verify_document(self, document_id: str, actor: Actor) -> Document:
        """Accept a signed document as its uploader.

        Raises:
            AuthorizationError: If the actor does not own the document.
            StateConflictError: If the document is not SIGNED.
        """
        doc = self.store.load_document(document_id)
        if not doc.is_owned_by(actor.user_id):
            raise AuthorizationError("You do not have permission to verify this document")
        if doc.status != DocumentStatus.SIGNED:
            raise StateConflictError("Document must be signed before verification")

        updated = self.store.transition(
            document_id,
            DocumentStatus.SIGNED,
            DocumentStatus.VERIFIED,
            verified_at=datetime.now(timezone.utc),
        )
        if updated is None:
            raise StateConflictError("Document must be signed before verification")

        self.audit.append(
            document_id,
            AuditAction.ACCEPTED,
            actor.display_name,
            f"Document accepted by {actor.email or actor.display_name}",
        )
        return updated

    def reject_document(
        self,
        document_id: str,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Document:
        """Reject a signed document as its uploader.

        Raises:
            AuthorizationError: If the actor does not own the document.
            StateConflictError: If the document is not SIGNED.
        """
        doc = self.store.load_document(document_id)
        if not doc.is_owned_by(actor.user_id):
            raise AuthorizationError("You do not have permission to reject this document")
        if doc.status != DocumentStatus.SIGNED:
            raise StateConflictError("Only signed documents can be rejected")

        reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
        updated = self.store.transition(
            document_id,
            DocumentStatus.SIGNED,
            DocumentStatus.REJECTED,
            rejected_at=datetime.now(timezone.utc),
            rejection_reason=reason,
        )
        if updated is None:
            raise StateConflictError("Only signed documents can be rejected")

        self.audit.append(document_id, AuditAction.REJECTED, actor.display_name, reason)
        return updated

    # ------------------------------------------------------------------
    # Annotation
    # ------------------------------------------------------------------

    def embed_annotation(
        self,
        artifact: bytes,
        page_index: int,
        position: Optional[ScreenPosition],
        content: Content,
        **geometry,
    ) -> bytes:
        """Stateless single embed; see ``PdfEmbedder.embed``."""
        return self.embedder.embed(artifact, page_index, position, content, **geometry)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_document(self, document_id: str, actor: Actor) -> Document:
        """Load a document the actor owns or is assigned to."""
        doc = self.store.load_document(document_id)
        self._check_access(doc, actor)
        return doc

    def view_document(self, document_id: str, actor: Actor) -> tuple[Document, bytes]:
        """The document and its current artifact bytes."""
        doc = self.get_document(document_id, actor)
        if not doc.storage_key:
            raise ValidationError("Document file not available")
        return doc, self.storage.get(doc.storage_key)

    def list_documents(
        self,
        actor: Actor,
        status: Optional[DocumentStatus] = None,
        search: str = "",
    ) -> list[Document]:
        """Documents the actor uploaded or is assigned to, newest first."""
        return self.store.list_documents(
            owner_id=actor.user_id or "",
            assignee=actor.email or "",
            status=status,
            search=search,
        )

    def document_stats(self, actor: Actor) -> DocumentStats:
        """Per-status counts of the actor's documents."""
        counts = {s: 0 for s in DocumentStatus}
        for doc in self.list_documents(actor):
            counts[doc.status] += 1
        return DocumentStats(
            pending=counts[DocumentStatus.PENDING],
            signed=counts[DocumentStatus.SIGNED],
            verified=counts[DocumentStatus.VERIFIED],
            rejected=counts[DocumentStatus.REJECTED],
        )

    def audit_trail(self, document_id: str, actor: Actor) -> list[AuditEntry]:
        """Audit entries (oldest first) for a document the actor can see."""
        self.get_document(document_id, actor)
        return self.audit.entries(document_id)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_document(self, document_id: str, actor: Actor) -> None:
        """Delete a document, its audit trail and (best effort) its artifact."""
        doc = self.store.load_document(document_id)
        if not doc.is_owned_by(actor.user_id):
            raise AuthorizationError("You do not have permission to delete this document")
        if doc.storage_key:
            self.storage.delete(doc.storage_key)
        self.store.delete_document(document_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_access(doc: Document, actor: Actor) -> None:
        if not (doc.is_owned_by(actor.user_id) or doc.is_assigned_to(actor.email)):
            raise AuthorizationError("You do not have permission to access this document")

    def _refresh_access_url(self, doc: Document) -> Optional[str]:
        try:
            return self.storage.issue_access_url(doc.storage_key, self.access_url_ttl)
        except StorageError as exc:
            logger.warning(
                "Keeping previous access URL for %s: %s", doc.document_id[:8], exc
            )
            return doc.access_url

    def _notify_assigned(self, doc: Document) -> None:
        if self.notifications is None:
            return
        try:
            self.notifications.assigned(
                doc.assigned_to, doc.uploader_name, doc.name, doc.document_id
            )
        except RuntimeError as exc:
            logger.warning("Could not queue assignment notification: %s", exc)
