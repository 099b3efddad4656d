"""Core data models for SignFlow document signing.

An uploader assigns a PDF to exactly one signer (by email). The signer
places a signature image and text annotations on the pages, the stored
artifact is replaced in place, and the uploader accepts or rejects it.

Annotation models are transient: they describe what the signer is
placing on screen and never reach the document store.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """Lifecycle states for a document.

    PENDING -> SIGNED -> VERIFIED | REJECTED. The last two are terminal.
    """

    PENDING = "PENDING"
    SIGNED = "SIGNED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    CREATED = "Created"
    SIGNED = "Signed"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"


class AnnotationKind(str, Enum):
    """What a signer can place on a page."""

    SIGNATURE = "signature"
    NAME = "name"
    EMAIL = "email"
    DATE = "date"
    CUSTOM_TEXT = "custom_text"

    @property
    def is_image(self) -> bool:
        return self is AnnotationKind.SIGNATURE


DEFAULT_REJECTION_REASON = "No reason provided"


# ---------------------------------------------------------------------------
# Screen geometry
# ---------------------------------------------------------------------------

class ScreenPosition(BaseModel):
    """Anchor of a placed annotation in viewport pixels.

    Origin is the top-left corner of the rendered page, y grows downward.
    The anchor marks the visual top-left corner of the placed content.
    """

    x: float = 0.0
    y: float = 0.0


class PageGeometry(BaseModel):
    """How a page is shown on screen versus its size in PDF points.

    Attributes:
        viewport_width_px: Width the page is rendered at (pixels).
        rendered_height_px: Height of the rendered page element (pixels).
        pdf_width: Page width in PDF user-space points.
        pdf_height: Page height in PDF user-space points.
    """

    viewport_width_px: float = 800.0
    rendered_height_px: float
    pdf_width: float
    pdf_height: float


class ImageContent(BaseModel):
    """A raster image to draw. ``data`` is PNG/JPEG bytes or a data URL."""

    data: Union[bytes, str]
    width: Optional[float] = None
    height: Optional[float] = None


class TextContent(BaseModel):
    """A single run of text, drawn without wrapping."""

    text: str
    font_size: float = 12.0


class AnnotationField(BaseModel):
    """A field being placed by the signer. Never persisted."""

    kind: AnnotationKind
    page_index: int = 0
    position: Optional[ScreenPosition] = None
    payload: Optional[Union[bytes, str]] = None


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """Immutable audit log entry.

    Attributes:
        entry_id: Unique identifier.
        document_id: Related document.
        action: What happened.
        performed_by: Display identity of the actor.
        performed_at: When it happened.
        details: Free-form details about the action.
    """

    entry_id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    action: AuditAction
    performed_by: str
    performed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: Optional[str] = None


# ---------------------------------------------------------------------------
# Document (the main entity)
# ---------------------------------------------------------------------------

class Document(BaseModel):
    """A PDF assigned to one signer.

    Attributes:
        document_id: Unique identifier.
        name: Human-readable title.
        original_file_name: Name of the uploaded file.
        storage_key: Key of the artifact in the storage gateway.
        access_url: Ephemeral, time-boxed URL to the current artifact.
        uploader_id: Identity of the uploading user.
        uploader_name: Display name of the uploader.
        assigned_to: Email of the only allowed signer.
        status: Current lifecycle status.
        signature_data: Opaque signature payload recorded at signing.
        signed_at: When the signer signed.
        verified_at: When the uploader accepted.
        rejected_at: When the uploader rejected.
        rejection_reason: Why it was rejected.
        created_at: Creation timestamp.
    """

    document_id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    original_file_name: str = "document.pdf"
    storage_key: Optional[str] = None
    access_url: Optional[str] = None
    uploader_id: str
    uploader_name: str = ""
    assigned_to: str
    status: DocumentStatus = DocumentStatus.PENDING
    signature_data: Optional[str] = None
    signed_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @field_validator("assigned_to")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_terminal(self) -> bool:
        """Accepted or rejected; no further transitions."""
        return self.status in (DocumentStatus.VERIFIED, DocumentStatus.REJECTED)

    def is_assigned_to(self, email: Optional[str]) -> bool:
        return bool(email) and email.strip().lower() == self.assigned_to

    def is_owned_by(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and user_id == self.uploader_id


class DocumentStats(BaseModel):
    """Per-status counts of the documents an actor can see."""

    pending: int = 0
    signed: int = 0
    verified: int = 0
    rejected: int = 0


class Actor(BaseModel):
    """Who is calling. Supplied by the upstream auth layer.

    Uploaders are identified by ``user_id``, signers by ``email``.
    """

    user_id: Optional[str] = None
    email: Optional[str] = None
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.user_id or "unknown"
