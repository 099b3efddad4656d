"""Annotation session: sequences embeds on a working copy with undo.

A signer places fields one at a time. Each kind of field goes
Idle -> Placing -> Confirmed | Cancelled -> Idle, and only one field may
be Placing at any moment. Confirming runs the embedder against the
current working copy; the previous copy is pushed onto a LIFO history so
``undo`` can restore it byte-for-byte.

Presentation is pluggable: the session reports every outcome to a
``SessionListener`` (a toast, a console line, a log record) and never
renders anything itself.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol, Union

from .embedder import PdfEmbedder
from .errors import StateConflictError, ValidationError
from .expiring import ExpiringStore
from .models import (
    AnnotationField,
    AnnotationKind,
    ImageContent,
    ScreenPosition,
    TextContent,
)

logger = logging.getLogger("signflow.session")

# Where a field lands if the signer confirms without dragging it.
DEFAULT_POSITIONS: dict[AnnotationKind, ScreenPosition] = {
    AnnotationKind.SIGNATURE: ScreenPosition(x=300, y=200),
    AnnotationKind.NAME: ScreenPosition(x=100, y=300),
    AnnotationKind.EMAIL: ScreenPosition(x=100, y=350),
    AnnotationKind.DATE: ScreenPosition(x=100, y=400),
    AnnotationKind.CUSTOM_TEXT: ScreenPosition(x=150, y=450),
}

SIGNATURE_HEIGHT_PX = 60.0
TEXT_HEIGHT_PX = 20.0
SIGNATURE_SIZE = (120.0, 60.0)


class SessionListener(Protocol):
    """Receives user-facing outcomes: ``level`` is success, info or error."""

    def notify(self, level: str, message: str) -> None: ...


class LoggingListener:
    """Default listener: routes outcomes to the session logger."""

    def notify(self, level: str, message: str) -> None:
        if level == "error":
            logger.warning(message)
        else:
            logger.info(message)


@dataclass
class PdfSnapshot:
    """Working copy as it was before a confirmed embed."""

    data: bytes
    kind: AnnotationKind
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AnnotationSession:
    """Working copy, undo history and the single active field.

    Args:
        original: Source artifact bytes; ``reset`` returns to these.
        embedder: Embedder to draw with.
        viewport_width_px: Width pages are rendered at.
        max_history: Cap on undo depth (None = unbounded). When full, the
            oldest snapshot is dropped.
        listener: Presentation hook.
        signer_name: Default payload for the name field.
        signer_email: Default payload for the email field.
    """

    def __init__(
        self,
        original: bytes,
        embedder: Optional[PdfEmbedder] = None,
        *,
        viewport_width_px: float = 800.0,
        max_history: Optional[int] = None,
        listener: Optional[SessionListener] = None,
        signer_name: str = "",
        signer_email: str = "",
    ) -> None:
        self._original = original
        self._embedder = embedder or PdfEmbedder()
        self.viewport_width_px = viewport_width_px
        self.listener = listener or LoggingListener()
        self.signer_name = signer_name
        self.signer_email = signer_email

        self._working = original
        self._history: deque[PdfSnapshot] = deque(maxlen=max_history)
        self._active: Optional[AnnotationField] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def original(self) -> bytes:
        return self._original

    @property
    def working_copy(self) -> bytes:
        return self._working

    @property
    def history_depth(self) -> int:
        return len(self._history)

    @property
    def can_undo(self) -> bool:
        return bool(self._history)

    @property
    def has_changes(self) -> bool:
        """At least one embed is confirmed and not undone."""
        return bool(self._history)

    @property
    def active(self) -> Optional[AnnotationField]:
        """The field currently being placed, if any."""
        return self._active

    def state_of(self, kind: AnnotationKind) -> str:
        """``placing`` or ``idle`` for one field kind."""
        if self._active is not None and self._active.kind == kind:
            return "placing"
        return "idle"

    # ------------------------------------------------------------------
    # Placing
    # ------------------------------------------------------------------

    def begin(
        self,
        kind: AnnotationKind,
        payload: Optional[Union[bytes, str]] = None,
        page_index: int = 0,
    ) -> AnnotationField:
        """Start placing a field.

        Starting the same kind again replaces its payload and page.

        Raises:
            StateConflictError: If a different kind is already being placed.
        """
        if self._active is not None and self._active.kind != kind:
            raise StateConflictError(
                f"Finish or cancel the {self._active.kind.value} field first"
            )
        if payload is None:
            payload = self._default_payload(kind)
        self._active = AnnotationField(kind=kind, page_index=page_index, payload=payload)
        return self._active

    def move(self, x: float, y: float) -> ScreenPosition:
        """Track a drag of the active field."""
        if self._active is None:
            raise StateConflictError("No field is being placed")
        self._active.position = ScreenPosition(x=x, y=y)
        return self._active.position

    def cancel(self) -> None:
        """Discard the active field. A no-op when idle."""
        if self._active is not None:
            logger.debug("Cancelled %s field", self._active.kind.value)
        self._active = None

    def confirm(
        self,
        rendered_height_px: Optional[float] = None,
        *,
        now: Optional[datetime] = None,
    ) -> bytes:
        """Embed the active field into the working copy.

        On success the previous working copy is pushed to history and the
        field kind returns to idle. On failure nothing changes and the
        field stays active so the signer can retry or cancel.

        Args:
            rendered_height_px: Height of the rendered page element.
            now: Time written into the signature caption.

        Returns:
            The new working copy.

        Raises:
            StateConflictError: If no field is being placed.
            ValidationError: If the field has no content.
            EmbedError: If embedding fails.
        """
        f = self._active
        if f is None:
            raise StateConflictError("No field is being placed")
        if not f.payload or (isinstance(f.payload, str) and not f.payload.strip()):
            raise ValidationError(f"Please provide content for the {f.kind.value} field")

        position = f.position or DEFAULT_POSITIONS[f.kind]
        if f.kind.is_image:
            width, height = SIGNATURE_SIZE
            content = ImageContent(data=f.payload, width=width, height=height)
            content_height = SIGNATURE_HEIGHT_PX
        else:
            text = f.payload
            if isinstance(text, bytes):
                try:
                    text = text.decode("utf-8")
                except UnicodeDecodeError:
                    raise ValidationError(
                        f"The {f.kind.value} field must be UTF-8 text"
                    ) from None
            content = TextContent(text=text)
            content_height = TEXT_HEIGHT_PX

        try:
            updated = self._embedder.embed(
                self._working,
                f.page_index,
                position,
                content,
                viewport_width_px=self.viewport_width_px,
                rendered_height_px=rendered_height_px,
                content_height_px=content_height,
                caption=f.kind.is_image,
                now=now,
            )
        except Exception:
            self.listener.notify("error", f"Failed to embed {f.kind.value} field")
            raise

        self._history.append(PdfSnapshot(data=self._working, kind=f.kind))
        self._working = updated
        self._active = None
        self.listener.notify("success", f"{_label(f.kind)} added successfully")
        return updated

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def undo(self) -> bool:
        """Restore the working copy from before the last confirmed embed.

        Returns:
            False (and reports "Nothing to undo") when history is empty.
        """
        if not self._history:
            self.listener.notify("info", "Nothing to undo")
            return False
        snapshot = self._history.pop()
        self._working = snapshot.data
        self.listener.notify("success", "Last action undone")
        return True

    def reset(self) -> None:
        """Drop every edit and the active field; reload the original."""
        self._working = self._original
        self._history.clear()
        self._active = None
        self.listener.notify("info", "Document reset")

    def finalize(self) -> bytes:
        """Bytes to hand to signing.

        Raises:
            ValidationError: If nothing has been embedded.
        """
        if not self.has_changes:
            raise ValidationError("Please add and place a signature first")
        return self._working

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _default_payload(self, kind: AnnotationKind) -> Optional[str]:
        if kind == AnnotationKind.NAME:
            return self.signer_name or None
        if kind == AnnotationKind.EMAIL:
            return self.signer_email or None
        if kind == AnnotationKind.DATE:
            return datetime.now().strftime("%m/%d/%Y")
        return None


def _label(kind: AnnotationKind) -> str:
    if kind == AnnotationKind.SIGNATURE:
        return "Signature"
    if kind == AnnotationKind.CUSTOM_TEXT:
        return "Custom text"
    return f"{kind.value.capitalize()} field"


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------

class SessionRegistry:
    """Open annotation sessions keyed by (signer email, document id).

    Sessions idle longer than ``ttl_seconds`` expire; every lookup
    refreshes the TTL.
    """

    def __init__(self, store: ExpiringStore[tuple[str, str], AnnotationSession]) -> None:
        self._store = store

    @staticmethod
    def _key(identity: str, document_id: str) -> tuple[str, str]:
        return identity.strip().lower(), document_id

    def open(
        self, identity: str, document_id: str, original: bytes, **kwargs
    ) -> AnnotationSession:
        """Start (or restart) a session on ``original``."""
        session = AnnotationSession(original, **kwargs)
        self._store.set(self._key(identity, document_id), session)
        logger.info("Opened annotation session for %s on %s", identity, document_id[:8])
        return session

    def get(self, identity: str, document_id: str) -> Optional[AnnotationSession]:
        key = self._key(identity, document_id)
        session = self._store.get(key)
        if session is not None:
            self._store.set(key, session)
        return session

    def close(self, identity: str, document_id: str) -> bool:
        return self._store.pop(self._key(identity, document_id)) is not None

    def purge_expired(self) -> int:
        return self._store.purge_expired()
