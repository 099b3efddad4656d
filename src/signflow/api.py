"""SignFlow REST API: thin FastAPI layer over the lifecycle service.

Authentication happens upstream: the gateway in front of this service
forwards the caller's identity as ``X-User-Id`` (uploaders),
``X-User-Email`` (signers) and ``X-User-Name`` (display name).

Every ``SignFlowError`` becomes ``{"success": false, "error": "..."}``
with the status code of its kind.
"""

import base64
import binascii
import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .config import get_settings
from .embedder import PdfEmbedder
from .errors import (
    AuthenticationError,
    AuthorizationError,
    SignFlowError,
    StateConflictError,
    ValidationError,
)
from .expiring import ExpiringStore
from .lifecycle import DocumentService
from .models import (
    Actor,
    AnnotationKind,
    Document,
    DocumentStatus,
    ImageContent,
    PageGeometry,
    ScreenPosition,
    TextContent,
)
from .session import AnnotationSession, SessionRegistry

logger = logging.getLogger("signflow.api")

VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class RejectRequest(BaseModel):
    """Request body for rejecting a document."""

    reason: Optional[str] = None


class PlaceFieldRequest(BaseModel):
    """Place and confirm one field in the caller's annotation session.

    ``payload`` is text for text fields and a base64 image (or data URL)
    for the signature. Omit ``x``/``y`` to use the field's default spot.
    """

    kind: AnnotationKind
    payload: Optional[str] = None
    page_index: int = 0
    x: Optional[float] = None
    y: Optional[float] = None
    rendered_height_px: Optional[float] = None


class EmbedRequest(BaseModel):
    """Stateless single embed into a caller-supplied PDF (base64)."""

    pdf: str
    page_index: int = 0
    position: Optional[ScreenPosition] = None
    geometry: Optional[PageGeometry] = None
    text: Optional[str] = None
    font_size: float = 12.0
    image: Optional[str] = None
    image_width: Optional[float] = None
    image_height: Optional[float] = None
    content_height_px: float = 0.0
    caption: bool = False


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(
    service: Optional[DocumentService] = None,
    sessions: Optional[SessionRegistry] = None,
) -> FastAPI:
    """Build the FastAPI app. Collaborators default to configured ones."""
    app = FastAPI(
        title="SignFlow",
        description="Assign PDFs, collect visual signatures, review the result.",
        version=VERSION,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.service = service
    app.state.sessions = sessions

    @app.exception_handler(SignFlowError)
    async def _signflow_error(request: Request, exc: SignFlowError) -> JSONResponse:
        logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message},
        )

    _register_routes(app)
    return app


def get_service(request: Request) -> DocumentService:
    if request.app.state.service is None:
        request.app.state.service = DocumentService.from_settings(get_settings())
    return request.app.state.service


def get_sessions(request: Request) -> SessionRegistry:
    if request.app.state.sessions is None:
        settings = get_settings()
        request.app.state.sessions = SessionRegistry(ExpiringStore(settings.session_ttl))
    return request.app.state.sessions


def current_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> Actor:
    if not x_user_id and not x_user_email:
        raise AuthenticationError("Not authenticated")
    return Actor(user_id=x_user_id, email=x_user_email, name=x_user_name or "")


def _doc(document: Document) -> dict:
    return document.model_dump(mode="json")


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"{what} must be base64 encoded") from None


def _register_routes(app: FastAPI) -> None:

    # -----------------------------------------------------------------------
    # Documents
    # -----------------------------------------------------------------------

    @app.post("/api/documents/upload", status_code=201)
    async def upload_document(
        file: Optional[UploadFile] = File(None),
        name: Optional[str] = Form(None),
        assignedTo: Optional[str] = Form(None),
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        """Upload a PDF and assign it to a signer."""
        if file is None:
            raise ValidationError("Please upload a PDF file")
        data = await file.read()
        doc = service.create_document(
            actor,
            name=name or "",
            assigned_to=assignedTo or "",
            pdf_data=data,
            original_file_name=file.filename or "document.pdf",
        )
        return {"success": True, "document": _doc(doc)}

    @app.get("/api/documents/stats")
    async def document_stats(
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        """Per-status counts for the caller."""
        return {"success": True, "stats": service.document_stats(actor).model_dump()}

    @app.get("/api/documents")
    async def list_documents(
        status: Optional[str] = Query(None, description="Filter by status"),
        search: str = Query("", description="Match document or file name"),
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        """Documents the caller uploaded or must sign."""
        status_filter = None
        if status and status.lower() != "all":
            try:
                status_filter = DocumentStatus(status.upper())
            except ValueError:
                raise ValidationError(f"Unknown status: {status}") from None
        docs = service.list_documents(actor, status=status_filter, search=search)
        return {"success": True, "documents": [_doc(d) for d in docs], "total": len(docs)}

    @app.get("/api/documents/{document_id}")
    async def get_document(
        document_id: str,
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        return {"success": True, "document": _doc(service.get_document(document_id, actor))}

    @app.get("/api/documents/{document_id}/view")
    async def view_document(
        document_id: str,
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        """Current artifact as base64."""
        doc, data = service.view_document(document_id, actor)
        return {
            "success": True,
            "data": base64.b64encode(data).decode("ascii"),
            "mimeType": "application/pdf",
            "fileName": doc.original_file_name,
        }

    @app.get("/api/documents/{document_id}/audit-logs")
    async def audit_logs(
        document_id: str,
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        entries = service.audit_trail(document_id, actor)
        return {"success": True, "logs": [e.model_dump(mode="json") for e in entries]}

    @app.delete("/api/documents/{document_id}")
    async def delete_document(
        document_id: str,
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        service.delete_document(document_id, actor)
        return {"success": True, "message": "Document deleted successfully"}

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    @app.post("/api/documents/{document_id}/sign")
    async def sign_document(
        document_id: str,
        signatureData: Optional[str] = Form(None),
        signedPdf: Optional[UploadFile] = File(None),
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        """Sign with a client-annotated PDF, or stamp an image server-side."""
        signed_pdf = await signedPdf.read() if signedPdf is not None else None
        doc = service.sign_document(document_id, actor, signatureData, signed_pdf=signed_pdf)
        return {"success": True, "message": "Document signed successfully", "document": _doc(doc)}

    @app.post("/api/documents/{document_id}/verify")
    async def verify_document(
        document_id: str,
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        doc = service.verify_document(document_id, actor)
        return {"success": True, "message": "Document verified successfully", "document": _doc(doc)}

    @app.post("/api/documents/{document_id}/reject")
    async def reject_document(
        document_id: str,
        req: Optional[RejectRequest] = None,
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
    ) -> dict:
        doc = service.reject_document(document_id, actor, req.reason if req else None)
        return {"success": True, "message": "Document rejected", "document": _doc(doc)}

    # -----------------------------------------------------------------------
    # Annotation sessions
    # -----------------------------------------------------------------------

    def _session(sessions: SessionRegistry, actor: Actor, document_id: str) -> AnnotationSession:
        session = sessions.get(actor.email or "", document_id)
        if session is None:
            raise StateConflictError("No annotation session is open for this document")
        return session

    def _session_state(session: AnnotationSession) -> dict:
        return {
            "success": True,
            "historyDepth": session.history_depth,
            "canUndo": session.can_undo,
            "pages": PdfEmbedder.page_count(session.working_copy),
        }

    @app.post("/api/documents/{document_id}/session", status_code=201)
    async def open_session(
        document_id: str,
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> dict:
        """Start annotating a copy of the current artifact."""
        doc, data = service.view_document(document_id, actor)
        if not doc.is_assigned_to(actor.email):
            raise AuthorizationError("You are not assigned to sign this document")
        if doc.status != DocumentStatus.PENDING:
            raise StateConflictError("Document has already been signed or processed")
        session = sessions.open(
            actor.email or "",
            document_id,
            data,
            embedder=service.embedder,
            max_history=get_settings().max_undo_depth,
            signer_name=actor.name,
            signer_email=actor.email or "",
        )
        return _session_state(session)

    @app.post("/api/documents/{document_id}/session/fields")
    async def place_field(
        document_id: str,
        req: PlaceFieldRequest,
        actor: Actor = Depends(current_actor),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> dict:
        """Place one field and embed it into the working copy."""
        session = _session(sessions, actor, document_id)
        session.begin(req.kind, payload=req.payload, page_index=req.page_index)
        try:
            if req.x is not None and req.y is not None:
                session.move(req.x, req.y)
            session.confirm(req.rendered_height_px)
        except SignFlowError:
            session.cancel()
            raise
        return _session_state(session)

    @app.post("/api/documents/{document_id}/session/undo")
    async def undo_field(
        document_id: str,
        actor: Actor = Depends(current_actor),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> dict:
        session = _session(sessions, actor, document_id)
        undone = session.undo()
        state = _session_state(session)
        state["message"] = "Last action undone" if undone else "Nothing to undo"
        return state

    @app.post("/api/documents/{document_id}/session/reset")
    async def reset_session(
        document_id: str,
        actor: Actor = Depends(current_actor),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> dict:
        session = _session(sessions, actor, document_id)
        session.reset()
        return _session_state(session)

    @app.get("/api/documents/{document_id}/session/pdf")
    async def session_pdf(
        document_id: str,
        actor: Actor = Depends(current_actor),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> Response:
        """Download the working copy."""
        session = _session(sessions, actor, document_id)
        return Response(content=session.working_copy, media_type="application/pdf")

    @app.post("/api/documents/{document_id}/session/submit")
    async def submit_session(
        document_id: str,
        actor: Actor = Depends(current_actor),
        service: DocumentService = Depends(get_service),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> dict:
        """Sign with the annotated working copy and close the session."""
        session = _session(sessions, actor, document_id)
        doc = service.sign_document(
            document_id,
            actor,
            "client_side_signature",
            signed_pdf=session.finalize(),
        )
        sessions.close(actor.email or "", document_id)
        return {"success": True, "message": "Document signed successfully", "document": _doc(doc)}

    # -----------------------------------------------------------------------
    # Stateless embedding
    # -----------------------------------------------------------------------

    @app.post("/api/embed")
    async def embed_annotation(
        req: EmbedRequest,
        service: DocumentService = Depends(get_service),
    ) -> Response:
        """Embed one image or text run and return the new PDF."""
        if req.image:
            content = ImageContent(data=req.image, width=req.image_width, height=req.image_height)
        elif req.text:
            content = TextContent(text=req.text, font_size=req.font_size)
        else:
            raise ValidationError("Provide either text or image content")

        geometry = {}
        if req.geometry is not None:
            geometry = {
                "viewport_width_px": req.geometry.viewport_width_px,
                "rendered_height_px": req.geometry.rendered_height_px,
                "pdf_page_width": req.geometry.pdf_width,
                "pdf_page_height": req.geometry.pdf_height,
            }
        data = service.embed_annotation(
            _b64decode(req.pdf, "pdf"),
            req.page_index,
            req.position,
            content,
            content_height_px=req.content_height_px,
            caption=req.caption,
            **geometry,
        )
        return Response(content=data, media_type="application/pdf")

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    @app.get("/api/health")
    async def health() -> dict:
        """Health check."""
        return {"status": "ok", "service": "signflow", "version": VERSION}


app = create_app()
