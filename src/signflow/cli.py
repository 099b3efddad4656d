"""SignFlow CLI: assign, annotate, sign and review PDFs from the terminal.

Usage:
    signflow upload <pdf> --name "NDA" --assign-to signer@example.com --uploader-id u1
    signflow annotate <pdf> <out> --signature sig.png --name "Jane Doe" --date
    signflow sign <document-id> --email signer@example.com --pdf <annotated.pdf>
    signflow verify <document-id> --uploader-id u1
    signflow reject <document-id> --uploader-id u1 --reason "Wrong page"
    signflow list [--status pending]
    signflow audit <document-id>
    signflow serve [--port 8400]
"""

import base64
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Settings, get_settings
from .errors import SignFlowError
from .lifecycle import DocumentService
from .models import Actor, AnnotationKind, Document, DocumentStatus
from .session import AnnotationSession

console = Console()

STATUS_COLORS = {
    DocumentStatus.PENDING: "yellow",
    DocumentStatus.SIGNED: "blue",
    DocumentStatus.VERIFIED: "green",
    DocumentStatus.REJECTED: "red",
}


class ConsoleListener:
    """Prints annotation session outcomes."""

    _styles = {"success": "green", "info": "dim", "error": "red"}

    def notify(self, level: str, message: str) -> None:
        console.print(f"[{self._styles.get(level, 'white')}]{message}[/]")


def _fail(exc: SignFlowError) -> None:
    console.print(f"[red]{exc.message}[/]")
    sys.exit(1)


def _summary(doc: Document, title: str, border: str) -> Panel:
    color = STATUS_COLORS.get(doc.status, "white")
    lines = [
        f"  Document: {doc.name}",
        f"  ID:       {doc.document_id}",
        f"  Signer:   {doc.assigned_to}",
        f"  Status:   [{color}]{doc.status.value}[/]",
    ]
    if doc.rejection_reason:
        lines.append(f"  Reason:   {doc.rejection_reason}")
    return Panel(f"[bold]{title}[/]\n\n" + "\n".join(lines), title="SignFlow", border_style=border)


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    default=None,
    help="SignFlow data directory (default: ~/.signflow)",
)
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[str]) -> None:
    """SignFlow: assign PDFs to signers and review what comes back."""
    ctx.ensure_object(dict)
    settings = Settings(data_dir=Path(data_dir)) if data_dir else get_settings()
    ctx.obj["settings"] = settings
    ctx.obj["service"] = DocumentService.from_settings(settings)


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

@main.command()
@click.argument("pdf", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", default=None, help="Document name (default: file name)")
@click.option("--assign-to", required=True, help="Signer email")
@click.option("--uploader-id", required=True, help="Uploader user id")
@click.option("--uploader-name", default="", help="Uploader display name")
@click.pass_context
def upload(
    ctx: click.Context,
    pdf: str,
    name: Optional[str],
    assign_to: str,
    uploader_id: str,
    uploader_name: str,
) -> None:
    """Upload a PDF and assign it to a signer."""
    service: DocumentService = ctx.obj["service"]
    pdf_path = Path(pdf)
    actor = Actor(user_id=uploader_id, name=uploader_name)
    try:
        doc = service.create_document(
            actor,
            name=name or pdf_path.stem,
            assigned_to=assign_to,
            pdf_data=pdf_path.read_bytes(),
            original_file_name=pdf_path.name,
        )
    except SignFlowError as exc:
        _fail(exc)
    console.print(_summary(doc, "Document uploaded", "green"))


# ---------------------------------------------------------------------------
# Annotate (local, no document record)
# ---------------------------------------------------------------------------

@main.command()
@click.argument("pdf", type=click.Path(exists=True, dir_okay=False))
@click.argument("output", type=click.Path(dir_okay=False))
@click.option("--page", default=1, help="1-indexed page to annotate")
@click.option("--signature", type=click.Path(exists=True, dir_okay=False), help="Signature image (PNG/JPEG)")
@click.option("--signature-at", nargs=2, type=float, default=None, help="Screen x y for the signature")
@click.option("--name", "signer_name", default=None, help="Name text to place")
@click.option("--email", "signer_email", default=None, help="Email text to place")
@click.option("--date", "with_date", is_flag=True, default=False, help="Place today's date")
@click.option("--text", default=None, help="Custom text to place")
@click.option("--text-at", nargs=2, type=float, default=None, help="Screen x y for the custom text")
@click.option("--rendered-height", type=float, default=None, help="Rendered page height in pixels")
def annotate(
    pdf: str,
    output: str,
    page: int,
    signature: Optional[str],
    signature_at: Optional[tuple[float, float]],
    signer_name: Optional[str],
    signer_email: Optional[str],
    with_date: bool,
    text: Optional[str],
    text_at: Optional[tuple[float, float]],
    rendered_height: Optional[float],
) -> None:
    """Place a signature and text fields on a PDF and write the result."""
    session = AnnotationSession(
        Path(pdf).read_bytes(),
        listener=ConsoleListener(),
        signer_name=signer_name or "",
        signer_email=signer_email or "",
    )

    plan: list[tuple[AnnotationKind, Optional[object], Optional[tuple[float, float]]]] = []
    if signature:
        plan.append((AnnotationKind.SIGNATURE, Path(signature).read_bytes(), signature_at))
    if signer_name:
        plan.append((AnnotationKind.NAME, None, None))
    if signer_email:
        plan.append((AnnotationKind.EMAIL, None, None))
    if with_date:
        plan.append((AnnotationKind.DATE, None, None))
    if text:
        plan.append((AnnotationKind.CUSTOM_TEXT, text, text_at))

    if not plan:
        console.print("[red]Nothing to place. Pass --signature, --name, --email, --date or --text.[/]")
        sys.exit(1)

    try:
        for kind, payload, at in plan:
            session.begin(kind, payload=payload, page_index=page - 1)
            if at:
                session.move(*at)
            session.confirm(rendered_height)
        data = session.finalize()
    except SignFlowError as exc:
        _fail(exc)

    Path(output).write_bytes(data)
    console.print(f"[bold green]Wrote {output}[/] ({session.history_depth} field(s))")


# ---------------------------------------------------------------------------
# Sign
# ---------------------------------------------------------------------------

@main.command()
@click.argument("document_id")
@click.option("--email", required=True, help="Signer email (must match the assignee)")
@click.option("--signer-name", default="", help="Signer display name")
@click.option("--pdf", "signed_pdf", type=click.Path(exists=True, dir_okay=False), help="Annotated PDF to submit")
@click.option("--image", type=click.Path(exists=True, dir_okay=False), help="Signature image to stamp on the last page")
@click.pass_context
def sign(
    ctx: click.Context,
    document_id: str,
    email: str,
    signer_name: str,
    signed_pdf: Optional[str],
    image: Optional[str],
) -> None:
    """Sign an assigned document."""
    service: DocumentService = ctx.obj["service"]
    actor = Actor(email=email, name=signer_name)

    if signed_pdf:
        pdf_bytes: Optional[bytes] = Path(signed_pdf).read_bytes()
        signature_data = "client_side_signature"
    elif image:
        pdf_bytes = None
        signature_data = base64.b64encode(Path(image).read_bytes()).decode("ascii")
    else:
        console.print("[red]Pass --pdf or --image.[/]")
        sys.exit(1)

    try:
        doc = service.sign_document(document_id, actor, signature_data, signed_pdf=pdf_bytes)
    except SignFlowError as exc:
        _fail(exc)
    console.print(_summary(doc, "Document signed!", "green"))


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------

@main.command()
@click.argument("document_id")
@click.option("--uploader-id", required=True, help="Uploader user id")
@click.option("--uploader-name", default="", help="Uploader display name")
@click.pass_context
def verify(ctx: click.Context, document_id: str, uploader_id: str, uploader_name: str) -> None:
    """Accept a signed document."""
    service: DocumentService = ctx.obj["service"]
    try:
        doc = service.verify_document(document_id, Actor(user_id=uploader_id, name=uploader_name))
    except SignFlowError as exc:
        _fail(exc)
    console.print(_summary(doc, "Document accepted", "green"))


@main.command()
@click.argument("document_id")
@click.option("--uploader-id", required=True, help="Uploader user id")
@click.option("--uploader-name", default="", help="Uploader display name")
@click.option("--reason", default=None, help="Why the document is rejected")
@click.pass_context
def reject(
    ctx: click.Context,
    document_id: str,
    uploader_id: str,
    uploader_name: str,
    reason: Optional[str],
) -> None:
    """Reject a signed document."""
    service: DocumentService = ctx.obj["service"]
    try:
        doc = service.reject_document(
            document_id, Actor(user_id=uploader_id, name=uploader_name), reason
        )
    except SignFlowError as exc:
        _fail(exc)
    console.print(_summary(doc, "Document rejected", "red"))


@main.command()
@click.argument("document_id")
@click.option("--uploader-id", required=True, help="Uploader user id")
@click.pass_context
def delete(ctx: click.Context, document_id: str, uploader_id: str) -> None:
    """Delete a document, its artifact and its audit trail."""
    service: DocumentService = ctx.obj["service"]
    try:
        service.delete_document(document_id, Actor(user_id=uploader_id))
    except SignFlowError as exc:
        _fail(exc)
    console.print(f"[dim]Deleted {document_id}[/]")


# ---------------------------------------------------------------------------
# List
# ---------------------------------------------------------------------------

@main.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--search", default="", help="Match document or file name")
@click.pass_context
def list_docs(ctx: click.Context, status: Optional[str], search: str) -> None:
    """List all documents."""
    service: DocumentService = ctx.obj["service"]
    try:
        status_filter = DocumentStatus(status.upper()) if status else None
    except ValueError:
        console.print(f"[red]Unknown status: {status}[/]")
        sys.exit(1)
    docs = service.store.list_documents(status=status_filter, search=search)

    if not docs:
        console.print("[dim]No documents found.[/]")
        return

    table = Table(title="SignFlow Documents")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Name", style="cyan")
    table.add_column("Signer")
    table.add_column("Status", justify="center")
    table.add_column("Created")

    for doc in docs:
        color = STATUS_COLORS.get(doc.status, "white")
        table.add_row(
            doc.document_id[:12],
            doc.name,
            doc.assigned_to,
            f"[{color}]{doc.status.value}[/]",
            doc.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@main.command()
@click.argument("document_id")
@click.pass_context
def audit(ctx: click.Context, document_id: str) -> None:
    """Show the audit trail for a document."""
    service: DocumentService = ctx.obj["service"]
    entries = service.audit.entries(document_id)

    if not entries:
        console.print("[dim]No audit entries found.[/]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("By")
    table.add_column("Details")

    for e in entries:
        table.add_row(
            e.performed_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.action.value,
            e.performed_by,
            e.details or "-",
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------

@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8400, help="Port")
def serve(host: str, port: int) -> None:
    """Start the SignFlow API server."""
    import uvicorn

    console.print(f"[bold]SignFlow API[/] listening on [cyan]http://{host}:{port}[/]")
    uvicorn.run("signflow.api:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
