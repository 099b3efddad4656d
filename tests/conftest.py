"""Shared fixtures for SignFlow tests."""

from io import BytesIO

import pytest
from PIL import Image
from reportlab.pdfgen import canvas

from signflow.lifecycle import DocumentService
from signflow.models import Actor
from signflow.storage import FilesystemStorage
from signflow.store import DocumentStore


def make_pdf(pages: int = 1, size: tuple[float, float] = (612, 792)) -> bytes:
    """Build a real PDF with ``pages`` pages of ``size`` points."""
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=size)
    c.setPageCompression(0)
    for i in range(pages):
        c.drawString(72, size[1] - 72, f"Page {i + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def make_image(fmt: str = "PNG", size: tuple[int, int] = (240, 120)) -> bytes:
    img = Image.new("RGB", size, (255, 255, 255))
    for x in range(20, size[0] - 20):
        img.putpixel((x, size[1] // 2), (0, 0, 128))
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def sample_pdf() -> bytes:
    """Single Letter-size page."""
    return make_pdf()


@pytest.fixture
def multipage_pdf() -> bytes:
    """Three Letter-size pages."""
    return make_pdf(pages=3)


@pytest.fixture
def png_signature() -> bytes:
    return make_image("PNG")


@pytest.fixture
def jpeg_signature() -> bytes:
    return make_image("JPEG")


@pytest.fixture
def tmp_store(tmp_path):
    """Create a temporary DocumentStore."""
    return DocumentStore(base_dir=tmp_path)


@pytest.fixture
def tmp_storage(tmp_path):
    """Filesystem artifact storage under the temp dir."""
    return FilesystemStorage(tmp_path / "artifacts", secret="test-secret")


@pytest.fixture
def service(tmp_store, tmp_storage):
    """Lifecycle service without notifications."""
    return DocumentService(tmp_store, tmp_storage)


@pytest.fixture
def uploader() -> Actor:
    return Actor(user_id="u-alice", email="alice@example.com", name="Alice")


@pytest.fixture
def signer() -> Actor:
    return Actor(email="bob@example.com", name="Bob")


@pytest.fixture
def intruder() -> Actor:
    return Actor(user_id="u-mallory", email="mallory@example.com", name="Mallory")


@pytest.fixture
def pdf_factory():
    """Callable building PDFs of a given page count and size."""
    return make_pdf


@pytest.fixture
def image_factory():
    """Callable building PNG/JPEG bytes."""
    return make_image
