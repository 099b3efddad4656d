"""Annotation embedding: draws signatures and text into PDF pages.

The signer places content on a page rendered in a browser viewport, so
every anchor arrives in screen pixels with the origin at the top-left.
PDF user space has its origin at the bottom-left and is measured in
points. ``to_pdf_coords`` converts between the two; the embedder then
draws the content on a same-size overlay page (reportlab) and merges it
onto the target page (pypdf).

The embedder is stateless. It never touches storage: it takes artifact
bytes in and returns new artifact bytes. Page count and page geometry
of the source are never altered.
"""

import base64
import binascii
import logging
import re
from datetime import datetime
from io import BytesIO
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter, Transformation
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .errors import EmbedError
from .models import ImageContent, PageGeometry, ScreenPosition, TextContent

logger = logging.getLogger("signflow.embedder")

Content = Union[ImageContent, TextContent]

# Width used when neither the caller nor the session fixes one.
DEFAULT_IMAGE_WIDTH = 200.0
DEFAULT_FONT_SIZE = 12.0
DEFAULT_FONT = "Helvetica"
TEXT_ENCODING = "cp1252"

# Fallback placement: padding from the bottom-right corner, in points.
DEFAULT_PADDING = 50.0

CAPTION_GAP = 15.0
CAPTION_GREY = (0.3, 0.3, 0.3)
LABEL_GREY = (0.5, 0.5, 0.5)

_DATA_URL = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")


# ---------------------------------------------------------------------------
# Coordinate transform
# ---------------------------------------------------------------------------

def to_pdf_coords(
    position: ScreenPosition,
    geometry: PageGeometry,
    content_height_px: float = 0.0,
) -> tuple[float, float]:
    """Map a screen anchor to PDF user-space coordinates.

    The vertical axis is flipped and shifted down by the content height
    so the anchor marks the top-left corner of the drawn content.

    Args:
        position: Anchor in viewport pixels (top-left origin).
        geometry: Rendered and native page sizes.
        content_height_px: On-screen height of the placed content.

    Returns:
        ``(pdf_x, pdf_y)`` in points (bottom-left origin).

    Raises:
        EmbedError: If any dimension is not positive.
    """
    if geometry.viewport_width_px <= 0 or geometry.rendered_height_px <= 0:
        raise EmbedError("viewport dimensions must be positive")
    if geometry.pdf_width <= 0 or geometry.pdf_height <= 0:
        raise EmbedError("page dimensions must be positive")

    scale_x = geometry.pdf_width / geometry.viewport_width_px
    scale_y = geometry.pdf_height / geometry.rendered_height_px

    pdf_x = position.x * scale_x
    pdf_y = (
        geometry.pdf_height
        - (position.y * scale_y)
        - (content_height_px * scale_y)
    )
    return pdf_x, pdf_y


# ---------------------------------------------------------------------------
# Image decoding
# ---------------------------------------------------------------------------

def decode_image(data: Union[bytes, str]) -> Image.Image:
    """Decode signature image bytes or a base64 data URL.

    PNG is tried first, then JPEG.

    Raises:
        EmbedError: If the payload is neither.
    """
    if isinstance(data, str):
        try:
            raw = base64.b64decode(_DATA_URL.sub("", data.strip()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EmbedError("unsupported image format") from exc
    else:
        raw = data

    for fmt in ("PNG", "JPEG"):
        try:
            img = Image.open(BytesIO(raw), formats=[fmt])
            img.load()
        except (UnidentifiedImageError, OSError, SyntaxError):
            continue
        logger.debug("Decoded signature image as %s (%dx%d)", fmt, *img.size)
        return img.convert("RGBA")

    raise EmbedError("unsupported image format")


# ---------------------------------------------------------------------------
# Embedder
# ---------------------------------------------------------------------------

class PdfEmbedder:
    """Draws annotation content into PDF bytes.

    Stateless: safe to share. Callers persist the returned bytes.
    """

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @staticmethod
    def page_sizes(artifact: bytes) -> list[tuple[float, float]]:
        """Width and height (points) of every page."""
        reader = _read_pdf(artifact)
        return [
            (float(p.mediabox.width), float(p.mediabox.height))
            for p in reader.pages
        ]

    @classmethod
    def page_count(cls, artifact: bytes) -> int:
        return len(cls.page_sizes(artifact))

    # ------------------------------------------------------------------
    # Interactive embedding
    # ------------------------------------------------------------------

    def embed(
        self,
        artifact: bytes,
        page_index: int,
        position: Optional[ScreenPosition],
        content: Content,
        *,
        viewport_width_px: float = 800.0,
        rendered_height_px: Optional[float] = None,
        pdf_page_width: Optional[float] = None,
        pdf_page_height: Optional[float] = None,
        content_height_px: float = 0.0,
        caption: bool = False,
        now: Optional[datetime] = None,
    ) -> bytes:
        """Embed one annotation and return the new artifact bytes.

        Args:
            artifact: Current PDF bytes.
            page_index: 0-based target page.
            position: Screen anchor, or None for the default corner placement.
            content: Image or text to draw.
            viewport_width_px: Width the page is rendered at.
            rendered_height_px: Height of the rendered page element. Defaults
                to the page's natural height at ``viewport_width_px``.
            pdf_page_width: Page width in points (read from the page if None).
            pdf_page_height: Page height in points (read from the page if None).
            content_height_px: On-screen height of the content.
            caption: Add a muted "Signed: <time>" line beneath the anchor.
            now: Caption time (defaults to the current local time).

        Returns:
            New PDF bytes. The input is not modified.

        Raises:
            EmbedError: On a corrupt PDF, a bad page index, invalid geometry
                or an undecodable image.
        """
        reader = _read_pdf(artifact)
        if not 0 <= page_index < len(reader.pages):
            raise EmbedError(
                f"page {page_index + 1} does not exist "
                f"(document has {len(reader.pages)})"
            )

        box = reader.pages[page_index].mediabox
        page_w, page_h = float(box.width), float(box.height)
        pdf_w = pdf_page_width or page_w
        pdf_h = pdf_page_height or page_h

        draw = _prepare(content)
        draw_w, draw_h = draw.size()

        if position is None:
            x, y = page_w - draw_w - DEFAULT_PADDING, DEFAULT_PADDING
        else:
            if rendered_height_px is None and viewport_width_px > 0 and pdf_w > 0:
                rendered_height_px = viewport_width_px * pdf_h / pdf_w
            geometry = PageGeometry(
                viewport_width_px=viewport_width_px,
                rendered_height_px=rendered_height_px or 0.0,
                pdf_width=pdf_w,
                pdf_height=pdf_h,
            )
            x, y = to_pdf_coords(position, geometry, content_height_px)

        def paint(c: canvas.Canvas) -> None:
            draw.paint(c, x, y)
            if caption:
                c.setFillColorRGB(*CAPTION_GREY)
                c.setFont(DEFAULT_FONT, 10)
                c.drawString(x, y - CAPTION_GAP, _signed_caption(now))

        result = _merge_overlay(reader, page_index, paint)
        logger.info(
            "Embedded %s on page %d at (%.1f, %.1f)",
            draw.label, page_index + 1, x, y,
        )
        return result

    # ------------------------------------------------------------------
    # Server-driven single-shot signing
    # ------------------------------------------------------------------

    def embed_signature(
        self,
        artifact: bytes,
        signature_image: Union[bytes, str],
        *,
        width: float = DEFAULT_IMAGE_WIDTH,
        now: Optional[datetime] = None,
    ) -> bytes:
        """Stamp a signature image on the last page, bottom-right.

        Draws a "Digitally Signed" label above the image and the signing
        time beneath it. Used when the signer submits only an image and no
        client-annotated artifact.
        """
        reader = _read_pdf(artifact)
        if not reader.pages:
            raise EmbedError("document has no pages")
        last = len(reader.pages) - 1

        box = reader.pages[last].mediabox
        page_w = float(box.width)
        draw = _ImageDraw(decode_image(signature_image), width, None)
        draw_w, draw_h = draw.size()
        x = page_w - draw_w - DEFAULT_PADDING
        y = DEFAULT_PADDING

        def paint(c: canvas.Canvas) -> None:
            draw.paint(c, x, y)
            c.setFillColorRGB(*LABEL_GREY)
            c.setFont(DEFAULT_FONT, 10)
            c.drawString(x, y + draw_h + 10, "Digitally Signed")
            c.setFont(DEFAULT_FONT, 8)
            c.drawString(x, y - CAPTION_GAP, _signed_caption(now))

        result = _merge_overlay(reader, last, paint)
        logger.info("Stamped signature on last page (%d) at (%.1f, %.1f)", last + 1, x, y)
        return result


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

class _ImageDraw:
    label = "image"

    def __init__(
        self, img: Image.Image, width: Optional[float], height: Optional[float]
    ) -> None:
        self.img = img
        aspect = img.height / img.width if img.width > 0 else 0.5
        if width and height:
            self.w, self.h = float(width), float(height)
        elif height:
            self.h = float(height)
            self.w = self.h / aspect if aspect else self.h
        else:
            self.w = float(width or DEFAULT_IMAGE_WIDTH)
            self.h = self.w * aspect

    def size(self) -> tuple[float, float]:
        return self.w, self.h

    def paint(self, c: canvas.Canvas, x: float, y: float) -> None:
        c.drawImage(
            ImageReader(self.img), x, y, width=self.w, height=self.h, mask="auto"
        )


class _TextDraw:
    label = "text"

    def __init__(self, text: str, font_size: float) -> None:
        # Standard Helvetica only covers WinAnsi; anything else would be
        # drawn as a placeholder glyph.
        try:
            text.encode(TEXT_ENCODING)
        except UnicodeEncodeError:
            raise EmbedError("text contains unsupported characters") from None
        self.text = text
        self.font_size = font_size

    def size(self) -> tuple[float, float]:
        return stringWidth(self.text, DEFAULT_FONT, self.font_size), self.font_size

    def paint(self, c: canvas.Canvas, x: float, y: float) -> None:
        c.setFillColorRGB(0, 0, 0)
        c.setFont(DEFAULT_FONT, self.font_size)
        c.drawString(x, y, self.text)


def _prepare(content: Content) -> Union[_ImageDraw, _TextDraw]:
    if isinstance(content, ImageContent):
        return _ImageDraw(decode_image(content.data), content.width, content.height)
    if isinstance(content, TextContent):
        if content.font_size <= 0:
            raise EmbedError("font size must be positive")
        return _TextDraw(content.text, content.font_size)
    raise EmbedError(f"unsupported content type: {type(content).__name__}")


def _read_pdf(artifact: bytes) -> PdfReader:
    try:
        reader = PdfReader(BytesIO(artifact))
        len(reader.pages)
    except Exception as exc:
        raise EmbedError(f"could not read PDF: {exc}") from exc
    return reader


def _merge_overlay(reader: PdfReader, page_index: int, paint) -> bytes:
    """Paint on a same-size overlay and merge it onto one page."""
    try:
        writer = PdfWriter(clone_from=reader)
        page = writer.pages[page_index]
        box = page.mediabox
        page_w, page_h = float(box.width), float(box.height)

        buf = BytesIO()
        c = canvas.Canvas(buf, pagesize=(page_w, page_h))
        paint(c)
        c.save()

        overlay = PdfReader(BytesIO(buf.getvalue())).pages[0]
        page.merge_transformed_page(
            overlay,
            Transformation().translate(tx=float(box.left), ty=float(box.bottom)),
        )

        out = BytesIO()
        writer.write(out)
    except EmbedError:
        raise
    except Exception as exc:
        raise EmbedError(f"failed to embed annotation: {exc}") from exc
    return out.getvalue()


def _signed_caption(now: Optional[datetime]) -> str:
    return f"Signed: {(now or datetime.now()).strftime('%m/%d/%Y %H:%M')}"
