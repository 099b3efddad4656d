"""Tests for annotation embedding and the screen-to-PDF transform."""

import base64
from datetime import datetime
from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image
from reportlab.pdfbase.pdfmetrics import stringWidth

from signflow.embedder import (
    DEFAULT_PADDING,
    PdfEmbedder,
    decode_image,
    to_pdf_coords,
)
from signflow.errors import EmbedError
from signflow.models import ImageContent, PageGeometry, ScreenPosition, TextContent


embedder = PdfEmbedder()


class _Overlay:
    """Stands in for the overlay merge and records what was painted."""

    def __init__(self):
        self.canvas = MagicMock()
        self.page_index = None

    def __call__(self, reader, page_index, paint):
        self.page_index = page_index
        paint(self.canvas)
        return b"%PDF-captured"


def _capture():
    overlay = _Overlay()
    return overlay, patch("signflow.embedder._merge_overlay", side_effect=overlay)


class TestCoordinateTransform:
    """Screen pixels (top-left origin) to PDF points (bottom-left origin)."""

    @pytest.mark.parametrize("rendered_height", [1035.29, 900.0])
    def test_letter_page_at_800px(self, rendered_height):
        geometry = PageGeometry(
            viewport_width_px=800,
            rendered_height_px=rendered_height,
            pdf_width=612,
            pdf_height=792,
        )
        x, y = to_pdf_coords(ScreenPosition(x=300, y=200), geometry, 60)

        assert x == pytest.approx(229.5)
        assert y == pytest.approx(
            792 - 200 * (792 / rendered_height) - 60 * (792 / rendered_height)
        )

    def test_different_rendered_heights_differ(self):
        pos = ScreenPosition(x=300, y=200)
        a = to_pdf_coords(pos, PageGeometry(rendered_height_px=1000, pdf_width=612, pdf_height=792), 60)
        b = to_pdf_coords(pos, PageGeometry(rendered_height_px=800, pdf_width=612, pdf_height=792), 60)
        assert a[0] == b[0]
        assert a[1] != b[1]

    def test_origin_maps_to_top_left(self):
        geometry = PageGeometry(rendered_height_px=1000, pdf_width=500, pdf_height=1000)
        assert to_pdf_coords(ScreenPosition(x=0, y=0), geometry) == (0.0, 1000.0)

    def test_deterministic(self):
        geometry = PageGeometry(rendered_height_px=1035, pdf_width=612, pdf_height=792)
        pos = ScreenPosition(x=123.4, y=567.8)
        assert to_pdf_coords(pos, geometry, 20) == to_pdf_coords(pos, geometry, 20)

    @pytest.mark.parametrize(
        "geometry",
        [
            PageGeometry(viewport_width_px=0, rendered_height_px=1000, pdf_width=612, pdf_height=792),
            PageGeometry(rendered_height_px=0, pdf_width=612, pdf_height=792),
            PageGeometry(rendered_height_px=1000, pdf_width=0, pdf_height=792),
            PageGeometry(rendered_height_px=1000, pdf_width=612, pdf_height=-1),
        ],
    )
    def test_non_positive_dimensions_rejected(self, geometry):
        with pytest.raises(EmbedError):
            to_pdf_coords(ScreenPosition(x=10, y=10), geometry)


class TestImageDecoding:
    """PNG first, then JPEG, nothing else."""

    def test_png_bytes(self, png_signature):
        img = decode_image(png_signature)
        assert img.size == (240, 120)
        assert img.mode == "RGBA"

    def test_jpeg_bytes(self, jpeg_signature):
        assert decode_image(jpeg_signature).size == (240, 120)

    def test_data_url(self, png_signature):
        url = "data:image/png;base64," + base64.b64encode(png_signature).decode()
        assert decode_image(url).size == (240, 120)

    def test_raw_base64(self, jpeg_signature):
        assert decode_image(base64.b64encode(jpeg_signature).decode()).size == (240, 120)

    def test_gif_rejected(self):
        buf = BytesIO()
        Image.new("RGB", (10, 10)).save(buf, format="GIF")
        with pytest.raises(EmbedError, match="unsupported image format"):
            decode_image(buf.getvalue())

    def test_garbage_rejected(self):
        with pytest.raises(EmbedError):
            decode_image(b"not an image")

    def test_bad_base64_rejected(self):
        with pytest.raises(EmbedError):
            decode_image("data:image/png;base64,@@@@")


class TestEmbed:
    """Single embeds into real PDFs."""

    def test_text_embed_preserves_pages(self, multipage_pdf):
        out = embedder.embed(
            multipage_pdf, 1, ScreenPosition(x=100, y=300), TextContent(text="Bob"),
            content_height_px=20,
        )
        assert out != multipage_pdf
        assert embedder.page_sizes(out) == embedder.page_sizes(multipage_pdf)

    def test_image_embed_preserves_geometry(self, pdf_factory, png_signature):
        src = pdf_factory(pages=2, size=(595, 842))
        out = embedder.embed(
            src, 0, ScreenPosition(x=300, y=200),
            ImageContent(data=png_signature, width=120, height=60),
            rendered_height_px=1132, content_height_px=60, caption=True,
        )
        assert embedder.page_sizes(out) == [(595.0, 842.0), (595.0, 842.0)]

    def test_input_not_modified(self, sample_pdf):
        before = bytes(sample_pdf)
        embedder.embed(sample_pdf, 0, None, TextContent(text="x"))
        assert sample_pdf == before

    @pytest.mark.parametrize("rendered_height", [1035.0, 880.0])
    def test_draw_coordinates(self, sample_pdf, rendered_height):
        overlay, patcher = _capture()
        with patcher:
            embedder.embed(
                sample_pdf, 0, ScreenPosition(x=300, y=200), TextContent(text="Bob"),
                rendered_height_px=rendered_height, content_height_px=60,
            )
        x, y, text = overlay.canvas.drawString.call_args.args
        assert text == "Bob"
        assert x == pytest.approx(229.5)
        assert y == pytest.approx(792 - 260 * (792 / rendered_height))

    def test_same_inputs_same_coordinates(self, sample_pdf):
        coords = []
        for _ in range(2):
            overlay, patcher = _capture()
            with patcher:
                embedder.embed(
                    sample_pdf, 0, ScreenPosition(x=50, y=75), TextContent(text="a"),
                    rendered_height_px=1035,
                )
            coords.append(overlay.canvas.drawString.call_args.args)
        assert coords[0] == coords[1]

    def test_rendered_height_defaults_to_natural(self, sample_pdf):
        overlay, patcher = _capture()
        with patcher:
            embedder.embed(sample_pdf, 0, ScreenPosition(x=0, y=0), TextContent(text="a"))
        _, y, _ = overlay.canvas.drawString.call_args.args
        assert y == pytest.approx(792.0)

    def test_default_position_bottom_right(self, sample_pdf):
        overlay, patcher = _capture()
        with patcher:
            embedder.embed(sample_pdf, 0, None, TextContent(text="Signed", font_size=12))
        x, y, _ = overlay.canvas.drawString.call_args.args
        assert x == pytest.approx(612 - stringWidth("Signed", "Helvetica", 12) - DEFAULT_PADDING)
        assert y == pytest.approx(DEFAULT_PADDING)

    def test_caption_under_anchor(self, sample_pdf, png_signature):
        overlay, patcher = _capture()
        now = datetime(2024, 3, 5, 14, 7)
        with patcher:
            embedder.embed(
                sample_pdf, 0, ScreenPosition(x=0, y=0),
                ImageContent(data=png_signature, width=120, height=60),
                rendered_height_px=1035, caption=True, now=now,
            )
        x, y, text = overlay.canvas.drawString.call_args.args
        assert text == "Signed: 03/05/2024 14:07"
        img_x, img_y = overlay.canvas.drawImage.call_args.args[1:3]
        assert x == img_x
        assert y == pytest.approx(img_y - 15)

    def test_bad_page_index(self, sample_pdf):
        with pytest.raises(EmbedError, match="does not exist"):
            embedder.embed(sample_pdf, 3, None, TextContent(text="x"))
        with pytest.raises(EmbedError):
            embedder.embed(sample_pdf, -1, None, TextContent(text="x"))

    def test_corrupt_pdf(self):
        with pytest.raises(EmbedError, match="could not read PDF"):
            embedder.embed(b"%PDF-1.4 garbage", 0, None, TextContent(text="x"))

    def test_undecodable_image(self, sample_pdf):
        with pytest.raises(EmbedError, match="unsupported image format"):
            embedder.embed(sample_pdf, 0, None, ImageContent(data=b"nope"))

    def test_non_positive_font_size(self, sample_pdf):
        with pytest.raises(EmbedError):
            embedder.embed(sample_pdf, 0, None, TextContent(text="x", font_size=0))

    @pytest.mark.parametrize("text", ["Łukasz", "李雷", "Bob ✍"])
    def test_text_outside_font_rejected(self, sample_pdf, text):
        with pytest.raises(EmbedError, match="unsupported characters"):
            embedder.embed(sample_pdf, 0, None, TextContent(text=text))

    def test_western_accents_embed(self, sample_pdf):
        out = embedder.embed(sample_pdf, 0, None, TextContent(text="José Müller € 5–6"))
        assert embedder.page_sizes(out) == embedder.page_sizes(sample_pdf)


class TestEmbedSignature:
    """Server-side single-shot stamping."""

    def test_targets_last_page(self, multipage_pdf, png_signature):
        overlay, patcher = _capture()
        with patcher:
            embedder.embed_signature(multipage_pdf, png_signature)
        assert overlay.page_index == 2

    def test_layout(self, sample_pdf, png_signature):
        overlay, patcher = _capture()
        with patcher:
            embedder.embed_signature(sample_pdf, png_signature, now=datetime(2024, 1, 2, 3, 4))

        _, x, y = overlay.canvas.drawImage.call_args.args[:3]
        kwargs = overlay.canvas.drawImage.call_args.kwargs
        assert kwargs["width"] == 200
        assert kwargs["height"] == pytest.approx(100)  # 240x120 keeps its aspect
        assert x == pytest.approx(612 - 200 - 50)
        assert y == pytest.approx(50)

        texts = [c.args for c in overlay.canvas.drawString.call_args_list]
        assert (x, y + 100 + 10, "Digitally Signed") in texts
        assert (x, y - 15, "Signed: 01/02/2024 03:04") in texts

    def test_real_output(self, multipage_pdf, jpeg_signature):
        data_url = "data:image/jpeg;base64," + base64.b64encode(jpeg_signature).decode()
        out = embedder.embed_signature(multipage_pdf, data_url)
        assert embedder.page_count(out) == 3

    def test_invalid_image(self, sample_pdf):
        with pytest.raises(EmbedError):
            embedder.embed_signature(sample_pdf, "definitely not base64!")
