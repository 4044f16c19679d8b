"""
High-level utilities for rendering KidBook storybooks into printable PDFs.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence
from xml.sax.saxutils import escape

import requests
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.lib.pagesizes import A4, LETTER
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import inch, mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas
from reportlab.platypus import Frame, Paragraph

logger = logging.getLogger(__name__)

ImageLoader = Callable[[str], bytes]


@dataclass(frozen=True)
class DocumentPage:
    """One book page as handed to the assembler; page 0 is the cover."""

    page_number: int
    text: str
    image_url: str | None = None
    image_bytes: bytes | None = None

    @property
    def is_cover(self) -> bool:
        return self.page_number == 0


class DocumentAssembler(Protocol):
    def assemble(
        self,
        title: str,
        pages: Sequence[DocumentPage],
        image_loader: ImageLoader | None = None,
    ) -> bytes:
        ...


@dataclass(frozen=True)
class PageLayoutConfig:
    text_background: colors.Color
    image_background: colors.Color
    cover_background: colors.Color
    accent_color: colors.Color
    text_color: colors.Color
    caption_color: colors.Color


DEFAULT_LAYOUT = PageLayoutConfig(
    text_background=colors.HexColor("#F5F1FF"),
    image_background=colors.HexColor("#E8F5FF"),
    cover_background=colors.HexColor("#6C4FD3"),
    accent_color=colors.HexColor("#FFB347"),
    text_color=colors.HexColor("#2F2A40"),
    caption_color=colors.HexColor("#4B506D"),
)


PAGE_SIZES = {
    "a4": A4,
    "letter": LETTER,
    "square": (8 * inch, 8 * inch),
}


class StorybookPDFBuilder:
    """
    Render a storybook into a printable PDF, one PDF page per book page.

    The builder creates:
      * A cover page with the cover illustration, a title banner and the cover text.
      * Content pages with the illustration on top and a caption panel carrying the
        page text and a page-number footer.

    A page whose image cannot be loaded or decoded is drawn without it.
    """

    def __init__(
        self,
        *,
        page_size: tuple[float, float] = PAGE_SIZES["a4"],
        margin_mm: float = 18.0,
        layout: PageLayoutConfig = DEFAULT_LAYOUT,
        request_timeout: float = 30.0,
        page_compression: bool = True,
    ) -> None:
        self.page_size = page_size
        self.margin = margin_mm * mm
        self.layout = layout
        self.request_timeout = request_timeout
        self.page_compression = page_compression

        self.body_font, self.body_bold_font = _story_fonts()
        self.styles = _paragraph_styles(layout, self.body_font, self.body_bold_font)

    def assemble(
        self,
        title: str,
        pages: Sequence[DocumentPage],
        image_loader: ImageLoader | None = None,
    ) -> bytes:
        if not pages:
            raise ValueError("A storybook needs at least one page.")

        loader = image_loader or self._fetch_image
        buffer = BytesIO()
        pdf = canvas.Canvas(
            buffer,
            pagesize=self.page_size,
            pageCompression=1 if self.page_compression else 0,
        )
        pdf.setTitle(title)
        width, height = self.page_size

        for page in sorted(pages, key=lambda p: p.page_number):
            image = self._load_image(page, loader)
            if page.is_cover:
                self._draw_cover_page(pdf, title, page, image, width, height)
            else:
                self._draw_content_page(pdf, page, image, width, height)

        pdf.save()
        return buffer.getvalue()

    def write(
        self,
        title: str,
        pages: Sequence[DocumentPage],
        output_path: Path | str,
        image_loader: ImageLoader | None = None,
    ) -> Path:
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_bytes(self.assemble(title, pages, image_loader))
        return output_file

    # ------------------------------------------------------------------ cover rendering

    def _draw_cover_page(
        self,
        pdf: canvas.Canvas,
        title: str,
        page: DocumentPage,
        image: Optional[ImageReader],
        width: float,
        height: float,
    ) -> None:
        pdf.setFillColor(self.layout.cover_background)
        pdf.rect(0, 0, width, height, stroke=0, fill=1)

        if image is not None:
            self._draw_image(pdf, image, page, 0, 0, width, height, cover=True)

        banner_height = height * 0.3
        pdf.saveState()
        pdf.setFillColor(self.layout.cover_background)
        pdf.setFillAlpha(0.85)
        pdf.rect(0, 0, width, banner_height, stroke=0, fill=1)
        pdf.restoreState()

        frame = Frame(
            self.margin,
            self.margin,
            width - 2 * self.margin,
            banner_height - 2 * self.margin * 0.5,
            showBoundary=0,
        )
        intro = [Paragraph(_markup(title), self.styles["title"])]
        if page.text.strip():
            intro.append(Paragraph(_markup(page.text), self.styles["subtitle"]))
        frame.addFromList(intro, pdf)
        pdf.showPage()

    # ------------------------------------------------------------------ content pages

    def _draw_content_page(
        self,
        pdf: canvas.Canvas,
        page: DocumentPage,
        image: Optional[ImageReader],
        width: float,
        height: float,
    ) -> None:
        background = self.layout.image_background if image is not None else self.layout.text_background
        pdf.setFillColor(background)
        pdf.rect(0, 0, width, height, stroke=0, fill=1)

        footer_space = 30
        panel_height = (height - footer_space) * 0.36
        image_box_y = footer_space + panel_height + self.margin * 0.5
        image_box_height = height - image_box_y - self.margin
        image_box_width = width - 2 * self.margin

        if image is not None:
            self._draw_image(
                pdf, image, page, self.margin, image_box_y, image_box_width, image_box_height
            )

        panel_x = self.margin * 0.6
        panel_width = width - 2 * panel_x
        panel_y = footer_space

        pdf.saveState()
        pdf.setFillColor(_tint(self.layout.accent_color, 0.75))
        pdf.roundRect(panel_x, panel_y, panel_width, panel_height, 26, stroke=0, fill=1)
        pdf.restoreState()

        self._draw_sparkles(pdf, panel_x, panel_y, panel_width, panel_height)

        content_width = panel_width - (self.margin * 2 * 0.5)
        content_height = panel_height - (self.margin * 2 * 0.3)
        frame = Frame(
            panel_x + (panel_width - content_width) / 2,
            panel_y + (panel_height - content_height) / 2,
            content_width,
            content_height,
            showBoundary=0,
        )

        paragraphs = [
            Paragraph(_markup(block), self.styles["body"])
            for block in filter(None, (chunk.strip() for chunk in page.text.split("\n\n")))
        ]
        frame.addFromList(paragraphs, pdf)
        if paragraphs:
            logger.warning("Text for page %d did not fit its caption panel.", page.page_number)

        self._draw_footer(pdf, f"Page {page.page_number}", width)
        pdf.showPage()

    # ------------------------------------------------------------------ helpers

    def _draw_image(
        self,
        pdf: canvas.Canvas,
        image: ImageReader,
        page: DocumentPage,
        x: float,
        y: float,
        box_width: float,
        box_height: float,
        *,
        cover: bool = False,
    ) -> None:
        img_width, img_height = image.getSize()
        if cover:
            scale = max(box_width / img_width, box_height / img_height)
        else:
            scale = min(box_width / img_width, box_height / img_height)
        draw_width = img_width * scale
        draw_height = img_height * scale
        try:
            pdf.drawImage(
                image,
                x + (box_width - draw_width) / 2,
                y + (box_height - draw_height) / 2,
                draw_width,
                draw_height,
                preserveAspectRatio=True,
                mask="auto",
            )
        except Exception as exc:
            logger.warning(
                "Could not draw image for page %d; continuing without it: %s",
                page.page_number,
                exc,
            )

    def _load_image(self, page: DocumentPage, loader: ImageLoader) -> Optional[ImageReader]:
        data = page.image_bytes
        if data is None and page.image_url:
            try:
                data = loader(page.image_url)
            except Exception as exc:
                logger.warning(
                    "Could not load image for page %d from %s; continuing without it: %s",
                    page.page_number,
                    page.image_url,
                    exc,
                )
                return None
        if not data:
            return None

        try:
            reader = ImageReader(BytesIO(data))
            reader.getSize()
        except Exception as exc:
            logger.warning(
                "Could not decode image for page %d; continuing without it: %s",
                page.page_number,
                exc,
            )
            return None
        return reader

    def _draw_footer(self, pdf: canvas.Canvas, text: str, width: float) -> None:
        footer_frame = Frame(
            self.margin,
            8,
            width - 2 * self.margin,
            22,
            leftPadding=0,
            rightPadding=0,
            topPadding=0,
            bottomPadding=0,
            showBoundary=0,
        )
        footer_frame.addFromList([Paragraph(text, self.styles["footer"])], pdf)

    def _fetch_image(self, url: str) -> bytes:
        response = requests.get(url, timeout=self.request_timeout)
        response.raise_for_status()
        return response.content

    def _draw_sparkles(
        self,
        pdf: canvas.Canvas,
        x: float,
        y: float,
        width: float,
        height: float,
    ) -> None:
        pdf.saveState()
        pdf.setFillColor(_tint(self.layout.accent_color, 0.6))
        for fx, fy, radius in _SPARKLE_POINTS:
            pdf.circle(x + width * fx, y + height * fy, radius, stroke=0, fill=1)
        pdf.restoreState()


# (x fraction, y fraction, radius) inside the caption panel.
_SPARKLE_POINTS = (
    (0.06, 0.88, 6),
    (0.94, 0.84, 9),
    (0.04, 0.14, 5),
    (0.95, 0.12, 6),
)


@dataclass(frozen=True)
class _FontFamily:
    regular: str
    bold: str
    regular_files: tuple[str, ...]
    bold_files: tuple[str, ...]


_STORY_FONT_FAMILIES = (
    _FontFamily("ComicSansMS", "ComicSansMS-Bold", ("Comic Sans MS.ttf", "ComicSansMS.ttf"), ("Comic Sans MS Bold.ttf", "ComicSansMS-Bold.ttf")),
    _FontFamily("ChalkboardSE-Light", "ChalkboardSE-Bold", ("ChalkboardSE-Light.ttf",), ("ChalkboardSE-Bold.ttf",)),
)

_FONT_DIRS = (
    Path("/Library/Fonts"),
    Path("/System/Library/Fonts"),
    Path.home() / "Library" / "Fonts",
    Path("C:/Windows/Fonts"),
    Path("/usr/share/fonts/truetype/msttcorefonts"),
    Path("/usr/share/fonts"),
)


@functools.lru_cache(maxsize=None)
def _story_fonts() -> tuple[str, str]:
    """Register the first playful font family found on this machine, else fall back to Helvetica."""
    for family in _STORY_FONT_FAMILIES:
        if _register(family.regular, family.regular_files) and _register(family.bold, family.bold_files):
            logger.debug("Using %s for story text", family.regular)
            return family.regular, family.bold
    return "Helvetica", "Helvetica-Bold"


def _register(font_name: str, filenames: Sequence[str]) -> bool:
    if font_name in pdfmetrics.getRegisteredFontNames():
        return True
    for path in (directory / name for directory in _FONT_DIRS for name in filenames):
        if not path.is_file():
            continue
        try:
            pdfmetrics.registerFont(TTFont(font_name, str(path)))
        except Exception as exc:
            logger.debug("Could not register font %s from %s: %s", font_name, path, exc)
            continue
        return True
    return False


def _tint(color: colors.Color, amount: float) -> colors.Color:
    """Blend ``color`` towards white by ``amount`` (0 to 1)."""
    amount = max(0.0, min(amount, 1.0))
    return colors.Color(*(channel + (1 - channel) * amount for channel in color.rgb()))


def _paragraph_styles(layout: PageLayoutConfig, body_font: str, bold_font: str) -> dict[str, ParagraphStyle]:
    cover_text = dict(alignment=TA_CENTER, textColor=colors.white)
    return {
        "title": ParagraphStyle("StoryTitle", fontName="Helvetica-Bold", fontSize=28, leading=32, spaceAfter=12, **cover_text),
        "subtitle": ParagraphStyle("StorySubtitle", fontName=bold_font, fontSize=16, leading=20, spaceAfter=18, **cover_text),
        "body": ParagraphStyle(
            "StoryBody",
            fontName=body_font,
            fontSize=16,
            leading=23,
            alignment=TA_JUSTIFY,
            textColor=layout.text_color,
            spaceAfter=10,
        ),
        "footer": ParagraphStyle(
            "PageFooter",
            fontName="Helvetica-Oblique",
            fontSize=10,
            leading=12,
            alignment=TA_CENTER,
            textColor=layout.caption_color,
        ),
    }


def _markup(text: str) -> str:
    return escape(text.strip()).replace("\n", "<br/>")
