from __future__ import annotations

import re

import pytest

from conftest import png_bytes
from kidbook.pdf_generation import PAGE_SIZES, DocumentPage, StorybookPDFBuilder
from kidbook.pdf_generation import builder as builder_module


def _page_count(pdf: bytes) -> int:
    return len(re.findall(rb"/Type /Page\b", pdf))


@pytest.fixture
def builder(monkeypatch) -> StorybookPDFBuilder:
    # Standard fonts keep page text as plain strings in an uncompressed PDF.
    monkeypatch.setattr(builder_module, "_story_fonts", lambda: ("Helvetica", "Helvetica-Bold"))
    return StorybookPDFBuilder(page_compression=False)


def test_assemble_renders_one_pdf_page_per_book_page(builder):
    images = {
        "https://images.test/cover.png": png_bytes("purple", (40, 40)),
        "https://images.test/1.png": png_bytes("teal", (60, 30)),
    }
    pages = [
        DocumentPage(2, "They flew home.", image_url=None),
        DocumentPage(1, "Leo met Pip.", image_url="https://images.test/1.png"),
        DocumentPage(0, "Leo and the Moon Map", image_url="https://images.test/cover.png"),
    ]

    pdf = builder.assemble("Leo and the Moon Map", pages, image_loader=images.__getitem__)

    assert pdf.startswith(b"%PDF")
    assert _page_count(pdf) == 3
    assert b"Page 1" in pdf
    assert b"Page 2" in pdf


def test_unloadable_image_is_skipped(builder, caplog):
    def loader(url):
        if url.endswith("broken.png"):
            raise ConnectionError("connection reset")
        return png_bytes()

    pages = [
        DocumentPage(0, "Cover", image_url="https://images.test/cover.png"),
        DocumentPage(1, "First page", image_url="https://images.test/broken.png"),
        DocumentPage(2, "Second page", image_bytes=b"not an image"),
    ]

    with caplog.at_level("WARNING", logger="kidbook.pdf_generation.builder"):
        pdf = builder.assemble("Broken Images", pages, image_loader=loader)

    assert _page_count(pdf) == 3
    assert b"First page" in pdf
    assert b"Second page" in pdf
    assert b"Page 1" in pdf
    assert b"Page 2" in pdf
    assert "broken.png" in caplog.text
    assert "Could not decode image for page 2" in caplog.text


def test_image_bytes_take_precedence_over_url(builder):
    requested = []

    def loader(url):
        requested.append(url)
        return png_bytes()

    pages = [
        DocumentPage(0, "Cover", image_url="https://images.test/cover.png", image_bytes=png_bytes("red")),
        DocumentPage(1, "Only page", image_url="https://images.test/1.png"),
    ]
    builder.assemble("Bytes First", pages, image_loader=loader)

    assert requested == ["https://images.test/1.png"]


def test_assemble_requires_pages(builder):
    with pytest.raises(ValueError):
        builder.assemble("Empty", [])


def test_write_creates_parent_directories(tmp_path):
    builder = StorybookPDFBuilder(page_size=PAGE_SIZES["square"])
    output = tmp_path / "out" / "book.pdf"

    written = builder.write("Square", [DocumentPage(0, "Cover"), DocumentPage(1, "Text & <more>")], output)

    assert written == output
    assert output.read_bytes().startswith(b"%PDF")
