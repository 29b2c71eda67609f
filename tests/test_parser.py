from __future__ import annotations

from pathlib import Path

import pytest

from ragdesk.errors import UnsupportedMediaTypeError
from ragdesk.ingestion import DocumentParser


@pytest.mark.asyncio
async def test_plain_text_and_markdown_are_extracted(tmp_path: Path):
    parser = DocumentParser()
    txt = tmp_path / "notes.txt"
    txt.write_text("Plain notes about alpha.", encoding="utf-8")
    md = tmp_path / "notes.md"
    md.write_text("# Title\n\nSome *markdown* body.", encoding="utf-8")

    assert await parser.extract_text(txt, "text/plain") == "Plain notes about alpha."
    assert "Some *markdown* body." in await parser.extract_text(md, "text/markdown")


@pytest.mark.asyncio
async def test_unknown_media_type_is_rejected(tmp_path: Path):
    path = tmp_path / "image.png"
    path.write_bytes(b"\x89PNG")
    parser = DocumentParser()

    assert not parser.supports("image/png")
    with pytest.raises(UnsupportedMediaTypeError):
        await parser.extract_text(path, "image/png")


def test_delete_file_ignores_missing_files(tmp_path: Path):
    path = tmp_path / "gone.txt"
    path.write_text("x", encoding="utf-8")

    DocumentParser.delete_file(path)
    DocumentParser.delete_file(path)

    assert not path.exists()
