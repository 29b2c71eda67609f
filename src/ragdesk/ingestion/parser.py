"""Plain-text extraction from uploaded files."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Mapping

from langchain_community.document_loaders import Docx2txtLoader, PyPDFLoader, TextLoader
from langchain_community.document_loaders.base import BaseLoader

from ragdesk.errors import IngestionError, UnsupportedMediaTypeError
from ragdesk.metrics.observability import get_logger

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class DocumentParser:
    """Extract UTF-8 text via LangChain document loaders."""

    _LOADERS: Mapping[str, type[BaseLoader]] = {
        "application/pdf": PyPDFLoader,
        DOCX_MEDIA_TYPE: Docx2txtLoader,
        "text/plain": TextLoader,
        "text/markdown": TextLoader,
    }

    _logger = get_logger("parser")

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding

    def supports(self, media_type: str) -> bool:
        return media_type in self._LOADERS

    async def extract_text(self, path: Path, media_type: str) -> str:
        return await asyncio.to_thread(self._extract_sync, Path(path), media_type)

    def _extract_sync(self, path: Path, media_type: str) -> str:
        loader_cls = self._LOADERS.get(media_type)
        if loader_cls is None:
            raise UnsupportedMediaTypeError(f"Unsupported file type: {media_type or '<none>'}")
        try:
            loader = self._build_loader(loader_cls, path)
            documents = loader.load()
        except Exception as exc:  # pragma: no cover - loader specific errors
            raise IngestionError(f"Failed to read {path.name}: {exc}") from exc
        text = "\n\n".join(document.page_content for document in documents)
        self._logger.info("parser.extracted", path=str(path), media_type=media_type, characters=len(text))
        return text

    def _build_loader(self, loader_cls: type[BaseLoader], path: Path) -> BaseLoader:
        if loader_cls is TextLoader:
            return loader_cls(str(path), encoding=self._encoding)
        return loader_cls(str(path))

    @classmethod
    def delete_file(cls, path: Path) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            cls._logger.warning("parser.cleanup_failed", path=str(path), error=str(exc))
