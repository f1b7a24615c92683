from __future__ import annotations

import asyncio
import io
import logging
from typing import Any, Protocol

from docx import Document as DocxDocument
from pypdf import PdfReader

from .object_fetch import FetchedObject, object_name

logger = logging.getLogger(__name__)

PDF_EXTENSIONS = (".pdf",)
DOCX_EXTENSIONS = (".docx", ".doc")


class Downloader(Protocol):
    async def download(self, ref: str) -> FetchedObject: ...


class ExtractionPhaseTimeout(Exception):
    pass


def document_kind(ref: str) -> str | None:
    name = object_name(ref).lower()
    if name.endswith(PDF_EXTENSIONS):
        return "pdf"
    if name.endswith(DOCX_EXTENSIONS):
        return "docx"
    return None


def label_document(index: int, ref: str, text: str) -> str:
    return f"=== DOCUMENT {index} ({object_name(ref)}) ===\n{text}\n=================="


def _read_docx(content: bytes) -> str:
    document = DocxDocument(io.BytesIO(content))
    return "\n".join(paragraph.text for paragraph in document.paragraphs if paragraph.text.strip())


class DocumentExtractor:
    """Best-effort text extraction; failures come back as bracketed placeholders."""

    def __init__(
        self,
        fetcher: Downloader,
        *,
        download_timeout: float = 20.0,
        load_timeout: float = 20.0,
        page_timeout: float = 10.0,
    ) -> None:
        self._fetcher = fetcher
        self._download_timeout = download_timeout
        self._load_timeout = load_timeout
        self._page_timeout = page_timeout

    async def _bounded(self, awaitable: Any, timeout: float, label: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ExtractionPhaseTimeout(f"{label} timeout after {timeout:g}s") from exc

    async def _extract_pdf(self, content: bytes) -> str:
        reader = await self._bounded(
            asyncio.to_thread(PdfReader, io.BytesIO(content)),
            self._load_timeout,
            "pdf loading",
        )
        pages: list[str] = []
        has_text = False
        for number, page in enumerate(reader.pages, start=1):
            text = await self._bounded(
                asyncio.to_thread(page.extract_text),
                self._page_timeout,
                f"page {number} text",
            )
            flattened = " ".join((text or "").split())
            has_text = has_text or bool(flattened)
            pages.append(f"[Page {number}] {flattened}")
        return "\n".join(pages).strip() if has_text else ""

    async def _extract_docx(self, content: bytes) -> str:
        text = await self._bounded(asyncio.to_thread(_read_docx, content), self._load_timeout, "docx loading")
        return text.strip()

    async def extract(self, ref: str) -> str:
        name = object_name(ref)
        kind = document_kind(ref)
        if kind is None:
            return f"[Format non supporté pour extraction texte: {name}] (Image ou autre)"

        try:
            fetched = await self._bounded(self._fetcher.download(ref), self._download_timeout, "document download")
        except Exception as exc:
            logger.warning("document download failed for %s: %s", name, exc)
            return f"[Erreur de téléchargement pour {name}: {exc}]"

        try:
            if kind == "pdf":
                text = await self._extract_pdf(fetched.content)
            else:
                text = await self._extract_docx(fetched.content)
        except Exception as exc:
            logger.warning("document extraction failed for %s: %s", name, exc)
            return f"[Erreur d'extraction pour {name}: {exc}]"

        if not text:
            return f"[Aucun texte extrait du fichier {name}]"
        return text

    async def extract_all(self, refs: list[str]) -> list[str]:
        if not refs:
            return []
        results = await asyncio.gather(*(self.extract(ref) for ref in refs))
        return [label_document(index, ref, text) for index, (ref, text) in enumerate(zip(refs, results), start=1)]
