"""
Structured-document parsers: PDF (PyMuPDF) and DOCX (python-docx).

Both libraries are blocking; parse() offloads to the thread executor.
Library imports are local to keep module import cheap for the API process.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class ParsedDocument:
    text:       str
    page_count: int | None = None
    warnings:   list[str]  = field(default_factory=list)


class PdfParser:
    """Plain text per page in reading order, pages joined by blank lines."""

    async def parse(self, pdf_bytes: bytes) -> ParsedDocument:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._parse_sync, pdf_bytes)

    def _parse_sync(self, pdf_bytes: bytes) -> ParsedDocument:
        import fitz  # PyMuPDF

        pages: list[str] = []
        warnings: list[str] = []
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                raw = (page.get_text("text") or "").strip()
                if not raw:
                    warnings.append(f"page {page_num} has no text layer")
                pages.append(raw)

        logger.info("PyMuPDF | pages=%d empty_pages=%d", len(pages), len(warnings))
        return ParsedDocument(
            text="\n\n".join(p for p in pages if p),
            page_count=len(pages),
            warnings=warnings,
        )


class DocxParser:
    """Paragraph text followed by table cell text (tab-separated rows)."""

    async def parse(self, docx_bytes: bytes) -> ParsedDocument:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._parse_sync, docx_bytes)

    def _parse_sync(self, docx_bytes: bytes) -> ParsedDocument:
        from docx import Document as DocxDocument

        doc = DocxDocument(io.BytesIO(docx_bytes))
        warnings: list[str] = []

        parts = [p.text for p in doc.paragraphs if p.text.strip()]
        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    parts.append("\t".join(cells))

        if doc.inline_shapes:
            warnings.append(f"{len(doc.inline_shapes)} embedded image(s) were not OCR'd")
        if not parts:
            warnings.append("document contains no text paragraphs")

        logger.info("python-docx | blocks=%d tables=%d", len(parts), len(doc.tables))
        return ParsedDocument(text="\n".join(parts), warnings=warnings)
