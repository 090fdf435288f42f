"""
Text Extractor  —  Type Dispatch over Injected Engines
═══════════════════════════════════════════════════════

  extract(buffer, declared_type)
      │
      ├── png | jpg | jpeg | tif | tiff ─► OcrEngine.recognize()  ─► remove_ocr_noise()
      ├── pdf                           ─► PdfParser.parse()       (page_count)
      ├── docx                          ─► DocxParser.parse()      (warnings)
      ├── txt | md                      ─► decode (utf-8-sig → latin-1) + NFC
      └── anything else                 ─► UnsupportedTypeError

The declared type may be an extension ("pdf", ".PDF") or a MIME type
("application/pdf"). Each engine call is bounded by ``timeout``; an engine
exception or timeout becomes ExtractionError with the cause chained.

The minimum-length rule is NOT applied here — the pipeline owns it, since
what counts as "too little text" is a processing policy, not a property of
the file format.
"""

from __future__ import annotations

import asyncio
import logging
import time
import unicodedata
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from smartdoc.core.errors import ExtractionError, UnsupportedTypeError
from smartdoc.processing.chunking import remove_ocr_noise
from smartdoc.processing.ocr import OcrEngine
from smartdoc.processing.parsers import DocxParser, PdfParser

logger = logging.getLogger(__name__)

EXTRACTION_TIMEOUT_SECONDS = 120.0

IMAGE_TYPES = frozenset({"png", "jpg", "jpeg", "tif", "tiff"})
TEXT_TYPES  = frozenset({"txt", "md"})

_MIME_TO_TYPE: dict[str, str] = {
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "image/png":     "png",
    "image/jpeg":    "jpeg",
    "image/jpg":     "jpg",
    "image/tiff":    "tiff",
    "text/plain":    "txt",
    "text/markdown": "md",
}


def normalize_file_type(declared: str) -> str:
    """``".PDF"`` → ``"pdf"``, ``"image/png"`` → ``"png"``; unknown values pass through lowercased."""
    value = (declared or "").strip().lower()
    if "/" in value:
        return _MIME_TO_TYPE.get(value.split(";")[0].strip(), value)
    return value.lstrip(".")


@dataclass
class ExtractionResult:
    text:       str
    file_type:  str
    page_count: int | None   = None
    confidence: float | None = None
    language:   str | None   = None
    warnings:   list[str]    = field(default_factory=list)
    elapsed_ms: float        = 0.0

    def metadata(self) -> dict:
        """Advisory fields persisted on the document."""
        meta: dict = {"format": self.file_type}
        if self.page_count is not None:
            meta["page_count"] = self.page_count
        if self.confidence is not None:
            meta["ocr_confidence"] = self.confidence
        if self.language:
            meta["language"] = self.language
        if self.warnings:
            meta["extraction_warnings"] = list(self.warnings)
        return meta


class TextExtractor:
    """
    Routes raw bytes to the right engine by declared type.

    Engines are injected so tests (and alternative deployments) can swap
    any branch without touching the dispatch logic.
    """

    def __init__(
        self,
        ocr_engine:   OcrEngine | None  = None,
        pdf_parser:   PdfParser | None  = None,
        docx_parser:  DocxParser | None = None,
        ocr_language: str               = "eng",
        timeout:      float             = EXTRACTION_TIMEOUT_SECONDS,
    ) -> None:
        self._ocr = ocr_engine
        self._pdf = pdf_parser or PdfParser()
        self._docx = docx_parser or DocxParser()
        self._ocr_language = ocr_language
        self._timeout = timeout

        handlers: dict[str, Callable[[bytes, str], Awaitable[ExtractionResult]]] = {
            "pdf":  self._extract_pdf,
            "docx": self._extract_docx,
        }
        handlers.update({t: self._extract_image for t in IMAGE_TYPES})
        handlers.update({t: self._extract_plain for t in TEXT_TYPES})
        self._handlers = handlers

    @property
    def supported_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def extract(self, buffer: bytes, declared_type: str) -> ExtractionResult:
        file_type = normalize_file_type(declared_type)
        handler = self._handlers.get(file_type)
        if handler is None:
            raise UnsupportedTypeError(
                f"Unsupported file type '{declared_type}'. "
                f"Supported: {', '.join(sorted(self._handlers))}"
            )

        t0 = time.monotonic()
        try:
            result = await asyncio.wait_for(handler(buffer, file_type), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ExtractionError(
                f"Text extraction timed out after {self._timeout:.0f}s ({file_type})"
            ) from exc
        except (ExtractionError, UnsupportedTypeError):
            raise
        except Exception as exc:
            raise ExtractionError(f"Text extraction failed ({file_type}): {exc}") from exc

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Extracted | type=%s chars=%d pages=%s elapsed_ms=%.0f",
            file_type, len(result.text), result.page_count, result.elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def _extract_image(self, buffer: bytes, file_type: str) -> ExtractionResult:
        if self._ocr is None:
            raise ExtractionError("No OCR engine configured for image documents")
        ocr = await self._ocr.recognize(buffer, self._ocr_language)
        return ExtractionResult(
            text=remove_ocr_noise(ocr.text),
            file_type=file_type,
            confidence=ocr.confidence,
            language=ocr.language,
        )

    async def _extract_pdf(self, buffer: bytes, file_type: str) -> ExtractionResult:
        parsed = await self._pdf.parse(buffer)
        return ExtractionResult(
            text=parsed.text,
            file_type=file_type,
            page_count=parsed.page_count,
            warnings=parsed.warnings,
        )

    async def _extract_docx(self, buffer: bytes, file_type: str) -> ExtractionResult:
        parsed = await self._docx.parse(buffer)
        return ExtractionResult(text=parsed.text, file_type=file_type, warnings=parsed.warnings)

    async def _extract_plain(self, buffer: bytes, file_type: str) -> ExtractionResult:
        warnings: list[str] = []
        try:
            text = buffer.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = buffer.decode("latin-1")
            warnings.append("decoded as latin-1")
        return ExtractionResult(
            text=unicodedata.normalize("NFC", text),
            file_type=file_type,
            warnings=warnings,
        )
