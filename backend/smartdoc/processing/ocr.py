"""
Image OCR Engines
══════════════════

Two interchangeable engines behind one capability:

    recognize(image_bytes, language) -> OcrResult(text, confidence, language)

  TextractOcrEngine      AWS Textract DetectDocumentText. Managed, accurate,
                         pay-per-page. Default.
  UnstructuredOcrEngine  unstructured.partition.image (tesseract under the
                         hood). Runs in-process, no data egress; needs the
                         tesseract system package in the worker image.

Both clients are blocking, so the calls run in the default thread executor.
Failures propagate; the extractor wraps them in ExtractionError.

Confidence and language are advisory: the pipeline stores them in document
metadata and never branches on them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Unstructured does not expose per-element confidence
UNSTRUCTURED_NOMINAL_CONFIDENCE = 0.85


@dataclass
class OcrResult:
    text:       str
    confidence: float | None = None    # 0–1
    language:   str | None   = None


class OcrEngine(ABC):

    name: str = "abstract"

    @abstractmethod
    async def recognize(self, image_bytes: bytes, language: str = "eng") -> OcrResult:
        """Return the text found in an image."""


# ---------------------------------------------------------------------------
# AWS Textract
# ---------------------------------------------------------------------------

class TextractOcrEngine(OcrEngine):

    name = "textract"

    def __init__(self, region: str = "us-east-1", client=None) -> None:
        self._region = region
        self._client = client

    def _get_client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("textract", region_name=self._region)
        return self._client

    async def recognize(self, image_bytes: bytes, language: str = "eng") -> OcrResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        result = await loop.run_in_executor(None, self._recognize_sync, image_bytes)
        result.language = result.language or language
        logger.info(
            "Textract | chars=%d confidence=%s elapsed_ms=%.0f",
            len(result.text), result.confidence, (time.monotonic() - t0) * 1000,
        )
        return result

    def _recognize_sync(self, image_bytes: bytes) -> OcrResult:
        response = self._get_client().detect_document_text(Document={"Bytes": image_bytes})

        lines: list[str] = []
        confidences: list[float] = []
        for block in response.get("Blocks", []):
            if block.get("BlockType") == "LINE":
                lines.append(block.get("Text", ""))
            if block.get("BlockType") in ("LINE", "WORD") and "Confidence" in block:
                confidences.append(block["Confidence"] / 100.0)   # normalize to 0–1

        confidence = round(sum(confidences) / len(confidences), 3) if confidences else None
        return OcrResult(text="\n".join(lines), confidence=confidence)


# ---------------------------------------------------------------------------
# Unstructured.io (local tesseract)
# ---------------------------------------------------------------------------

class UnstructuredOcrEngine(OcrEngine):

    name = "unstructured"

    async def recognize(self, image_bytes: bytes, language: str = "eng") -> OcrResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        result = await loop.run_in_executor(None, self._recognize_sync, image_bytes, language)
        logger.info(
            "Unstructured OCR | chars=%d elapsed_ms=%.0f",
            len(result.text), (time.monotonic() - t0) * 1000,
        )
        return result

    def _recognize_sync(self, image_bytes: bytes, language: str) -> OcrResult:
        import io
        from unstructured.partition.image import partition_image

        elements = partition_image(
            file=io.BytesIO(image_bytes),
            strategy="ocr_only",
            languages=[language],
        )
        text = "\n".join(str(el).strip() for el in elements if str(el).strip())
        return OcrResult(
            text=text,
            confidence=UNSTRUCTURED_NOMINAL_CONFIDENCE if text else None,
            language=language,
        )


def build_ocr_engine(backend: str, region: str = "us-east-1") -> OcrEngine:
    if backend == "textract":
        return TextractOcrEngine(region=region)
    if backend == "unstructured":
        return UnstructuredOcrEngine()
    raise ValueError(f"Unknown OCR backend: {backend!r}")
