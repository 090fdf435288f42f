"""
Document Processing Package
════════════════════════════

Turns uploaded bytes into enriched, searchable text:

  Text Extraction → Normalization → Enrichment → Chunking → Embedding

Modules
───────
  extractor.py   Dispatch by declared type to the OCR / PDF / DOCX / plain-text branch
  ocr.py         Image OCR engines (AWS Textract, Unstructured)
  parsers.py     PDF (PyMuPDF) and DOCX (python-docx) parsers
  chunking.py    clean_text, chunk_text and text statistics
  enrichment.py  LLM summary, entities, classification, anomaly score
  embeddings.py  Batched OpenAI embeddings, cosine similarity, embedding store
"""

from smartdoc.processing.chunking import chunk_text, clean_text
from smartdoc.processing.embeddings import EmbeddingClient, EmbeddingStore, cosine_similarity
from smartdoc.processing.enrichment import AnomalyReport, EnrichmentEngine
from smartdoc.processing.extractor import ExtractionResult, TextExtractor

__all__ = [
    "AnomalyReport",
    "EmbeddingClient",
    "EmbeddingStore",
    "EnrichmentEngine",
    "ExtractionResult",
    "TextExtractor",
    "chunk_text",
    "clean_text",
    "cosine_similarity",
]
