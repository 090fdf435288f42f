"""
Enrichment Engine  —  LLM-Derived Document Fields
══════════════════════════════════════════════════

Four independent capabilities, each a single bounded completion:

  capability          input budget  output           on failure
  ──────────────────  ────────────  ───────────────  ─────────────────────────
  summarize()         15 000 chars  ≤ max_length     leading sentences of text
  extract_entities()  10 000 chars  JSON entities    regex fallback (never raises)
  classify()           5 000 chars  closed label     "other"
  detect_anomalies()   8 000 chars  JSON score 0-100 score 0, "unavailable"

Inputs are truncated deterministically (prefix) before the call. Nothing
raised by the LLM reaches the pipeline: every capability logs a warning and
returns its safe default, so one flaky completion never fails a document.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from pydantic import ValidationError as PydanticValidationError

from smartdoc.llm import prompts
from smartdoc.llm.gateway import LLMGateway
from smartdoc.processing.chunking import extract_sentences
from smartdoc.schemas.documents import Entity, EntityType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------

SUMMARY_INPUT_CHARS  = 15_000
ENTITY_INPUT_CHARS   = 10_000
CLASSIFY_INPUT_CHARS = 5_000
ANOMALY_INPUT_CHARS  = 8_000

SUMMARY_MAX_TOKENS   = 500
ENTITY_MAX_TOKENS    = 1_500
CLASSIFY_MAX_TOKENS  = 20
ANOMALY_MAX_TOKENS   = 300

CLASSIFY_TEMPERATURE = 0.1

DOCUMENT_TYPES: tuple[str, ...] = (
    "invoice", "contract", "resume", "report", "letter",
    "form", "receipt", "statement", "other",
)
DEFAULT_DOCUMENT_TYPE = "other"
ANOMALY_UNAVAILABLE = "unavailable"

# ---------------------------------------------------------------------------
# Regex fallback patterns
# ---------------------------------------------------------------------------

_FALLBACK_PATTERNS: tuple[tuple[EntityType, re.Pattern[str]], ...] = (
    (EntityType.EMAIL, re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    (EntityType.PHONE, re.compile(r"(?<!\w)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.]?\d{4}\b")),
    (EntityType.DATE,  re.compile(r"\b\d{1,2}[-/]\d{1,2}[-/]\d{2,4}\b")),
    (EntityType.MONEY, re.compile(r"\$\s?\d{1,3}(?:,\d{3})*(?:\.\d{2})?")),
)


@dataclass
class AnomalyReport:
    score:   float
    details: str

    def is_unavailable(self) -> bool:
        return self.details == ANOMALY_UNAVAILABLE


def _truncate(text: str, budget: int) -> str:
    return text[:budget]


def _load_json_object(raw: str) -> dict | list:
    """Parse a JSON completion, tolerating a ```json fence around it."""
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", cleaned)
    return json.loads(cleaned)


def fallback_summary(text: str, max_length: int = 500) -> str:
    """Leading sentences of the text, cut to ``max_length`` characters."""
    summary = ""
    for sentence in extract_sentences(text):
        candidate = f"{summary} {sentence}.".strip()
        if len(candidate) > max_length:
            break
        summary = candidate
    return summary or text[:max_length].strip()


def regex_entities(text: str) -> list[Entity]:
    """Pattern-based entities with character spans. Never raises."""
    found: list[Entity] = []
    seen: set[tuple[str, str]] = set()
    try:
        for entity_type, pattern in _FALLBACK_PATTERNS:
            for match in pattern.finditer(text):
                value = match.group().strip()
                key = (entity_type.value, value)
                if not value or key in seen:
                    continue
                seen.add(key)
                found.append(
                    Entity(
                        type=entity_type,
                        value=value,
                        start_index=match.start(),
                        end_index=match.end(),
                    )
                )
    except Exception:
        logger.exception("Regex entity fallback failed; returning partial results")
    return found


class EnrichmentEngine:
    """LLM-backed enrichment with isolated, degradable capabilities."""

    def __init__(self, llm: LLMGateway) -> None:
        self._llm = llm

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    async def summarize(self, text: str, max_length: int = 500) -> str:
        messages = LLMGateway.build_messages(
            prompts.SUMMARY_SYSTEM.format(max_length=max_length),
            prompts.SUMMARY_USER.format(text=_truncate(text, SUMMARY_INPUT_CHARS)),
        )
        try:
            summary = (await self._llm.complete(messages, max_tokens=SUMMARY_MAX_TOKENS)).strip()
            if not summary:
                raise ValueError("empty summary")
            return summary
        except Exception as exc:
            logger.warning("Summary unavailable, using extractive fallback | error=%s", exc)
            return fallback_summary(text, max_length)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def extract_entities(self, text: str) -> list[Entity]:
        messages = LLMGateway.build_messages(
            prompts.ENTITIES_SYSTEM.format(),
            prompts.ENTITIES_USER.format(text=_truncate(text, ENTITY_INPUT_CHARS)),
        )
        try:
            raw = await self._llm.complete(messages, max_tokens=ENTITY_MAX_TOKENS, json_mode=True)
            return self._parse_entities(raw)
        except Exception as exc:
            logger.warning("Entity extraction unavailable, using regex fallback | error=%s", exc)
            return regex_entities(text)

    @staticmethod
    def _parse_entities(raw: str) -> list[Entity]:
        payload = _load_json_object(raw)
        items = payload.get("entities") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ValueError("completion has no entity list")

        entities: list[Entity] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                entities.append(Entity.model_validate(item))
            except PydanticValidationError:
                logger.debug("Dropping malformed entity: %r", item)
        logger.info("Entities extracted | count=%d", len(entities))
        return entities

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    async def classify(self, text: str) -> str:
        messages = LLMGateway.build_messages(
            prompts.CLASSIFY_SYSTEM.format(labels=", ".join(DOCUMENT_TYPES)),
            prompts.CLASSIFY_USER.format(text=_truncate(text, CLASSIFY_INPUT_CHARS)),
        )
        try:
            raw = await self._llm.complete(
                messages, temperature=CLASSIFY_TEMPERATURE, max_tokens=CLASSIFY_MAX_TOKENS,
            )
        except Exception as exc:
            logger.warning("Classification unavailable | error=%s", exc)
            return DEFAULT_DOCUMENT_TYPE
        return self.normalize_label(raw)

    @staticmethod
    def normalize_label(raw: str) -> str:
        """First alphabetic token of the completion, if it is in the vocabulary."""
        match = re.search(r"[a-z]+", (raw or "").lower())
        label = match.group() if match else ""
        if label not in DOCUMENT_TYPES:
            logger.info("Classification out of vocabulary | raw=%r", raw)
            return DEFAULT_DOCUMENT_TYPE
        return label

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    async def detect_anomalies(self, text: str) -> AnomalyReport:
        messages = LLMGateway.build_messages(
            prompts.ANOMALY_SYSTEM,
            prompts.ANOMALY_USER.format(text=_truncate(text, ANOMALY_INPUT_CHARS)),
        )
        try:
            raw = await self._llm.complete(messages, max_tokens=ANOMALY_MAX_TOKENS, json_mode=True)
            payload = _load_json_object(raw)
            if not isinstance(payload, dict):
                raise ValueError("anomaly completion is not an object")
            score = float(payload.get("score") or 0)
            details = str(payload.get("details") or "No anomalies detected")
        except Exception as exc:
            logger.warning("Anomaly detection unavailable | error=%s", exc)
            return AnomalyReport(score=0.0, details=ANOMALY_UNAVAILABLE)

        return AnomalyReport(score=max(0.0, min(100.0, score)), details=details)
