"""
Prompt templates.

Enrichment prompts are plain strings formatted by the caller; the grounded
chat prompt is a LangChain ChatPromptTemplate so history turns slot in as
real messages rather than being pasted into the system text.
"""

from __future__ import annotations

from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

SUMMARY_SYSTEM = (
    "You are a professional document analyst. Generate a concise, informative "
    "summary of the provided text. The summary should be no more than {max_length} "
    "characters and capture the key points, main ideas, and important details."
)
SUMMARY_USER = "Please summarize the following document:\n\n{text}"

ENTITIES_SYSTEM = (
    "You are an expert in Named Entity Recognition (NER). Extract all important "
    "entities from the provided text. For each entity, identify its type (person, "
    "organization, location, date, money, email, phone, id, or other) and value. "
    'Return a JSON object of the form {{"entities": [{{"type": "...", "value": "..."}}]}}.'
)
ENTITIES_USER = "Extract entities from this text:\n\n{text}"

CLASSIFY_SYSTEM = (
    "You are a document classification expert. Classify the provided document into "
    "one of the following categories: {labels}. Return only the category name in lowercase."
)
CLASSIFY_USER = "Classify this document:\n\n{text}"

ANOMALY_SYSTEM = (
    "You are a fraud detection specialist. Analyze the document for potential "
    "anomalies, inconsistencies, suspicious patterns, or red flags. Return a JSON "
    'object with "score" (0-100, where 100 is most suspicious) and "details" '
    "(brief explanation)."
)
ANOMALY_USER = "Analyze this document for anomalies:\n\n{text}"

# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

CONTEXT_SEPARATOR = "\n\n---\n\n"

CHAT_SYSTEM = (
    "You are a helpful AI assistant that answers questions about documents. Use the "
    "following context from the document to answer the user's question. If the answer "
    "cannot be found in the context, say so clearly. Be concise and accurate.\n\n"
    "Context from document:\n{context}"
)

CHAT_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", CHAT_SYSTEM),
        MessagesPlaceholder("history"),
        ("human", "{question}"),
    ]
)

SUGGESTIONS_SYSTEM = (
    "You are an expert at generating insightful questions about documents. Generate "
    "{count} relevant questions that someone might want to ask about this {document_type}. "
    "Return only the questions, one per line."
)
SUGGESTIONS_USER = "Document summary: {summary}"

DEFAULT_SUGGESTED_QUESTIONS = (
    "What is the main purpose of this document?",
    "What are the key points mentioned?",
    "Who are the main parties involved?",
    "What are the important dates?",
    "Is there any financial information?",
)
