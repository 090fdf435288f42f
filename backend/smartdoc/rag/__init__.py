"""
Retrieval-Augmented Generation Package

  retrieval.py  semantic search, per-document chunk retrieval, similar documents
  chat.py       grounded chat over one document with a persisted conversation log
"""

from smartdoc.rag.chat import ChatResult, ChatService
from smartdoc.rag.retrieval import RetrievalService, SearchResult

__all__ = ["ChatResult", "ChatService", "RetrievalService", "SearchResult"]
