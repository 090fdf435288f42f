"""
LLM Package

  gateway.py  LLMGateway: async chat completions through LangChain ChatOpenAI
  prompts.py  Prompt templates for enrichment, chat and suggested questions
"""

from smartdoc.llm.gateway import LLMGateway

__all__ = ["LLMGateway"]
