"""LLM collaborators for trialmatch."""

from trialmatch.llm.service import LLMService

__all__ = ["LLMService"]
