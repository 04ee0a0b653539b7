"""Threadline conversation segmentation package."""

from __future__ import annotations

from .config import EngineConfig, KeywordTables, Settings
from .engine import ConversationEngine
from .models import Assignment, AssignmentRoute, BatchResult, MergeReport, Message, Thread

__all__ = [
    "Assignment",
    "AssignmentRoute",
    "BatchResult",
    "ConversationEngine",
    "EmbeddingBackend",
    "EmbeddingService",
    "EngineConfig",
    "KeywordExtractor",
    "KeywordTables",
    "MergeReport",
    "Message",
    "Settings",
    "Thread",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name in {"EmbeddingService", "EmbeddingBackend"}:
        from .embeddings import EmbeddingBackend, EmbeddingService

        return {"EmbeddingService": EmbeddingService, "EmbeddingBackend": EmbeddingBackend}[name]
    if name == "KeywordExtractor":
        from .keywords import KeywordExtractor

        return KeywordExtractor
    raise AttributeError(f"module 'threadline' has no attribute {name}")
