from __future__ import annotations

import httpx
import pytest

from threadline.config import Settings
from threadline.embeddings import EmbeddingService
from threadline.keywords import KeywordExtractor


@pytest.mark.integration
def test_extract_keywords_with_real_ollama() -> None:
    settings = Settings.from_env()

    if settings.normalized_keyword_backend != "ollama":
        pytest.skip("KEYWORD_BACKEND is not set to ollama")

    try:
        response = httpx.get(f"{settings.ollama_base_url}/api/tags", timeout=5.0)
        response.raise_for_status()
    except Exception as exc:  # pragma: no cover - network guard
        pytest.skip(f"Ollama server not reachable: {exc}")

    extractor = KeywordExtractor(settings)
    keywords = extractor.extract("The ranked server keeps lagging during every chess blitz game tonight")

    assert keywords, "expected at least one keyword from the live backend"
    assert len(keywords) <= settings.keyword_max_results
    for keyword in keywords:
        assert keyword == keyword.lower()
        assert 2 <= len(keyword) <= 50


@pytest.mark.integration
def test_embed_with_real_vllm() -> None:
    settings = Settings.from_env()

    if not settings.is_vllm_embedding_backend:
        pytest.skip("EMBEDDING_MODEL is not a vLLM model")

    _, base_url = settings.vllm_embedding_endpoint
    try:
        response = httpx.get(f"{base_url}/v1/models", timeout=5.0)
        response.raise_for_status()
    except Exception as exc:  # pragma: no cover - network guard
        pytest.skip(f"vLLM server not reachable: {exc}")

    service = EmbeddingService(settings)
    try:
        vectors = service.embed(["server lag again tonight", "https://example.com/clip", "anyone here play chess?"])
    finally:
        service.close()

    assert vectors[1] is None
    assert len(vectors[0]) == service.dimension
    assert len(vectors[2]) == service.dimension
