from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
import pytest

from threadline.config import Settings
from threadline.embeddings import EmbeddingBackend, EmbeddingService


@dataclass
class _StubModel:
    name: str
    dimension: int = 3
    batches: list[list[str]] = field(default_factory=list)

    def encode(self, texts: list[str], show_progress_bar: bool = False) -> list[list[float]]:  # noqa: ARG002
        self.batches.append(list(texts))
        return [[float(len(text)), 0.0, 0.0] for text in texts]

    def get_sentence_embedding_dimension(self) -> int:
        return self.dimension


class _StubOpenAIEmbeddings:
    def create(self, model: str, input: list[str]) -> Any:  # noqa: A002, ANN401
        return type(
            "Response",
            (),
            {"data": [type("Item", (), {"embedding": [float(len(text)), 1.0, 0.0]}) for text in input]},
        )()


class _StubOpenAIModels:
    def __init__(self) -> None:
        self.retrieved: list[str] = []

    def retrieve(self, name: str) -> None:
        self.retrieved.append(name)


class _StubOpenAIClient:
    def __init__(self, api_key: str, **kwargs: Any) -> None:
        self.api_key = api_key
        self.kwargs = kwargs
        self.embeddings = _StubOpenAIEmbeddings()
        self.models = _StubOpenAIModels()


class _StubHttpxResponse:
    def __init__(self, payload: dict[str, Any], status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise RuntimeError(f"HTTP {self.status_code}")

    def json(self) -> dict[str, Any]:
        return self._payload


class _StubHttpxClient:
    def __init__(
        self,
        base_url: str,
        timeout: float,
        headers: dict[str, str] | None = None,
        *,
        responder: Callable[[str, dict[str, Any]], _StubHttpxResponse],
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.headers = headers or {}
        self.requests: list[dict[str, Any]] = []
        self.closed = False
        self._responder = responder
        self._lock = threading.Lock()

    def post(self, url: str, json: dict[str, Any]) -> _StubHttpxResponse:
        with self._lock:
            self.requests.append({"url": url, "json": json})
        return self._responder(url, json)

    def close(self) -> None:
        self.closed = True


class _StubHttpxModule:
    TimeoutException = httpx.TimeoutException

    def __init__(self, responder: Callable[[str, dict[str, Any]], _StubHttpxResponse]) -> None:
        self.created: list[_StubHttpxClient] = []
        self._responder = responder

    def Client(self, *args: Any, **kwargs: Any) -> _StubHttpxClient:  # noqa: N802
        client = _StubHttpxClient(*args, responder=self._responder, **kwargs)
        self.created.append(client)
        return client


class _RecordingMetrics:
    def __init__(self) -> None:
        self.increments: list[tuple[str, dict[str, Any]]] = []
        self.timings: list[str] = []

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        self.increments.append((metric, tags))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        self.timings.append(metric)


def _vllm_ok(url: str, json: dict[str, Any]) -> _StubHttpxResponse:
    return _StubHttpxResponse({"data": [{"embedding": [float(len(text)), 0.0, 0.0]} for text in json["input"]]})


def _ollama_ok(url: str, json: dict[str, Any]) -> _StubHttpxResponse:
    return _StubHttpxResponse({"embeddings": [[float(len(text)), 1.0, 0.0] for text in json["input"]]})


def _vllm_settings(**overrides: Any) -> Settings:
    return Settings(embedding_model="vllm:mock-embed", **overrides)


def test_huggingface_backend_uses_sentence_transformer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("threadline.embeddings.SentenceTransformer", lambda name: _StubModel(name=name))

    service = EmbeddingService(Settings())

    assert service.backend is EmbeddingBackend.HUGGINGFACE
    assert service.dimension == 3
    assert service.embed(["hello there"]) == [[11.0, 0.0, 0.0]]


def test_embed_batches_eligible_texts_and_preserves_order(monkeypatch: pytest.MonkeyPatch) -> None:
    model = _StubModel(name="stub")
    monkeypatch.setattr("threadline.embeddings.SentenceTransformer", lambda name: model)
    service = EmbeddingService(Settings(embedding_batch_size=2, embedding_concurrency=2))

    vectors = service.embed(["aaa", "", "https://example.com/a", "bb", "c", "dddd"])

    assert vectors == [
        [3.0, 0.0, 0.0],
        None,
        None,
        [2.0, 0.0, 0.0],
        [1.0, 0.0, 0.0],
        [4.0, 0.0, 0.0],
    ]
    assert sorted(model.batches) == [["aaa", "bb"], ["c", "dddd"]]


def test_embed_without_eligible_texts_skips_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    model = _StubModel(name="stub")
    monkeypatch.setattr("threadline.embeddings.SentenceTransformer", lambda name: model)
    service = EmbeddingService(Settings())

    assert service.embed(["   ", "http://example.com/x"]) == [None, None]
    assert service.embed([]) == []
    assert model.batches == []


def test_openai_backend_calls_api(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("threadline.embeddings.OpenAI", _StubOpenAIClient)

    service = EmbeddingService(Settings(embedding_model="text-embedding-3-large", openai_api_key="token"))

    assert service.backend is EmbeddingBackend.OPENAI
    assert service.dimension == 3072
    assert service.embed(["hi there"]) == [[8.0, 1.0, 0.0]]
    assert service._openai_client.models.retrieved == ["text-embedding-3-large"]
    assert service._openai_client.kwargs["max_retries"] == 0


def test_openai_backend_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("threadline.embeddings.OpenAI", _StubOpenAIClient)

    with pytest.raises(ValueError):
        EmbeddingService(Settings(embedding_model="text-embedding-3-large", openai_api_key=None))


def test_ollama_backend_posts_batches_to_embed_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    stub_httpx = _StubHttpxModule(_ollama_ok)
    monkeypatch.setattr("threadline.embeddings.httpx", stub_httpx)

    service = EmbeddingService(Settings(embedding_model="ollama:nomic-embed-text"), validate=False)

    assert service.backend is EmbeddingBackend.OLLAMA
    assert service.embed(["hi", "team"]) == [[2.0, 1.0, 0.0], [4.0, 1.0, 0.0]]
    assert service.dimension == 3
    client = stub_httpx.created[0]
    assert client.base_url == "http://localhost:11434"
    assert client.requests == [
        {"url": "http://localhost:11434/api/embed", "json": {"model": "nomic-embed-text", "input": ["hi", "team"]}}
    ]


def test_ollama_backend_supports_explicit_base_url(monkeypatch: pytest.MonkeyPatch) -> None:
    stub_httpx = _StubHttpxModule(_ollama_ok)
    monkeypatch.setattr("threadline.embeddings.httpx", stub_httpx)

    service = EmbeddingService(
        Settings(embedding_model="ollama:http://remote-host:9999/qwen3-embedding"), validate=False
    )
    service.embed(["hello"])

    client = stub_httpx.created[0]
    assert client.base_url == "http://remote-host:9999"
    assert client.requests[0]["json"]["model"] == "qwen3-embedding"


def test_vllm_backend_probes_dimension_and_sends_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    stub_httpx = _StubHttpxModule(_vllm_ok)
    monkeypatch.setattr("threadline.embeddings.httpx", stub_httpx)

    service = EmbeddingService(_vllm_settings(vllm_api_key="secret", embedding_timeout=12.5))

    assert service.backend is EmbeddingBackend.VLLM
    assert service.dimension == 3
    assert service.embed(["hi", "team"]) == [[2.0, 0.0, 0.0], [4.0, 0.0, 0.0]]
    client = stub_httpx.created[0]
    assert client.timeout == pytest.approx(12.5)
    assert client.headers.get("Authorization") == "Bearer secret"
    assert [request["json"]["input"] for request in client.requests] == [["__dimension_probe__"], ["hi", "team"]]
    assert client.requests[1]["url"] == "http://localhost:8000/v1/embeddings"

    service.close()
    assert client.closed


def test_vllm_endpoint_strips_api_suffix(monkeypatch: pytest.MonkeyPatch) -> None:
    stub_httpx = _StubHttpxModule(_vllm_ok)
    monkeypatch.setattr("threadline.embeddings.httpx", stub_httpx)

    EmbeddingService(Settings(embedding_model="vllm:http://gpu-host:9000/v1/bge-small"), validate=False)

    assert stub_httpx.created[0].base_url == "http://gpu-host:9000"


def test_rate_limited_batch_retries_with_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts = {"count": 0}

    def responder(url: str, json: dict[str, Any]) -> _StubHttpxResponse:
        attempts["count"] += 1
        if attempts["count"] <= 2:
            return _StubHttpxResponse({}, status_code=429)
        return _vllm_ok(url, json)

    monkeypatch.setattr("threadline.embeddings.httpx", _StubHttpxModule(responder))
    delays: list[float] = []
    service = EmbeddingService(_vllm_settings(), validate=False, sleep=delays.append)

    assert service.embed(["hello"]) == [[5.0, 0.0, 0.0]]
    assert delays == [1.0, 2.0]


def test_rate_limit_exhaustion_degrades_to_none(monkeypatch: pytest.MonkeyPatch, caplog) -> None:
    stub_httpx = _StubHttpxModule(lambda url, json: _StubHttpxResponse({}, status_code=429))
    monkeypatch.setattr("threadline.embeddings.httpx", stub_httpx)
    delays: list[float] = []
    metrics = _RecordingMetrics()
    service = EmbeddingService(_vllm_settings(), validate=False, sleep=delays.append, metrics=metrics)

    with caplog.at_level(logging.WARNING, logger="threadline.embeddings"):
        vectors = service.embed(["hello", "world"])

    assert vectors == [None, None]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert len(stub_httpx.created[0].requests) == 6
    assert ("embedding.batch_failures", {"backend": "vllm", "reason": "rate_limited"}) in metrics.increments
    assert any("rate_limited_exhausted" in record.getMessage() for record in caplog.records)


def test_timed_out_batch_yields_none_without_retry(monkeypatch: pytest.MonkeyPatch) -> None:
    def responder(url: str, json: dict[str, Any]) -> _StubHttpxResponse:
        if json["input"] == ["slow text"]:
            raise httpx.TimeoutException("timed out")
        return _vllm_ok(url, json)

    stub_httpx = _StubHttpxModule(responder)
    monkeypatch.setattr("threadline.embeddings.httpx", stub_httpx)
    delays: list[float] = []
    service = EmbeddingService(_vllm_settings(embedding_batch_size=1), validate=False, sleep=delays.append)

    vectors = service.embed(["fast", "slow text"])

    assert vectors == [[4.0, 0.0, 0.0], None]
    assert delays == []
    assert len(stub_httpx.created[0].requests) == 2


def test_backend_errors_degrade_to_none(monkeypatch: pytest.MonkeyPatch, caplog) -> None:
    monkeypatch.setattr(
        "threadline.embeddings.httpx", _StubHttpxModule(lambda url, json: _StubHttpxResponse({}, status_code=500))
    )
    service = EmbeddingService(_vllm_settings(), validate=False)

    with caplog.at_level(logging.WARNING, logger="threadline.embeddings"):
        assert service.embed(["hello"]) == [None]

    assert any("embedding.batch.failed" in record.getMessage() for record in caplog.records)


def test_short_response_is_treated_as_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "threadline.embeddings.httpx",
        _StubHttpxModule(lambda url, json: _StubHttpxResponse({"data": [{"embedding": [1.0, 0.0]}]})),
    )
    service = EmbeddingService(_vllm_settings(), validate=False)

    assert service.embed(["one", "two"]) == [None, None]


def test_batch_exceeding_total_deadline_yields_none(monkeypatch: pytest.MonkeyPatch) -> None:
    stub_httpx = _StubHttpxModule(_vllm_ok)
    monkeypatch.setattr("threadline.embeddings.httpx", stub_httpx)
    ticks = itertools.count(0.0, 20.0)
    delays: list[float] = []
    metrics = _RecordingMetrics()
    service = EmbeddingService(
        _vllm_settings(embedding_timeout=15.0),
        validate=False,
        sleep=delays.append,
        clock=lambda: next(ticks),
        metrics=metrics,
    )

    assert service.embed(["trickled response"]) == [None]
    assert delays == []
    assert len(stub_httpx.created[0].requests) == 1
    assert ("embedding.batch_failures", {"backend": "vllm", "reason": "timeout"}) in metrics.increments
