"""Embedding service supporting OpenAI, SentenceTransformers, Ollama and vLLM backends."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable, Final, List, Optional

import httpx
import openai
from openai import OpenAI
from sentence_transformers import SentenceTransformer

from .config import Settings
from .models import is_bare_url

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

_OPENAI_DIMENSIONS: Final[dict[str, int]] = {
    "text-embedding-3-large": 3072,
    "text-embedding-3-small": 1536,
    "text-embedding-ada-002": 1536,
}
_DIMENSION_PROBE: Final[str] = "__dimension_probe__"

Vector = List[float]


class EmbeddingBackend(Enum):
    """Supported embedding backends."""

    OPENAI = auto()
    HUGGINGFACE = auto()
    OLLAMA = auto()
    VLLM = auto()


class RateLimitedError(RuntimeError):
    """The backend answered with HTTP 429 or an equivalent rate-limit error."""


class EmbeddingTimeoutError(RuntimeError):
    """A batch request exceeded the configured timeout."""


class EmbeddingService:
    """Turn texts into vectors, one ``None`` per text that cannot be embedded.

    Texts are grouped into batches of ``embedding_batch_size``; batches run on
    a thread pool bounded by ``embedding_concurrency``. Rate-limited batches
    are retried with exponential back-off; timed-out or failed batches yield
    ``None`` for every text they carried. Output order always matches input.

    The HTTP and OpenAI clients apply ``embedding_timeout`` per connect and
    read phase, so a server trickling bytes can hold a request open longer.
    A remote call whose total wall time exceeds the timeout is therefore
    discarded as timed out once it returns.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        validate: bool = True,
        metrics: "MetricsRecorder" | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        if settings.is_openai_backend:
            backend = EmbeddingBackend.OPENAI
        elif settings.is_ollama_embedding_backend:
            backend = EmbeddingBackend.OLLAMA
        elif settings.is_vllm_embedding_backend:
            backend = EmbeddingBackend.VLLM
        else:
            backend = EmbeddingBackend.HUGGINGFACE

        self._backend = backend
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._batch_size = max(1, settings.embedding_batch_size)
        self._concurrency = max(1, settings.embedding_concurrency)
        self._timeout = settings.embedding_timeout
        self._max_retries = max(0, settings.embedding_max_retries)
        self._retry_base_delay = max(0.0, settings.embedding_retry_base_delay)
        self._dimension: int | None = None
        self._model: str = settings.embedding_model.strip()
        self._openai_client: OpenAI | None = None
        self._hf_model: SentenceTransformer | None = None
        self._http_client: httpx.Client | None = None
        self._endpoint: str | None = None

        if self._backend is EmbeddingBackend.OPENAI:
            self._setup_openai(validate)
        elif self._backend is EmbeddingBackend.OLLAMA:
            model, base_url = settings.ollama_embedding_endpoint
            self._setup_http(model, base_url, "/api/embed", None, validate)
        elif self._backend is EmbeddingBackend.VLLM:
            model, base_url = settings.vllm_embedding_endpoint
            api_key = (settings.vllm_api_key or "").strip() or None
            headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
            self._setup_http(model, base_url, "/v1/embeddings", headers, validate)
        else:
            self._setup_huggingface(validate)
        logger.info(
            "embedding.backend_ready backend=%s model=%s batch_size=%s concurrency=%s",
            self._backend.name.lower(),
            self._model,
            self._batch_size,
            self._concurrency,
        )

    @classmethod
    def from_env(cls, *, validate: bool = True) -> "EmbeddingService":
        """Create the embedding service from environment configuration."""

        return cls(Settings.from_env(), validate=validate)

    @property
    def backend(self) -> EmbeddingBackend:
        return self._backend

    @property
    def dimension(self) -> int:
        """Return the embedding dimensionality; known after validation or the first response."""

        if self._dimension is None:
            msg = "Embedding dimension is not initialised."
            raise RuntimeError(msg)
        return self._dimension

    def embed(self, texts: Sequence[str]) -> List[Optional[Vector]]:
        """Embed ``texts`` preserving order; empty and bare-URL texts map to ``None``."""

        results: list[Vector | None] = [None] * len(texts)
        eligible = [
            index for index, text in enumerate(texts) if text and text.strip() and not is_bare_url(text)
        ]
        if not eligible:
            return results

        batches = [
            eligible[offset : offset + self._batch_size]
            for offset in range(0, len(eligible), self._batch_size)
        ]
        workers = min(self._concurrency, len(batches))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._embed_batch, [texts[index] for index in batch]): batch
                for batch in batches
            }
            for future in as_completed(futures):
                batch = futures[future]
                for index, vector in zip(batch, future.result()):
                    results[index] = vector
        return results

    def embed_one(self, text: str) -> Optional[Vector]:
        return self.embed([text])[0]

    def close(self) -> None:
        """Release any underlying HTTP client."""

        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    # Internal helpers -------------------------------------------------

    def _embed_batch(self, texts: Sequence[str]) -> List[Optional[Vector]]:
        empty: list[Vector | None] = [None] * len(texts)
        start = time.perf_counter()
        for attempt in range(self._max_retries + 1):
            try:
                vectors = self._timed_request(texts)
            except RateLimitedError as exc:
                if attempt >= self._max_retries:
                    logger.warning(
                        "embedding.batch.rate_limited_exhausted size=%s attempts=%s error=%s",
                        len(texts),
                        attempt + 1,
                        exc,
                    )
                    self._record_failure("rate_limited")
                    return empty
                delay = self._retry_base_delay * (2**attempt)
                logger.warning(
                    "embedding.batch.rate_limited attempt=%s/%s retry_in=%.1fs",
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                )
                self._sleep(delay)
                continue
            except EmbeddingTimeoutError as exc:
                logger.warning(
                    "embedding.batch.timeout size=%s timeout=%ss error=%s", len(texts), self._timeout, exc
                )
                self._record_failure("timeout")
                return empty
            except Exception as exc:
                logger.warning("embedding.batch.failed size=%s error=%s", len(texts), exc)
                self._record_failure("error")
                return empty

            if len(vectors) != len(texts):
                logger.warning(
                    "embedding.batch.size_mismatch expected=%s received=%s", len(texts), len(vectors)
                )
                self._record_failure("size_mismatch")
                return empty
            if vectors and self._dimension is None:
                self._dimension = len(vectors[0])
            if self._metrics is not None:
                self._metrics.record_timing(
                    "embedding.batch_duration",
                    time.perf_counter() - start,
                    backend=self._backend.name.lower(),
                    size=len(texts),
                )
            return list(vectors)
        return empty

    def _timed_request(self, texts: Sequence[str]) -> List[Vector]:
        # Client timeouts bound each connect/read phase; this bounds the whole call.
        started = self._clock()
        vectors = self._request(texts)
        elapsed = self._clock() - started
        if self._backend is not EmbeddingBackend.HUGGINGFACE and elapsed > self._timeout:
            raise EmbeddingTimeoutError(f"batch took {elapsed:.1f}s, limit is {self._timeout}s")
        return vectors

    def _record_failure(self, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(
                "embedding.batch_failures", backend=self._backend.name.lower(), reason=reason
            )

    def _request(self, texts: Sequence[str]) -> List[Vector]:
        if self._backend is EmbeddingBackend.OPENAI:
            return self._openai_request(texts)
        if self._backend is EmbeddingBackend.OLLAMA:
            data = self._http_request({"model": self._model, "input": list(texts)})
            embeddings = data.get("embeddings")
            if not isinstance(embeddings, list):
                raise RuntimeError("Ollama embedding response did not include 'embeddings'.")
            return [[float(value) for value in vector] for vector in embeddings]
        if self._backend is EmbeddingBackend.VLLM:
            data = self._http_request({"model": self._model, "input": list(texts)})
            items = data.get("data")
            if not isinstance(items, list):
                raise RuntimeError("vLLM embedding response did not include embedding data.")
            vectors: list[Vector] = []
            for item in items:
                embedding = item.get("embedding")
                if embedding is None:
                    raise RuntimeError("vLLM embedding response item missing 'embedding'.")
                vectors.append([float(value) for value in embedding])
            return vectors

        assert self._hf_model is not None
        encoded = self._hf_model.encode(list(texts), show_progress_bar=False)
        if hasattr(encoded, "tolist"):
            return encoded.tolist()
        return [list(vector) for vector in encoded]

    def _openai_request(self, texts: Sequence[str]) -> List[Vector]:
        assert self._openai_client is not None
        try:
            result = self._openai_client.embeddings.create(model=self._model, input=list(texts))
        except openai.RateLimitError as exc:
            raise RateLimitedError(str(exc)) from exc
        except openai.APITimeoutError as exc:
            raise EmbeddingTimeoutError(str(exc)) from exc
        return [list(item.embedding) for item in result.data]

    def _http_request(self, payload: dict) -> dict:
        if self._http_client is None or self._endpoint is None:
            raise RuntimeError("Embedding HTTP client is not initialised.")
        try:
            response = self._http_client.post(self._endpoint, json=payload)
        except httpx.TimeoutException as exc:
            raise EmbeddingTimeoutError(str(exc)) from exc
        if response.status_code == 429:
            raise RateLimitedError(f"{self._endpoint} answered 429")
        response.raise_for_status()
        return response.json()

    def _setup_openai(self, validate: bool) -> None:
        api_key = self._settings.openai_api_key or None
        if not api_key:
            msg = "OPENAI_API_KEY must be set when using the OpenAI embedding backend."
            raise ValueError(msg)

        # Retries are handled by _embed_batch so back-off stays observable.
        self._openai_client = OpenAI(api_key=api_key, timeout=self._timeout, max_retries=0)
        self._dimension = _OPENAI_DIMENSIONS.get(self._model.lower())

        if validate:
            self._openai_client.models.retrieve(self._model)

    def _setup_huggingface(self, validate: bool) -> None:
        self._hf_model = SentenceTransformer(self._model)
        self._dimension = int(self._hf_model.get_sentence_embedding_dimension() or 0) or None

        if validate and not self._dimension:
            msg = f"Unexpected embedding dimension ({self._dimension}) for model '{self._model}'."
            raise ValueError(msg)

    def _setup_http(
        self,
        model: str,
        base_url: str,
        path: str,
        headers: dict[str, str] | None,
        validate: bool,
    ) -> None:
        self._model = model
        # Keep any base path prefix by posting to a fully-qualified URL.
        self._endpoint = f"{base_url.rstrip('/')}{path}"
        self._http_client = httpx.Client(base_url=base_url, timeout=self._timeout, headers=headers)

        if not validate:
            return
        vectors = self._request([_DIMENSION_PROBE])
        if not vectors or not vectors[0]:
            msg = f"{self._backend.name.title()} embedding backend '{model}' returned no data."
            raise ValueError(msg)
        self._dimension = len(vectors[0])


__all__ = [
    "EmbeddingBackend",
    "EmbeddingService",
    "EmbeddingTimeoutError",
    "RateLimitedError",
]
