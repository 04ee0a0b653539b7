"""Configuration helpers for the Threadline segmentation engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Iterable

import yaml
from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

load_dotenv()

_DEFAULT_EMBEDDING_MODEL: Final[str] = "sentence-transformers/all-MiniLM-L6-v2"
_DEFAULT_OLLAMA_URL: Final[str] = "http://localhost:11434"
_DEFAULT_VLLM_URL: Final[str] = "http://localhost:8000"
_DEFAULT_EMBEDDING_BATCH_SIZE: Final[int] = 20
_DEFAULT_EMBEDDING_CONCURRENCY: Final[int] = 5
_DEFAULT_EMBEDDING_TIMEOUT: Final[float] = 15.0
_DEFAULT_EMBEDDING_MAX_RETRIES: Final[int] = 5
_DEFAULT_EMBEDDING_RETRY_BASE_DELAY: Final[float] = 1.0
_DEFAULT_KEYWORD_BACKEND: Final[str] = "local"
_DEFAULT_KEYWORD_MODEL: Final[str] = "gpt-4o-mini"
_DEFAULT_KEYWORD_TIMEOUT: Final[float] = 30.0
_DEFAULT_KEYWORD_MAX_RESULTS: Final[int] = 5
_DEFAULT_SIMILARITY_THRESHOLD: Final[float] = 0.7
_DEFAULT_KEYWORD_WEIGHT: Final[float] = 0.3
_DEFAULT_STALENESS_SECONDS: Final[float] = 300.0
_DEFAULT_MIN_EMBEDDING_CHARS: Final[int] = 10
_DEFAULT_MERGE_PARTICIPANT_RATIO: Final[float] = 0.5
_DEFAULT_MERGE_KEYWORD_RATIO: Final[float] = 0.4
_DEFAULT_MERGE_SIMILARITY_THRESHOLD: Final[float] = 0.7
_DEFAULT_MERGE_MAX_PASSES: Final[int] = 10
_DEFAULT_MAX_OBSERVED_SKIPPED: Final[int] = 1000

_OPENAI_EMBEDDING_MODELS: Final[frozenset[str]] = frozenset(
    {"text-embedding-3-large", "text-embedding-3-small", "text-embedding-ada-002"}
)
_KEYWORD_BACKENDS: Final[frozenset[str]] = frozenset({"local", "openai", "ollama", "vllm"})

# Offensive single words; matched against whole normalized tokens.
_DEFAULT_PROFANITY: Final[frozenset[str]] = frozenset(
    {
        "stfu",
        "shit",
        "fuck",
        "fucking",
        "fucked",
        "bitch",
        "ass",
        "slut",
        "tits",
        "junkie",
        "raped",
        "incel",
    }
)
# Offensive phrases; matched as substrings of a normalized keyword.
_DEFAULT_OFFENSIVE_PHRASES: Final[frozenset[str]] = frozenset({"neo nazis"})
# Words an extraction model tends to echo back from its own prompt.
_DEFAULT_GENERIC_KEYWORDS: Final[frozenset[str]] = frozenset(
    {"discord", "message", "top", "relevant", "keywords", "keyword"}
)
# High-frequency chat words that carry no topical signal for overlap scoring.
_DEFAULT_OVERLAP_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "lol",
        "lmao",
        "yeah",
        "yes",
        "no",
        "ok",
        "okay",
        "like",
        "just",
        "really",
        "real",
        "lets",
        "go",
        "get",
        "got",
        "know",
        "think",
        "thing",
        "good",
        "somehow",
        "whatever",
    }
)


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    """Read an optional float environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_int(name: str, default: int) -> int:
    value = _env_optional_int(name)
    return default if value is None else value


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    value = _env_optional_float(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable with a fallback."""

    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def _split_remote_model_spec(spec: str) -> tuple[str, str | None]:
    """
    Split an embedding model spec into (model, base_url).

    Accepts either a bare model name or a full URL ending with the model name.
    When a URL is provided, the final path segment is treated as the model name.
    If the URL points directly at an embeddings endpoint an empty model is
    returned so callers can raise a clearer error.
    """

    value = spec.strip()
    if not value:
        return "", None

    lowered = value.lower()
    if lowered.startswith("http://") or lowered.startswith("https://"):
        base, sep, model = value.rpartition("/")
        model = model.strip()
        if not sep or not base.strip():
            msg = f"Embedding model spec '{spec}' must include a URL ending with the model name."
            raise ValueError(msg)
        if not model or model.lower() in {"embeddings", "embed"}:
            return "", base.strip()
        return model, base.strip()

    return value, None


def _strip_api_suffix(base_url: str) -> str:
    base_url = base_url.strip().rstrip("/")
    for suffix in ("/v1/embeddings", "/embeddings", "/api/embed", "/v1"):
        if base_url.endswith(suffix):
            base_url = base_url[: -len(suffix)]
    return base_url.rstrip("/")


def _normalize_words(values: Iterable[Any]) -> frozenset[str]:
    return frozenset(str(value).strip().lower() for value in values if str(value).strip())


@dataclass(frozen=True, slots=True)
class KeywordTables:
    """Central denylist and stopword table shared by extraction and scoring."""

    profanity: frozenset[str] = _DEFAULT_PROFANITY
    offensive_phrases: frozenset[str] = _DEFAULT_OFFENSIVE_PHRASES
    generic_keywords: frozenset[str] = _DEFAULT_GENERIC_KEYWORDS
    overlap_denylist: frozenset[str] = _DEFAULT_OVERLAP_DENYLIST

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> "KeywordTables":
        """Build tables from a mapping; missing sections keep their defaults.

        Each section may be a list (replaces the default) or a mapping with
        ``extend`` and/or ``remove`` lists applied to the default.
        """

        data = data or {}
        defaults = cls()
        sections: dict[str, frozenset[str]] = {}
        for name in ("profanity", "offensive_phrases", "generic_keywords", "overlap_denylist"):
            default_value: frozenset[str] = getattr(defaults, name)
            raw = data.get(name)
            if raw is None:
                sections[name] = default_value
            elif isinstance(raw, dict):
                extended = default_value | _normalize_words(raw.get("extend") or [])
                sections[name] = extended - _normalize_words(raw.get("remove") or [])
            elif isinstance(raw, (list, tuple, set, frozenset)):
                sections[name] = _normalize_words(raw)
            else:
                msg = f"Keyword table section '{name}' must be a list or a mapping."
                raise ValueError(msg)
        return cls(**sections)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "KeywordTables":
        """Load keyword tables from a YAML document."""

        resolved = Path(path).expanduser()
        with resolved.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            msg = f"Keyword tables file '{resolved}' must contain a mapping."
            raise ValueError(msg)
        return cls.from_mapping(data)

    def is_blocked(self, keyword: str) -> bool:
        """Return True when a normalized keyword must never be emitted."""

        if keyword in self.generic_keywords:
            return True
        if any(token in self.profanity for token in keyword.split()):
            return True
        return any(phrase in keyword for phrase in self.offensive_phrases)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Thresholds and policies used by the segmentation engine."""

    similarity_threshold: float = _DEFAULT_SIMILARITY_THRESHOLD
    keyword_weight: float = _DEFAULT_KEYWORD_WEIGHT
    staleness_window: timedelta = timedelta(seconds=_DEFAULT_STALENESS_SECONDS)
    min_embedding_chars: int = _DEFAULT_MIN_EMBEDDING_CHARS
    skip_symbol_only: bool = True
    merge_participant_ratio: float = _DEFAULT_MERGE_PARTICIPANT_RATIO
    merge_keyword_ratio: float = _DEFAULT_MERGE_KEYWORD_RATIO
    merge_similarity_threshold: float = _DEFAULT_MERGE_SIMILARITY_THRESHOLD
    max_merge_passes: int = _DEFAULT_MERGE_MAX_PASSES
    max_observed_skipped: int = _DEFAULT_MAX_OBSERVED_SKIPPED
    enrichment_batch_size: int = _DEFAULT_EMBEDDING_BATCH_SIZE
    enrichment_concurrency: int = _DEFAULT_EMBEDDING_CONCURRENCY
    tables: KeywordTables = field(default_factory=KeywordTables)

    def __post_init__(self) -> None:
        if self.max_merge_passes < 0:
            raise ValueError("max_merge_passes must not be negative")
        if self.max_observed_skipped < 0:
            raise ValueError("max_observed_skipped must not be negative")
        if self.staleness_window < timedelta(0):
            raise ValueError("staleness_window must not be negative")
        if self.enrichment_batch_size <= 0 or self.enrichment_concurrency <= 0:
            raise ValueError("enrichment batch size and concurrency must be positive")


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    embedding_model: str = _DEFAULT_EMBEDDING_MODEL
    openai_api_key: str | None = None
    ollama_base_url: str = _DEFAULT_OLLAMA_URL
    vllm_base_url: str = _DEFAULT_VLLM_URL
    vllm_embedding_base_url: str | None = None
    vllm_api_key: str | None = None
    embedding_batch_size: int = _DEFAULT_EMBEDDING_BATCH_SIZE
    embedding_concurrency: int = _DEFAULT_EMBEDDING_CONCURRENCY
    embedding_timeout: float = _DEFAULT_EMBEDDING_TIMEOUT
    embedding_max_retries: int = _DEFAULT_EMBEDDING_MAX_RETRIES
    embedding_retry_base_delay: float = _DEFAULT_EMBEDDING_RETRY_BASE_DELAY
    keyword_backend: str = _DEFAULT_KEYWORD_BACKEND
    keyword_model: str = _DEFAULT_KEYWORD_MODEL
    keyword_timeout: float = _DEFAULT_KEYWORD_TIMEOUT
    keyword_max_results: int = _DEFAULT_KEYWORD_MAX_RESULTS
    keyword_tables_path: str | None = None
    similarity_threshold: float = _DEFAULT_SIMILARITY_THRESHOLD
    keyword_weight: float = _DEFAULT_KEYWORD_WEIGHT
    staleness_window_seconds: float = _DEFAULT_STALENESS_SECONDS
    min_embedding_chars: int = _DEFAULT_MIN_EMBEDDING_CHARS
    skip_symbol_only: bool = True
    merge_participant_ratio: float = _DEFAULT_MERGE_PARTICIPANT_RATIO
    merge_keyword_ratio: float = _DEFAULT_MERGE_KEYWORD_RATIO
    merge_similarity_threshold: float = _DEFAULT_MERGE_SIMILARITY_THRESHOLD
    merge_max_passes: int = _DEFAULT_MERGE_MAX_PASSES
    max_observed_skipped: int = _DEFAULT_MAX_OBSERVED_SKIPPED
    observability_metrics_enabled: bool = True
    observability_namespace: str = "threadline"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        return cls(
            embedding_model=os.getenv("EMBEDDING_MODEL", _DEFAULT_EMBEDDING_MODEL),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", _DEFAULT_OLLAMA_URL),
            vllm_base_url=os.getenv("VLLM_BASE_URL", _DEFAULT_VLLM_URL),
            vllm_embedding_base_url=os.getenv("VLLM_EMBEDDING_BASE_URL"),
            vllm_api_key=os.getenv("VLLM_API_KEY"),
            embedding_batch_size=max(1, _env_int("EMBEDDING_BATCH_SIZE", _DEFAULT_EMBEDDING_BATCH_SIZE)),
            embedding_concurrency=max(1, _env_int("EMBEDDING_CONCURRENCY", _DEFAULT_EMBEDDING_CONCURRENCY)),
            embedding_timeout=_env_float("EMBEDDING_TIMEOUT", _DEFAULT_EMBEDDING_TIMEOUT),
            embedding_max_retries=max(0, _env_int("EMBEDDING_MAX_RETRIES", _DEFAULT_EMBEDDING_MAX_RETRIES)),
            embedding_retry_base_delay=_env_float(
                "EMBEDDING_RETRY_BASE_DELAY", _DEFAULT_EMBEDDING_RETRY_BASE_DELAY
            ),
            keyword_backend=os.getenv("KEYWORD_BACKEND", _DEFAULT_KEYWORD_BACKEND),
            keyword_model=os.getenv("KEYWORD_MODEL", _DEFAULT_KEYWORD_MODEL),
            keyword_timeout=_env_float("KEYWORD_TIMEOUT", _DEFAULT_KEYWORD_TIMEOUT),
            keyword_max_results=max(1, _env_int("KEYWORD_MAX_RESULTS", _DEFAULT_KEYWORD_MAX_RESULTS)),
            keyword_tables_path=os.getenv("KEYWORD_TABLES_PATH"),
            similarity_threshold=_env_float("SIMILARITY_THRESHOLD", _DEFAULT_SIMILARITY_THRESHOLD),
            keyword_weight=_env_float("KEYWORD_WEIGHT", _DEFAULT_KEYWORD_WEIGHT),
            staleness_window_seconds=max(
                0.0, _env_float("STALENESS_WINDOW_SECONDS", _DEFAULT_STALENESS_SECONDS)
            ),
            min_embedding_chars=max(0, _env_int("MIN_EMBEDDING_CHARS", _DEFAULT_MIN_EMBEDDING_CHARS)),
            skip_symbol_only=_env_bool("SKIP_SYMBOL_ONLY", True),
            merge_participant_ratio=_env_float(
                "MERGE_PARTICIPANT_RATIO", _DEFAULT_MERGE_PARTICIPANT_RATIO
            ),
            merge_keyword_ratio=_env_float("MERGE_KEYWORD_RATIO", _DEFAULT_MERGE_KEYWORD_RATIO),
            merge_similarity_threshold=_env_float(
                "MERGE_SIMILARITY_THRESHOLD", _DEFAULT_MERGE_SIMILARITY_THRESHOLD
            ),
            merge_max_passes=max(0, _env_int("MERGE_MAX_PASSES", _DEFAULT_MERGE_MAX_PASSES)),
            max_observed_skipped=max(
                0, _env_int("MAX_OBSERVED_SKIPPED", _DEFAULT_MAX_OBSERVED_SKIPPED)
            ),
            observability_metrics_enabled=_env_bool("OBSERVABILITY_METRICS_ENABLED", True),
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "threadline"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def is_openai_backend(self) -> bool:
        """Return True when the configured embedding backend is OpenAI."""

        return self.embedding_model.strip().lower() in _OPENAI_EMBEDDING_MODELS

    @property
    def is_ollama_embedding_backend(self) -> bool:
        """Return True when embeddings should be generated via an Ollama-hosted model."""

        return self.embedding_model.strip().lower().startswith("ollama:")

    @property
    def is_vllm_embedding_backend(self) -> bool:
        """Return True when embeddings should be generated via a vLLM-hosted model."""

        return self.embedding_model.strip().lower().startswith("vllm:")

    @property
    def is_huggingface_backend(self) -> bool:
        return (
            not self.is_openai_backend
            and not self.is_ollama_embedding_backend
            and not self.is_vllm_embedding_backend
        )

    @property
    def ollama_embedding_endpoint(self) -> tuple[str, str]:
        """Return the Ollama embedding model and resolved base URL."""

        if not self.is_ollama_embedding_backend:
            msg = "Ollama embedding endpoint requested but EMBEDDING_MODEL is not an Ollama model."
            raise ValueError(msg)
        _, _, name = self.embedding_model.partition(":")
        model, base = _split_remote_model_spec(name)
        if not model:
            msg = "EMBEDDING_MODEL must include an Ollama model identifier."
            raise ValueError(msg)
        base_url = _strip_api_suffix(base or self.ollama_base_url or _DEFAULT_OLLAMA_URL)
        if not base_url:
            raise ValueError("Resolved Ollama embedding base URL is empty.")
        return model, base_url

    @property
    def vllm_embedding_endpoint(self) -> tuple[str, str]:
        """Return the vLLM embedding model and resolved base URL."""

        if not self.is_vllm_embedding_backend:
            msg = "vLLM embedding endpoint requested but EMBEDDING_MODEL is not a vLLM model."
            raise ValueError(msg)
        _, _, name = self.embedding_model.partition(":")
        model, parsed_base = _split_remote_model_spec(name)
        if not model:
            msg = (
                "EMBEDDING_MODEL must include the vLLM model identifier "
                "(e.g. 'vllm:bge-small-en'). Set VLLM_EMBEDDING_BASE_URL to "
                "override the endpoint host when needed."
            )
            raise ValueError(msg)
        override = (self.vllm_embedding_base_url or "").strip()
        base_url = _strip_api_suffix(override or parsed_base or self.vllm_base_url or _DEFAULT_VLLM_URL)
        if not base_url:
            raise ValueError("Resolved vLLM embedding base URL is empty.")
        return model, base_url

    @property
    def normalized_keyword_backend(self) -> str:
        backend = self.keyword_backend.strip().lower()
        if backend not in _KEYWORD_BACKENDS:
            allowed = ", ".join(sorted(_KEYWORD_BACKENDS))
            raise ValueError(f"KEYWORD_BACKEND must be one of: {allowed}")
        return backend

    def keyword_tables(self) -> KeywordTables:
        """Return the configured keyword tables, loading the YAML file when set."""

        if self.keyword_tables_path:
            return KeywordTables.from_yaml(self.keyword_tables_path)
        return KeywordTables()

    def engine_config(self, tables: KeywordTables | None = None) -> EngineConfig:
        """Build the engine configuration from these settings."""

        return EngineConfig(
            similarity_threshold=self.similarity_threshold,
            keyword_weight=self.keyword_weight,
            staleness_window=timedelta(seconds=self.staleness_window_seconds),
            min_embedding_chars=self.min_embedding_chars,
            skip_symbol_only=self.skip_symbol_only,
            merge_participant_ratio=self.merge_participant_ratio,
            merge_keyword_ratio=self.merge_keyword_ratio,
            merge_similarity_threshold=self.merge_similarity_threshold,
            max_merge_passes=self.merge_max_passes,
            max_observed_skipped=self.max_observed_skipped,
            enrichment_batch_size=self.embedding_batch_size,
            enrichment_concurrency=self.embedding_concurrency,
            tables=tables if tables is not None else self.keyword_tables(),
        )

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )
