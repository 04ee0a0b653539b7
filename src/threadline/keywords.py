"""Keyword extraction for chat messages."""

from __future__ import annotations

import json
import logging
import os
import re
from collections import Counter
from typing import Iterable

import httpx
from openai import OpenAI

from .config import KeywordTables, Settings

# Basic English and chat stop words for the local backend.
_STOPWORDS = {
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "but",
    "by",
    "can",
    "do",
    "for",
    "from",
    "has",
    "have",
    "i",
    "im",
    "in",
    "is",
    "it",
    "its",
    "me",
    "my",
    "not",
    "of",
    "on",
    "or",
    "so",
    "that",
    "the",
    "this",
    "to",
    "was",
    "we",
    "were",
    "what",
    "with",
    "you",
    "your",
    "http",
    "https",
    "www",
    "com",
    "png",
    "jpg",
    "jpeg",
    "gif",
}

_WORD_RE = re.compile(r"[A-Za-z][A-Za-z0-9'\-]*")
_DISALLOWED_RE = re.compile(r"[^a-z0-9 ]")
_WHITESPACE_RE = re.compile(r"\s+")
_FENCED_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_ARRAY_RE = re.compile(r"\[.*?\]", re.DOTALL)
_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")

_MIN_KEYWORD_LENGTH = 2
_MAX_KEYWORD_LENGTH = 50

_SYSTEM_PROMPT = (
    "You extract topical keywords from short chat messages. "
    "Reply with a JSON array of lowercase keywords inside a ```json code block and nothing else."
)

logger = logging.getLogger(__name__)
_configured_level = os.getenv("KEYWORD_LOG_LEVEL")
if _configured_level:
    level_value = getattr(logging, _configured_level.upper(), None)
    if isinstance(level_value, int):
        logger.setLevel(level_value)


def normalize_keywords(
    raw_keywords: Iterable[str],
    tables: KeywordTables | None = None,
    *,
    limit: int | None = None,
) -> list[str]:
    """Lower-case, strip to ``[a-z0-9 ]``, filter blocked words and dedupe in order."""

    tables = tables or KeywordTables()
    results: list[str] = []
    for raw in raw_keywords:
        if raw is None:
            continue
        cleaned = _DISALLOWED_RE.sub("", str(raw).lower())
        cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
        if not (_MIN_KEYWORD_LENGTH <= len(cleaned) <= _MAX_KEYWORD_LENGTH):
            continue
        if tables.is_blocked(cleaned):
            continue
        if cleaned in results:
            continue
        results.append(cleaned)
        if limit is not None and len(results) >= limit:
            break
    return results


def parse_keyword_response(raw_response: str) -> list[str]:
    """Pull a keyword list out of a model reply.

    Tries a fenced ```json block, then the first bare JSON array, then falls
    back to one keyword per non-empty line.
    """

    text = (raw_response or "").strip()
    if not text:
        return []

    candidates: list[str] = []
    fenced = _FENCED_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    candidates.append(text)
    bare = _ARRAY_RE.search(text)
    if bare:
        candidates.append(bare.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            data = data.get("keywords")
        if isinstance(data, list):
            return [str(item) for item in data if isinstance(item, (str, int, float))]

    lines: list[str] = []
    for line in text.splitlines():
        stripped = line.strip().strip("`")
        if not stripped or stripped.lower() in {"json", "[", "]"}:
            continue
        stripped = _LIST_MARKER_RE.sub("", stripped).strip().strip(",").strip('"\'')
        if stripped:
            lines.append(stripped)
    return lines


def extract_frequent_terms(text: str, *, limit: int = 5, min_length: int = 3) -> list[str]:
    """Rank non-stopword tokens by frequency, breaking ties alphabetically."""

    counter: Counter[str] = Counter()
    for match in _WORD_RE.finditer(text or ""):
        token = match.group().lower().strip("'-")
        if len(token) < min_length or token in _STOPWORDS:
            continue
        if token.isdigit():
            continue
        counter[token] += 1
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [term for term, _ in ranked[:limit]]


class KeywordExtractor:
    """Return up to ``max_results`` normalized keywords for a message text.

    The ``local`` backend ranks tokens by frequency without any network call.
    ``openai``, ``ollama`` and ``vllm`` ask the configured chat model. Any
    failure is logged and degrades to an empty list.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        tables: KeywordTables | None = None,
    ) -> None:
        self._settings = settings
        self._backend = settings.normalized_keyword_backend
        self._tables = tables if tables is not None else settings.keyword_tables()
        self._max_results = max(1, settings.keyword_max_results)
        self._model = settings.keyword_model
        self._timeout = settings.keyword_timeout
        self._openai_client: OpenAI | None = None
        self._base_url: str | None = None

        if self._backend == "openai":
            if not settings.openai_api_key:
                raise ValueError("OPENAI_API_KEY is required when KEYWORD_BACKEND=openai")
            self._openai_client = OpenAI(api_key=settings.openai_api_key, timeout=self._timeout)
        elif self._backend == "ollama":
            self._base_url = settings.ollama_base_url.rstrip("/")
        elif self._backend == "vllm":
            base = settings.vllm_base_url.rstrip("/")
            self._base_url = base[: -len("/v1")] if base.endswith("/v1") else base
        logger.info("keyword.backend_ready backend=%s model=%s", self._backend, self._model)

    @classmethod
    def from_env(cls) -> "KeywordExtractor":
        return cls(Settings.from_env())

    @property
    def backend(self) -> str:
        return self._backend

    def extract(self, text: str) -> list[str]:
        if not text or not text.strip():
            return []
        try:
            if self._backend == "local":
                raw = extract_frequent_terms(text, limit=self._max_results * 2)
            else:
                raw = parse_keyword_response(self._invoke_backend(text))
        except Exception as exc:
            logger.warning("keyword.extract_failed backend=%s error=%s", self._backend, exc)
            return []
        keywords = normalize_keywords(raw, self._tables, limit=self._max_results)
        logger.debug("keyword.extracted backend=%s count=%s", self._backend, len(keywords))
        return keywords

    def _user_prompt(self, text: str) -> str:
        return (
            f"Extract the top {self._max_results} most relevant keywords from this chat message. "
            "Skip greetings, filler words and usernames.\n\n"
            f"Message:\n{text}"
        )

    def _invoke_backend(self, text: str) -> str:
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": self._user_prompt(text)},
        ]

        if self._backend == "openai" and self._openai_client is not None:
            response = self._openai_client.responses.create(model=self._model, input=messages)
            output_text = getattr(response, "output_text", None)
            if output_text:
                return str(output_text).strip()
            raise RuntimeError("OpenAI response did not include text output")

        if self._backend == "ollama" and self._base_url:
            response = httpx.post(
                f"{self._base_url}/api/chat",
                json={"model": self._model, "messages": messages, "stream": False},
                timeout=self._timeout,
            )
            response.raise_for_status()
            data = response.json()
            content = (data.get("message") or {}).get("content") or data.get("response")
            if not content:
                raise RuntimeError("Ollama response did not include content")
            return str(content).strip()

        if self._backend == "vllm" and self._base_url:
            headers = {"Content-Type": "application/json"}
            if self._settings.vllm_api_key:
                headers["Authorization"] = f"Bearer {self._settings.vllm_api_key}"
            response = httpx.post(
                f"{self._base_url}/v1/chat/completions",
                json={"model": self._model, "messages": messages, "stream": False},
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
            for choice in response.json().get("choices") or []:
                content = (choice.get("message") or {}).get("content")
                if content:
                    return str(content).strip()
            raise RuntimeError("vLLM response did not include content")

        raise RuntimeError("Keyword backend is not correctly configured")


__all__ = [
    "KeywordExtractor",
    "extract_frequent_terms",
    "normalize_keywords",
    "parse_keyword_response",
]
