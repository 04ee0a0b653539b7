"""Metrics instrumentation: structured log lines with optional Prometheus export."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Iterator

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")

_PROM_KINDS: dict[str, tuple[type, str]] = {
    "counter": (Counter, "counter"),
    "gauge": (Gauge, "gauge"),
    "histogram": (Histogram, "duration"),
}


class MetricsRecorder:
    """Emit ``namespace.metric k=v`` log lines and (optionally) Prometheus samples."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "threadline",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "threadline"
        self._logger = logger or logging.getLogger("threadline.metrics")
        self._prometheus_enabled = prometheus_enabled
        if prometheus_enabled and registry is None:
            registry = CollectorRegistry()
        self._registry = registry if prometheus_enabled else None
        self._collectors: dict[tuple[str, str, tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._registry is not None

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        """Increment a counter metric."""

        if not self._enabled:
            return
        value = int(value)
        labels = _clean(tags)
        self._log(metric, {"value": value}, labels)
        self._observe("counter", metric, labels, lambda child: child.inc(float(max(value, 0))))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        if not self._enabled:
            return
        labels = _clean(tags)
        self._log(metric, {"value": value}, labels)
        self._observe("gauge", metric, labels, lambda child: child.set(float(value)))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Record a duration; logs carry milliseconds, Prometheus carries seconds."""

        if not self._enabled:
            return
        seconds = max(duration_seconds, 0.0)
        labels = _clean(tags)
        self._log(metric, {"duration_ms": round(seconds * 1000.0, 4)}, labels)
        self._observe("histogram", metric, labels, lambda child: child.observe(seconds))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any) -> Iterator[None]:
        """Record the wall time spent inside the ``with`` block."""

        if not self._enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def _log(self, metric: str, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        parts = [f"{key}={_stringify(val)}" for key, val in sorted(fields.items())]
        parts.extend(f"{key}={_stringify(val)}" for key, val in sorted(tags.items()))
        message = f"{self._namespace}.{metric}"
        if parts:
            message = f"{message} {' '.join(parts)}"
        self._logger.info(message)

    def _observe(self, kind: str, metric: str, tags: dict[str, Any], apply) -> None:
        if not self.prometheus_enabled:
            return
        keys = tuple(sorted(tags))
        label_names = tuple(_PROM_NAME_RE.sub("_", key) or "label" for key in keys)
        cache_key = (kind, metric, label_names)
        collector = self._collectors.get(cache_key)
        if collector is None:
            factory, suffix = _PROM_KINDS[kind]
            collector = factory(
                self._prom_name(metric),
                f"{metric} {suffix}",
                labelnames=list(label_names),
                registry=self._registry,
            )
            self._collectors[cache_key] = collector
        if label_names:
            values = {name: _stringify(tags[key]) for name, key in zip(label_names, keys)}
            apply(collector.labels(**values))
        else:
            apply(collector)

    def _prom_name(self, metric: str) -> str:
        namespace = _PROM_NAME_RE.sub("_", self._namespace)
        return f"{namespace}_{_PROM_NAME_RE.sub('_', metric)}".strip("_")


def _clean(tags: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in tags.items() if value is not None}


def _stringify(value: Any) -> str:
    if isinstance(value, float):
        return f"{int(value)}" if value.is_integer() else f"{value:.4f}"
    return str(value)
