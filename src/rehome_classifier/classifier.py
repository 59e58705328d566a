"""Public entry points for classifying donated-item photos.

Architecture:
    classify_many (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> classify_image
    classify_image -> preprocess -> InferenceEngine (serialized forward) -> rank

`classify_image` never raises for pipeline failures: it returns a
`ClassifyOutcome` holding either a result or a single `ClassificationError`.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass

import httpx

from .config import Settings
from .errors import ClassificationError, PipelineError
from .inference.lifecycle import ModelLifecycle
from .inference.ranker import rank
from .inference.types import ClassificationResult, ClassifyOutcome
from .labels import REUSABILITY, missing_from_table
from .logging import get_logger, log_event
from .preprocess import ImageSource, PreprocessOptions, preprocess
from .request_context import request_id_var


@dataclass(frozen=True)
class BatchItem:
    id: str
    source: ImageSource


class Classifier:
    def __init__(
        self,
        settings: Settings,
        lifecycle: ModelLifecycle | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._lifecycle = lifecycle if lifecycle is not None else ModelLifecycle(settings)
        self._http = http_client
        cfg = settings.classifier
        self._opts = PreprocessOptions(
            target_size=cfg.input_size,
            max_bytes=cfg.max_image_mb * 1024 * 1024,
            max_side_px=cfg.max_image_side_px,
            fetch_timeout_seconds=float(cfg.fetch_timeout_seconds),
            allowed_origins=cfg.allowed_origins,
        )
        self._max_concurrent = cfg.max_concurrent
        self._batch_pool = ThreadPoolExecutor(
            max_workers=cfg.max_concurrent, thread_name_prefix="classify"
        )
        self._counter_lock = threading.Lock()
        self._in_flight = 0
        self._peak_in_flight = 0
        self._logger = get_logger()
        drift = missing_from_table(cfg.labels, REUSABILITY)
        if drift:
            self._logger.warning("reusability_table_drift labels=%s", ",".join(drift))

    @property
    def lifecycle(self) -> ModelLifecycle:
        return self._lifecycle

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def in_flight(self) -> int:
        with self._counter_lock:
            return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        """Highest number of concurrently running pipelines observed so far."""
        with self._counter_lock:
            return self._peak_in_flight

    def classify_image(self, source: ImageSource, correlation_id: str | None = None) -> ClassifyOutcome:
        cid = correlation_id if correlation_id is not None else uuid.uuid4().hex
        token = request_id_var.set(cid)
        t0 = time.perf_counter()
        try:
            result = self._run_pipeline(source)
        except PipelineError as err:
            log_event(
                "classify_failed",
                {
                    "kind": err.kind.value,
                    "correlation_id": cid,
                    "latency_ms": int((time.perf_counter() - t0) * 1000.0),
                },
            )
            return ClassifyOutcome(result=None, error=ClassificationError(err), correlation_id=cid)
        finally:
            request_id_var.reset(token)
        log_event(
            "classify_finished",
            {
                "category": result.top_label,
                "confidence": result.top_confidence,
                "reusable": result.is_reusable,
                "model_id": result.model_id,
                "correlation_id": cid,
                "latency_ms": int((time.perf_counter() - t0) * 1000.0),
            },
        )
        return ClassifyOutcome(result=result, error=None, correlation_id=cid)

    async def classify_many(self, items: Sequence[BatchItem]) -> list[ClassifyOutcome]:
        """Classify a batch with at most `max_concurrent` pipelines in flight.

        Outcomes come back in submission order; each carries its item's id as
        the correlation id.
        """
        sem = asyncio.Semaphore(self._max_concurrent)
        loop = asyncio.get_running_loop()

        async def _one(item: BatchItem) -> ClassifyOutcome:
            async with sem:
                return await loop.run_in_executor(self._batch_pool, self._classify_tracked, item)

        outcomes = await asyncio.gather(*(_one(i) for i in items))
        log_event(
            "batch_finished",
            {"count": len(outcomes), "ok": all(o.ok for o in outcomes)},
        )
        return list(outcomes)

    def close(self) -> None:
        self._batch_pool.shutdown(wait=True, cancel_futures=True)
        self._lifecycle.shutdown()

    def _classify_tracked(self, item: BatchItem) -> ClassifyOutcome:
        with self._track_in_flight():
            return self.classify_image(item.source, correlation_id=item.id)

    @contextmanager
    def _track_in_flight(self) -> Iterator[None]:
        with self._counter_lock:
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        try:
            yield
        finally:
            with self._counter_lock:
                self._in_flight -= 1

    def _run_pipeline(self, source: ImageSource) -> ClassificationResult:
        handle = self._lifecycle.ensure_loaded()
        cfg = self._settings.classifier
        with self._lifecycle.request_scope() as scope:
            tensor = scope.track(preprocess(source, self._opts, self._http).tensor)
            dist = self._lifecycle.engine.predict(
                tensor, timeout=float(cfg.predict_timeout_seconds)
            )
            del tensor
        return rank(
            dist,
            handle.labels,
            REUSABILITY,
            model_id=handle.model_id,
            uncertain_threshold=cfg.uncertain_threshold,
        )
