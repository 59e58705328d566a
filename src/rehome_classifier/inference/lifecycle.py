"""Process-wide ownership of the model handle.

`ModelLifecycle` loads the handle once (lazily or at startup), hands it to the
inference engine, and releases it on `dispose()`. Per-request tensors are
tracked through `request_scope()` so they are dropped on every exit path,
including timeouts and failures.
"""

from __future__ import annotations

import gc
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager

import torch
from torch import Tensor

from ..config import Settings
from ..errors import LoadError, LoadErrorKind
from ..logging import get_logger, log_event
from ..monitoring import log_memory
from ..preprocess import preprocess_signature
from .engine import InferenceEngine
from .manifest import ModelManifest
from .model import HeadConfig, ModelHandle, load, load_head_weights

Loader = Callable[[], ModelHandle]


def load_from_settings(settings: Settings) -> ModelHandle:
    """Build the configured handle, then apply trained head weights when present.

    `manifest.json` and `model.pt` come as a pair; either one alone is an error.
    """
    cfg = settings.classifier
    model_dir = cfg.model_dir / cfg.active_model
    manifest_path = model_dir / "manifest.json"
    weights_path = model_dir / "model.pt"
    has_manifest = manifest_path.exists()
    has_weights = weights_path.exists()
    if has_manifest != has_weights:
        present = manifest_path if has_manifest else weights_path
        raise LoadError(
            LoadErrorKind.incompatible_shape,
            f"{present.name} found without its pair in {model_dir.as_posix()}",
        )
    manifest: ModelManifest | None = None
    if has_manifest:
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError, KeyError):
            raise LoadError(LoadErrorKind.incompatible_shape, "invalid model manifest") from None
        _check_manifest(manifest, settings)

    handle = load(
        cfg.backbone_source,
        cfg.labels,
        HeadConfig(
            n_classes=len(cfg.labels),
            hidden_units=cfg.hidden_units,
            dropout=cfg.dropout,
            learning_rate=cfg.learning_rate,
        ),
        backbone=cfg.backbone,
        cut_layer=cfg.cut_layer,
        input_size=cfg.input_size,
        model_id=manifest.model_id if manifest is not None else cfg.active_model,
        seed=cfg.seed,
    )
    if manifest is not None:
        load_head_weights(handle, weights_path)
        get_logger().info("head_weights_loaded model_id=%s", manifest.model_id)
    else:
        get_logger().warning("head_weights_absent model_dir=%s", model_dir.as_posix())
    return handle


def _check_manifest(man: ModelManifest, settings: Settings) -> None:
    cfg = settings.classifier
    if man.preprocess_hash != preprocess_signature():
        raise LoadError(LoadErrorKind.incompatible_shape, "preprocess signature mismatch")
    if man.labels != tuple(cfg.labels):
        raise LoadError(LoadErrorKind.incompatible_shape, "manifest labels differ from config")
    if man.backbone != cfg.backbone or man.input_size != cfg.input_size:
        raise LoadError(LoadErrorKind.incompatible_shape, "manifest backbone differs from config")
    if man.hidden_units != cfg.hidden_units:
        raise LoadError(LoadErrorKind.incompatible_shape, "manifest head differs from config")
    if man.cut_layer and cfg.cut_layer and man.cut_layer != cfg.cut_layer:
        raise LoadError(LoadErrorKind.incompatible_shape, "manifest cut layer differs from config")


class TensorScope:
    """Tensors owned by one classification request."""

    def __init__(self, owner: ModelLifecycle) -> None:
        self._owner = owner
        self._tensors: list[Tensor] = []

    def track(self, t: Tensor) -> Tensor:
        self._tensors.append(t)
        self._owner._adjust_live(1)
        return t

    def release(self) -> int:
        n = len(self._tensors)
        self._tensors.clear()
        self._owner._adjust_live(-n)
        return n


class ModelLifecycle:
    def __init__(
        self,
        settings: Settings,
        loader: Loader | None = None,
        engine: InferenceEngine | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._loader: Loader = loader if loader is not None else lambda: load_from_settings(settings)
        self._engine = engine if engine is not None else InferenceEngine(settings)
        self._sleep = sleep
        self._load_lock = threading.Lock()
        self._live_lock = threading.Lock()
        self._live_tensors = 0
        self._handle: ModelHandle | None = None
        # One loader thread; a timed-out load stays pending and is awaited again
        self._load_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-load")
        self._pending: Future[ModelHandle] | None = None
        self._logger = get_logger()

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def handle(self) -> ModelHandle | None:
        return self._handle

    @property
    def ready(self) -> bool:
        return self._handle is not None

    @property
    def live_tensors(self) -> int:
        with self._live_lock:
            return self._live_tensors

    def ensure_loaded(self) -> ModelHandle:
        """Return the cached handle, loading it on first use.

        Only `network_unavailable` failures are retried, with exponential backoff.
        """
        h = self._handle
        if h is not None:
            return h
        with self._load_lock:
            # Double-check: another thread may have loaded while we waited.
            if self._handle is not None:
                return self._handle
            t0 = time.perf_counter()
            handle = self._load_with_retry()
            self._handle = handle
            self._engine.attach(handle)
            log_event(
                "model_loaded",
                {
                    "model_id": handle.model_id,
                    "latency_ms": int((time.perf_counter() - t0) * 1000.0),
                },
            )
            log_memory("model_loaded")
            return handle

    def dispose(self) -> None:
        with self._load_lock:
            old = self._engine.detach()
            self._handle = None
        if old is None:
            return
        model_id = old.model_id
        del old
        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
        log_event("model_disposed", {"model_id": model_id})
        log_memory("model_disposed")

    def shutdown(self) -> None:
        self.dispose()
        self._engine.shutdown()
        self._load_pool.shutdown(wait=False, cancel_futures=True)

    @contextmanager
    def request_scope(self) -> Iterator[TensorScope]:
        scope = TensorScope(self)
        try:
            yield scope
        finally:
            scope.release()

    def _adjust_live(self, delta: int) -> None:
        with self._live_lock:
            self._live_tensors += delta

    def _load_with_retry(self) -> ModelHandle:
        cfg = self._settings.classifier
        attempts = 1 + max(0, int(cfg.load_retries))
        for attempt in range(1, attempts + 1):
            try:
                return self._load_once()
            except LoadError as err:
                if not err.retryable or attempt >= attempts:
                    log_event("model_load_failed", {"kind": err.kind.value, "attempt": attempt})
                    raise
                delay = float(cfg.load_backoff_seconds) * (2 ** (attempt - 1))
                self._logger.warning(
                    "model_load_retry attempt=%d delay_s=%.2f error=%s", attempt, delay, err.kind.value
                )
                self._sleep(delay)
        raise RuntimeError("unreachable: load attempts exhausted")

    def _load_once(self) -> ModelHandle:
        """Wait for the single in-flight load, starting one only when none is pending.

        A load that outlives the timeout keeps running on the loader thread; the
        next attempt waits on that same future instead of starting another build.
        """
        timeout = float(self._settings.classifier.load_timeout_seconds)
        fut = self._pending
        if fut is None:
            fut = self._load_pool.submit(self._loader)
            self._pending = fut
        try:
            handle = fut.result(timeout=timeout if timeout > 0 else None)
        except FutureTimeout:
            raise LoadError(
                LoadErrorKind.network_unavailable, f"model load exceeded {timeout:.0f}s"
            ) from None
        except Exception:
            self._pending = None
            raise
        self._pending = None
        return handle
