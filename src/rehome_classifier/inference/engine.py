from __future__ import annotations

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import AbstractContextManager, nullcontext

import torch
from torch import Tensor

from ..config import Settings
from ..errors import InferError, InferErrorKind
from ..logging import get_logger
from .model import ModelHandle
from .types import RawDistribution


def infer(handle: ModelHandle | None, tensor: Tensor) -> RawDistribution:
    """Forward one preprocessed image through the composed graph in eval mode.

    Returns one probability per label, in label-set order.
    """
    if handle is None:
        raise InferError(InferErrorKind.model_not_loaded, "Model not loaded")
    x = _as_batched(tensor)
    if tuple(x.shape) != handle.input_shape:
        raise InferError(
            InferErrorKind.shape_mismatch,
            f"expected input {handle.input_shape}, got {tuple(x.shape)}",
        )
    model = handle.model
    n = len(handle.labels)
    model.eval()
    try:
        with torch.inference_mode():
            probs = model(x.to(dtype=torch.float32))
            if probs.ndim != 2 or tuple(probs.shape) != (1, n):
                raise InferError(
                    InferErrorKind.runtime_fault,
                    f"model produced shape {tuple(probs.shape)}, expected (1, {n})",
                )
            if not bool(torch.isfinite(probs).all()):
                raise InferError(InferErrorKind.runtime_fault, "non-finite model output")
            values = [float(v) for v in probs[0].tolist()]
            del probs
    except InferError:
        raise
    except RuntimeError as exc:
        raise InferError(InferErrorKind.runtime_fault, str(exc)) from None
    return tuple(values)


class InferenceEngine:
    """Bounded thread-pool inference over a single shared model handle."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._pool = _make_pool(settings)
        self._handle_lock = threading.RLock()
        self._forward_lock = threading.Lock()
        self._handle: ModelHandle | None = None

    @property
    def ready(self) -> bool:
        return self._handle is not None

    @property
    def model_id(self) -> str | None:
        h = self._handle
        return h.model_id if h is not None else None

    @property
    def handle(self) -> ModelHandle | None:
        return self._handle

    def attach(self, handle: ModelHandle) -> None:
        with self._handle_lock:
            handle.model.eval()
            self._handle = handle

    def detach(self) -> ModelHandle | None:
        with self._handle_lock:
            old = self._handle
            self._handle = None
            return old

    def submit_predict(self, preprocessed: Tensor) -> Future[RawDistribution]:
        return self._pool.submit(self._predict_impl, preprocessed)

    def predict(self, preprocessed: Tensor, timeout: float | None = None) -> RawDistribution:
        fut = self.submit_predict(preprocessed)
        try:
            return fut.result(timeout=timeout)
        except FutureTimeout:
            fut.cancel()
            self._logger.info("predict_timeout timeout_s=%s", timeout)
            raise InferError(InferErrorKind.timeout, "Prediction timed out") from None

    def _predict_impl(self, preprocessed: Tensor) -> RawDistribution:
        handle = self._handle
        with self._forward_guard():
            return infer(handle, preprocessed)

    def _forward_guard(self) -> AbstractContextManager[object]:
        if self._settings.classifier.serialize_inference:
            return self._forward_lock
        return nullcontext()

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True, cancel_futures=True)


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        cpu_count = os.cpu_count() or 1
        size = min(8, cpu_count)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")


def _as_batched(x: Tensor) -> Tensor:
    # Accept a bare 3xSxS image and add the batch dimension
    return x.unsqueeze(0) if x.ndim == 3 else x
