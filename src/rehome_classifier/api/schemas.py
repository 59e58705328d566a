from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class PredictionItem:
    category: str
    confidence: float


@pydantic_dataclass(frozen=True)
class ClassifyResponse:
    category: str
    confidence: float
    isReusable: bool
    allPredictions: list[PredictionItem]
    modelId: str
    reasoning: str | None = None
    latency_ms: int = 0


@pydantic_dataclass(frozen=True)
class ClassifyImageRequest:
    imageBase64: str | None = None
    imageUrl: str | None = None


@pydantic_dataclass(frozen=True)
class BatchRequestItem:
    id: str
    imageBase64: str | None = None
    imageUrl: str | None = None


@pydantic_dataclass(frozen=True)
class BatchRequest:
    items: list[BatchRequestItem]
