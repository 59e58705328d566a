from __future__ import annotations

from dataclasses import dataclass

from torch import Tensor

from ..errors import ClassificationError

RawDistribution = tuple[float, ...]


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor  # 1x3xSxS float32 in [0, 1]
    source_size: tuple[int, int]


@dataclass(frozen=True)
class RankedPrediction:
    label: str
    confidence: float

    def to_dict(self) -> dict[str, object]:
        return {"category": self.label, "confidence": self.confidence}


@dataclass(frozen=True)
class ClassificationResult:
    top_label: str
    top_confidence: float
    ranked: tuple[RankedPrediction, ...]
    is_reusable: bool
    model_id: str
    reasoning: str | None = None

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "category": self.top_label,
            "confidence": self.top_confidence,
            "isReusable": self.is_reusable,
            "allPredictions": [p.to_dict() for p in self.ranked],
            "modelId": self.model_id,
        }
        if self.reasoning is not None:
            out["reasoning"] = self.reasoning
        return out


@dataclass(frozen=True)
class ClassifyOutcome:
    """Result of the public entry point: exactly one of `result` or `error` is set."""

    result: ClassificationResult | None
    error: ClassificationError | None
    correlation_id: str = ""

    @property
    def ok(self) -> bool:
        return self.result is not None
