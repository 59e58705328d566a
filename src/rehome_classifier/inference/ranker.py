from __future__ import annotations

from collections.abc import Mapping, Sequence

from ..errors import LabelSetMismatch
from ..labels import REUSABLE_FALLBACK
from ..logging import get_logger
from .types import ClassificationResult, RankedPrediction


def rank(
    distribution: Sequence[float],
    labels: Sequence[str],
    reusability: Mapping[str, bool],
    *,
    model_id: str = "",
    uncertain_threshold: float | None = None,
) -> ClassificationResult:
    """Pair each probability with its label and order them best first.

    Ties keep label-set order since ``sorted`` is stable. A top label absent from
    ``reusability`` falls back to reusable and is logged as label-set drift.

    Raises:
        LabelSetMismatch: if the distribution and label set differ in length.
    """
    if len(distribution) != len(labels):
        raise LabelSetMismatch(
            f"distribution has {len(distribution)} entries but label set has {len(labels)}"
        )
    if not labels:
        raise LabelSetMismatch("label set is empty")

    pairs = [RankedPrediction(label=lbl, confidence=float(p)) for lbl, p in zip(labels, distribution)]
    ranked = tuple(sorted(pairs, key=lambda rp: rp.confidence, reverse=True))
    top = ranked[0]

    reusable = reusability.get(top.label)
    if reusable is None:
        get_logger().warning(
            "reusability_missing label=%s fallback=%s",
            top.label,
            "true" if REUSABLE_FALLBACK else "false",
        )
        reusable = REUSABLE_FALLBACK

    reasoning: str | None = None
    if uncertain_threshold is not None:
        reasoning = (
            "Please verify the category is correct"
            if top.confidence < uncertain_threshold
            else "High confidence match"
        )

    return ClassificationResult(
        top_label=top.label,
        top_confidence=top.confidence,
        ranked=ranked,
        is_reusable=bool(reusable),
        model_id=model_id,
        reasoning=reasoning,
    )
