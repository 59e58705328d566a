from __future__ import annotations

import io
import logging

import pytest

from rehome_classifier.errors import LabelSetMismatch
from rehome_classifier.inference.ranker import rank
from rehome_classifier.inference.types import RankedPrediction
from rehome_classifier.labels import LABEL_SET, REUSABILITY
from rehome_classifier.logging import _JsonFormatter, get_logger


def test_rank_picks_electronics_from_peaked_distribution() -> None:
    res = rank([0.05, 0.05, 0.8, 0.05, 0.05], LABEL_SET, REUSABILITY)
    assert res.top_label == "electronics"
    assert res.top_confidence == 0.8
    assert res.ranked[0] == RankedPrediction("electronics", 0.8)
    assert len(res.ranked) == 5


def test_rank_sorted_descending_and_ties_keep_label_order() -> None:
    res = rank([0.1, 0.3, 0.1, 0.3, 0.2], LABEL_SET, REUSABILITY)
    confs = [p.confidence for p in res.ranked]
    assert all(confs[i] >= confs[i + 1] for i in range(len(confs) - 1))
    assert [p.label for p in res.ranked] == ["clothes", "ewaste", "furniture", "books", "electronics"]


def test_rank_is_idempotent() -> None:
    dist = [0.2, 0.1, 0.4, 0.25, 0.05]
    assert rank(dist, LABEL_SET, REUSABILITY) == rank(dist, LABEL_SET, REUSABILITY)


def test_rank_reusability_lookup() -> None:
    assert rank([0, 0, 0, 1.0, 0], LABEL_SET, REUSABILITY).is_reusable is False
    assert rank([1.0, 0, 0, 0, 0], LABEL_SET, REUSABILITY).is_reusable is True


def test_rank_length_mismatch_fails_loudly() -> None:
    with pytest.raises(LabelSetMismatch):
        rank([0.5, 0.5], LABEL_SET, REUSABILITY)
    # Mismatch is a programmer error, surfaced as an assertion
    with pytest.raises(AssertionError):
        rank([1.0], (), REUSABILITY)


def test_rank_missing_reusability_falls_back_and_warns() -> None:
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(_JsonFormatter())
    logger = get_logger()
    logger.addHandler(h)
    try:
        res = rank([0.9, 0.1], ("toys", "books"), REUSABILITY)
    finally:
        logger.removeHandler(h)
    assert res.top_label == "toys" and res.is_reusable is True
    out = buf.getvalue()
    assert "reusability_missing" in out and '"level": "WARNING"' in out


def test_rank_reasoning_follows_threshold() -> None:
    low = rank([0.3, 0.2, 0.2, 0.2, 0.1], LABEL_SET, REUSABILITY, uncertain_threshold=0.5)
    high = rank([0.9, 0.025, 0.025, 0.025, 0.025], LABEL_SET, REUSABILITY, uncertain_threshold=0.5)
    assert low.reasoning == "Please verify the category is correct"
    assert high.reasoning == "High confidence match"
    assert rank([1.0, 0, 0, 0, 0], LABEL_SET, REUSABILITY).reasoning is None


def test_result_to_dict_shape() -> None:
    res = rank([0.05, 0.05, 0.8, 0.05, 0.05], LABEL_SET, REUSABILITY, model_id="m1")
    d = res.to_dict()
    assert d["category"] == "electronics" and d["confidence"] == 0.8
    assert d["isReusable"] is True and d["modelId"] == "m1"
    preds = d["allPredictions"]
    assert isinstance(preds, list) and preds[0] == {"category": "electronics", "confidence": 0.8}
    assert "reasoning" not in d
