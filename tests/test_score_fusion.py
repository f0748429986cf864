from __future__ import annotations

import math

import pytest

from testcase_search.errors import InternalFusionError, ValidationError
from testcase_search.retrieval.types import (
    Candidate,
    FusionWeights,
    RetrievalSource,
    SearchMethod,
)
from testcase_search.utils.score_fusion import fuse, normalize_scores

KEYWORD = RetrievalSource.KEYWORD
VECTOR = RetrievalSource.VECTOR


def _candidates(
    source: RetrievalSource, scores: dict[str, float], tag: str = "original"
) -> list[Candidate]:
    return [
        Candidate(
            id=doc_id,
            source=source,
            score=score,
            metadata={"title": doc_id},
            variant_tag=tag,
        )
        for doc_id, score in scores.items()
    ]


def test_normalize_scores_minmax_for_out_of_range_lists() -> None:
    assert normalize_scores([12.0, 4.0, 8.0]) == [1.0, 0.0, 0.5]


def test_normalize_scores_keeps_unit_range_lists_in_auto_mode() -> None:
    assert normalize_scores([0.9, 0.1]) == [0.9, 0.1]


def test_normalize_scores_minmax_mode_always_scales() -> None:
    assert normalize_scores([0.9, 0.1], mode="minmax") == pytest.approx([1.0, 0.0])


def test_normalize_scores_equal_scores_become_one() -> None:
    assert normalize_scores([3.0, 3.0]) == [1.0, 1.0]


def test_normalize_scores_rejects_nan() -> None:
    with pytest.raises(InternalFusionError):
        normalize_scores([0.5, math.nan])


def test_normalize_scores_rejects_unknown_mode() -> None:
    with pytest.raises(ValidationError):
        normalize_scores([0.5], mode="zscore")


def test_equal_weights_example() -> None:
    results = {
        (KEYWORD, "original"): _candidates(KEYWORD, {"TC-1": 0.2, "TC-2": 0.8}),
        (VECTOR, "original"): _candidates(VECTOR, {"TC-1": 0.9, "TC-2": 0.1}),
    }

    fused = fuse(results, FusionWeights(keyword=0.5, vector=0.5))

    assert [r.id for r in fused] == ["TC-1", "TC-2"]
    assert [r.final_score for r in fused] == pytest.approx([0.55, 0.45])


def test_vector_only_document_scores_weight_times_vector() -> None:
    results = {
        (KEYWORD, "original"): _candidates(KEYWORD, {"TC-1": 0.6}),
        (VECTOR, "original"): _candidates(VECTOR, {"TC-1": 0.5, "TC-9": 0.8}),
    }

    fused = {r.id: r for r in fuse(results, FusionWeights(keyword=0.3, vector=0.7))}

    assert fused["TC-9"].keyword_score is None
    assert fused["TC-9"].final_score == pytest.approx(0.7 * 0.8)
    assert fused["TC-9"].sources == ("vector",)


def test_each_id_appears_once_with_best_score_per_source() -> None:
    results = {
        (VECTOR, "original"): _candidates(VECTOR, {"TC-1": 0.4}),
        (VECTOR, "synonym-1"): _candidates(VECTOR, {"TC-1": 0.7}, tag="synonym-1"),
    }

    fused = fuse(results, FusionWeights.for_method(SearchMethod.VECTOR))

    assert len(fused) == 1
    assert fused[0].vector_score == pytest.approx(0.7)
    assert fused[0].variants == ("original", "synonym-1")


def test_ties_break_by_id_and_ordering_is_stable() -> None:
    results = {
        (KEYWORD, "original"): _candidates(
            KEYWORD, {"TC-3": 0.5, "TC-1": 0.5, "TC-2": 0.5}
        ),
    }
    weights = FusionWeights.for_method(SearchMethod.BM25)

    first = fuse(results, weights)
    second = fuse(results, weights)

    assert [r.id for r in first] == ["TC-1", "TC-2", "TC-3"]
    assert [r.id for r in first] == [r.id for r in second]


def test_final_scores_stay_in_unit_range() -> None:
    results = {
        (KEYWORD, "original"): _candidates(KEYWORD, {"a": 14.0, "b": 3.0, "c": 9.5}),
        (VECTOR, "original"): _candidates(VECTOR, {"a": 0.2, "c": 0.99, "d": 0.6}),
    }

    fused = fuse(results, FusionWeights(keyword=0.4, vector=0.6))

    assert all(0.0 <= r.final_score <= 1.0 for r in fused)
    scores = [r.final_score for r in fused]
    assert scores == sorted(scores, reverse=True)


def test_empty_input_yields_empty_ranking() -> None:
    weights = FusionWeights(keyword=0.5, vector=0.5)

    assert fuse({}, weights) == []
    assert fuse({(KEYWORD, "original"): []}, weights) == []


def test_candidate_in_wrong_source_list_is_internal_error() -> None:
    results = {(KEYWORD, "original"): _candidates(VECTOR, {"TC-1": 0.5})}

    with pytest.raises(InternalFusionError):
        fuse(results, FusionWeights(keyword=0.5, vector=0.5))


def test_metadata_merged_from_first_seen_candidate() -> None:
    keyword = Candidate(
        id="TC-1",
        source=KEYWORD,
        score=0.5,
        metadata={"title": "Login", "module": "auth"},
    )
    vector = Candidate(
        id="TC-1", source=VECTOR, score=0.5, metadata={"title": "Other", "risk": "high"}
    )

    fused = fuse(
        {(KEYWORD, "original"): [keyword], (VECTOR, "original"): [vector]},
        FusionWeights(keyword=0.5, vector=0.5),
    )

    assert fused[0].metadata == {"title": "Login", "module": "auth", "risk": "high"}


@pytest.mark.parametrize(
    "keyword, vector",
    [(0.7, 0.7), (-0.1, 1.1), (math.nan, 0.5)],
)
def test_invalid_weights_rejected(keyword: float, vector: float) -> None:
    with pytest.raises(ValidationError):
        FusionWeights(keyword=keyword, vector=vector)


def test_method_weights() -> None:
    bm25 = FusionWeights.for_method(SearchMethod.BM25)
    vector = FusionWeights.for_method(SearchMethod.VECTOR)
    hybrid = FusionWeights.for_method(SearchMethod.HYBRID, 0.3)

    assert bm25.as_dict() == {"keyword": 1.0, "vector": 0.0}
    assert vector.as_dict() == {"keyword": 0.0, "vector": 1.0}
    assert hybrid.as_dict() == pytest.approx({"keyword": 0.3, "vector": 0.7})


def test_auto_mode_scales_every_variant_of_a_source_alike() -> None:
    results = {
        (KEYWORD, "original"): _candidates(KEYWORD, {"TC-1": 3.0, "TC-2": 2.0}),
        (KEYWORD, "synonym-1"): _candidates(
            KEYWORD, {"TC-3": 0.5, "TC-4": 0.4}, tag="synonym-1"
        ),
        (VECTOR, "original"): _candidates(VECTOR, {"TC-1": 0.9, "TC-3": 0.3}),
    }

    fused = {r.id: r for r in fuse(results, FusionWeights(keyword=0.5, vector=0.5))}

    # Both keyword lists are min-max scaled
    assert fused["TC-3"].keyword_score == pytest.approx(1.0)
    assert fused["TC-4"].keyword_score == pytest.approx(0.0)
    assert fused["TC-1"].keyword_score == pytest.approx(1.0)
    # Vector lists all lie in [0, 1] and stay raw
    assert fused["TC-1"].vector_score == pytest.approx(0.9)
    assert fused["TC-3"].vector_score == pytest.approx(0.3)


def test_fuse_rejects_unknown_mode() -> None:
    results = {(KEYWORD, "original"): _candidates(KEYWORD, {"TC-1": 4.0})}

    with pytest.raises(ValidationError):
        fuse(results, FusionWeights(keyword=0.5, vector=0.5), mode="zscore")
