from __future__ import annotations

import asyncio

import pytest

from testcase_search.errors import UpstreamTimeout, UpstreamUnavailable, ValidationError
from testcase_search.retrieval.types import FusedResult, FusionWeights
from testcase_search.utils.relevance import RelevanceJudgement, parse_judgement
from testcase_search.utils.reranker import Reranker

WEIGHTS = FusionWeights(keyword=0.5, vector=0.5)


def _fused(doc_id: str, score: float, description: str | None = None) -> FusedResult:
    return FusedResult(
        id=doc_id,
        keyword_score=score,
        vector_score=score,
        weights=WEIGHTS,
        final_score=score,
        metadata={"description": description or f"description of {doc_id}"},
    )


class _ScoringService:
    """Relevance service scoring by a fixed table keyed on text."""

    def __init__(self, scores: dict[str, float], fail_on: set[str] | None = None):
        self.scores = scores
        self.fail_on = fail_on or set()
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def score(self, query: str, text: str) -> RelevanceJudgement:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if text in self.fail_on:
                raise UpstreamTimeout("relevance timed out")
            return RelevanceJudgement(score=self.scores.get(text, 0.0), rationale="ok")
        finally:
            self.in_flight -= 1

    async def summarize(self, text: str) -> str:
        return text


@pytest.fixture
def candidates() -> list[FusedResult]:
    return [
        _fused("TC-1", 0.9, "a"),
        _fused("TC-2", 0.8, "b"),
        _fused("TC-3", 0.7, "c"),
    ]


@pytest.mark.asyncio
async def test_reorders_by_relevance(candidates: list[FusedResult]) -> None:
    reranker = Reranker(_ScoringService({"a": 10, "b": 90, "c": 50}))

    outcome = await reranker.rerank("login", candidates)

    assert not outcome.skipped
    assert [r.id for r in outcome.results] == ["TC-2", "TC-3", "TC-1"]
    assert [r.fused_rank for r in outcome.results] == [1, 2, 0]
    assert outcome.results[0].relevance_score == 90


@pytest.mark.asyncio
async def test_equal_relevance_keeps_fused_order(candidates: list[FusedResult]) -> None:
    reranker = Reranker(_ScoringService({"a": 50, "b": 50, "c": 50}))

    outcome = await reranker.rerank("login", candidates)

    assert [r.id for r in outcome.results] == ["TC-1", "TC-2", "TC-3"]


@pytest.mark.asyncio
async def test_failure_falls_back_to_fused_order(candidates: list[FusedResult]) -> None:
    reranker = Reranker(_ScoringService({"a": 10, "b": 90, "c": 50}, fail_on={"b"}))

    outcome = await reranker.rerank("login", candidates)

    assert outcome.skipped
    assert outcome.reason is not None and "UpstreamTimeout" in outcome.reason
    assert [r.id for r in outcome.results] == ["TC-1", "TC-2", "TC-3"]
    assert all(r.relevance_score is None for r in outcome.results)


@pytest.mark.asyncio
async def test_always_failing_service_preserves_input_order() -> None:
    results = [_fused(f"TC-{i}", 1 - i / 10, f"text {i}") for i in range(5)]
    service = _ScoringService({}, fail_on={f"text {i}" for i in range(5)})

    outcome = await Reranker(service).rerank("login", results)

    assert outcome.skipped
    assert [r.id for r in outcome.results] == [r.id for r in results]


@pytest.mark.asyncio
async def test_too_many_candidates_rejected(candidates: list[FusedResult]) -> None:
    reranker = Reranker(_ScoringService({}), max_candidates=2)

    with pytest.raises(ValidationError):
        await reranker.rerank("login", candidates)


@pytest.mark.asyncio
async def test_empty_input() -> None:
    outcome = await Reranker(_ScoringService({})).rerank("login", [])

    assert outcome.results == []
    assert not outcome.skipped


@pytest.mark.asyncio
async def test_concurrency_is_bounded() -> None:
    results = [_fused(f"TC-{i}", 0.5, f"text {i}") for i in range(10)]
    service = _ScoringService({})

    await Reranker(service, concurrency=3).rerank("login", results)

    assert len(service.calls) == 10
    assert service.max_in_flight <= 3


def test_outcome_to_dict(candidates: list[FusedResult]) -> None:
    outcome = Reranker._fallback(candidates, "reason")

    data = outcome.to_dict()

    assert data["skipped"] is True
    assert data["reason"] == "reason"
    assert data["results"][0]["id"] == "TC-1"
    assert data["results"][0]["fused_rank"] == 0


@pytest.mark.parametrize(
    "response, expected",
    [
        ('{"score": 87, "rationale": "covers reset"}', 87.0),
        ('Here you go: {"score": 140}', 100.0),
        ("Score: 42 because it matches", 42.0),
    ],
)
def test_parse_judgement(response: str, expected: float) -> None:
    assert parse_judgement(response).score == expected


def test_parse_judgement_rejects_unparseable_text() -> None:
    with pytest.raises(UpstreamUnavailable):
        parse_judgement("I cannot decide")
