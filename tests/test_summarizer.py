from __future__ import annotations

import pytest

from testcase_search.errors import UpstreamUnavailable
from testcase_search.retrieval.types import FusedResult, FusionWeights, RerankedResult
from testcase_search.utils.relevance import RelevanceJudgement
from testcase_search.utils.summarizer import Summarizer, truncate_text

WEIGHTS = FusionWeights(keyword=0.5, vector=0.5)


def _fused(doc_id: str, description: str) -> FusedResult:
    return FusedResult(
        id=doc_id,
        keyword_score=0.5,
        vector_score=None,
        weights=WEIGHTS,
        final_score=0.25,
        metadata={"description": description},
    )


class _SummaryService:
    def __init__(self, fail: bool = False, answer: str = "short summary"):
        self.fail = fail
        self.answer = answer
        self.calls = 0

    async def score(self, query: str, text: str) -> RelevanceJudgement:
        return RelevanceJudgement(score=0.0)

    async def summarize(self, text: str) -> str:
        self.calls += 1
        if self.fail:
            raise UpstreamUnavailable("bedrock down")
        return self.answer


def test_truncate_text() -> None:
    assert truncate_text("short", 10) == "short"
    truncated = truncate_text("x" * 100, 20)
    assert len(truncated) <= 20
    assert truncated.endswith("...")


@pytest.mark.asyncio
async def test_short_texts_are_kept_verbatim() -> None:
    service = _SummaryService()
    summarizer = Summarizer(service, min_chars=50, max_chars=100)

    [result] = await summarizer.summarize([_fused("TC-1", "tiny")])

    assert result.summary == "tiny"
    assert service.calls == 0


@pytest.mark.asyncio
async def test_long_texts_are_summarized_in_order() -> None:
    service = _SummaryService()
    summarizer = Summarizer(service, min_chars=10, max_chars=100)
    results = [
        _fused("TC-1", "long " * 20),
        _fused("TC-2", "tiny"),
        _fused("TC-3", "b" * 40),
    ]

    summarized = await summarizer.summarize(results)

    assert [r.id for r in summarized] == ["TC-1", "TC-2", "TC-3"]
    assert [r.summary for r in summarized] == ["short summary", "tiny", "short summary"]
    assert service.calls == 2


@pytest.mark.asyncio
async def test_service_failure_truncates_instead() -> None:
    summarizer = Summarizer(_SummaryService(fail=True), min_chars=10, max_chars=60)

    [result] = await summarizer.summarize([_fused("TC-1", "word " * 40)])

    assert result.summary is not None
    assert len(result.summary) <= 60
    assert result.summary.endswith("...")


@pytest.mark.asyncio
async def test_overlong_summary_is_capped() -> None:
    service = _SummaryService(answer="y" * 500)
    summarizer = Summarizer(service, min_chars=10, max_chars=80)

    [result] = await summarizer.summarize([_fused("TC-1", "word " * 40)])

    assert len(result.summary or "") <= 80


@pytest.mark.asyncio
async def test_reranked_results_keep_their_judgement() -> None:
    summarizer = Summarizer(_SummaryService(), min_chars=10, max_chars=100)
    reranked = RerankedResult(
        result=_fused("TC-1", "long " * 20), fused_rank=3, relevance_score=77.0
    )

    [result] = await summarizer.summarize([reranked])

    assert isinstance(result, RerankedResult)
    assert result.relevance_score == 77.0
    assert result.fused_rank == 3
    assert result.result.summary == "short summary"


@pytest.mark.asyncio
async def test_empty_input() -> None:
    assert await Summarizer(_SummaryService()).summarize([]) == []
