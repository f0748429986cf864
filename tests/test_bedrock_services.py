from __future__ import annotations

import io
import json
from typing import Any

import pytest
from botocore.exceptions import ClientError, NoCredentialsError, ReadTimeoutError

from testcase_search.errors import (
    RateLimited,
    UpstreamTimeout,
    UpstreamUnavailable,
    ValidationError,
)
from testcase_search.utils.bedrock import classify_bedrock_error
from testcase_search.utils.embeddings import BedrockEmbeddings
from testcase_search.utils.relevance import NovaLiteRelevanceService


class _FakeBedrock:
    """bedrock-runtime stand-in answering invoke_model from a queue."""

    def __init__(self, answers: list[Any]) -> None:
        self.answers = list(answers)
        self.requests: list[dict[str, Any]] = []

    def invoke_model(self, **kwargs: Any) -> dict[str, Any]:
        self.requests.append({**kwargs, "body": json.loads(kwargs["body"])})
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return {"body": io.BytesIO(json.dumps(answer).encode("utf-8"))}


def _client_error(code: str, headers: dict[str, str] | None = None) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": "failed"},
            "ResponseMetadata": {"HTTPHeaders": headers or {}},
        },
        "InvokeModel",
    )


def _nova_answer(text: str) -> dict[str, Any]:
    return {"output": {"message": {"content": [{"text": text}]}}}


# =============================================================================
# Error Mapping
# =============================================================================


def test_throttling_maps_to_rate_limited_with_hint() -> None:
    error = classify_bedrock_error(
        _client_error("ThrottlingException", {"retry-after": "3"}), "embed"
    )

    assert isinstance(error, RateLimited)
    assert error.retry_after == 3.0
    assert error.retryable


@pytest.mark.parametrize(
    "exc, expected, retryable",
    [
        (_client_error("ModelTimeoutException"), UpstreamTimeout, True),
        (_client_error("AccessDeniedException"), UpstreamUnavailable, False),
        (_client_error("InternalServerException"), UpstreamUnavailable, True),
        (ReadTimeoutError(endpoint_url="https://bedrock"), UpstreamTimeout, True),
        (NoCredentialsError(), UpstreamUnavailable, False),
    ],
)
def test_error_classification(exc: Exception, expected: type, retryable: bool) -> None:
    error = classify_bedrock_error(exc, "embed")

    assert type(error) is expected
    assert error.retryable is retryable


# =============================================================================
# Embeddings
# =============================================================================


@pytest.mark.asyncio
async def test_embed_text_uses_cache() -> None:
    client = _FakeBedrock([{"embedding": [0.1] * 256, "inputTextTokenCount": 4}])
    embeddings = BedrockEmbeddings(dimension=256, client=client)

    first = await embeddings.embed_text("login   fails")
    second = await embeddings.embed_text("login fails")

    assert first == second
    assert len(client.requests) == 1
    assert client.requests[0]["body"] == {
        "inputText": "login fails",
        "dimensions": 256,
        "normalize": True,
    }
    assert embeddings.get_cache_stats()["hits"] == 1


@pytest.mark.asyncio
async def test_embed_batch_reports_usage() -> None:
    client = _FakeBedrock([{"embedding": [0.2] * 512, "inputTextTokenCount": 10}])
    embeddings = BedrockEmbeddings(dimension=512, client=client)

    batch = await embeddings.embed_batch(["one", "two", "three"])

    assert len(batch.vectors) == 3
    assert batch.token_count == 30
    assert batch.cost_estimate == pytest.approx(embeddings.estimate_cost(30))
    assert embeddings.get_total_tokens_used() == 30


@pytest.mark.asyncio
async def test_embed_validation() -> None:
    embeddings = BedrockEmbeddings(dimension=256, client=_FakeBedrock([{}]))

    with pytest.raises(ValidationError):
        await embeddings.embed_text("   ")
    with pytest.raises(ValidationError):
        await embeddings.embed_batch(["x"] * 101)
    with pytest.raises(ValidationError):
        BedrockEmbeddings(dimension=300, client=_FakeBedrock([{}]))


@pytest.mark.asyncio
async def test_embedding_failure_is_classified() -> None:
    client = _FakeBedrock([_client_error("ThrottlingException")])
    embeddings = BedrockEmbeddings(dimension=256, client=client)

    with pytest.raises(RateLimited):
        await embeddings.embed_text("login")


@pytest.mark.asyncio
async def test_missing_embedding_in_response() -> None:
    embeddings = BedrockEmbeddings(dimension=256, client=_FakeBedrock([{"other": 1}]))

    with pytest.raises(UpstreamUnavailable):
        await embeddings.embed_text("login")


# =============================================================================
# Relevance Service
# =============================================================================


@pytest.mark.asyncio
async def test_score_parses_json_answer() -> None:
    client = _FakeBedrock(
        [_nova_answer('{"score": 87, "rationale": "Covers password reset."}')]
    )
    service = NovaLiteRelevanceService(client=client)

    judgement = await service.score("password reset", "Reset password via email")

    assert judgement.score == 87.0
    assert judgement.rationale == "Covers password reset."
    payload = client.requests[0]["body"]
    assert payload["inferenceConfig"]["temperature"] == 0.0
    assert "password reset" in payload["messages"][0]["content"][0]["text"]


@pytest.mark.asyncio
async def test_score_retries_throttling() -> None:
    client = _FakeBedrock(
        [_client_error("ThrottlingException"), _nova_answer('{"score": 40}')]
    )
    service = NovaLiteRelevanceService(client=client, max_attempts=2)

    judgement = await service.score("login", "Login works")

    assert judgement.score == 40.0
    assert len(client.requests) == 2


@pytest.mark.asyncio
async def test_unparseable_answer_fails() -> None:
    service = NovaLiteRelevanceService(client=_FakeBedrock([_nova_answer("no idea")]))

    with pytest.raises(UpstreamUnavailable):
        await service.score("login", "Login works")


@pytest.mark.asyncio
async def test_summarize_returns_answer_text() -> None:
    client = _FakeBedrock([_nova_answer("  Checks login with 2FA.  ")])
    service = NovaLiteRelevanceService(client=client)

    assert await service.summarize("long description " * 50) == "Checks login with 2FA."


@pytest.mark.asyncio
async def test_unexpected_response_shape() -> None:
    service = NovaLiteRelevanceService(client=_FakeBedrock([{"output": {}}]))

    with pytest.raises(UpstreamUnavailable):
        await service.summarize("text")
