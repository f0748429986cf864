"""
LLM relevance scoring and summarization using AWS Bedrock Nova Lite.

The relevance service is the external judge used by the Reranker (score a
test case against the query, 0-100, with a short rationale) and by the
Summarizer (condense long test case descriptions).

Architecture:
    Reranker   → RelevanceService.score(query, text)  → RelevanceJudgement
    Summarizer → RelevanceService.summarize(text)     → str
                          ↓
                 Nova Lite via bedrock-runtime

Unlike a best-effort scorer, this service never invents a default score:
an unparseable answer is a failure, and the Reranker reacts to any failure
by keeping the fused order.

Usage:
    from testcase_search.utils.relevance import NovaLiteRelevanceService

    service = NovaLiteRelevanceService()
    judgement = await service.score("password reset", "Verify reset link expiry")
    print(judgement.score, judgement.rationale)

Reference:
    - Nova request format: https://docs.aws.amazon.com/nova/latest/userguide/using-invoke-api.html
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from testcase_search.config.settings import get_settings
from testcase_search.errors import UpstreamUnavailable
from testcase_search.utils.bedrock import create_bedrock_client, invoke_model_json
from testcase_search.utils.retry import call_with_retry

# Configure structured logger
logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_MODEL_ID = "amazon.nova-lite-v1:0"

# Maximum document length to send to the model (tokens ≈ chars/4)
MAX_DOCUMENT_CHARS = 2000

MAX_SCORE = 100.0
MIN_SCORE = 0.0

SCORE_MAX_TOKENS = 150
SUMMARY_MAX_TOKENS = 300

DEFAULT_MAX_ATTEMPTS = 2

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_SCORE_FIELD = re.compile(r'"?score"?\s*[:=]\s*(\d+(?:\.\d+)?)', re.IGNORECASE)


# =============================================================================
# Types
# =============================================================================


@dataclass(frozen=True)
class RelevanceJudgement:
    """Relevance of one text to a query on a 0-100 scale."""

    score: float
    rationale: str | None = None


class RelevanceService(Protocol):
    """What the Reranker and Summarizer need from a relevance backend."""

    async def score(self, query: str, text: str) -> RelevanceJudgement: ...

    async def summarize(self, text: str) -> str: ...


# =============================================================================
# Parsing
# =============================================================================


def parse_judgement(response: str) -> RelevanceJudgement:
    """
    Parse a model answer into a RelevanceJudgement.

    Accepts a JSON object {"score": n, "rationale": "..."} anywhere in the
    answer, or a "score: n" fragment when the JSON is malformed. Scores are
    clamped to [0, 100].

    Raises:
        UpstreamUnavailable: If no score can be found (not retryable).
    """
    score: float | None = None
    rationale: str | None = None

    match = _JSON_OBJECT.search(response)
    if match:
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and payload.get("score") is not None:
            try:
                score = float(payload["score"])
            except (TypeError, ValueError):
                score = None
            raw_rationale = payload.get("rationale")
            rationale = str(raw_rationale).strip() if raw_rationale else None

    if score is None:
        fragment = _SCORE_FIELD.search(response)
        if fragment:
            score = float(fragment.group(1))

    if score is None:
        raise UpstreamUnavailable(
            f"Unparseable relevance answer: {response[:80]!r}", retryable=False
        )

    return RelevanceJudgement(
        score=max(MIN_SCORE, min(MAX_SCORE, score)), rationale=rationale
    )


# =============================================================================
# Nova Lite Relevance Service
# =============================================================================


class NovaLiteRelevanceService:
    """
    Relevance scoring and summarization backed by Nova Lite.

    Each call is bounded by relevance_timeout_seconds and retried for
    throttling and transient outages.

    Attributes:
        model_id: Bedrock model ID.
        timeout: Per-attempt deadline in seconds.
    """

    def __init__(
        self,
        model_id: str | None = None,
        timeout: float | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        client: Any = None,
    ) -> None:
        settings = get_settings()
        self.model_id = model_id or settings.bedrock_relevance_model_id or DEFAULT_MODEL_ID
        self.timeout = timeout or settings.relevance_timeout_seconds
        self._max_attempts = max_attempts
        self._min_wait = settings.retry_min_wait_seconds
        self._max_wait = settings.retry_max_wait_seconds
        self._region = settings.aws_region
        self._client: Any = client
        self._log = logger.bind(component="relevance", model_id=self.model_id)

        self._log.info("relevance_service_initialized", timeout=self.timeout)

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = create_bedrock_client(self._region)
            except Exception as e:
                self._log.error("bedrock_client_creation_failed", error=str(e))
                raise UpstreamUnavailable(
                    f"Failed to create Bedrock client: {e}", retryable=False
                ) from e
        return self._client

    def _build_score_prompt(self, query: str, text: str) -> str:
        if len(text) > MAX_DOCUMENT_CHARS:
            text = text[:MAX_DOCUMENT_CHARS] + "..."

        return f"""You judge how relevant a software test case is to a search query.
Rate relevance from 0 (unrelated) to 100 (exactly what the query asks for).
Respond with JSON only: {{"score": <number>, "rationale": "<one sentence>"}}

Query: {query}

Test case: {text}"""

    def _build_summary_prompt(self, text: str) -> str:
        return f"""Summarize this software test case description in at most three sentences.
Keep identifiers, module names and expected results. Respond with the summary only.

Description: {text}"""

    async def _invoke_nova_lite(self, prompt: str, max_tokens: int) -> str:
        """Send one prompt and return the answer text."""
        client = self._get_client()
        payload = {
            "messages": [{"role": "user", "content": [{"text": prompt}]}],
            "inferenceConfig": {
                "maxTokens": max_tokens,
                "temperature": 0.0,  # Deterministic for scoring
            },
        }

        async def invoke() -> dict[str, Any]:
            return await invoke_model_json(
                client, self.model_id, payload, operation="relevance"
            )

        response_body = await call_with_retry(
            invoke,
            operation="nova_lite_invoke",
            max_attempts=self._max_attempts,
            min_wait=self._min_wait,
            max_wait=self._max_wait,
            timeout=self.timeout,
        )

        # Extract text from Nova response format
        content = response_body.get("output", {}).get("message", {}).get("content", [])
        if content and isinstance(content, list):
            return str(content[0].get("text", "")).strip()

        raise UpstreamUnavailable(
            f"Unexpected Nova response format: {sorted(response_body)}",
            retryable=False,
        )

    async def score(self, query: str, text: str) -> RelevanceJudgement:
        """
        Score relevance of a test case text to a query.

        Raises:
            UpstreamError: On invocation failure or an unparseable answer.
        """
        response = await self._invoke_nova_lite(
            self._build_score_prompt(query, text), SCORE_MAX_TOKENS
        )
        judgement = parse_judgement(response)
        self._log.debug("relevance_scored", score=judgement.score)
        return judgement

    async def summarize(self, text: str) -> str:
        """
        Condense a long description.

        Raises:
            UpstreamError: On invocation failure or an empty answer.
        """
        summary = await self._invoke_nova_lite(
            self._build_summary_prompt(text[: MAX_DOCUMENT_CHARS * 2]),
            SUMMARY_MAX_TOKENS,
        )
        if not summary:
            raise UpstreamUnavailable("Empty summary from relevance service", retryable=False)
        return summary

    async def verify_model_access(self) -> dict[str, Any]:
        """Minimal round trip for health checks."""
        await self._invoke_nova_lite("Reply with OK.", 5)
        return {"accessible": True, "model_id": self.model_id}


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "RelevanceJudgement",
    "RelevanceService",
    "NovaLiteRelevanceService",
    "parse_judgement",
]
