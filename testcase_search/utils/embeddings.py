"""
Bedrock Titan embeddings for query and test case vectorization.

This module wraps Amazon Titan Text Embeddings v2 on AWS Bedrock. It is
used twice in the service:
- VectorRetriever embeds each query variant before querying the dense index
- EmbeddingJobRunner embeds test cases in chunks before upserting them

Query variants repeat a lot (the same "original" phrasing is embedded for
every search), so single-text embeddings go through an in-memory LRU cache.

Usage:
    from testcase_search.utils.embeddings import BedrockEmbeddings

    embeddings = BedrockEmbeddings()

    # Single text embedding
    vector = await embeddings.embed_text("password reset with expired link")

    # Batch embedding with usage accounting
    batch = await embeddings.embed_batch(["Reset password", "Login with SSO"])
    print(batch.token_count, batch.cost_estimate)

Cost Notes:
    - Titan v2: ~$0.00002 per 1K input tokens (embedding_cost_per_1k_tokens)
    - Token counts come from inputTextTokenCount in each response

Reference:
    - https://docs.aws.amazon.com/bedrock/latest/userguide/titan-embedding-models.html
"""

from __future__ import annotations

import hashlib
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

import structlog

from testcase_search.config.settings import get_settings
from testcase_search.errors import UpstreamUnavailable, ValidationError
from testcase_search.utils.bedrock import create_bedrock_client, invoke_model_json

# Configure structured logger
logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_EMBEDDING_MODEL_ID = "amazon.titan-embed-text-v2:0"

# Titan v2 accepts 256, 512 or 1024
SUPPORTED_DIMENSIONS = (256, 512, 1024)

# Titan has no batch API; larger batches belong in an embedding job
MAX_BATCH_TEXTS = 100

# Max tokens for Titan input is ~8K; ~4 chars per token average
MAX_INPUT_CHARS = 25000

# Cache settings
DEFAULT_CACHE_SIZE = 1000  # Max number of embeddings to cache in memory


# =============================================================================
# Result Type
# =============================================================================


@dataclass(frozen=True)
class EmbeddingBatch:
    """Vectors for a batch of texts plus usage accounting."""

    vectors: list[list[float]]
    token_count: int
    cost_estimate: float


# =============================================================================
# BedrockEmbeddings Class
# =============================================================================


class BedrockEmbeddings:
    """
    Wrapper for AWS Bedrock Titan v2 embeddings.

    Attributes:
        model_id: The Bedrock model ID for embeddings.
        dimension: Output dimension requested from Titan v2.
        cost_per_1k_tokens: USD per 1K input tokens for cost estimates.

    Example:
        embeddings = BedrockEmbeddings()
        vector = await embeddings.embed_text("login fails after 2fa")
        print(len(vector))  # 1024
    """

    def __init__(
        self,
        model_id: str | None = None,
        dimension: int | None = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
        client: Any = None,
    ) -> None:
        """
        Initialize the Bedrock embeddings client.

        Args:
            model_id: Bedrock model ID. Defaults to settings.
            dimension: Output dimension. Defaults to settings.embedding_dimension.
            cache_size: Maximum cached embeddings; 0 disables caching.
            client: Pre-built bedrock-runtime client (tests inject fakes).

        Raises:
            ValidationError: If the dimension is not supported by Titan v2.
        """
        settings = get_settings()

        self.model_id = (
            model_id or settings.bedrock_embedding_model_id or DEFAULT_EMBEDDING_MODEL_ID
        )
        self.dimension = dimension or settings.embedding_dimension
        if self.dimension not in SUPPORTED_DIMENSIONS:
            raise ValidationError(
                f"Unsupported embedding dimension {self.dimension}; "
                f"expected one of {SUPPORTED_DIMENSIONS}"
            )
        self.cost_per_1k_tokens = settings.embedding_cost_per_1k_tokens
        self._region = settings.aws_region

        self._client: Any = client
        self._log = logger.bind(component="embeddings", model_id=self.model_id)
        self._total_tokens_used = 0

        # In-memory LRU cache for repeated embeddings
        self._cache_size = cache_size
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._cache_hits = 0
        self._cache_misses = 0

        self._log.info(
            "bedrock_embeddings_initialized",
            dimension=self.dimension,
            cache_enabled=cache_size > 0,
        )

    def _get_client(self) -> Any:
        """Get or create the Bedrock Runtime client."""
        if self._client is None:
            try:
                self._client = create_bedrock_client(self._region)
            except Exception as e:
                self._log.error("bedrock_client_creation_failed", error=str(e))
                raise UpstreamUnavailable(
                    f"Failed to create Bedrock client: {e}", retryable=False
                ) from e
        return self._client

    # =========================================================================
    # Cache
    # =========================================================================

    def _get_cache_key(self, text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def _get_from_cache(self, text: str) -> list[float] | None:
        if self._cache_size == 0:
            return None

        cache_key = self._get_cache_key(text)
        if cache_key in self._cache:
            # Move to end (most recently used)
            self._cache.move_to_end(cache_key)
            self._cache_hits += 1
            return self._cache[cache_key]

        self._cache_misses += 1
        return None

    def _add_to_cache(self, text: str, embedding: list[float]) -> None:
        if self._cache_size == 0:
            return

        cache_key = self._get_cache_key(text)
        self._cache[cache_key] = embedding
        self._cache.move_to_end(cache_key)

        # Evict least recently used
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    def get_cache_stats(self) -> dict[str, int | float]:
        """Cache hits, misses, size, max_size and hit_rate."""
        total = self._cache_hits + self._cache_misses
        return {
            "hits": self._cache_hits,
            "misses": self._cache_misses,
            "size": len(self._cache),
            "max_size": self._cache_size,
            "hit_rate": self._cache_hits / total if total > 0 else 0.0,
        }

    # =========================================================================
    # Embedding
    # =========================================================================

    def _normalize_text(self, text: str) -> str:
        """
        Collapse whitespace and truncate to MAX_INPUT_CHARS.

        Raises:
            ValidationError: If text is empty after normalization.
        """
        normalized = " ".join((text or "").split())
        if not normalized:
            raise ValidationError("Embedding input text cannot be empty")

        if len(normalized) > MAX_INPUT_CHARS:
            self._log.warning(
                "text_truncated",
                original_length=len(normalized),
                truncated_length=MAX_INPUT_CHARS,
            )
            normalized = normalized[:MAX_INPUT_CHARS]

        return normalized

    async def _invoke_model(self, text: str) -> tuple[list[float], int]:
        """
        Embed one pre-normalized text.

        Returns:
            Tuple of (embedding, input token count).

        Raises:
            RateLimited, UpstreamTimeout, UpstreamUnavailable: On failure.
        """
        response_body = await invoke_model_json(
            self._get_client(),
            self.model_id,
            {"inputText": text, "dimensions": self.dimension, "normalize": True},
            operation="embed",
        )

        embedding = response_body.get("embedding")
        if not embedding:
            raise UpstreamUnavailable(
                f"No embedding in Bedrock response: {sorted(response_body)}",
                retryable=False,
            )

        token_count = int(response_body.get("inputTextTokenCount", 0))
        self._total_tokens_used += token_count

        self._log.debug(
            "embedding_generated", dimension=len(embedding), input_tokens=token_count
        )
        return embedding, token_count

    async def embed_text(self, text: str) -> list[float]:
        """
        Generate an embedding for a single text, using the cache.

        Raises:
            ValidationError: If the input text is empty.
            RateLimited, UpstreamTimeout, UpstreamUnavailable: On failure.
        """
        normalized = self._normalize_text(text)

        cached = self._get_from_cache(normalized)
        if cached is not None:
            self._log.debug("embedding_cache_hit", text_length=len(normalized))
            return cached

        embedding, _ = await self._invoke_model(normalized)
        self._add_to_cache(normalized, embedding)
        return embedding

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        """
        Embed up to MAX_BATCH_TEXTS texts and report token usage.

        Texts are embedded one request at a time (Titan has no batch API).
        The batch cache is bypassed so token counts reflect real usage.

        Raises:
            ValidationError: If the batch is too large or a text is empty.
            RateLimited, UpstreamTimeout, UpstreamUnavailable: On failure.
        """
        if len(texts) > MAX_BATCH_TEXTS:
            raise ValidationError(
                f"Embedding batch of {len(texts)} exceeds {MAX_BATCH_TEXTS} texts"
            )
        if not texts:
            return EmbeddingBatch(vectors=[], token_count=0, cost_estimate=0.0)

        normalized_texts = [self._normalize_text(text) for text in texts]

        vectors: list[list[float]] = []
        token_count = 0
        for text in normalized_texts:
            embedding, tokens = await self._invoke_model(text)
            vectors.append(embedding)
            token_count += tokens

        cost = self.estimate_cost(token_count)
        self._log.info(
            "batch_embedding_completed",
            total_embeddings=len(vectors),
            token_count=token_count,
            cost_estimate=cost,
        )
        return EmbeddingBatch(vectors=vectors, token_count=token_count, cost_estimate=cost)

    def estimate_cost(self, token_count: int) -> float:
        """USD cost estimate for a number of input tokens."""
        return token_count / 1000 * self.cost_per_1k_tokens

    def get_total_tokens_used(self) -> int:
        """Total input tokens processed since initialization."""
        return self._total_tokens_used

    async def verify_model_access(self) -> dict[str, Any]:
        """
        Verify the embedding model answers, for health checks.

        Raises:
            UpstreamError: If the test embedding fails.
        """
        embedding, _ = await self._invoke_model("health check")
        return {
            "accessible": True,
            "model_id": self.model_id,
            "dimension": len(embedding),
            "expected_dimension": self.dimension,
        }


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "BedrockEmbeddings",
    "EmbeddingBatch",
    "DEFAULT_EMBEDDING_MODEL_ID",
    "DEFAULT_CACHE_SIZE",
    "MAX_BATCH_TEXTS",
]
