"""
BM25-style sparse vector encoder for the Pinecone keyword index.

This module turns test case fields and search queries into sparse vectors
for a Pinecone sparse (dot product) index. The keyword index is what gives
the service exact-term recall that dense embeddings miss:
- Test case identifiers (TC-101, JIRA-2231)
- Module names and product jargon
- Error codes and exact UI labels

Architecture:
    Fields → Tokenize → Remove Stopwords → TF per field × field boost
                                  ↓
                        Fuzzy deletion features
                                  ↓
                        Hash features → Sparse Vector

Field Boosting:
    Boosts are applied at indexing time, so a query term matching a title
    scores 5x a match in the steps (default table: id=10, title=5,
    module=3, description=2, expectedResults=1.5, steps=1, preRequisites=0.8).

Fuzzy Matching:
    Edit distance 1 with a protected prefix is encoded with symmetric
    deletion features: every token also emits "~token" and "~token minus
    one character" for each position at or after the prefix. Two tokens
    within one edit share at least one such feature, so "pasword" still
    reaches "password". Fuzzy features carry a reduced weight and are never
    emitted for tokens containing digits, which keeps identifiers exact.

Output Format (Pinecone sparse vector):
    {
        "indices": [feature_hash_1, feature_hash_2, ...],  # Positive integers
        "values": [weight_1, weight_2, ...]                # Positive weights
    }

Usage:
    from testcase_search.utils.bm25_encoder import BM25Encoder

    encoder = BM25Encoder()

    # Encode a query
    sparse = encoder.encode("password reset TC-101")

    # Encode a test case for indexing
    sparse = encoder.encode_document({"id": "TC-101", "title": "Reset password"})

Reference:
    - Pinecone sparse indexes: https://docs.pinecone.io/guides/index-data/indexing-overview
    - BM25 algorithm: https://en.wikipedia.org/wiki/Okapi_BM25
"""

from __future__ import annotations

import hashlib
import math
import re
from collections import Counter
from collections.abc import Mapping
from typing import TypedDict

import structlog

from testcase_search.config.settings import DEFAULT_FIELD_BOOSTS

# Configure structured logger
logger = structlog.get_logger(__name__)


# =============================================================================
# Type Definitions
# =============================================================================


class SparseVector(TypedDict):
    """Pinecone sparse vector format."""

    indices: list[int]
    values: list[float]


# =============================================================================
# Constants
# =============================================================================

# Kept small: words like "not", "invalid" or "without" change what a test checks
STOPWORDS: frozenset[str] = frozenset(
    {
        # Articles
        "a",
        "an",
        "the",
        # Prepositions
        "in",
        "on",
        "at",
        "to",
        "for",
        "of",
        "with",
        "by",
        "from",
        "as",
        "into",
        # Conjunctions
        "and",
        "or",
        "but",
        "if",
        "then",
        # Pronouns
        "i",
        "you",
        "it",
        "we",
        "they",
        "this",
        "that",
        # Verbs
        "is",
        "are",
        "was",
        "were",
        "be",
        "been",
        "have",
        "has",
        "had",
        "do",
        "does",
        "did",
        "will",
        "would",
        "should",
        "can",
        # Question words
        "what",
        "which",
        "who",
        "how",
        "when",
        "where",
    }
)

# Alphanumeric runs, joined by hyphens or underscores so "tc-101" stays whole
TOKEN_PATTERN = re.compile(r"[a-z0-9]+(?:[-_][a-z0-9]+)*")

# Max index value for Pinecone (must be positive 32-bit integer)
MAX_INDEX = 2**31 - 1

# Minimum token length to include (filters single chars)
MIN_TOKEN_LENGTH = 2

# Fuzzy defaults: one edit, first two characters must match
DEFAULT_FUZZY_MAX_EDITS = 1
DEFAULT_FUZZY_PREFIX_LENGTH = 2
DEFAULT_FUZZY_WEIGHT = 0.5

# Shorter tokens produce too many accidental fuzzy collisions
FUZZY_MIN_TOKEN_LENGTH = 4

FUZZY_MARKER = "~"


# =============================================================================
# Custom Exceptions
# =============================================================================


class BM25EncoderError(Exception):
    """Base exception for BM25 encoder operations."""

    pass


# =============================================================================
# BM25 Encoder
# =============================================================================


class BM25Encoder:
    """
    BM25-style sparse vector encoder with field boosts and fuzzy features.

    Uses log-normalized term frequency without corpus IDF: the keyword
    index is updated incrementally by embedding jobs, so document weights
    must not depend on corpus-wide statistics.

    Attributes:
        field_boosts: Per-field multipliers used by encode_document().
        fuzzy_enabled: Whether fuzzy deletion features are emitted.

    Example:
        >>> encoder = BM25Encoder()
        >>> query = encoder.encode("pasword reset")
        >>> doc = encoder.encode_document({"title": "Password reset"})
        >>> encoder.dot(query, doc) > 0
        True
    """

    def __init__(
        self,
        stopwords: frozenset[str] | None = None,
        min_token_length: int = MIN_TOKEN_LENGTH,
        field_boosts: Mapping[str, float] | None = None,
        fuzzy_max_edits: int = DEFAULT_FUZZY_MAX_EDITS,
        fuzzy_prefix_length: int = DEFAULT_FUZZY_PREFIX_LENGTH,
        fuzzy_weight: float = DEFAULT_FUZZY_WEIGHT,
    ) -> None:
        """
        Initialize BM25Encoder.

        Args:
            stopwords: Custom stopwords set. Defaults to built-in STOPWORDS.
            min_token_length: Minimum token length to include. Default 2.
            field_boosts: Field boost table. Defaults to DEFAULT_FIELD_BOOSTS.
            fuzzy_max_edits: 0 disables fuzzy features, 1 enables them.
            fuzzy_prefix_length: Leading characters never edited.
            fuzzy_weight: Weight of a fuzzy feature relative to an exact one.
        """
        if fuzzy_max_edits not in (0, 1):
            raise BM25EncoderError(
                f"fuzzy_max_edits must be 0 or 1, got {fuzzy_max_edits}"
            )

        self._stopwords = stopwords if stopwords is not None else STOPWORDS
        self._min_token_length = min_token_length
        self.field_boosts = dict(field_boosts or DEFAULT_FIELD_BOOSTS)
        self.fuzzy_enabled = fuzzy_max_edits > 0
        self._fuzzy_prefix_length = fuzzy_prefix_length
        self._fuzzy_weight = fuzzy_weight

        logger.debug(
            "bm25_encoder_initialized",
            stopword_count=len(self._stopwords),
            min_token_length=self._min_token_length,
            fuzzy_enabled=self.fuzzy_enabled,
            boosted_fields=sorted(self.field_boosts),
        )

    def _tokenize(self, text: str) -> list[str]:
        """
        Tokenize text into lowercase terms with stopword removal.

        Example:
            >>> encoder._tokenize("Verify TC-101 login, the happy path")
            ['verify', 'tc-101', 'login', 'happy', 'path']
        """
        tokens = TOKEN_PATTERN.findall(text.lower())

        return [
            token
            for token in tokens
            if token not in self._stopwords and len(token) >= self._min_token_length
        ]

    def _fuzzy_features(self, token: str) -> set[str]:
        """
        Deletion-neighbourhood features of a token.

        Returns an empty set for short tokens and tokens containing digits.
        """
        if (
            not self.fuzzy_enabled
            or len(token) < FUZZY_MIN_TOKEN_LENGTH
            or len(token) <= self._fuzzy_prefix_length
            or any(ch.isdigit() for ch in token)
        ):
            return set()

        features = {FUZZY_MARKER + token}
        for i in range(self._fuzzy_prefix_length, len(token)):
            features.add(FUZZY_MARKER + token[:i] + token[i + 1 :])
        return features

    def _hash_token(self, token: str) -> int:
        """
        Hash a feature to a positive integer index for Pinecone.

        Uses MD5 for deterministic hashing across Python processes; the
        built-in hash() is randomized per process and would break matching
        between indexing and querying.
        """
        hash_bytes = hashlib.md5(token.encode("utf-8")).digest()
        return int.from_bytes(hash_bytes[:4], "big") % MAX_INDEX

    def _feature_weights(self, text: str, boost: float = 1.0) -> dict[str, float]:
        """Weighted exact and fuzzy features of one text."""
        tokens = self._tokenize(text)
        if not tokens:
            return {}

        weights: dict[str, float] = {}

        # Log-normalized TF dampens repeated terms
        for token, count in Counter(tokens).items():
            weights[token] = boost * math.log(1 + count)

        fuzzy_counts: Counter[str] = Counter()
        for token in tokens:
            fuzzy_counts.update(self._fuzzy_features(token))
        for feature, count in fuzzy_counts.items():
            weights[feature] = self._fuzzy_weight * boost * math.log(1 + count)

        return weights

    def _to_sparse(self, weights: Mapping[str, float]) -> SparseVector:
        by_index: dict[int, float] = {}
        for feature, weight in weights.items():
            index = self._hash_token(feature)
            by_index[index] = by_index.get(index, 0.0) + weight

        indices = sorted(by_index)
        return {"indices": indices, "values": [by_index[i] for i in indices]}

    def encode(self, text: str) -> SparseVector:
        """
        Encode a query into a Pinecone-compatible sparse vector.

        Raises:
            BM25EncoderError: If encoding fails.

        Example:
            >>> sparse = encoder.encode("login fails after pwd reset")
            >>> len(sparse["indices"]) == len(sparse["values"])
            True
        """
        try:
            if not text or not text.strip():
                logger.debug("bm25_encode_empty_input")
                return {"indices": [], "values": []}

            weights = self._feature_weights(text)

            if not weights:
                logger.debug("bm25_encode_no_tokens", text_preview=text[:50])
                return {"indices": [], "values": []}

            sparse = self._to_sparse(weights)

            logger.debug(
                "bm25_encoded",
                input_length=len(text),
                feature_count=len(sparse["indices"]),
            )

            return sparse

        except Exception as e:
            logger.error("bm25_encode_failed", error=str(e), text_preview=text[:50])
            raise BM25EncoderError(f"Failed to encode text: {e}") from e

    def encode_document(
        self,
        fields: Mapping[str, str],
        boosts: Mapping[str, float] | None = None,
    ) -> SparseVector:
        """
        Encode a multi-field document with per-field boosts.

        Fields without a boost entry are weighted 1.0.

        Args:
            fields: Field name to text, e.g. TestCaseDocument.field_texts().
            boosts: Overrides for the encoder's boost table.

        Returns:
            SparseVector combining all fields.

        Raises:
            BM25EncoderError: If encoding fails.
        """
        table = dict(self.field_boosts)
        if boosts:
            table.update(boosts)

        try:
            combined: dict[str, float] = {}
            for name, text in fields.items():
                if not text:
                    continue
                for feature, weight in self._feature_weights(
                    text, boost=table.get(name, 1.0)
                ).items():
                    combined[feature] = combined.get(feature, 0.0) + weight

            return self._to_sparse(combined)

        except Exception as e:
            logger.error("bm25_encode_document_failed", error=str(e))
            raise BM25EncoderError(f"Failed to encode document: {e}") from e

    def encode_batch(self, texts: list[str]) -> list[SparseVector]:
        """Encode multiple queries into sparse vectors."""
        return [self.encode(text) for text in texts]

    @staticmethod
    def dot(left: SparseVector, right: SparseVector) -> float:
        """Dot product of two sparse vectors (the keyword index's similarity)."""
        right_values = dict(zip(right["indices"], right["values"]))
        return sum(
            value * right_values.get(index, 0.0)
            for index, value in zip(left["indices"], left["values"])
        )


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "BM25Encoder",
    "BM25EncoderError",
    "SparseVector",
    "STOPWORDS",
    "TOKEN_PATTERN",
]
