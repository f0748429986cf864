"""
Retrieval package for hybrid test case search.

Modules:
    types               Immutable values flowing through one search request
    query_preprocessor  Normalization, identifier extraction, expansion
    filters             Metadata filter validation and translation
    retrievers          Keyword (BM25 sparse) and vector (dense) clients
    hybrid_retriever    HybridSearchService, the pipeline entry point

Pipeline:
    1. Preprocess - Normalize, extract identifiers, expand abbreviations/synonyms
    2. Parallel Retrieval - Keyword + vector search for each variant
    3. Score Fusion - Normalize per list, merge by id, weight
    4. Re-ranking - Relevance service on the top-K (optional)
    5. De-duplication - Drop near-duplicate test cases
    6. Summarization - Condense long descriptions (optional)

Usage:
    from testcase_search.retrieval import QueryPreprocessor, SearchMethod
    from testcase_search.retrieval.hybrid_retriever import HybridSearchService

Only the leaf modules are re-exported here; import HybridSearchService and
the retrievers from their modules so utils can depend on retrieval.types.
"""

from __future__ import annotations

from testcase_search.retrieval.query_preprocessor import (
    ExpansionDictionary,
    PreprocessOptions,
    QueryPreprocessor,
    build_preprocessor,
    normalize,
)
from testcase_search.retrieval.types import (
    Candidate,
    FusedResult,
    FusionWeights,
    QueryPlan,
    QueryVariant,
    RerankedResult,
    RetrievalSource,
    SearchMethod,
    TestCaseDocument,
)

__all__ = [
    # Preprocessing
    "ExpansionDictionary",
    "PreprocessOptions",
    "QueryPreprocessor",
    "build_preprocessor",
    "normalize",
    # Types
    "Candidate",
    "FusedResult",
    "FusionWeights",
    "QueryPlan",
    "QueryVariant",
    "RerankedResult",
    "RetrievalSource",
    "SearchMethod",
    "TestCaseDocument",
]
