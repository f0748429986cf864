"""
Adapters and ranking helpers used by the search pipeline and embedding jobs.

This package provides:

- bedrock: Shared Bedrock runtime client and Nova Lite invocation
- embeddings: Bedrock Titan embeddings with usage and cost metadata
- pinecone_client: Pinecone keyword/vector index access
- bm25_encoder: Field-boosted sparse vectors with fuzzy features
- retry: tenacity policies for upstream calls
- score_fusion: Normalization and weighted fusion of candidate lists
- relevance: Nova Lite relevance scoring and summarization service
- reranker: Top-K re-ranking with fallback to fused order
- deduplicator: Near-duplicate removal over descriptive text
- summarizer: Description summarization after ranking is fixed

Modules are imported directly (for example
``from testcase_search.utils.score_fusion import fuse``) so that importing
one adapter does not pull in the rest.
"""
