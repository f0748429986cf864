"""
Hybrid test case search service.

Retrieves test cases relevant to a natural-language query by combining
keyword (BM25-style sparse) search and dense vector search over Pinecone,
fusing both score spaces into one ranking, optionally re-ranking it with
Bedrock Nova Lite, and tracking long-running embedding generation as
pollable jobs.

Package Structure:
    - api/: FastAPI application, middleware and routes
    - config/: Environment-driven settings
    - retrieval/: Query preprocessing, retrievers and the search pipeline
    - utils/: Store/model adapters, fusion, reranking, dedupe, summaries
    - jobs/: Job tracker and the embedding job runner
    - errors.py: Shared error taxonomy
"""

__version__ = "1.0.0"
