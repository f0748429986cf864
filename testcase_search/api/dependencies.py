"""
Service container wiring the search pipeline for the API.

Every collaborator (store adapter, embedding and relevance services, job
tracker) is built once in the application lifespan and kept on
app.state.container. Routes reach it through the get_container dependency,
so tests can hand create_app() a container built from fakes.

Usage:
    from testcase_search.api.dependencies import build_container, get_container

    container = build_container(settings)
    app.state.container = container

    @router.post("/search")
    async def search(container: ServiceContainer = Depends(get_container)):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from fastapi import HTTPException, Request, status

from testcase_search.config import Settings
from testcase_search.jobs.embedding_job import EmbeddingJobRunner
from testcase_search.jobs.tracker import JobTracker
from testcase_search.retrieval.hybrid_retriever import HybridSearchService
from testcase_search.retrieval.query_preprocessor import build_preprocessor
from testcase_search.retrieval.retrievers import KeywordRetriever, VectorRetriever
from testcase_search.utils.bm25_encoder import BM25Encoder
from testcase_search.utils.deduplicator import Deduplicator
from testcase_search.utils.embeddings import BedrockEmbeddings
from testcase_search.utils.pinecone_client import PineconeClient
from testcase_search.utils.relevance import NovaLiteRelevanceService, RelevanceService
from testcase_search.utils.reranker import Reranker
from testcase_search.utils.summarizer import Summarizer

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """Long-lived collaborators shared by all requests."""

    settings: Settings
    search_service: HybridSearchService
    tracker: JobTracker
    embedding_jobs: EmbeddingJobRunner
    pinecone: PineconeClient | None = None
    embeddings: BedrockEmbeddings | None = None
    relevance: RelevanceService | None = None


def build_container(settings: Settings) -> ServiceContainer:
    """
    Build the production container from settings.

    Nothing here opens a connection: the Pinecone and Bedrock clients are
    created lazily on first use, so startup succeeds without credentials
    and the failure surfaces on the first request instead.
    """
    pinecone = PineconeClient(
        api_key=settings.pinecone_api_key,
        cloud=settings.pinecone_cloud,
        region=settings.pinecone_environment,
        expected_dimension=settings.embedding_dimension,
    )
    embeddings = BedrockEmbeddings(
        model_id=settings.bedrock_embedding_model_id,
        dimension=settings.embedding_dimension,
    )
    encoder = BM25Encoder(
        field_boosts=settings.field_boosts,
        fuzzy_max_edits=settings.fuzzy_max_edits,
        fuzzy_prefix_length=settings.fuzzy_prefix_length,
        fuzzy_weight=settings.fuzzy_weight,
    )
    relevance = NovaLiteRelevanceService(
        model_id=settings.bedrock_relevance_model_id,
        timeout=settings.relevance_timeout_seconds,
    )

    search_service = HybridSearchService(
        preprocessor=build_preprocessor(settings),
        keyword_retriever=KeywordRetriever(pinecone, encoder, settings=settings),
        vector_retriever=VectorRetriever(pinecone, embeddings, settings=settings),
        reranker=Reranker(
            relevance,
            max_candidates=settings.rerank_max_candidates,
            concurrency=settings.rerank_concurrency,
        ),
        deduplicator=Deduplicator(settings.dedupe_measure, settings.dedupe_threshold),
        summarizer=Summarizer(
            relevance,
            min_chars=settings.summarize_min_chars,
            max_chars=settings.summarize_max_chars,
        ),
        settings=settings,
    )

    tracker = JobTracker(
        completed_retention=settings.job_completed_retention_seconds,
        failed_retention=settings.job_failed_retention_seconds,
        purge_interval=settings.job_purge_interval_seconds,
    )
    embedding_jobs = EmbeddingJobRunner(tracker, embeddings, pinecone, encoder, settings)

    logger.info(
        "service_container_built",
        vector_index=settings.pinecone_vector_index_name,
        keyword_index=settings.pinecone_keyword_index_name,
        embedding_model=embeddings.model_id,
        relevance_model=relevance.model_id,
    )
    return ServiceContainer(
        settings=settings,
        search_service=search_service,
        tracker=tracker,
        embedding_jobs=embedding_jobs,
        pinecone=pinecone,
        embeddings=embeddings,
        relevance=relevance,
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container built at startup."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up. Please retry shortly.",
        )
    return container


__all__ = ["ServiceContainer", "build_container", "get_container"]
