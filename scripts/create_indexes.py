#!/usr/bin/env python3
"""
Create the Pinecone indexes used by the test case search service.

Two serverless indexes are needed:
    - vector index:  dense, cosine metric, EMBEDDING_DIMENSION dimensions
    - keyword index: sparse, dotproduct metric (BM25 sparse vectors)

Existing indexes are left untouched, so the script is safe to re-run.

Usage:
    # Show help
    python scripts/create_indexes.py --help

    # Show what would be created (no API calls)
    python scripts/create_indexes.py --dry-run

    # Create missing indexes
    python scripts/create_indexes.py

    # Report vector counts of existing indexes
    python scripts/create_indexes.py --status

Requires PINECONE_API_KEY (environment or .env).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass

from testcase_search.config import Settings, get_settings
from testcase_search.errors import SearchServiceError
from testcase_search.utils.pinecone_client import PineconeClient

# Terminal colors
GREEN = "\033[32m"
YELLOW = "\033[33m"
RED = "\033[31m"
BOLD = "\033[1m"
RESET = "\033[0m"


@dataclass(frozen=True)
class IndexSpec:
    name: str
    dimension: int | None
    metric: str
    vector_type: str


def index_specs(settings: Settings) -> list[IndexSpec]:
    """The vector and keyword index definitions for these settings."""
    return [
        IndexSpec(
            name=settings.pinecone_vector_index_name,
            dimension=settings.embedding_dimension,
            metric="cosine",
            vector_type="dense",
        ),
        IndexSpec(
            name=settings.pinecone_keyword_index_name,
            dimension=None,
            metric="dotproduct",
            vector_type="sparse",
        ),
    ]


def print_header(text: str) -> None:
    print(f"\n{BOLD}{text}{RESET}")
    print("=" * len(text))


def describe_spec(spec: IndexSpec) -> str:
    dimension = f", dimension={spec.dimension}" if spec.dimension else ""
    return f"{spec.name} ({spec.vector_type}, metric={spec.metric}{dimension})"


def create_indexes(client: PineconeClient, specs: list[IndexSpec]) -> int:
    """Create missing indexes. Returns the number of failures."""
    failures = 0
    for spec in specs:
        try:
            created = client.create_index(
                spec.name,
                dimension=spec.dimension,
                metric=spec.metric,
                vector_type=spec.vector_type,
            )
        except SearchServiceError as e:
            print(f"{RED}Failed: {describe_spec(spec)}: {e}{RESET}")
            failures += 1
            continue
        if created:
            print(f"{GREEN}Created: {describe_spec(spec)}{RESET}")
        else:
            print(f"{YELLOW}Exists:  {spec.name}{RESET}")
    return failures


async def show_status(client: PineconeClient, specs: list[IndexSpec]) -> int:
    """Print vector counts. Returns the number of unreachable indexes."""
    failures = 0
    for spec in specs:
        try:
            stats = await client.describe(spec.name)
        except SearchServiceError as e:
            print(f"{RED}{spec.name}: unavailable ({e}){RESET}")
            failures += 1
            continue
        print(f"{GREEN}{spec.name}: {stats['total_vector_count']} vectors{RESET}")
    return failures


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the Pinecone indexes for test case search.",
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--dry-run",
        action="store_true",
        help="List the indexes that would be created without calling Pinecone",
    )
    group.add_argument(
        "--status",
        action="store_true",
        help="Report vector counts of the configured indexes",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    specs = index_specs(settings)

    if args.dry_run:
        print_header("Indexes (dry run)")
        for spec in specs:
            print(f"  - {describe_spec(spec)}")
        return 0

    if not settings.pinecone_api_key:
        print(f"{RED}PINECONE_API_KEY is not set.{RESET}")
        return 1

    client = PineconeClient(
        api_key=settings.pinecone_api_key,
        cloud=settings.pinecone_cloud,
        region=settings.pinecone_environment,
        expected_dimension=settings.embedding_dimension,
    )

    if args.status:
        print_header("Index status")
        return 1 if asyncio.run(show_status(client, specs)) else 0

    print_header("Creating indexes")
    return 1 if create_indexes(client, specs) else 0


if __name__ == "__main__":
    sys.exit(main())
