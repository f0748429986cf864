"""
Query preprocessing: normalization, identifier extraction and expansion.

This module turns a raw natural-language query into a QueryPlan: the
normalized text, the literal identifiers found in it (ticket-style codes
such as TC-101) and an ordered tuple of query variants that the retrievers
search in parallel to improve recall.

Architecture:
    raw query → extract identifiers → normalize → abbreviation expansion
                                                        ↓
              QueryPlan ← re-attach identifiers ← synonym expansion

Variant Ordering (deterministic):
    1. original               normalized query
    2. abbreviation-expanded  only when at least one token was expanded
    3. synonym-1 .. synonym-N one word substituted at a time, capped

Failure Policy:
    Missing dictionary entries are no-ops. Any unexpected error during
    expansion degrades to the original variant alone; only malformed input
    (empty or overlong queries) raises ValidationError.

Usage:
    from testcase_search.retrieval.query_preprocessor import (
        ExpansionDictionary,
        QueryPreprocessor,
    )

    preprocessor = QueryPreprocessor(ExpansionDictionary.default())
    plan = preprocessor.preprocess("pwd reset for TC-101")
    for variant in plan.variants:
        print(variant.tag, variant.text)
    # original pwd reset for TC-101
    # abbreviation-expanded password reset for TC-101
    # synonym-1 passcode reset for TC-101
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import structlog

from testcase_search.config.settings import DEFAULT_IDENTIFIER_PATTERN
from testcase_search.errors import ValidationError
from testcase_search.retrieval.types import (
    ABBREVIATION_TAG,
    ORIGINAL_TAG,
    QueryPlan,
    QueryVariant,
    synonym_tag,
)
from testcase_search.utils.bm25_encoder import STOPWORDS

logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Everything except word characters, whitespace and hyphens becomes a space
_STRIP_PATTERN = re.compile(r"[^\w\s-]")
_WHITESPACE_PATTERN = re.compile(r"\s+")

DEFAULT_MAX_QUERY_LENGTH = 500
DEFAULT_MAX_SYNONYM_VARIATIONS = 5

DEFAULT_ABBREVIATIONS: dict[str, str] = {
    "pwd": "password",
    "pw": "password",
    "auth": "authentication",
    "2fa": "two factor authentication",
    "mfa": "multi factor authentication",
    "otp": "one time password",
    "acct": "account",
    "usr": "user",
    "btn": "button",
    "msg": "message",
    "db": "database",
    "config": "configuration",
    "env": "environment",
    "err": "error",
    "txn": "transaction",
    "e2e": "end to end",
    "perf": "performance",
    "nav": "navigation",
    "reg": "registration",
    "ui": "user interface",
}

DEFAULT_SYNONYMS: dict[str, tuple[str, ...]] = {
    "password": ("passcode", "credentials"),
    "reset": ("recover", "change"),
    "login": ("sign in", "log in"),
    "logout": ("sign out",),
    "error": ("failure", "exception"),
    "delete": ("remove",),
    "create": ("add",),
    "update": ("edit", "modify"),
    "user": ("account",),
    "verify": ("validate", "check"),
    "search": ("find", "lookup"),
    "payment": ("transaction",),
    "email": ("mail",),
    "invalid": ("incorrect", "wrong"),
    "page": ("screen",),
}


# =============================================================================
# Normalization
# =============================================================================


def normalize(text: str) -> str:
    """
    Normalize query text.

    Lowercases, replaces punctuation other than hyphens and underscores with
    spaces and collapses whitespace. normalize(normalize(x)) == normalize(x).

    Example:
        >>> normalize("  Login, FAILS (SSO)!  ")
        'login fails sso'
    """
    lowered = text.lower()
    stripped = _STRIP_PATTERN.sub(" ", lowered)
    return _WHITESPACE_PATTERN.sub(" ", stripped).strip()


# =============================================================================
# Expansion Dictionary
# =============================================================================


@dataclass(frozen=True)
class ExpansionDictionary:
    """
    Immutable abbreviation and synonym maps, loaded once at startup.

    Keys are stored normalized so lookups match normalized query tokens.

    Attributes:
        abbreviations: Token → expansion text.
        synonyms: Token → ordered alternatives.
    """

    abbreviations: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    synonyms: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ExpansionDictionary":
        """
        Build a dictionary from {"abbreviations": {...}, "synonyms": {...}}.

        Synonym values may be a single string or a list of strings.
        """
        abbreviations = {
            normalize(str(key)): normalize(str(value))
            for key, value in (data.get("abbreviations") or {}).items()
            if normalize(str(key)) and normalize(str(value))
        }
        synonyms: dict[str, tuple[str, ...]] = {}
        for key, values in (data.get("synonyms") or {}).items():
            if isinstance(values, str):
                values = [values]
            alternatives = tuple(
                dict.fromkeys(normalize(str(v)) for v in values if normalize(str(v)))
            )
            if normalize(str(key)) and alternatives:
                synonyms[normalize(str(key))] = alternatives
        return cls(
            abbreviations=MappingProxyType(abbreviations),
            synonyms=MappingProxyType(synonyms),
        )

    @classmethod
    def from_json_file(cls, path: str | Path) -> "ExpansionDictionary":
        """Load a dictionary from a JSON file."""
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError(f"Expansion dictionary {path} must be a JSON object")
        dictionary = cls.from_mapping(data)
        logger.info(
            "expansion_dictionary_loaded",
            path=str(path),
            abbreviation_count=len(dictionary.abbreviations),
            synonym_count=len(dictionary.synonyms),
        )
        return dictionary

    @classmethod
    def default(cls) -> "ExpansionDictionary":
        """Built-in test-domain dictionary."""
        return cls.from_mapping(
            {"abbreviations": DEFAULT_ABBREVIATIONS, "synonyms": DEFAULT_SYNONYMS}
        )


# =============================================================================
# Options
# =============================================================================


@dataclass(frozen=True)
class PreprocessOptions:
    """Per-call preprocessing options."""

    preserve_identifiers: bool = True
    max_synonym_variations: int = DEFAULT_MAX_SYNONYM_VARIATIONS
    expand_abbreviations: bool = True
    expand_synonyms: bool = True


# =============================================================================
# Query Preprocessor
# =============================================================================


class QueryPreprocessor:
    """
    Builds QueryPlans from raw queries.

    Example:
        preprocessor = QueryPreprocessor(
            ExpansionDictionary.from_mapping({"abbreviations": {"pwd": "password"}})
        )
        plan = preprocessor.preprocess("pwd reset")
        plan.variants[0].text  # 'pwd reset'
        plan.variants[1].text  # 'password reset'
    """

    def __init__(
        self,
        dictionary: ExpansionDictionary | None = None,
        identifier_pattern: str = DEFAULT_IDENTIFIER_PATTERN,
        max_query_length: int = DEFAULT_MAX_QUERY_LENGTH,
        default_options: PreprocessOptions | None = None,
    ) -> None:
        self._dictionary = dictionary or ExpansionDictionary.default()
        self._identifier_re = re.compile(identifier_pattern)
        self._max_query_length = max_query_length
        self._default_options = default_options or PreprocessOptions()
        self._log = logger.bind(component="query_preprocessor")

    @property
    def dictionary(self) -> ExpansionDictionary:
        return self._dictionary

    def extract_identifiers(self, text: str) -> tuple[str, ...]:
        """Identifiers in order of first appearance, verbatim, de-duplicated."""
        matches = self._identifier_re.finditer(text)
        return tuple(dict.fromkeys(m.group(0) for m in matches))

    def preprocess(
        self,
        raw_query: str,
        options: PreprocessOptions | None = None,
    ) -> QueryPlan:
        """
        Build the QueryPlan for a raw query.

        Args:
            raw_query: The query as typed by the caller.
            options: Overrides for the preprocessor's default options.

        Returns:
            QueryPlan whose first variant is always the original query.

        Raises:
            ValidationError: If the query is empty, too long or has no
                searchable terms.
        """
        options = options or self._default_options

        if raw_query is None or not raw_query.strip():
            raise ValidationError("Query must not be empty")
        if len(raw_query) > self._max_query_length:
            raise ValidationError(
                f"Query exceeds {self._max_query_length} characters "
                f"(got {len(raw_query)})"
            )

        identifiers = self.extract_identifiers(raw_query)

        if options.preserve_identifiers and identifiers:
            remainder = self._identifier_re.sub(" ", raw_query)
            normalized = normalize(remainder)
            suffix = " ".join(identifiers)
        else:
            normalized = normalize(raw_query)
            suffix = ""

        if not normalized and not suffix:
            raise ValidationError("Query has no searchable terms")

        texts: list[tuple[str, str]] = [(normalized, ORIGINAL_TAG)]
        try:
            texts.extend(self._expand(normalized, options))
        except Exception as e:
            self._log.warning(
                "query_expansion_failed",
                error=str(e),
                query=raw_query[:50],
            )

        variants = tuple(
            QueryVariant(text=_attach(text, suffix), tag=tag) for text, tag in texts
        )

        self._log.debug(
            "query_preprocessed",
            query=raw_query[:50],
            identifiers=list(identifiers),
            variant_count=len(variants),
        )

        return QueryPlan(
            raw=raw_query,
            normalized=normalized,
            identifiers=identifiers,
            variants=variants,
        )

    # =========================================================================
    # Expansion
    # =========================================================================

    def _expand(
        self,
        normalized: str,
        options: PreprocessOptions,
    ) -> list[tuple[str, str]]:
        """Expansion variants after the original, in output order."""
        if not normalized:
            return []

        expanded: list[tuple[str, str]] = []
        seen = {normalized}
        base = normalized

        if options.expand_abbreviations:
            abbreviated = self.expand_abbreviations(normalized)
            if abbreviated not in seen:
                expanded.append((abbreviated, ABBREVIATION_TAG))
                seen.add(abbreviated)
                base = abbreviated

        if options.expand_synonyms and options.max_synonym_variations > 0:
            count = 0
            for text in self._synonym_substitutions(base):
                if text in seen:
                    continue
                count += 1
                expanded.append((text, synonym_tag(count)))
                seen.add(text)
                if count >= options.max_synonym_variations:
                    break

        return expanded

    def expand_abbreviations(self, normalized: str) -> str:
        """Replace every known abbreviation token; unknown tokens pass through."""
        tokens = normalized.split(" ")
        return " ".join(self._dictionary.abbreviations.get(t, t) for t in tokens)

    def _synonym_substitutions(self, text: str) -> Iterator[str]:
        """Yield texts with one content word replaced by one of its synonyms."""
        tokens = text.split(" ")
        for index, token in enumerate(tokens):
            if token in STOPWORDS:
                continue
            for synonym in self._dictionary.synonyms.get(token, ()):
                yield " ".join(tokens[:index] + [synonym] + tokens[index + 1 :])


def _attach(text: str, suffix: str) -> str:
    return f"{text} {suffix}".strip() if suffix else text


def build_preprocessor(settings: Any) -> QueryPreprocessor:
    """Create a preprocessor from application settings."""
    if settings.expansion_dictionary_path:
        dictionary = ExpansionDictionary.from_json_file(
            settings.expansion_dictionary_path
        )
    else:
        dictionary = ExpansionDictionary.default()
    return QueryPreprocessor(
        dictionary=dictionary,
        identifier_pattern=settings.identifier_pattern,
        max_query_length=settings.max_query_length,
        default_options=PreprocessOptions(
            preserve_identifiers=settings.preserve_identifiers,
            max_synonym_variations=settings.max_synonym_variations,
        ),
    )


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "normalize",
    "ExpansionDictionary",
    "PreprocessOptions",
    "QueryPreprocessor",
    "build_preprocessor",
    "DEFAULT_ABBREVIATIONS",
    "DEFAULT_SYNONYMS",
]
