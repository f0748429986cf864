from __future__ import annotations

import json
from pathlib import Path

import pytest

from testcase_search.config import get_settings
from testcase_search.errors import ValidationError
from testcase_search.retrieval.query_preprocessor import (
    ExpansionDictionary,
    PreprocessOptions,
    QueryPreprocessor,
    build_preprocessor,
    normalize,
)
from testcase_search.retrieval.types import ABBREVIATION_TAG, ORIGINAL_TAG


@pytest.fixture
def preprocessor() -> QueryPreprocessor:
    dictionary = ExpansionDictionary.from_mapping(
        {
            "abbreviations": {"pwd": "password"},
            "synonyms": {
                "password": [
                    "passcode",
                    "credentials",
                    "secret",
                    "pin",
                    "key",
                    "token",
                ],
            },
        }
    )
    return QueryPreprocessor(dictionary)


@pytest.mark.parametrize(
    "raw",
    [
        "  Login, FAILS (SSO)!  ",
        "pwd_reset -- TC-101",
        "ÜBER\tcheckout\n\nflow",
        "",
    ],
)
def test_normalize_is_idempotent(raw: str) -> None:
    once = normalize(raw)

    assert normalize(once) == once


def test_normalize_lowercases_and_strips_punctuation() -> None:
    assert normalize("  Login, FAILS (SSO)!  ") == "login fails sso"


def test_abbreviation_and_synonym_variants(preprocessor: QueryPreprocessor) -> None:
    plan = preprocessor.preprocess("pwd reset")

    assert plan.variants[0].text == "pwd reset"
    assert plan.variants[0].tag == ORIGINAL_TAG
    assert plan.variants[1].text == "password reset"
    assert plan.variants[1].tag == ABBREVIATION_TAG

    synonyms = plan.variants[2:]
    assert 1 <= len(synonyms) <= 5
    assert synonyms[0].text == "passcode reset"
    expected_tags = [f"synonym-{i}" for i in range(1, len(synonyms) + 1)]
    assert [v.tag for v in synonyms] == expected_tags


def test_synonym_variations_are_capped(preprocessor: QueryPreprocessor) -> None:
    plan = preprocessor.preprocess(
        "pwd reset", PreprocessOptions(max_synonym_variations=2)
    )

    assert len(plan.variants) == 4


def test_original_variant_only_when_nothing_expands(
    preprocessor: QueryPreprocessor,
) -> None:
    plan = preprocessor.preprocess("checkout flow")

    assert [v.text for v in plan.variants] == ["checkout flow"]


def test_variants_are_unique(preprocessor: QueryPreprocessor) -> None:
    plan = preprocessor.preprocess("password password")

    texts = [v.text for v in plan.variants]
    assert len(texts) == len(set(texts))


def test_identifiers_are_preserved_verbatim(preprocessor: QueryPreprocessor) -> None:
    plan = preprocessor.preprocess("pwd reset for TC-101 and JIRA-22")

    assert plan.identifiers == ("TC-101", "JIRA-22")
    for variant in plan.variants:
        assert variant.text.endswith("TC-101 JIRA-22")
    assert plan.variants[1].text.startswith("password reset")


def test_identifiers_are_normalized_when_not_preserved(
    preprocessor: QueryPreprocessor,
) -> None:
    plan = preprocessor.preprocess(
        "Check TC-101", PreprocessOptions(preserve_identifiers=False)
    )

    assert plan.identifiers == ("TC-101",)
    assert plan.original.text == "check tc-101"


def test_identifier_only_query(preprocessor: QueryPreprocessor) -> None:
    plan = preprocessor.preprocess("TC-101")

    assert plan.original.text == "TC-101"


@pytest.mark.parametrize("raw", ["", "   ", "!!! ???"])
def test_rejects_queries_without_terms(
    preprocessor: QueryPreprocessor, raw: str
) -> None:
    with pytest.raises(ValidationError):
        preprocessor.preprocess(raw)


def test_rejects_overlong_query() -> None:
    preprocessor = QueryPreprocessor(max_query_length=10)

    with pytest.raises(ValidationError, match="exceeds 10 characters"):
        preprocessor.preprocess("a much longer query than allowed")


def test_expansion_failure_falls_back_to_original(
    preprocessor: QueryPreprocessor, monkeypatch: pytest.MonkeyPatch
) -> None:
    def explode(*_args: object) -> list:
        raise RuntimeError("dictionary corrupted")

    monkeypatch.setattr(preprocessor, "_expand", explode)

    plan = preprocessor.preprocess("pwd reset")

    assert [v.text for v in plan.variants] == ["pwd reset"]


def test_dictionary_keys_are_normalized() -> None:
    dictionary = ExpansionDictionary.from_mapping(
        {"abbreviations": {" PWD ": "Password"}, "synonyms": {"Reset": "Recover"}}
    )

    assert dict(dictionary.abbreviations) == {"pwd": "password"}
    assert dict(dictionary.synonyms) == {"reset": ("recover",)}


def test_dictionary_is_immutable() -> None:
    dictionary = ExpansionDictionary.default()

    with pytest.raises(TypeError):
        dictionary.abbreviations["new"] = "value"  # type: ignore[index]


def test_build_preprocessor_loads_dictionary_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "expansions.json"
    path.write_text(json.dumps({"abbreviations": {"chk": "checkout"}}))
    monkeypatch.setenv("EXPANSION_DICTIONARY_PATH", str(path))
    get_settings.cache_clear()

    preprocessor = build_preprocessor(get_settings())
    plan = preprocessor.preprocess("chk flow")

    assert plan.variants[1].text == "checkout flow"
