from __future__ import annotations

import pytest

from testcase_search.utils.bm25_encoder import BM25Encoder, BM25EncoderError


@pytest.fixture
def encoder() -> BM25Encoder:
    return BM25Encoder()


def test_encode_returns_parallel_sorted_lists(encoder: BM25Encoder) -> None:
    sparse = encoder.encode("login fails after password reset")

    assert len(sparse["indices"]) == len(sparse["values"])
    assert sparse["indices"] == sorted(sparse["indices"])
    assert all(0 <= i < 2**31 - 1 for i in sparse["indices"])
    assert all(v > 0 for v in sparse["values"])


def test_encoding_is_deterministic(encoder: BM25Encoder) -> None:
    assert encoder.encode("verify checkout") == BM25Encoder().encode("verify checkout")


@pytest.mark.parametrize("text", ["", "   ", "the and of", "a b c"])
def test_empty_or_stopword_only_text(encoder: BM25Encoder, text: str) -> None:
    assert encoder.encode(text) == {"indices": [], "values": []}


def test_identifier_tokens_stay_whole(encoder: BM25Encoder) -> None:
    assert encoder._tokenize("Verify TC-101 login, the happy path") == [
        "verify",
        "tc-101",
        "login",
        "happy",
        "path",
    ]


def test_misspelled_query_matches_through_fuzzy_features(encoder: BM25Encoder) -> None:
    query = encoder.encode("pasword")
    doc = encoder.encode_document({"title": "Password reset"})

    assert encoder.dot(query, doc) > 0


def test_fuzzy_features_can_be_disabled() -> None:
    encoder = BM25Encoder(fuzzy_max_edits=0)
    query = encoder.encode("pasword")
    doc = encoder.encode_document({"title": "Password reset"})

    assert encoder.dot(query, doc) == 0


def test_invalid_fuzzy_edits_rejected() -> None:
    with pytest.raises(BM25EncoderError):
        BM25Encoder(fuzzy_max_edits=2)


def test_field_boosts_rank_title_hits_above_step_hits(encoder: BM25Encoder) -> None:
    query = encoder.encode("checkout")
    title_hit = encoder.encode_document({"title": "Checkout", "steps": "open cart"})
    step_hit = encoder.encode_document({"title": "Cart", "steps": "checkout"})

    assert encoder.dot(query, title_hit) > encoder.dot(query, step_hit)


def test_document_boost_overrides(encoder: BM25Encoder) -> None:
    query = encoder.encode("checkout")
    fields = {"steps": "checkout"}

    boosted = encoder.encode_document(fields, boosts={"steps": 4.0})

    assert encoder.dot(query, boosted) == pytest.approx(
        4.0 * encoder.dot(query, encoder.encode_document(fields))
    )


def test_encode_batch(encoder: BM25Encoder) -> None:
    results = encoder.encode_batch(["login", ""])

    assert results[0]["indices"]
    assert results[1] == {"indices": [], "values": []}
