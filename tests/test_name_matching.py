import pytest

from name_matching import all_matches, best_match, clean_name, similarity


@pytest.mark.parametrize("raw, expected", [
    ("1. John Smith", "John Smith"),
    ("#2) Jane-Doe!!", "Jane Doe"),
    ("  3)   Bob    Johnson ", "Bob Johnson"),
    ("(4) Emily Davis", "Emily Davis"),
    ("Michael White", "Michael White"),
    ("", ""),
    ("12345", ""),
])
def test_clean_name(raw, expected):
    assert clean_name(raw) == expected


def test_clean_name_keeps_inner_digits_out():
    assert clean_name("Ali3ce  Smith") == "Ali ce Smith"


@pytest.mark.parametrize("text", ["", "a", "Alice", "Jane Doe", "  spaced  "])
def test_similarity_identity(text):
    assert similarity(text, text) == 1.0


@pytest.mark.parametrize("a, b", [
    ("Jon Doe", "John Doe"),
    ("kitten", "sitting"),
    ("", "abc"),
    ("Alice", "ALICIA"),
])
def test_similarity_symmetric_and_bounded(a, b):
    assert similarity(a, b) == similarity(b, a)
    assert 0.0 <= similarity(a, b) <= 1.0


def test_similarity_values():
    assert similarity("", "") == 1.0
    assert similarity("abc", "") == 0.0
    assert similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)
    assert similarity("ALICE", "alice") == 1.0


def test_best_match_prefers_closest():
    name, score = best_match("Jon Doe", ["John Doe", "Jane Smith"])
    assert name == "John Doe"
    assert score > similarity("jon doe", "Jane Smith")


def test_best_match_cleans_the_needle():
    assert best_match("1. alice", ["Alice", "Bob"]) == ("Alice", 1.0)


def test_best_match_empty_candidates():
    assert best_match("Alice", []) is None


def test_best_match_tie_keeps_first():
    assert best_match("Ann", ["Anna", "Anne"])[0] == "Anna"


def test_all_matches_threshold_and_order():
    roster = ["John Doe", "Jon Dow", "Jane Smith", "John Do"]
    hits = all_matches("John Doe", roster, threshold=0.7)
    assert hits[0] == ("John Doe", 1.0)
    assert all(score >= 0.7 for _, score in hits)
    scores = [s for _, s in hits]
    assert scores == sorted(scores, reverse=True)
    assert "Jane Smith" not in [n for n, _ in hits]


def test_all_matches_stable_on_ties():
    hits = all_matches("Ann", ["Anne", "Anna", "Bob"], threshold=0.5)
    assert [n for n, _ in hits] == ["Anne", "Anna"]


def test_all_matches_default_threshold():
    assert all_matches("Zed", ["Alice", "Bob"]) == []
