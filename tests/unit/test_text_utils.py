"""
Unit tests for fact_memory/memory/text_utils.py
"""
import pytest

from fact_memory.memory.text_utils import (
    edit_similarity,
    key_base,
    keyword_similarity,
    keywords,
    levenshtein,
    normalize_slug,
    normalize_text,
    semantic_group,
    semantic_similarity,
    trigram_similarity,
)


@pytest.mark.parametrize("raw, slug", [
    ("Lieblings-Farbe", "lieblings_farbe"),
    ("  Müller ", "mueller"),
    ("Straße", "strasse"),
    ("Café Crème", "cafe_creme"),
    ("__name__", "name"),
    ("!!!", ""),
])
def test_normalize_slug(raw, slug):
    assert normalize_slug(raw) == slug


def test_normalize_text_drops_filler_and_punctuation():
    assert normalize_text("Die  Lieblingsfarbe ist   sehr blau!") == "lieblingsfarbe ist blau"


def test_levenshtein():
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert levenshtein("same", "same") == 0


def test_edit_similarity_bounds():
    assert edit_similarity("abc", "abc") == 1.0
    assert edit_similarity("abc", "xyz") == 0.0
    assert edit_similarity("", "") == 0.0


def test_trigram_similarity():
    assert trigram_similarity("blau", "blau") == 1.0
    assert trigram_similarity("blau", "") == 0.0
    assert 0.0 < trigram_similarity("lieblingsfarbe", "lieblingsessen") < 1.0


def test_keywords_ignore_stopwords():
    assert keywords("Ich mag die Berge und das Meer") == {"mag", "berge", "meer"}
    assert keyword_similarity("Berge Meer", "Meer Berge") == 1.0


def test_semantic_similarity_identity_and_empty():
    assert semantic_similarity("Lieblingsfarbe blau", "lieblingsfarbe BLAU") == 1.0
    assert semantic_similarity("", "blau") == 0.0


def test_semantic_similarity_prefers_related_text():
    query = "Welche Lieblingsfarbe habe ich?"
    related = semantic_similarity(query, "lieblingsfarbe blau")
    unrelated = semantic_similarity(query, "beruf lehrer")

    assert related > unrelated
    assert 0.0 <= unrelated <= related <= 1.0


@pytest.mark.parametrize("key, group", [
    ("name", "name"),
    ("vorname", "name"),
    ("arbeitet_als", "beruf"),
    ("job", "beruf"),
    ("lebt_in", "wohnort"),
    ("mag_essen", "mag"),
    ("lieblingsfarbe", None),
])
def test_semantic_group(key, group):
    assert semantic_group(key) == group


def test_key_base_falls_back_to_whole_slug():
    assert key_base("vorname") == "name"
    assert key_base("lieblingsfarbe_auto") == "lieblingsfarbe_auto"
    assert key_base("Lieblings-Essen") == "lieblings_essen"
    assert key_base("web_server_host") != key_base("web_server_ip")
