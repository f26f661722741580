"""Unit tests for the similarity matcher."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from services.similarity import (
    PageTokens,
    count_exact_matches,
    count_fuzzy_matches,
    levenshtein_distance,
    similarity,
    tokenize,
)


class TestLevenshteinDistance:
    """Test suite for levenshtein_distance."""

    def test_classic_example(self):
        assert levenshtein_distance("kitten", "sitting") == 3

    def test_identical_strings(self):
        assert levenshtein_distance("lumbar", "lumbar") == 0

    def test_against_empty_string(self):
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("abc", "") == 3

    def test_single_substitution(self):
        assert levenshtein_distance("diagnosis", "diagnosls") == 1


class TestSimilarity:
    """Test suite for similarity."""

    @pytest.mark.parametrize("text", ["", "a", "MRI", "lumbar radiculopathy"])
    def test_reflexive(self, text):
        assert similarity(text, text) == 1.0

    @pytest.mark.parametrize("a,b", [
        ("kitten", "sitting"),
        ("diagnosis", "treatment"),
        ("", "pain"),
        ("Spine", "spin"),
    ])
    def test_symmetric(self, a, b):
        assert similarity(a, b) == similarity(b, a)

    def test_both_empty(self):
        assert similarity("", "") == 1.0

    def test_case_insensitive(self):
        assert similarity("MRI", "mri") == 1.0

    def test_range(self):
        score = similarity("diagnosis", "treatment")
        assert 0.0 <= score < 1.0


class TestTokenize:
    """Test suite for tokenize."""

    def test_strips_punctuation(self):
        assert tokenize("Pain, (lumbar) spine.") == ["Pain", "lumbar", "spine"]

    def test_drops_empty_tokens(self):
        assert tokenize("  -- MRI  ") == ["MRI"]

    def test_windows(self):
        tokens = PageTokens("chest pain noted today")
        assert tokens.windows(2) == ["chest pain", "pain noted", "noted today"]
        assert tokens.windows(5) == []


class TestFuzzyMatching:
    """Test suite for count_fuzzy_matches."""

    def test_accepts_one_substitution(self):
        assert count_fuzzy_matches("diagnosis", PageTokens("Final diagnosls attached")) == 1

    def test_rejects_unrelated_word(self):
        assert count_fuzzy_matches("diagnosis", PageTokens("treatment plan")) == 0

    def test_counts_every_matching_token(self):
        page = PageTokens("Diagnosis: lumbago. Secondary diagnosis pending, diagnosls typo")
        assert count_fuzzy_matches("diagnosis", page) == 3

    def test_multi_word_term(self):
        assert count_fuzzy_matches("chest pain", PageTokens("Patient reports chest paln.")) == 1

    def test_custom_threshold(self):
        page = PageTokens("spin")
        assert count_fuzzy_matches("spine", page, threshold=0.8) == 1
        assert count_fuzzy_matches("spine", page, threshold=0.9) == 0

    def test_empty_term(self):
        assert count_fuzzy_matches("  ", PageTokens("anything")) == 0


class TestExactMatching:
    """Test suite for count_exact_matches."""

    def test_case_insensitive_whole_words(self):
        assert count_exact_matches("apple", "Apple pie and apple tart") == 2

    def test_no_partial_words(self):
        assert count_exact_matches("apple", "pineapple applesauce") == 0

    def test_multi_word_term(self):
        assert count_exact_matches("lumbar spine", "MRI of the Lumbar Spine") == 1

    def test_date_is_not_found_inside_longer_date(self):
        assert count_exact_matches("3/20/2023", "Seen 03/20/2023") == 0
        assert count_exact_matches("03/20/2023", "Seen 03/20/2023.") == 1

    def test_special_characters_are_literal(self):
        assert count_exact_matches("C5-C6", "Disc bulge at C5-C6 level") == 1
        assert count_exact_matches("a.b", "axb") == 0
