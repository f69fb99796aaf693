import pytest

from epic.similarity import levenshtein_distance, similarity_score

class TestLevenshteinDistance:
    """Edit distance between two strings"""

    def test_identical_strings(self):
        assert levenshtein_distance("smith", "smith") == 0

    def test_empty_side_costs_full_length(self):
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("abc", "") == 3
        assert levenshtein_distance("", "") == 0

    def test_classic_examples(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("flaw", "lawn") == 2

    def test_symmetric(self):
        assert levenshtein_distance("OR 1", "Operating Room 1") == levenshtein_distance("Operating Room 1", "OR 1")

    def test_single_edits(self):
        assert levenshtein_distance("smith", "smyth") == 1
        assert levenshtein_distance("smith", "smiths") == 1
        assert levenshtein_distance("smith", "mith") == 1

class TestSimilarityScore:
    """Normalized 0-1 name similarity"""

    def test_case_and_whitespace_insensitive(self):
        assert similarity_score("  SMITH, John ", "smith, john") == 1.0

    def test_identical_blanks_score_one(self):
        assert similarity_score("", "") == 1.0
        assert similarity_score("   ", "") == 1.0
        assert similarity_score(None, None) == 1.0

    def test_one_blank_side_never_matches(self):
        assert similarity_score("Smith", "") == 0.0
        assert similarity_score(None, "Smith") == 0.0

    def test_single_substitution(self):
        # 1 edit over 5 characters
        assert similarity_score("Smith", "Smyth") == pytest.approx(0.8)

    def test_completely_different(self):
        assert similarity_score("abc", "xyz") == 0.0

    def test_score_in_range(self):
        for a, b in [("OR 1", "OR 12"), ("Room A", "Room B"), ("Knee", "Total Knee Replacement")]:
            score = similarity_score(a, b)
            assert 0.0 <= score <= 1.0

    def test_symmetric(self):
        for a, b in [("Smith, John", "Smyth, Jon"), ("OR 1", "Operating Room 1"), ("Knee", ""), ("ABC", "abd ")]:
            assert similarity_score(a, b) == similarity_score(b, a)
