import pytest

from scoreboard_bot.core.engines.similarity import levenshtein, similarity
from scoreboard_bot.core.engines.text_normalizer import fold_confusables, normalise


def test_normalise_keeps_letters_digits_and_diacritics():
    assert normalise("Żółw_123") == "żółw123"
    assert normalise("  Big Boss!! ") == "bigboss"
    assert normalise("") == ""
    assert normalise("©©") == ""


def test_fold_confusables_maps_diacritics_to_base_letters():
    assert fold_confusables("żółw123") == "zolw123"
    assert fold_confusables("abc") == "abc"


def test_similarity_equal_and_containment():
    assert similarity("alice", "alice") == 1.0
    assert similarity("ali", "alice") == 0.95
    assert similarity("alice", "ali") == 0.95


def test_similarity_levenshtein_with_length_bonus():
    # one substitution over 5 chars: 0.8 base + 0.1 length bonus
    assert similarity("alice", "alize") == pytest.approx(0.9)
    # three substitutions over 7 chars, equal length
    assert similarity("zolw123", "żółw123") == pytest.approx(1 - 3 / 7 + 0.1)


def test_similarity_is_capped_and_bounded():
    assert 0.0 <= similarity("abc", "xyz") <= 1.0
    assert similarity("abcd", "abce") <= 1.0
    assert similarity("", "abc") == pytest.approx(0.0)


def test_levenshtein_distance():
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3


@pytest.mark.parametrize(
    "value",
    ["Żółw_123", "  Big Boss!! ", "ĄĆĘŁŃÓŚŹŻ", "[TAG] Name-07", "Ω_Straße", "©©", "", "x" * 40],
)
def test_normalise_is_idempotent(value):
    once = normalise(value)

    assert normalise(once) == once
    assert fold_confusables(fold_confusables(once)) == fold_confusables(once)
