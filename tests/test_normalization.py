"""Tests for string normalization utility."""

from carddav_sync.utils.normalization import (
    PLACEHOLDER_NAME,
    build_display_name,
    collapse_whitespace,
    normalize_label,
)


class TestCollapseWhitespace:
    """Test whitespace collapsing."""

    def test_empty_and_none(self):
        """Empty values should return an empty string."""
        assert collapse_whitespace("") == ""
        assert collapse_whitespace(None) == ""

    def test_internal_runs_collapsed(self):
        """Tabs, newlines and repeated spaces become single spaces."""
        assert collapse_whitespace("  a \t b\n\nc  ") == "a b c"


class TestNormalizeLabel:
    """Test type label normalization."""

    def test_none_stays_none(self):
        assert normalize_label(None) is None

    def test_blank_becomes_none(self):
        assert normalize_label("   ") is None

    def test_known_label_lowercased(self):
        """Enumerated labels compare case-insensitively."""
        assert normalize_label("WORK") == "work"
        assert normalize_label(" Cell ") == "cell"

    def test_custom_label_keeps_case(self):
        """Free-text labels keep their casing."""
        assert normalize_label("Grandma's  House") == "Grandma's House"

    def test_unicode_composed(self):
        """Decomposed characters are composed so labels compare equal."""
        assert normalize_label("Cafe\u0301") == "Caf\u00e9"


class TestBuildDisplayName:
    """Test display name derivation."""

    def test_parts_joined_in_order(self):
        assert build_display_name("Dr.", "Alice", None, "Smith", "", "PhD") == (
            "Dr. Alice Smith PhD"
        )

    def test_parts_are_stripped(self):
        assert build_display_name(" Alice ", "  ") == "Alice"

    def test_nickname_fallback(self):
        """The nickname is used when there are no name parts."""
        assert build_display_name(None, None, nickname=" Ali ") == "Ali"

    def test_placeholder_fallback(self):
        """The placeholder is used when there is nothing else."""
        assert build_display_name(None, nickname="  ") == PLACEHOLDER_NAME
        assert PLACEHOLDER_NAME == "Unknown Contact"
