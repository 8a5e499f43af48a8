"""
Tests for phone number normalization.
"""
import pytest

from app.utils.phone import normalize_phone


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("06 12 34 56 78", "+33612345678"),
            ("06.12.34.56.78", "+33612345678"),
            ("0612345678", "+33612345678"),
            ("+33 6 12 34 56 78", "+33612345678"),
            ("0033612345678", "+33612345678"),
            ("33612345678", "+33612345678"),
            ("p:+33612345678", "+33612345678"),
            ("T: 06 12 34 56 78", "+33612345678"),
            ("+44 20 7946 1234", "+442079461234"),
            ("0032 2 123 45 67", "+3221234567"),
        ],
    )
    def test_formats(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_unrecognized_lengths_keep_digits(self):
        assert normalize_phone("12 34 56") == "123456"

    @pytest.mark.parametrize("raw", [None, "", "   ", "n/a", "p:"])
    def test_no_digits(self, raw):
        assert normalize_phone(raw) is None

    def test_numeric_cell(self):
        assert normalize_phone(612345678) == "612345678"
