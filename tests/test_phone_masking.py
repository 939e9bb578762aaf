"""Tests for phone masking utility."""

from app.utils.phone_masking import mask_phone


class TestMaskPhone:
    def test_e164(self):
        assert mask_phone("+12025551234") == "+1202***1234"

    def test_ten_digits(self):
        assert mask_phone("2025551234") == "202***1234"

    def test_short_value(self):
        assert mask_phone("1234") == "***"

    def test_empty(self):
        assert mask_phone("") == "***"

    def test_none(self):
        assert mask_phone(None) == "***"

    def test_never_contains_full_number(self):
        assert "5551234" not in mask_phone("+12025551234")
