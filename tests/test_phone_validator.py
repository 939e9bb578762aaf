"""Tests for phone number normalization utilities."""

import pytest

from app.services.errors import InvalidFormat
from app.utils.phone_validator import is_e164, normalize_phone, validate_phone

COMMON_FORMATS = [
    "(202) 555-1234",
    "202-555-1234",
    "202.555.1234",
    "2025551234",
    "12025551234",
    "1 202 555 1234",
    "+1 (202) 555-1234",
    "+12025551234",
    "  202 555 1234  ",
]


class TestNormalizePhone:
    @pytest.mark.parametrize("raw", COMMON_FORMATS)
    def test_common_formats(self, raw):
        assert normalize_phone(raw) == "+12025551234"

    @pytest.mark.parametrize("raw", [*COMMON_FORMATS, "(212) 555-0199", "+1 415 555 0100"])
    def test_idempotent(self, raw):
        once = normalize_phone(raw)
        assert normalize_phone(once) == once

    def test_empty_rejected(self):
        with pytest.raises(InvalidFormat) as exc_info:
            normalize_phone("")
        assert "required" in exc_info.value.message.lower()

    def test_none_rejected(self):
        with pytest.raises(InvalidFormat):
            normalize_phone(None)

    def test_letters_rejected(self):
        with pytest.raises(InvalidFormat):
            normalize_phone("555-BAD")

    def test_too_short(self):
        with pytest.raises(InvalidFormat):
            normalize_phone("555-1234")

    def test_eleven_digits_without_country_code(self):
        with pytest.raises(InvalidFormat):
            normalize_phone("22025551234")

    def test_area_code_starting_with_one(self):
        with pytest.raises(InvalidFormat) as exc_info:
            normalize_phone("(102) 555-1234")
        assert "area code" in exc_info.value.message.lower()

    def test_exchange_starting_with_zero(self):
        with pytest.raises(InvalidFormat):
            normalize_phone("202-055-1234")

    def test_other_country_rejected(self):
        with pytest.raises(InvalidFormat):
            normalize_phone("+44 20 7946 0958")

    def test_too_long_input(self):
        with pytest.raises(InvalidFormat) as exc_info:
            normalize_phone("2" * 40)
        assert "too long" in exc_info.value.message.lower()

    def test_error_code(self):
        with pytest.raises(InvalidFormat) as exc_info:
            normalize_phone("abc")
        assert exc_info.value.code == "INVALID_FORMAT"
        assert exc_info.value.status_code == 400


class TestValidatePhone:
    def test_valid(self):
        is_valid, error = validate_phone("202-555-1234")
        assert is_valid is True
        assert error is None

    def test_invalid(self):
        is_valid, error = validate_phone("not a number")
        assert is_valid is False
        assert error


class TestIsE164:
    def test_canonical(self):
        assert is_e164("+12025551234") is True

    def test_formatted(self):
        assert is_e164("(202) 555-1234") is False
