"""Tests for join-key normalization helpers."""

from __future__ import annotations

import pytest

from src.crm_linker.linking.normalize import (
    email_domain,
    normalize_domain,
    normalize_email,
    normalize_key,
)
from src.crm_linker.linking.schemas import coverage_pct


class TestNormalizeKey:
    def test_lowercases_and_trims(self) -> None:
        assert normalize_key("  Acme.COM \t") == "acme.com"

    @pytest.mark.parametrize("value", [None, "", "   ", "\n"])
    def test_empty_values_have_no_key(self, value: str | None) -> None:
        assert normalize_key(value) is None

    def test_email_and_domain_share_normalization(self) -> None:
        assert normalize_email(" Jane.Doe@Acme.com ") == "jane.doe@acme.com"
        assert normalize_domain("ACME.com ") == "acme.com"

    def test_does_not_strip_www(self) -> None:
        """Only case and whitespace are normalized; no fuzzy rewriting."""
        assert normalize_domain("www.acme.com") == "www.acme.com"


class TestEmailDomain:
    def test_extracts_domain_after_at(self) -> None:
        assert email_domain("a@acme.com") == "acme.com"

    def test_mixed_case_and_padding(self) -> None:
        assert email_domain("  Bob@ACME.Com  ") == "acme.com"

    def test_whitespace_around_domain_part(self) -> None:
        assert email_domain("bob@ acme.com ") == "acme.com"

    @pytest.mark.parametrize("value", [None, "", "not-an-email", "bob@", "bob@   "])
    def test_no_usable_domain(self, value: str | None) -> None:
        assert email_domain(value) is None

    def test_uses_segment_after_first_at(self) -> None:
        assert email_domain("odd@acme.com@other.org") == "acme.com"


class TestCoveragePct:
    def test_zero_total_is_zero(self) -> None:
        assert coverage_pct(0, 0) == 0.0

    def test_one_decimal_place(self) -> None:
        assert coverage_pct(1, 3) == 33.3
        assert coverage_pct(2, 3) == 66.7

    def test_rounds_half_up(self) -> None:
        # 1/16 = 6.25%; banker's rounding would give 6.2
        assert coverage_pct(1, 16) == 6.3

    def test_full_coverage(self) -> None:
        assert coverage_pct(7, 7) == 100.0
