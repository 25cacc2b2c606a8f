"""Tests for the pure derivation helpers in reconciliation/helpers.py."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest

from apps.payment_webhook.reconciliation.helpers import (
    all_matches,
    first_match,
    format_iso,
    humanize,
    merge_metadata,
    metadata_entries,
    normalize_email,
    order_number_from_session_id,
    parse_timestamp,
    ref_id,
    safe_json_dumps,
    sanitize_order_number,
    slugify,
    split_name,
    to_decimal,
    to_major_units,
    unix_to_iso,
)


class TestMoney:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (5000, Decimal("50.00")),
            ("1999", Decimal("19.99")),
            (1, Decimal("0.01")),
            (0, Decimal("0.00")),
            (None, None),
            ("abc", None),
            (True, None),
        ],
    )
    def test_to_major_units(self, value: Any, expected: Decimal | None) -> None:
        assert to_major_units(value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("$1,250.50", Decimal("1250.50")),
            (" 12 ", Decimal("12")),
            (3.5, Decimal("3.5")),
            ("nan", None),
            ("", None),
        ],
    )
    def test_to_decimal(self, value: Any, expected: Decimal | None) -> None:
        assert to_decimal(value) == expected


class TestTimestamps:
    def test_seconds_and_milliseconds_agree(self) -> None:
        """Values above 1e10 are treated as milliseconds."""
        assert parse_timestamp(1714557600) == parse_timestamp(1714557600000)

    def test_numeric_string_is_accepted(self) -> None:
        assert parse_timestamp("1714557600") == datetime(2024, 5, 1, 10, 0, tzinfo=UTC)

    def test_iso_string_is_accepted(self) -> None:
        assert parse_timestamp("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, 0, tzinfo=UTC)

    @pytest.mark.parametrize("value", [0, -5, None, "", "not a date", False])
    def test_unusable_values_yield_none(self, value: Any) -> None:
        assert unix_to_iso(value) is None

    def test_format_iso_uses_z_suffix_and_milliseconds(self) -> None:
        moment = datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=UTC)
        assert format_iso(moment) == "2024-05-01T10:00:00.123Z"


class TestOrderNumbers:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("FAS-123456", "FAS-123456"),
            (" fas-000042 ", "FAS-000042"),
            ("INV-2024-0098765", "FAS-098765"),
            ("12345", None),
            (None, None),
        ],
    )
    def test_sanitize_order_number(self, value: Any, expected: str | None) -> None:
        assert sanitize_order_number(value) == expected

    def test_session_prefix_is_stripped_before_taking_digits(self) -> None:
        assert order_number_from_session_id("cs_test_a1b2c3123456") == "FAS-123456"
        assert order_number_from_session_id("cs_live_9999999") == "FAS-999999"

    def test_session_without_enough_digits(self) -> None:
        assert order_number_from_session_id("cs_test_abc") is None


class TestText:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("FAS-123456", "fas-123456"),
            ("  Turbo   Kit / Stage 2 ", "turbo-kit-stage-2"),
            ("---", None),
            (None, None),
        ],
    )
    def test_slugify(self, value: Any, expected: str | None) -> None:
        assert slugify(value) == expected

    def test_slugify_respects_max_length(self) -> None:
        assert slugify("a" * 200) == "a" * 96

    def test_normalize_email(self) -> None:
        assert normalize_email("  Buyer@Example.COM ") == "buyer@example.com"
        assert normalize_email("not-an-email") is None

    def test_split_name_keeps_remaining_tokens_as_last_name(self) -> None:
        assert split_name("Mary Ann Smith") == ("Mary", "Ann Smith")
        assert split_name("Cher") == ("Cher", None)
        assert split_name("  ") == (None, None)

    def test_humanize(self) -> None:
        assert humanize("vehicle_model") == "Vehicle Model"
        assert humanize("insufficient_funds") == "Insufficient Funds"

    def test_ref_id_reads_ids_and_expanded_objects(self) -> None:
        assert ref_id("pi_1") == "pi_1"
        assert ref_id({"id": "pi_2", "object": "payment_intent"}) == "pi_2"
        assert ref_id(None) is None

    def test_safe_json_dumps_truncates(self) -> None:
        text = safe_json_dumps({"blob": "x" * 100}, limit=40)
        assert text is not None
        assert len(text) == 40
        assert text.endswith("...")


class TestMetadataSynonyms:
    def test_first_match_follows_synonym_order(self) -> None:
        metadata = {"orderId": "order-b", "sanity_order_id": "order-a"}
        assert first_match(metadata, "order_id") == "order-a"

    def test_blank_values_are_skipped(self) -> None:
        assert first_match({"sku": "  ", "product_sku": "SKU-1"}, "sku") == "SKU-1"

    def test_all_matches_deduplicates(self) -> None:
        metadata = {"sku": "A", "SKU": "A", "item_sku": "B"}
        assert all_matches(metadata, "sku") == ["A", "B"]

    def test_unknown_field_raises(self) -> None:
        with pytest.raises(KeyError):
            first_match({}, "not_a_field")

    def test_merge_metadata_first_source_wins(self) -> None:
        merged = merge_metadata({"a": "1"}, {"a": "2", "b": "3"}, None, {"c": ""})
        assert merged == {"a": "1", "b": "3"}

    def test_metadata_entries_have_unique_keys(self) -> None:
        entries = metadata_entries({"Order Id": "1", "order-id": "2"})
        assert [entry["_key"] for entry in entries] == ["order-id", "order-id-2"]
        assert entries[0] == {"_key": "order-id", "key": "Order Id", "value": "1"}
