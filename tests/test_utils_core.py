# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from paygate.app.core.security_core import sign_payload, verify_signature
from paygate.app.core.utils_core import (
    canonical_json,
    decimal_from,
    ensure_aware,
    format_decimal_str,
    iso_utc,
    quantize_decimal,
    smallest_unit,
)


@pytest.mark.parametrize(
    "value, expected",
    [("100.000", "100"), ("0.00000001", "0.00000001"), (Decimal("1E+2"), "100"), (0, "0"), ("-0.0", "0")],
)
def test_format_decimal_str(value, expected):
    assert format_decimal_str(value) == expected


@pytest.mark.parametrize("value", ["abc", "", "NaN", "Infinity"])
def test_decimal_from_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        decimal_from(value)


def test_decimal_from_float_goes_through_str():
    assert decimal_from(0.1) == Decimal("0.1")


def test_quantize_never_rounds_up():
    assert quantize_decimal("1.239", 2) == Decimal("1.23")
    assert smallest_unit(6) == Decimal("0.000001")


def test_time_helpers():
    naive = datetime(2024, 1, 2, 3, 4, 5)

    assert ensure_aware(naive).tzinfo is timezone.utc
    assert ensure_aware(None) is None
    assert iso_utc(naive) == "2024-01-02T03:04:05Z"
    assert iso_utc(naive.replace(tzinfo=timezone(timedelta(hours=3)))) == "2024-01-02T00:04:05Z"


def test_canonical_json_is_stable():
    assert canonical_json({"b": 1, "a": {"d": "ё", "c": None}}) == '{"a":{"c":null,"d":"ё"},"b":1}'


def test_signature_accepts_prefixed_and_bare_hex():
    body = b'{"a":1}'
    header = sign_payload("s3cret", body)
    bare = header.split("=", 1)[1]

    assert header.startswith("sha256=")
    assert verify_signature("s3cret", body, header)
    assert verify_signature("s3cret", body, bare.upper())
    assert not verify_signature("other", body, header)
    assert not verify_signature("s3cret", body, None)
