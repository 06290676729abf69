from decimal import Decimal

import pytest
from bson.decimal128 import Decimal128

from app.utils.money import (
    to_decimal, quantize_amount, to_minor_units, from_minor_units, to_decimal128, to_float
)


def test_to_decimal_accepts_strings_ints_floats_and_decimal128():
    assert to_decimal("500.00") == Decimal("500.00")
    assert to_decimal(500) == Decimal("500")
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal(Decimal128("450.50")) == Decimal("450.50")
    assert to_decimal(None) is None


def test_to_decimal_rejects_garbage():
    with pytest.raises(ValueError):
        to_decimal("five hundred")


def test_quantize_rounds_half_up():
    assert quantize_amount("2.345") == Decimal("2.35")
    assert quantize_amount("2.344") == Decimal("2.34")
    assert quantize_amount(10) == Decimal("10.00")


def test_minor_units_have_no_float_drift():
    assert to_minor_units("450.00") == 45000
    assert to_minor_units(0.29) == 29
    assert to_minor_units("19.999") == 2000
    assert to_minor_units(Decimal128("420.00")) == 42000
    assert from_minor_units(45000) == Decimal("450.00")
    assert from_minor_units(None) is None


def test_storage_helpers():
    stored = to_decimal128("80")
    assert isinstance(stored, Decimal128)
    assert stored.to_decimal() == Decimal("80.00")
    assert to_decimal128(None) is None
    assert to_float(stored) == 80.0
    assert to_float(None) is None
