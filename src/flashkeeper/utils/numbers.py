#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""Integer basis-point and fixed-point helpers. All amounts are base units."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterator, List, Sequence, TypeVar, Union

T = TypeVar("T")

BPS_DENOMINATOR = 10_000
WAD = 10**18


def bps_of(value: int, bps: int) -> int:
    """``value * bps / 10000``, rounded down."""
    return (int(value) * int(bps)) // BPS_DENOMINATOR


def add_bps(value: int, bps: int) -> int:
    """Inflate ``value`` by ``bps`` basis points, rounded down."""
    return (int(value) * (BPS_DENOMINATOR + int(bps))) // BPS_DENOMINATOR


def sub_bps(value: int, bps: int) -> int:
    """Deflate ``value`` by ``bps`` basis points, rounded down."""
    return (int(value) * (BPS_DENOMINATOR - int(bps))) // BPS_DENOMINATOR


def from_fixed_point(raw: Union[int, str], decimals: int = 18) -> Decimal:
    """Convert an on-chain fixed-point integer to a Decimal."""
    return Decimal(int(raw)) / (Decimal(10) ** decimals)


def to_fixed_point(value: Union[Decimal, int, float, str], decimals: int = 18) -> int:
    return int(Decimal(str(value)) * (Decimal(10) ** decimals))


def to_usd(amount: int, decimals: int, price: int, price_decimals: int) -> Decimal:
    """Value ``amount`` base units at an oracle ``price`` with its own decimals."""
    return from_fixed_point(amount, decimals) * from_fixed_point(price, price_decimals)


def iter_batches(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of ``items`` of at most ``size`` elements."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])
