"""
Dictionary predicates over rows.

Filter form (same shape as the columnar filters used elsewhere in the
stack):
    {"field": value}                       equality
    {"field": [v1, v2]}                    membership
    {"field": {">=": a, "<": b, "!=": c}}  comparisons

The field "key" addresses the record key; any other field addresses the
payload. A row missing a field never matches a condition on it.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pyarrow as pa
import pyarrow.compute as pc

from .registry.types import KeyRange

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "=": lambda a, b: a == b,
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
}

_MISSING = object()


class Predicate:
    """Compiled dict predicate.

    Example:
        >>> p = Predicate({"key": {">=": 10}, "status": ["ok", "warn"]})
        >>> p.matches(12, {"status": "ok"})
        True
    """

    def __init__(self, conditions: dict[str, Any] | None = None) -> None:
        self.source = dict(conditions or {})
        self._conditions: list[tuple[str, str, Any]] = []
        for name, value in self.source.items():
            if not isinstance(name, str):
                raise ValueError(f"Predicate field names must be strings, got {name!r}")
            if isinstance(value, dict):
                for op, operand in value.items():
                    if op not in _OPERATORS:
                        raise ValueError(f"Unsupported operator {op!r} on field {name!r}")
                    self._conditions.append((name, op, operand))
            elif isinstance(value, (list, tuple)):
                self._conditions.append((name, "in", list(value)))
            else:
                self._conditions.append((name, "=", value))

    def __bool__(self) -> bool:
        return bool(self._conditions)

    def matches(self, key: int, payload: dict[str, Any]) -> bool:
        for name, op, operand in self._conditions:
            value = key if name == "key" else payload.get(name, _MISSING)
            if value is _MISSING:
                return False
            try:
                if op == "in":
                    if value not in operand:
                        return False
                elif not _OPERATORS[op](value, operand):
                    return False
            except TypeError:
                return False
        return True

    def key_range(self) -> KeyRange | None:
        """Tightest key bounds implied by conditions on "key" (None if unbounded)."""
        low: int | None = None
        high: int | None = None
        for name, op, operand in self._conditions:
            if name != "key" or not isinstance(operand, int):
                continue
            if op in (">=", ">"):
                bound = operand if op == ">=" else operand + 1
                low = bound if low is None else max(low, bound)
            elif op in ("<", "<="):
                bound = operand if op == "<" else operand + 1
                high = bound if high is None else min(high, bound)
            elif op in ("=", "=="):
                low = operand if low is None else max(low, operand)
                high = operand + 1 if high is None else min(high, operand + 1)
        if low is None and high is None:
            return None
        return _bounded(low, high)

    def key_mask(self, table: pa.Table) -> pa.ChunkedArray | None:
        """Boolean mask over a table's key column for conditions on "key"."""
        mask = None
        keys = table.column("key")
        for name, op, operand in self._conditions:
            if name != "key":
                continue
            if op == "in":
                ints = [v for v in operand if isinstance(v, int) and not isinstance(v, bool)]
                op_mask = pc.is_in(keys, value_set=pa.array(ints, type=pa.int64()))
            elif not isinstance(operand, int) or isinstance(operand, bool):
                # Non-integer bounds are left to matches().
                continue
            elif op in ("=", "=="):
                op_mask = pc.equal(keys, operand)
            elif op == "!=":
                op_mask = pc.not_equal(keys, operand)
            elif op == ">=":
                op_mask = pc.greater_equal(keys, operand)
            elif op == ">":
                op_mask = pc.greater(keys, operand)
            elif op == "<=":
                op_mask = pc.less_equal(keys, operand)
            else:
                op_mask = pc.less(keys, operand)
            mask = pc.and_(mask, op_mask) if mask is not None else op_mask
        return mask


def _bounded(low: int | None, high: int | None) -> KeyRange | None:
    lo = low if low is not None else -(2**63)
    hi = high if high is not None else 2**63 - 1
    if hi <= lo:
        return None
    return KeyRange(lo, hi)


def project(payload: dict[str, Any], fields: tuple[str, ...] | None) -> dict[str, Any]:
    """Keep only the configured payload fields (all fields when None)."""
    if fields is None:
        return payload
    return {name: payload[name] for name in fields if name in payload}
