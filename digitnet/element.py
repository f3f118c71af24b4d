"""
element.py
~~~~~~~~~~

Numeric element types for the matrix engine.

An ``ElementType`` wraps a numpy floating scalar type and exposes the small
set of capabilities the engine relies on: the constants zero, one and NaN,
exponentiation, conversion to and from a 64-bit float, and the canonical
decimal text used by checkpoint files. Arithmetic and comparison are the
scalar type's own operators, so the same matrix code runs unchanged in
single or double precision.
"""

import math
from typing import Any, Union

import numpy as np

from digitnet.config import get_settings
from digitnet.errors import NumericConversionFailure


class ElementType:
    """A floating-point element type backed by a numpy scalar type."""

    def __init__(self, dtype: Any):
        dtype = np.dtype(dtype)
        if not np.issubdtype(dtype, np.floating):
            raise TypeError(f"Element type must be floating point, got {dtype}")
        self.dtype = dtype
        self.type = dtype.type
        self.name = dtype.name
        self.zero = self.type(0)
        self.one = self.type(1)
        self.nan = self.type('nan')
        self._max = float(np.finfo(dtype).max)

    def __repr__(self) -> str:
        return f"ElementType({self.name})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ElementType) and other.dtype == self.dtype

    def __hash__(self) -> int:
        return hash(self.dtype)

    def __call__(self, value: Any):
        return self.type(value)

    def from_f64(self, value: float):
        """
        Convert a 64-bit float into this element type.

        Raises:
            NumericConversionFailure: If a finite value overflows the range
        """
        value = float(value)
        if math.isfinite(value) and abs(value) > self._max:
            raise NumericConversionFailure(
                f"{value!r} is outside the range of {self.name}"
            )
        return self.type(value)

    def to_f64(self, value) -> float:
        return float(value)

    def exp(self, value):
        return self.type(np.exp(self.type(value)))

    def format(self, value) -> str:
        """Shortest decimal text that round-trips to the same value."""
        value = self.type(value)
        if np.isnan(value):
            return 'NaN'
        if np.isinf(value):
            return 'inf' if value > 0 else '-inf'
        return np.format_float_positional(value, unique=True, trim='-')


FLOAT32 = ElementType(np.float32)
FLOAT64 = ElementType(np.float64)

_ALIASES = {
    'f32': FLOAT32,
    'float32': FLOAT32,
    'single': FLOAT32,
    'f64': FLOAT64,
    'float64': FLOAT64,
    'double': FLOAT64,
}


def resolve_element(spec: Union[ElementType, str, Any, None] = None) -> ElementType:
    """
    Resolve an element type from a name, numpy dtype or ElementType.

    None falls back to the configured default (``DIGITNET_DTYPE``).
    """
    if isinstance(spec, ElementType):
        return spec
    if spec is None:
        spec = get_settings().dtype
    if isinstance(spec, str):
        key = spec.strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
    element = ElementType(spec)
    if element == FLOAT32:
        return FLOAT32
    if element == FLOAT64:
        return FLOAT64
    return element
