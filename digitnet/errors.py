"""
errors.py
~~~~~~~~~

Exception types raised by the matrix engine, the network and the
persistence layer. Every error here is recoverable by the caller.
"""

from typing import Optional


class DigitNetError(Exception):
    """Base class for all digitnet errors."""


class DimensionMismatch(DigitNetError, ValueError):
    """Two matrices have incompatible shapes for the requested operation."""

    def __init__(self, operation: str, lhs: tuple, rhs: tuple):
        self.operation = operation
        self.lhs = lhs
        self.rhs = rhs
        super().__init__(
            f"{operation}: incompatible shapes "
            f"{lhs[0]}x{lhs[1]} and {rhs[0]}x{rhs[1]}"
        )


class ShapeNotVector(DigitNetError, ValueError):
    """A vector-only operation was called on a matrix with rows, columns > 1."""

    def __init__(self, operation: str, shape: tuple):
        self.operation = operation
        self.shape = shape
        super().__init__(
            f"{operation} requires a row or column vector, "
            f"got {shape[0]}x{shape[1]}"
        )


class ParseFailure(DigitNetError, ValueError):
    """A persisted file or dataset row could not be parsed."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        line: Optional[int] = None
    ):
        self.path = path
        self.line = line
        location = ''
        if path is not None:
            location = f"{path}"
            if line is not None:
                location += f":{line}"
            location += ": "
        super().__init__(f"{location}{message}")


class NumericConversionFailure(DigitNetError, ArithmeticError):
    """A value is not representable in the target numeric type."""


class IOFailure(DigitNetError, OSError):
    """A file or directory is missing or unreadable."""
