"""
digitnet package
~~~~~~~~~~~~~~~~

Feed-forward neural network for 28x28 digit recognition, built on a
small dense-matrix engine. Contains the matrix engine, the two-layer
network, checkpoint persistence, the CSV dataset loader, the API server
and the command line.
"""

from digitnet.errors import (
    DigitNetError,
    DimensionMismatch,
    ShapeNotVector,
    ParseFailure,
    NumericConversionFailure,
    IOFailure,
)
from digitnet.element import ElementType, FLOAT32, FLOAT64, resolve_element
from digitnet.matrix import Axis, Matrix
from digitnet.network import Network

__version__ = "1.0.0"

__all__ = [
    "Axis",
    "DigitNetError",
    "DimensionMismatch",
    "ElementType",
    "FLOAT32",
    "FLOAT64",
    "IOFailure",
    "Matrix",
    "Network",
    "NumericConversionFailure",
    "ParseFailure",
    "ShapeNotVector",
    "resolve_element",
]
