"""
matrix.py
~~~~~~~~~

Dense two-dimensional matrix with row-major storage.

A matrix owns one flat buffer of ``rows * columns`` scalars; cell (r, c)
lives at offset ``r * columns + c``. Operations that combine matrices
never modify their operands and return a new matrix; only ``fill``,
``randomize``, ``set`` and writable row views mutate in place.

Every operation has a sequential form. ``apply``, ``dot``, ``scale``,
``add``, ``mul`` and ``transpose`` also have a ``*_par`` form that spreads
independent output cells across the shared thread pool and returns the
same result.
"""

import logging
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence

import numpy as np

from digitnet import parallel
from digitnet.config import get_settings
from digitnet.element import ElementType, resolve_element
from digitnet.errors import (
    DimensionMismatch,
    NumericConversionFailure,
    ShapeNotVector,
)
from digitnet.sampling import uniform_distribution

logger = logging.getLogger(__name__)


class Axis(Enum):
    """Shape of a flattened matrix."""

    ROW = 'row'        # one element per row: N x 1
    COLUMN = 'column'  # one element per column: 1 x N


class RowView:
    """
    Bounds-checked view over one row of a matrix.

    Reads and writes go straight to the owning matrix's buffer. A view
    created with ``writable=False`` rejects assignment.
    """

    __slots__ = ('_matrix', '_row', '_writable')

    def __init__(self, matrix: 'Matrix', row: int, writable: bool = False):
        self._matrix = matrix
        self._row = row
        self._writable = writable

    def __len__(self) -> int:
        return self._matrix.columns

    def _offset(self, column: int) -> int:
        if not isinstance(column, (int, np.integer)) or isinstance(column, bool):
            raise TypeError(f"Column index must be an integer, got {column!r}")
        if not 0 <= column < self._matrix.columns:
            raise IndexError(
                f"Column index {column} out of range for "
                f"{self._matrix.columns} column(s)"
            )
        return self._row * self._matrix.columns + int(column)

    def __getitem__(self, column):
        if isinstance(column, slice):
            return self.tolist()[column]
        return self._matrix._data[self._offset(column)]

    def __setitem__(self, column: int, value) -> None:
        if not self._writable:
            raise TypeError("Row view is read-only")
        self._matrix._data[self._offset(column)] = self._matrix.element(value)

    def __iter__(self) -> Iterator:
        start = self._row * self._matrix.columns
        return iter(self._matrix._data[start:start + self._matrix.columns])

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RowView):
            other = other.tolist()
        if isinstance(other, (list, tuple)):
            return self.tolist() == list(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"RowView(row={self._row}, values={self.tolist()})"

    def tolist(self) -> list:
        return list(self)


class Matrix:
    """
    Generic dense matrix over a floating element type.

    Args:
        rows: Number of rows
        columns: Number of columns
        dtype: Element type (``ElementType``, numpy dtype or name); defaults
            to ``DIGITNET_DTYPE``
        nan_fill: Start every cell as NaN so reads of unwritten cells are
            detectable; defaults to ``DIGITNET_NAN_FILL``. When off, cells
            start at zero.
    """

    def __init__(
        self,
        rows: int,
        columns: int,
        dtype: Any = None,
        nan_fill: Optional[bool] = None
    ):
        if rows < 0 or columns < 0:
            raise ValueError(f"Matrix dimensions must be non-negative, got {rows}x{columns}")
        if nan_fill is None:
            nan_fill = get_settings().nan_fill

        self.element: ElementType = resolve_element(dtype)
        self._rows = int(rows)
        self._columns = int(columns)
        initial = self.element.nan if nan_fill else self.element.zero
        self._data: List = [initial] * (self._rows * self._columns)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def _from_buffer(
        cls,
        rows: int,
        columns: int,
        data: List,
        element: ElementType
    ) -> 'Matrix':
        """Wrap an already-built buffer without copying or filling."""
        matrix = cls.__new__(cls)
        matrix.element = element
        matrix._rows = rows
        matrix._columns = columns
        matrix._data = data
        return matrix

    @classmethod
    def from_flat(
        cls,
        rows: int,
        columns: int,
        values: Iterable,
        dtype: Any = None
    ) -> 'Matrix':
        """Build a matrix from values given in row-major order."""
        element = resolve_element(dtype)
        data = [element(v) for v in values]
        if len(data) != rows * columns:
            raise ValueError(
                f"Expected {rows * columns} values for a {rows}x{columns} "
                f"matrix, got {len(data)}"
            )
        return cls._from_buffer(rows, columns, data, element)

    @classmethod
    def from_rows(cls, rows: Sequence[Sequence], dtype: Any = None) -> 'Matrix':
        """Build a matrix from a sequence of equal-length rows."""
        rows = [list(row) for row in rows]
        columns = len(rows[0]) if rows else 0
        for i, row in enumerate(rows):
            if len(row) != columns:
                raise ValueError(
                    f"Row {i} has {len(row)} values, expected {columns}"
                )
        return cls.from_flat(
            len(rows), columns, (v for row in rows for v in row), dtype
        )

    @classmethod
    def filled(cls, rows: int, columns: int, value, dtype: Any = None) -> 'Matrix':
        element = resolve_element(dtype)
        return cls._from_buffer(
            rows, columns, [element(value)] * (rows * columns), element
        )

    def copy(self) -> 'Matrix':
        """Explicit clone with its own buffer."""
        return Matrix._from_buffer(
            self._rows, self._columns, list(self._data), self.element
        )

    def _new_like(self, rows: int, columns: int, data: List) -> 'Matrix':
        return Matrix._from_buffer(rows, columns, data, self.element)

    # ------------------------------------------------------------------
    # Shape and access
    # ------------------------------------------------------------------

    @property
    def rows(self) -> int:
        return self._rows

    @property
    def columns(self) -> int:
        return self._columns

    @property
    def shape(self) -> tuple:
        return (self._rows, self._columns)

    def __len__(self) -> int:
        return len(self._data)

    def is_vector(self) -> bool:
        return self._rows == 1 or self._columns == 1

    def compare_dims(self, other: 'Matrix') -> bool:
        return self._rows == other._rows and self._columns == other._columns

    def _check_row(self, index: int) -> int:
        if not isinstance(index, (int, np.integer)) or isinstance(index, bool):
            raise TypeError(f"Row index must be an integer, got {index!r}")
        if not 0 <= index < self._rows:
            raise IndexError(
                f"Row index {index} out of range for {self._rows} row(s)"
            )
        return int(index)

    def row(self, index: int) -> RowView:
        """Read-only view of one row."""
        return RowView(self, self._check_row(index), writable=False)

    def row_mut(self, index: int) -> RowView:
        """Writable view of one row."""
        return RowView(self, self._check_row(index), writable=True)

    def get(self, row: int, column: int):
        return self.row(row)[column]

    def set(self, row: int, column: int, value) -> None:
        self.row_mut(row)[column] = value

    def values(self) -> List[float]:
        """Every cell as a Python float, in row-major order."""
        return [float(v) for v in self._data]

    def to_lists(self) -> List[List[float]]:
        c = self._columns
        return [
            [float(v) for v in self._data[r * c:(r + 1) * c]]
            for r in range(self._rows)
        ]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.shape == other.shape and all(
            a == b for a, b in zip(self._data, other._data)
        )

    __hash__ = None

    def __repr__(self) -> str:
        return f"Matrix({self._rows}x{self._columns}, {self.element.name})"

    def __str__(self) -> str:
        lines = [
            ', '.join(self.element.format(v) for v in row)
            for row in self.to_lists()
        ]
        return '[' + '\n '.join(lines) + ']'

    # ------------------------------------------------------------------
    # In-place mutation
    # ------------------------------------------------------------------

    def fill(self, value) -> None:
        value = self.element(value)
        self._data[:] = [value] * len(self._data)

    def randomize(self, n: float, rng: Optional[np.random.Generator] = None) -> None:
        """
        Fill every cell uniformly from ``[-1/n, 1/n]``.

        ``n`` is conventionally the fan-in of the layer these weights feed.

        Raises:
            NumericConversionFailure: If the bounds cannot be represented
        """
        if n <= 0:
            raise NumericConversionFailure(
                f"Randomization bound divisor must be positive, got {n}"
            )
        low = float(self.element.from_f64(-1.0 / n))
        high = float(self.element.from_f64(1.0 / n))
        element = self.element
        self._data[:] = [
            uniform_distribution(low, high, rng=rng, element=element)
            for _ in range(len(self._data))
        ]

    # ------------------------------------------------------------------
    # Sequential operations
    # ------------------------------------------------------------------

    def _coerced(self, other: 'Matrix') -> List:
        if other.element == self.element:
            return other._data
        return [self.element(v) for v in other._data]

    def _require_same_dims(self, other: 'Matrix', operation: str) -> None:
        if not isinstance(other, Matrix):
            raise TypeError(f"{operation} expects a Matrix, got {type(other).__name__}")
        if not self.compare_dims(other):
            raise DimensionMismatch(operation, self.shape, other.shape)

    def flatten(self, axis: Axis = Axis.ROW) -> 'Matrix':
        """
        Reinterpret the matrix as a vector in row-major order.

        ``Axis.ROW`` gives an N x 1 column, ``Axis.COLUMN`` a 1 x N row;
        the element order is the same for both.
        """
        n = len(self._data)
        if axis is Axis.ROW:
            return self._new_like(n, 1, list(self._data))
        if axis is Axis.COLUMN:
            return self._new_like(1, n, list(self._data))
        raise ValueError(f"Unknown axis: {axis!r}")

    def transpose(self) -> 'Matrix':
        data = self._data
        c = self._columns
        out: List = []
        for column in range(c):
            out.extend(data[column::c])
        return self._new_like(c, self._rows, out)

    def scale(self, n) -> 'Matrix':
        n = self.element(n)
        return self._new_like(self._rows, self._columns, [v * n for v in self._data])

    def add_scalar(self, n) -> 'Matrix':
        n = self.element(n)
        return self._new_like(self._rows, self._columns, [v + n for v in self._data])

    def apply(self, fn: Callable) -> 'Matrix':
        """Map ``fn`` over every cell; ``fn`` must not depend on visit order."""
        convert = self.element
        return self._new_like(
            self._rows, self._columns, [convert(fn(v)) for v in self._data]
        )

    def add(self, other: 'Matrix') -> 'Matrix':
        self._require_same_dims(other, 'add')
        rhs = self._coerced(other)
        return self._new_like(
            self._rows, self._columns, [a + b for a, b in zip(self._data, rhs)]
        )

    def sub(self, other: 'Matrix') -> 'Matrix':
        self._require_same_dims(other, 'sub')
        rhs = self._coerced(other)
        return self._new_like(
            self._rows, self._columns, [a - b for a, b in zip(self._data, rhs)]
        )

    def mul(self, other: 'Matrix') -> 'Matrix':
        """Elementwise (Hadamard) product."""
        self._require_same_dims(other, 'mul')
        rhs = self._coerced(other)
        return self._new_like(
            self._rows, self._columns, [a * b for a, b in zip(self._data, rhs)]
        )

    def __add__(self, other):
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.add(other)

    def __sub__(self, other):
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.sub(other)

    def __mul__(self, other):
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.mul(other)

    def _check_dot(self, rhs: 'Matrix') -> None:
        if not isinstance(rhs, Matrix):
            raise TypeError(f"dot expects a Matrix, got {type(rhs).__name__}")
        if self._columns != rhs._rows:
            raise DimensionMismatch('dot', self.shape, rhs.shape)

    def _rhs_columns(self, rhs: 'Matrix') -> List[List]:
        data = self._coerced(rhs)
        m = rhs._columns
        return [data[c::m] for c in range(m)]

    def _dot_cell(self, row: List, column: List):
        total = self.element.zero
        for a, b in zip(row, column):
            total = total + a * b
        return total

    def dot(self, rhs: 'Matrix') -> 'Matrix':
        """
        Matrix product ``self . rhs``.

        Raises:
            DimensionMismatch: If ``self.columns != rhs.rows``
        """
        self._check_dot(rhs)
        shared = self._columns
        columns = self._rhs_columns(rhs)
        out: List = []
        for r in range(self._rows):
            row = self._data[r * shared:(r + 1) * shared]
            for column in columns:
                out.append(self._dot_cell(row, column))
        return self._new_like(self._rows, rhs._columns, out)

    def argmax(self) -> int:
        """
        Flat index of the largest cell; the first one wins on ties.

        Raises:
            ShapeNotVector: If the matrix is not a row or column vector
        """
        if not self.is_vector():
            raise ShapeNotVector('argmax', self.shape)
        if not self._data:
            raise ValueError("argmax of an empty matrix")

        max_value = float('-inf')
        max_index = 0
        for i, v in enumerate(self._data):
            if v > max_value:
                max_value = v
                max_index = i
        return max_index

    # ------------------------------------------------------------------
    # Parallel operations
    # ------------------------------------------------------------------

    def _map_chunks(self, fn: Callable[[int, int], List]) -> List:
        out: List = []
        for chunk in parallel.parallel_ranges(fn, len(self._data)):
            out.extend(chunk)
        return out

    def apply_par(self, fn: Callable) -> 'Matrix':
        data = self._data
        convert = self.element
        out = self._map_chunks(
            lambda start, stop: [convert(fn(v)) for v in data[start:stop]]
        )
        return self._new_like(self._rows, self._columns, out)

    def scale_par(self, n) -> 'Matrix':
        n = self.element(n)
        data = self._data
        out = self._map_chunks(lambda start, stop: [v * n for v in data[start:stop]])
        return self._new_like(self._rows, self._columns, out)

    def add_par(self, other: 'Matrix') -> 'Matrix':
        self._require_same_dims(other, 'add')
        lhs, rhs = self._data, self._coerced(other)
        out = self._map_chunks(
            lambda start, stop: [
                a + b for a, b in zip(lhs[start:stop], rhs[start:stop])
            ]
        )
        return self._new_like(self._rows, self._columns, out)

    def mul_par(self, other: 'Matrix') -> 'Matrix':
        self._require_same_dims(other, 'mul')
        lhs, rhs = self._data, self._coerced(other)
        out = self._map_chunks(
            lambda start, stop: [
                a * b for a, b in zip(lhs[start:stop], rhs[start:stop])
            ]
        )
        return self._new_like(self._rows, self._columns, out)

    def transpose_par(self) -> 'Matrix':
        data = self._data
        c = self._columns

        def transpose_rows(start: int, stop: int) -> List:
            out: List = []
            for column in range(start, stop):
                out.extend(data[column::c])
            return out

        out: List = []
        for chunk in parallel.parallel_ranges(transpose_rows, c):
            out.extend(chunk)
        return self._new_like(c, self._rows, out)

    def dot_par(self, rhs: 'Matrix') -> 'Matrix':
        """
        Parallel matrix product.

        Output cells are split across the pool. When there are fewer cells
        than workers, each cell's sum over the shared dimension is itself
        computed as a parallel fold-reduce.
        """
        self._check_dot(rhs)
        shared = self._columns
        m = rhs._columns
        cells = self._rows * m
        columns = self._rhs_columns(rhs)
        data = self._data

        if cells >= parallel.worker_count():
            def dot_cells(start: int, stop: int) -> List:
                out: List = []
                for i in range(start, stop):
                    r, c = divmod(i, m)
                    out.append(
                        self._dot_cell(data[r * shared:(r + 1) * shared], columns[c])
                    )
                return out

            out: List = []
            for chunk in parallel.parallel_ranges(dot_cells, cells):
                out.extend(chunk)
            return self._new_like(self._rows, m, out)

        zero = self.element.zero
        out = []
        for i in range(cells):
            r, c = divmod(i, m)
            row = data[r * shared:(r + 1) * shared]
            column = columns[c]
            out.append(parallel.fold_reduce(
                lambda start, stop: self._dot_cell(row[start:stop], column[start:stop]),
                lambda a, b: a + b,
                zero,
                shared,
            ))
        return self._new_like(self._rows, m, out)
