"""
test_matrix.py
~~~~~~~~~~~~~~

Unit tests for the dense matrix engine.
"""

import math

import numpy as np
import pytest

from digitnet.element import FLOAT32, FLOAT64
from digitnet.errors import (
    DimensionMismatch,
    NumericConversionFailure,
    ShapeNotVector,
)
from digitnet.matrix import Axis, Matrix


def as_array(m: Matrix) -> np.ndarray:
    return np.array(m.to_lists(), dtype=np.float64).reshape(m.rows, m.columns)


@pytest.fixture
def lhs():
    return Matrix.from_flat(2, 3, [3, 2, 4, 9, 7, 6])


@pytest.fixture
def rhs():
    return Matrix.from_flat(3, 2, [1, 5, 3, 9, 7, 4])


@pytest.mark.unit
class TestConstruction:
    """Creating matrices and reading their shape."""

    def test_new_matrix_is_nan_filled(self):
        m = Matrix(2, 3)
        assert m.shape == (2, 3)
        assert len(m) == 6
        assert all(math.isnan(v) for v in m.values())

    def test_nan_fill_can_be_disabled(self):
        m = Matrix(2, 2, nan_fill=False)
        assert m.values() == [0.0] * 4

    def test_nan_fill_follows_settings(self, settings):
        settings.nan_fill = False
        assert Matrix(1, 3).values() == [0.0, 0.0, 0.0]

    def test_negative_dimensions_rejected(self):
        with pytest.raises(ValueError):
            Matrix(-1, 2)

    def test_fill_overwrites_every_cell(self):
        m = Matrix(3, 2)
        m.fill(7)
        assert m.values() == [7.0] * 6

    def test_from_rows(self):
        m = Matrix.from_rows([[1, 2, 3], [4, 5, 6]])
        assert m.shape == (2, 3)
        assert m.to_lists() == [[1, 2, 3], [4, 5, 6]]

    def test_from_rows_rejects_ragged_rows(self):
        with pytest.raises(ValueError):
            Matrix.from_rows([[1, 2], [3]])

    def test_from_flat_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            Matrix.from_flat(2, 2, [1, 2, 3])

    def test_row_major_layout(self):
        m = Matrix.from_flat(2, 3, range(6))
        assert m.get(0, 2) == 2
        assert m.get(1, 0) == 3

    def test_copy_is_independent(self):
        m = Matrix.from_rows([[1, 2]])
        clone = m.copy()
        clone.set(0, 0, 9)
        assert m.get(0, 0) == 1
        assert clone.get(0, 0) == 9

    def test_equality(self):
        assert Matrix.from_rows([[1, 2]]) == Matrix.from_rows([[1, 2]])
        assert Matrix.from_rows([[1, 2]]) != Matrix.from_rows([[1], [2]])
        assert Matrix.from_rows([[1, 2]]) != Matrix.from_rows([[1, 3]])

    def test_nan_cells_never_compare_equal(self):
        assert Matrix(1, 1) != Matrix(1, 1)

    def test_compare_dims(self):
        assert Matrix(2, 3).compare_dims(Matrix(2, 3))
        assert not Matrix(2, 3).compare_dims(Matrix(3, 2))

    def test_str_lists_rows(self):
        assert str(Matrix.from_rows([[1, 2.5], [3, 4]])) == '[1, 2.5\n 3, 4]'


@pytest.mark.unit
class TestRowViews:
    """Bounds-checked row access."""

    def test_row_reads_contiguous_slice(self):
        m = Matrix.from_flat(2, 3, range(6))
        assert m.row(1).tolist() == [3, 4, 5]
        assert len(m.row(0)) == 3

    def test_row_mut_writes_through(self):
        m = Matrix.from_flat(2, 2, [0, 0, 0, 0])
        view = m.row_mut(1)
        view[0] = 5
        assert m.to_lists() == [[0, 0], [5, 0]]

    def test_read_only_row_rejects_writes(self):
        m = Matrix.from_flat(1, 2, [0, 0])
        with pytest.raises(TypeError):
            m.row(0)[0] = 1

    def test_out_of_range_row(self):
        m = Matrix(2, 2)
        with pytest.raises(IndexError):
            m.row(2)
        with pytest.raises(IndexError):
            m.row_mut(-1)

    def test_out_of_range_column(self):
        m = Matrix(2, 2)
        with pytest.raises(IndexError):
            m.get(0, 2)

    def test_view_sees_later_fill(self):
        m = Matrix(1, 2, nan_fill=False)
        view = m.row(0)
        m.fill(3)
        assert view.tolist() == [3, 3]


@pytest.mark.unit
class TestElementwise:
    """Scalar and elementwise operations."""

    def test_scale_and_add_scalar(self):
        m = Matrix.from_rows([[1, 2], [3, 4]])
        assert m.scale(2).to_lists() == [[2, 4], [6, 8]]
        assert m.add_scalar(1).to_lists() == [[2, 3], [4, 5]]

    def test_operands_are_not_modified(self):
        a = Matrix.from_rows([[1, 2]])
        b = Matrix.from_rows([[3, 4]])
        _ = a + b
        _ = a.scale(10)
        assert a.to_lists() == [[1, 2]]
        assert b.to_lists() == [[3, 4]]

    def test_apply(self):
        m = Matrix.from_rows([[1, 2], [3, 4]])
        assert m.apply(lambda v: v * v).to_lists() == [[1, 4], [9, 16]]

    def test_add_sub_mul(self):
        a = Matrix.from_rows([[1, 2], [3, 4]])
        b = Matrix.from_rows([[5, 6], [7, 8]])
        assert (a + b).to_lists() == [[6, 8], [10, 12]]
        assert (b - a).to_lists() == [[4, 4], [4, 4]]
        assert (a * b).to_lists() == [[5, 12], [21, 32]]

    def test_add_and_mul_commute(self, random_matrix):
        a = random_matrix(3, 4)
        b = random_matrix(3, 4)
        assert a + b == b + a
        assert a * b == b * a

    @pytest.mark.parametrize('operation', ['add', 'sub', 'mul'])
    def test_mismatched_dims(self, operation):
        a = Matrix(2, 3, nan_fill=False)
        b = Matrix(3, 2, nan_fill=False)
        with pytest.raises(DimensionMismatch) as exc_info:
            getattr(a, operation)(b)
        assert exc_info.value.lhs == (2, 3)
        assert exc_info.value.rhs == (3, 2)

    def test_dimension_mismatch_is_value_error(self):
        with pytest.raises(ValueError):
            Matrix(1, 2) + Matrix(2, 1)


@pytest.mark.unit
class TestDot:
    """Matrix product."""

    def test_reference_product(self, lhs, rhs):
        result = lhs.dot(rhs)
        assert result.shape == (2, 2)
        assert result.to_lists() == [[37, 49], [72, 132]]

    def test_matches_numpy(self, random_matrix):
        a = random_matrix(4, 7)
        b = random_matrix(7, 3)
        assert np.allclose(as_array(a.dot(b)), as_array(a) @ as_array(b))

    def test_vector_product(self):
        row = Matrix.from_rows([[1, 2, 3]])
        column = Matrix.from_rows([[4], [5], [6]])
        assert row.dot(column).to_lists() == [[32]]
        assert column.dot(row).shape == (3, 3)

    def test_mismatch(self, lhs):
        with pytest.raises(DimensionMismatch):
            lhs.dot(lhs)

    def test_empty_shared_dimension_gives_zeros(self):
        a = Matrix(2, 0)
        b = Matrix(0, 3)
        assert a.dot(b).to_lists() == [[0, 0, 0], [0, 0, 0]]


@pytest.mark.unit
class TestTransposeAndFlatten:
    """Reshaping operations."""

    def test_transpose(self, lhs):
        t = lhs.transpose()
        assert t.shape == (3, 2)
        assert t.to_lists() == [[3, 9], [2, 7], [4, 6]]

    def test_double_transpose_is_identity(self, random_matrix):
        for shape in [(1, 1), (1, 5), (5, 1), (3, 4)]:
            m = random_matrix(*shape)
            assert m.transpose().transpose() == m

    def test_flatten_row_axis_gives_column(self):
        m = Matrix.from_rows([[1, 2], [3, 4]])
        flat = m.flatten(Axis.ROW)
        assert flat.shape == (4, 1)
        assert flat.values() == [1, 2, 3, 4]

    def test_flatten_column_axis_keeps_row_major_order(self):
        m = Matrix.from_rows([[1, 2], [3, 4]])
        flat = m.flatten(Axis.COLUMN)
        assert flat.shape == (1, 4)
        assert flat.values() == [1, 2, 3, 4]


@pytest.mark.unit
class TestArgmax:
    """Index of the largest cell."""

    def test_one_hot_column(self):
        m = Matrix.from_flat(5, 1, [0, 0, 0, 1, 0])
        assert m.argmax() == 3

    def test_row_vector(self):
        assert Matrix.from_rows([[0.1, 0.7, 0.2]]).argmax() == 1

    def test_first_maximum_wins(self):
        assert Matrix.from_rows([[1, 5, 5, 2]]).argmax() == 1

    def test_negative_values(self):
        assert Matrix.from_rows([[-3, -1, -2]]).argmax() == 1

    def test_non_vector_rejected(self):
        with pytest.raises(ShapeNotVector):
            Matrix(2, 2, nan_fill=False).argmax()


@pytest.mark.unit
class TestRandomize:
    """Bounded uniform weight initialization."""

    def test_values_within_bounds(self, rng):
        m = Matrix(10, 10)
        m.randomize(4, rng=rng)
        assert all(-0.25 <= v <= 0.25 for v in m.values())
        assert len(set(m.values())) > 1

    def test_seeded_generators_repeat(self):
        a = Matrix(3, 3)
        b = Matrix(3, 3)
        a.randomize(2, rng=np.random.default_rng(7))
        b.randomize(2, rng=np.random.default_rng(7))
        assert a == b

    def test_non_positive_divisor(self):
        with pytest.raises(NumericConversionFailure):
            Matrix(1, 1).randomize(0)

    def test_range_too_narrow(self):
        with pytest.raises(NumericConversionFailure):
            Matrix(1, 1).randomize(100_000)


@pytest.mark.unit
class TestParallelVariants:
    """The *_par operations return the sequential results."""

    def test_dot_par_many_cells_is_exact(self, random_matrix):
        a = random_matrix(5, 7)
        b = random_matrix(7, 3)
        assert a.dot_par(b) == a.dot(b)

    def test_dot_par_few_cells_uses_fold_reduce(self, random_matrix):
        a = random_matrix(2, 50)
        b = random_matrix(50, 1)
        assert np.allclose(as_array(a.dot_par(b)), as_array(a.dot(b)))

    def test_dot_par_reference_product(self, lhs, rhs):
        assert lhs.dot_par(rhs).to_lists() == [[37, 49], [72, 132]]

    def test_dot_par_mismatch(self, lhs):
        with pytest.raises(DimensionMismatch):
            lhs.dot_par(lhs)

    def test_transpose_par(self, random_matrix):
        m = random_matrix(6, 5)
        assert m.transpose_par() == m.transpose()

    def test_apply_par(self, random_matrix):
        m = random_matrix(4, 9)
        assert m.apply_par(abs) == m.apply(abs)

    def test_scale_par(self, random_matrix):
        m = random_matrix(3, 3)
        assert m.scale_par(0.5) == m.scale(0.5)

    def test_add_and_mul_par(self, random_matrix):
        a = random_matrix(4, 4)
        b = random_matrix(4, 4)
        assert a.add_par(b) == a + b
        assert a.mul_par(b) == a * b

    @pytest.mark.parametrize('operation', ['add_par', 'mul_par'])
    def test_elementwise_par_mismatch(self, operation):
        with pytest.raises(DimensionMismatch):
            getattr(Matrix(2, 2), operation)(Matrix(2, 3))

    def test_single_worker(self, settings, random_matrix):
        settings.workers = 1
        a = random_matrix(3, 4)
        b = random_matrix(4, 2)
        assert a.dot_par(b) == a.dot(b)


@pytest.mark.unit
class TestSinglePrecision:
    """The same code runs on float32 elements."""

    def test_cells_are_float32(self):
        m = Matrix.from_rows([[1, 2]], dtype='float32')
        assert m.element is FLOAT32
        assert isinstance(m.get(0, 0), np.float32)

    def test_reference_product(self):
        a = Matrix.from_flat(2, 3, [3, 2, 4, 9, 7, 6], dtype='float32')
        b = Matrix.from_flat(3, 2, [1, 5, 3, 9, 7, 4], dtype='float32')
        result = a.dot_par(b)
        assert result.to_lists() == [[37, 49], [72, 132]]
        assert isinstance(result.get(1, 1), np.float32)

    def test_mixed_precision_uses_left_operand_type(self):
        a = Matrix.from_rows([[1, 2]], dtype='float64')
        b = Matrix.from_rows([[3, 4]], dtype='float32')
        assert (a + b).element is FLOAT64
        assert (b + a).element is FLOAT32
