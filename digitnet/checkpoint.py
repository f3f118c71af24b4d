"""
checkpoint.py
~~~~~~~~~~~~~

Plain-text persistence for matrices and networks.

Matrix file::

    <rows>
    <columns>
    <value>        # rows * columns lines, row-major order
    ...

Network checkpoint directory::

    descriptor     # input, hidden and output sizes, one per line
    hidden         # hidden weights, matrix file format
    output         # output weights, matrix file format

Every file is written to a temporary name and renamed into place.
"""

import os
import logging
import tempfile
from collections import namedtuple
from typing import Any, List

from digitnet.element import ElementType, resolve_element
from digitnet.errors import IOFailure, ParseFailure
from digitnet.matrix import Matrix

logger = logging.getLogger(__name__)

DESCRIPTOR_FILE = 'descriptor'
HIDDEN_FILE = 'hidden'
OUTPUT_FILE = 'output'

NetworkState = namedtuple(
    'NetworkState',
    ['input', 'hidden', 'output', 'hidden_weights', 'output_weights']
)


def _write_text(path: str, content: str) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    try:
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.tmp-')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
    except OSError as e:
        raise IOFailure(f"Could not write {path}: {e}") from e


def _read_lines(path: str) -> List[str]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            content = f.read()
    except UnicodeDecodeError as e:
        raise ParseFailure(f"Not valid UTF-8 text: {e}", path) from e
    except OSError as e:
        raise IOFailure(f"Could not read {path}: {e}") from e

    lines = content.split('\n')
    # A final newline terminates the last line; it does not start a new one.
    if lines and lines[-1] == '':
        lines.pop()
    return lines


def _parse_size(text: str, path: str, line: int, name: str) -> int:
    try:
        value = int(text.strip())
    except ValueError:
        raise ParseFailure(f"Invalid {name}: {text!r}", path, line) from None
    if value < 0:
        raise ParseFailure(f"{name} must be non-negative, got {value}", path, line)
    return value


def matrix_to_text(matrix: Matrix) -> str:
    """Serialize a matrix to the checkpoint text format."""
    fmt = matrix.element.format
    lines = [str(matrix.rows), str(matrix.columns)]
    lines.extend(fmt(v) for row in range(matrix.rows) for v in matrix.row(row))
    return '\n'.join(lines) + '\n'


def save_matrix(matrix: Matrix, path: str) -> None:
    """
    Write a matrix file.

    Raises:
        IOFailure: If the file cannot be written
    """
    _write_text(path, matrix_to_text(matrix))
    logger.debug(f"Saved {matrix.rows}x{matrix.columns} matrix to {path}")


def load_matrix(path: str, dtype: Any = None) -> Matrix:
    """
    Read a matrix file.

    Every value is parsed as a 64-bit float and converted to ``dtype``.

    Raises:
        IOFailure: If the file is missing or unreadable
        ParseFailure: If the header or a value is malformed, or the number
            of value lines differs from ``rows * columns``
        NumericConversionFailure: If a value overflows the element type
    """
    element: ElementType = resolve_element(dtype)
    lines = _read_lines(path)
    if len(lines) < 2:
        raise ParseFailure("Missing rows/columns header", path)

    rows = _parse_size(lines[0], path, 1, 'rows')
    columns = _parse_size(lines[1], path, 2, 'columns')
    values = lines[2:]
    expected = rows * columns
    if len(values) != expected:
        raise ParseFailure(
            f"Expected {expected} values for a {rows}x{columns} matrix, "
            f"found {len(values)}",
            path
        )

    data = []
    for offset, text in enumerate(values, start=3):
        try:
            value = float(text.strip())
        except ValueError:
            raise ParseFailure(f"Invalid value: {text!r}", path, offset) from None
        data.append(element.from_f64(value))

    return Matrix._from_buffer(rows, columns, data, element)


def write_network(network, dirname: str) -> None:
    """
    Save a network as a checkpoint directory.

    Args:
        network: Object with ``input``, ``hidden``, ``output``,
            ``hidden_weights`` and ``output_weights``
        dirname: Directory to create (parents included) or overwrite

    Raises:
        IOFailure: If the directory or a file cannot be written
    """
    try:
        os.makedirs(dirname, exist_ok=True)
    except OSError as e:
        raise IOFailure(f"Could not create {dirname}: {e}") from e

    _write_text(
        os.path.join(dirname, DESCRIPTOR_FILE),
        f"{network.input}\n{network.hidden}\n{network.output}\n"
    )
    save_matrix(network.hidden_weights, os.path.join(dirname, HIDDEN_FILE))
    save_matrix(network.output_weights, os.path.join(dirname, OUTPUT_FILE))

    logger.info(
        f"Saved network [{network.input}, {network.hidden}, {network.output}] "
        f"to {dirname}"
    )


def read_descriptor(dirname: str) -> tuple:
    """Read ``(input, hidden, output)`` from a checkpoint's descriptor."""
    path = os.path.join(dirname, DESCRIPTOR_FILE)
    lines = _read_lines(path)
    if len(lines) != 3:
        raise ParseFailure(
            f"Descriptor needs exactly 3 lines (input, hidden, output), found {len(lines)}",
            path
        )
    return tuple(
        _parse_size(lines[i], path, i + 1, name)
        for i, name in enumerate(('input', 'hidden', 'output'))
    )


def read_network(dirname: str, dtype: Any = None) -> NetworkState:
    """
    Read and validate a checkpoint directory.

    Returns:
        NetworkState with the layer sizes and both weight matrices

    Raises:
        IOFailure: If the directory or a file is missing
        ParseFailure: If a file is malformed or the weight shapes do not
            match the descriptor
        NumericConversionFailure: If a weight overflows the element type
    """
    if not os.path.isdir(dirname):
        raise IOFailure(f"Checkpoint directory not found: {dirname}")

    input_size, hidden_size, output_size = read_descriptor(dirname)
    hidden_weights = load_matrix(os.path.join(dirname, HIDDEN_FILE), dtype)
    output_weights = load_matrix(os.path.join(dirname, OUTPUT_FILE), dtype)

    if hidden_weights.shape != (hidden_size, input_size):
        raise ParseFailure(
            f"Hidden weights are {hidden_weights.rows}x{hidden_weights.columns}, "
            f"descriptor requires {hidden_size}x{input_size}",
            os.path.join(dirname, HIDDEN_FILE)
        )
    if output_weights.shape != (output_size, hidden_size):
        raise ParseFailure(
            f"Output weights are {output_weights.rows}x{output_weights.columns}, "
            f"descriptor requires {output_size}x{hidden_size}",
            os.path.join(dirname, OUTPUT_FILE)
        )

    return NetworkState(
        input_size, hidden_size, output_size, hidden_weights, output_weights
    )
