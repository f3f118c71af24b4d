"""
test_dataset.py
~~~~~~~~~~~~~~~

Tests for CSV loading and text rendering of digit images.
"""

import numpy as np
import pytest

from digitnet.dataset import (
    LabeledSample,
    load_csv,
    parse_row,
    render_sample,
    shade,
)
from digitnet.errors import IOFailure, ParseFailure
from digitnet.matrix import Matrix

from conftest import write_csv


def row(label, pixels):
    return ','.join(str(v) for v in [label] + list(pixels))


@pytest.mark.unit
class TestParseRow:
    """Single CSV rows."""

    def test_pixels_are_scaled(self):
        sample = parse_row(row(7, [0, 64, 128, 255]), side=2)
        assert sample.label == 7
        assert sample.matrix.shape == (2, 2)
        assert sample.matrix.values() == [0.0, 0.25, 0.5, 255 / 256]

    def test_pixels_are_row_major(self):
        sample = parse_row(row(1, [1, 2, 3, 4, 5, 6, 7, 8, 9]), side=3)
        assert sample.matrix.row(1).tolist() == [4 / 256, 5 / 256, 6 / 256]

    def test_trailing_comma_and_whitespace(self):
        sample = parse_row(" 3, 0, 0, 0, 256,\n", side=2)
        assert sample.label == 3
        assert sample.matrix.get(1, 1) == 1.0

    def test_full_size_row(self):
        sample = parse_row(row(0, [255] * 784))
        assert sample.matrix.shape == (28, 28)

    def test_single_precision(self):
        sample = parse_row(row(2, [128] * 4), side=2, dtype='float32')
        assert isinstance(sample.matrix.get(0, 0), np.float32)

    @pytest.mark.parametrize('line', [
        "x,0,0,0,0",
        "10,0,0,0,0",
        "-1,0,0,0,0",
        "1,0,0,a,0",
        "1,0.5,0,0,0",
        "1,0,0,0",
        "1,0,0,0,0,0",
        ",,",
    ])
    def test_malformed_rows(self, line):
        with pytest.raises(ParseFailure):
            parse_row(line, side=2)

    def test_error_carries_location(self):
        with pytest.raises(ParseFailure) as exc_info:
            parse_row("1,2", side=2, path='digits.csv', line_number=12)
        assert exc_info.value.path == 'digits.csv'
        assert exc_info.value.line == 12


@pytest.mark.unit
class TestLoadCsv:
    """Whole files."""

    def test_loads_in_file_order(self, csv_file):
        samples = load_csv(csv_file)
        assert [s.label for s in samples] == [0, 1, 2]
        assert samples[1].matrix.row(1).tolist() == [255 / 256] * 28
        assert samples[1].matrix.row(0).tolist() == [0.0] * 28

    def test_limit(self, csv_file):
        assert [s.label for s in load_csv(csv_file, limit=2)] == [0, 1]
        assert load_csv(csv_file, limit=0) == []

    def test_header_is_skipped(self, tmp_path):
        path = write_csv(tmp_path / 'd.csv', [(4, [0] * 784)])
        samples = load_csv(path)
        assert len(samples) == 1
        assert samples[0].label == 4

    def test_blank_lines_are_skipped(self, tmp_path):
        path = str(tmp_path / 'd.csv')
        with open(path, 'w') as f:
            f.write("label,p0,p1,p2,p3\n\n5,0,0,0,0\n\n6,1,1,1,1\n")
        assert [s.label for s in load_csv(path, side=2)] == [5, 6]

    def test_header_only(self, tmp_path):
        path = write_csv(tmp_path / 'd.csv', [])
        assert load_csv(path) == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(IOFailure):
            load_csv(str(tmp_path / 'missing.csv'))

    def test_invalid_utf8_is_a_parse_failure(self, tmp_path):
        path = str(tmp_path / 'd.csv')
        with open(path, 'wb') as f:
            f.write(b"label,p0,p1,p2,p3\n1,0,0,\xff,0\n")
        with pytest.raises(ParseFailure) as exc_info:
            load_csv(path, side=2)
        assert exc_info.value.path == path

    def test_bad_row_reports_line_number(self, tmp_path):
        path = str(tmp_path / 'd.csv')
        with open(path, 'w') as f:
            f.write("label,p0,p1,p2,p3\n1,0,0,0,0\n2,0,0,0\n")
        with pytest.raises(ParseFailure) as exc_info:
            load_csv(path, side=2)
        assert exc_info.value.line == 3
        assert exc_info.value.path == path


@pytest.mark.unit
class TestRendering:
    """Text-art shades."""

    @pytest.mark.parametrize('value,expected', [
        (0.0, ' '),
        (64 / 256, '░'),
        (100 / 256, '▒'),
        (0.7, '▓'),
        (255 / 256, '█'),
        (1.5, '█'),
        (-0.2, ' '),
        (float('nan'), ' '),
    ])
    def test_shade(self, value, expected):
        assert shade(value) == expected

    def test_render_sample(self):
        sample = LabeledSample(Matrix.from_rows([[0.0, 1.0], [0.25, 0.0]]), 8)
        assert render_sample(sample) == "8\n █\n░ "

    def test_render_full_image(self, csv_file):
        sample = load_csv(csv_file)[2]
        lines = render_sample(sample).split('\n')
        assert lines[0] == '2'
        assert len(lines) == 29
        assert lines[3] == '█' * 28
        assert lines[1] == ' ' * 28
