"""
conftest.py
~~~~~~~~~~~

Shared fixtures: isolated settings, seeded generators and small datasets.
"""

import os

import numpy as np
import pytest

from digitnet import parallel, sampling
from digitnet.config import Settings, reset_settings
from digitnet.dataset import LabeledSample
from digitnet.matrix import Matrix


@pytest.fixture(autouse=True)
def settings(tmp_path):
    """Fresh settings for every test, with storage under tmp_path."""
    test_settings = Settings(
        model_dir=str(tmp_path / "models"),
        async_mode='threading',
        workers=4,
        nan_fill=True,
        parallel=True,
        seed=1234,
        hidden_size=4,
        learning_rate=0.1,
        progress_every=100,
    )
    reset_settings(test_settings)
    sampling.seed(1234)
    yield test_settings
    parallel.shutdown()
    reset_settings(None)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def random_matrix(rng):
    """Factory for matrices filled from a standard normal distribution."""
    def make(rows, columns, dtype='float64'):
        return Matrix.from_flat(
            rows, columns, rng.standard_normal(rows * columns).tolist(), dtype
        )
    return make


def make_image(label: int, side: int = 28) -> Matrix:
    """A side x side image whose bright band depends on the label."""
    values = np.zeros((side, side))
    values[label * 2:label * 2 + 2, :] = 200 / 256.0
    return Matrix.from_flat(side, side, values.ravel().tolist())


@pytest.fixture
def digit_samples():
    return [LabeledSample(make_image(label), label) for label in range(10)]


def write_csv(path, rows, header=True):
    """Write MNIST-style CSV rows of (label, pixels)."""
    with open(path, 'w') as f:
        if header:
            f.write('label,' + ','.join(f'pixel{i}' for i in range(784)) + '\n')
        for label, pixels in rows:
            f.write(','.join(str(v) for v in [label] + list(pixels)) + '\n')
    return str(path)


@pytest.fixture
def csv_file(tmp_path):
    """CSV with three samples labeled 0, 1 and 2."""
    rows = []
    for label in range(3):
        pixels = [0] * 784
        for i in range(label * 28, label * 28 + 28):
            pixels[i] = 255
        rows.append((label, pixels))
    return write_csv(os.path.join(tmp_path, 'digits.csv'), rows)
