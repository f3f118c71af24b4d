"""
network.py
~~~~~~~~~~

A fully connected network with one hidden layer, trained one example at
a time with backpropagation.

The network owns two weight matrices:

- ``hidden_weights``: hidden x input
- ``output_weights``: output x hidden

Both layers use the sigmoid activation. Predictions are normalized with
softmax and the predicted class is the argmax of that vector.
"""

import time
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np

from digitnet.checkpoint import read_network, write_network
from digitnet.config import get_settings
from digitnet.element import ElementType, resolve_element
from digitnet.matrix import Axis, Matrix

logger = logging.getLogger(__name__)


def sigmoid(x):
    """Logistic function ``1 / (1 + e^-x)``, evaluated without overflow."""
    if x >= 0:
        return 1 / (1 + np.exp(-x))
    z = np.exp(x)
    return z / (1 + z)


def sigmoid_prime(activations: Matrix) -> Matrix:
    """
    Sigmoid derivative from already computed activations.

    Uses ``s'(x) = s(x) * (1 - s(x))`` where ``activations`` holds ``s(x)``.
    """
    ones = Matrix.filled(
        activations.rows, activations.columns, 1, dtype=activations.element
    )
    return activations * (ones - activations)


def softmax(m: Matrix) -> Matrix:
    """
    Normalize ``m`` so its cells are positive and sum to one.

    The maximum cell is subtracted before exponentiating, which leaves the
    result unchanged but keeps ``exp`` from overflowing.
    """
    if len(m) == 0:
        return m.copy()
    peak = max(m._data)
    exps = m.add_scalar(-peak).apply(m.element.exp)
    total = m.element.zero
    for v in exps._data:
        total = total + v
    return exps.apply(lambda v: v / total)


def one_hot(label: int, size: int, dtype: Any = None) -> Matrix:
    """Column vector of ``size`` zeros with a one at ``label``."""
    if not 0 <= label < size:
        raise ValueError(f"Label {label} out of range for {size} classes")
    target = Matrix.filled(size, 1, 0, dtype=dtype)
    target.set(label, 0, 1)
    return target


class Network:
    """
    Two-layer feed-forward network.

    Args:
        input: Size of the input layer
        hidden: Size of the hidden layer
        output: Size of the output layer
        learning_rate: Step size applied to every weight update
        dtype: Element type of the weight matrices
        parallel: Use the ``*_par`` matrix operations (defaults to
            ``DIGITNET_PARALLEL``)
        rng: Random generator used to initialize the weights
    """

    def __init__(
        self,
        input: int,
        hidden: int,
        output: int,
        learning_rate: float,
        dtype: Any = None,
        parallel: Optional[bool] = None,
        rng: Optional[np.random.Generator] = None
    ):
        for name, size in (('input', input), ('hidden', hidden), ('output', output)):
            if size < 1:
                raise ValueError(f"{name} layer size must be positive, got {size}")

        element = resolve_element(dtype)
        hidden_weights = Matrix(hidden, input, dtype=element)
        hidden_weights.randomize(input, rng=rng)
        output_weights = Matrix(output, hidden, dtype=element)
        output_weights.randomize(hidden, rng=rng)

        self._setup(
            element, input, hidden, output,
            hidden_weights, output_weights, learning_rate, parallel
        )

    def _setup(
        self,
        element: ElementType,
        input: int,
        hidden: int,
        output: int,
        hidden_weights: Matrix,
        output_weights: Matrix,
        learning_rate: float,
        parallel: Optional[bool]
    ) -> None:
        """Assign every attribute; shared by ``__init__`` and ``from_checkpoint``."""
        settings = get_settings()
        self.element: ElementType = element
        self.input = input
        self.hidden = hidden
        self.output = output
        self.learning_rate = element.from_f64(learning_rate)
        self.parallel = settings.parallel if parallel is None else parallel
        self.progress_every = settings.progress_every
        self.hidden_weights = hidden_weights
        self.output_weights = output_weights

    def __repr__(self) -> str:
        return (
            f"Network(input={self.input}, hidden={self.hidden}, "
            f"output={self.output}, learning_rate={float(self.learning_rate)}, "
            f"dtype={self.element.name})"
        )

    @property
    def sizes(self) -> list:
        return [self.input, self.hidden, self.output]

    # Operation selection: the parallel variants return the same values.

    def _dot(self, lhs: Matrix, rhs: Matrix) -> Matrix:
        return lhs.dot_par(rhs) if self.parallel else lhs.dot(rhs)

    def _apply(self, m: Matrix, fn: Callable) -> Matrix:
        return m.apply_par(fn) if self.parallel else m.apply(fn)

    def _transpose(self, m: Matrix) -> Matrix:
        return m.transpose_par() if self.parallel else m.transpose()

    def _mul(self, lhs: Matrix, rhs: Matrix) -> Matrix:
        return lhs.mul_par(rhs) if self.parallel else lhs.mul(rhs)

    def _scale(self, m: Matrix, n) -> Matrix:
        return m.scale_par(n) if self.parallel else m.scale(n)

    def _add(self, lhs: Matrix, rhs: Matrix) -> Matrix:
        return lhs.add_par(rhs) if self.parallel else lhs.add(rhs)

    # ------------------------------------------------------------------
    # Forward pass and prediction
    # ------------------------------------------------------------------

    def feedforward(self, input_data: Matrix) -> Tuple[Matrix, Matrix]:
        """
        Run the forward pass.

        Args:
            input_data: Column vector of shape ``input x 1``

        Returns:
            (hidden_outputs, final_outputs)

        Raises:
            DimensionMismatch: If the input has the wrong number of rows
        """
        hidden_inputs = self._dot(self.hidden_weights, input_data)
        hidden_outputs = self._apply(hidden_inputs, sigmoid)
        final_inputs = self._dot(self.output_weights, hidden_outputs)
        final_outputs = self._apply(final_inputs, sigmoid)
        return hidden_outputs, final_outputs

    def predict(self, input_data: Matrix) -> Matrix:
        """Softmax-normalized output for one input column."""
        _, final_outputs = self.feedforward(input_data)
        return softmax(final_outputs)

    def classify(self, input_data: Matrix) -> int:
        return self.predict(input_data).argmax()

    def predict_sample(self, sample) -> Matrix:
        return self.predict(sample.matrix.flatten(Axis.ROW))

    def evaluate(self, samples: Iterable) -> int:
        """Count the samples whose predicted class matches the label."""
        correct = 0
        for sample in samples:
            if self.predict_sample(sample).argmax() == sample.label:
                correct += 1
        return correct

    def accuracy(self, samples: Sequence) -> float:
        if len(samples) == 0:
            return 0.0
        return self.evaluate(samples) / len(samples)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, input_data: Matrix, target: Matrix) -> None:
        """
        One backpropagation step on a single example.

        Args:
            input_data: Column vector of shape ``input x 1``
            target: One-hot column vector of shape ``output x 1``

        Raises:
            DimensionMismatch: If either argument has the wrong shape. The
                weights are unchanged in that case.
        """
        hidden_outputs, final_outputs = self.feedforward(input_data)

        output_errors = target - final_outputs
        hidden_errors = self._dot(self._transpose(self.output_weights), output_errors)

        gradient = self._mul(output_errors, sigmoid_prime(final_outputs))
        delta = self._dot(gradient, self._transpose(hidden_outputs))
        output_weights = self._add(
            self._scale(delta, self.learning_rate), self.output_weights
        )

        gradient = self._mul(hidden_errors, sigmoid_prime(hidden_outputs))
        delta = self._dot(gradient, self._transpose(input_data))
        hidden_weights = self._add(
            self._scale(delta, self.learning_rate), self.hidden_weights
        )

        self.output_weights = output_weights
        self.hidden_weights = hidden_weights

    def train_batch(
        self,
        samples: Sequence,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> None:
        """
        Train on every sample once, in order, one example at a time.

        Args:
            samples: Labeled samples with ``matrix`` and ``label`` attributes
            callback: Called every ``progress_every`` samples and once at the
                end with ``{'index', 'total', 'elapsed_time'}``
            yield_func: Called after each step so cooperative schedulers can
                run other tasks
        """
        total = len(samples)
        start_time = time.time()

        for i, sample in enumerate(samples):
            if i % self.progress_every == 0:
                logger.info(f"Training sample {i}/{total}")
                if callback is not None and i > 0:
                    callback({
                        'index': i,
                        'total': total,
                        'elapsed_time': time.time() - start_time
                    })

            input_data = sample.matrix.flatten(Axis.ROW)
            target = one_hot(int(sample.label), self.output, dtype=self.element)
            self.train(input_data, target)

            if yield_func is not None:
                yield_func()

        elapsed = time.time() - start_time
        logger.info(f"Trained on {total} sample(s) in {elapsed:.2f}s")
        if callback is not None:
            callback({'index': total, 'total': total, 'elapsed_time': elapsed})

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, dirname: str) -> None:
        """Write this network as a checkpoint directory."""
        write_network(self, dirname)

    def load(self, dirname: str) -> None:
        """
        Replace sizes and weights with a checkpoint's contents.

        The checkpoint is read and validated completely before anything is
        assigned, so a failed load leaves this network untouched.
        """
        state = read_network(dirname, dtype=self.element)

        self.input = state.input
        self.hidden = state.hidden
        self.output = state.output
        self.hidden_weights = state.hidden_weights
        self.output_weights = state.output_weights
        logger.info(f"Loaded network {self.sizes} from {dirname}")

    @classmethod
    def from_checkpoint(
        cls,
        dirname: str,
        learning_rate: float,
        dtype: Any = None,
        parallel: Optional[bool] = None
    ) -> 'Network':
        """Build a network directly from a checkpoint directory."""
        element = resolve_element(dtype)
        state = read_network(dirname, dtype=element)

        network = cls.__new__(cls)
        network._setup(
            element, state.input, state.hidden, state.output,
            state.hidden_weights, state.output_weights, learning_rate, parallel
        )
        logger.info(f"Loaded network {network.sizes} from {dirname}")
        return network
