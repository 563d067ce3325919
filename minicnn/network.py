from __future__ import annotations

import logging
import time
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np

from .convolution import ConvolutionalLayer
from .errors import FormatError, HyperparameterError, NetworkError, UninitializedError
from .fully_connected import FullyConnectedLayer
from .layer import LayerKind
from .operators import Activation, PoolingFunction
from .pooling import PoolingLayer
from .results import TestResult

if TYPE_CHECKING:
    from typing import Iterable, List, Optional, Protocol

    from .datasets import Example
    from .layer import Layer
    from .tensor import Tensor
    from .tensor_data import Format

    class Interpreter(Protocol):
        def same_result(self, output: Tensor, label: Tensor) -> bool: ...


logger = logging.getLogger(__name__)


class NetworkState(Enum):
    BUILDING = "building"
    READY = "ready"
    FORWARD_COMPUTED = "forward_computed"
    GRADIENTS_ACCUMULATED = "gradients_accumulated"


class NeuralNetwork:
    """A linear chain of layers trained by backpropagation or by mutation.

    Build the network by setting its input format, appending layers, and
    setting the output format the last layer must produce. Layers refer to
    their predecessor by index into `layers`.

    Args:
    ----
        learning_rate (float): scales every batch-averaged gradient step.
        rng (Optional[np.random.Generator]): randomness for shuffling, noise
            and mutation; a fresh unseeded generator if None.

    """

    def __init__(
        self, learning_rate: float = 0.1, rng: Optional[np.random.Generator] = None
    ):
        if learning_rate <= 0:
            raise HyperparameterError(
                f"Learning rate must be greater than 0, got {learning_rate}."
            )
        self.learning_rate = learning_rate
        self.rng = rng if rng is not None else np.random.default_rng()
        self.layers: List[Layer] = []
        self.parameter_layer_indices: List[int] = []
        self.input_format: Optional[Format] = None
        self.output_format: Optional[Format] = None
        self._input: Optional[Tensor] = None
        self._forward_computed = False
        self._accumulated = 0
        self._device = False

    # Building

    @property
    def state(self) -> NetworkState:
        if self.input_format is None or not self.layers:
            return NetworkState.BUILDING
        if self._accumulated > 0:
            return NetworkState.GRADIENTS_ACCUMULATED
        if self._forward_computed:
            return NetworkState.FORWARD_COMPUTED
        return NetworkState.READY

    def set_input_format(self, input_format: Format) -> None:
        """Declare the format every input tensor has. Allowed once, before any layer."""
        if self.input_format is not None:
            raise NetworkError(f"Input format is already set to {self.input_format}.")
        if self.layers:
            raise NetworkError("The input format must be set before adding layers.")
        if input_format.item_count == 0:
            raise FormatError(f"Input format {input_format} is empty.")
        self.input_format = input_format

    def set_output_format(self, output_format: Format) -> None:
        """Declare the format of the network output and the labels. Allowed once."""
        if self.output_format is not None:
            raise NetworkError(f"Output format is already set to {self.output_format}.")
        if output_format.item_count == 0:
            raise FormatError(f"Output format {output_format} is empty.")
        self.output_format = output_format

    def add_layer(self, layer: Layer) -> Layer:
        """Append `layer`, binding its input format to the previous layer's activations.

        Returns
        -------
            Layer: the layer, now bound and on the network's residency.

        """
        if self.input_format is None:
            raise UninitializedError("Set the input format before adding layers.")
        if self.layers:
            previous_index: Optional[int] = len(self.layers) - 1
            input_format = self.layers[-1].activations.format
        else:
            previous_index = None
            input_format = self.input_format
        layer.set_input_format(input_format)
        if self._device:
            layer.enable_device()
        layer.previous_index = previous_index
        self.layers.append(layer)
        if layer.kind != LayerKind.POOLING:
            self.parameter_layer_indices.append(len(self.layers) - 1)
        self._forward_computed = False
        logger.debug(
            "Added %s layer %d: %s -> %s",
            layer.kind.value,
            len(self.layers) - 1,
            input_format,
            layer.activations.format,
        )
        return layer

    def add_fully_connected_layer(
        self, neuron_count: int, activation: Activation = Activation.SIGMOID
    ) -> Layer:
        return self.add_layer(FullyConnectedLayer(neuron_count, activation))

    def add_last_fully_connected_layer(
        self, activation: Activation = Activation.SIGMOID
    ) -> Layer:
        """Append a fully-connected layer whose activations have the output format."""
        if self.output_format is None:
            raise UninitializedError("Set the output format before adding the last layer.")
        return self.add_layer(FullyConnectedLayer(self.output_format, activation))

    def add_convolutional_layer(
        self,
        kernel_count: int,
        kernel_size: int,
        stride: int,
        activation: Activation = Activation.RELU,
    ) -> Layer:
        return self.add_layer(
            ConvolutionalLayer(kernel_count, kernel_size, stride, activation)
        )

    def add_pooling_layer(
        self,
        filter_size: int,
        stride: int,
        pooling_fn: PoolingFunction = PoolingFunction.MAX,
    ) -> Layer:
        return self.add_layer(PoolingLayer(filter_size, stride, pooling_fn))

    # Propagation

    def _check_ready(self) -> None:
        if self.input_format is None:
            raise UninitializedError("The network has no input format.")
        if not self.layers:
            raise UninitializedError("The network has no layers.")

    def _layer_input(self, index: int) -> Tensor:
        previous = self.layers[index].previous_index
        if previous is None:
            assert self._input is not None
            return self._input
        return self.layers[previous].activations

    @property
    def output(self) -> Tensor:
        """Activations of the last layer, valid after a forward pass."""
        self._check_ready()
        return self.layers[-1].activations

    def forward_propagation(self, input: Tensor) -> Tensor:
        """Propagate `input` through every layer in order and return the output."""
        self._check_ready()
        if input.format != self.input_format:
            raise FormatError(
                f"Input {input.format} does not match the network input format "
                f"{self.input_format}."
            )
        self._input = input
        for i, layer in enumerate(self.layers):
            layer.forward_propagation(self._layer_input(i))
        self._forward_computed = True
        return self.output

    def _check_label(self, label: Tensor) -> None:
        if self.output_format is None:
            raise UninitializedError("The network has no output format.")
        if label.format != self.output_format:
            raise FormatError(
                f"Label {label.format} does not match the output format {self.output_format}."
            )
        if self.layers and self.layers[-1].activations.format != self.output_format:
            raise FormatError(
                f"The last layer produces {self.layers[-1].activations.format}, "
                f"not the output format {self.output_format}."
            )

    def calculate_cost(self, label: Tensor) -> float:
        """Sum of squared differences between the current output and `label`."""
        self._check_ready()
        self._check_label(label)
        diff = self.output.to_numpy() - label.to_numpy()
        return float(np.sum(diff * diff))

    def learn_once(self, example: Example, apply_changes: bool = False) -> None:
        """Forward one example and backpropagate its error, accumulating deltas.

        Args:
        ----
            example (Example): data and label tensors.
            apply_changes (bool): apply the deltas right away, averaged over 1.

        """
        self._check_ready()
        self._check_label(example.label)
        self.forward_propagation(example.data)
        self.layers[-1].set_error_for_last_layer(example.label)
        for i in reversed(range(len(self.layers))):
            layer = self.layers[i]
            passing_error = (
                None if layer.previous_index is None else self.layers[layer.previous_index].error
            )
            layer.back_propagation(self._layer_input(i), passing_error)
        self._accumulated += 1
        if apply_changes:
            self.apply_deltas(1)

    def learn(self, examples: Iterable[Example], batch_size: int, epochs: int = 1) -> None:
        """Train by mini-batch gradient descent.

        Each epoch walks the examples in their current order, applying the
        accumulated deltas after every `batch_size` examples and after the
        last, smaller batch. Collections with a `shuffle(rng)` method are
        reshuffled after each epoch.
        """
        if batch_size <= 0:
            raise HyperparameterError(f"Batch size must be greater than 0, got {batch_size}.")
        if epochs <= 0:
            raise HyperparameterError(f"Epoch count must be greater than 0, got {epochs}.")
        self._check_ready()
        for epoch in range(1, epochs + 1):
            in_batch = 0
            seen = 0
            total_cost = 0.0
            for example in examples:
                self.learn_once(example)
                total_cost += self.calculate_cost(example.label)
                in_batch += 1
                seen += 1
                if in_batch == batch_size:
                    self.apply_deltas(in_batch)
                    in_batch = 0
            if in_batch:
                self.apply_deltas(in_batch)
            shuffle = getattr(examples, "shuffle", None)
            if callable(shuffle):
                shuffle(self.rng)
            logger.info(
                "Epoch %d/%d: %d examples, avg cost %.6f",
                epoch,
                epochs,
                seen,
                total_cost / seen if seen else 0.0,
            )

    # Parameters

    def _parameter_layers(self) -> List[Layer]:
        return [self.layers[i] for i in self.parameter_layer_indices]

    def apply_deltas(self, count: int) -> None:
        """param -= learning_rate * (delta / count) in every layer, then zero the deltas."""
        if count <= 0:
            raise HyperparameterError(f"Delta count must be greater than 0, got {count}.")
        for layer in self._parameter_layers():
            layer.apply_deltas(count, self.learning_rate)
        self._accumulated = 0
        self._forward_computed = False

    def set_all_parameter(self, value: float) -> None:
        for layer in self._parameter_layers():
            layer.set_all_parameter(value)
        self._forward_computed = False

    def apply_noise(self, range: float) -> None:
        """Add independent uniform noise in [-range, range] to every parameter."""
        for layer in self._parameter_layers():
            layer.apply_noise(range, self.rng)
        self._forward_computed = False

    def mutate(self, range: float) -> None:
        """Perturb exactly one scalar parameter, in a uniformly chosen parameter layer."""
        if not self.parameter_layer_indices:
            raise UninitializedError("The network has no layers with parameters to mutate.")
        index = self.parameter_layer_indices[
            int(self.rng.integers(len(self.parameter_layer_indices)))
        ]
        self.layers[index].mutate(range, self.rng)
        self._forward_computed = False

    # Evaluation

    def test(self, examples: Iterable[Example], interpreter: Interpreter) -> TestResult:
        """Forward every example and score the outputs.

        Args:
        ----
            examples (Iterable[Example]): labeled examples.
            interpreter (Interpreter): decides whether an output matches its label.

        Returns:
        -------
            TestResult: example count, elapsed time, average cost and accuracy.

        """
        self._check_ready()
        start = time.perf_counter()
        count = 0
        correct = 0
        total_cost = 0.0
        for example in examples:
            self._check_label(example.label)
            output = self.forward_propagation(example.data)
            total_cost += self.calculate_cost(example.label)
            if interpreter.same_result(output, example.label):
                correct += 1
            count += 1
        elapsed = (time.perf_counter() - start) * 1000.0
        result = TestResult(
            data_count=count,
            time_in_ms=elapsed,
            avg_cost=total_cost / count if count else 0.0,
            accuracy=correct / count if count else 0.0,
        )
        logger.info(
            "Tested %d examples: accuracy %.2f%%, avg cost %.6f",
            count,
            result.accuracy * 100,
            result.avg_cost,
        )
        return result

    # Residency

    def enable_device(self) -> None:
        """Move every layer to the device. Inputs must then be device tensors too."""
        for layer in self.layers:
            layer.enable_device()
        self._device = True
        logger.info("Network moved to device")

    def disable_device(self) -> None:
        for layer in self.layers:
            layer.disable_device()
        self._device = False
        logger.info("Network moved to host")
