from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from .errors import FormatError, UninitializedError
from .tensor import Tensor, ops_for

if TYPE_CHECKING:
    from typing import Iterable, List, Optional, Tuple

    import numpy as np

    from .tensor_data import Format

logger = logging.getLogger(__name__)


class LayerKind(Enum):
    FULLY_CONNECTED = "fully_connected"
    CONVOLUTIONAL = "convolutional"
    POOLING = "pooling"


class Layer:
    """One link in a network's layer chain.

    A layer is constructed from hyperparameters only. Binding an input
    format allocates its activations, its error (same format as the
    activations) and its parameters. The network then drives it through
    repeated forward and backward passes.

    Attributes
    ----------
        kind (LayerKind): which variant this layer is.
        activations (Tensor): output of the last forward pass.
        error (Tensor): error accumulated for the activations during backprop.
        input_format (Format): format of the tensor fed to this layer.
        previous_index (Optional[int]): position of the previous layer in the
            network, None for the first layer.

    """

    kind: LayerKind

    def __init__(self) -> None:
        self.input_format: Optional[Format] = None
        self.previous_index: Optional[int] = None
        self._activations: Optional[Tensor] = None
        self._error: Optional[Tensor] = None
        self._device = False

    @property
    def is_initialized(self) -> bool:
        return self._activations is not None

    @property
    def activations(self) -> Tensor:
        if self._activations is None:
            raise UninitializedError(f"{self.kind.value} layer has no input format yet.")
        return self._activations

    @property
    def error(self) -> Tensor:
        if self._error is None:
            raise UninitializedError(f"{self.kind.value} layer has no input format yet.")
        return self._error

    def parameters(self) -> List[Tuple[Tensor, Tensor]]:
        """(parameter, delta accumulator) pairs; empty for layers without parameters."""
        return []

    def _owned_tensors(self) -> Iterable[Tensor]:
        yield self.activations
        yield self.error
        for param, delta in self.parameters():
            yield param
            yield delta

    def set_input_format(self, input_format: Format) -> None:
        """Bind the input format and allocate activations, error and parameters.

        Raises
        ------
            HyperparameterError: the layer's window does not tile the input.
            FormatError: the input format is empty.

        """
        if input_format.item_count == 0:
            raise FormatError(f"Cannot bind an empty input format {input_format}.")
        output_format = self._bind(input_format)
        self.input_format = input_format
        self._activations = Tensor.zeros(output_format)
        self._error = Tensor.zeros(output_format)
        if self._device:
            for t in self._owned_tensors():
                t.enable_device()
        logger.debug(
            "Bound %s layer: %s -> %s", self.kind.value, input_format, output_format
        )

    def _bind(self, input_format: Format) -> Format:
        """Validate `input_format`, allocate parameters and return the activation format."""
        raise NotImplementedError

    def _check_input(self, input: Tensor) -> None:
        if self.input_format is None:
            raise UninitializedError(f"{self.kind.value} layer has no input format yet.")
        if input.format != self.input_format:
            raise FormatError(
                f"Input {input.format} does not match the layer's input format "
                f"{self.input_format}."
            )

    def _check_backward(self, input: Tensor, passing_error: Optional[Tensor]) -> None:
        self._check_input(input)
        if passing_error is not None and passing_error.format != input.format:
            raise FormatError(
                f"Passing error {passing_error.format} does not match input {input.format}."
            )

    def forward_propagation(self, input: Tensor) -> None:
        """Compute the activations from `input`."""
        raise NotImplementedError

    def back_propagation(self, input: Tensor, passing_error: Optional[Tensor]) -> None:
        """Consume the error, accumulate deltas and pass error to the previous layer.

        Args:
        ----
            input (Tensor): the tensor the last forward pass was computed from.
            passing_error (Optional[Tensor]): the previous layer's error, which
                receives this layer's contribution; None for the first layer.

        """
        raise NotImplementedError

    def set_error_for_last_layer(self, label: Tensor) -> None:
        """Seed the error with the squared-error gradient `2 * (activations - label)`."""
        ops_for(self.error, self.activations, label).cost_derivative(
            self.error, self.activations, label
        )

    def apply_deltas(self, count: int, learning_rate: float) -> None:
        """param -= learning_rate * (delta / count) for every parameter, then zero the deltas."""
        for param, delta in self.parameters():
            ops_for(param, delta).apply_deltas(param, delta, count, learning_rate)

    def set_all_parameter(self, value: float) -> None:
        for param, _ in self.parameters():
            param.set_all(value)

    def apply_noise(self, range: float, rng: np.random.Generator) -> None:
        for param, _ in self.parameters():
            param.apply_noise(range, rng)

    def mutate(self, range: float, rng: np.random.Generator) -> None:
        """Perturb one scalar parameter.

        The parameter group is chosen with probability proportional to its
        element count, then one element of it uniformly.

        Raises
        ------
            UninitializedError: the layer has no parameters.

        """
        params = [param for param, _ in self.parameters()]
        if not params:
            raise UninitializedError(f"{self.kind.value} layer has no parameters to mutate.")
        pick = int(rng.integers(sum(p.item_count for p in params)))
        for param in params:
            if pick < param.item_count:
                index = param.mutate(range, rng)
                logger.debug("Mutated %s parameter %d", self.kind.value, index)
                return
            pick -= param.item_count

    def enable_device(self) -> None:
        if self.is_initialized:
            for t in self._owned_tensors():
                t.enable_device()
        self._device = True

    def disable_device(self) -> None:
        if self.is_initialized:
            for t in self._owned_tensors():
                t.disable_device()
        self._device = False
