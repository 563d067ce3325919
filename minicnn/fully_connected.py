from __future__ import annotations

from typing import TYPE_CHECKING, Union

from .errors import HyperparameterError
from .layer import Layer, LayerKind
from .operators import Activation
from .tensor import Tensor, ops_for
from .tensor_data import Format

if TYPE_CHECKING:
    from typing import Iterable, List, Optional, Tuple


class FullyConnectedLayer(Layer):
    """Every neuron sees every input element.

    Forward: `activations = fn(dot_product(weights, input) + biases)`, where
    `weights` has format (input_count, neuron_count, 1) and `weights[j, i]`
    links input `j` to neuron `i`.

    Args:
    ----
        neurons (Union[int, Format]): neuron count, or the full activation
            format when the layer must produce a specific output format.
        activation (Activation): activation function.

    """

    kind = LayerKind.FULLY_CONNECTED

    def __init__(
        self, neurons: Union[int, Format], activation: Activation = Activation.SIGMOID
    ):
        super().__init__()
        if not isinstance(neurons, Format) and neurons <= 0:
            raise HyperparameterError(
                f"A fully-connected layer needs at least one neuron, got {neurons}."
            )
        self.output_format = neurons if isinstance(neurons, Format) else Format(neurons)
        if self.output_format.item_count <= 0:
            raise HyperparameterError(
                f"A fully-connected layer needs at least one neuron, got {self.output_format}."
            )
        self.activation = Activation(activation)
        self.weights: Optional[Tensor] = None
        self.biases: Optional[Tensor] = None
        self.weight_deltas: Optional[Tensor] = None
        self.bias_deltas: Optional[Tensor] = None
        self._gradient: Optional[Tensor] = None

    @property
    def neuron_count(self) -> int:
        return self.output_format.item_count

    def _bind(self, input_format: Format) -> Format:
        weight_format = Format(input_format.item_count, self.neuron_count, 1)
        self.weights = Tensor.zeros(weight_format)
        self.weight_deltas = Tensor.zeros(weight_format)
        self.biases = Tensor.zeros(self.output_format)
        self.bias_deltas = Tensor.zeros(self.output_format)
        self._gradient = Tensor.zeros(self.output_format)
        return self.output_format

    def parameters(self) -> List[Tuple[Tensor, Tensor]]:
        if self.weights is None:
            return []
        return [(self.weights, self.weight_deltas), (self.biases, self.bias_deltas)]

    def _owned_tensors(self) -> Iterable[Tensor]:
        yield from super()._owned_tensors()
        yield self._gradient

    def forward_propagation(self, input: Tensor) -> None:
        self._check_input(input)
        Tensor.dot_product(self.weights, input, self.activations)
        self.activations.add(self.biases)
        self.activations.apply_activation(self.activation)

    def back_propagation(self, input: Tensor, passing_error: Optional[Tensor]) -> None:
        self._check_backward(input, passing_error)
        operands = [self.error, self.activations, self.weights, input]
        if passing_error is not None:
            operands.append(passing_error)
        ops = ops_for(*operands)

        # gradient = error * f'(f^-1(activation)); the error is zeroed as it is read
        ops.activation_gradient(self.error, self.activations, self.activation, self._gradient)
        ops.add(self.bias_deltas, self._gradient, self.bias_deltas)
        ops.accumulate_outer(self.weight_deltas, self._gradient, input)
        if passing_error is not None:
            ops.accumulate_transposed_dot(passing_error, self.weights, self._gradient)
