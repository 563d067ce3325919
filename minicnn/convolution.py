from __future__ import annotations

from typing import TYPE_CHECKING

from .errors import HyperparameterError, IndexingError, UninitializedError
from .layer import Layer, LayerKind
from .operators import Activation
from .tensor import Tensor, ops_for
from .tensor_data import Format, output_side

if TYPE_CHECKING:
    from typing import Iterable, List, Optional, Tuple


class ConvolutionalLayer(Layer):
    """Valid, strided 2D cross-correlation against a bank of kernels.

    All kernels live in one stacked `weights` tensor of format
    (kernel_size, kernel_size, input_depth * kernel_count); kernel `n` is
    depth slices [n * input_depth, (n + 1) * input_depth). Each kernel has
    one scalar bias, broadcast over its output slice, and produces one
    depth slice of the activations.

    Args:
    ----
        kernel_count (int): number of kernels, the output depth.
        kernel_size (int): side length of every kernel.
        stride (int): step between window positions, at most `kernel_size`.
        activation (Activation): activation function.

    """

    kind = LayerKind.CONVOLUTIONAL

    def __init__(
        self,
        kernel_count: int,
        kernel_size: int,
        stride: int,
        activation: Activation = Activation.RELU,
    ):
        super().__init__()
        if kernel_count <= 0:
            raise HyperparameterError(f"Kernel count must be greater than 0, got {kernel_count}.")
        if kernel_size <= 0:
            raise HyperparameterError(f"Kernel size must be greater than 0, got {kernel_size}.")
        if stride <= 0:
            raise HyperparameterError(f"Stride must be greater than 0, got {stride}.")
        if stride > kernel_size:
            raise HyperparameterError(
                f"Stride {stride} must not exceed the kernel size {kernel_size}."
            )
        self.kernel_count = kernel_count
        self.kernel_size = kernel_size
        self.stride = stride
        self.activation = Activation(activation)
        self.weights: Optional[Tensor] = None
        self.biases: Optional[Tensor] = None
        self.weight_deltas: Optional[Tensor] = None
        self.bias_deltas: Optional[Tensor] = None
        self._gradient: Optional[Tensor] = None

    def _bind(self, input_format: Format) -> Format:
        width = output_side(input_format.width, self.kernel_size, self.stride)
        height = output_side(input_format.height, self.kernel_size, self.stride)
        if width is None or height is None:
            raise HyperparameterError(
                f"Kernel size {self.kernel_size} and stride {self.stride} do not give an "
                f"integral output side for input {input_format}."
            )
        k = self.kernel_size
        weight_format = Format(k, k, input_format.depth * self.kernel_count)
        bias_format = Format(1, 1, self.kernel_count)
        output_format = Format(width, height, self.kernel_count)
        self.weights = Tensor.zeros(weight_format)
        self.weight_deltas = Tensor.zeros(weight_format)
        self.biases = Tensor.zeros(bias_format)
        self.bias_deltas = Tensor.zeros(bias_format)
        self._gradient = Tensor.zeros(output_format)
        return output_format

    def kernel(self, n: int) -> Tensor:
        """A view of kernel `n`: (kernel_size, kernel_size, input_depth)."""
        if self.input_format is None or self.weights is None:
            raise UninitializedError("The layer has no kernels before its input format is bound.")
        if n < 0 or n >= self.kernel_count:
            raise IndexingError(f"Kernel {n} out of range {self.kernel_count}.")
        k = self.kernel_size
        depth = self.input_format.depth
        return Tensor.observe(self.weights, Format(k, k, depth), n * k * k * depth)

    def parameters(self) -> List[Tuple[Tensor, Tensor]]:
        if self.weights is None:
            return []
        return [(self.weights, self.weight_deltas), (self.biases, self.bias_deltas)]

    def _owned_tensors(self) -> Iterable[Tensor]:
        yield from super()._owned_tensors()
        yield self._gradient

    def forward_propagation(self, input: Tensor) -> None:
        self._check_input(input)
        self.activations.set_all(0.0)
        Tensor.valid_cross_correlation(input, self.weights, self.stride, self.activations)
        self.activations.add_per_depth(self.biases)
        self.activations.apply_activation(self.activation)

    def back_propagation(self, input: Tensor, passing_error: Optional[Tensor]) -> None:
        self._check_backward(input, passing_error)
        operands = [self.error, self.activations, self.weights, input]
        if passing_error is not None:
            operands.append(passing_error)
        ops = ops_for(*operands)

        ops.activation_gradient(self.error, self.activations, self.activation, self._gradient)
        ops.accumulate_depth_sums(self.bias_deltas, self._gradient)
        ops.correlation_weight_gradient(self.weight_deltas, self._gradient, input, self.stride)
        if passing_error is not None:
            ops.correlation_input_error(passing_error, self._gradient, self.weights, self.stride)
