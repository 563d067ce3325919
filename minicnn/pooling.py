from __future__ import annotations

from typing import TYPE_CHECKING

from .errors import HyperparameterError
from .layer import Layer, LayerKind
from .operators import PoolingFunction
from .tensor import ops_for
from .tensor_data import Format, output_side

if TYPE_CHECKING:
    from typing import Optional

    from .tensor import Tensor


class PoolingLayer(Layer):
    """Reduces every filter window of each depth slice to one value.

    Max and min pooling send a window's error back to the first element
    holding the extremum; average pooling splits it evenly. The layer has
    no parameters.
    """

    kind = LayerKind.POOLING

    def __init__(
        self,
        filter_size: int,
        stride: int,
        pooling_fn: PoolingFunction = PoolingFunction.MAX,
    ):
        super().__init__()
        if filter_size <= 0:
            raise HyperparameterError(f"Filter size must be greater than 0, got {filter_size}.")
        if stride <= 0:
            raise HyperparameterError(f"Stride must be greater than 0, got {stride}.")
        self.filter_size = filter_size
        self.stride = stride
        self.pooling_fn = PoolingFunction(pooling_fn)

    def _bind(self, input_format: Format) -> Format:
        width = output_side(input_format.width, self.filter_size, self.stride)
        height = output_side(input_format.height, self.filter_size, self.stride)
        if width is None or height is None:
            raise HyperparameterError(
                f"Filter size {self.filter_size} and stride {self.stride} do not give an "
                f"integral output side for input {input_format}."
            )
        return Format(width, height, input_format.depth)

    def forward_propagation(self, input: Tensor) -> None:
        self._check_input(input)
        ops_for(input, self.activations).pool(
            input, self.activations, self.filter_size, self.stride, self.pooling_fn
        )

    def back_propagation(self, input: Tensor, passing_error: Optional[Tensor]) -> None:
        self._check_backward(input, passing_error)
        if passing_error is not None:
            ops_for(passing_error, input, self.error).unpool(
                passing_error,
                input,
                self.error,
                self.filter_size,
                self.stride,
                self.pooling_fn,
            )
        self.error.set_all(0.0)
