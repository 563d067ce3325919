from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from .errors import FormatError, HyperparameterError
from .operators import Activation, PoolingFunction
from .tensor_data import output_side

if TYPE_CHECKING:
    from typing import Any

    import numpy.typing as npt

    from .tensor import Tensor
    from .tensor_data import Storage


def check_nonempty(*tensors: Tensor) -> None:
    """Raise `FormatError` if any tensor holds no elements."""
    for t in tensors:
        if t.item_count == 0:
            raise FormatError(f"Operation on an empty {t.format} tensor.")


def check_same_format(*tensors: Tensor) -> None:
    """Raise `FormatError` unless all tensors share one format."""
    check_nonempty(*tensors)
    first = tensors[0]
    for t in tensors[1:]:
        if t.format != first.format:
            raise FormatError(f"Format {t.format} does not match {first.format}.")


def check_correlation(inp: Tensor, kernels: Tensor, stride: int, out: Tensor) -> None:
    """Validate a valid cross-correlation of `inp` with stacked `kernels` into `out`.

    Args:
    ----
        inp (Tensor): width x height x depth input.
        kernels (Tensor): k x k x (depth * kernel_count), kernel `n` in depth
            slices [n * depth, (n + 1) * depth).
        stride (int): step between window positions.
        out (Tensor): out_side x out_side x kernel_count output.

    """
    check_nonempty(inp, kernels, out)
    if stride <= 0:
        raise HyperparameterError(f"Stride must be greater than 0, got {stride}.")
    k = kernels.format.width
    if kernels.format.height != k:
        raise FormatError(f"Kernels must be square, got {kernels.format}.")
    if kernels.format.depth != inp.format.depth * out.format.depth:
        raise FormatError(
            f"Kernels {kernels.format} do not give {out.format.depth} kernels "
            f"of depth {inp.format.depth}."
        )
    width = output_side(inp.format.width, k, stride)
    height = output_side(inp.format.height, k, stride)
    if width is None or height is None:
        raise HyperparameterError(
            f"Kernel size {k} and stride {stride} do not tile input {inp.format}."
        )
    if (width, height) != (out.format.width, out.format.height):
        raise FormatError(
            f"Output {out.format} does not match correlation output ({width}, {height})."
        )


def check_pooling(inp: Tensor, out: Tensor, filter_size: int, stride: int) -> None:
    """Validate a sliding-window pooling of `inp` into `out`."""
    check_nonempty(inp, out)
    if filter_size <= 0 or stride <= 0:
        raise HyperparameterError(
            f"Filter size and stride must be greater than 0, got {filter_size}, {stride}."
        )
    width = output_side(inp.format.width, filter_size, stride)
    height = output_side(inp.format.height, filter_size, stride)
    if width is None or height is None:
        raise HyperparameterError(
            f"Filter size {filter_size} and stride {stride} do not tile input {inp.format}."
        )
    if (width, height, inp.format.depth) != out.format.as_tuple():
        raise FormatError(
            f"Output {out.format} does not match pooling output "
            f"({width}, {height}, {inp.format.depth})."
        )


class TensorOps:
    """Shape-checked tensor primitives.

    The public class methods validate their operands and then hand the raw
    storage to the `_`-prefixed kernel hooks, which `FastOps` (host) and
    `CudaOps` (device) implement. Nothing is written before validation
    passes, so a failing call leaves every operand untouched.
    """

    cuda = False

    @classmethod
    def fill(cls, out: Tensor, value: float) -> None:
        """Set every element of `out` to `value`."""
        check_nonempty(out)
        cls._fill(out.storage, float(value))

    @classmethod
    def add(cls, a: Tensor, b: Tensor, out: Tensor) -> None:
        """out = a + b, elementwise."""
        check_same_format(a, b, out)
        cls._add(out.storage, a.storage, b.storage)

    @classmethod
    def add_per_depth(cls, a: Tensor, biases: Tensor, out: Tensor) -> None:
        """out[x, y, z] = a[x, y, z] + biases[z]."""
        check_same_format(a, out)
        check_nonempty(biases)
        if biases.item_count != a.format.depth:
            raise FormatError(
                f"Biases {biases.format} need one value per depth slice of {a.format}."
            )
        slice_size = a.format.width * a.format.height
        cls._add_per_depth(out.storage, a.storage, biases.storage, slice_size)

    @classmethod
    def add_values(cls, out: Tensor, values: npt.NDArray[np.float64]) -> None:
        """Add host-side `values` (one per element) to `out`."""
        check_nonempty(out)
        if values.size != out.item_count:
            raise FormatError(f"{values.size} values do not fit {out.format}.")
        cls._add_values(out.storage, np.ascontiguousarray(values, dtype=np.float64))

    @classmethod
    def dot_product(cls, weights: Tensor, inp: Tensor, out: Tensor) -> None:
        """out[i] = sum_j weights[j + i * inp.item_count] * inp[j]."""
        check_nonempty(weights, inp, out)
        if weights.item_count != inp.item_count * out.item_count:
            raise FormatError(
                f"Weights {weights.format} do not map {inp.item_count} inputs "
                f"to {out.item_count} outputs."
            )
        cls._dot_product(out.storage, weights.storage, inp.storage, inp.item_count)

    @classmethod
    def valid_cross_correlation(
        cls, inp: Tensor, kernels: Tensor, stride: int, out: Tensor
    ) -> None:
        """Correlate `inp` with every kernel, one output depth slice per kernel."""
        check_correlation(inp, kernels, stride, out)
        cls._cross_correlation(
            out.storage,
            out.format.width,
            out.format.height,
            out.item_count,
            inp.storage,
            inp.format.width,
            inp.format.height,
            inp.format.depth,
            kernels.storage,
            kernels.format.width,
            stride,
        )

    @classmethod
    def activate(cls, t: Tensor, fn: Activation) -> None:
        """Apply activation `fn` to every element of `t` in place."""
        check_nonempty(t)
        cls._activate(t.storage, Activation(fn))

    @classmethod
    def activation_gradient(
        cls, error: Tensor, activations: Tensor, fn: Activation, grad: Tensor
    ) -> None:
        """grad = error * fn'(fn^-1(activations)), then error = 0."""
        check_same_format(error, activations, grad)
        cls._activation_gradient(
            grad.storage, error.storage, activations.storage, Activation(fn)
        )

    @classmethod
    def accumulate_outer(cls, delta: Tensor, grad: Tensor, inp: Tensor) -> None:
        """delta[j + i * inp.item_count] += grad[i] * inp[j]."""
        check_nonempty(delta, grad, inp)
        if delta.item_count != grad.item_count * inp.item_count:
            raise FormatError(
                f"Deltas {delta.format} do not match {inp.item_count} inputs "
                f"and {grad.item_count} outputs."
            )
        cls._accumulate_outer(delta.storage, grad.storage, inp.storage, inp.item_count)

    @classmethod
    def accumulate_transposed_dot(
        cls, passing: Tensor, weights: Tensor, grad: Tensor
    ) -> None:
        """passing[j] += sum_i grad[i] * weights[j + i * passing.item_count]."""
        check_nonempty(passing, weights, grad)
        if weights.item_count != passing.item_count * grad.item_count:
            raise FormatError(
                f"Weights {weights.format} do not map {passing.item_count} inputs "
                f"to {grad.item_count} outputs."
            )
        cls._accumulate_transposed_dot(
            passing.storage, weights.storage, grad.storage, grad.item_count
        )

    @classmethod
    def accumulate_depth_sums(cls, delta: Tensor, grad: Tensor) -> None:
        """delta[z] += sum of depth slice z of grad."""
        check_nonempty(delta, grad)
        if delta.item_count != grad.format.depth:
            raise FormatError(
                f"Deltas {delta.format} need one value per depth slice of {grad.format}."
            )
        slice_size = grad.format.width * grad.format.height
        cls._accumulate_depth_sums(delta.storage, grad.storage, slice_size)

    @classmethod
    def correlation_weight_gradient(
        cls, delta: Tensor, grad: Tensor, inp: Tensor, stride: int
    ) -> None:
        """Accumulate the kernel-weight gradient of a valid cross-correlation.

        delta[kx, ky, n * depth + c] += sum_{ox, oy} grad[ox, oy, n] *
        inp[ox * stride + kx, oy * stride + ky, c]
        """
        check_correlation(inp, delta, stride, grad)
        cls._correlation_weight_gradient(
            delta.storage,
            delta.item_count,
            delta.format.width,
            grad.storage,
            grad.format.width,
            grad.format.height,
            inp.storage,
            inp.format.width,
            inp.format.height,
            inp.format.depth,
            stride,
        )

    @classmethod
    def correlation_input_error(
        cls, passing: Tensor, grad: Tensor, kernels: Tensor, stride: int
    ) -> None:
        """Accumulate the input error of a valid cross-correlation.

        This is the full convolution of `grad` with the flipped kernels,
        spread back over the input positions each window covered.
        """
        check_correlation(passing, kernels, stride, grad)
        cls._correlation_input_error(
            passing.storage,
            passing.format.width,
            passing.format.height,
            passing.format.depth,
            passing.item_count,
            grad.storage,
            grad.format.width,
            grad.format.height,
            grad.format.depth,
            kernels.storage,
            kernels.format.width,
            stride,
        )

    @classmethod
    def pool(
        cls,
        inp: Tensor,
        out: Tensor,
        filter_size: int,
        stride: int,
        fn: PoolingFunction,
    ) -> None:
        """Reduce every filter window of `inp` into one element of `out`."""
        check_pooling(inp, out, filter_size, stride)
        cls._pool(
            out.storage,
            out.format.width,
            out.format.height,
            out.item_count,
            inp.storage,
            inp.format.width,
            inp.format.height,
            filter_size,
            stride,
            int(PoolingFunction(fn)),
        )

    @classmethod
    def unpool(
        cls,
        passing: Tensor,
        inp: Tensor,
        error: Tensor,
        filter_size: int,
        stride: int,
        fn: PoolingFunction,
    ) -> None:
        """Route the pooled `error` back onto the input positions that produced it."""
        check_same_format(passing, inp)
        check_pooling(inp, error, filter_size, stride)
        cls._unpool(
            passing.storage,
            inp.storage,
            inp.format.width,
            inp.format.height,
            inp.item_count,
            error.storage,
            error.format.width,
            error.format.height,
            filter_size,
            stride,
            int(PoolingFunction(fn)),
        )

    @classmethod
    def apply_deltas(
        cls, param: Tensor, delta: Tensor, count: int, learning_rate: float
    ) -> None:
        """param -= learning_rate * (delta / count), then delta = 0."""
        check_same_format(param, delta)
        if count <= 0:
            raise HyperparameterError(f"Delta count must be greater than 0, got {count}.")
        cls._apply_deltas(param.storage, delta.storage, float(count), float(learning_rate))

    @classmethod
    def cost_derivative(cls, error: Tensor, activations: Tensor, label: Tensor) -> None:
        """error = 2 * (activations - label), the gradient of the squared error."""
        check_same_format(error, activations, label)
        cls._cost_derivative(error.storage, activations.storage, label.storage)

    # Kernel hooks.

    @staticmethod
    def _fill(out: Storage, value: float) -> None:
        raise NotImplementedError

    @staticmethod
    def _add(out: Storage, a: Storage, b: Storage) -> None:
        raise NotImplementedError

    @staticmethod
    def _add_per_depth(out: Storage, a: Storage, biases: Storage, slice_size: int) -> None:
        raise NotImplementedError

    @staticmethod
    def _add_values(out: Storage, values: Storage) -> None:
        raise NotImplementedError

    @staticmethod
    def _dot_product(out: Storage, weights: Storage, inp: Storage, in_count: int) -> None:
        raise NotImplementedError

    @staticmethod
    def _cross_correlation(*args: Any) -> None:
        raise NotImplementedError

    @staticmethod
    def _activate(storage: Storage, fn: Activation) -> None:
        raise NotImplementedError

    @staticmethod
    def _activation_gradient(
        grad: Storage, error: Storage, activations: Storage, fn: Activation
    ) -> None:
        raise NotImplementedError

    @staticmethod
    def _accumulate_outer(delta: Storage, grad: Storage, inp: Storage, in_count: int) -> None:
        raise NotImplementedError

    @staticmethod
    def _accumulate_transposed_dot(
        passing: Storage, weights: Storage, grad: Storage, out_count: int
    ) -> None:
        raise NotImplementedError

    @staticmethod
    def _accumulate_depth_sums(delta: Storage, grad: Storage, slice_size: int) -> None:
        raise NotImplementedError

    @staticmethod
    def _correlation_weight_gradient(*args: Any) -> None:
        raise NotImplementedError

    @staticmethod
    def _correlation_input_error(*args: Any) -> None:
        raise NotImplementedError

    @staticmethod
    def _pool(*args: Any) -> None:
        raise NotImplementedError

    @staticmethod
    def _unpool(*args: Any) -> None:
        raise NotImplementedError

    @staticmethod
    def _apply_deltas(
        param: Storage, delta: Storage, count: float, learning_rate: float
    ) -> None:
        raise NotImplementedError

    @staticmethod
    def _cost_derivative(error: Storage, activations: Storage, label: Storage) -> None:
        raise NotImplementedError
