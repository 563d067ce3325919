# type: ignore
# Currently pyright doesn't support numba.cuda

import logging
from typing import Any, Callable, TypeVar

from numba import cuda
from numba.cuda import jit as _jit

from . import operators
from .errors import DeviceError
from .operators import Activation, PoolingFunction
from .tensor_data import (
    DEVICE_FAILURES,
    Storage,
    index_to_position,
    to_index,
    window_extremum,
)
from .tensor_ops import TensorOps

logger = logging.getLogger(__name__)

FakeCUDAKernel = Any

# This code will CUDA compile fast versions of the tensor_data helpers.
# If you get an error, read the docs for NUMBA as to what is allowed
# in these functions.

Fn = TypeVar("Fn")


def device_jit(fn: Fn, **kwargs: Any) -> Fn:
    """JIT-compile a function for device execution (e.g., GPU).

    Args:
    ----
        fn (Fn): The function to compile.
        **kwargs (Any): Additional options for JIT compilation.

    Returns:
    -------
        Fn: Compiled function optimized for device execution.

    """
    return _jit(device=True, **kwargs)(fn)  # type: ignore


def jit(fn: Fn, **kwargs: Any) -> FakeCUDAKernel:
    """JIT-compile a function as a CUDA kernel.

    Args:
    ----
        fn (Fn): The function to compile.
        **kwargs (Any): Additional options for JIT compilation.

    Returns:
    -------
        FakeCUDAKernel: Compiled kernel, launched as `kernel[blocks, threads](...)`.

    """
    return _jit(**kwargs)(fn)  # type: ignore


to_index = device_jit(to_index)
index_to_position = device_jit(index_to_position)
window_extremum = device_jit(window_extremum)

THREADS_PER_BLOCK = 32

MAX_POOLING = int(PoolingFunction.MAX)
AVERAGE_POOLING = int(PoolingFunction.AVERAGE)


def launch(kernel: FakeCUDAKernel, size: int, *args: Any) -> None:
    """Run `kernel` with one lane per element of a `size`-element output.

    Blocks until the device finishes, so no partial result is observable.

    Args:
    ----
        kernel (FakeCUDAKernel): a kernel taking `size` as its second argument.
        size (int): number of output elements.
        *args (Any): kernel arguments; `args[0]` is the output storage.

    Raises:
    ------
        DeviceError: the launch or the synchronization failed.

    """
    threadsperblock = THREADS_PER_BLOCK
    blockspergrid = (size + (THREADS_PER_BLOCK - 1)) // THREADS_PER_BLOCK
    try:
        kernel[blockspergrid, threadsperblock](args[0], size, *args[1:])
        cuda.synchronize()
    except DEVICE_FAILURES as e:
        logger.error("Kernel launch over %d elements failed: %s", size, e)
        raise DeviceError(f"Kernel launch failed: {e}") from e


class CudaOps(TensorOps):
    """Device kernels: one CUDA lane per output element, `THREADS_PER_BLOCK` lanes per block."""

    cuda = True

    @staticmethod
    def _fill(out: Storage, value: float) -> None:
        launch(tensor_fill, out.size, out, value)

    @staticmethod
    def _add(out: Storage, a: Storage, b: Storage) -> None:
        launch(tensor_add, out.size, out, a, b)

    @staticmethod
    def _add_per_depth(out: Storage, a: Storage, biases: Storage, slice_size: int) -> None:
        launch(tensor_add_per_depth, out.size, out, a, biases, slice_size)

    @staticmethod
    def _add_values(out: Storage, values: Storage) -> None:
        try:
            device_values = cuda.to_device(values)
        except DEVICE_FAILURES as e:
            raise DeviceError(f"Could not copy values to device: {e}") from e
        launch(tensor_add, out.size, out, out, device_values)

    @staticmethod
    def _dot_product(out: Storage, weights: Storage, inp: Storage, in_count: int) -> None:
        launch(tensor_dot_product, out.size, out, weights, inp, in_count)

    @staticmethod
    def _cross_correlation(
        out: Storage,
        out_width: int,
        out_height: int,
        out_size: int,
        *args: Any,
    ) -> None:
        launch(tensor_cross_correlation, out_size, out, out_width, out_height, *args)

    @staticmethod
    def _activate(storage: Storage, fn: Activation) -> None:
        launch(ACTIVATE[fn], storage.size, storage, storage)

    @staticmethod
    def _activation_gradient(
        grad: Storage, error: Storage, activations: Storage, fn: Activation
    ) -> None:
        launch(GRADIENT[fn], grad.size, grad, error, activations)

    @staticmethod
    def _accumulate_outer(delta: Storage, grad: Storage, inp: Storage, in_count: int) -> None:
        launch(tensor_accumulate_outer, delta.size, delta, grad, inp, in_count)

    @staticmethod
    def _accumulate_transposed_dot(
        passing: Storage, weights: Storage, grad: Storage, out_count: int
    ) -> None:
        launch(
            tensor_accumulate_transposed_dot, passing.size, passing, weights, grad, out_count
        )

    @staticmethod
    def _accumulate_depth_sums(delta: Storage, grad: Storage, slice_size: int) -> None:
        launch(tensor_accumulate_depth_sums, delta.size, delta, grad, slice_size)

    @staticmethod
    def _correlation_weight_gradient(
        delta: Storage, delta_size: int, *args: Any
    ) -> None:
        launch(tensor_correlation_weight_gradient, delta_size, delta, *args)

    @staticmethod
    def _correlation_input_error(
        passing: Storage,
        in_width: int,
        in_height: int,
        in_depth: int,
        in_size: int,
        *args: Any,
    ) -> None:
        launch(
            tensor_correlation_input_error,
            in_size,
            passing,
            in_width,
            in_height,
            in_depth,
            *args,
        )

    @staticmethod
    def _pool(
        out: Storage, out_width: int, out_height: int, out_size: int, *args: Any
    ) -> None:
        launch(tensor_pool, out_size, out, out_width, out_height, *args)

    @staticmethod
    def _unpool(
        passing: Storage,
        input: Storage,
        in_width: int,
        in_height: int,
        in_size: int,
        *args: Any,
    ) -> None:
        launch(tensor_unpool, in_size, passing, input, in_width, in_height, *args)

    @staticmethod
    def _apply_deltas(
        param: Storage, delta: Storage, count: float, learning_rate: float
    ) -> None:
        launch(tensor_apply_deltas, param.size, param, delta, count, learning_rate)

    @staticmethod
    def _cost_derivative(error: Storage, activations: Storage, label: Storage) -> None:
        launch(tensor_cost_derivative, error.size, error, activations, label)


# Implementations
#
# Every kernel takes its output storage first and the output size second,
# the order `launch` relies on.


def _tensor_fill(out: Storage, size: int, value: float) -> None:
    i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if i < size:
        out[i] = value


def _tensor_add(out: Storage, size: int, a: Storage, b: Storage) -> None:
    i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if i < size:
        out[i] = a[i] + b[i]


def _tensor_add_per_depth(
    out: Storage, size: int, a: Storage, biases: Storage, slice_size: int
) -> None:
    i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if i < size:
        out[i] = a[i] + biases[i // slice_size]


def _tensor_dot_product(
    out: Storage, size: int, weights: Storage, inp: Storage, in_count: int
) -> None:
    """CUDA dot product of a weight matrix and a flat input.

    Each lane computes one neuron: `out[i] = sum_j weights[j + i * in_count] * inp[j]`.
    The reduction stays inside the lane, so lanes never synchronize.

    Args:
    ----
        out (Storage): storage for the output.
        size (int): number of output neurons.
        weights (Storage): storage for the weights, in_count * size elements.
        inp (Storage): storage for the input.
        in_count (int): number of input elements.

    """
    i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if i < size:
        tmp = 0.0
        row = i * in_count
        for j in range(in_count):
            tmp += weights[row + j] * inp[j]
        out[i] = tmp


def tensor_map(fn: Callable[[float], float]) -> FakeCUDAKernel:
    """CUDA higher-order map: out[i] = fn(in[i]).

    Args:
    ----
        fn: device function mapping floats to floats.

    Returns:
    -------
        Tensor map kernel.

    """

    def _map(out: Storage, size: int, in_storage: Storage) -> None:
        i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
        if i < size:
            out[i] = fn(in_storage[i])

    return jit(_map)


def tensor_gradient(
    inverse: Callable[[float], float], derivative: Callable[[float], float]
) -> FakeCUDAKernel:
    """CUDA higher-order local gradient: grad = error * derivative(inverse(act)), error = 0.

    Args:
    ----
        inverse: device function recovering the pre-activation value.
        derivative: device function for the activation derivative.

    Returns:
    -------
        Tensor gradient kernel.

    """

    def _gradient(grad: Storage, size: int, error: Storage, activations: Storage) -> None:
        i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
        if i < size:
            e = error[i]
            error[i] = 0.0
            grad[i] = e * derivative(inverse(activations[i]))

    return jit(_gradient)


def _tensor_accumulate_outer(
    delta: Storage, size: int, grad: Storage, inp: Storage, in_count: int
) -> None:
    w = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if w < size:
        delta[w] += grad[w // in_count] * inp[w % in_count]


def _tensor_accumulate_transposed_dot(
    passing: Storage, size: int, weights: Storage, grad: Storage, out_count: int
) -> None:
    # one lane per input unit, so the += never races
    j = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if j < size:
        tmp = 0.0
        for i in range(out_count):
            tmp += grad[i] * weights[j + i * size]
        passing[j] += tmp


def _tensor_accumulate_depth_sums(
    delta: Storage, size: int, grad: Storage, slice_size: int
) -> None:
    z = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if z < size:
        tmp = 0.0
        start = z * slice_size
        for p in range(slice_size):
            tmp += grad[start + p]
        delta[z] += tmp


def _tensor_cross_correlation(
    out: Storage,
    size: int,
    out_width: int,
    out_height: int,
    input: Storage,
    in_width: int,
    in_height: int,
    in_depth: int,
    kernels: Storage,
    kernel_size: int,
    stride: int,
) -> None:
    """CUDA valid cross-correlation: each lane sums one output window over all input slices."""
    i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if i < size:
        kernel_area = kernel_size * kernel_size
        x, y, n = to_index(i, out_width, out_height)
        temp = 0.0
        for c in range(in_depth):
            kernel_start = (n * in_depth + c) * kernel_area
            for ky in range(kernel_size):
                for kx in range(kernel_size):
                    in_pos = index_to_position(
                        x * stride + kx, y * stride + ky, c, in_width, in_height
                    )
                    temp += input[in_pos] * kernels[kernel_start + kx + ky * kernel_size]
        out[i] = temp


def _tensor_correlation_weight_gradient(
    delta: Storage,
    size: int,
    kernel_size: int,
    grad: Storage,
    out_width: int,
    out_height: int,
    input: Storage,
    in_width: int,
    in_height: int,
    in_depth: int,
    stride: int,
) -> None:
    w = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if w < size:
        kx, ky, kz = to_index(w, kernel_size, kernel_size)
        n = kz // in_depth
        c = kz % in_depth
        temp = 0.0
        for oy in range(out_height):
            for ox in range(out_width):
                g = grad[index_to_position(ox, oy, n, out_width, out_height)]
                in_pos = index_to_position(
                    ox * stride + kx, oy * stride + ky, c, in_width, in_height
                )
                temp += g * input[in_pos]
        delta[w] += temp


def _tensor_correlation_input_error(
    passing: Storage,
    size: int,
    in_width: int,
    in_height: int,
    in_depth: int,
    grad: Storage,
    out_width: int,
    out_height: int,
    out_depth: int,
    kernels: Storage,
    kernel_size: int,
    stride: int,
) -> None:
    """CUDA input error: each lane gathers from every window that covered its input element."""
    p = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if p < size:
        kernel_area = kernel_size * kernel_size
        x, y, c = to_index(p, in_width, in_height)
        temp = 0.0
        for n in range(out_depth):
            kernel_start = (n * in_depth + c) * kernel_area
            for ky in range(kernel_size):
                span_y = y - ky
                if span_y < 0 or span_y % stride != 0:
                    continue
                oy = span_y // stride
                if oy >= out_height:
                    continue
                for kx in range(kernel_size):
                    span_x = x - kx
                    if span_x < 0 or span_x % stride != 0:
                        continue
                    ox = span_x // stride
                    if ox >= out_width:
                        continue
                    g = grad[index_to_position(ox, oy, n, out_width, out_height)]
                    temp += g * kernels[kernel_start + kx + ky * kernel_size]
        passing[p] += temp


def _tensor_pool(
    out: Storage,
    size: int,
    out_width: int,
    out_height: int,
    input: Storage,
    in_width: int,
    in_height: int,
    filter_size: int,
    stride: int,
    mode: int,
) -> None:
    i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if i < size:
        x, y, z = to_index(i, out_width, out_height)
        x0 = x * stride
        y0 = y * stride
        if mode == AVERAGE_POOLING:
            temp = 0.0
            for fy in range(filter_size):
                for fx in range(filter_size):
                    temp += input[index_to_position(x0 + fx, y0 + fy, z, in_width, in_height)]
            out[i] = temp / (filter_size * filter_size)
        else:
            pos = window_extremum(
                input, x0, y0, z, in_width, in_height, filter_size, mode == MAX_POOLING
            )
            out[i] = input[pos]


def _tensor_unpool(
    passing: Storage,
    size: int,
    input: Storage,
    in_width: int,
    in_height: int,
    error: Storage,
    out_width: int,
    out_height: int,
    filter_size: int,
    stride: int,
    mode: int,
) -> None:
    p = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if p < size:
        area = filter_size * filter_size
        x, y, z = to_index(p, in_width, in_height)
        temp = 0.0
        for oy in range(out_height):
            y0 = oy * stride
            if y < y0 or y >= y0 + filter_size:
                continue
            for ox in range(out_width):
                x0 = ox * stride
                if x < x0 or x >= x0 + filter_size:
                    continue
                e = error[index_to_position(ox, oy, z, out_width, out_height)]
                if mode == AVERAGE_POOLING:
                    temp += e / area
                elif (
                    window_extremum(
                        input, x0, y0, z, in_width, in_height, filter_size,
                        mode == MAX_POOLING,
                    )
                    == p
                ):
                    temp += e
        passing[p] += temp


def _tensor_apply_deltas(
    param: Storage, size: int, delta: Storage, count: float, learning_rate: float
) -> None:
    i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if i < size:
        param[i] = param[i] - learning_rate * (delta[i] / count)
        delta[i] = 0.0


def _tensor_cost_derivative(
    error: Storage, size: int, activations: Storage, label: Storage
) -> None:
    i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    if i < size:
        error[i] = 2.0 * (activations[i] - label[i])


tensor_fill = jit(_tensor_fill)
tensor_add = jit(_tensor_add)
tensor_add_per_depth = jit(_tensor_add_per_depth)
tensor_dot_product = jit(_tensor_dot_product)
tensor_accumulate_outer = jit(_tensor_accumulate_outer)
tensor_accumulate_transposed_dot = jit(_tensor_accumulate_transposed_dot)
tensor_accumulate_depth_sums = jit(_tensor_accumulate_depth_sums)
tensor_cross_correlation = jit(_tensor_cross_correlation)
tensor_correlation_weight_gradient = jit(_tensor_correlation_weight_gradient)
tensor_correlation_input_error = jit(_tensor_correlation_input_error)
tensor_pool = jit(_tensor_pool)
tensor_unpool = jit(_tensor_unpool)
tensor_apply_deltas = jit(_tensor_apply_deltas)
tensor_cost_derivative = jit(_tensor_cost_derivative)

ACTIVATE = {fn: tensor_map(device_jit(operators.ACTIVATION[fn])) for fn in Activation}
GRADIENT = {
    fn: tensor_gradient(
        device_jit(operators.INVERSE[fn]), device_jit(operators.DERIVATIVE[fn])
    )
    for fn in Activation
}
