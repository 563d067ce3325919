from typing import Any, TypeVar

from numba import njit as _njit
from numba import prange

from .operators import PoolingFunction
from .tensor_data import Storage, index_to_position, to_index, window_extremum

Fn = TypeVar("Fn")

MAX_POOLING = int(PoolingFunction.MAX)
AVERAGE_POOLING = int(PoolingFunction.AVERAGE)


def njit(fn: Fn, **kwargs: Any) -> Fn:
    """JIT-compiles the given function for the host, always inlining it into callers.

    Args:
    ----
        fn (Fn): The function to compile.
        **kwargs (Any): Additional options for numba.njit.

    Returns:
    -------
        Fn: The compiled function.

    """
    return _njit(inline="always", **kwargs)(fn)  # type: ignore


# This code will JIT compile fast versions of the tensor_data index helpers.
to_index = njit(to_index)
index_to_position = njit(index_to_position)
window_extremum = njit(window_extremum)


def _tensor_cross_correlation(
    out: Storage,
    out_width: int,
    out_height: int,
    out_size: int,
    input: Storage,
    in_width: int,
    in_height: int,
    in_depth: int,
    kernels: Storage,
    kernel_size: int,
    stride: int,
) -> None:
    """Valid 2D cross-correlation against a stack of kernels.

    Given an input tensor of

       `in_width, in_height, in_depth`

    and stacked kernels of

       `kernel_size, kernel_size, in_depth * kernel_count`

    computes the unpadded output of

       `out_width, out_height, kernel_count`

    where output slice `n` is the input correlated with kernel `n`, the
    window moving `stride` elements at a time.

    Args:
    ----
        out (Storage): storage for `out` tensor.
        out_width (int): width of `out`.
        out_height (int): height of `out`.
        out_size (int): size of the `out` tensor.
        input (Storage): storage for `input` tensor.
        in_width (int): width of `input`.
        in_height (int): height of `input`.
        in_depth (int): depth of `input`, also the depth of each kernel.
        kernels (Storage): storage for the stacked kernels.
        kernel_size (int): side length of each kernel.
        stride (int): step between window positions.

    """
    kernel_area = kernel_size * kernel_size
    # one output element per iteration
    for i in prange(out_size):
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
    delta_size: int,
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
    """Accumulate kernel-weight deltas: the input correlated with the output gradient.

    Args:
    ----
        delta (Storage): storage for the stacked kernel deltas.
        delta_size (int): size of `delta`.
        kernel_size (int): side length of each kernel.
        grad (Storage): gradient at the layer output (before activation).
        out_width (int): width of `grad`.
        out_height (int): height of `grad`.
        input (Storage): storage for the layer input.
        in_width (int): width of `input`.
        in_height (int): height of `input`.
        in_depth (int): depth of `input`.
        stride (int): step between window positions.

    """
    for w in prange(delta_size):
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
    in_width: int,
    in_height: int,
    in_depth: int,
    in_size: int,
    grad: Storage,
    out_width: int,
    out_height: int,
    out_depth: int,
    kernels: Storage,
    kernel_size: int,
    stride: int,
) -> None:
    """Accumulate the error of the previous layer: a full convolution with the flipped kernels.

    Every input element collects `grad * weight` from each window position
    that covered it, so no two iterations write the same element.
    """
    kernel_area = kernel_size * kernel_size
    for p in prange(in_size):
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
    out_width: int,
    out_height: int,
    out_size: int,
    input: Storage,
    in_width: int,
    in_height: int,
    filter_size: int,
    stride: int,
    mode: int,
) -> None:
    """Reduce every filter window of the input by max, min or average."""
    for i in prange(out_size):
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
    input: Storage,
    in_width: int,
    in_height: int,
    in_size: int,
    error: Storage,
    out_width: int,
    out_height: int,
    filter_size: int,
    stride: int,
    mode: int,
) -> None:
    """Route pooled errors back to the input.

    Max/min windows pass their error to the element that won the window;
    average windows split it evenly. Overlapping windows accumulate.
    """
    area = filter_size * filter_size
    for p in prange(in_size):
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


tensor_cross_correlation = njit(_tensor_cross_correlation, parallel=True, fastmath=True)
tensor_correlation_weight_gradient = njit(
    _tensor_correlation_weight_gradient, parallel=True, fastmath=True
)
tensor_correlation_input_error = njit(
    _tensor_correlation_input_error, parallel=True, fastmath=True
)
tensor_pool = njit(_tensor_pool, parallel=True)
tensor_unpool = njit(_tensor_unpool, parallel=True)
