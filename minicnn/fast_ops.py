from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

from numba import prange
from numba import njit as _njit

from . import operators
from .fast_conv import (
    tensor_correlation_input_error,
    tensor_correlation_weight_gradient,
    tensor_cross_correlation,
    tensor_pool,
    tensor_unpool,
)
from .operators import Activation
from .tensor_ops import TensorOps

if TYPE_CHECKING:
    from typing import Callable

    from .tensor_data import Storage

# TIP: Use `NUMBA_DISABLE_JIT=1 pytest tests/` to run these kernels as plain Python.

Fn = TypeVar("Fn")


def njit(fn: Fn, **kwargs: Any) -> Fn:
    """JIT-compiles the given function for the host, always inlining it into callers.

    Args:
    ----
        fn (Fn): The function to compile.
        **kwargs (Any): Additional options for numba.njit (e.g. parallel=True).

    Returns:
    -------
        Fn: The compiled function.

    """
    return _njit(inline="always", **kwargs)(fn)  # type: ignore


class FastOps(TensorOps):
    """Host kernels: numba-compiled loops over the flat storage.

    Each outer loop is a `prange`, and each iteration writes exactly one
    output element, so the loops are safe to run in parallel.
    """

    @staticmethod
    def _fill(out: Storage, value: float) -> None:
        tensor_fill(out, value)

    @staticmethod
    def _add(out: Storage, a: Storage, b: Storage) -> None:
        tensor_add(out, a, b)

    @staticmethod
    def _add_per_depth(out: Storage, a: Storage, biases: Storage, slice_size: int) -> None:
        tensor_add_per_depth(out, a, biases, slice_size)

    @staticmethod
    def _add_values(out: Storage, values: Storage) -> None:
        tensor_add(out, out, values)

    @staticmethod
    def _dot_product(out: Storage, weights: Storage, inp: Storage, in_count: int) -> None:
        tensor_dot_product(out, weights, inp, in_count)

    @staticmethod
    def _cross_correlation(*args: Any) -> None:
        tensor_cross_correlation(*args)

    @staticmethod
    def _activate(storage: Storage, fn: Activation) -> None:
        ACTIVATE[fn](storage, storage)

    @staticmethod
    def _activation_gradient(
        grad: Storage, error: Storage, activations: Storage, fn: Activation
    ) -> None:
        GRADIENT[fn](grad, error, activations)

    @staticmethod
    def _accumulate_outer(delta: Storage, grad: Storage, inp: Storage, in_count: int) -> None:
        tensor_accumulate_outer(delta, grad, inp, in_count)

    @staticmethod
    def _accumulate_transposed_dot(
        passing: Storage, weights: Storage, grad: Storage, out_count: int
    ) -> None:
        tensor_accumulate_transposed_dot(passing, weights, grad, out_count)

    @staticmethod
    def _accumulate_depth_sums(delta: Storage, grad: Storage, slice_size: int) -> None:
        tensor_accumulate_depth_sums(delta, grad, slice_size)

    @staticmethod
    def _correlation_weight_gradient(*args: Any) -> None:
        tensor_correlation_weight_gradient(*args)

    @staticmethod
    def _correlation_input_error(*args: Any) -> None:
        tensor_correlation_input_error(*args)

    @staticmethod
    def _pool(*args: Any) -> None:
        tensor_pool(*args)

    @staticmethod
    def _unpool(*args: Any) -> None:
        tensor_unpool(*args)

    @staticmethod
    def _apply_deltas(
        param: Storage, delta: Storage, count: float, learning_rate: float
    ) -> None:
        tensor_apply_deltas(param, delta, count, learning_rate)

    @staticmethod
    def _cost_derivative(error: Storage, activations: Storage, label: Storage) -> None:
        tensor_cost_derivative(error, activations, label)


# Implementations


def _tensor_fill(out: Storage, value: float) -> None:
    for i in prange(out.size):
        out[i] = value


def _tensor_add(out: Storage, a: Storage, b: Storage) -> None:
    for i in prange(out.size):
        out[i] = a[i] + b[i]


def _tensor_add_per_depth(
    out: Storage, a: Storage, biases: Storage, slice_size: int
) -> None:
    for i in prange(out.size):
        out[i] = a[i] + biases[i // slice_size]


def _tensor_dot_product(
    out: Storage, weights: Storage, inp: Storage, in_count: int
) -> None:
    """NUMBA dot product of a weight matrix and a flat input ::

        for i:
            for j:
                out[i] += weights[j, i] * inp[j]

    where `weights[j, i]` sits at `j + i * in_count`.

    Args:
    ----
        out (Storage): storage for the output, one element per neuron
        weights (Storage): storage for the weights, in_count * out.size elements
        inp (Storage): storage for the input, in_count elements
        in_count (int): number of input elements

    """
    for i in prange(out.size):
        tmp = 0.0
        row = i * in_count
        for j in range(in_count):
            tmp += weights[row + j] * inp[j]
        out[i] = tmp


def tensor_map(
    fn: Callable[[float], float],
) -> Callable[[Storage, Storage], None]:
    """NUMBA higher-order map: out[i] = fn(in[i]).

    Args:
    ----
        fn: function mapping floats to floats.

    Returns:
    -------
        Tensor map function.

    """

    def _map(out: Storage, in_storage: Storage) -> None:
        for i in prange(out.size):
            out[i] = fn(in_storage[i])

    return njit(_map, parallel=True)  # type: ignore


def tensor_gradient(
    inverse: Callable[[float], float],
    derivative: Callable[[float], float],
) -> Callable[[Storage, Storage, Storage], None]:
    """NUMBA higher-order local gradient of an activation.

    The returned kernel computes, per element ::

        grad[i] = error[i] * derivative(inverse(activations[i]))
        error[i] = 0

    The error is consumed so it cannot leak into the next example.

    Args:
    ----
        inverse: maps an activation back to its pre-activation value.
        derivative: derivative of the activation at a pre-activation value.

    Returns:
    -------
        Tensor gradient function.

    """

    def _gradient(grad: Storage, error: Storage, activations: Storage) -> None:
        for i in prange(grad.size):
            e = error[i]
            error[i] = 0.0
            grad[i] = e * derivative(inverse(activations[i]))

    return njit(_gradient, parallel=True)  # type: ignore


def _tensor_accumulate_outer(
    delta: Storage, grad: Storage, inp: Storage, in_count: int
) -> None:
    # delta[j, i] += grad[i] * inp[j]
    for w in prange(delta.size):
        delta[w] += grad[w // in_count] * inp[w % in_count]


def _tensor_accumulate_transposed_dot(
    passing: Storage, weights: Storage, grad: Storage, out_count: int
) -> None:
    # Each input unit collects from every neuron it feeds.
    in_count = passing.size
    for j in prange(in_count):
        tmp = 0.0
        for i in range(out_count):
            tmp += grad[i] * weights[j + i * in_count]
        passing[j] += tmp


def _tensor_accumulate_depth_sums(
    delta: Storage, grad: Storage, slice_size: int
) -> None:
    for z in prange(delta.size):
        tmp = 0.0
        start = z * slice_size
        for p in range(slice_size):
            tmp += grad[start + p]
        delta[z] += tmp


def _tensor_apply_deltas(
    param: Storage, delta: Storage, count: float, learning_rate: float
) -> None:
    for i in prange(param.size):
        param[i] = param[i] - learning_rate * (delta[i] / count)
        delta[i] = 0.0


def _tensor_cost_derivative(
    error: Storage, activations: Storage, label: Storage
) -> None:
    for i in prange(error.size):
        error[i] = 2.0 * (activations[i] - label[i])


tensor_fill = njit(_tensor_fill, parallel=True)
tensor_add = njit(_tensor_add, parallel=True)
tensor_add_per_depth = njit(_tensor_add_per_depth, parallel=True)
tensor_dot_product = njit(_tensor_dot_product, parallel=True)
tensor_accumulate_outer = njit(_tensor_accumulate_outer, parallel=True)
tensor_accumulate_transposed_dot = njit(_tensor_accumulate_transposed_dot, parallel=True)
tensor_accumulate_depth_sums = njit(_tensor_accumulate_depth_sums, parallel=True)
tensor_apply_deltas = njit(_tensor_apply_deltas, parallel=True)
tensor_cost_derivative = njit(_tensor_cost_derivative, parallel=True)

ACTIVATE = {
    fn: tensor_map(njit(operators.ACTIVATION[fn])) for fn in Activation
}
GRADIENT = {
    fn: tensor_gradient(njit(operators.INVERSE[fn]), njit(operators.DERIVATIVE[fn]))
    for fn in Activation
}
