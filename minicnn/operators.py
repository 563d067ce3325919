"""Collection of the scalar activation functions used by the layer kernels.

Every function here is plain Python on floats so that `fast_ops` can compile
it with `numba.njit` and `cuda_ops` can compile it as a CUDA device function.
"""

import math
from enum import IntEnum

# Activations at or beyond these bounds have no finite pre-activation.
SIGMOID_EPSILON = 1e-12


class Activation(IntEnum):
    """Identifier of an activation function.

    The integer value is what the kernels receive, so it must stay stable.
    """

    SIGMOID = 0
    RELU = 1


class PoolingFunction(IntEnum):
    """Reduction applied to each pooling window."""

    MAX = 0
    MIN = 1
    AVERAGE = 2


def sigmoid(x: float) -> float:
    """Computes the sigmoid function for the input number.

    Args:
    ----
        x (float): The input number.

    Returns:
    -------
        float: The sigmoid of x.

    """
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-1.0 * x))
    else:
        a = math.exp(x)
        return a / (1.0 + a)


def sigmoid_inverse(y: float) -> float:
    """Recovers the pre-activation value from a sigmoid output.

    Args:
    ----
        y (float): A sigmoid output. Values outside of (0, 1) are clamped.

    Returns:
    -------
        float: The x with sigmoid(x) == y.

    """
    if y < SIGMOID_EPSILON:
        y = SIGMOID_EPSILON
    elif y > 1.0 - SIGMOID_EPSILON:
        y = 1.0 - SIGMOID_EPSILON
    return math.log(y / (1.0 - y))


def sigmoid_derivative(x: float) -> float:
    """Computes the derivative of the sigmoid at a pre-activation value.

    Args:
    ----
        x (float): The pre-activation value.

    Returns:
    -------
        float: sigmoid(x) * (1 - sigmoid(x)).

    """
    # numba compiles each of these on its own: no calls to sibling functions.
    if x >= 0:
        s = 1.0 / (1.0 + math.exp(-1.0 * x))
    else:
        a = math.exp(x)
        s = a / (1.0 + a)
    return s * (1.0 - s)


def relu(x: float) -> float:
    """Applies the ReLU (Rectified Linear Unit) function.

    Args:
    ----
        x (float): The input number.

    Returns:
    -------
        float: x if x is greater than 0, otherwise 0.

    """
    if x < 0:
        return 0.0
    return x


def relu_inverse(y: float) -> float:
    """Recovers a pre-activation value from a ReLU output.

    Negative pre-activations all map to 0, so 0 is returned for them. The
    derivative is 0 there either way.
    """
    if y < 0:
        return 0.0
    return y


def relu_derivative(x: float) -> float:
    """Computes the derivative of the ReLU function.

    Args:
    ----
        x (float): The pre-activation value.

    Returns:
    -------
        float: 1 if x > 0, otherwise 0.

    """
    if x > 0:
        return 1.0
    return 0.0


ACTIVATION = {Activation.SIGMOID: sigmoid, Activation.RELU: relu}
INVERSE = {Activation.SIGMOID: sigmoid_inverse, Activation.RELU: relu_inverse}
DERIVATIVE = {Activation.SIGMOID: sigmoid_derivative, Activation.RELU: relu_derivative}
