import math

import numpy as np
import pytest

from minicnn import (
    Activation,
    ConvolutionalLayer,
    Format,
    FormatError,
    FullyConnectedLayer,
    HyperparameterError,
    IndexingError,
    LayerKind,
    PoolingFunction,
    PoolingLayer,
    Tensor,
    UninitializedError,
)


def flat(t):
    return t.to_numpy().reshape(-1)


# Fully-connected


def test_fully_connected_shapes():
    layer = FullyConnectedLayer(3, Activation.SIGMOID)
    layer.set_input_format(Format(2, 2, 1))
    assert layer.kind == LayerKind.FULLY_CONNECTED
    assert layer.weights.format == Format(4, 3, 1)
    assert layer.biases.format == Format(3)
    assert layer.activations.format == Format(3)
    assert layer.error.format == layer.activations.format


def test_fully_connected_needs_neurons():
    with pytest.raises(HyperparameterError):
        FullyConnectedLayer(0)
    with pytest.raises(HyperparameterError):
        FullyConnectedLayer(-1)


def test_fully_connected_forward(make_tensor):
    layer = FullyConnectedLayer(2, Activation.RELU)
    layer.set_input_format(Format(2))
    # neuron 0 subtracts, neuron 1 adds
    layer.weights[0] = 1.0
    layer.weights[1] = -1.0
    layer.weights[2] = 1.0
    layer.weights[3] = 1.0
    layer.biases[1] = 0.5
    layer.forward_propagation(make_tensor([3.0, 1.0], 2))
    assert flat(layer.activations).tolist() == [2.0, 4.5]


def test_fully_connected_forward_is_deterministic(rng, make_tensor):
    layer = FullyConnectedLayer(4, Activation.SIGMOID)
    layer.set_input_format(Format(3))
    layer.apply_noise(1.0, rng)
    inp = make_tensor([0.1, -0.2, 0.3], 3)
    layer.forward_propagation(inp)
    first = layer.activations.to_numpy()
    layer.forward_propagation(inp)
    assert np.array_equal(first, layer.activations.to_numpy())


def test_fully_connected_backward_single_sigmoid_neuron(make_tensor):
    layer = FullyConnectedLayer(1, Activation.SIGMOID)
    layer.set_input_format(Format(1))
    layer.weights[0] = 1.0
    inp = make_tensor([1.0], 1)
    layer.forward_propagation(inp)
    layer.error[0] = 1.0
    layer.back_propagation(inp, None)

    s = 1.0 / (1.0 + math.exp(-1.0))
    expected = s * (1.0 - s)
    assert expected == pytest.approx(0.19661193324148185)
    assert layer.bias_deltas[0] == pytest.approx(expected)
    assert layer.weight_deltas[0] == pytest.approx(expected)
    assert layer.error[0] == 0.0


def test_fully_connected_backward_passes_error(make_tensor):
    layer = FullyConnectedLayer(2, Activation.RELU)
    layer.set_input_format(Format(2))
    layer.set_all_parameter(1.0)
    inp = make_tensor([1.0, 2.0], 2)
    layer.forward_propagation(inp)
    layer.error[0] = 1.0
    layer.error[1] = 3.0
    passing = make_tensor([10.0, 10.0], 2)
    layer.back_propagation(inp, passing)
    # accumulated on top of what was there: 10 + 1 * 1 + 3 * 1
    assert flat(passing).tolist() == [14.0, 14.0]
    assert flat(layer.weight_deltas).tolist() == [1.0, 2.0, 3.0, 6.0]
    assert flat(layer.bias_deltas).tolist() == [1.0, 3.0]


def test_fully_connected_rejects_wrong_input(make_tensor):
    layer = FullyConnectedLayer(2)
    layer.set_input_format(Format(2))
    with pytest.raises(FormatError):
        layer.forward_propagation(make_tensor([1.0, 2.0, 3.0], 3))


def test_unbound_layer_fails(make_tensor):
    layer = FullyConnectedLayer(2)
    with pytest.raises(UninitializedError):
        layer.forward_propagation(make_tensor([1.0, 2.0], 2))


def test_apply_deltas_postconditions(rng):
    layer = FullyConnectedLayer(3)
    layer.set_input_format(Format(2))
    layer.apply_noise(1.0, rng)
    layer.weight_deltas.apply_noise(1.0, rng)
    layer.bias_deltas.apply_noise(1.0, rng)
    before = [(flat(p), flat(d)) for p, d in layer.parameters()]

    layer.apply_deltas(4, 0.5)

    for (param, delta), (old_param, old_delta) in zip(layer.parameters(), before):
        np.testing.assert_allclose(flat(param), old_param - 0.5 * (old_delta / 4), rtol=1e-12)
        assert not np.any(flat(delta))


def test_layer_mutate_changes_one_scalar(rng):
    layer = FullyConnectedLayer(3)
    layer.set_input_format(Format(4))
    for _ in range(10):
        before = np.concatenate([flat(p) for p, _ in layer.parameters()])
        layer.mutate(0.5, rng)
        after = np.concatenate([flat(p) for p, _ in layer.parameters()])
        assert np.count_nonzero(before != after) == 1


# Convolutional


def test_convolution_output_side():
    layer = ConvolutionalLayer(3, 2, 2)
    layer.set_input_format(Format(4, 4, 2))
    assert layer.activations.format == Format(2, 2, 3)
    assert layer.weights.format == Format(2, 2, 6)
    assert layer.biases.format == Format(1, 1, 3)


def test_convolution_non_integral_side_fails():
    layer = ConvolutionalLayer(1, 2, 2)
    with pytest.raises(HyperparameterError):
        layer.set_input_format(Format(5, 5, 1))


@pytest.mark.parametrize(
    "args", [(0, 2, 1), (1, 0, 1), (1, 2, 0), (1, 2, 3)]
)
def test_convolution_hyperparameters(args):
    with pytest.raises(HyperparameterError):
        ConvolutionalLayer(*args)


def test_convolution_kernel_views():
    layer = ConvolutionalLayer(2, 2, 1)
    layer.set_input_format(Format(3, 3, 2))
    kernel = layer.kernel(1)
    assert kernel.is_observing
    assert kernel.format == Format(2, 2, 2)
    kernel.set_all(1.0)
    assert flat(layer.weights).tolist() == [0.0] * 8 + [1.0] * 8
    with pytest.raises(IndexingError):
        layer.kernel(2)


def test_convolution_forward(make_tensor):
    layer = ConvolutionalLayer(1, 2, 2, Activation.RELU)
    layer.set_input_format(Format(4, 4, 1))
    layer.kernel(0).set_all(1.0)
    layer.biases[0] = -10.0
    layer.forward_propagation(make_tensor(list(range(16)), 4, 4, 1))
    # window sums 10, 18, 42, 50 minus the bias, through ReLU
    assert flat(layer.activations).tolist() == [0.0, 8.0, 32.0, 40.0]


def test_convolution_backward_by_hand(make_tensor):
    layer = ConvolutionalLayer(1, 2, 1, Activation.RELU)
    layer.set_input_format(Format(3, 3, 1))
    layer.weights.set_all(1.0)
    inp = make_tensor([1.0] * 9, 3, 3, 1)
    layer.forward_propagation(inp)
    layer.error.set_all(1.0)
    passing = Tensor.zeros(Format(3, 3, 1))
    layer.back_propagation(inp, passing)
    assert layer.bias_deltas[0] == 4.0
    assert flat(layer.weight_deltas).tolist() == [4.0, 4.0, 4.0, 4.0]
    # how many windows cover each input element
    assert flat(passing).tolist() == [1.0, 2.0, 1.0, 2.0, 4.0, 2.0, 1.0, 2.0, 1.0]
    assert not np.any(flat(layer.error))


# Pooling


def test_pooling_shapes_and_validation():
    layer = PoolingLayer(2, 2, PoolingFunction.MAX)
    layer.set_input_format(Format(4, 6, 3))
    assert layer.activations.format == Format(2, 3, 3)
    assert layer.parameters() == []
    with pytest.raises(HyperparameterError):
        PoolingLayer(2, 2).set_input_format(Format(5, 4, 1))
    with pytest.raises(HyperparameterError):
        PoolingLayer(0, 1)
    with pytest.raises(HyperparameterError):
        PoolingLayer(2, 0)


def test_pooling_forward_and_backward(make_tensor):
    layer = PoolingLayer(2, 2, PoolingFunction.MAX)
    layer.set_input_format(Format(2, 2, 1))
    inp = make_tensor([1.0, 5.0, 3.0, 4.0], 2, 2, 1)
    layer.forward_propagation(inp)
    assert layer.activations[0] == 5.0
    layer.error[0] = 2.0
    passing = Tensor.zeros(Format(2, 2, 1))
    layer.back_propagation(inp, passing)
    assert flat(passing).tolist() == [0.0, 2.0, 0.0, 0.0]
    assert layer.error[0] == 0.0


def test_pooling_has_nothing_to_mutate(rng):
    layer = PoolingLayer(2, 2)
    layer.set_input_format(Format(2, 2, 1))
    layer.apply_deltas(1, 0.1)
    layer.set_all_parameter(1.0)
    layer.apply_noise(1.0, rng)
    with pytest.raises(UninitializedError):
        layer.mutate(1.0, rng)
