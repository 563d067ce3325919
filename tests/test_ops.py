import numpy as np
import pytest

from minicnn import Activation, Format, HyperparameterError, PoolingFunction, ResidencyError, Tensor
from minicnn.cuda_ops import CudaOps
from minicnn.fast_ops import FastOps


def random_tensor(rng, width, height=1, depth=1):
    fmt = Format(width, height, depth)
    return Tensor.make(rng.uniform(-1.0, 1.0, fmt.item_count), fmt)


def flat(t):
    return t.to_numpy().reshape(-1)


def reference_correlation(inp, kernels, stride, kernel_count):
    """inp (d, h, w), kernels (d * kernel_count, k, k) -> (kernel_count, oh, ow)"""
    d, h, w = inp.shape
    k = kernels.shape[1]
    oh, ow = (h - k) // stride + 1, (w - k) // stride + 1
    out = np.zeros((kernel_count, oh, ow))
    for n in range(kernel_count):
        for oy in range(oh):
            for ox in range(ow):
                window = inp[:, oy * stride : oy * stride + k, ox * stride : ox * stride + k]
                out[n, oy, ox] = np.sum(window * kernels[n * d : (n + 1) * d])
    return out


def reference_weight_gradient(grad, inp, k, stride):
    d = inp.shape[0]
    kernel_count, oh, ow = grad.shape
    delta = np.zeros((d * kernel_count, k, k))
    for n in range(kernel_count):
        for oy in range(oh):
            for ox in range(ow):
                window = inp[:, oy * stride : oy * stride + k, ox * stride : ox * stride + k]
                delta[n * d : (n + 1) * d] += grad[n, oy, ox] * window
    return delta


def reference_input_error(grad, kernels, input_shape, stride):
    d = input_shape[0]
    k = kernels.shape[1]
    kernel_count, oh, ow = grad.shape
    passing = np.zeros(input_shape)
    for n in range(kernel_count):
        for oy in range(oh):
            for ox in range(ow):
                passing[:, oy * stride : oy * stride + k, ox * stride : ox * stride + k] += (
                    grad[n, oy, ox] * kernels[n * d : (n + 1) * d]
                )
    return passing


@pytest.mark.parametrize("stride", [1, 2])
def test_cross_correlation_matches_reference(rng, stride):
    inp = random_tensor(rng, 5, 5, 2)
    kernels = random_tensor(rng, 3, 3, 6)
    side = (5 - 3) // stride + 1
    out = Tensor.zeros(Format(side, side, 3))
    FastOps.valid_cross_correlation(inp, kernels, stride, out)
    expected = reference_correlation(inp.to_numpy(), kernels.to_numpy(), stride, 3)
    np.testing.assert_allclose(out.to_numpy(), expected, rtol=1e-9)


@pytest.mark.parametrize("stride", [1, 2])
def test_correlation_weight_gradient_matches_reference(rng, stride):
    inp = random_tensor(rng, 5, 5, 2)
    side = (5 - 3) // stride + 1
    grad = random_tensor(rng, side, side, 3)
    delta = Tensor.zeros(Format(3, 3, 6))
    FastOps.correlation_weight_gradient(delta, grad, inp, stride)
    expected = reference_weight_gradient(grad.to_numpy(), inp.to_numpy(), 3, stride)
    np.testing.assert_allclose(delta.to_numpy(), expected, rtol=1e-9)


@pytest.mark.parametrize("stride", [1, 2])
def test_correlation_input_error_matches_reference(rng, stride):
    kernels = random_tensor(rng, 3, 3, 6)
    side = (5 - 3) // stride + 1
    grad = random_tensor(rng, side, side, 3)
    passing = Tensor.zeros(Format(5, 5, 2))
    FastOps.correlation_input_error(passing, grad, kernels, stride)
    expected = reference_input_error(grad.to_numpy(), kernels.to_numpy(), (2, 5, 5), stride)
    np.testing.assert_allclose(passing.to_numpy(), expected, rtol=1e-9, atol=1e-12)


def test_correlation_input_error_accumulates(rng):
    kernels = random_tensor(rng, 2, 2, 1)
    grad = random_tensor(rng, 2, 2, 1)
    passing = Tensor.zeros(Format(4, 4, 1))
    passing.set_all(1.0)
    FastOps.correlation_input_error(passing, grad, kernels, 2)
    expected = 1.0 + reference_input_error(grad.to_numpy(), kernels.to_numpy(), (1, 4, 4), 2)
    np.testing.assert_allclose(passing.to_numpy(), expected, rtol=1e-9)


def test_pooling_forward_by_hand(make_tensor):
    inp = make_tensor([1, 5, 2, 0, 3, 4, 8, 6, 0, 0, 1, 1, 9, 2, 1, 3], 4, 4, 1)
    expected = {
        PoolingFunction.MAX: [5.0, 8.0, 9.0, 3.0],
        PoolingFunction.MIN: [1.0, 0.0, 0.0, 1.0],
        PoolingFunction.AVERAGE: [3.25, 4.0, 2.75, 1.5],
    }
    for fn, values in expected.items():
        out = Tensor.zeros(Format(2, 2, 1))
        FastOps.pool(inp, out, 2, 2, fn)
        assert flat(out).tolist() == values


def test_unpool_routes_to_extremum(make_tensor):
    inp = make_tensor([1, 5, 3, 4], 2, 2, 1)
    error = make_tensor([2.0], 1, 1, 1)
    passing = Tensor.zeros(Format(2, 2, 1))
    FastOps.unpool(passing, inp, error, 2, 2, PoolingFunction.MAX)
    assert flat(passing).tolist() == [0.0, 2.0, 0.0, 0.0]

    passing.set_all(0.0)
    FastOps.unpool(passing, inp, error, 2, 2, PoolingFunction.MIN)
    assert flat(passing).tolist() == [2.0, 0.0, 0.0, 0.0]

    passing.set_all(0.0)
    FastOps.unpool(passing, inp, error, 2, 2, PoolingFunction.AVERAGE)
    assert flat(passing).tolist() == [0.5, 0.5, 0.5, 0.5]


def test_unpool_tie_goes_to_first_element(make_tensor):
    inp = make_tensor([7, 7, 7, 7], 2, 2, 1)
    error = make_tensor([1.0], 1, 1, 1)
    passing = Tensor.zeros(Format(2, 2, 1))
    FastOps.unpool(passing, inp, error, 2, 2, PoolingFunction.MAX)
    assert flat(passing).tolist() == [1.0, 0.0, 0.0, 0.0]


def test_unpool_overlapping_windows_accumulate(make_tensor):
    # both 2 x 2 windows pick the 9 in the first row
    inp = make_tensor([1, 9, 2] * 2, 3, 2, 1)
    error = make_tensor([1.0, 10.0], 2, 1, 1)
    passing = Tensor.zeros(Format(3, 2, 1))
    FastOps.unpool(passing, inp, error, 2, 1, PoolingFunction.MAX)
    assert flat(passing).tolist() == [0.0, 11.0, 0.0, 0.0, 0.0, 0.0]


def test_activation_gradient_consumes_error(make_tensor):
    error = make_tensor([1.0, -2.0], 2)
    act = make_tensor([0.5, 3.0], 2)
    grad = Tensor.zeros(Format(2))
    FastOps.activation_gradient(error, act, Activation.RELU, grad)
    assert flat(error).tolist() == [0.0, 0.0]
    assert flat(grad).tolist() == [1.0, -2.0]

    error = make_tensor([1.0], 1)
    act = make_tensor([0.5], 1)
    grad = Tensor.zeros(Format(1))
    FastOps.activation_gradient(error, act, Activation.SIGMOID, grad)
    assert grad[0] == pytest.approx(0.25)


def test_apply_deltas_rejects_zero_count(make_tensor):
    param = make_tensor([1.0], 1)
    delta = make_tensor([1.0], 1)
    with pytest.raises(HyperparameterError):
        FastOps.apply_deltas(param, delta, 0, 0.1)
    assert param[0] == 1.0 and delta[0] == 1.0


def test_mixed_residency_fails(make_tensor, device_copy):
    a = make_tensor([1.0, 2.0], 2)
    b = device_copy(make_tensor([1.0, 2.0], 2))
    with pytest.raises(ResidencyError):
        a.add(b)


def test_residency_round_trip(make_tensor):
    t = make_tensor([1.0, 2.0, 3.0], 3)
    t.enable_device()
    assert t.is_cuda
    view = Tensor.observe(t, Format(2), 1)
    assert view.is_cuda
    t.disable_device()
    assert not t.is_cuda and not view.is_cuda
    assert flat(view).tolist() == [2.0, 3.0]


def run_both(fn, *tensors, device_copy):
    """Run `fn(ops, *tensors)` on host copies and on device copies, return both results."""
    host = [Tensor.make(flat(t), t.format) for t in tensors]
    device = [device_copy(t) for t in tensors]
    fn(FastOps, *host)
    fn(CudaOps, *device)
    for t in device:
        t.disable_device()
    return host, device


def assert_same(host, device):
    for h, d in zip(host, device):
        np.testing.assert_allclose(flat(h), flat(d), rtol=1e-9, atol=1e-12)


def test_device_matches_host_dense(rng, device_copy):
    weights = random_tensor(rng, 7, 33, 1)
    inp = random_tensor(rng, 7)
    out = Tensor.zeros(Format(33))
    biases = random_tensor(rng, 33)

    def forward(ops, weights, inp, out, biases):
        ops.dot_product(weights, inp, out)
        ops.add(out, biases, out)
        ops.activate(out, Activation.SIGMOID)

    assert_same(*run_both(forward, weights, inp, out, biases, device_copy=device_copy))

    error = random_tensor(rng, 33)
    act = random_tensor(rng, 33)
    grad = Tensor.zeros(Format(33))
    delta = random_tensor(rng, 7, 33, 1)
    passing = random_tensor(rng, 7)

    def backward(ops, error, act, grad, delta, passing, weights, inp):
        ops.activation_gradient(error, act, Activation.RELU, grad)
        ops.accumulate_outer(delta, grad, inp)
        ops.accumulate_transposed_dot(passing, weights, grad)
        ops.apply_deltas(weights, delta, 3, 0.5)

    assert_same(
        *run_both(
            backward, error, act, grad, delta, passing, weights, inp, device_copy=device_copy
        )
    )


@pytest.mark.parametrize("stride", [1, 2])
def test_device_matches_host_convolution(rng, device_copy, stride):
    side = (5 - 3) // stride + 1
    inp = random_tensor(rng, 5, 5, 2)
    kernels = random_tensor(rng, 3, 3, 6)
    biases = random_tensor(rng, 1, 1, 3)
    out = Tensor.zeros(Format(side, side, 3))
    grad = random_tensor(rng, side, side, 3)
    delta = Tensor.zeros(Format(3, 3, 6))
    bias_delta = Tensor.zeros(Format(1, 1, 3))
    passing = Tensor.zeros(Format(5, 5, 2))

    def conv(ops, inp, kernels, biases, out, grad, delta, bias_delta, passing):
        ops.valid_cross_correlation(inp, kernels, stride, out)
        ops.add_per_depth(out, biases, out)
        ops.accumulate_depth_sums(bias_delta, grad)
        ops.correlation_weight_gradient(delta, grad, inp, stride)
        ops.correlation_input_error(passing, grad, kernels, stride)

    assert_same(
        *run_both(
            conv,
            inp,
            kernels,
            biases,
            out,
            grad,
            delta,
            bias_delta,
            passing,
            device_copy=device_copy,
        )
    )


@pytest.mark.parametrize(
    "fn", [PoolingFunction.MAX, PoolingFunction.MIN, PoolingFunction.AVERAGE]
)
def test_device_matches_host_pooling(rng, device_copy, fn):
    inp = random_tensor(rng, 6, 6, 2)
    out = Tensor.zeros(Format(5, 5, 2))
    error = random_tensor(rng, 5, 5, 2)
    passing = Tensor.zeros(Format(6, 6, 2))

    def pool(ops, inp, out, error, passing):
        ops.pool(inp, out, 2, 1, fn)
        ops.unpool(passing, inp, error, 2, 1, fn)

    assert_same(*run_both(pool, inp, out, error, passing, device_copy=device_copy))
