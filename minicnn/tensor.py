from __future__ import annotations

from typing import TYPE_CHECKING, Type

import numpy as np

from .cuda_ops import CudaOps
from .errors import FormatError, HyperparameterError, ResidencyError
from .fast_ops import FastOps
from .operators import Activation
from .tensor_data import Format, ObservedData, TensorData

if TYPE_CHECKING:
    from typing import Optional, Sequence, Union

    import numpy.typing as npt

    from .tensor_data import Storage, UserIndex
    from .tensor_ops import TensorOps


def ops_for(*tensors: Tensor) -> Type[TensorOps]:
    """Pick the kernel strategy for an operation over `tensors`.

    Raises
    ------
        ResidencyError: the operands do not all live on the same side.

    """
    residency = {t.is_cuda for t in tensors}
    if len(residency) > 1:
        raise ResidencyError(
            "Operands mix host and device tensors: "
            + ", ".join(f"{t.format}@{'device' if t.is_cuda else 'host'}" for t in tensors)
        )
    if residency.pop():
        return CudaOps
    return FastOps


class Tensor:
    """A fixed-format (width, height, depth) float tensor.

    A tensor either owns its flat buffer or observes a window of another
    tensor's buffer. The buffer lives on the host or on the device, and
    every operation dispatches to the matching kernel strategy.
    """

    _tensor: TensorData

    def __init__(self, v: TensorData):
        self._tensor = v

    # Constructors

    @classmethod
    def zeros(cls, format: Format) -> Tensor:
        """A zero-filled owning tensor."""
        return cls(TensorData(np.zeros(format.item_count), format))

    @classmethod
    def make(
        cls, values: Union[Sequence[float], npt.NDArray[np.float64]], format: Format
    ) -> Tensor:
        """An owning tensor holding a copy of `values` in storage order."""
        return cls(TensorData(np.array(values, dtype=np.float64), format))

    @classmethod
    def observe(cls, owner: Tensor, format: Format, offset: int = 0) -> Tensor:
        """A view of `format.item_count` items of `owner`, starting at `offset`.

        Writes through the view land in the owner's buffer.
        """
        return cls(ObservedData(owner._tensor, format, offset))

    # Properties

    @property
    def format(self) -> Format:
        return self._tensor.format

    @property
    def item_count(self) -> int:
        return self._tensor.size

    @property
    def storage(self) -> Storage:
        return self._tensor.storage

    @property
    def is_cuda(self) -> bool:
        return self._tensor.is_cuda

    @property
    def is_observing(self) -> bool:
        return self._tensor.is_observing

    def __getitem__(self, key: UserIndex) -> float:
        return self._tensor.get(key)

    def __setitem__(self, key: UserIndex, val: float) -> None:
        self._tensor.set(key, val)

    def to_numpy(self) -> npt.NDArray[np.float64]:
        """Returns a host copy of the tensor shaped (depth, height, width).

        Returns
        -------
            np.ndarray: Numpy array

        """
        return self._tensor.to_numpy()

    def __repr__(self) -> str:
        return self._tensor.to_string()

    @staticmethod
    def equal_format(a: Tensor, b: Tensor) -> bool:
        return a.format == b.format

    @staticmethod
    def are_equal(a: Tensor, b: Tensor) -> bool:
        """True when both tensors share a format and hold identical values."""
        return Tensor.equal_format(a, b) and bool(
            np.array_equal(a.to_numpy(), b.to_numpy())
        )

    # Operations

    def set_all(self, value: float) -> None:
        """Set every element to `value`."""
        ops_for(self).fill(self, value)

    def add(self, other: Tensor, out: Optional[Tensor] = None) -> Tensor:
        """Elementwise `out = self + other`; `out` defaults to `self`.

        Args:
        ----
            other (Tensor): tensor of the same format.
            out (Optional[Tensor]): destination, of the same format.

        Returns:
        -------
            Tensor: `out`.

        """
        if out is None:
            out = self
        ops_for(self, other, out).add(self, other, out)
        return out

    def add_per_depth(self, biases: Tensor, out: Optional[Tensor] = None) -> Tensor:
        """Add `biases[z]` to every element of depth slice `z`; `out` defaults to `self`."""
        if out is None:
            out = self
        ops_for(self, biases, out).add_per_depth(self, biases, out)
        return out

    @staticmethod
    def dot_product(weights: Tensor, input: Tensor, out: Tensor) -> None:
        """`out[i] = sum_j weights[j, i] * input[j]`, with `weights[j, i]` at `j + i * input.item_count`."""
        ops_for(weights, input, out).dot_product(weights, input, out)

    @staticmethod
    def valid_cross_correlation(
        input: Tensor, kernels: Tensor, stride: int, out: Tensor
    ) -> None:
        """Unpadded cross-correlation of `input` with stacked `kernels`.

        Args:
        ----
            input (Tensor): width x height x depth input.
            kernels (Tensor): k x k x (depth * kernel_count) stacked kernels.
            stride (int): step between window positions.
            out (Tensor): ((width - k) / stride + 1) x ((height - k) / stride + 1)
                x kernel_count output.

        """
        ops_for(input, kernels, out).valid_cross_correlation(input, kernels, stride, out)

    def apply_activation(self, fn: Activation) -> None:
        """Apply activation `fn` to every element in place."""
        ops_for(self).activate(self, fn)

    def apply_noise(self, range: float, rng: np.random.Generator) -> None:
        """Add an independent uniform value in [-range, range] to every element."""
        check_range(range)
        if self.item_count == 0:
            raise FormatError("Cannot apply noise to an empty tensor.")
        noise = rng.uniform(-range, range, self.item_count)
        ops_for(self).add_values(self, noise)

    def mutate(self, range: float, rng: np.random.Generator) -> int:
        """Add a uniform value in [-range, range] to one uniformly chosen element.

        Returns
        -------
            int: the flat index of the changed element.

        """
        check_range(range)
        if self.item_count == 0:
            raise FormatError("Cannot mutate an empty tensor.")
        index = self._tensor.sample(rng)
        self[index] = self[index] + rng.uniform(-range, range)
        return index

    def enable_device(self) -> None:
        """Move the buffer to the device (copy, then release the host buffer)."""
        self._tensor.to_cuda_()

    def disable_device(self) -> None:
        """Move the buffer back to the host (copy, then release the device buffer)."""
        self._tensor.to_host_()


def check_range(range: float) -> None:
    if range < 0:
        raise HyperparameterError(f"Perturbation range must not be negative, got {range}.")
