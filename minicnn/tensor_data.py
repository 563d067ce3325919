from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

import numba
import numba.cuda
import numpy as np
import numpy.typing as npt
from numba.cuda.cudadrv.driver import CudaAPIError
from numba.cuda.cudadrv.error import CudaSupportError
from numpy import array, float64
from typing_extensions import TypeAlias

from .errors import DeviceError, FormatError, IndexingError, ResidencyError

logger = logging.getLogger(__name__)

Storage: TypeAlias = npt.NDArray[np.float64]
UserIndex: TypeAlias = Union[int, Sequence[int]]

# Raised by numba when a device is missing or a driver call fails.
DEVICE_FAILURES = (CudaAPIError, CudaSupportError)


@dataclass(frozen=True)
class Format:
    """Logical shape of a tensor: width x height x depth."""

    width: int
    height: int = 1
    depth: int = 1

    def __post_init__(self) -> None:
        for name in ("width", "height", "depth"):
            value = getattr(self, name)
            if not isinstance(value, (int, np.integer)) or value < 0:
                raise FormatError(f"Format {name} must be a non-negative int, got {value!r}.")

    @property
    def item_count(self) -> int:
        """Number of elements a tensor of this format holds."""
        return self.width * self.height * self.depth

    def as_tuple(self) -> Tuple[int, int, int]:
        """Return (width, height, depth)."""
        return (self.width, self.height, self.depth)

    def __str__(self) -> str:
        return f"({self.width}, {self.height}, {self.depth})"


def index_to_position(x: int, y: int, z: int, width: int, height: int) -> int:
    """Convert an (x, y, z) index to a position in the flat storage."""
    return x + y * width + z * width * height


def to_index(ordinal: int, width: int, height: int) -> Tuple[int, int, int]:
    """Convert a flat position back to its (x, y, z) index."""
    x = ordinal % width
    y = (ordinal // width) % height
    z = ordinal // (width * height)
    return x, y, z


def window_extremum(
    storage: Storage,
    x0: int,
    y0: int,
    z: int,
    width: int,
    height: int,
    size: int,
    find_max: bool,
) -> int:
    """Position of the first maximum (or minimum) in a size x size window.

    The window starts at (x0, y0) in depth slice z. Ties go to the element
    that comes first in storage order.
    """
    # Positions are computed inline: compiled callers cannot reach module helpers.
    start = x0 + y0 * width + z * width * height
    best_pos = start
    best = storage[best_pos]
    for wy in range(size):
        for wx in range(size):
            pos = start + wx + wy * width
            v = storage[pos]
            if (find_max and v > best) or (not find_max and v < best):
                best = v
                best_pos = pos
    return best_pos


def output_side(input_side: int, window: int, stride: int) -> Optional[int]:
    """Side length of a valid sliding-window output, or None if the window does not tile the input.

    Args:
    ----
        input_side (int): width or height of the input.
        window (int): kernel or filter size.
        stride (int): step between window positions.

    Returns:
    -------
        Optional[int]: (input_side - window) / stride + 1 when that is a positive integer.

    """
    span = input_side - window
    if span < 0 or span % stride != 0:
        return None
    return span // stride + 1


class TensorData:
    """Owning, flat storage for one tensor.

    The buffer lives either on the host (a numpy array) or on the device
    (a numba.cuda device array), never both.
    """

    _storage: Storage
    format: Format
    size: int

    def __init__(
        self,
        storage: Union[Sequence[float], Storage],
        format: Format,
    ):
        """Initialize storage for the given format."""
        if isinstance(storage, np.ndarray):
            storage = np.ascontiguousarray(storage, dtype=float64).reshape(-1)
        else:
            storage = array(storage, dtype=float64).reshape(-1)
        if storage.size != format.item_count:
            raise FormatError(
                f"Storage of {storage.size} items does not fit format {format}."
            )
        self._storage = storage
        self.format = format
        self.size = format.item_count
        self._cuda = False

    @property
    def storage(self) -> Storage:
        """The flat backing buffer (host or device array)."""
        return self._storage

    @property
    def is_cuda(self) -> bool:
        """Whether the buffer lives on the device."""
        return self._cuda

    @property
    def is_observing(self) -> bool:
        """Whether this storage borrows another tensor's buffer."""
        return False

    def to_cuda_(self) -> None:
        """Move the buffer to the device and release the host copy."""
        if self._cuda:
            return
        if not numba.cuda.is_available():
            raise DeviceError("No CUDA device is available.")
        try:
            device_storage = numba.cuda.to_device(self._storage)
        except DEVICE_FAILURES as e:
            logger.error("Copy to device failed for %s tensor: %s", self.format, e)
            raise DeviceError(f"Could not copy tensor to device: {e}") from e
        self._storage = device_storage
        self._cuda = True
        logger.debug("Moved %s tensor to device", self.format)

    def to_host_(self) -> None:
        """Move the buffer back to the host and release the device copy."""
        if not self._cuda:
            return
        try:
            host_storage = self._storage.copy_to_host()
        except DEVICE_FAILURES as e:
            logger.error("Copy to host failed for %s tensor: %s", self.format, e)
            raise DeviceError(f"Could not copy tensor to host: {e}") from e
        self._storage = host_storage
        self._cuda = False
        logger.debug("Moved %s tensor to host", self.format)

    def index(self, index: UserIndex) -> int:
        """Convert a flat or (x, y, z) index to a position in storage."""
        if isinstance(index, (int, np.integer)):
            if index < 0 or index >= self.size:
                raise IndexingError(f"Index {index} out of range {self.format}.")
            return int(index)

        if len(index) != 3:
            raise IndexingError(f"Index {index} must be (x, y, z).")
        for i, bound in zip(index, self.format.as_tuple()):
            if i < 0:
                raise IndexingError(f"Negative indexing for {index} not supported.")
            if i >= bound:
                raise IndexingError(f"Index {index} out of range {self.format}.")
        x, y, z = index
        return index_to_position(x, y, z, self.format.width, self.format.height)

    def indices(self) -> Iterable[Tuple[int, int, int]]:
        """Yield all (x, y, z) indices in storage order."""
        for i in range(self.size):
            yield to_index(i, self.format.width, self.format.height)

    def sample(self, rng: np.random.Generator) -> int:
        """Return a random valid flat position."""
        return int(rng.integers(self.size))

    def get(self, key: UserIndex) -> float:
        """Get the value at a specific index."""
        x: float = float(self.storage[self.index(key)])
        return x

    def set(self, key: UserIndex, val: float) -> None:
        """Set a value at a specific index."""
        self.storage[self.index(key)] = val

    def to_numpy(self) -> npt.NDArray[np.float64]:
        """Return a host copy shaped (depth, height, width)."""
        if self.is_cuda:
            flat = self.storage.copy_to_host()
        else:
            flat = np.array(self.storage, copy=True)
        return flat.reshape(self.format.depth, self.format.height, self.format.width)

    def to_string(self) -> str:
        """Return a string representation of the tensor, one depth slice per block."""
        values = self.to_numpy()
        s = ""
        for z in range(self.format.depth):
            s += "["
            for y in range(self.format.height):
                row = " ".join(f"{v:3.2f}" for v in values[z, y])
                s += ("\n " if y else "") + "[" + row + "]"
            s += "]\n"
        return s


class ObservedData(TensorData):
    """A borrowed window into another `TensorData` buffer.

    The window keeps a reference to its owner and always resolves the owner's
    current buffer, so it follows the owner between host and device. It can
    never move or release the buffer itself.
    """

    def __init__(self, owner: TensorData, format: Format, offset: int = 0):
        """Observe `format.item_count` items of `owner` starting at `offset`."""
        if offset < 0 or offset + format.item_count > owner.size:
            raise IndexingError(
                f"Window {format} at offset {offset} exceeds owner of {owner.size} items."
            )
        self._owner = owner
        self._offset = offset
        self.format = format
        self.size = format.item_count

    @property
    def owner(self) -> TensorData:
        """The storage this window borrows from."""
        return self._owner

    @property
    def offset(self) -> int:
        """Position of the first observed item in the owner's buffer."""
        return self._offset

    @property
    def _storage(self) -> Storage:  # type: ignore[override]
        return self._owner.storage[self._offset : self._offset + self.size]

    @property
    def is_cuda(self) -> bool:
        return self._owner.is_cuda

    @property
    def is_observing(self) -> bool:
        return True

    def to_cuda_(self) -> None:
        raise ResidencyError("An observing tensor follows its owner's residency.")

    def to_host_(self) -> None:
        raise ResidencyError("An observing tensor follows its owner's residency.")
