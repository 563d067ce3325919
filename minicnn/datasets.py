from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import numpy.typing as npt

from .errors import FormatError, IndexingError
from .tensor import Tensor
from .tensor_data import Format

logger = logging.getLogger(__name__)


def make_pts(N: int, rng: Optional[np.random.Generator] = None) -> List[Tuple[float, float]]:
    """Draw `N` points uniformly from the unit square.

    Args:
    ----
        N (int): point count.
        rng (Optional[np.random.Generator]): a fresh unseeded generator if None.

    """
    if rng is None:
        rng = np.random.default_rng()
    return [(float(a), float(b)) for a, b in rng.random((N, 2))]


@dataclass
class Graph:
    """Points in the unit square, each with a 0/1 class."""

    N: int
    X: List[Tuple[float, float]]
    y: List[int]


def _labeled(
    N: int, rng: Optional[np.random.Generator], rule: Callable[[float, float], bool]
) -> Graph:
    X = make_pts(N, rng)
    return Graph(N, X, [int(rule(a, b)) for a, b in X])


def simple(N: int, rng: Optional[np.random.Generator] = None) -> Graph:
    """Class 1 left of the vertical midline."""
    return _labeled(N, rng, lambda a, b: a < 0.5)


def diag(N: int, rng: Optional[np.random.Generator] = None) -> Graph:
    """Class 1 in the corner below the line a + b = 0.5."""
    return _labeled(N, rng, lambda a, b: a + b < 0.5)


def split(N: int, rng: Optional[np.random.Generator] = None) -> Graph:
    """Class 1 in the outer vertical bands, a < 0.2 or a > 0.8."""
    return _labeled(N, rng, lambda a, b: a < 0.2 or a > 0.8)


def xor(N: int, rng: Optional[np.random.Generator] = None) -> Graph:
    """Class 1 in the top-left and bottom-right quadrants."""
    return _labeled(N, rng, lambda a, b: (a < 0.5 < b) or (b < 0.5 < a))


def circle(N: int, rng: Optional[np.random.Generator] = None) -> Graph:
    """Class 1 outside the circle of squared radius 0.1 around the center."""
    return _labeled(N, rng, lambda a, b: (a - 0.5) ** 2 + (b - 0.5) ** 2 > 0.1)


def spiral(N: int, rng: Optional[np.random.Generator] = None) -> Graph:
    """Two interleaved spiral arms, N // 2 points each.

    The points are deterministic; `rng` is accepted so every generator
    shares one signature.
    """
    half = N // 2

    def arm(t: float) -> Tuple[float, float]:
        return t * math.cos(t) / 20.0, t * math.sin(t) / 20.0

    first = []
    second = []
    for i in range(5, 5 + half):
        a, b = arm(10.0 * i / half)
        first.append((a + 0.5, b + 0.5))
        a, b = arm(-10.0 * i / half)
        # mirrored across the diagonal
        second.append((b + 0.5, a + 0.5))
    return Graph(N, first + second, [0] * half + [1] * half)


datasets = {
    "Simple": simple,
    "Diag": diag,
    "Split": split,
    "Xor": xor,
    "Circle": circle,
    "Spiral": spiral,
}


@dataclass
class Example:
    """A labeled training example: data and label tensors."""

    data: Tensor
    label: Tensor


Values = Union[Sequence[float], npt.NDArray[np.float64]]


class DataSpace:
    """A table of labeled examples with a shuffle order and a read cursor.

    Row `i` of the table holds example `i`'s data followed by its label.
    The examples handed out are observing views of the table, so reading
    them never copies and they follow the table onto the device.
    Shuffling only reorders the shuffle table, never the rows.

    Args:
    ----
        data_format (Format): format of every data tensor.
        label_format (Format): format of every label tensor.
        data (Sequence[Values]): one sequence of values per example.
        labels (Sequence[Values]): one sequence of values per example.

    """

    def __init__(
        self,
        data_format: Format,
        label_format: Format,
        data: Sequence[Values],
        labels: Sequence[Values],
    ):
        if len(data) != len(labels):
            raise FormatError(f"{len(data)} data items but {len(labels)} labels.")
        if data_format.item_count == 0:
            raise FormatError(f"Data format {data_format} is empty.")
        self.data_format = data_format
        self.label_format = label_format
        self.item_count = len(data)

        data_count = data_format.item_count
        row_length = data_count + label_format.item_count
        table = np.zeros((self.item_count, row_length))
        for i, (d, lab) in enumerate(zip(data, labels)):
            d = np.asarray(d, dtype=np.float64).reshape(-1)
            lab = np.asarray(lab, dtype=np.float64).reshape(-1)
            if d.size != data_count or lab.size != label_format.item_count:
                raise FormatError(
                    f"Example {i} has {d.size} data and {lab.size} label values, "
                    f"expected {data_format} and {label_format}."
                )
            table[i, :data_count] = d
            table[i, data_count:] = lab
        self.table = Tensor.make(table.reshape(-1), Format(row_length, self.item_count, 1))

        self._data_views = [
            Tensor.observe(self.table, data_format, i * row_length)
            for i in range(self.item_count)
        ]
        self._label_views = [
            Tensor.observe(self.table, label_format, i * row_length + data_count)
            for i in range(self.item_count)
        ]
        self.shuffle_table = np.arange(self.item_count)
        self.iterator_idx = 0

    def __len__(self) -> int:
        return self.item_count

    def __iter__(self) -> Iterator[Example]:
        """Yield every example once, in shuffle order, from the start."""
        self.iterator_reset()
        while self.iterator_idx < self.item_count:
            yield Example(self.get_next_data(), self.get_next_label())
            self.iterator_next()

    def shuffle(self, rng: np.random.Generator) -> None:
        """Reorder the shuffle table; the examples themselves are untouched."""
        rng.shuffle(self.shuffle_table)

    def iterator_reset(self) -> None:
        self.iterator_idx = 0

    def iterator_next(self) -> bool:
        """Advance the cursor; False once every example has been visited."""
        if self.iterator_idx < self.item_count:
            self.iterator_idx += 1
        return self.iterator_idx < self.item_count

    def _row(self) -> int:
        if self.iterator_idx >= self.item_count:
            raise IndexingError(
                f"Cursor {self.iterator_idx} is past the last of {self.item_count} examples."
            )
        return int(self.shuffle_table[self.iterator_idx])

    def get_next_data(self) -> Tensor:
        """A view of the data at the cursor."""
        return self._data_views[self._row()]

    def get_next_label(self) -> Tensor:
        """A view of the label at the cursor."""
        return self._label_views[self._row()]

    @property
    def is_in_device_mode(self) -> bool:
        return self.table.is_cuda

    def copy_to_device(self) -> None:
        """Move the table, and with it every example view, to the device."""
        self.table.enable_device()
        logger.debug("Moved %d examples to device", self.item_count)

    def copy_to_host(self) -> None:
        self.table.disable_device()


def from_graph(graph: Graph) -> DataSpace:
    """Build a `DataSpace` from a point graph: (x_1, x_2) data with a one-value 0/1 label."""
    return DataSpace(
        Format(2),
        Format(1),
        [list(pt) for pt in graph.X],
        [[float(label)] for label in graph.y],
    )
