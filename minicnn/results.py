from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from .errors import FormatError

if TYPE_CHECKING:
    from .tensor import Tensor


def ms_to_str(ms: float) -> str:
    """Format a duration as `[Hh ][Mm ][Ss ]Xms`, dropping leading zero units."""
    total = int(ms)
    hours, rest = divmod(total, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    seconds, millis = divmod(rest, 1000)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if hours or minutes:
        parts.append(f"{minutes}m")
    if hours or minutes or seconds:
        parts.append(f"{seconds}s")
    parts.append(f"{millis}ms")
    return " ".join(parts)


@dataclass
class TestResult:
    """Summary of running a network over a set of labeled examples.

    Attributes
    ----------
        data_count (int): number of examples tested.
        time_in_ms (float): wall-clock time of the run.
        avg_cost (float): mean sum-of-squared-error cost per example.
        accuracy (float): fraction of examples the interpreter judged correct.

    """

    __test__ = False

    data_count: int
    time_in_ms: float
    avg_cost: float
    accuracy: float

    def to_string(self) -> str:
        return (
            f"Data count: {self.data_count}\n"
            f"Time taken: {ms_to_str(self.time_in_ms)}\n"
            f"Avg cost: {self.avg_cost:.6f}\n"
            f"Accuracy: {self.accuracy * 100:.6f}%\n"
        )


def _check(output: Tensor, label: Tensor) -> None:
    if output.item_count != label.item_count or output.item_count == 0:
        raise FormatError(f"Cannot compare output {output.format} with label {label.format}.")


class ArgMaxInterpreter:
    """Output and label agree when their largest elements sit at the same index."""

    def same_result(self, output: Tensor, label: Tensor) -> bool:
        _check(output, label)
        return int(np.argmax(output.to_numpy())) == int(np.argmax(label.to_numpy()))


class ThresholdInterpreter:
    """Output and label agree when every element falls on the same side of `threshold`."""

    def __init__(self, threshold: float = 0.5):
        self.threshold = threshold

    def same_result(self, output: Tensor, label: Tensor) -> bool:
        _check(output, label)
        return bool(
            np.array_equal(
                output.to_numpy().reshape(-1) >= self.threshold,
                label.to_numpy().reshape(-1) >= self.threshold,
            )
        )
