"""Exception types raised by minicnn.

Every failure is raised before the targeted tensor or layer is modified, so
catching one of these leaves the network in the state it had before the call.
"""


class NetworkError(Exception):
    """Base class for all minicnn errors."""

    pass


class FormatError(NetworkError, ValueError):
    """Operand formats do not match, or an operand has no elements."""

    pass


class IndexingError(FormatError):
    """Exception raised for indexing errors."""

    pass


class HyperparameterError(NetworkError, ValueError):
    """A kernel size, stride, count or rate is out of range, or does not fit the input."""

    pass


class UninitializedError(NetworkError, RuntimeError):
    """The network or layer has not been set up far enough for this operation."""

    pass


class ResidencyError(NetworkError, RuntimeError):
    """Operands live on different sides (host/device), or a view tried to move."""

    pass


class DeviceError(NetworkError, RuntimeError):
    """The accelerator is unavailable or a kernel launch failed."""

    pass
