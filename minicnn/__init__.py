"""Convolutional Neural Network Engine

This package trains small neural networks from scratch: tensors with host or
device storage, numba kernels for both sides, and a linear chain of layers
driven by backpropagation or by mutation.

Modules
-------

- `errors`: Exception types raised by the package.
- `operators`: Scalar activation functions with their inverses and derivatives.
- `tensor_data`: Formats, flat indexing, and owning or observing storage.
- `tensor_ops`: Shape-checked kernel dispatch shared by both strategies.
- `fast_ops`: Host kernels compiled with numba (CPU only).
- `fast_conv`: Host cross-correlation and pooling kernels.
- `cuda_ops`: The same kernels for a CUDA device.
- `tensor`: The Tensor object and its operations.
- `layer`: The Layer base class.
- `fully_connected`, `convolution`, `pooling`: Layer variants.
- `network`: The NeuralNetwork orchestrator.
- `datasets`: Toy point datasets and the DataSpace example table.
- `results`: Test results and output interpreters.
- `config`: Training hyperparameters.
"""

from .errors import *  # noqa: F401,F403
from .operators import Activation, PoolingFunction  # noqa: F401
from .tensor_data import Format  # noqa: F401
from .tensor import *  # noqa: F401,F403
from .layer import *  # noqa: F401,F403
from .fully_connected import *  # noqa: F401,F403
from .convolution import *  # noqa: F401,F403
from .pooling import *  # noqa: F401,F403
from .network import *  # noqa: F401,F403
from .datasets import *  # noqa: F401,F403
from .results import *  # noqa: F401,F403
from .config import *  # noqa: F401,F403
from . import fast_ops, cuda_ops  # noqa: F401,F403
