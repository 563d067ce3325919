from dataclasses import dataclass
from typing import Optional

import numpy as np

from .errors import HyperparameterError


@dataclass
class TrainingConfig:
    """Hyperparameters of one training run.

    Attributes
    ----------
        learning_rate (float): scales the batch-averaged gradient step.
        batch_size (int): examples whose deltas are averaged per update.
        epochs (int): full passes over the training set.
        noise_range (float): range of the initial uniform parameter noise.
        seed (Optional[int]): seed for the run's random generator.

    """

    learning_rate: float = 0.1
    batch_size: int = 1
    epochs: int = 1
    noise_range: float = 0.5
    seed: Optional[int] = None

    def validate(self) -> None:
        if self.learning_rate <= 0:
            raise HyperparameterError(
                f"Learning rate must be greater than 0, got {self.learning_rate}."
            )
        if self.batch_size <= 0:
            raise HyperparameterError(f"Batch size must be greater than 0, got {self.batch_size}.")
        if self.epochs <= 0:
            raise HyperparameterError(f"Epoch count must be greater than 0, got {self.epochs}.")
        if self.noise_range < 0:
            raise HyperparameterError(
                f"Noise range must not be negative, got {self.noise_range}."
            )

    def make_rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)
