"""
Be sure you have minicnn installed in you Virtual Env.
>>> pip install -Ue .
"""
import argparse
import logging
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parent.parent))

import minicnn
from minicnn.datasets import from_graph


class PointTrain:
    """Trains a small fully-connected network on one of the 2D point datasets.

    Args:
        hidden_layers (int): The number of neurons in each of the two hidden layers.
        config (TrainingConfig): learning rate, batch size, epochs, noise and seed.
    """
    def __init__(self, hidden_layers, config):
        config.validate()
        self.hidden_layers = hidden_layers
        self.config = config
        self.rng = config.make_rng()
        self.model = self.build()

    def build(self):
        network = minicnn.NeuralNetwork(self.config.learning_rate, self.rng)
        network.set_input_format(minicnn.Format(2))
        network.set_output_format(minicnn.Format(1))
        network.add_fully_connected_layer(self.hidden_layers, minicnn.Activation.RELU)
        network.add_fully_connected_layer(self.hidden_layers, minicnn.Activation.RELU)
        network.add_last_fully_connected_layer(minicnn.Activation.SIGMOID)
        network.apply_noise(self.config.noise_range)
        return network

    def train(self, data, use_device=False):
        examples = from_graph(data)
        if use_device:
            examples.copy_to_device()
            self.model.enable_device()
        interpreter = minicnn.ThresholdInterpreter(0.5)
        for epoch in range(1, self.config.epochs + 1):
            self.model.learn(examples, self.config.batch_size, 1)
            if epoch % 10 == 0 or epoch == self.config.epochs:
                result = self.model.test(examples, interpreter)
                print("Epoch ", epoch)
                print(result.to_string())


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--PTS", type=int, default=50, help="number of points")
    parser.add_argument("--HIDDEN", type=int, default=10, help="number of hiddens")
    parser.add_argument("--RATE", type=float, default=0.5, help="learning rate")
    parser.add_argument("--BATCH", type=int, default=10, help="batch size")
    parser.add_argument("--EPOCHS", type=int, default=100, help="number of epochs")
    parser.add_argument("--SEED", type=int, default=None, help="random seed")
    parser.add_argument("--DATASET", default="Simple", help="dataset")
    parser.add_argument("--BACKEND", default="cpu", help="backend mode")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    config = minicnn.TrainingConfig(
        learning_rate=args.RATE,
        batch_size=args.BATCH,
        epochs=args.EPOCHS,
        seed=args.SEED,
    )
    trainer = PointTrain(args.HIDDEN, config)
    data = minicnn.datasets[args.DATASET](args.PTS, trainer.rng)
    trainer.train(data, use_device=args.BACKEND == "gpu")
