"""
network.py
~~~~~~~~~~

A feedforward neural network trained one example at a time with
backpropagation on a squared-error loss.

Each ``Layer`` holds a weight matrix (one row of incoming weights per
neuron), a bias vector and a single activation shared by every neuron in
the layer. A ``Network`` chains layers so that each layer's neuron count
is the next layer's input width.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence

import numpy as np

from perceptron.activation import Activation

logger = logging.getLogger(__name__)


class LayerProperties(NamedTuple):
    """Size and activation of a layer built by ``Network.random``."""

    num_neurons: int
    activation: Activation


class TrainingExample(NamedTuple):
    input: Sequence[float]
    target: Sequence[float]


class BackpropagationPassResult(NamedTuple):
    """
    Outcome of a single backpropagation pass.

    Attributes:
        layer_gradients: Gradient of the error with respect to each layer's
            output, indexed like ``Network.layers``
        total_error: Sum of squared output errors divided by two
    """

    layer_gradients: List[np.ndarray]
    total_error: float


class Layer:
    """
    One affine transform followed by an activation.

    ``weights[i]`` holds the incoming weights of neuron ``i`` and
    ``biases[i]`` its bias. Weights and biases are copied into float64
    arrays owned by the layer; training updates them in place.
    """

    def __init__(
        self,
        weights: Sequence[Sequence[float]],
        biases: Sequence[float],
        activation: Activation
    ):
        self.weights = np.array(weights, dtype=np.float64)
        self.biases = np.array(biases, dtype=np.float64)
        self.activation = activation

        if self.weights.ndim != 2 or self.weights.size == 0:
            raise ValueError(
                f"Weights must be a non-empty matrix, got shape {self.weights.shape}"
            )
        if self.biases.shape != (self.weights.shape[0],):
            raise ValueError(
                f"Expected {self.weights.shape[0]} biases, "
                f"got shape {self.biases.shape}"
            )

    @classmethod
    def with_dimensions(
        cls,
        num_neurons: int,
        num_inputs: int,
        activation: Activation
    ) -> 'Layer':
        """Create a layer whose weights and biases are all zero."""
        return cls(
            np.zeros((num_neurons, num_inputs)),
            np.zeros(num_neurons),
            activation
        )

    def __len__(self) -> int:
        return len(self.biases)

    @property
    def num_inputs(self) -> int:
        return self.weights.shape[1]

    def forward(self, inputs: Sequence[float]) -> np.ndarray:
        """
        Apply the layer to one input vector.

        Args:
            inputs: Vector of length ``num_inputs``

        Returns:
            np.ndarray: The activation of each neuron's net input
            ``biases + weights @ inputs``, length ``len(self)``
        """
        net_inputs = self.biases + self.weights @ np.asarray(inputs, dtype=np.float64)
        return np.array([self.activation.forward(x) for x in net_inputs])

    def clone(self) -> 'Layer':
        """
        Copy the layer.

        Returns:
            Layer: A layer with its own weight and bias arrays and a cloned
            activation, so training the copy leaves this one unchanged
        """
        return Layer(self.weights, self.biases, self.activation.clone())

    def __repr__(self) -> str:
        return (
            f"Layer(num_neurons={len(self)}, num_inputs={self.num_inputs}, "
            f"activation={self.activation!r})"
        )


class Network:
    """
    An ordered, non-empty sequence of layers with fixed input and output
    widths.

    Widths are checked once when the network is built. ``forward`` and
    ``backpropagate`` trust the caller to pass vectors of the right length.
    """

    def __init__(self, layers: Iterable[Layer]):
        self.layers: List[Layer] = list(layers)

        if not self.layers:
            raise ValueError("A network requires at least one layer")
        for index in range(1, len(self.layers)):
            expected = len(self.layers[index - 1])
            actual = self.layers[index].num_inputs
            if actual != expected:
                raise ValueError(
                    f"Layer {index} expects {actual} inputs but the previous "
                    f"layer has {expected} neurons"
                )

    @classmethod
    def random(
        cls,
        num_inputs: int,
        num_outputs: int,
        hidden_layers: Iterable[LayerProperties],
        output_activation: Activation
    ) -> 'Network':
        """
        Create a network with randomly initialised parameters.

        Weights are drawn from [0, 1) and divided by the layer's input
        width; biases are drawn from [0, 1) and divided by the layer's
        neuron count.

        Args:
            num_inputs: Width of the input vector
            num_outputs: Number of neurons in the output layer
            hidden_layers: ``(num_neurons, activation)`` for each hidden layer
            output_activation: Activation of the output layer

        Returns:
            Network: The new network

        Example:
            >>> net = Network.random(2, 1, [LayerProperties(3, Sigmoid())], Sigmoid())
            >>> net.architecture
            [2, 3, 1]
        """
        specs = [LayerProperties(*spec) for spec in hidden_layers]
        specs.append(LayerProperties(num_outputs, output_activation))

        layers = []
        prev_num_neurons = num_inputs
        for num_neurons, activation in specs:
            weights = np.random.random((num_neurons, prev_num_neurons)) / prev_num_neurons
            biases = np.random.random(num_neurons) / num_neurons
            layers.append(Layer(weights, biases, activation))
            prev_num_neurons = num_neurons

        network = cls(layers)
        logger.debug(f"Created random network with architecture {network.architecture}")
        return network

    @property
    def num_inputs(self) -> int:
        return self.layers[0].num_inputs

    @property
    def num_outputs(self) -> int:
        return len(self.layers[-1])

    @property
    def architecture(self) -> List[int]:
        """Input width followed by the neuron count of every layer."""
        return [self.num_inputs] + [len(layer) for layer in self.layers]

    def forward(self, input: Sequence[float]) -> np.ndarray:
        """Return the output of the last layer for ``input``."""
        output = np.asarray(input, dtype=np.float64)
        for layer in self.layers:
            output = layer.forward(output)
        return output

    def forward_with_intermediate_outputs(self, input: Sequence[float]) -> List[np.ndarray]:
        """
        Evaluate the network and keep every layer's output.

        Returns:
            list: ``len(layers) + 1`` vectors; the first is ``input`` itself
        """
        outputs = [np.array(input, dtype=np.float64)]
        for layer in self.layers:
            outputs.append(layer.forward(outputs[-1]))
        return outputs

    def backpropagate(
        self,
        input: Sequence[float],
        target: Sequence[float],
        learning_rate: float
    ) -> BackpropagationPassResult:
        """
        Run one gradient-descent step on a single example.

        Deltas for every layer are computed against the current weights
        first and only applied once all layers have been processed, since
        the gradient passed to layer ``i - 1`` goes through layer ``i``'s
        weights as they were before the update.

        Args:
            input: Input vector of width ``num_inputs``
            target: Expected output of width ``num_outputs``
            learning_rate: Step size applied to every gradient

        Returns:
            BackpropagationPassResult: Per-layer output gradients and the
            squared error of this example
        """
        outputs = self.forward_with_intermediate_outputs(input)

        layer_gradients: List[Optional[np.ndarray]] = [None] * len(self.layers)
        error_gradient = outputs[-1] - np.asarray(target, dtype=np.float64)
        layer_gradients[-1] = error_gradient
        total_error = float(np.sum(error_gradient * error_gradient / 2.0))

        layer_deltas = []
        for i in reversed(range(len(self.layers))):
            layer = self.layers[i]
            layer_delta = Layer.with_dimensions(
                len(layer), layer.num_inputs, layer.activation.clone()
            )

            activation_gradients = np.array(
                [layer.activation.derivative(y) for y in outputs[i + 1]]
            )
            net_input_gradients = layer_gradients[i] * activation_gradients

            if i > 0:
                layer_gradients[i - 1] = layer.weights.T @ net_input_gradients

            layer_delta.weights[:] = learning_rate * np.outer(net_input_gradients, outputs[i])
            layer_delta.biases[:] = learning_rate * net_input_gradients
            layer_deltas.append(layer_delta)

        for layer, layer_delta in zip(self.layers, reversed(layer_deltas)):
            layer.weights -= layer_delta.weights
            layer.biases -= layer_delta.biases

        return BackpropagationPassResult(layer_gradients, total_error)

    def train(
        self,
        examples: Iterable[Sequence[Sequence[float]]],
        epochs: int,
        learning_rate: float,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> List[float]:
        """
        Backpropagate every example, in order, once per epoch.

        Args:
            examples: ``(input, target)`` pairs
            epochs: Number of passes over ``examples``
            learning_rate: Step size passed to ``backpropagate``
            callback: Called after each epoch with a progress dict
                (``epoch``, ``total_epochs``, ``total_error``, ``elapsed_time``)
            yield_func: Called after each epoch so other tasks can run

        Returns:
            list: The summed ``total_error`` of each epoch

        Raises:
            ValueError: If ``epochs`` < 1 or ``learning_rate`` <= 0
        """
        if epochs < 1:
            raise ValueError(f"epochs must be at least 1, got {epochs}")
        if learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {learning_rate}")

        examples = [TrainingExample(*example) for example in examples]
        logger.info(
            f"Training {self.architecture} on {len(examples)} example(s): "
            f"epochs={epochs}, lr={learning_rate}"
        )

        history = []
        start_time = time.time()
        for epoch in range(1, epochs + 1):
            epoch_error = 0.0
            for example in examples:
                result = self.backpropagate(example.input, example.target, learning_rate)
                epoch_error += result.total_error
            history.append(epoch_error)

            if callback is not None:
                callback({
                    'epoch': epoch,
                    'total_epochs': epochs,
                    'total_error': epoch_error,
                    'elapsed_time': time.time() - start_time
                })
            if yield_func is not None:
                yield_func()

        logger.info(
            f"Training finished in {time.time() - start_time:.2f}s, "
            f"final error {history[-1]:.6f}"
        )
        return history

    def evaluate(self, examples: Iterable[Sequence[Sequence[float]]]) -> float:
        """Summed squared error / 2 over ``examples``, without training."""
        total_error = 0.0
        for input, target in examples:
            error = self.forward(input) - np.asarray(target, dtype=np.float64)
            total_error += float(np.sum(error * error / 2.0))
        return total_error

    def clone(self) -> 'Network':
        """
        Copy the network layer by layer.

        Returns:
            Network: A network that shares no arrays with this one
        """
        return Network(layer.clone() for layer in self.layers)

    def __repr__(self) -> str:
        activations = ', '.join(repr(layer.activation) for layer in self.layers)
        return f"Network(architecture={self.architecture}, activations=[{activations}])"
