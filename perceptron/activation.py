"""
activation.py
~~~~~~~~~~~~~

Per-neuron activation functions.

The set of activations is closed: ``Identity``, ``Sigmoid`` and
``DebugPrint`` (which wraps another activation and prints every call).
Each one knows how to describe itself as a tagged value via ``to_info``,
and ``activation_from_info`` rebuilds an activation from that value, so
serializers never need to inspect the concrete class.

Tagged form::

    "Identity"
    "Sigmoid"
    {"DebugPrint": {"output": "<label>", "activation": <tagged form>}}
"""

from typing import Any

import numpy as np


class Activation:
    """Base class for the activation functions used by a layer."""

    tag = None

    def forward(self, x: float) -> float:
        """Apply the activation to a net input."""
        raise NotImplementedError

    def backward(self, x: float) -> float:
        """Invert ``forward``; not used during training."""
        raise NotImplementedError

    def derivative(self, y: float) -> float:
        """
        Derivative of ``forward`` expressed in terms of its output.

        Args:
            y: The already activated value, not the net input

        Returns:
            The slope of the activation at that point
        """
        raise NotImplementedError

    def clone(self) -> 'Activation':
        return type(self)()

    def to_info(self) -> Any:
        return self.tag

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Activation):
            return NotImplemented
        return self.to_info() == other.to_info()

    def __hash__(self) -> int:
        return hash(repr(self))

    def __repr__(self) -> str:
        return f'{type(self).__name__}()'


class Identity(Activation):
    tag = 'Identity'

    def forward(self, x: float) -> float:
        return x

    def backward(self, x: float) -> float:
        return x

    def derivative(self, y: float) -> float:
        return 1.0


class Sigmoid(Activation):
    """
    Logistic function ``1 / (1 + e^-x)``.

    ``backward`` is only defined on the open interval (0, 1). Outside of it
    the result is NaN or infinite; no validation is done.
    """

    tag = 'Sigmoid'

    def forward(self, x: float) -> float:
        with np.errstate(over='ignore'):
            return 1.0 / (1.0 + np.exp(-np.float64(x)))

    def backward(self, x: float) -> float:
        x = np.float64(x)
        with np.errstate(divide='ignore', invalid='ignore'):
            return -np.log((1.0 - x) / x)

    def derivative(self, y: float) -> float:
        return y * (1.0 - y)


class DebugPrint(Activation):
    """
    Wraps another activation and prints each call as it happens.

    Output lines look like ``"<label>; f(x) = y"``, with ``f⁻¹`` for
    ``backward`` and ``f'`` for ``derivative``. The line is printed after
    the wrapped activation has produced its result.
    """

    tag = 'DebugPrint'

    def __init__(self, output: str, activation: Activation):
        self.output = output
        self.activation = activation

    def _report(self, name: str, x: float, result: float) -> float:
        print(f'{self.output}; {name}({x}) = {result}')
        return result

    def forward(self, x: float) -> float:
        return self._report('f', x, self.activation.forward(x))

    def backward(self, x: float) -> float:
        return self._report('f⁻¹', x, self.activation.backward(x))

    def derivative(self, y: float) -> float:
        return self._report("f'", y, self.activation.derivative(y))

    def clone(self) -> 'DebugPrint':
        return DebugPrint(self.output, self.activation.clone())

    def to_info(self) -> Any:
        return {
            self.tag: {
                'output': self.output,
                'activation': self.activation.to_info()
            }
        }

    def __repr__(self) -> str:
        return f'DebugPrint({self.output!r}, {self.activation!r})'


# Activations without parameters, keyed by tag
SIMPLE_ACTIVATIONS = {
    Identity.tag: Identity,
    Sigmoid.tag: Sigmoid,
}


def activation_from_info(info: Any) -> Activation:
    """
    Build an activation from its tagged description.

    Args:
        info: A tag string or a single-key dict, as produced by ``to_info``

    Returns:
        A new Activation instance

    Raises:
        ValueError: If the tag is unknown or the payload is malformed
    """
    if isinstance(info, str):
        if info not in SIMPLE_ACTIVATIONS:
            raise ValueError(f"Unknown activation tag: {info!r}")
        return SIMPLE_ACTIVATIONS[info]()

    if not isinstance(info, dict) or len(info) != 1:
        raise ValueError(f"Malformed activation description: {info!r}")

    (tag, payload), = info.items()
    if tag in SIMPLE_ACTIVATIONS and payload is None:
        return SIMPLE_ACTIVATIONS[tag]()
    if tag != DebugPrint.tag:
        raise ValueError(f"Unknown activation tag: {tag!r}")

    if not isinstance(payload, dict) or set(payload) != {'output', 'activation'}:
        raise ValueError(f"Malformed DebugPrint payload: {payload!r}")
    if not isinstance(payload['output'], str):
        raise ValueError("DebugPrint output label must be a string")

    return DebugPrint(payload['output'], activation_from_info(payload['activation']))
