"""
serialization.py
~~~~~~~~~~~~~~~~

Binary and JSON encodings of a ``Network``.

Both encodings carry the same shape::

    {"layers": [{"weights": [[...]], "biases": [...], "activation": <tag>}]}

where ``<tag>`` is the tagged activation description produced by
``Activation.to_info``. The binary form is an uncompressed numpy ``.npz``
archive holding one float64 array per weight matrix and bias vector, plus a
JSON header with the activation tags. Floats survive both encodings
bit for bit.
"""

import io
import json
import logging
import os
import zipfile
from numbers import Real
from typing import Any, Dict, List, Optional

import numpy as np

from perceptron.activation import activation_from_info
from perceptron.network import Layer, Network

logger = logging.getLogger(__name__)

BINARY_FORMAT = 'perceptron-network'
BINARY_VERSION = 1


class SerializationError(Exception):
    """Base class for encoding and decoding failures."""


class EncodeError(SerializationError):
    """Raised when a network cannot be encoded."""


class DecodeError(SerializationError):
    """Raised when bytes or text do not describe a valid network."""


class NetworkEncoder(json.JSONEncoder):
    """JSON encoder that understands numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        """
        Convert numpy values to plain Python values.

        Args:
            obj: Object to serialize

        Returns:
            JSON-serializable representation
        """
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


# ============================================================================
# SHARED HELPERS
# ============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _check_vector(values: Any, what: str) -> None:
    if not isinstance(values, list):
        raise DecodeError(f"{what} must be a list, got {type(values).__name__}")
    for value in values:
        if not _is_number(value):
            raise DecodeError(f"{what} contains a non-numeric value: {value!r}")


def _build_layer(index: int, weights: Any, biases: Any, activation_info: Any) -> Layer:
    """Validate one decoded layer and turn it into a ``Layer``."""
    try:
        activation = activation_from_info(activation_info)
    except ValueError as e:
        raise DecodeError(f"Layer {index}: {e}") from e

    try:
        weights = np.asarray(weights, dtype=np.float64)
        biases = np.asarray(biases, dtype=np.float64)
    except (OverflowError, ValueError, TypeError) as e:
        # e.g. a JSON integer beyond the float64 range
        raise DecodeError(f"Layer {index}: values do not fit in float64: {e}") from e
    if weights.ndim != 2 or weights.size == 0:
        raise DecodeError(
            f"Layer {index}: weights must be a non-empty matrix, "
            f"got shape {weights.shape}"
        )
    if biases.shape != (weights.shape[0],):
        raise DecodeError(
            f"Layer {index}: {weights.shape[0]} weight rows but "
            f"{biases.size} biases"
        )
    return Layer(weights, biases, activation)


def _build_network(layers: List[Layer]) -> Network:
    try:
        return Network(layers)
    except ValueError as e:
        raise DecodeError(str(e)) from e


# ============================================================================
# TEXT (JSON) ENCODING
# ============================================================================

def network_to_dict(network: Network) -> Dict[str, Any]:
    """Return the plain-data description of ``network``."""
    return {
        'layers': [
            {
                'weights': layer.weights.tolist(),
                'biases': layer.biases.tolist(),
                'activation': layer.activation.to_info()
            }
            for layer in network.layers
        ]
    }


def network_from_dict(data: Any) -> Network:
    """
    Build a network from its plain-data description.

    Raises:
        DecodeError: On unknown activation tags, ragged weight rows,
            mismatched bias counts or layers that do not chain
    """
    if not isinstance(data, dict) or not isinstance(data.get('layers'), list):
        raise DecodeError("Expected an object with a 'layers' list")

    layers = []
    for index, layer_data in enumerate(data['layers']):
        if not isinstance(layer_data, dict):
            raise DecodeError(f"Layer {index} must be an object")
        missing = {'weights', 'biases', 'activation'} - set(layer_data)
        if missing:
            raise DecodeError(f"Layer {index} is missing {sorted(missing)}")

        weights = layer_data['weights']
        if not isinstance(weights, list):
            raise DecodeError(f"Layer {index}: weights must be a list of rows")
        for row in weights:
            _check_vector(row, f"Layer {index} weight row")
        if len({len(row) for row in weights}) > 1:
            raise DecodeError(f"Layer {index}: ragged weight rows")
        _check_vector(layer_data['biases'], f"Layer {index} biases")

        layers.append(
            _build_layer(index, weights, layer_data['biases'], layer_data['activation'])
        )

    return _build_network(layers)


def network_to_json(network: Network, indent: Optional[int] = None) -> str:
    """
    Encode ``network`` as JSON text.

    Raises:
        EncodeError: If the network holds values JSON cannot represent
    """
    try:
        return json.dumps(network_to_dict(network), cls=NetworkEncoder, indent=indent)
    except (TypeError, ValueError, AttributeError) as e:
        raise EncodeError(f"Could not encode network as JSON: {e}") from e


def network_from_json(text: str) -> Network:
    """
    Decode a network from JSON text.

    Raises:
        DecodeError: If the text is not valid JSON or not a valid network
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Invalid JSON: {e}") from e
    return network_from_dict(data)


# ============================================================================
# BINARY ENCODING
# ============================================================================

def encode_network(network: Network) -> bytes:
    """
    Encode ``network`` into the binary ``.npz`` form.

    Raises:
        EncodeError: If the network cannot be encoded
    """
    try:
        header = json.dumps({
            'format': BINARY_FORMAT,
            'version': BINARY_VERSION,
            'activations': [layer.activation.to_info() for layer in network.layers]
        })
        arrays = {'header': np.array(header)}
        for index, layer in enumerate(network.layers):
            arrays[f'weights_{index}'] = np.asarray(layer.weights, dtype=np.float64)
            arrays[f'biases_{index}'] = np.asarray(layer.biases, dtype=np.float64)
    except (TypeError, ValueError, AttributeError) as e:
        raise EncodeError(f"Could not encode network: {e}") from e

    buffer = io.BytesIO()
    np.savez(buffer, **arrays)
    return buffer.getvalue()


def decode_network(data: bytes) -> Network:
    """
    Decode a network from the binary ``.npz`` form.

    Raises:
        DecodeError: If ``data`` is not a valid encoded network
    """
    try:
        archive = np.load(io.BytesIO(data), allow_pickle=False)
    except (ValueError, OSError, EOFError, zipfile.BadZipFile) as e:
        raise DecodeError(f"Not an encoded network: {e}") from e

    if not isinstance(archive, np.lib.npyio.NpzFile):
        raise DecodeError("Not an encoded network: expected an archive")

    with archive:
        try:
            header = json.loads(archive['header'].item())
            if not isinstance(header, dict):
                raise DecodeError("Header must be an object")
            if header.get('format') != BINARY_FORMAT:
                raise DecodeError(f"Unsupported format: {header.get('format')!r}")
            if header.get('version') != BINARY_VERSION:
                raise DecodeError(f"Unsupported version: {header.get('version')!r}")

            activations = header.get('activations')
            if not isinstance(activations, list):
                raise DecodeError("Header is missing the activation list")

            layers = []
            for index, activation_info in enumerate(activations):
                weights = archive[f'weights_{index}']
                biases = archive[f'biases_{index}']
                if weights.dtype != np.float64 or biases.dtype != np.float64:
                    raise DecodeError(f"Layer {index}: parameters must be float64")
                layers.append(_build_layer(index, weights, biases, activation_info))
        except DecodeError:
            raise
        except (KeyError, TypeError, ValueError, OSError, zipfile.BadZipFile) as e:
            raise DecodeError(f"Corrupt network archive: {e}") from e

    return _build_network(layers)


# ============================================================================
# FILES
# ============================================================================

def _ensure_parent_directory(path: str) -> None:
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        os.makedirs(directory)


def save_to_file(network: Network, path: str) -> None:
    """Write the binary encoding of ``network`` to ``path``."""
    data = encode_network(network)
    _ensure_parent_directory(path)
    with open(path, 'wb') as f:
        f.write(data)
    logger.info(f"Saved network {network.architecture} to {path}")


def load_from_file(path: str) -> Network:
    """Read a binary-encoded network from ``path``."""
    with open(path, 'rb') as f:
        network = decode_network(f.read())
    logger.info(f"Loaded network {network.architecture} from {path}")
    return network


def save_json_to_file(network: Network, path: str) -> None:
    """Write the JSON encoding of ``network`` to ``path``."""
    text = network_to_json(network)
    _ensure_parent_directory(path)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(text)
    logger.info(f"Saved network {network.architecture} as JSON to {path}")


def load_json_from_file(path: str) -> Network:
    """Read a JSON-encoded network from ``path``."""
    with open(path, 'r', encoding='utf-8') as f:
        network = network_from_json(f.read())
    logger.info(f"Loaded network {network.architecture} from JSON {path}")
    return network
