#!/usr/bin/env python3
"""
Train a small network on XOR and save it.

Usage:
    python scripts/train_xor.py

The script will:
1. Build a 2-3-2-1 network with sigmoid activations
2. Train it for 10000 epochs over the four XOR examples
3. Print the learned outputs
4. Save the network in binary and JSON form under models/
5. Verify that both files load back to the same outputs
"""

import os
import sys
import logging

import numpy as np

from perceptron.activation import Sigmoid
from perceptron.datasets import XOR_EXAMPLES
from perceptron.network import LayerProperties, Network
from perceptron.serialization import (
    load_from_file,
    load_json_from_file,
    save_json_to_file,
    save_to_file
)

EPOCHS = 10000
LEARNING_RATE = 0.5


def build_network() -> Network:
    """Create the randomly initialised 2-3-2-1 network."""
    return Network.random(
        2,
        1,
        [
            LayerProperties(3, Sigmoid()),
            LayerProperties(2, Sigmoid()),
        ],
        Sigmoid()
    )


def report(network: Network) -> None:
    """Print the network's output for every XOR example."""
    for example in XOR_EXAMPLES:
        output = network.forward(example.input)
        print(f"   {example.input} -> {output.tolist()} (target {example.target})")


def verify_saved(network: Network, binary_path: str, json_path: str) -> bool:
    """
    Check that both saved files reproduce the network's outputs exactly.

    Returns:
    --------
    bool
        True if verification passes
    """
    print(f"\n🔍 Verifying saved files...")

    for loader, path in ((load_from_file, binary_path), (load_json_from_file, json_path)):
        restored = loader(path)
        for example in XOR_EXAMPLES:
            assert np.array_equal(restored.forward(example.input), network.forward(example.input)), \
                f"Outputs of {path} don't match!"

    print("✅ Verification passed! Saved networks are identical.")
    return True


def main():
    """Train, report and save."""
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 60)
    print("XOR training")
    print("=" * 60)

    script_dir = os.path.dirname(os.path.abspath(__file__))
    model_dir = os.path.join(os.path.dirname(script_dir), 'models')
    binary_path = os.path.join(model_dir, 'xor.npz')
    json_path = os.path.join(model_dir, 'xor.json')

    network = build_network()
    print(f"\n🧠 Network: {network}")

    history = network.train(XOR_EXAMPLES, EPOCHS, LEARNING_RATE)
    print(f"\n📉 Total error: first epoch {history[0]:.6f}, last epoch {history[-1]:.6f}")

    print(f"\n📋 Outputs:")
    report(network)

    try:
        save_to_file(network, binary_path)
        save_json_to_file(network, json_path)
        verify_saved(network, binary_path, json_path)
    except Exception as e:
        print(f"\n❌ Error saving network: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)

    print(f"\n📁 Files:")
    print(f"   - Binary: {binary_path}")
    print(f"   - JSON:   {json_path}")


if __name__ == '__main__':
    main()
