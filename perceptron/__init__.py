"""
perceptron package
~~~~~~~~~~~~~~~~~~

Multilayer perceptron trained with hand-derived backpropagation.
Contains the activation functions, the network implementation, binary and
JSON serialization, SQLite model persistence and the API server.
"""

__version__ = "1.0.0"
