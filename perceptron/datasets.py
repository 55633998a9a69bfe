"""
datasets.py
~~~~~~~~~~~

Small fixed datasets for exercising the network.
"""

from perceptron.network import TrainingExample

# Exclusive-or over two inputs
XOR_EXAMPLES = [
    TrainingExample(input=[0.0, 0.0], target=[0.0]),
    TrainingExample(input=[0.0, 1.0], target=[1.0]),
    TrainingExample(input=[1.0, 0.0], target=[1.0]),
    TrainingExample(input=[1.0, 1.0], target=[0.0]),
]
