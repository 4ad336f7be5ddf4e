"""
Exception hierarchy for the pathway accelerator.

    AcceleratorError (base)
    ├── ConfigurationError  - invalid layer dimensions or tunables
    ├── InputSizeError      - input vector longer than the input layer
    ├── PersistenceError    - missing or malformed saved state
    └── EmptyEnsembleError  - consensus requested over zero outputs

An empty pathway cache is *not* an error: selective inference falls back
to the dense pass and returns its output unchanged.
"""

from __future__ import annotations


class AcceleratorError(Exception):
    """Base exception for all accelerator-specific errors."""


class ConfigurationError(AcceleratorError, ValueError):
    """Invalid configuration parameters.

    Raised at construction time for non-positive layer sizes and by
    configuration calls that receive out-of-range values.
    """


class InputSizeError(AcceleratorError, ValueError):
    """Input vector is longer than the graph's input layer."""

    def __init__(self, input_length: int, input_size: int) -> None:
        super().__init__(
            f"Input size {input_length} exceeds network input layer size {input_size}"
        )
        self.input_length = input_length
        self.input_size = input_size


class PersistenceError(AcceleratorError):
    """Saved state is missing, unreadable, or does not match the schema.

    Surfaced to the caller as-is; nothing is recovered locally.
    """


class EmptyEnsembleError(AcceleratorError):
    """Consensus over zero member outputs.

    Belongs to the ensemble layer that consumes ``ComputationGraph.forward``;
    defined here so that layer and this package share one hierarchy.
    """
