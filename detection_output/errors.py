"""
Error taxonomy for the detection output decoder.

Both errors subclass ValueError so callers that already guard
configuration and input handling with ``except ValueError`` keep working.
"""


class ConfigurationError(ValueError):
    """Invalid decoder parameter or parameter combination."""


class ShapeMismatch(ValueError):
    """An input tensor length does not match the configured layout."""
