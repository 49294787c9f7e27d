"""Error taxonomy for treesim.

Every error derives from TreeSimError and from the builtin exception a
caller would naturally catch for that failure (KeyError for unknown
names, IndexError for bad indices, and so on).
"""

from __future__ import annotations

from typing import Iterable


class TreeSimError(Exception):
    """Base class for all treesim errors."""


class UnknownParameterError(TreeSimError, KeyError):
    """set_many() was given names that are not tracked parameters."""

    def __init__(self, keys: Iterable[str]):
        self.keys = sorted(keys)
        super().__init__(self.keys)

    def __str__(self) -> str:
        return f"Unknown parameters: {', '.join(self.keys)}"


class ParameterValueError(TreeSimError, ValueError):
    """A parameter value lies outside its valid domain."""


class IndexOutOfRangeError(TreeSimError, IndexError):
    """Patch or species index beyond current bounds."""

    def __init__(self, index: int, size: int, what: str = "index"):
        self.index = index
        self.size = size
        super().__init__(
            f"{what} {index} out of bounds: must be in [0, {size - 1}]"
            if size > 0 else f"{what} {index} out of bounds: container is empty"
        )


class ShapeMismatchError(TreeSimError, ValueError):
    """A bulk table's dimensions disagree with patch/species counts."""


class IntegrationError(TreeSimError, RuntimeError):
    """Quadrature did not converge within its subdivision budget."""


class StepFailureError(TreeSimError, RuntimeError):
    """ODE stepper could not find an acceptable step."""
