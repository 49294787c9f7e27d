"""Named-parameter access for flat numeric trait structures.

A class that carries many float members (``Strategy``) needs them readable
and writable by name without a hand-written accessor per member. Fields
declared with :func:`parameter` form the class's parameter registry:

    @dataclass
    class Traits(ParameterLookup):
        lma: float = parameter(0.2)
        rho: float = parameter(608.0)
        derived: float = field(init=False, default=0.0)   # not tracked

    t = Traits()
    t.get_all()                 # {'lma': 0.2, 'rho': 608.0}
    t.set_many({'lma': 0.1})    # validated, written, then post-hook runs

The registry depends only on the class, never on the instance, so copies
share it and nothing has to be rebuilt after a copy.
"""

from __future__ import annotations

import dataclasses
from functools import lru_cache
from typing import Any, Dict, Mapping, Tuple

from treesim.errors import TreeSimError, UnknownParameterError

_PARAMETER_KEY = "parameter"


def parameter(default: float, **kwargs: Any) -> Any:
    """Declare a dataclass field as a tracked, named parameter."""
    metadata = dict(kwargs.pop("metadata", {}) or {})
    metadata[_PARAMETER_KEY] = True
    return dataclasses.field(default=default, metadata=metadata, **kwargs)


@lru_cache(maxsize=None)
def _registry(cls: type) -> Tuple[str, ...]:
    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls.__name__} must be a dataclass to use ParameterLookup")
    return tuple(
        f.name for f in dataclasses.fields(cls) if f.metadata.get(_PARAMETER_KEY)
    )


class ParameterLookup:
    """Mixin giving a dataclass ``get_all``/``set_many``/``has_key``.

    Subclasses may override :meth:`validate_parameters` (checked before
    anything is written) and :meth:`set_parameters_post_hook` (run after
    every successful :meth:`set_many`, whatever changed).
    """

    @classmethod
    def parameter_names(cls) -> Tuple[str, ...]:
        return _registry(cls)

    def has_key(self, name: str) -> bool:
        return name in _registry(type(self))

    def get_all(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in _registry(type(self))}

    def set_many(self, values: Mapping[str, float]) -> None:
        """Set several parameters by name.

        Args:
            values: Mapping of parameter name to new value.

        Raises:
            UnknownParameterError: If any key is not a tracked parameter.
                Nothing is written.
            ParameterValueError: If :meth:`validate_parameters` rejects the
                values. Nothing is written.
            TreeSimError: Raised by :meth:`set_parameters_post_hook`. The
                previous values are restored and the hook is re-run
                before the error propagates.
        """
        names = _registry(type(self))
        unknown = [k for k in values if k not in names]
        if unknown:
            raise UnknownParameterError(unknown)
        converted = {k: float(v) for k, v in values.items()}
        self.validate_parameters(converted)
        previous = {name: getattr(self, name) for name in converted}
        for name, value in converted.items():
            setattr(self, name, value)
        try:
            self.set_parameters_post_hook()
        except TreeSimError:
            for name, value in previous.items():
                setattr(self, name, value)
            self.set_parameters_post_hook()
            raise

    def validate_parameters(self, values: Mapping[str, float]) -> None:
        """Hook: raise ParameterValueError for out-of-domain values."""

    def set_parameters_post_hook(self) -> None:
        """Hook: recompute anything derived from the parameters."""
