"""Trigger base class and the registry that creates triggers by class name."""

from __future__ import annotations

import abc
from typing import Any, Callable

_factories: dict[str, Callable[[], "Trigger"]] = {}


class Trigger(abc.ABC):
    """Decides, for one intercepted call, whether a fault should be injected."""

    init_data: Any = None

    def init(self, init_data: Any) -> None:
        """Configure the trigger from its parsed ``<args>`` element (or None)."""
        self.init_data = init_data

    @abc.abstractmethod
    def eval(self, function_name: str, *args: Any) -> bool:
        """Return True when the fault should be injected for this call."""


def register_trigger(name: str, factory: Callable[[], Trigger]) -> Callable[[], Trigger]:
    """Register ``factory`` under ``name``; an earlier registration is kept."""
    _factories.setdefault(name, factory)
    return factory


def create_trigger(name: str) -> Trigger:
    """Create a new trigger of the class registered as ``name``."""
    try:
        factory = _factories[name]
    except KeyError:
        raise KeyError(f"trigger class {name!r} is not registered") from None
    return factory()