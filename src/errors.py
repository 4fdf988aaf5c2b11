"""
errors.py

Typed failures raised while configuring the step filter or running it on a
grid map.

- MissingConfig / InvalidConfig: configuration problems, raised once at
  construction time.
- MissingLayer / InvalidGrid: per-call problems with the input grid.
"""

from __future__ import annotations

from typing import Any


class TraversabilityError(Exception):
    """Base class for every error raised by this project."""


class MissingConfig(TraversabilityError):
    def __init__(self, parameter: str):
        self.parameter = parameter
        super().__init__(f"Step filter did not find param '{parameter}'.")


class InvalidConfig(TraversabilityError):
    def __init__(self, parameter: str, value: Any, reason: str):
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for '{parameter}': {value!r} ({reason}).")


class MissingLayer(TraversabilityError):
    def __init__(self, layer: str):
        self.layer = layer
        super().__init__(f"Grid map has no layer '{layer}'.")


class InvalidGrid(TraversabilityError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid grid map: {reason}")
