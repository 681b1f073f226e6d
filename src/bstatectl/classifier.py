"""Classification of stored ``parameters`` fields."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True, frozen=True)
class Canonical:
    """Parameters already hold the encoded plan string."""

    encoded: str

    @property
    def kind(self) -> str:
        """Return the short label used in logs and reports."""
        return "canonical"


@dataclass(slots=True, frozen=True)
class Legacy:
    """Parameters hold a legacy map awaiting conversion."""

    parameters: Mapping[str, Any]

    @property
    def kind(self) -> str:
        """Return the short label used in logs and reports."""
        return "legacy"


@dataclass(slots=True, frozen=True)
class Unrecognized:
    """Parameters have a shape this tool does not know how to handle."""

    raw: Any

    @property
    def kind(self) -> str:
        """Return the short label used in logs and reports."""
        return "unrecognized"

    @property
    def type_name(self) -> str:
        """Return the Python type name of the raw value."""
        return type(self.raw).__name__


ParametersKind = Canonical | Legacy | Unrecognized


def classify(parameters: object) -> ParametersKind:
    """Return the variant describing *parameters*.

    Callers must classify each value when they inspect it; results are never
    cached because another operator may rewrite the value in between.
    """
    if isinstance(parameters, str):
        return Canonical(parameters)
    if isinstance(parameters, Mapping):
        return Legacy(parameters)
    return Unrecognized(parameters)


__all__ = ["Canonical", "Legacy", "ParametersKind", "Unrecognized", "classify"]
