"""Conversions between :class:`~bstatectl.models.Plan` and its stored forms.

The canonical form of a plan is its compact JSON document (terminated by a
newline, as written by the broker's stream encoder) wrapped in standard
Base64. Older broker releases stored the plan as a free-form map, sometimes
nested under a ``plan`` key next to unrelated request parameters.
"""
from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping

from .models import Plan, SchemaError


class CodecError(RuntimeError):
    """Raised when a plan cannot be converted."""


class EncodingError(CodecError):
    """Raised when a plan cannot be serialised to its canonical form."""


class DecodingError(CodecError):
    """Raised when stored parameters cannot be decoded into a plan."""


def encode_plan(plan: Plan) -> str:
    """Return the canonical Base64 encoding of *plan*."""
    try:
        document = json.dumps(plan.to_wire(), separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"cannot marshal plan: {exc}") from exc
    return base64.b64encode(f"{document}\n".encode()).decode("ascii")


def decode_plan(encoded: str) -> Plan:
    """Decode a canonical plan string produced by :func:`encode_plan`."""
    try:
        raw = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise DecodingError(f"parameters are not valid base64: {exc}") from exc
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodingError(f"encoded plan is not valid JSON: {exc}") from exc
    return _plan_from_document(document)


def decode_legacy(parameters: Mapping[str, object]) -> Plan:
    """Decode legacy map parameters into a plan.

    When the map carries a ``plan`` key only that sub-document is used and any
    sibling keys are ignored; otherwise the whole map is the plan. A null
    ``plan`` is rejected like any other non-object value.
    """
    selected: object = parameters["plan"] if "plan" in parameters else parameters
    try:
        # Round-trip through JSON so only JSON-representable data reaches the schema.
        document = json.loads(json.dumps(selected))
    except (TypeError, ValueError) as exc:
        raise DecodingError(f"cannot marshal parameters: {exc}") from exc
    return _plan_from_document(document)


def decode(parameters: object) -> Plan:
    """Decode canonical (string) or legacy (map) parameters into a plan."""
    if isinstance(parameters, str):
        return decode_plan(parameters)
    if isinstance(parameters, Mapping):
        return decode_legacy(parameters)
    raise DecodingError(
        f"unexpected parameters format: expected string or map, found {type(parameters).__name__}"
    )


def _plan_from_document(document: object) -> Plan:
    try:
        return Plan.from_wire(document)
    except SchemaError as exc:
        raise DecodingError(f"cannot unmarshal plan from parameters: {exc}") from exc


__all__ = [
    "CodecError",
    "DecodingError",
    "EncodingError",
    "decode",
    "decode_legacy",
    "decode_plan",
    "encode_plan",
]
