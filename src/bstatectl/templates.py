"""Rendering of archived plan templates.

Plan templates were authored for the broker's Go template engine together
with the sprig function library. :mod:`bstatectl.gotemplate` translates them
into Jinja2, which renders them in a sandbox with strict undefined variables.
The functions below mirror the Go builtins and the sprig helpers plan authors
relied upon, with Go's argument order: a piped value is the last argument.
"""
from __future__ import annotations

import base64
import hashlib
import json
import math
import re
from collections.abc import Callable, Mapping, Sized
from dataclasses import dataclass, field
from functools import wraps
from typing import Any
from urllib.parse import quote_plus

import yaml
from jinja2 import StrictUndefined, TemplateError as JinjaTemplateError, Undefined
from jinja2.sandbox import SandboxedEnvironment

from .gotemplate import ROOT, GoTemplateError, translate_go_template

_VERB_RE = re.compile(r"%([-+# 0]*)(\d+)?(?:\.(\d+))?([a-zA-Z%])")
_WORD_RE = re.compile(r"\b(\w)")
_HTML_ESCAPES = (("&", "&amp;"), ("<", "&lt;"), (">", "&gt;"), ("'", "&#39;"), ('"', "&#34;"))


class TemplateError(RuntimeError):
    """Raised when a plan template cannot be rendered."""


def go_string(value: object) -> str:
    """Format *value* the way Go's ``fmt`` prints it with ``%v``."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<no value>"
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    if isinstance(value, Mapping):
        items = " ".join(f"{key}:{go_string(value[key])}" for key in sorted(value))
        return f"map[{items}]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(go_string(item) for item in value) + "]"
    return str(value)


def _finalize(value: object) -> object:
    if isinstance(value, Undefined):
        return value
    return go_string(value)


def _is_empty(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, bool):
        return not value
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, Sized):
        return len(value) == 0
    return False


def _truth(value: object) -> bool:
    if isinstance(value, Undefined):
        return False
    return not _is_empty(value)


def _range(value: Any) -> list[Any]:
    if isinstance(value, Undefined) or value is None:
        return []
    if isinstance(value, Mapping):
        return [value[key] for key in sorted(value)]
    if isinstance(value, int) and not isinstance(value, bool):
        return list(range(value))
    if isinstance(value, (str, bytes)):
        raise TemplateError(f"range can't iterate over {value!r}")
    try:
        return list(value)
    except TypeError as exc:
        raise TemplateError(f"range can't iterate over {value!r}") from exc


def _range_items(value: object) -> list[tuple[Any, Any]]:
    if isinstance(value, Mapping):
        return [(key, value[key]) for key in sorted(value)]
    return list(enumerate(_range(value)))


# Go builtins -----------------------------------------------------------------
def _and(first: object, *rest: object) -> object:
    for value in (first, *rest):
        if not _truth(value):
            return value
    return rest[-1] if rest else first


def _or(first: object, *rest: object) -> object:
    for value in (first, *rest):
        if _truth(value):
            return value
    return rest[-1] if rest else first


def _not(value: object) -> bool:
    return not _truth(value)


def _len(value: Any) -> int:
    if value is None:
        raise TemplateError("len of nil pointer")
    return len(value)


def _index(item: Any, *keys: Any) -> Any:
    for key in keys:
        if item is None:
            raise TemplateError(f"index of untyped nil with key {key!r}")
        if isinstance(item, Mapping):
            item = item.get(key)
        else:
            item = item[int(key)]
    return item


def _slice(item: Any, *bounds: int) -> Any:
    return item[slice(*bounds)]


def _eq(first: object, *others: object) -> bool:
    return any(first == other for other in others)


def _ne(first: object, second: object) -> bool:
    return first != second


def _lt(first: Any, second: Any) -> bool:
    return first < second


def _le(first: Any, second: Any) -> bool:
    return first <= second


def _gt(first: Any, second: Any) -> bool:
    return first > second


def _ge(first: Any, second: Any) -> bool:
    return first >= second


def _print(*values: object) -> str:
    parts: list[str] = []
    previous_string = True
    for position, value in enumerate(values):
        is_string = isinstance(value, str)
        if position and not is_string and not previous_string:
            parts.append(" ")
        parts.append(go_string(value))
        previous_string = is_string
    return "".join(parts)


def _println(*values: object) -> str:
    return " ".join(go_string(value) for value in values) + "\n"


def _format_spec(flags: str, width: str | None, precision: str | None, kind: str) -> str:
    align = "<" if "-" in flags else ""
    sign = "+" if "+" in flags else (" " if " " in flags else "")
    alternate = "#" if "#" in flags else ""
    zero = "0" if "0" in flags and not align else ""
    dot = f".{precision}" if precision is not None else ""
    return f"{align}{sign}{alternate}{zero}{width or ''}{dot}{kind}"


def _format_verb(
    value: Any, flags: str, width: str | None, precision: str | None, verb: str
) -> str:
    if verb == "d":
        return format(int(value), _format_spec(flags, width, None, "d"))
    if verb in "eEfFgG":
        kind = "f" if verb == "F" else verb
        return format(float(value), _format_spec(flags, width, precision, kind))
    if verb in "xX" and isinstance(value, int):
        return format(value, _format_spec(flags, width, None, verb))
    if verb in "xX":
        text = str(value).encode().hex()
        text = text.upper() if verb == "X" else text
    elif verb in "vs":
        text = go_string(value)
        if precision is not None and verb == "s":
            text = text[: int(precision)]
    elif verb == "q":
        text = json.dumps(go_string(value), ensure_ascii=False)
    elif verb == "t":
        text = go_string(bool(value))
    else:
        return f"%!{verb}({go_string(value)})"
    size = int(width or 0)
    return text.ljust(size) if "-" in flags else text.rjust(size)


def _printf(pattern: str, *values: object) -> str:
    parts: list[str] = []
    position = 0
    consumed = 0
    for match in _VERB_RE.finditer(pattern):
        parts.append(pattern[position : match.start()])
        position = match.end()
        flags, width, precision, verb = match.groups()
        if verb == "%":
            parts.append("%")
            continue
        if consumed >= len(values):
            parts.append(f"%!{verb}(MISSING)")
            continue
        parts.append(_format_verb(values[consumed], flags, width, precision, verb))
        consumed += 1
    parts.append(pattern[position:])
    if consumed < len(values):
        extra = ", ".join(go_string(value) for value in values[consumed:])
        parts.append(f"%!(EXTRA {extra})")
    return "".join(parts)


def _html(*values: object) -> str:
    text = _print(*values)
    for raw, escaped in _HTML_ESCAPES:
        text = text.replace(raw, escaped)
    return text


def _js(*values: object) -> str:
    text = _print(*values)
    replacements = {
        "\\": "\\\\",
        "'": "\\'",
        '"': '\\"',
        "<": "\\u003C",
        ">": "\\u003E",
        "&": "\\u0026",
        "=": "\\u003D",
        "\n": "\\n",
        "\r": "\\r",
        "\t": "\\t",
    }
    return "".join(replacements.get(char, char) for char in text)


def _urlquery(*values: object) -> str:
    return quote_plus(_print(*values))


# sprig -----------------------------------------------------------------------
def _default(default: object, *given: object) -> object:
    if not given or _is_empty(given[0]):
        return default
    return given[0]


def _coalesce(*values: object) -> object:
    for value in values:
        if not _is_empty(value):
            return value
    return None


def _ternary(true_value: object, false_value: object, condition: object) -> object:
    return true_value if _truth(condition) else false_value


def _required(message: str, value: object) -> object:
    if value is None or value == "":
        raise TemplateError(message)
    return value


def _fail(message: str) -> str:
    raise TemplateError(message)


def _to_string(value: object) -> str:
    return go_string(value)


def _quote(*values: object) -> str:
    return " ".join(
        json.dumps(go_string(value), ensure_ascii=False) for value in values if value is not None
    )


def _squote(*values: object) -> str:
    return " ".join(f"'{go_string(value)}'" for value in values if value is not None)


def _cat(*values: object) -> str:
    return " ".join(go_string(value) for value in values if value is not None)


def _upper(value: object) -> str:
    return go_string(value).upper()


def _lower(value: object) -> str:
    return go_string(value).lower()


def _title(value: object) -> str:
    return _WORD_RE.sub(lambda match: match.group(1).upper(), go_string(value))


def _trim(value: object) -> str:
    return go_string(value).strip()


def _trim_all(cutset: str, value: object) -> str:
    return go_string(value).strip(cutset)


def _trim_prefix(prefix: str, value: object) -> str:
    return go_string(value).removeprefix(prefix)


def _trim_suffix(suffix: str, value: object) -> str:
    return go_string(value).removesuffix(suffix)


def _replace(old: str, new: str, value: object) -> str:
    return go_string(value).replace(old, new)


def _contains(needle: str, value: object) -> bool:
    return needle in go_string(value)


def _has_prefix(prefix: str, value: object) -> bool:
    return go_string(value).startswith(prefix)


def _has_suffix(suffix: str, value: object) -> bool:
    return go_string(value).endswith(suffix)


def _repeat(count: int, value: object) -> str:
    return go_string(value) * int(count)


def _trunc(length: int, value: object) -> str:
    text = go_string(value)
    if length >= 0:
        return text[:length]
    return text[length:] if len(text) + length > 0 else text


def _indent(width: int, value: object) -> str:
    pad = " " * int(width)
    return pad + go_string(value).replace("\n", "\n" + pad)


def _nindent(width: int, value: object) -> str:
    return "\n" + _indent(width, value)


def _join(separator: str, values: object) -> str:
    if isinstance(values, str):
        return values
    return separator.join(go_string(value) for value in _range(values) if value is not None)


def _split_list(separator: str, value: object) -> list[str]:
    return go_string(value).split(separator)


def _sort_alpha(values: object) -> list[str]:
    return sorted(go_string(value) for value in _range(values))


def _list(*values: object) -> list[object]:
    return list(values)


def _dict(*pairs: object) -> dict[str, object]:
    result: dict[str, object] = {}
    for position in range(0, len(pairs), 2):
        key = go_string(pairs[position])
        result[key] = pairs[position + 1] if position + 1 < len(pairs) else ""
    return result


def _get(mapping: Mapping[str, object], key: str) -> object:
    return mapping.get(key, "")


def _has_key(mapping: Mapping[str, object], key: str) -> bool:
    return key in mapping


def _keys(*mappings: Mapping[str, object]) -> list[str]:
    return [key for mapping in mappings for key in mapping]


def _to_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _to_pretty_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, indent=2, ensure_ascii=False)


def _b64enc(value: object) -> str:
    return base64.b64encode(go_string(value).encode()).decode("ascii")


def _b64dec(value: object) -> str:
    return base64.b64decode(go_string(value).encode(), validate=True).decode()


def _sha256sum(value: object) -> str:
    return hashlib.sha256(go_string(value).encode()).hexdigest()


def _to_int(value: object) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(float(go_string(value)))
    except ValueError:
        return 0


def _to_float(value: object) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(go_string(value))
    except ValueError:
        return 0.0


def _add(*values: object) -> int:
    return sum(_to_int(value) for value in values)


def _add1(value: object) -> int:
    return _to_int(value) + 1


def _sub(first: object, second: object) -> int:
    return _to_int(first) - _to_int(second)


def _mul(*values: object) -> int:
    return math.prod(_to_int(value) for value in values)


def _div(first: object, second: object) -> int:
    dividend, divisor = _to_int(first), _to_int(second)
    quotient = abs(dividend) // abs(divisor)
    return quotient if (dividend < 0) == (divisor < 0) else -quotient


def _mod(first: object, second: object) -> int:
    dividend, divisor = _to_int(first), _to_int(second)
    return dividend - divisor * _div(dividend, divisor)


def _max(first: object, *rest: object) -> int:
    return max(_to_int(value) for value in (first, *rest))


def _min(first: object, *rest: object) -> int:
    return min(_to_int(value) for value in (first, *rest))


def _key_by_alias(_credentials: object, _alias: str) -> str:
    # Credentials are never carried into restored plans.
    return ""


FUNCTIONS: dict[str, Callable[..., object]] = {
    # Go builtins
    "and": _and,
    "or": _or,
    "not": _not,
    "len": _len,
    "index": _index,
    "slice": _slice,
    "eq": _eq,
    "ne": _ne,
    "lt": _lt,
    "le": _le,
    "gt": _gt,
    "ge": _ge,
    "print": _print,
    "printf": _printf,
    "println": _println,
    "html": _html,
    "js": _js,
    "urlquery": _urlquery,
    # sprig
    "default": _default,
    "empty": _is_empty,
    "coalesce": _coalesce,
    "ternary": _ternary,
    "required": _required,
    "fail": _fail,
    "toString": _to_string,
    "quote": _quote,
    "squote": _squote,
    "cat": _cat,
    "upper": _upper,
    "lower": _lower,
    "title": _title,
    "trim": _trim,
    "trimAll": _trim_all,
    "trimPrefix": _trim_prefix,
    "trimSuffix": _trim_suffix,
    "replace": _replace,
    "contains": _contains,
    "hasPrefix": _has_prefix,
    "hasSuffix": _has_suffix,
    "repeat": _repeat,
    "trunc": _trunc,
    "indent": _indent,
    "nindent": _nindent,
    "join": _join,
    "splitList": _split_list,
    "sortAlpha": _sort_alpha,
    "list": _list,
    "dict": _dict,
    "get": _get,
    "hasKey": _has_key,
    "keys": _keys,
    "toJson": _to_json,
    "toRawJson": _to_json,
    "toPrettyJson": _to_pretty_json,
    "b64enc": _b64enc,
    "b64dec": _b64dec,
    "sha256sum": _sha256sum,
    "int": _to_int,
    "int64": _to_int,
    "atoi": _to_int,
    "float64": _to_float,
    "add": _add,
    "add1": _add1,
    "sub": _sub,
    "mul": _mul,
    "div": _div,
    "mod": _mod,
    "max": _max,
    "min": _min,
    # broker
    "keyByAlias": _key_by_alias,
}


def _template_function(name: str, function: Callable[..., object]) -> Callable[..., object]:
    """Adapt *function* for template calls.

    Missing map keys reach functions as ``None``, which is how Go passes a
    missing key's zero value, and Python errors are reported as template errors.
    """

    @wraps(function)
    def call(*args: object) -> object:
        values = [None if isinstance(arg, Undefined) else arg for arg in args]
        try:
            return function(*values)
        except TemplateError:
            raise
        except (TypeError, ValueError, LookupError, ArithmeticError, AttributeError) as exc:
            raise TemplateError(f"error calling {name}: {exc}") from exc

    return call


@dataclass(slots=True)
class TemplateEngine:
    """Jinja2 environment configured for translated Go plan templates."""

    functions: Mapping[str, Callable[..., object]] = field(default_factory=lambda: FUNCTIONS)
    environment: SandboxedEnvironment = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Create the environment and register the function library."""
        environment = SandboxedEnvironment(
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
            finalize=_finalize,
        )
        environment.globals.update(
            {
                "_go": {
                    name: _template_function(name, function)
                    for name, function in self.functions.items()
                },
                "_truth": _truth,
                "_range": _range,
                "_range_items": _range_items,
            }
        )
        self.environment = environment

    def translate(self, source: str) -> str:
        """Return the Jinja2 source for Go template *source*."""
        try:
            return translate_go_template(source, self.functions)
        except GoTemplateError as exc:
            raise TemplateError(f"Cannot parse plan template: {exc}") from exc

    def render(self, source: str, context: Mapping[str, object]) -> str:
        """Render Go template *source* with *context* as its dot."""
        translated = self.translate(source)
        try:
            template = self.environment.from_string(translated)
            return template.render({ROOT: dict(context)})
        except JinjaTemplateError as exc:
            raise TemplateError(f"Cannot render plan template: {exc}") from exc

    def render_document(self, source: str, context: Mapping[str, object]) -> object:
        """Render *source* and parse the output as a YAML document."""
        rendered = self.render(source, context)
        try:
            return yaml.safe_load(rendered)
        except yaml.YAMLError as exc:
            raise TemplateError(f"Rendered plan template is not valid YAML: {exc}") from exc


__all__ = ["FUNCTIONS", "TemplateEngine", "TemplateError", "go_string"]
