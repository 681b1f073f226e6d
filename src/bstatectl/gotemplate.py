"""Translate Go ``text/template`` sources into Jinja2 templates.

Archived plan templates were written for Go's template engine with the sprig
function library. Rather than reimplementing that engine, each action is
rewritten into the equivalent Jinja2 construct:

* ``{{ .a.b }}`` reads from the current dot, ``_root["a"]["b"]`` at top level.
* ``{{ fn x y }}`` and ``{{ y | fn x }}`` become ``_go["fn"](x, y)``; the piped
  value is always passed as the final argument.
* ``if``/``else if``/``else``/``range``/``with``/``end`` become ``{% %}`` blocks.
* ``$x := pipeline`` becomes ``{% set %}``; comments are dropped.

Translation only needs the set of known function names. The runtime helpers
(``_go``, ``_truth``, ``_range``, ``_range_items``) are registered by
:class:`bstatectl.templates.TemplateEngine`.
"""
from __future__ import annotations

import ast
import json
import re
from collections.abc import Callable, Collection, Iterator
from dataclasses import dataclass

ROOT = "_root"

_KEYWORDS = frozenset(
    {"if", "else", "end", "range", "with", "define", "template", "block", "break", "continue"}
)
_CONSTANTS = {"true": "true", "false": "false", "nil": "none"}
_OCTAL_RE = re.compile(r"[-+]?0[0-7]+")

_TOKEN_RE = re.compile(
    r"""
      (?P<space>\s+)
    | (?P<string>"(?:[^"\\\n]|\\.)*")
    | (?P<raw>`[^`]*`)
    | (?P<char>'(?:[^'\\\n]|\\.)+')
    | (?P<declare>:=)
    | (?P<assign>=)
    | (?P<pipe>\|)
    | (?P<lparen>\()
    | (?P<rparen>\))
    | (?P<comma>,)
    | (?P<variable>\$[A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    | (?P<number>[-+]?[0-9][0-9a-fA-FxXoObB_]*(?:\.[0-9_]+)?(?:[eEpP][-+]?[0-9]+)?)
    | (?P<field>(?:\.[A-Za-z_][A-Za-z0-9_]*)+|\.)
    | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)


class GoTemplateError(ValueError):
    """Raised when a Go template cannot be translated."""


@dataclass(slots=True, frozen=True)
class _Token:
    kind: str
    text: str
    spaced: bool


@dataclass(slots=True, frozen=True)
class _Action:
    body: str
    trim_left: bool
    trim_right: bool
    comment: bool = False


@dataclass(slots=True)
class _Block:
    kind: str
    closing: str
    pushed_dot: bool
    in_else: bool = False


def _split(source: str) -> Iterator[str | _Action]:
    """Yield literal text and actions in source order."""
    pos = 0
    length = len(source)
    while True:
        start = source.find("{{", pos)
        if start < 0:
            if pos < length:
                yield source[pos:]
            return
        if start > pos:
            yield source[pos:start]

        index = start + 2
        trim_left = (
            source.startswith("-", index) and index + 1 < length and source[index + 1].isspace()
        )
        if trim_left:
            index += 1

        comment_start = index
        while comment_start < length and source[comment_start].isspace():
            comment_start += 1
        if source.startswith("/*", comment_start):
            comment_end = source.find("*/", comment_start + 2)
            if comment_end < 0:
                raise GoTemplateError("unclosed comment")
            index = comment_end + 2

        end = _find_action_end(source, index)
        if end < 0:
            raise GoTemplateError(f"unclosed action starting at offset {start}")
        body = source[index:end]
        trim_right = body.endswith("-") and len(body) > 1 and body[-2].isspace()
        if trim_right:
            body = body[:-1]
        is_comment = source.startswith("/*", comment_start)
        if is_comment and body.strip():
            raise GoTemplateError("comment must be the only content of an action")
        yield _Action(body, trim_left, trim_right, comment=is_comment)
        pos = end + 2


def _find_action_end(source: str, index: int) -> int:
    """Return the offset of the ``}}`` closing the action, skipping quoted text."""
    length = len(source)
    while index < length:
        char = source[index]
        if char in "\"'":
            index += 1
            while index < length and source[index] != char:
                index += 2 if source[index] == "\\" else 1
            index += 1
            continue
        if char == "`":
            closing = source.find("`", index + 1)
            if closing < 0:
                return -1
            index = closing + 1
            continue
        if source.startswith("}}", index):
            return index
        index += 1
    return -1


def _tokenize(body: str) -> list[_Token]:
    tokens: list[_Token] = []
    spaced = False
    pos = 0
    while pos < len(body):
        match = _TOKEN_RE.match(body, pos)
        if match is None:
            raise GoTemplateError(f"unexpected {body[pos]!r} in action {{{{{body}}}}}")
        kind = match.lastgroup or ""
        if kind == "space":
            spaced = True
        else:
            tokens.append(_Token(kind, match.group(), spaced))
            spaced = False
        pos = match.end()
    return tokens


def _string_literal(token: _Token) -> str:
    if token.kind == "raw":
        value = token.text[1:-1]
    else:
        try:
            value = ast.literal_eval(token.text)
        except (SyntaxError, ValueError) as exc:
            raise GoTemplateError(f"bad string literal {token.text}") from exc
    return json.dumps(value)


def _number_literal(text: str) -> str:
    clean = text.replace("_", "")
    if _OCTAL_RE.fullmatch(clean):
        return repr(int(clean, 8))
    try:
        return repr(int(clean, 0))
    except ValueError:
        pass
    try:
        return repr(float(clean))
    except ValueError as exc:
        raise GoTemplateError(f"bad number syntax: {text}") from exc


def _subscripts(path: str) -> str:
    return "".join(f"[{json.dumps(part)}]" for part in path.split(".") if part)


def _variable_name(name: str) -> str:
    return f"v_{name}"


class GoTemplateTranslator:
    """Rewrite one Go template source into Jinja2 syntax."""

    def __init__(self, functions: Collection[str]) -> None:
        self._functions = functions
        self._dots = [ROOT]
        self._blocks: list[_Block] = []
        self._counter = 0

    def translate(self, source: str) -> str:
        parts = []
        for piece in _split(source):
            if isinstance(piece, _Action):
                parts.append(self._action(piece))
            elif "{%" in piece or "{#" in piece:
                parts.append("{% raw %}" + piece + "{% endraw %}")
            else:
                parts.append(piece)
        if self._blocks:
            raise GoTemplateError(f"unexpected EOF: unclosed {self._blocks[-1].kind}")
        return "".join(parts)

    # ------------------------------------------------------------------
    def _action(self, action: _Action) -> str:
        left = "-" if action.trim_left else ""
        right = "-" if action.trim_right else ""
        if action.comment:
            return "{#" + left + " " + right + "#}"

        tokens = _tokenize(action.body)
        if not tokens:
            raise GoTemplateError("missing value for command")
        head = tokens[0]

        def tag(statement: str) -> str:
            return f"{{%{left} {statement} {right}%}}"

        if head.kind == "ident" and head.text in _KEYWORDS:
            return self._keyword(head.text, tokens[1:], tag)

        if (
            head.kind == "variable"
            and len(tokens) > 2
            and tokens[1].kind in ("declare", "assign")
        ):
            name = self._declared_name(head)
            return tag(f"set {name} = {self._pipeline(tokens[2:])}")

        return f"{{{{{left} {self._pipeline(tokens)} {right}}}}}"

    def _keyword(self, keyword: str, rest: list[_Token], tag: Callable[[str], str]) -> str:
        if keyword == "if":
            self._blocks.append(_Block("if", "endif", pushed_dot=False))
            return tag(f"if _truth({self._pipeline(rest)})")

        if keyword == "else":
            block = self._current_block("else")
            if block.in_else:
                raise GoTemplateError(f"expected end; found else in {block.kind}")
            if rest:
                if block.kind != "if" or rest[0].text != "if" or rest[0].kind != "ident":
                    raise GoTemplateError(
                        f"unsupported action 'else {rest[0].text}' in {block.kind}"
                    )
                return tag(f"elif _truth({self._pipeline(rest[1:])})")
            block.in_else = True
            if block.pushed_dot:
                self._dots.pop()
                block.pushed_dot = False
            return tag("else")

        if keyword == "end":
            if rest:
                raise GoTemplateError("unexpected arguments to end")
            block = self._current_block("end")
            self._blocks.pop()
            if block.pushed_dot:
                self._dots.pop()
            if block.kind == "with":
                return tag("endif") + tag("endwith")
            return tag(block.closing)

        if keyword == "range":
            return self._range(rest, tag)

        if keyword == "with":
            return self._with(rest, tag)

        raise GoTemplateError(f"unsupported template action {keyword!r}")

    def _range(self, rest: list[_Token], tag: Callable[[str], str]) -> str:
        if len(rest) > 3 and rest[0].kind == "variable" and rest[1].kind == "comma":
            if rest[2].kind != "variable" or rest[3].kind != "declare":
                raise GoTemplateError("range can only initialize variables")
            key = self._declared_name(rest[0])
            value = self._declared_name(rest[2])
            statement = f"for {key}, {value} in _range_items({self._pipeline(rest[4:])})"
        elif len(rest) > 1 and rest[0].kind == "variable" and rest[1].kind == "declare":
            value = self._declared_name(rest[0])
            statement = f"for {value} in _range({self._pipeline(rest[2:])})"
        else:
            value = self._new_dot()
            statement = f"for {value} in _range({self._pipeline(rest)})"
        self._blocks.append(_Block("range", "endfor", pushed_dot=True))
        self._dots.append(value)
        return tag(statement)

    def _with(self, rest: list[_Token], tag: Callable[[str], str]) -> str:
        if len(rest) > 1 and rest[0].kind == "variable" and rest[1].kind == "declare":
            name = self._declared_name(rest[0])
            expression = self._pipeline(rest[2:])
        else:
            name = self._new_dot()
            expression = self._pipeline(rest)
        self._blocks.append(_Block("with", "endwith", pushed_dot=True))
        self._dots.append(name)
        return tag(f"with {name} = {expression}") + tag(f"if _truth({name})")

    def _current_block(self, keyword: str) -> _Block:
        if not self._blocks:
            raise GoTemplateError(f"unexpected {{{{{keyword}}}}}")
        return self._blocks[-1]

    def _new_dot(self) -> str:
        self._counter += 1
        return f"_dot{self._counter}"

    def _declared_name(self, token: _Token) -> str:
        name = token.text[1:]
        if not name or "." in name:
            raise GoTemplateError(f"cannot declare variable {token.text}")
        return _variable_name(name)

    # ------------------------------------------------------------------
    def _pipeline(self, tokens: list[_Token]) -> str:
        if not tokens:
            raise GoTemplateError("missing value for command")
        commands = self._commands(tokens)
        expression = self._command(commands[0], None)
        for command in commands[1:]:
            expression = self._command(command, expression)
        return expression

    def _commands(self, tokens: list[_Token]) -> list[list[_Token]]:
        commands: list[list[_Token]] = [[]]
        depth = 0
        for token in tokens:
            if token.kind == "lparen":
                depth += 1
            elif token.kind == "rparen":
                depth -= 1
                if depth < 0:
                    raise GoTemplateError("unexpected right paren")
            if token.kind == "pipe" and depth == 0:
                commands.append([])
            else:
                commands[-1].append(token)
        if depth:
            raise GoTemplateError("unclosed left paren")
        if any(not command for command in commands):
            raise GoTemplateError("missing command in pipeline")
        return commands

    def _command(self, tokens: list[_Token], piped: str | None) -> str:
        operands = self._operands(tokens)
        head_kind, head = operands[0]
        if head_kind == "function":
            args = [self._argument(kind, value) for kind, value in operands[1:]]
            if piped is not None:
                args.append(piped)
            return self._call(head, args)
        if len(operands) > 1 or piped is not None:
            raise GoTemplateError(f"can't give argument to non-function {tokens[0].text}")
        return head

    def _argument(self, kind: str, value: str) -> str:
        return self._call(value, []) if kind == "function" else value

    def _call(self, name: str, args: list[str]) -> str:
        return f"_go[{json.dumps(name)}]({', '.join(args)})"

    def _operands(self, tokens: list[_Token]) -> list[tuple[str, str]]:
        operands: list[tuple[str, str]] = []
        index = 0
        while index < len(tokens):
            token = tokens[index]
            index += 1
            if token.kind == "ident":
                if token.text in _CONSTANTS:
                    operands.append(("value", _CONSTANTS[token.text]))
                    continue
                if token.text not in self._functions:
                    raise GoTemplateError(f'function "{token.text}" not defined')
                operands.append(("function", token.text))
            elif token.kind in ("string", "raw"):
                operands.append(("value", _string_literal(token)))
            elif token.kind == "char":
                operands.append(("value", repr(ord(ast.literal_eval(token.text)))))
            elif token.kind == "number":
                operands.append(("value", _number_literal(token.text)))
            elif token.kind == "field":
                operands.append(("value", self._dots[-1] + _subscripts(token.text)))
            elif token.kind == "variable":
                name, _, path = token.text[1:].partition(".")
                base = _variable_name(name) if name else ROOT
                operands.append(("value", base + _subscripts(path)))
            elif token.kind == "lparen":
                depth = 1
                start = index
                while depth:
                    if tokens[index].kind == "lparen":
                        depth += 1
                    elif tokens[index].kind == "rparen":
                        depth -= 1
                    index += 1
                expression = f"({self._pipeline(tokens[start:index - 1])})"
                while (
                    index < len(tokens)
                    and tokens[index].kind == "field"
                    and not tokens[index].spaced
                ):
                    expression += _subscripts(tokens[index].text)
                    index += 1
                operands.append(("value", expression))
            else:
                raise GoTemplateError(f"unexpected {token.text!r} in operand")
        return operands


def translate_go_template(source: str, functions: Collection[str]) -> str:
    """Return the Jinja2 equivalent of Go template *source*.

    *functions* names the callables available to the template; calling any
    other function is rejected, as Go does at parse time.
    """
    return GoTemplateTranslator(functions).translate(source)


__all__ = ["GoTemplateError", "GoTemplateTranslator", "ROOT", "translate_go_template"]
