"""Sandboxed evaluator for ``@js:`` / ``{{...}}`` / ``<js>`` rule snippets.

Snippets are lightly translated from JavaScript spelling (``||``, ``&&``,
``===``, ``!``, ``null``/``true``/``false``, ``var``/``let``/``const``) and
parsed with :mod:`ast`. Only a whitelisted subset of nodes is evaluated:
literals, names from the bindings, arithmetic, comparisons, boolean and
conditional expressions, subscripts, simple assignments and calls to a fixed
table of builtins and string/list/dict methods. Nothing reaches the host.
"""
from __future__ import annotations

import ast
import base64
import hashlib
import re
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import quote, unquote

import orjson
import structlog

LOGGER = structlog.get_logger(__name__)

MAX_TEXT = 1_000_000

_WORD_MAP = {"null": "None", "undefined": "None", "true": "True", "false": "False"}
_DECLARATIONS = {"var", "let", "const"}
_OPERATORS = (("===", "=="), ("!==", "!="), ("&&", " and "), ("||", " or "))
_LEADING_INT = re.compile(r"^\s*([-+]?\d+)")
_LEADING_FLOAT = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")


class ScriptError(Exception):
    """A snippet used syntax or names outside the sandbox."""


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return orjson.dumps(value, option=orjson.OPT_NON_STR_KEYS, default=str).decode()
    return str(value)


def coerce_text(value: Any) -> Optional[str]:
    """Coerce a snippet result to the string handed back to the rule engine."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        parts = [to_text(item) for item in value if item is not None]
        return "\n".join(parts) or None
    return to_text(value) or None


def _string_end(code: str, start: int) -> int:
    quote_char = code[start]
    index = start + 1
    while index < len(code):
        if code[index] == "\\":
            index += 2
            continue
        if code[index] == quote_char:
            return index + 1
        index += 1
    return len(code)


def translate(code: str) -> str:
    """Rewrite JavaScript operators and keywords outside string literals."""
    out: List[str] = []
    index = 0
    size = len(code)
    while index < size:
        char = code[index]
        if char in "\"'`":
            end = _string_end(code, index)
            literal = code[index:end]
            if char == "`":
                literal = repr(literal[1:-1])
            out.append(literal)
            index = end
            continue
        if char.isalpha() or char == "_":
            end = index
            while end < size and (code[end].isalnum() or code[end] == "_"):
                end += 1
            word = code[index:end]
            if word not in _DECLARATIONS:
                out.append(_WORD_MAP.get(word, word))
            index = end
            continue
        for js, py in _OPERATORS:
            if code.startswith(js, index):
                out.append(py)
                index += len(js)
                break
        else:
            if char == "!" and not code.startswith("!=", index):
                out.append(" not ")
            else:
                out.append(char)
            index += 1
    return "\n".join(line.strip() for line in "".join(out).splitlines())


def _substring(text: str, start: Any = 0, end: Any = None) -> str:
    size = len(text)
    start = max(0, min(int(start), size))
    end = size if end is None else max(0, min(int(end), size))
    if start > end:
        start, end = end, start
    return text[start:end]


def _substr(text: str, start: Any = 0, length: Any = None) -> str:
    start = int(start)
    if start < 0:
        start = max(0, len(text) + start)
    if length is None:
        return text[start:]
    return text[start : start + max(0, int(length))]


def _slice(value: Any, start: Any = 0, end: Any = None) -> Any:
    return value[int(start) : None if end is None else int(end)]


def _split(text: str, separator: Any = None, limit: Any = None) -> List[str]:
    if separator == "":
        parts = list(text)
    else:
        parts = text.split(separator)
    return parts if limit is None else parts[: int(limit)]


def _char_at(text: str, position: Any = 0) -> str:
    position = int(position)
    return text[position] if 0 <= position < len(text) else ""


def _repeat(text: str, count: Any) -> str:
    count = int(count)
    if count < 0 or len(text) * count > MAX_TEXT:
        raise ScriptError("repeat count out of range")
    return text * count


def _replace(text: str, old: Any, new: Any = "") -> str:
    return text.replace(to_text(old), to_text(new))


_STRING_METHODS: Dict[str, Callable[..., Any]] = {
    "strip": lambda text, chars=None: text.strip(chars),
    "lstrip": lambda text, chars=None: text.lstrip(chars),
    "rstrip": lambda text, chars=None: text.rstrip(chars),
    "trim": str.strip,
    "trimStart": str.lstrip,
    "trimEnd": str.rstrip,
    "lower": str.lower,
    "upper": str.upper,
    "toLowerCase": str.lower,
    "toUpperCase": str.upper,
    "title": str.title,
    "capitalize": str.capitalize,
    "replace": _replace,
    "replaceAll": _replace,
    "split": _split,
    "splitlines": str.splitlines,
    "startswith": lambda text, prefix: text.startswith(to_text(prefix)),
    "startsWith": lambda text, prefix: text.startswith(to_text(prefix)),
    "endswith": lambda text, suffix: text.endswith(to_text(suffix)),
    "endsWith": lambda text, suffix: text.endswith(to_text(suffix)),
    "find": lambda text, sub: text.find(to_text(sub)),
    "indexOf": lambda text, sub: text.find(to_text(sub)),
    "rfind": lambda text, sub: text.rfind(to_text(sub)),
    "lastIndexOf": lambda text, sub: text.rfind(to_text(sub)),
    "includes": lambda text, sub: to_text(sub) in text,
    "count": lambda text, sub: text.count(to_text(sub)),
    "charAt": _char_at,
    "substring": _substring,
    "substr": _substr,
    "slice": _slice,
    "concat": lambda text, *parts: text + "".join(to_text(part) for part in parts),
    "join": lambda text, items: text.join(to_text(item) for item in items),
    "repeat": _repeat,
    "zfill": lambda text, width: text.zfill(int(width)),
    "isdigit": str.isdigit,
    "toString": lambda text: text,
}

_LIST_METHODS: Dict[str, Callable[..., Any]] = {
    "join": lambda items, separator=",": to_text(separator).join(to_text(item) for item in items),
    "indexOf": lambda items, value: items.index(value) if value in items else -1,
    "includes": lambda items, value: value in items,
    "slice": _slice,
    "concat": lambda items, *others: list(items) + [item for other in others for item in other],
    "reverse": lambda items: list(reversed(items)),
    "count": lambda items, value: list(items).count(value),
    "toString": lambda items: ",".join(to_text(item) for item in items),
}

_DICT_METHODS: Dict[str, Callable[..., Any]] = {
    "get": lambda mapping, key, default=None: mapping.get(key, default),
    "keys": lambda mapping: list(mapping.keys()),
    "values": lambda mapping: list(mapping.values()),
}


def _parse_int(value: Any, base: Any = 10) -> Optional[int]:
    match = _LEADING_INT.match(to_text(value))
    return int(match.group(1), int(base)) if match else None


def _parse_float(value: Any) -> Optional[float]:
    match = _LEADING_FLOAT.match(to_text(value))
    return float(match.group(1)) if match else None


def _number(value: Any) -> float:
    text = to_text(value).strip()
    return float(text) if text else 0.0


_BUILTINS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": to_text,
    "String": to_text,
    "int": int,
    "float": float,
    "Number": _number,
    "parseInt": _parse_int,
    "parseFloat": _parse_float,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "bool": bool,
    "list": list,
    "sorted": sorted,
    "encodeURIComponent": lambda value: quote(to_text(value), safe="-_.!~*'()"),
    "encodeURI": lambda value: quote(to_text(value), safe=";,/?:@&=+$-_.!~*'()#"),
    "decodeURIComponent": lambda value: unquote(to_text(value)),
}

# Legado's ``java.*`` helper object, reduced to pure string functions.
_JAVA: Dict[str, Callable[..., Any]] = {
    "encodeURI": lambda value, charset="UTF-8": quote(to_text(value), safe="", encoding=charset),
    "base64Encode": lambda value: base64.b64encode(to_text(value).encode()).decode(),
    "base64Decode": lambda value: base64.b64decode(to_text(value)).decode("utf-8", "replace"),
    "md5Encode": lambda value: hashlib.md5(to_text(value).encode()).hexdigest(),
    "md5Encode16": lambda value: hashlib.md5(to_text(value).encode()).hexdigest()[8:24],
}

_BINARY: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Sub: lambda left, right: left - right,
    ast.Div: lambda left, right: left / right,
    ast.FloorDiv: lambda left, right: left // right,
    ast.Mod: lambda left, right: left % right,
}

_COMPARE: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: lambda left, right: left == right,
    ast.NotEq: lambda left, right: left != right,
    ast.Lt: lambda left, right: left < right,
    ast.LtE: lambda left, right: left <= right,
    ast.Gt: lambda left, right: left > right,
    ast.GtE: lambda left, right: left >= right,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: lambda left, right: left is right,
    ast.IsNot: lambda left, right: left is not right,
}


class _Evaluator:
    def __init__(self, bindings: Mapping[str, Any]) -> None:
        self.names: Dict[str, Any] = dict(bindings)

    def run(self, tree: ast.Module) -> Any:
        result = None
        for statement in tree.body:
            if isinstance(statement, ast.Assign):
                if len(statement.targets) != 1 or not isinstance(statement.targets[0], ast.Name):
                    raise ScriptError("only simple assignments are allowed")
                self.names[self._name(statement.targets[0].id)] = self.eval(statement.value)
            elif isinstance(statement, ast.Expr):
                result = self.eval(statement.value)
            else:
                raise ScriptError(f"statement not allowed: {type(statement).__name__}")
        return result

    def eval(self, node: ast.AST) -> Any:
        handler = getattr(self, "_eval_" + type(node).__name__, None)
        if handler is None:
            raise ScriptError(f"expression not allowed: {type(node).__name__}")
        return handler(node)

    @staticmethod
    def _name(name: str) -> str:
        if name.startswith("_"):
            raise ScriptError(f"name not allowed: {name}")
        return name

    def _eval_Constant(self, node: ast.Constant) -> Any:
        if isinstance(node.value, bytes):
            raise ScriptError("bytes literals are not allowed")
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        name = self._name(node.id)
        if name in self.names:
            return self.names[name]
        if name in _BUILTINS:
            return _BUILTINS[name]
        raise ScriptError(f"unknown name: {name}")

    def _eval_List(self, node: ast.List) -> List[Any]:
        return [self.eval(item) for item in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> List[Any]:
        return [self.eval(item) for item in node.elts]

    def _eval_Dict(self, node: ast.Dict) -> Dict[Any, Any]:
        if any(key is None for key in node.keys):
            raise ScriptError("dict unpacking is not allowed")
        return {self.eval(key): self.eval(value) for key, value in zip(node.keys, node.values)}

    def _eval_JoinedStr(self, node: ast.JoinedStr) -> str:
        return "".join(to_text(self.eval(part)) for part in node.values)

    def _eval_FormattedValue(self, node: ast.FormattedValue) -> str:
        return to_text(self.eval(node.value))

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        left = self.eval(node.left)
        right = self.eval(node.right)
        if isinstance(node.op, ast.Add):
            if isinstance(left, str) or isinstance(right, str):
                result = to_text(left) + to_text(right)
                if len(result) > MAX_TEXT:
                    raise ScriptError("string too long")
                return result
            return left + right
        if isinstance(node.op, ast.Mult):
            for sequence, count in ((left, right), (right, left)):
                if isinstance(sequence, (str, list)) and isinstance(count, int):
                    if len(sequence) * count > MAX_TEXT:
                        raise ScriptError("sequence too long")
            return left * right
        operator = _BINARY.get(type(node.op))
        if operator is None:
            raise ScriptError(f"operator not allowed: {type(node.op).__name__}")
        return operator(left, right)

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.eval(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ScriptError(f"operator not allowed: {type(node.op).__name__}")

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        value = None
        for item in node.values:
            value = self.eval(item)
            if isinstance(node.op, ast.Or) and value:
                return value
            if isinstance(node.op, ast.And) and not value:
                return value
        return value

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.eval(comparator)
            if not _COMPARE[type(op)](left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        value = self.eval(node.value)
        if isinstance(node.slice, ast.Slice):
            bounds = [None if part is None else self.eval(part) for part in (node.slice.lower, node.slice.upper, node.slice.step)]
            return value[slice(*bounds)]
        key = self.eval(node.slice)
        if isinstance(value, dict):
            return value.get(key)
        if isinstance(value, (str, list)):
            try:
                return value[int(key)]
            except IndexError:
                return None
        raise ScriptError(f"cannot index {type(value).__name__}")

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        value = self.eval(node.value)
        if node.attr == "length" and isinstance(value, (str, list)):
            return len(value)
        if isinstance(value, dict):
            return value.get(node.attr)
        raise ScriptError(f"attribute not allowed: {node.attr}")

    def _eval_Call(self, node: ast.Call) -> Any:
        if node.keywords or any(isinstance(arg, ast.Starred) for arg in node.args):
            raise ScriptError("keyword and starred arguments are not allowed")
        function = self._callable(node.func)
        return function(*[self.eval(arg) for arg in node.args])

    def _callable(self, node: ast.AST) -> Callable[..., Any]:
        if isinstance(node, ast.Name):
            name = self._name(node.id)
            if name in _BUILTINS:
                return _BUILTINS[name]
            raise ScriptError(f"not callable: {name}")
        if not isinstance(node, ast.Attribute):
            raise ScriptError("only named functions can be called")
        if isinstance(node.value, ast.Name) and node.value.id == "java" and "java" not in self.names:
            helper = _JAVA.get(node.attr)
            if helper is None:
                raise ScriptError(f"unknown helper: java.{node.attr}")
            return helper
        target = self.eval(node.value)
        if isinstance(target, str):
            table = _STRING_METHODS
        elif isinstance(target, list):
            table = _LIST_METHODS
        elif isinstance(target, dict):
            table = _DICT_METHODS
        else:
            raise ScriptError(f"no methods on {type(target).__name__}")
        method = table.get(node.attr)
        if method is None:
            raise ScriptError(f"method not allowed: {node.attr}")
        return lambda *args: method(target, *args)


_FAILURES = (
    ScriptError,
    TypeError,
    ValueError,
    LookupError,
    ZeroDivisionError,
    OverflowError,
    RecursionError,
)


def run_script(code: str, bindings: Mapping[str, Any]) -> Any:
    """Evaluate ``code`` and return the raw value of its last expression.

    Raises :class:`ScriptError` (or the evaluation error) on failure.
    """
    source = translate(code)
    try:
        tree = ast.parse(source, mode="exec")
    except SyntaxError as exc:
        raise ScriptError(f"syntax error: {exc.msg}") from exc
    return _Evaluator(bindings).run(tree)


def evaluate_script(code: str, bindings: Mapping[str, Any]) -> Any:
    """Fail-open wrapper around :func:`run_script`; errors yield ``None``."""
    try:
        return run_script(code, bindings)
    except _FAILURES as exc:
        LOGGER.debug("script_failed", code=code[:120], error=str(exc))
        return None
