# elquest/sexp.py
"""
Reader and printer for the Lisp data notation used by recipes, package
descriptors (`define-package` forms, `Package-Requires` headers) and the
archive index.

Mapping:
  (a b c)    <-> list
  nil, ()    <-> [] (None and False also print as nil)
  t          <-> Symbol("t") (True prints as t)
  [a b]      <-> Vector
  (a . b)    <-> Cons("a", "b") when the tail is not a list
  "text"     <-> str
  42 / 1.5   <-> int / float
  foo, :key  <-> Symbol
  'x         ->  [Symbol("quote"), x]

The printer never elides nested structure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List


class SexpError(ValueError):
    def __init__(self, message: str, offset: int = -1) -> None:
        if offset >= 0:
            message = f"{message} (at offset {offset})"
        super().__init__(message)
        self.offset = offset


class Symbol(str):
    __slots__ = ()

    def __repr__(self) -> str:
        return f"Symbol({str.__repr__(self)})"

    @property
    def is_keyword(self) -> bool:
        return self.startswith(":") and len(self) > 1


class Vector(list):
    def __repr__(self) -> str:
        return f"Vector({list.__repr__(self)})"


@dataclass(frozen=True)
class Cons:
    car: Any
    cdr: Any


QUOTE = Symbol("quote")
FUNCTION = Symbol("function")
T = Symbol("t")

_WHITESPACE = " \t\r\n\f"
_DELIMITERS = set(_WHITESPACE) | set("()[]\";'")
_INT_RE = re.compile(r"^[+-]?\d+\.?$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d+|\.\d+|\d+(\.\d*)?e[+-]?\d+)$", re.IGNORECASE)
_STRING_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "f": "\f", "e": "\x1b", "a": "\x07", "s": " "}

# ----------------------------
# Reader
# ----------------------------
class _Reader:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def _skip(self) -> None:
        text = self.text
        while self.pos < len(text):
            c = text[self.pos]
            if c in _WHITESPACE:
                self.pos += 1
            elif c == ";":
                nl = text.find("\n", self.pos)
                self.pos = len(text) if nl < 0 else nl + 1
            else:
                break

    def at_end(self) -> bool:
        self._skip()
        return self.pos >= len(self.text)

    def read(self) -> Any:
        self._skip()
        if self.pos >= len(self.text):
            raise SexpError("unexpected end of input", self.pos)
        c = self.text[self.pos]
        if c == "(":
            return self._read_list()
        if c == "[":
            return self._read_vector()
        if c in ")]":
            raise SexpError(f"unexpected '{c}'", self.pos)
        if c == '"':
            return self._read_string()
        if c == "'":
            self.pos += 1
            return [QUOTE, self.read()]
        if c == "#" and self.text.startswith("#'", self.pos):
            self.pos += 2
            return [FUNCTION, self.read()]
        return self._read_atom()

    def _is_dot(self) -> bool:
        nxt = self.pos + 1
        return self.text[self.pos] == "." and (nxt >= len(self.text) or self.text[nxt] in _DELIMITERS)

    def _read_list(self) -> Any:
        start = self.pos
        self.pos += 1
        items: List[Any] = []
        while True:
            self._skip()
            if self.pos >= len(self.text):
                raise SexpError("unterminated list", start)
            c = self.text[self.pos]
            if c == ")":
                self.pos += 1
                return items
            if self._is_dot():
                if not items:
                    raise SexpError("dotted pair without a car", self.pos)
                self.pos += 1
                tail = self.read()
                self._skip()
                if self.pos >= len(self.text) or self.text[self.pos] != ")":
                    raise SexpError("expected ')' after dotted tail", self.pos)
                self.pos += 1
                return _dotted(items, tail)
            items.append(self.read())

    def _read_vector(self) -> Vector:
        start = self.pos
        self.pos += 1
        items = Vector()
        while True:
            self._skip()
            if self.pos >= len(self.text):
                raise SexpError("unterminated vector", start)
            if self.text[self.pos] == "]":
                self.pos += 1
                return items
            items.append(self.read())

    def _read_string(self) -> str:
        start = self.pos
        self.pos += 1
        out: List[str] = []
        text = self.text
        while self.pos < len(text):
            c = text[self.pos]
            if c == '"':
                self.pos += 1
                return "".join(out)
            if c == "\\":
                self.pos += 1
                if self.pos >= len(text):
                    break
                esc = text[self.pos]
                if esc != "\n":
                    out.append(_STRING_ESCAPES.get(esc, esc))
            else:
                out.append(c)
            self.pos += 1
        raise SexpError("unterminated string", start)

    def _read_atom(self) -> Any:
        start = self.pos
        out: List[str] = []
        text = self.text
        while self.pos < len(text) and text[self.pos] not in _DELIMITERS:
            c = text[self.pos]
            if c == "\\" and self.pos + 1 < len(text):
                self.pos += 1
                c = text[self.pos]
            out.append(c)
            self.pos += 1
        token = "".join(out)
        if not token:
            raise SexpError(f"unexpected character {text[start]!r}", start)
        raw = text[start:self.pos]
        if raw == token:
            if _INT_RE.match(token):
                return int(token.rstrip("."))
            if _FLOAT_RE.match(token):
                return float(token)
            if token == "nil":
                return []
        return Symbol(token)


def _dotted(items: List[Any], tail: Any) -> Any:
    if isinstance(tail, list) and not isinstance(tail, Vector):
        return items + tail
    result = tail
    for item in reversed(items):
        result = Cons(item, result)
    return result


def read(text: str) -> Any:
    """Read exactly one form; trailing non-comment text is an error."""
    reader = _Reader(text)
    value = reader.read()
    if not reader.at_end():
        raise SexpError("trailing data after form", reader.pos)
    return value


def read_first(text: str) -> Any:
    """Read the first form and ignore whatever follows it."""
    return _Reader(text).read()


def read_all(text: str) -> List[Any]:
    reader = _Reader(text)
    forms = []
    while not reader.at_end():
        forms.append(reader.read())
    return forms

# ----------------------------
# Printer
# ----------------------------
_SYMBOL_SPECIALS = set(_WHITESPACE) | set("()[]\";'#`,\\?")


def _print_symbol(sym: str) -> str:
    if not sym:
        return "##"
    out = "".join("\\" + c if c in _SYMBOL_SPECIALS else c for c in sym)
    if _INT_RE.match(sym) or _FLOAT_RE.match(sym):
        out = "\\" + out
    return out


def _print_string(s: str) -> str:
    return '"' + s.replace("\\", "\\\\").replace('"', '\\"') + '"'


def dumps(value: Any) -> str:
    if value is None or value is False:
        return "nil"
    if value is True:
        return "t"
    if isinstance(value, Symbol):
        return _print_symbol(value)
    if isinstance(value, str):
        return _print_string(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, Vector):
        return "[" + " ".join(dumps(v) for v in value) + "]"
    if isinstance(value, Cons):
        parts = []
        cur: Any = value
        while isinstance(cur, Cons):
            parts.append(dumps(cur.car))
            cur = cur.cdr
        if isinstance(cur, (list, tuple)) and not isinstance(cur, Vector):
            parts.extend(dumps(v) for v in cur)
            return "(" + " ".join(parts) + ")"
        return "(" + " ".join(parts) + " . " + dumps(cur) + ")"
    if isinstance(value, (list, tuple)):
        if not value:
            return "nil"
        return "(" + " ".join(dumps(v) for v in value) + ")"
    raise TypeError(f"cannot print {type(value).__name__} as Lisp data")

# ----------------------------
# Helpers
# ----------------------------
def unquote(value: Any) -> Any:
    """Strip a leading quote or function quote: '(a b) -> (a b)."""
    if isinstance(value, list) and len(value) == 2 and value[0] in (QUOTE, FUNCTION) and isinstance(value[0], Symbol):
        return value[1]
    return value


def plist_to_dict(items: Iterable[Any]) -> Dict[Symbol, Any]:
    items = list(items)
    if len(items) % 2:
        raise SexpError("property list has an odd number of elements")
    out: Dict[Symbol, Any] = {}
    for key, val in zip(items[::2], items[1::2]):
        if not isinstance(key, Symbol) or not key.is_keyword:
            raise SexpError(f"property list key {key!r} is not a keyword")
        out[key] = val
    return out


def plist_get(plist: Iterable[Any], key: str, default: Any = None) -> Any:
    return plist_to_dict(plist).get(Symbol(key), default)


def alist_items(alist: Any) -> List[tuple]:
    """((k . v) (k2 v2 v3)) -> [(k, v), (k2, [v2, v3])]"""
    out = []
    for item in alist or []:
        if isinstance(item, Cons):
            out.append((item.car, item.cdr))
        elif isinstance(item, list) and item:
            out.append((item[0], item[1:]))
        else:
            raise SexpError(f"malformed association list entry {item!r}")
    return out
