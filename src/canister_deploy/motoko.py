"""
Mechanical Motoko source rewrites used by the recovery tiers.

Everything here is purely syntactic: regex scans plus a small balanced
argument splitter. Nothing calls the compiler.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# Base library modules that generated canisters commonly reference as `Name.member`.
KNOWN_NAMESPACES: dict[str, str] = {
    name: f"mo:base/{name}"
    for name in (
        "Array",
        "AssocList",
        "Blob",
        "Bool",
        "Buffer",
        "Char",
        "Debug",
        "Error",
        "Float",
        "Hash",
        "HashMap",
        "Int",
        "Int8",
        "Int16",
        "Int32",
        "Int64",
        "Iter",
        "List",
        "Nat",
        "Nat8",
        "Nat16",
        "Nat32",
        "Nat64",
        "Option",
        "Order",
        "Principal",
        "Result",
        "Text",
        "Time",
        "Trie",
        "TrieMap",
    )
}

_IMPORT_RE = re.compile(r'^[ \t]*import[ \t]+([A-Za-z_][A-Za-z0-9_]*)[ \t]+"([^"]*)"[ \t]*;?[ \t]*\r?\n?', re.MULTILINE)
_NAMESPACE_USE_RE = re.compile(r"(?<![A-Za-z0-9_.])([A-Z][A-Za-z0-9_]*)\s*\.\s*[A-Za-z_]")
_CALL_RE = re.compile(r"(?<![A-Za-z0-9_.])([A-Z][A-Za-z0-9_]*\.[a-z][A-Za-z0-9_]*)\s*\(")
_COMMENT_OR_STRING_RE = re.compile(
    r"""//[^\n]*|/\*.*?\*/|"(?:\\.|[^"\\])*"|'(?:\\u\{[0-9A-Fa-f]+\}|\\.|[^'\\\n])'""",
    re.DOTALL,
)
_PLACEHOLDER_RE = re.compile(r"\$(\d)")

MINIMAL_FALLBACK_ARTIFACT = """actor {
  public func call(input : Text) : async Text {
    input
  };
};
"""


def _code_only(source: str) -> str:
    """Blank out comments and text/char literals, keeping every offset in place."""
    return _COMMENT_OR_STRING_RE.sub(lambda m: " " * len(m.group(0)), source)


def declared_imports(source: str) -> dict[str, str]:
    """Import alias -> import path."""
    return {m.group(1): m.group(2) for m in _IMPORT_RE.finditer(_strip_comments(source))}


def _strip_comments(source: str) -> str:
    return re.sub(r"//[^\n]*|/\*.*?\*/", "", source, flags=re.DOTALL)


def missing_imports(source: str) -> list[str]:
    """Known namespaces used as `Name.member` without a matching import, sorted."""
    declared = declared_imports(source)
    used = {m.group(1) for m in _NAMESPACE_USE_RE.finditer(_code_only(source))}
    return sorted(name for name in used if name in KNOWN_NAMESPACES and name not in declared)


def add_missing_imports(source: str) -> str:
    """Prepend import declarations for every undeclared known namespace. Unchanged if none are missing."""
    missing = missing_imports(source)
    if not missing:
        return source
    header = "".join(f'import {name} "{KNOWN_NAMESPACES[name]}";\n' for name in missing)
    return header + source


def strip_base_imports(source: str) -> str:
    """Remove every `mo:base` import declaration."""
    return _IMPORT_RE.sub(lambda m: "" if m.group(2).startswith("mo:base") else m.group(0), source)


@dataclass(frozen=True)
class InlineRule:
    arity: int
    template: str  # $0, $1 ... stand for the call arguments


def _binary(op: str) -> InlineRule:
    return InlineRule(2, f"(($0) {op} ($1))")


_TO_TEXT = InlineRule(1, "debug_show($0)")

INLINE_RULES: dict[str, InlineRule] = {
    "Debug.print": InlineRule(1, "ignore ($0)"),
    "Text.concat": _binary("#"),
    "Text.size": InlineRule(1, "($0).size()"),
    "Text.equal": _binary("=="),
    "Array.size": InlineRule(1, "($0).size()"),
    "Option.get": InlineRule(2, "(switch ($0) { case (?v) v; case null $1 })"),
    "Option.isSome": InlineRule(1, "(switch ($0) { case null false; case _ true })"),
    "Option.isNull": InlineRule(1, "(switch ($0) { case null true; case _ false })"),
    "Bool.toText": _TO_TEXT,
    "Principal.toText": _TO_TEXT,
    "Float.toText": _TO_TEXT,
}

for _ns in ("Nat", "Int", "Nat8", "Nat16", "Nat32", "Nat64", "Int8", "Int16", "Int32", "Int64"):
    INLINE_RULES[f"{_ns}.toText"] = _TO_TEXT
    INLINE_RULES[f"{_ns}.add"] = _binary("+")
    INLINE_RULES[f"{_ns}.sub"] = _binary("-")
    INLINE_RULES[f"{_ns}.mul"] = _binary("*")
    INLINE_RULES[f"{_ns}.div"] = _binary("/")
    INLINE_RULES[f"{_ns}.rem"] = _binary("%")
    INLINE_RULES[f"{_ns}.equal"] = _binary("==")
    INLINE_RULES[f"{_ns}.notEqual"] = _binary("!=")
    INLINE_RULES[f"{_ns}.less"] = _binary("<")
    INLINE_RULES[f"{_ns}.lessOrEqual"] = _binary("<=")
    INLINE_RULES[f"{_ns}.greater"] = _binary(">")
    INLINE_RULES[f"{_ns}.greaterOrEqual"] = _binary(">=")
    INLINE_RULES[f"{_ns}.max"] = InlineRule(2, "(if (($0) > ($1)) ($0) else ($1))")
    INLINE_RULES[f"{_ns}.min"] = InlineRule(2, "(if (($0) < ($1)) ($0) else ($1))")

_CLOSERS = {"(": ")", "[": "]", "{": "}"}
_QUOTES = ('"', "'")


def _literal_end(source: str, start: int) -> int:
    """Index just past the text or char literal opening at `start`."""
    quote = source[start]
    j = start + 1
    while j < len(source) and source[j] != quote:
        j += 2 if source[j] == "\\" else 1
    return j + 1


def _comment_end(source: str, start: int) -> int:
    if source.startswith("//", start):
        end = source.find("\n", start)
        return len(source) if end == -1 else end
    end = source.find("*/", start + 2)
    return len(source) if end == -1 else end + 2


def split_call_args(source: str, start: int) -> tuple[list[str] | None, int]:
    """
    Split the arguments of a call whose opening parenthesis ends at `start`.

    Returns:
        (arguments, index just past the closing parenthesis), or (None, start)
        when the parentheses are unbalanced.
    """
    stack = [")"]
    args: list[str] = []
    current: list[str] = []
    i = start
    n = len(source)
    while i < n:
        ch = source[i]
        if ch in _QUOTES:
            j = _literal_end(source, i)
            current.append(source[i:j])
            i = j
            continue
        if source.startswith("//", i) or source.startswith("/*", i):
            i = _comment_end(source, i)
            current.append(" ")
            continue
        if ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in (")", "]", "}"):
            if ch != stack[-1]:
                return None, start
            stack.pop()
            if not stack:
                tail = "".join(current).strip()
                if tail or args:
                    args.append(tail)
                return args, i + 1
        elif ch == "," and len(stack) == 1:
            args.append("".join(current).strip())
            current = []
            i += 1
            continue
        current.append(ch)
        i += 1
    return None, start


def inline_namespace_calls(source: str) -> str:
    """Rewrite calls listed in INLINE_RULES into primitive expressions. Unknown calls are left alone."""
    code = _code_only(source)
    out: list[str] = []
    pos = 0
    while True:
        m = _CALL_RE.search(code, pos)
        if m is None:
            out.append(source[pos:])
            break
        rule = INLINE_RULES.get(m.group(1))
        if rule is None:
            out.append(source[pos : m.end()])
            pos = m.end()
            continue
        args, end = split_call_args(source, m.end())
        if args is None or len(args) != rule.arity:
            out.append(source[pos : m.end()])
            pos = m.end()
            continue
        args = [inline_namespace_calls(a) for a in args]
        out.append(source[pos : m.start()])
        out.append(_PLACEHOLDER_RE.sub(lambda p: args[int(p.group(1))], rule.template))
        pos = end
    return "".join(out)


def simplify_artifact(source: str) -> str:
    """Drop base-library imports and inline what can be inlined."""
    return inline_namespace_calls(strip_base_imports(source))
