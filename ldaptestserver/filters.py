"""
Search filters and their evaluation against a `DirectoryEntry`.

Only `&`, `|`, `!` and `=` are understood. Every other filter kind
(substrings, present, ordering, approximate, extensible) is kept as
`Other` and, unless told otherwise, matches every entry.
"""
from __future__ import annotations
from typing import Iterator
from dataclasses import dataclass
import logging
import re

from .directory import DirectoryEntry, Multi, Single

log = logging.getLogger(__name__)

_ESCAPE_RE = re.compile(r"[*()\\\x00]")


def escape(value: str) -> str:
    """RFC 4515 assertion value escaping"""
    return _ESCAPE_RE.sub(lambda m: f"\\{ord(m.group()):02x}", value)


@dataclass(frozen=True, slots=True)
class And:
    children: tuple[Filter, ...] = ()

    def __str__(self) -> str:
        return "(&" + "".join(map(str, self.children)) + ")"


@dataclass(frozen=True, slots=True)
class Or:
    children: tuple[Filter, ...] = ()

    def __str__(self) -> str:
        return "(|" + "".join(map(str, self.children)) + ")"


@dataclass(frozen=True, slots=True)
class Not:
    child: Filter

    def __str__(self) -> str:
        return f"(!{self.child})"


@dataclass(frozen=True, slots=True)
class EqualityMatch:
    attribute: str
    value: str

    def __str__(self) -> str:
        return f"({self.attribute}={escape(self.value)})"


@dataclass(frozen=True, slots=True)
class Other:
    """
    A filter kind the evaluator does not understand.

    `kind` is the protocol name ("present", "substrings", ...),
    `text` is its string form, used for logging only.
    """

    kind: str
    text: str = ""

    def __str__(self) -> str:
        return self.text or f"({self.kind})"


Filter = And | Or | Not | EqualityMatch | Other


def evaluate(
    filter: Filter, entry: DirectoryEntry, unknown_matches: bool = True
) -> bool:
    match filter:
        case And(children):
            return all(
                evaluate(child, entry, unknown_matches) for child in children
            )
        case Or(children):
            return any(
                evaluate(child, entry, unknown_matches) for child in children
            )
        case Not(child):
            return not evaluate(child, entry, unknown_matches)
        case EqualityMatch(attribute, expected):
            value = entry.attributes.get(attribute)
            log.debug("`%s' == `%s'", value, expected)
            match value:
                case Single(actual):
                    return actual == expected
                case Multi(values):
                    return expected in values
                case _:
                    return False
        case Other():
            # fail-open unless the caller asked for strict behaviour
            return unknown_matches
    raise TypeError(f"not a filter: {filter!r}")


def unsupported_kinds(filter: Filter) -> Iterator[Other]:
    """
    Yield every `Other` node of `filter`, depth first.

    Callers that must not let unknown filter kinds match everything can
    reject a request when this yields anything.
    """
    match filter:
        case And(children) | Or(children):
            for child in children:
                yield from unsupported_kinds(child)
        case Not(child):
            yield from unsupported_kinds(child)
        case Other():
            yield filter
