r"""Trailing ``\g`` execution modifiers on a SQL statement.

``SELECT 1 \gxj`` runs the statement with expanded JSON output. The flags
may be combined in any order after ``\g`` (or ``\G``):

* ``x`` expanded output
* ``j`` JSON output
* ``v`` verbatim, no variable interpolation
* ``z`` run silently
* ``o <file>`` write the result to a new file
* ``set [prefix]`` store the single result row into variables
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Tuple


class ModifierKind(Enum):
    EXPANDED = 'x'
    JSON = 'j'
    VERBATIM = 'v'
    ZERO = 'z'
    OUTPUT = 'o'
    VARSET = 'set'


@dataclass(frozen=True)
class QueryModifier:
    kind: ModifierKind
    argument: Optional[str] = None


EXPANDED = QueryModifier(ModifierKind.EXPANDED)
JSON = QueryModifier(ModifierKind.JSON)
VERBATIM = QueryModifier(ModifierKind.VERBATIM)
ZERO = QueryModifier(ModifierKind.ZERO)

QueryModifiers = FrozenSet[QueryModifier]

_FLAG_MODIFIERS = {'x': EXPANDED, 'j': JSON, 'v': VERBATIM, 'z': ZERO}


def find_modifier(modifiers: QueryModifiers, kind: ModifierKind) -> Optional[QueryModifier]:
    for modifier in modifiers:
        if modifier.kind is kind:
            return modifier
    return None


def has_modifier(modifiers: QueryModifiers, kind: ModifierKind) -> bool:
    return find_modifier(modifiers, kind) is not None


def _parse_suffix(suffix: str) -> Optional[QueryModifiers]:
    """Parse the text after ``\\g``; None when it is not a modifier list."""
    mods = set()
    pos = 0
    wants_output = False
    while pos < len(suffix) and suffix[pos] in 'xjvzo':
        if suffix[pos] == 'o':
            wants_output = True
        else:
            mods.add(_FLAG_MODIFIERS[suffix[pos]])
        pos += 1
    wants_set = suffix.startswith('set', pos)
    if wants_set:
        pos += 3
    rest = suffix[pos:]
    if rest and not rest[0].isspace():
        return None
    argument = rest.strip() or None

    if wants_set:
        # \gset takes precedence over \go when both are given
        mods.add(QueryModifier(ModifierKind.VARSET, argument))
    elif wants_output:
        if argument is None:
            return None
        mods.add(QueryModifier(ModifierKind.OUTPUT, argument))
    elif argument is not None:
        return None
    return frozenset(mods)


def parse_query_modifiers(text: str) -> Optional[Tuple[str, QueryModifiers]]:
    """Split ``text`` into the statement and its modifiers.

    Returns None when ``text`` ends in neither ``;`` nor a ``\\g`` modifier.
    A trailing ``;`` means plain execution with no modifiers.
    """
    text = text.strip()
    if text.endswith(';'):
        sql = text[:-1].rstrip()
        return (sql, frozenset()) if sql else None
    idx = max(text.rfind('\\g'), text.rfind('\\G'))
    if idx <= 0:
        return None
    sql = text[:idx].rstrip()
    if not sql:
        return None
    mods = _parse_suffix(text[idx + 2:])
    if mods is None:
        return None
    return sql, mods
