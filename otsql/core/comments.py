"""Trailing ``--`` comment removal for single input lines."""
from __future__ import annotations
from typing import List, Optional, Tuple


def strip_comment(line: str) -> Optional[str]:
    """Return ``line`` without its trailing SQL comment, or None if nothing is left.

    ``--`` only starts a comment outside single and double quotes. A quote
    character preceded by a backslash does not open or close a quoted region.
    The result is right-trimmed.
    """
    in_single = False
    in_double = False
    prev = ''
    for i, ch in enumerate(line):
        if ch == "'" and not in_double and prev != '\\':
            in_single = not in_single
        elif ch == '"' and not in_single and prev != '\\':
            in_double = not in_double
        elif ch == '-' and prev == '-' and not in_single and not in_double:
            stripped = line[:i - 1].rstrip()
            return stripped or None
        prev = ch
    stripped = line.rstrip()
    return stripped or None


def find_statement_end(text: str) -> Optional[int]:
    """Index of the first ``;`` outside quotes and ``--`` comments, if any."""
    found = find_terminator(text, modifiers=False)
    return found[0] if found else None


def find_terminator(text: str, modifiers: bool = True) -> Optional[Tuple[int, str]]:
    """Locate the first statement terminator outside quotes and comments.

    Returns ``(index, ';')`` for a semicolon or ``(index, '\\g')`` for the
    backslash of a ``\\g``/``\\G`` modifier when ``modifiers`` is set.
    """
    in_single = False
    in_double = False
    in_comment = False
    prev = ''
    for i, ch in enumerate(text):
        if in_comment:
            if ch == '\n':
                in_comment = False
        elif ch == "'" and not in_double and prev != '\\':
            in_single = not in_single
        elif ch == '"' and not in_single and prev != '\\':
            in_double = not in_double
        elif in_single or in_double:
            pass
        elif ch == '-' and prev == '-':
            in_comment = True
        elif ch == ';':
            return i, ';'
        elif modifiers and ch == '\\' and text[i + 1:i + 2] in ('g', 'G'):
            return i, '\\g'
        prev = ch
    return None


def split_statements(text: str) -> List[str]:
    """Split ``text`` on unquoted semicolons; empty pieces are dropped."""
    statements = []
    rest = text
    while True:
        end = find_statement_end(rest)
        if end is None:
            break
        piece = rest[:end].strip()
        if piece:
            statements.append(piece)
        rest = rest[end + 1:]
    tail = rest.strip()
    if _has_content(tail):
        statements.append(tail)
    return statements


def _has_content(text: str) -> bool:
    return any(strip_comment(line) for line in text.splitlines())
