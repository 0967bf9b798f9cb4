"""Turning buffered input text into a sequence of REPL actions."""
from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union
import logging

from otsql.core.comments import find_terminator, strip_comment
from otsql.core.errors import MetacommandParseError
from otsql.core.metacommands import Metacommand, Quit, parse_metacommand
from otsql.core.query_modifiers import EXPANDED, QueryModifiers, parse_query_modifiers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Execute:
    sql: str
    modifiers: QueryModifiers = frozenset()


@dataclass(frozen=True)
class InvalidInput:
    """A directive that was recognised but could not be parsed."""
    message: str


Command = Union[Metacommand, Execute, InvalidInput]


@dataclass(frozen=True)
class ReplAction:
    text: str
    command: Command


def _skip_line(text: str, line_end: int) -> str:
    return text[line_end + 1:] if line_end < len(text) else ''


def _rest_after_terminator(rest: str) -> str:
    """Drop a trailing comment on the terminator's line."""
    newline = rest.find('\n')
    line = rest if newline < 0 else rest[:newline]
    if strip_comment(line) is None:
        return '' if newline < 0 else rest[newline + 1:]
    return rest


def _take_statement(text: str) -> Optional[Tuple[str, Optional[str], QueryModifiers, str]]:
    """Return (source, sql, modifiers, rest) for the first complete statement.

    ``sql`` is None when the statement ends in a malformed ``\\g`` modifier.
    """
    found = find_terminator(text)
    if found is None:
        return None
    pos, kind = found
    if kind == ';':
        sql = text[:pos].strip()
        return text[:pos + 1].strip(), sql, frozenset(), _rest_after_terminator(text[pos + 1:])
    newline = text.find('\n', pos)
    end = len(text) if newline < 0 else newline
    source = text[:end].strip()
    rest = text[end + 1:] if newline >= 0 else ''
    parsed = parse_query_modifiers(source)
    if parsed is None:
        return source, None, frozenset(), rest
    sql, modifiers = parsed
    return source, sql, modifiers, rest


def parse_multi_input(text: str, expanded_mode: bool = False) -> Tuple[List[ReplAction], str]:
    """Split ``text`` into complete actions and the unfinished remainder.

    Directives are only recognised at the start of a line. SQL ends at an
    unquoted ``;`` or a ``\\g`` modifier. An unterminated SQL fragment
    followed by a directive on a later line is dropped.
    """
    text = text.strip()
    if not text or not any(strip_comment(line) for line in text.splitlines()):
        return [], ''

    actions: List[ReplAction] = []
    remaining = text
    while True:
        remaining = remaining.lstrip()
        if not remaining:
            break

        if remaining.startswith('\\'):
            line_end = remaining.find('\n')
            if line_end < 0:
                line_end = len(remaining)
            line = strip_comment(remaining[:line_end])
            if line is None:
                remaining = _skip_line(remaining, line_end)
                continue
            try:
                command = parse_metacommand(line)
            except MetacommandParseError as e:
                actions.append(ReplAction(line, InvalidInput(str(e))))
                remaining = _skip_line(remaining, line_end)
                continue
            if command is not None:
                actions.append(ReplAction(line, command))
                remaining = _skip_line(remaining, line_end)
                continue

        statement = _take_statement(remaining)
        if statement is not None:
            source, sql, modifiers, remaining = statement
            if sql is None:
                modifier = source[max(source.rfind('\\g'), source.rfind('\\G')):]
                actions.append(ReplAction(source, InvalidInput(f"invalid query modifier: {modifier}")))
                continue
            if not sql:
                continue
            if expanded_mode:
                modifiers = modifiers | {EXPANDED}
            actions.append(ReplAction(source, Execute(sql, modifiers)))
            continue

        lines = remaining.split('\n')
        for n in range(1, len(lines)):
            if lines[n].lstrip().startswith('\\'):
                logger.debug("Dropping unterminated statement before directive: %r",
                             '\n'.join(lines[:n]))
                remaining = '\n'.join(lines[n:])
                break
        else:
            break

    if not actions:
        return [], text
    if not any(strip_comment(line) for line in remaining.splitlines()):
        return actions, ''
    return actions, remaining.strip()


def handle_input(buffer: str, line: str, expanded_mode: bool = False) -> Tuple[List[ReplAction], str]:
    """Feed one line of operator input; returns actions and the new buffer."""
    if not buffer.strip() and line.strip().lower() == 'quit':
        return [ReplAction(line.strip(), Quit())], ''
    combined = f"{buffer}\n{line}" if buffer else line
    return parse_multi_input(combined, expanded_mode)


def complete_text(text: str, expanded_mode: bool = False) -> List[ReplAction]:
    """Parse stand-alone text (a file or snippet) where the end of input ends the last statement."""
    actions, remaining = parse_multi_input(text, expanded_mode)
    if remaining:
        more, leftover = parse_multi_input(remaining + '\n;', expanded_mode)
        actions.extend(more)
        if leftover:
            logger.warning("Ignoring unparseable trailing input: %r", leftover)
    return actions
