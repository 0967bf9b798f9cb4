r"""Backslash directive recognition.

``parse_metacommand`` has three outcomes:

* ``None`` - the line is not a directive (it is passed on as SQL),
* a ``Metacommand`` value,
* ``MetacommandParseError`` - the line names a directive but its required
  arguments are missing.

Directives are case sensitive (``\W`` is not ``\w``). Directives that take
no argument are not recognised when followed by other text, so ``\q now``
is not a quit request.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import re

from otsql.core.errors import MetacommandParseError

DEFAULT_LIST_PATTERN = 'public.*'


class DebugWhat(Enum):
    STATE = 'state'
    HELP = 'help'


class ListItem(Enum):
    TABLE = 'table'
    INDEX = 'index'
    FUNCTION = 'function'
    VIEW = 'view'
    SCHEMA = 'schema'
    SEQUENCE = 'sequence'


LIST_ALIASES: Dict[str, ListItem] = {
    'dt': ListItem.TABLE,
    'di': ListItem.INDEX,
    'df': ListItem.FUNCTION,
    'dv': ListItem.VIEW,
    'dn': ListItem.SCHEMA,
    'ds': ListItem.SEQUENCE,
}


class Metacommand:
    """Base class of every parsed directive."""


@dataclass(frozen=True)
class Quit(Metacommand):
    pass


@dataclass(frozen=True)
class Edit(Metacommand):
    pass


@dataclass(frozen=True)
class ToggleExpanded(Metacommand):
    pass


@dataclass(frozen=True)
class ToggleRedaction(Metacommand):
    pass


@dataclass(frozen=True)
class ToggleWriteMode(Metacommand):
    pass


@dataclass(frozen=True)
class Help(Metacommand):
    pass


@dataclass(frozen=True)
class Copy(Metacommand):
    pass


@dataclass(frozen=True)
class Output(Metacommand):
    path: Optional[str] = None


@dataclass(frozen=True)
class Debug(Metacommand):
    what: DebugWhat = DebugWhat.HELP


@dataclass(frozen=True)
class SetVar(Metacommand):
    name: str
    value: str


@dataclass(frozen=True)
class DefaultVar(Metacommand):
    name: str
    value: str


@dataclass(frozen=True)
class UnsetVar(Metacommand):
    name: str


@dataclass(frozen=True)
class GetVar(Metacommand):
    name: str


@dataclass(frozen=True)
class LookupVars(Metacommand):
    pattern: Optional[str] = None


@dataclass(frozen=True)
class Describe(Metacommand):
    name: str
    detail: bool = False
    sameconn: bool = False


@dataclass(frozen=True)
class ListObjects(Metacommand):
    item: ListItem
    pattern: str = DEFAULT_LIST_PATTERN
    detail: bool = False
    sameconn: bool = False


@dataclass(frozen=True)
class SnippetRun(Metacommand):
    name: str
    vars: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SnippetSave(Metacommand):
    name: str


@dataclass(frozen=True)
class Include(Metacommand):
    path: str
    vars: Dict[str, str] = field(default_factory=dict)


# Helpers. Each returns None when the grammar does not apply (so the next
# parser may try) and raises MetacommandParseError once a directive word has
# matched but its arguments are unusable.

def _after(text: str, word: str) -> Optional[str]:
    """Text following ``\\word`` when ``word`` is a whole directive word."""
    prefix = '\\' + word
    if not text.startswith(prefix):
        return None
    rest = text[len(prefix):]
    if rest and not rest[0].isspace():
        return None
    return rest.strip()


def _bare(word: str, result: Metacommand) -> Callable[[str], Optional[Metacommand]]:
    def parse(text: str) -> Optional[Metacommand]:
        if _after(text, word) == '':
            return result
        return None
    parse.__name__ = f'parse_{word}'
    return parse


def _split_name(rest: str) -> Tuple[str, str]:
    parts = rest.split(None, 1)
    if not parts:
        return '', ''
    return parts[0], parts[1].strip() if len(parts) > 1 else ''


def _parse_bindings(directive: str, words: List[str]) -> Dict[str, str]:
    bindings: Dict[str, str] = {}
    for word in words:
        name, sep, value = word.partition('=')
        if not sep or not name:
            raise MetacommandParseError(f"\\{directive}: expected name=value, got '{word}'")
        bindings[name] = value
    return bindings


def _flags(text: str, pos: int) -> Tuple[bool, bool, int]:
    """Consume up to two ``+``/``!`` markers in either order."""
    detail = sameconn = False
    for _ in range(2):
        if text.startswith('+', pos) and not detail:
            detail = True
            pos += 1
        elif text.startswith('!', pos) and not sameconn:
            sameconn = True
            pos += 1
    return detail, sameconn, pos


# Directive parsers

def parse_output(text: str) -> Optional[Metacommand]:
    rest = _after(text, 'o')
    if rest is None:
        return None
    return Output(rest or None)


def parse_debug(text: str) -> Optional[Metacommand]:
    rest = _after(text, 'debug')
    if rest is None:
        return None
    if rest == 'state':
        return Debug(DebugWhat.STATE)
    return Debug(DebugWhat.HELP)


def parse_copy(text: str) -> Optional[Metacommand]:
    if _after(text, 'copy') is None:
        return None
    return Copy()


def _name_value(word: str, cls) -> Callable[[str], Optional[Metacommand]]:
    def parse(text: str) -> Optional[Metacommand]:
        rest = _after(text, word)
        if rest is None:
            return None
        name, value = _split_name(rest)
        if not name or not value:
            raise MetacommandParseError(f"\\{word} requires a name and a value")
        return cls(name, value)
    parse.__name__ = f'parse_{word}'
    return parse


def _name_only(word: str, cls) -> Callable[[str], Optional[Metacommand]]:
    def parse(text: str) -> Optional[Metacommand]:
        rest = _after(text, word)
        if rest is None:
            return None
        if not rest or len(rest.split()) != 1:
            raise MetacommandParseError(f"\\{word} requires a variable name")
        return cls(rest)
    parse.__name__ = f'parse_{word}'
    return parse


def parse_vars(text: str) -> Optional[Metacommand]:
    rest = _after(text, 'vars')
    if rest is None:
        return None
    return LookupVars(rest or None)


def parse_list(text: str) -> Optional[Metacommand]:
    m = re.match(r'\\(list|dt|di|df|dv|dn|ds)', text)
    if not m:
        return None
    detail, sameconn, pos = _flags(text, m.end())
    rest = text[pos:]
    if rest and not rest[0].isspace():
        return None
    words = rest.split()
    if m.group(1) == 'list':
        if not words:
            raise MetacommandParseError(
                "\\list requires an item: " + ', '.join(item.value for item in ListItem))
        try:
            item = ListItem(words.pop(0))
        except ValueError:
            raise MetacommandParseError(f"\\list: unknown item '{rest.split()[0]}'")
    else:
        item = LIST_ALIASES[m.group(1)]
    if len(words) > 1:
        return None
    return ListObjects(item, words[0] if words else DEFAULT_LIST_PATTERN, detail, sameconn)


def parse_describe(text: str) -> Optional[Metacommand]:
    m = re.match(r'\\(describe|d)', text)
    if not m:
        return None
    detail, sameconn, pos = _flags(text, m.end())
    rest = text[pos:]
    if rest and not rest[0].isspace():
        return None
    words = rest.split()
    if len(words) > 1:
        return None
    if not words:
        return ListObjects(ListItem.TABLE, DEFAULT_LIST_PATTERN, detail, sameconn)
    return Describe(words[0], detail, sameconn)


def parse_include(text: str) -> Optional[Metacommand]:
    rest = _after(text, 'i')
    if rest is None:
        return None
    words = rest.split()
    if not words:
        raise MetacommandParseError("\\i requires a file path")
    return Include(words[0], _parse_bindings('i', words[1:]))


def parse_run(text: str) -> Optional[Metacommand]:
    rest = _after(text, 'run')
    if rest is None:
        return None
    words = rest.split()
    if not words:
        raise MetacommandParseError("\\run requires a snippet name")
    return SnippetRun(words[0], _parse_bindings('run', words[1:]))


def parse_snip(text: str) -> Optional[Metacommand]:
    rest = _after(text, 'snip')
    if rest is None:
        return None
    words = rest.split()
    if len(words) >= 2 and words[0] == 'run':
        return SnippetRun(words[1], _parse_bindings('snip run', words[2:]))
    if len(words) == 2 and words[0] == 'save':
        return SnippetSave(words[1])
    return Help()


# Order matters: list aliases (\dt, \di, ...) before the bare \d describe.
PARSERS: Tuple[Callable[[str], Optional[Metacommand]], ...] = (
    _bare('q', Quit()),
    _bare('x', ToggleExpanded()),
    _bare('W', ToggleWriteMode()),
    _bare('R', ToggleRedaction()),
    _bare('e', Edit()),
    _bare('?', Help()),
    _bare('help', Help()),
    parse_output,
    parse_debug,
    parse_copy,
    _name_value('set', SetVar),
    _name_value('default', DefaultVar),
    _name_only('unset', UnsetVar),
    _name_only('get', GetVar),
    parse_vars,
    parse_list,
    parse_describe,
    parse_include,
    parse_run,
    parse_snip,
)


def parse_metacommand(line: str) -> Optional[Metacommand]:
    """Recognise a backslash directive in ``line``.

    Returns None when the line is not a directive. Raises
    ``MetacommandParseError`` for a recognised directive with missing
    arguments.
    """
    text = line.strip()
    if not text.startswith('\\'):
        return None
    for parser in PARSERS:
        result = parser(text)
        if result is not None:
            return result
    return None
