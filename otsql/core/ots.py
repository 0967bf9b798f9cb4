"""Prompting for the Over The Shoulder (OTS) phrase that unlocks write mode."""
from __future__ import annotations
from typing import Sequence
import sys

from otsql.core.errors import AuthorizationError

OTS_PROMPT = "OTS? "
OTS_REQUIRED = "OTS is required for write mode"


def prompt_for_ots(reader, previous: Sequence[str] = ()) -> str:
    """Ask for an OTS phrase until a non-empty one is given.

    ``previous`` seeds the line history (most recent first) so earlier
    phrases can be recalled and edited. Ctrl-C and Ctrl-D abort with
    AuthorizationError.
    """
    with reader.scoped_history(list(previous)):
        while True:
            try:
                phrase = reader.readline(OTS_PROMPT).strip()
            except KeyboardInterrupt:
                print(file=sys.stderr)
                raise AuthorizationError("OTS prompt interrupted")
            except EOFError:
                print(file=sys.stderr)
                raise AuthorizationError(OTS_REQUIRED)
            if phrase:
                return phrase
            print(OTS_REQUIRED, file=sys.stderr)
