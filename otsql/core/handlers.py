r"""Handlers for REPL actions.

Directives:
  \?, \help                      Show this help
  \q                             Quit (refused while a write transaction is open)
  \e                             Edit the previous command in $EDITOR and run it
  \x                             Toggle expanded output
  \R                             Toggle redaction of configured columns
  \W                             Toggle write mode (asks for an OTS phrase)
  \o [file]                      Send results to file, or back to stdout
  \set <name> <value>            Set a variable
  \default <name> <value>        Set a variable only if it is not set
  \unset <name>                  Remove a variable
  \get <name>                    Print a variable
  \vars [pattern]                List variables (glob pattern)
  \d[+][!] [name]                Describe an object (list tables without a name)
  \list[+][!] <item> [pattern]   List tables, indexes, functions, views, schemas, sequences
  \dt \di \df \dv \dn \ds        Aliases for \list (+ details, ! use the same connection)
  \i <file> [name=value ...]     Run a file with variables set
  \run <name> [name=value ...]   Run a snippet (also \snip run)
  \snip save <name>              Save the previous command as a snippet
  \debug [state]                 Show session state

Query modifiers (after a statement instead of ;):
  \g                             Execute
  \gx \gj \gv \gz                Expanded, JSON, no interpolation, silent (combinable: \gxj)
  \go <file>                     Write the result to a new file
  \gset [prefix]                 Store the single result row into variables

Variables: ${name} is replaced by the value of name; ${{name}} is a literal ${name}.
"""
from __future__ import annotations
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Callable, Dict, Optional
import json
import logging
import os
import shlex
import subprocess
import sys
import tempfile

import pandas as pd
import psycopg

from otsql.core.catalog import describe_object, list_objects
from otsql.core.errors import AuditError, ResourceError
from otsql.core.executor import execute_query
from otsql.core.metacommands import (
    Copy, Debug, DebugWhat, DefaultVar, Describe, Edit, GetVar, Help, Include, ListObjects,
    LookupVars, Output, Quit, SetVar, SnippetRun, SnippetSave, ToggleExpanded, ToggleRedaction,
    ToggleWriteMode, UnsetVar,
)
from otsql.core.output_writer import write_result
from otsql.core.statements import Execute, InvalidInput, ReplAction, complete_text
from otsql.utils.validation import ValidationError, validate_input_file, validate_variable_name

logger = logging.getLogger(__name__)

COPY_GUIDANCE = (
    "The \\copy command is not supported.\n"
    "To export a result, run the query with \\go <file> (add j for JSON: \\gjo <file>),\n"
    "or redirect all output with \\o <file>. Use \\gz to run a statement without output."
)
DEBUG_HELP = "Usage: \\debug state    show the session state"


def _err(message) -> None:
    print(message, file=sys.stderr)


def _out(ctx):
    return ctx.state.snapshot().output_file or sys.stdout


def record(ctx, text: str) -> None:
    """Append an audit entry for ``text`` with the current state; failures only warn."""
    try:
        ctx.audit.add_entry(text, ctx.state.snapshot())
    except AuditError as e:
        logger.warning("Audit entry not recorded: %s", e)


def dispatch(ctx, action: ReplAction) -> bool:
    """Run one action; returns True when the session should end."""
    command = action.command
    # The write-mode gate records its own entry carrying the new state.
    if not isinstance(command, (ToggleWriteMode, SnippetSave, InvalidInput)):
        record(ctx, action.text)
    handler = HANDLERS.get(type(command))
    if handler is None:
        _err(f"Unsupported command: {action.text}")
        return False
    done = bool(handler(ctx, command))
    if not isinstance(command, SnippetSave) and not ctx.state.snapshot().from_snippet_or_include:
        ctx.last_input = action.text
    return done


def run_included_text(ctx, text: str, bindings: Optional[Dict[str, str]] = None) -> bool:
    """Run ``text`` as a sequence of actions with ``bindings`` set for the duration.

    A trailing statement without a terminator still runs. Returns True if
    one of the actions ended the session.
    """
    with ctx.state.scoped_vars(bindings or {}):
        expanded = ctx.state.snapshot().expanded_mode
        for action in complete_text(text, expanded):
            if dispatch(ctx, action):
                return True
    return False


def handle_execute(ctx, command: Execute) -> None:
    execute_query(ctx, command.sql, command.modifiers)


def handle_invalid(ctx, command: InvalidInput) -> None:
    _err(f"Error: {command.message}")


def handle_quit(ctx, command: Quit) -> bool:
    if ctx.state.snapshot().from_snippet_or_include:
        _err("\\q is ignored inside snippets and included files")
        return False
    return ctx.gate.can_exit()


def edit_text(seed: str, editor: Optional[str] = None) -> Optional[str]:
    """Open ``seed`` in the operator's editor and return the saved text."""
    editor = editor or os.environ.get('VISUAL') or os.environ.get('EDITOR') or 'vi'
    with tempfile.NamedTemporaryFile('w', suffix='.sql', delete=False, encoding='utf-8') as f:
        f.write(seed)
        path = f.name
    try:
        subprocess.run(shlex.split(editor) + [path], check=True)
        return Path(path).read_text(encoding='utf-8')
    except (OSError, subprocess.CalledProcessError) as e:
        _err(f"Editor failed: {e}")
        return None
    finally:
        os.unlink(path)


def handle_edit(ctx, command: Edit) -> bool:
    if ctx.state.snapshot().from_snippet_or_include:
        _err("\\e is ignored inside snippets and included files")
        return False
    text = edit_text(ctx.last_input or '', ctx.editor)
    if not text or not text.strip():
        return False
    ctx.reader.add_history(text.strip())
    return run_included_text(ctx, text)


def handle_expanded(ctx, command: ToggleExpanded) -> None:
    with ctx.state.locked() as st:
        st.expanded_mode = not st.expanded_mode
        on = st.expanded_mode
    _err(f"Expanded display is {'on' if on else 'off'}.")


def handle_redaction(ctx, command: ToggleRedaction) -> None:
    if not ctx.redactions:
        _err("Redaction mode is not available (no redactions configured).")
        return
    with ctx.state.locked() as st:
        st.redact_mode = not st.redact_mode
        on = st.redact_mode
    _err(f"Redaction mode is {'on' if on else 'off'}.")


def handle_write_mode(ctx, command: ToggleWriteMode) -> None:
    ctx.gate.toggle()
    ctx.refresh_transaction_state()


def handle_output(ctx, command: Output) -> None:
    with ctx.state.locked() as st:
        if command.path is None:
            st.close_output()
            message = "Output is going to stdout."
        else:
            try:
                st.set_output(os.path.expanduser(command.path))
                message = f"Output is going to {command.path}."
            except ResourceError as e:
                message = f"Error: {e}"
    _err(message)


def handle_debug(ctx, command: Debug) -> None:
    if command.what is DebugWhat.STATE:
        info = ctx.state.snapshot().describe()
        info['transaction'] = ctx.refresh_transaction_state().value
        info['audit_store'] = ctx.audit.working.path if ctx.audit.working else None
        print(json.dumps(info, indent=2, default=str))
    else:
        _err(DEBUG_HELP)


def handle_help(ctx, command: Help) -> None:
    print(__doc__ or 'No help available.')


def handle_copy(ctx, command: Copy) -> None:
    _err(COPY_GUIDANCE)


def handle_set(ctx, command: SetVar) -> None:
    try:
        validate_variable_name(command.name)
    except ValidationError as e:
        _err(f"Error: {e}")
        return
    with ctx.state.locked() as st:
        st.vars[command.name] = command.value


def handle_default(ctx, command: DefaultVar) -> None:
    try:
        validate_variable_name(command.name)
    except ValidationError as e:
        _err(f"Error: {e}")
        return
    with ctx.state.locked() as st:
        st.vars.setdefault(command.name, command.value)


def handle_unset(ctx, command: UnsetVar) -> None:
    with ctx.state.locked() as st:
        removed = st.vars.pop(command.name, None)
    if removed is None:
        _err(f"Variable '{command.name}' not found")


def handle_get(ctx, command: GetVar) -> None:
    value = ctx.state.snapshot().vars.get(command.name)
    if value is None:
        _err(f"Variable '{command.name}' not found")
    else:
        print(value, file=_out(ctx))


def handle_vars(ctx, command: LookupVars) -> None:
    variables = ctx.state.snapshot().vars
    names = sorted(n for n in variables if command.pattern is None or fnmatchcase(n, command.pattern))
    if not names:
        _err("No variables set." if command.pattern is None else f"No variables match '{command.pattern}'.")
        return
    df = pd.DataFrame({'name': names, 'value': [variables[n] for n in names]})
    write_result(df, _out(ctx), max_col_width=ctx.max_col_width)


def handle_list(ctx, command: ListObjects) -> None:
    conn = ctx.catalog_connection(command.sameconn)
    try:
        result = list_objects(conn, command.item, command.pattern, command.detail)
    except psycopg.Error as e:
        _err(f"ERROR: {str(e).strip()}")
        return
    if not result.rows:
        _err(f"No {command.item.value} matching '{command.pattern}' found.")
        return
    write_result(result.to_frame(), _out(ctx), max_col_width=ctx.max_col_width)


def handle_describe(ctx, command: Describe) -> None:
    conn = ctx.catalog_connection(command.sameconn)
    try:
        sections = describe_object(conn, command.name, command.detail)
    except psycopg.Error as e:
        _err(f"ERROR: {str(e).strip()}")
        return
    if not sections:
        _err(f'Did not find any relation or function named "{command.name}".')
        return
    out = _out(ctx)
    for title, result in sections:
        out.write(f"{title}\n")
        write_result(result.to_frame(), out, max_col_width=ctx.max_col_width)


def handle_snippet_run(ctx, command: SnippetRun) -> bool:
    store = ctx.state.snapshot().snippets
    try:
        text = store.load(command.name)
    except ResourceError as e:
        _err(f"Error: {e}")
        return False
    except OSError as e:
        _err(f"Error: cannot read snippet '{command.name}': {e}")
        return False
    return run_included_text(ctx, text, command.vars)


def handle_snippet_save(ctx, command: SnippetSave) -> None:
    if not ctx.last_input:
        _err("No previous command to save.")
        return
    store = ctx.state.snapshot().snippets
    try:
        path = store.save(command.name, ctx.last_input)
    except ResourceError as e:
        _err(f"Error: {e}")
        return
    _err(f"Saved snippet '{command.name}' to {path}")


def handle_include(ctx, command: Include) -> bool:
    path = os.path.expanduser(command.path)
    try:
        validate_input_file(path)
        text = Path(path).read_text(encoding='utf-8')
    except (ValidationError, OSError) as e:
        _err(f"Error: cannot read {command.path}: {e}")
        return False
    return run_included_text(ctx, text, command.vars)


HANDLERS: Dict[type, Callable] = {
    Execute: handle_execute,
    InvalidInput: handle_invalid,
    Quit: handle_quit,
    Edit: handle_edit,
    ToggleExpanded: handle_expanded,
    ToggleRedaction: handle_redaction,
    ToggleWriteMode: handle_write_mode,
    Output: handle_output,
    Debug: handle_debug,
    Help: handle_help,
    Copy: handle_copy,
    SetVar: handle_set,
    DefaultVar: handle_default,
    UnsetVar: handle_unset,
    GetVar: handle_get,
    LookupVars: handle_vars,
    ListObjects: handle_list,
    Describe: handle_describe,
    SnippetRun: handle_snippet_run,
    SnippetSave: handle_snippet_save,
    Include: handle_include,
}
