"""Running operator SQL on the primary connection and showing the results."""
from __future__ import annotations
from typing import Dict, Optional, TextIO
import logging
import re
import sys

import psycopg

from otsql.core.comments import split_statements
from otsql.core.connection import QueryResult
from otsql.core.errors import VariableError
from otsql.core.output_writer import redact_frame, write_result
from otsql.core.progress import query_progress
from otsql.core.query_modifiers import ModifierKind, QueryModifiers, find_modifier, has_modifier
from otsql.core.state import ReplState
from otsql.core.transaction import TransactionState, probe_transaction
from otsql.utils.constants import BEGIN_SQL
from otsql.utils.validation import ValidationError, validate_output_path

logger = logging.getLogger(__name__)

# ${{name}} is an escaped, literal ${name}
VAR_RE = re.compile(r'\$\{\{([^{}]*)\}\}|\$\{([^{}]*)\}')


def interpolate(sql: str, variables: Dict[str, str]) -> str:
    """Replace ``${name}`` with the variable's value."""
    def substitute(m: re.Match) -> str:
        if m.group(1) is not None:
            return '${' + m.group(1) + '}'
        name = m.group(2)
        if name not in variables:
            raise VariableError(f"Variable '{name}' is not set")
        return variables[name]
    return VAR_RE.sub(substitute, sql)


def _store_row(ctx, result: QueryResult, prefix: str) -> None:
    if not result.has_rows or len(result.rows) != 1:
        count = len(result.rows) if result.has_rows else 0
        print(f"\\gset expects exactly one row, got {count}", file=sys.stderr)
        return
    values = {f"{prefix}{col}": ('' if val is None else str(val))
              for col, val in zip(result.columns, result.rows[0])}
    with ctx.state.locked() as st:
        st.vars.update(values)


def _show(ctx, snapshot: ReplState, result: QueryResult, modifiers: QueryModifiers,
          elapsed: float) -> None:
    if has_modifier(modifiers, ModifierKind.ZERO):
        return
    varset = find_modifier(modifiers, ModifierKind.VARSET)
    if varset is not None:
        _store_row(ctx, result, varset.argument or '')
        return

    if not result.has_rows:
        print(f"{result.status or 'OK'} (took {elapsed * 1000:.3f} ms)")
        return

    df = result.to_frame()
    if snapshot.redact_mode and ctx.redactions:
        df = redact_frame(df, ctx.redactions)

    output = find_modifier(modifiers, ModifierKind.OUTPUT)
    target: Optional[TextIO] = None
    close_target = False
    if output is not None:
        target = open(output.argument, 'x', encoding='utf-8')
        close_target = True
    elif snapshot.output_file is not None:
        target = snapshot.output_file
    try:
        out = target or sys.stdout
        write_result(
            df, out,
            expanded=has_modifier(modifiers, ModifierKind.EXPANDED),
            as_json=has_modifier(modifiers, ModifierKind.JSON),
            max_col_width=ctx.max_col_width,
            color=target is None and ctx.use_colours and sys.stdout.isatty(),
        )
    finally:
        if close_target:
            target.close()
    if output is not None:
        print(f"Wrote {len(df)} rows to {output.argument}", file=sys.stderr)


def execute_query(ctx, sql: str, modifiers: QueryModifiers) -> bool:
    """Run ``sql`` (possibly several statements); returns False if anything failed."""
    snapshot = ctx.state.snapshot()
    if not has_modifier(modifiers, ModifierKind.VERBATIM):
        try:
            sql = interpolate(sql, snapshot.vars)
        except VariableError as e:
            print(f"Error: {e}", file=sys.stderr)
            return False

    output = find_modifier(modifiers, ModifierKind.OUTPUT)
    if output is not None and find_modifier(modifiers, ModifierKind.VARSET) is None:
        try:
            validate_output_path(output.argument, overwrite=False)
        except ValidationError as e:
            print(f"Error: {e}", file=sys.stderr)
            return False

    for statement in split_statements(sql) or [sql]:
        try:
            with query_progress(enabled=ctx.show_progress) as progress:
                result = ctx.primary.execute(statement)
        except KeyboardInterrupt:
            ctx.primary.cancel()
            print("Query cancelled.", file=sys.stderr)
            return False
        except psycopg.Error as e:
            print(f"ERROR: {str(e).strip()}", file=sys.stderr)
            return False
        try:
            _show(ctx, snapshot, result, modifiers, progress.elapsed)
        except OSError as e:
            print(f"Error writing result: {e}", file=sys.stderr)
            return False

    _reopen_transaction(ctx)
    return True


def _reopen_transaction(ctx) -> None:
    """In write mode, start a new transaction after one was committed or rolled back."""
    if not ctx.state.snapshot().write_mode:
        return
    probe = probe_transaction(ctx.monitor, ctx.backend_pid)
    ctx.last_tx_state = probe.state
    if probe.state is not TransactionState.NONE or not probe.verified:
        return
    try:
        ctx.primary.batch_execute(BEGIN_SQL)
        ctx.last_tx_state = TransactionState.IDLE
    except psycopg.Error as e:
        logger.warning("Could not open a new transaction: %s", e)
        print(f"WARNING: could not start a new transaction: {e}", file=sys.stderr)
